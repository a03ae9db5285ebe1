"""Page-by-page listing for the paginated collections (milestones, tickets)."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, TypeVar

if TYPE_CHECKING:
    from collections.abc import Callable

logger: logging.Logger = logging.getLogger(__name__)

T = TypeVar("T")


def paginate(fetch_page: Callable[[int], list[T]]) -> list[T]:
    """Fetch pages 1, 2, 3... until an empty page comes back.

    Pages are concatenated in order. There is no upper bound on the number of
    pages: the server's empty page is the only terminator.

    Args:
        fetch_page: Callable returning the items of the given 1-based page

    Returns:
        All items from every non-empty page
    """
    items: list[T] = []
    page = 1
    while True:
        batch = fetch_page(page)
        if not batch:
            break
        logger.debug(f"Fetched page {page} with {len(batch)} items")
        items.extend(batch)
        page += 1
    return items
