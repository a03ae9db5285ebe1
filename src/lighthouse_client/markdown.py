"""Conversion of Lighthouse's markdown dialect to GitLab Flavored Markdown."""

from __future__ import annotations

import re
from typing import Final

# @code@ spans; the content may not start or end with whitespace nor span lines
_CODE_SPAN: Final[re.Pattern[str]] = re.compile(r"@([^@\s][^@\r\n]*[^@\s])@")


def lighthouse_to_gitlab_markdown(text: str) -> str:
    """Translate Lighthouse-only syntax in text.

    - ``@@@`` code block fences become triple backticks
    - ``@code@`` inline spans become backtick spans
    """
    if not text.strip():
        return text

    text = text.replace("@@@", "```")
    return _CODE_SPAN.sub(lambda m: f"`{m.group(1)}`", text)
