from __future__ import annotations

import logging
from typing import Final

from gitlab import Gitlab

from . import utils

# Module-wide logger
logger: logging.Logger = logging.getLogger(__name__)

_TOKEN_ENV_VAR: Final[str] = "GITLAB_TOKEN"  # noqa: S105


def get_token(token: str | None = None, pass_path: str | None = None) -> str | None:
    """Get GitLab token from the command line, a pass path or env var GITLAB_TOKEN."""
    resolved = utils.get_secret(token, env_var=_TOKEN_ENV_VAR, pass_path=pass_path)
    if not resolved:
        logger.warning("No GitLab token specified nor found")
    return resolved


def normalize_base_url(base_url: str) -> str:
    """Ensure the GitLab base URL ends with a slash."""
    return base_url if base_url.endswith("/") else f"{base_url}/"


def get_client(base_url: str, token: str, *, insecure: bool = False) -> Gitlab:
    """Get an authenticated GitLab client for the given instance.

    Args:
        base_url: Instance URL, e.g. https://gitlab.example.com/
        token: Personal access token; an admin token is needed to create users
            and to act on behalf of them
        insecure: Skip TLS certificate verification
    """
    if insecure:
        logger.warning("TLS certificate verification is disabled for GitLab")
    # python-gitlab appends /api/v4 itself and expects no trailing slash
    return Gitlab(url=base_url.rstrip("/"), private_token=token, ssl_verify=not insecure)
