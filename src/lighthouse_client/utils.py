"""
Logging setup and credential lookup shared by the command-line tools.
"""

from __future__ import annotations

import logging
import os
import re
import subprocess
from subprocess import CompletedProcess

logger: logging.Logger = logging.getLogger(__name__)

LOG_FILENAME = "lighthouse.log"


class PassError(Exception):
    """Base class for pass-related errors."""


class InvalidPassPathError(PassError):
    """Raised when the pass entry does not exist."""


class PassphraseRequiredError(PassError):
    """Raised when the GPG key protecting the pass entry is locked."""


def setup_logging(*, verbose: bool = False) -> None:
    """Configure logging for the command-line tools."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(), logging.FileHandler(LOG_FILENAME, mode="a")],
    )
    # urllib3 is chatty at DEBUG and would log every request line
    logging.getLogger("urllib3").setLevel(logging.INFO if verbose else logging.WARNING)


def _validate_pass_path(pass_path: str) -> None:
    if not re.fullmatch(r"(?:[A-Za-z0-9_.-]+)(?:/[A-Za-z0-9_.-]+)*", pass_path):
        msg = f"Invalid pass path: {pass_path}"
        raise ValueError(msg)


def get_pass_value(pass_path: str) -> str:
    """Get value from the pass password store at the specified path."""
    _validate_pass_path(pass_path)

    try:
        result: CompletedProcess[str] = subprocess.run(  # noqa: S603
            ["pass", "show", pass_path], capture_output=True, text=True, check=True
        )
    except FileNotFoundError as e:
        msg = "The 'pass' utility is not installed"
        raise PassError(msg) from e
    except subprocess.CalledProcessError as e:
        stderr = e.stderr.lower()
        if e.returncode == 1 and "not in the password store" in stderr:
            msg = f"No pass entry named '{pass_path}'"
            raise InvalidPassPathError(msg) from e
        if "gpg" in stderr and "decryption failed" in stderr:
            msg = f"Unable to decrypt pass entry '{pass_path}'; unlock your GPG key first."
            raise PassphraseRequiredError(msg) from e
        msg = f"pass show {pass_path} exited with {e.returncode}: {e.stderr.strip()}"
        raise PassError(msg) from e

    # pass stores the secret on the first line; later lines are free-form metadata
    return result.stdout.splitlines()[0].strip() if result.stdout else ""


def get_secret(value: str | None, *, env_var: str, pass_path: str | None = None) -> str | None:
    """Resolve a secret from an explicit value, a pass entry, or an environment variable.

    Args:
        value: Value given on the command line, used as-is when set
        env_var: Environment variable consulted when no explicit value is given
        pass_path: Optional pass entry, consulted before the environment

    Returns:
        The secret, or None when no source provides one
    """
    if value:
        return value

    if pass_path:
        return get_pass_value(pass_path)

    secret: str | None = os.environ.get(env_var)
    if secret:
        return secret

    logger.debug(f"No value found for {env_var}")
    return None
