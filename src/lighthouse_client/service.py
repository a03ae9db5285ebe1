"""
HTTP transport for the Lighthouse REST API.

Every resource service goes through a single `Service`, which knows the
account's base URL and how to authenticate. Requests are issued once; there
is no retry or backoff.
"""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any, Final

import requests

from .exceptions import APIError, DecodeError, TransportError

if TYPE_CHECKING:
    from collections.abc import Mapping

logger: logging.Logger = logging.getLogger(__name__)

DEFAULT_HOST: Final[str] = "lighthouseapp.com"
TOKEN_HEADER: Final[str] = "X-LighthouseToken"
# Lighthouse accepts an API token as the basic-auth username with this dummy password
TOKEN_BASIC_AUTH_PASSWORD: Final[str] = "x"  # noqa: S105


def parse_id(value: str | int) -> int:
    """Parse a numeric resource identifier.

    Raises:
        ValueError: If the value is not an integer
    """
    if isinstance(value, int):
        return value
    return int(value.strip())


def parse_ticket_number(value: str | int) -> int:
    """Parse a ticket number, optionally prefixed with '#'."""
    if isinstance(value, int):
        return value
    text = value.strip().removeprefix("#")
    try:
        return int(text)
    except ValueError:
        msg = f"invalid ticket number {value!r}"
        raise ValueError(msg) from None


class Service:
    """Authenticated transport bound to a single Lighthouse account."""

    account: str
    base_url: str
    session: requests.Session

    def __init__(
        self,
        account: str,
        *,
        token: str | None = None,
        token_as_basic_auth: bool = False,
        email: str | None = None,
        password: str | None = None,
        session: requests.Session | None = None,
        base_url: str | None = None,
    ) -> None:
        if not account and not base_url:
            msg = "A Lighthouse account name is required"
            raise ValueError(msg)

        self.account = account
        self.base_url = (base_url or f"https://{account}.{DEFAULT_HOST}").rstrip("/")
        self.session = session if session is not None else requests.Session()
        self.session.headers.update({"Accept": "application/json"})

        if token:
            if token_as_basic_auth:
                self.session.auth = (token, TOKEN_BASIC_AUTH_PASSWORD)
            else:
                self.session.headers[TOKEN_HEADER] = token
        elif email:
            self.session.auth = (email, password or "")

    def url(self, path: str) -> str:
        """Build an absolute URL; absolute inputs are returned unchanged."""
        if path.startswith(("http://", "https://")):
            return path
        return f"{self.base_url}/{path.lstrip('/')}"

    def round_trip(
        self,
        method: str,
        path: str,
        body: Mapping[str, Any] | None = None,
        *,
        params: Mapping[str, Any] | None = None,
        files: Any = None,
    ) -> requests.Response:
        """Issue a single request against the API.

        Args:
            method: HTTP method
            path: Path relative to the account base URL, or an absolute URL
            body: JSON payload, sent with a JSON content type
            params: Query string parameters
            files: Multipart parts, passed through to requests

        Returns:
            The raw response; status is not checked here

        Raises:
            TransportError: If the request could not be completed
        """
        url = self.url(path)
        logger.debug(f"{method} {url}")
        try:
            return self.session.request(method, url, json=body, params=params, files=files)
        except requests.RequestException as e:
            msg = f"{method} {url} failed: {e}"
            raise TransportError(msg) from e

    @staticmethod
    def check_response(response: requests.Response, expected_status: int) -> None:
        """Raise APIError unless the response has the expected status.

        The server usually explains failures in the body, either as
        {"error": "..."} / {"message": "..."} or, for validation failures, as a
        list of [field, message] pairs. Whatever can be decoded ends up in the
        error's message.
        """
        if response.status_code == expected_status:
            return
        raise APIError(response.status_code, expected_status, _error_message(response))

    @staticmethod
    def json_body(response: requests.Response) -> Any:
        """Decode a JSON body, raising DecodeError when it is malformed."""
        try:
            return response.json()
        except ValueError as e:
            msg = f"Malformed JSON in response: {e}"
            raise DecodeError(msg) from e

    @classmethod
    def decode(cls, response: requests.Response, key: str) -> Any:
        """Decode a JSON body and return the value stored under key."""
        body = cls.json_body(response)
        if not isinstance(body, dict) or key not in body:
            msg = f"Response has no {key!r} envelope"
            raise DecodeError(msg)
        return body[key]

    def plan(self) -> dict[str, Any]:
        """Get the account plan; only the account owner may read it."""
        response = self.round_trip("GET", "/plan.json")
        self.check_response(response, requests.codes.ok)
        plan: dict[str, Any] = self.decode(response, "plan")
        return plan


def _error_message(response: requests.Response) -> str | None:
    try:
        body = json.loads(response.text) if response.text else None
    except ValueError:
        return None

    if isinstance(body, dict):
        for key in ("error", "message", "errors"):
            value = body.get(key)
            if isinstance(value, str) and value:
                return value
        return None

    if isinstance(body, list):
        parts = [" ".join(str(v) for v in item) if isinstance(item, list) else str(item) for item in body]
        return "; ".join(p for p in parts if p) or None

    return None
