"""
Custom exception classes for the Lighthouse client and its tools.
"""

from __future__ import annotations


class LighthouseError(Exception):
    """Base exception for Lighthouse API errors."""


class TransportError(LighthouseError):
    """Raised when the HTTP request itself fails (DNS, connection, TLS...)."""


class APIError(LighthouseError):
    """Raised when the server answers with an unexpected status code."""

    status_code: int
    expected_status: int
    message: str | None

    def __init__(self, status_code: int, expected_status: int, message: str | None = None) -> None:
        self.status_code = status_code
        self.expected_status = expected_status
        self.message = message
        if message:
            text = f"Lighthouse API error {status_code}: {message}"
        else:
            text = f"Lighthouse API error: expected status {expected_status}, got {status_code}"
        super().__init__(text)


class DecodeError(LighthouseError):
    """Raised when a response body is not the expected JSON envelope."""


class NotFoundError(LighthouseError):
    """Raised when a lookup by name, title or revision has no match."""


class MigrationError(Exception):
    """Base exception for migration errors."""
