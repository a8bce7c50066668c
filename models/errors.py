"""Structured error codes surfaced to the presentation layer.

Every error update carries one of these codes plus a human-readable detail::

    {ERROR_CODE}: {human_readable_detail}
"""

from __future__ import annotations

from enum import Enum


class ErrorCode(str, Enum):
    """Error codes attached to ``ERRORED`` flow updates."""

    AUTH_REQUIRED = "AUTH_REQUIRED"
    FORBIDDEN = "FORBIDDEN"
    NOT_FOUND = "NOT_FOUND"
    RATE_LIMITED = "RATE_LIMITED"
    PROCESSING_FAILED = "PROCESSING_FAILED"
    STILL_PROCESSING = "STILL_PROCESSING"
    POLL_TIMEOUT = "POLL_TIMEOUT"
    NETWORK_ERROR = "NETWORK_ERROR"
    REQUEST_FAILED = "REQUEST_FAILED"
    INVALID_RESPONSE = "INVALID_RESPONSE"
    INTERNAL_ERROR = "INTERNAL_ERROR"

    @property
    def terminal(self) -> bool:
        """False for codes the user may recover from by trying again later."""
        return self not in (
            ErrorCode.RATE_LIMITED,
            ErrorCode.STILL_PROCESSING,
            ErrorCode.NETWORK_ERROR,
            ErrorCode.POLL_TIMEOUT,
        )


def format_error(code: ErrorCode, detail: str) -> str:
    """Format an error for logs and SSE payloads.

    Returns:
        ``{ERROR_CODE}: {detail}``
    """
    return f"{code.value}: {detail}"
