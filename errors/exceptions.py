"""Domain-specific exceptions for document delivery.

These exceptions let the poller, broker and orchestrator distinguish between
failure modes and surface each one distinctly instead of collapsing them into
a generic failure.
"""

from __future__ import annotations

import math
import time
from datetime import datetime

from models.document import ProcessingState, RateLimitInfo
from models.errors import ErrorCode


class DocumentAccessError(Exception):
    """Base class for every document delivery failure.

    ``message`` is always human-readable and safe to show to the user.
    """

    code: ErrorCode = ErrorCode.REQUEST_FAILED

    def __init__(
        self,
        message: str,
        *,
        code: ErrorCode | None = None,
        status_code: int | None = None,
    ) -> None:
        self.message = message
        if code is not None:
            self.code = code
        self.status_code = status_code
        super().__init__(message)

    @property
    def retryable(self) -> bool:
        return not self.code.terminal


class AuthError(DocumentAccessError):
    """401/403 or missing token. Terminal: the caller must re-authenticate."""

    code = ErrorCode.AUTH_REQUIRED

    def __init__(
        self,
        message: str = "You need to log in to access this document.",
        *,
        status_code: int | None = 401,
    ) -> None:
        super().__init__(message, status_code=status_code)


class ForbiddenError(AuthError):
    """403: authenticated, but not allowed to access the document."""

    code = ErrorCode.FORBIDDEN

    def __init__(self, message: str = "You do not have access to this document.") -> None:
        super().__init__(message, status_code=403)


class NotFoundError(DocumentAccessError):
    """404: the lesson or document reference is invalid."""

    code = ErrorCode.NOT_FOUND

    def __init__(self, message: str = "Document not found.") -> None:
        super().__init__(message, status_code=404)


class RateLimitError(DocumentAccessError):
    """429: access quota exhausted; retryable after ``reset_at``."""

    code = ErrorCode.RATE_LIMITED

    def __init__(
        self,
        limit: int,
        reset_at: datetime,
        remaining: int = 0,
        *,
        now: float | None = None,
    ) -> None:
        self.limit = limit
        self.remaining = remaining
        self.reset_at = reset_at
        now = time.time() if now is None else now
        minutes = max(0, math.ceil((reset_at.timestamp() - now) / 60))
        super().__init__(
            f"Limit of {limit} accesses per hour reached. "
            f"Try again in {minutes} minutes.",
            status_code=429,
        )

    @property
    def rate_limit_info(self) -> RateLimitInfo:
        return RateLimitInfo(limit=self.limit, remaining=self.remaining, reset_at=self.reset_at)


class ProcessingFailedError(DocumentAccessError):
    """Server-side processing ended in FAILED.

    ``message`` is the raw ``processingError`` text when the server sent one.
    """

    code = ErrorCode.PROCESSING_FAILED

    def __init__(self, processing_error: str | None, *, can_retry: bool = False) -> None:
        self.processing_error = processing_error
        self.can_retry = can_retry
        super().__init__(processing_error or "Document processing failed.")

    @property
    def retryable(self) -> bool:
        return self.can_retry


class DocumentStillProcessingError(DocumentAccessError):
    """409 from the access endpoint: the document is not ready yet."""

    code = ErrorCode.STILL_PROCESSING

    def __init__(self, status: ProcessingState = ProcessingState.PROCESSING) -> None:
        self.status = status
        super().__init__(
            f"Document is {status.value.lower()}. Please wait...",
            status_code=409,
        )


class TransientNetworkError(DocumentAccessError):
    """Network failure or 5xx that outlived the transport retry budget."""

    code = ErrorCode.NETWORK_ERROR

    def __init__(
        self,
        message: str = "Could not reach the document service. Try again.",
        *,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message, status_code=status_code)
