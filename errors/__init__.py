"""Exception hierarchy for document delivery."""

from errors.exceptions import (
    AuthError,
    DocumentAccessError,
    DocumentStillProcessingError,
    ForbiddenError,
    NotFoundError,
    ProcessingFailedError,
    RateLimitError,
    TransientNetworkError,
)

__all__ = [
    "AuthError",
    "DocumentAccessError",
    "DocumentStillProcessingError",
    "ForbiddenError",
    "NotFoundError",
    "ProcessingFailedError",
    "RateLimitError",
    "TransientNetworkError",
]
