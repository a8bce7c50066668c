"""Document catalog, processing status and access grant models.

These are the internal representation used by the poller, broker, cache and
orchestrator.  ``adapters/document_adapter.py`` converts raw document API
payloads into them.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import ConfigDict, Field

from models.base import CamelModel


class ProtectionLevel(str, Enum):
    """How a document must be obtained before it can be viewed."""

    NONE = "NONE"
    WATERMARK = "WATERMARK"
    FULL = "FULL"


class ProcessingState(str, Enum):
    """Server-side processing lifecycle of a protected document."""

    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (ProcessingState.COMPLETED, ProcessingState.FAILED)


_STATUS_MESSAGES = {
    ProcessingState.PENDING: "waiting for processing",
    ProcessingState.PROCESSING: "being processed",
    ProcessingState.FAILED: "processing failed",
    ProcessingState.COMPLETED: "ready",
}


def status_message(status: ProcessingState | str) -> str:
    """Short human-readable description of a processing state."""
    try:
        return _STATUS_MESSAGES[ProcessingState(status)]
    except ValueError:
        return "in an unknown state"


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------

class DocumentTranslation(CamelModel):
    """Localized title/description and the direct URL of a document."""

    model_config = ConfigDict(frozen=True)

    locale: str
    title: str = ""
    description: str = ""
    url: str = ""


class Document(CamelModel):
    """A lesson-attached document as listed by the catalog (read-only)."""

    model_config = ConfigDict(frozen=True)

    id: str
    filename: str = ""
    protection_level: ProtectionLevel = ProtectionLevel.NONE
    translations: tuple[DocumentTranslation, ...] = ()
    url: str = ""  # direct reference when the catalog exposes one untranslated

    def translation_for(self, locale: str | None = None) -> DocumentTranslation | None:
        """Return the translation for *locale*, falling back to the first one."""
        if not self.translations:
            return None
        if locale:
            for translation in self.translations:
                if translation.locale == locale:
                    return translation
        return self.translations[0]

    def catalog_url(self, locale: str | None = None) -> str:
        """Direct URL from catalog data, used for unprotected documents."""
        translation = self.translation_for(locale)
        if translation is not None and translation.url:
            return translation.url
        return self.url

    def title(self, locale: str | None = None) -> str:
        translation = self.translation_for(locale)
        if translation is not None and translation.title:
            return translation.title
        return self.filename


# ---------------------------------------------------------------------------
# Processing status
# ---------------------------------------------------------------------------

class ProcessingStatus(CamelModel):
    """Client-side view of a document's server-side processing lifecycle."""

    model_config = ConfigDict(frozen=True)

    document_id: str
    status: ProcessingState
    filename: str = ""
    protection_level: ProtectionLevel | None = None
    processing_error: str | None = None
    processing_attempts: int = 0
    can_retry_processing: bool = False
    processing_started_at: datetime | None = None
    processing_completed_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


# ---------------------------------------------------------------------------
# Access
# ---------------------------------------------------------------------------

class RateLimitInfo(CamelModel):
    """Quota metadata returned with FULL-protection access grants."""

    model_config = ConfigDict(frozen=True)

    limit: int
    remaining: int
    reset_at: datetime

    @property
    def display(self) -> str:
        """Quota as shown in the quota bar, e.g. ``1/5``."""
        return f"{self.remaining}/{self.limit}"


class AccessGrant(CamelModel):
    """A time-limited reference permitting retrieval of a processed document."""

    model_config = ConfigDict(frozen=True)

    url: str
    expires_at: datetime | None = None
    rate_limit_info: RateLimitInfo | None = Field(default=None)

    def seconds_remaining(self, now: float) -> float | None:
        """Seconds until ``expires_at`` relative to epoch time *now*."""
        if self.expires_at is None:
            return None
        return self.expires_at.timestamp() - now
