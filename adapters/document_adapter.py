"""Adapter for the lesson document API → internal document models.

API endpoints handled:
- GET  /lessons/{lessonId}/documents                              → list[Document]
- GET  /lessons/{lessonId}/documents/{documentId}/status          → ProcessingStatus
- POST /lessons/{lessonId}/documents/{documentId}/access          → AccessGrant
- POST /lessons/{lessonId}/documents/{documentId}/retry-processing → ProcessingStatus | None
"""

from __future__ import annotations

import logging
from typing import Any

from pydantic import ValidationError

from errors import DocumentAccessError
from models.document import (
    AccessGrant,
    Document,
    DocumentTranslation,
    ProcessingState,
    ProcessingStatus,
    ProtectionLevel,
    RateLimitInfo,
)
from models.errors import ErrorCode
from services.document_client import DocumentApiClient

logger = logging.getLogger(__name__)


def _document_path(lesson_id: str, document_id: str) -> str:
    return f"/lessons/{lesson_id}/documents/{document_id}"


def _invalid_response(what: str) -> DocumentAccessError:
    return DocumentAccessError(
        f"Invalid {what} response from the document service.",
        code=ErrorCode.INVALID_RESPONSE,
    )


# ---------------------------------------------------------------------------
# Response → Internal Model conversions
# ---------------------------------------------------------------------------

def _protection_level(value: Any) -> ProtectionLevel:
    try:
        return ProtectionLevel(value or ProtectionLevel.NONE)
    except ValueError:
        logger.warning("Unknown protectionLevel %r, treating as NONE", value)
        return ProtectionLevel.NONE


def parse_document(raw: dict[str, Any]) -> Document:
    """Convert a catalog entry to :class:`Document`.

    A missing ``protectionLevel`` means the document is unprotected.
    """
    translations = tuple(
        DocumentTranslation(
            locale=str(t["locale"]),
            title=t.get("title") or "",
            description=t.get("description") or "",
            url=t.get("url") or "",
        )
        for t in raw.get("translations") or []
        if isinstance(t, dict) and t.get("locale")
    )
    return Document(
        id=str(raw.get("id", "")),
        filename=raw.get("filename") or "",
        protection_level=_protection_level(raw.get("protectionLevel")),
        translations=translations,
        url=raw.get("url") or "",
    )


def parse_status(raw: dict[str, Any]) -> ProcessingStatus:
    """Convert a ``/status`` payload to :class:`ProcessingStatus`."""
    try:
        return ProcessingStatus(
            document_id=str(raw["documentId"]),
            status=ProcessingState(raw["processingStatus"]),
            filename=raw.get("filename") or "",
            protection_level=(
                _protection_level(raw["protectionLevel"])
                if raw.get("protectionLevel") else None
            ),
            processing_error=raw.get("processingError"),
            processing_attempts=raw.get("processingAttempts") or 0,
            can_retry_processing=bool(raw.get("canRetryProcessing")),
            processing_started_at=raw.get("processingStartedAt"),
            processing_completed_at=raw.get("processingCompletedAt"),
        )
    except (KeyError, ValueError, ValidationError) as exc:
        logger.warning("Unparseable status payload: %s", exc)
        raise _invalid_response("status") from exc


def parse_access(raw: dict[str, Any]) -> AccessGrant:
    """Convert an ``/access`` payload to :class:`AccessGrant`.

    Two shapes exist: FULL returns ``{signedUrl, expiresAt, rateLimitInfo}``,
    WATERMARK returns ``{url}``.
    """
    try:
        if raw.get("signedUrl"):
            rate_limit = raw.get("rateLimitInfo")
            return AccessGrant(
                url=raw["signedUrl"],
                expires_at=raw.get("expiresAt"),
                rate_limit_info=(
                    RateLimitInfo.model_validate(rate_limit) if rate_limit else None
                ),
            )
        if raw.get("url"):
            return AccessGrant(url=raw["url"], expires_at=raw.get("expiresAt"))
    except ValidationError as exc:
        logger.warning("Unparseable access payload: %s", exc)
        raise _invalid_response("access") from exc
    raise _invalid_response("access")


# ---------------------------------------------------------------------------
# High-level API calls (through DocumentApiClient)
# ---------------------------------------------------------------------------

async def list_documents(client: DocumentApiClient, lesson_id: str) -> list[Document]:
    """Fetch the document catalog of a lesson.

    GET /lessons/{lessonId}/documents

    A failed fetch yields an empty catalog; the lesson simply shows no
    documents.
    """
    try:
        raw = await client.get(f"/lessons/{lesson_id}/documents")
    except DocumentAccessError as exc:
        logger.warning("Document catalog unavailable for lesson %s: %s", lesson_id, exc)
        return []
    if isinstance(raw, dict):
        raw = raw.get("documents") or raw.get("data") or []
    if not isinstance(raw, list):
        return []
    documents = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        try:
            documents.append(parse_document(item))
        except ValidationError as exc:
            logger.warning("Skipping unparseable catalog entry in lesson %s: %s", lesson_id, exc)
    return documents


async def fetch_status(
    client: DocumentApiClient, lesson_id: str, document_id: str
) -> ProcessingStatus:
    """GET /lessons/{lessonId}/documents/{documentId}/status"""
    raw = await client.get(f"{_document_path(lesson_id, document_id)}/status")
    if not isinstance(raw, dict):
        raise _invalid_response("status")
    return parse_status(raw)


async def request_access(
    client: DocumentApiClient, lesson_id: str, document_id: str
) -> AccessGrant:
    """POST /lessons/{lessonId}/documents/{documentId}/access"""
    raw = await client.post(f"{_document_path(lesson_id, document_id)}/access")
    if not isinstance(raw, dict):
        raise _invalid_response("access")
    return parse_access(raw)


async def retry_processing(
    client: DocumentApiClient, lesson_id: str, document_id: str
) -> ProcessingStatus | None:
    """POST /lessons/{lessonId}/documents/{documentId}/retry-processing

    Returns the new status when the server echoes one.
    """
    raw = await client.post(f"{_document_path(lesson_id, document_id)}/retry-processing")
    if isinstance(raw, dict) and raw.get("processingStatus"):
        return parse_status({"documentId": document_id, **raw})
    return None
