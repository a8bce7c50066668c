"""API request/response models."""

from __future__ import annotations

from models.base import CamelModel
from models.document import Document, ProcessingStatus


class OpenDocumentRequest(CamelModel):
    """Body of ``POST /api/lessons/{lessonId}/documents/{documentId}/open``.

    ``document`` is the catalog entry the frontend already holds; when
    omitted the catalog is fetched to find it.
    """

    locale: str | None = None
    document: Document | None = None


class RetryProcessingResponse(CamelModel):
    lesson_id: str
    document_id: str
    status: ProcessingStatus
