"""Lesson document API: catalog, SSE open stream and processing retry."""

from __future__ import annotations

import asyncio
import logging
from typing import AsyncGenerator

from fastapi import APIRouter, Depends, HTTPException
from sse_starlette.sse import EventSourceResponse

from errors import DocumentAccessError
from models.document import Document
from models.request import OpenDocumentRequest, RetryProcessingResponse
from services.delivery import DocumentDelivery, get_document_delivery
from services.presentation import QueuePresentationAdapter

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/lessons", tags=["documents"])


def _http_error(exc: DocumentAccessError) -> HTTPException:
    status = exc.status_code if exc.status_code in (401, 403, 404, 409, 429) else 502
    return HTTPException(
        status_code=status,
        detail={"code": exc.code.value, "message": exc.message},
    )


@router.get("/{lesson_id}/documents")
async def list_lesson_documents(
    lesson_id: str,
    delivery: DocumentDelivery = Depends(get_document_delivery),
):
    """Document catalog of a lesson (empty when the catalog is unavailable)."""
    documents = await delivery.list_documents(lesson_id)
    return [d.model_dump(by_alias=True, mode="json") for d in documents]


async def _flow_events(
    delivery: DocumentDelivery,
    lesson_id: str,
    document: Document,
    locale: str | None,
) -> AsyncGenerator[dict, None]:
    """Run one selection and relay every flow update as an SSE event.

    The stream is the hosting view: when the client disconnects the
    generator is closed and the orchestrator is torn down.
    """
    presenter = QueuePresentationAdapter()
    orchestrator = delivery.orchestrator(lesson_id, presenter=presenter, locale=locale)

    async def _drive() -> None:
        try:
            await orchestrator.select(document)
        finally:
            presenter.close()

    task = asyncio.create_task(_drive())
    try:
        async for update in presenter.stream():
            yield {
                "event": "flow",
                "data": update.model_dump_json(by_alias=True, exclude_none=True),
            }
    finally:
        await orchestrator.teardown()
        (outcome,) = await asyncio.gather(task, return_exceptions=True)
        if isinstance(outcome, Exception):
            logger.error(
                "Open flow for %s/%s crashed", lesson_id, document.id, exc_info=outcome
            )


@router.post("/{lesson_id}/documents/{document_id}/open")
async def open_document(
    lesson_id: str,
    document_id: str,
    req: OpenDocumentRequest | None = None,
    delivery: DocumentDelivery = Depends(get_document_delivery),
):
    """Resolve a document to an openable URL, streaming state via SSE."""
    req = req or OpenDocumentRequest()
    document = req.document
    if document is None:
        document = await delivery.find_document(lesson_id, document_id)
    if document is None or document.id != document_id:
        raise HTTPException(status_code=404, detail="Document not found")

    logger.info(
        "Opening document %s/%s (protection=%s)",
        lesson_id, document_id, document.protection_level.value,
    )
    return EventSourceResponse(
        _flow_events(delivery, lesson_id, document, req.locale),
        media_type="text/event-stream",
    )


@router.post(
    "/{lesson_id}/documents/{document_id}/retry-processing",
    response_model=RetryProcessingResponse,
)
async def retry_document_processing(
    lesson_id: str,
    document_id: str,
    delivery: DocumentDelivery = Depends(get_document_delivery),
):
    """Ask the server to reprocess a FAILED document and return its new status."""
    result = await delivery.poller.retry_processing(lesson_id, document_id)
    if result.error is not None:
        raise _http_error(result.error)
    await delivery.cache.invalidate(lesson_id, document_id)
    return RetryProcessingResponse(
        lesson_id=lesson_id, document_id=document_id, status=result.status
    )
