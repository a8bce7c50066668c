"""Presentation adapters: where flow updates leave the orchestrator.

Rendering itself happens elsewhere; an adapter only has to accept updates
without blocking the event loop.
"""

from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator, Protocol

from models.flow import FlowUpdate

logger = logging.getLogger(__name__)


class PresentationAdapter(Protocol):
    def publish(self, update: FlowUpdate) -> None:
        ...


class LoggingPresentationAdapter:
    """Default adapter: writes every update to the log."""

    def publish(self, update: FlowUpdate) -> None:
        if update.error:
            logger.warning(
                "[%s/%s] %s: %s", update.lesson_id, update.document_id,
                update.state.value, update.error,
            )
        else:
            logger.info(
                "[%s/%s] %s %s", update.lesson_id, update.document_id,
                update.state.value, update.url or update.message or "",
            )


_CLOSED = object()


class QueuePresentationAdapter:
    """Buffers updates for a consumer such as an SSE stream."""

    def __init__(self) -> None:
        self._queue: asyncio.Queue[object] = asyncio.Queue()
        self.published: list[FlowUpdate] = []

    def publish(self, update: FlowUpdate) -> None:
        self.published.append(update)
        self._queue.put_nowait(update)

    def close(self) -> None:
        """End :meth:`stream` once buffered updates are drained."""
        self._queue.put_nowait(_CLOSED)

    async def stream(self) -> AsyncIterator[FlowUpdate]:
        while True:
            item = await self._queue.get()
            if item is _CLOSED:
                return
            yield item  # type: ignore[misc]
