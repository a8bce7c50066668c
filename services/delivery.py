"""Wiring of the shared document delivery components.

The client, access cache, status poller and access broker are shared by
every view; each view gets its own :class:`DocumentAccessOrchestrator`.
"""

from __future__ import annotations

import logging

from adapters import document_adapter
from config.settings import get_settings
from models.document import Document
from services.access_broker import AccessBroker
from services.access_cache import AccessCache, RedisAccessCache, get_access_cache
from services.document_client import DocumentApiClient, get_document_client
from services.orchestrator import DocumentAccessOrchestrator
from services.presentation import PresentationAdapter
from services.status_poller import StatusPoller

logger = logging.getLogger(__name__)


class DocumentDelivery:
    """Shared collaborators plus a factory for per-view orchestrators."""

    def __init__(
        self,
        client: DocumentApiClient,
        cache: AccessCache,
        poller: StatusPoller | None = None,
        broker: AccessBroker | None = None,
    ) -> None:
        self.client = client
        self.cache = cache
        self.poller = poller or StatusPoller(client)
        self.broker = broker or AccessBroker(client, cache)

    async def start(self) -> None:
        await self.client.start()
        if isinstance(self.cache, RedisAccessCache):
            if await self.cache.ping():
                logger.info("Redis connection verified")
            else:
                logger.warning("Redis connection failed; access grants will not be cached")

    async def close(self) -> None:
        if isinstance(self.cache, RedisAccessCache):
            await self.cache.close()
        await self.client.close()

    def orchestrator(
        self,
        lesson_id: str,
        *,
        presenter: PresentationAdapter | None = None,
        locale: str | None = None,
    ) -> DocumentAccessOrchestrator:
        return DocumentAccessOrchestrator(
            lesson_id,
            cache=self.cache,
            poller=self.poller,
            broker=self.broker,
            presenter=presenter,
            locale=locale,
        )

    async def list_documents(self, lesson_id: str) -> list[Document]:
        return await document_adapter.list_documents(self.client, lesson_id)

    async def find_document(self, lesson_id: str, document_id: str) -> Document | None:
        for document in await self.list_documents(lesson_id):
            if document.id == document_id:
                return document
        return None


# ── Module-level Singleton ───────────────────────────────────

_delivery: DocumentDelivery | None = None


def get_document_delivery() -> DocumentDelivery:
    """Get the singleton delivery instance (create if needed)."""
    global _delivery
    if _delivery is None:
        settings = get_settings()
        _delivery = DocumentDelivery(get_document_client(), get_access_cache())
        logger.info(
            "Document delivery ready (cache=%s, poll_interval=%ss)",
            settings.access_cache_type, settings.status_poll_interval,
        )
    return _delivery
