"""Access broker: obtains time-limited document URLs.

Called by the orchestrator once a protected document is COMPLETED and no
cached grant exists.  On success the grant is written into the access cache
and any quota metadata is kept for display.  Quota metadata lives in its own
registry so the quota bar still shows when a later open is served from cache.

The broker is shared by every view, so it also owns the per-document
in-flight marker: concurrent requests for the same document, even from
different views, join one outstanding access call.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable

from adapters import document_adapter
from config.settings import Settings, get_settings
from errors import RateLimitError
from models.document import AccessGrant, ProtectionLevel, RateLimitInfo
from services.access_cache import AccessCache, access_ttl_for
from services.document_client import DocumentApiClient

logger = logging.getLogger(__name__)

CacheKey = tuple[str, str]


class AccessBroker:
    """Requests access grants and records their side effects."""

    def __init__(
        self,
        client: DocumentApiClient,
        cache: AccessCache,
        *,
        settings: Settings | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._client = client
        self._cache = cache
        self._settings = settings or get_settings()
        self._clock = clock
        self._rate_limits: dict[CacheKey, RateLimitInfo] = {}
        self._in_flight: dict[CacheKey, asyncio.Task[AccessGrant]] = {}
        self.request_count = 0

    async def request_access(
        self,
        lesson_id: str,
        document_id: str,
        protection_level: ProtectionLevel,
    ) -> AccessGrant:
        """Return a grant for the document, requesting one only when needed.

        Joins an access call already in flight for the same document, and
        returns a grant another caller cached in the meantime.

        Raises:
            ValueError: for unprotected documents, which never need a grant.
            RateLimitError: quota exhausted; the quota is recorded first.
            DocumentAccessError: any other classified failure.
        """
        ttl = access_ttl_for(protection_level, self._settings)
        if ttl is None:
            raise ValueError(f"document {document_id} is not protected, nothing to request")

        key = (lesson_id, document_id)
        task = self._in_flight.get(key)
        if task is None:
            cached = await self._cache.lookup(lesson_id, document_id)
            if cached is not None:
                logger.info("Access grant already cached for %s/%s", lesson_id, document_id)
                return cached
            task = self._in_flight.get(key)

        if task is None:
            task = asyncio.create_task(
                self._request(lesson_id, document_id, protection_level, ttl)
            )
            self._in_flight[key] = task
            task.add_done_callback(lambda _t, k=key: self._in_flight.pop(k, None))
        else:
            logger.info("Joining in-flight access request: %s/%s", lesson_id, document_id)
        return await asyncio.shield(task)

    async def _request(
        self,
        lesson_id: str,
        document_id: str,
        protection_level: ProtectionLevel,
        ttl: float,
    ) -> AccessGrant:
        key = (lesson_id, document_id)
        self.request_count += 1
        logger.info(
            "Requesting %s access for %s/%s", protection_level.value, lesson_id, document_id
        )
        try:
            grant = await document_adapter.request_access(self._client, lesson_id, document_id)
        except RateLimitError as exc:
            self._record_rate_limit(key, exc.rate_limit_info)
            logger.warning(
                "Access quota exhausted for %s/%s (limit=%d, reset_at=%s)",
                lesson_id, document_id, exc.limit, exc.reset_at.isoformat(),
            )
            raise

        if grant.rate_limit_info is not None:
            self._record_rate_limit(key, grant.rate_limit_info)
            logger.info(
                "Access quota for %s/%s: %s",
                lesson_id, document_id, grant.rate_limit_info.display,
            )

        stored_ttl = await self._cache.store(lesson_id, document_id, grant, ttl)
        logger.info(
            "Access granted for %s/%s (cached %.0fs, expires_at=%s)",
            lesson_id, document_id, max(stored_ttl, 0),
            grant.expires_at.isoformat() if grant.expires_at else "-",
        )
        return grant

    # -- quota registry --------------------------------------------------------

    def _record_rate_limit(self, key: CacheKey, info: RateLimitInfo) -> None:
        self._prune_rate_limits()
        self._rate_limits[key] = info

    def _prune_rate_limits(self) -> None:
        # Quota metadata is stale once its window has reset.
        now = self._clock()
        for key in [k for k, v in self._rate_limits.items() if v.reset_at.timestamp() <= now]:
            del self._rate_limits[key]

    def rate_limit_for(self, lesson_id: str, document_id: str) -> RateLimitInfo | None:
        """Last quota metadata seen for a document, until its window resets."""
        key = (lesson_id, document_id)
        info = self._rate_limits.get(key)
        if info is not None and info.reset_at.timestamp() <= self._clock():
            del self._rate_limits[key]
            return None
        return info

    def forget(self, lesson_id: str, document_id: str) -> None:
        self._rate_limits.pop((lesson_id, document_id), None)

    def forget_lesson(self, lesson_id: str) -> None:
        for key in [k for k in self._rate_limits if k[0] == lesson_id]:
            del self._rate_limits[key]
