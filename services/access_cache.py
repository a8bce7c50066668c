"""Access grant cache: keyed by (lesson, document), per-entry TTL.

Provides an abstract interface with an in-memory implementation and a Redis
implementation so the backing store can be swapped without touching the
orchestrator.

TTL policy:
- NONE documents are never cached (opened straight from catalog data).
- WATERMARK grants live ``access_ttl_watermark`` seconds.
- FULL grants live ``access_ttl_full`` seconds, clamped so an entry never
  outlives the grant's own ``expiresAt``.
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable

from redis.exceptions import RedisError

from config.settings import Settings, get_settings
from models.document import AccessGrant, ProtectionLevel

logger = logging.getLogger(__name__)

CacheKey = tuple[str, str]


def access_ttl_for(
    protection_level: ProtectionLevel, settings: Settings | None = None
) -> float | None:
    """Nominal cache TTL for a grant, or None when the level is never cached."""
    settings = settings or get_settings()
    if protection_level == ProtectionLevel.WATERMARK:
        return float(settings.access_ttl_watermark)
    if protection_level == ProtectionLevel.FULL:
        return float(settings.access_ttl_full)
    return None


def effective_ttl(grant: AccessGrant, ttl: float, now: float) -> float:
    """Clamp *ttl* so the entry expires no later than the grant itself."""
    remaining = grant.seconds_remaining(now)
    if remaining is None:
        return ttl
    return min(ttl, remaining)


# ── Abstract Interface ───────────────────────────────────────


class AccessCache(ABC):
    """Abstract access grant cache: implement for different backends."""

    @abstractmethod
    async def lookup(self, lesson_id: str, document_id: str) -> AccessGrant | None:
        """Return the cached grant, or None if absent or expired."""
        ...

    @abstractmethod
    async def store(
        self, lesson_id: str, document_id: str, grant: AccessGrant, ttl: float
    ) -> float:
        """Cache *grant* and return the effective TTL actually applied.

        A non-positive effective TTL means nothing was stored.
        """
        ...

    @abstractmethod
    async def invalidate(self, lesson_id: str, document_id: str) -> None:
        """Drop the entry for one document."""
        ...

    @abstractmethod
    async def invalidate_lesson(self, lesson_id: str) -> int:
        """Drop every entry of a lesson.  Returns count removed."""
        ...


# ── In-Memory Implementation ────────────────────────────────


@dataclass(frozen=True)
class CacheEntry:
    grant: AccessGrant
    ttl: float
    expires_at: float  # epoch seconds


class InMemoryAccessCache(AccessCache):
    """Dict-backed cache with lazy eviction on lookup."""

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._entries: dict[CacheKey, CacheEntry] = {}
        self._clock = clock

    async def lookup(self, lesson_id: str, document_id: str) -> AccessGrant | None:
        key = (lesson_id, document_id)
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() >= entry.expires_at:
            del self._entries[key]
            logger.debug("Access grant expired: %s/%s", lesson_id, document_id)
            return None
        return entry.grant

    async def store(
        self, lesson_id: str, document_id: str, grant: AccessGrant, ttl: float
    ) -> float:
        now = self._clock()
        ttl = effective_ttl(grant, ttl, now)
        key = (lesson_id, document_id)
        if ttl <= 0:
            self._entries.pop(key, None)
            logger.warning(
                "Access grant for %s/%s already expired, not cached", lesson_id, document_id
            )
            return ttl
        self._entries[key] = CacheEntry(grant=grant, ttl=ttl, expires_at=now + ttl)
        return ttl

    async def invalidate(self, lesson_id: str, document_id: str) -> None:
        self._entries.pop((lesson_id, document_id), None)

    async def invalidate_lesson(self, lesson_id: str) -> int:
        keys = [key for key in self._entries if key[0] == lesson_id]
        for key in keys:
            del self._entries[key]
        if keys:
            logger.info("Invalidated %d access grants for lesson %s", len(keys), lesson_id)
        return len(keys)

    def entry(self, lesson_id: str, document_id: str) -> CacheEntry | None:
        """Raw entry, expired or not."""
        return self._entries.get((lesson_id, document_id))

    @property
    def size(self) -> int:
        """Number of entries currently stored (may include expired)."""
        return len(self._entries)


# ── Redis Implementation ─────────────────────────────────────


class RedisAccessCache(AccessCache):
    """Redis-backed cache; expiry is delegated to Redis key TTLs.

    Supports multi-worker deployments.  Grants are serialized as JSON.
    When Redis is unreachable the cache degrades: lookups miss and stores are
    skipped, so documents still open, only without caching.
    """

    _KEY_PREFIX = "doc-access:"

    def __init__(self, redis_url: str, clock: Callable[[], float] = time.time) -> None:
        import redis.asyncio as aioredis

        self._redis = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_connect_timeout=10,
            socket_timeout=10,
        )
        self._clock = clock

    def _key(self, lesson_id: str, document_id: str) -> str:
        return f"{self._KEY_PREFIX}{lesson_id}:{document_id}"

    async def lookup(self, lesson_id: str, document_id: str) -> AccessGrant | None:
        try:
            data = await self._redis.get(self._key(lesson_id, document_id))
        except RedisError as exc:
            logger.warning("Access cache lookup failed for %s/%s: %s", lesson_id, document_id, exc)
            return None
        if data is None:
            return None
        try:
            return AccessGrant.model_validate_json(data)
        except ValueError:
            logger.warning("Failed to deserialize access grant: %s/%s", lesson_id, document_id)
            return None

    async def store(
        self, lesson_id: str, document_id: str, grant: AccessGrant, ttl: float
    ) -> float:
        ttl = effective_ttl(grant, ttl, self._clock())
        key = self._key(lesson_id, document_id)
        # Redis TTLs are whole seconds; round down so the entry never outlives the grant.
        seconds = int(ttl)
        try:
            if seconds <= 0:
                await self._redis.delete(key)
                return ttl
            await self._redis.set(key, grant.model_dump_json(), ex=seconds)
        except RedisError as exc:
            logger.warning("Access grant for %s/%s not cached: %s", lesson_id, document_id, exc)
            return 0.0
        return float(seconds)

    async def invalidate(self, lesson_id: str, document_id: str) -> None:
        try:
            await self._redis.delete(self._key(lesson_id, document_id))
        except RedisError as exc:
            logger.warning("Access cache invalidation failed for %s/%s: %s", lesson_id, document_id, exc)

    async def invalidate_lesson(self, lesson_id: str) -> int:
        try:
            keys = [
                key async for key in self._redis.scan_iter(match=f"{self._KEY_PREFIX}{lesson_id}:*")
            ]
            if not keys:
                return 0
            return await self._redis.delete(*keys)
        except RedisError as exc:
            logger.warning("Access cache invalidation failed for lesson %s: %s", lesson_id, exc)
            return 0

    async def close(self) -> None:
        """Close the Redis connection pool."""
        await self._redis.aclose()

    async def ping(self) -> bool:
        """Check Redis connectivity."""
        try:
            return await self._redis.ping()
        except Exception:
            return False


# ── Module-level Singleton ───────────────────────────────────

_cache: AccessCache | None = None


def get_access_cache() -> AccessCache:
    """Get the singleton access cache instance."""
    global _cache
    if _cache is None:
        settings = get_settings()
        if settings.access_cache_type == "redis" and settings.redis_url:
            _cache = RedisAccessCache(redis_url=settings.redis_url)
            logger.info("Initialized RedisAccessCache")
        else:
            _cache = InMemoryAccessCache()
            logger.info("Initialized InMemoryAccessCache")
    return _cache
