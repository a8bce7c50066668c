"""Document processing status poller.

Polls ``GET .../status`` on a fixed interval while a document is PENDING or
PROCESSING and stops on COMPLETED or FAILED.

- At most one status request per document is in flight; concurrent readers
  share it.
- COMPLETED results are cached per protection level; FAILED is never cached
  so a later read re-checks the server (supports retry).
- Failures are returned as :class:`PollResult` values carrying the typed
  exception instead of being raised.
- ``start()`` returns a :class:`PollHandle`; ``handle.cancel()`` releases the
  subscription on view teardown.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass
from typing import AsyncIterator, Awaitable, Callable

from adapters import document_adapter
from config.settings import Settings, get_settings
from errors import DocumentAccessError
from models.document import ProcessingState, ProcessingStatus, ProtectionLevel
from models.errors import ErrorCode
from services.document_client import DocumentApiClient

logger = logging.getLogger(__name__)

CacheKey = tuple[str, str]

# Forward-only ordering of processing states.  COMPLETED is final; FAILED may
# move back to PENDING/PROCESSING through an explicit retry, nothing else may
# regress.
_STATE_RANK = {
    ProcessingState.PENDING: 0,
    ProcessingState.PROCESSING: 1,
    ProcessingState.FAILED: 2,
    ProcessingState.COMPLETED: 3,
}

# Seconds between sweeps of stale per-document bookkeeping.
_PRUNE_INTERVAL = 60.0


def status_ttl_for(
    protection_level: ProtectionLevel | None, settings: Settings | None = None
) -> float:
    """How long a COMPLETED status stays fresh."""
    settings = settings or get_settings()
    if protection_level == ProtectionLevel.WATERMARK:
        return float(settings.status_ttl_watermark)
    if protection_level == ProtectionLevel.FULL:
        return float(settings.status_ttl_full)
    return float(settings.status_ttl_none)


@dataclass(frozen=True)
class PollResult:
    """Outcome of one status read: a status or a typed error, never both."""

    lesson_id: str
    document_id: str
    status: ProcessingStatus | None = None
    error: DocumentAccessError | None = None
    from_cache: bool = False

    @property
    def terminal(self) -> bool:
        if self.error is not None:
            return True
        return self.status is not None and self.status.is_terminal


PollCallback = Callable[[PollResult], "Awaitable[None] | None"]


class PollHandle:
    """A running poll subscription for one document."""

    def __init__(self, lesson_id: str, document_id: str) -> None:
        self.lesson_id = lesson_id
        self.document_id = document_id
        self.last_result: PollResult | None = None
        self._task: asyncio.Task[PollResult | None] | None = None

    def _attach(self, task: asyncio.Task[PollResult | None]) -> None:
        self._task = task

    def cancel(self) -> None:
        """Stop polling; no further requests or callbacks happen after this."""
        if self._task is not None and not self._task.done():
            self._task.cancel()
            logger.info("Polling cancelled for %s/%s", self.lesson_id, self.document_id)

    @property
    def done(self) -> bool:
        return self._task is None or self._task.done()

    @property
    def cancelled(self) -> bool:
        return self._task is not None and self._task.cancelled()

    async def wait(self) -> PollResult | None:
        """Wait for the terminal result; None when cancelled first."""
        if self._task is None:
            return self.last_result
        await asyncio.wait({self._task})
        if self._task.cancelled():
            return None
        return self._task.result()


class StatusPoller:
    """Reads and polls processing status for lesson documents."""

    def __init__(
        self,
        client: DocumentApiClient,
        *,
        interval: float | None = None,
        max_polls: int | None = None,
        settings: Settings | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._settings = settings or get_settings()
        self._client = client
        self._interval = self._settings.status_poll_interval if interval is None else interval
        self._max_polls = self._settings.status_poll_max_polls if max_polls is None else max_polls
        self._clock = clock
        self._sleep = sleep
        self._in_flight: dict[CacheKey, asyncio.Task[ProcessingStatus]] = {}
        self._completed: dict[CacheKey, tuple[ProcessingStatus, float]] = {}
        self._last_seen: dict[CacheKey, tuple[ProcessingState, float]] = {}
        self._next_prune = clock() + _PRUNE_INTERVAL

    # -- single reads ----------------------------------------------------------

    async def fetch(
        self,
        lesson_id: str,
        document_id: str,
        protection_level: ProtectionLevel | None = None,
    ) -> PollResult:
        """Read the current status once, honouring the COMPLETED cache."""
        key = (lesson_id, document_id)
        cached = self._cached_completed(key)
        if cached is not None:
            logger.debug("Status cache hit: %s/%s COMPLETED", lesson_id, document_id)
            return PollResult(lesson_id, document_id, status=cached, from_cache=True)

        task = self._in_flight.get(key)
        if task is None:
            task = asyncio.create_task(
                document_adapter.fetch_status(self._client, lesson_id, document_id)
            )
            self._in_flight[key] = task
            task.add_done_callback(lambda _t, k=key: self._in_flight.pop(k, None))
        else:
            logger.debug("Joining in-flight status request: %s/%s", lesson_id, document_id)

        try:
            status = await asyncio.shield(task)
        except DocumentAccessError as exc:
            logger.warning(
                "Status check failed for %s/%s: %s", lesson_id, document_id, exc.message
            )
            return PollResult(lesson_id, document_id, error=exc)

        status = self._accept(key, status)
        if status.status == ProcessingState.COMPLETED:
            ttl = status_ttl_for(protection_level or status.protection_level, self._settings)
            self._completed[key] = (status, self._clock() + ttl)
        return PollResult(lesson_id, document_id, status=status)

    def _cached_completed(self, key: CacheKey) -> ProcessingStatus | None:
        entry = self._completed.get(key)
        if entry is None:
            return None
        status, fresh_until = entry
        if self._clock() >= fresh_until:
            del self._completed[key]
            return None
        return status

    def _accept(self, key: CacheKey, status: ProcessingStatus) -> ProcessingStatus:
        """Record *status*, refusing regressions other than out of FAILED."""
        self._prune()
        seen = self._last_seen.get(key)
        previous = seen[0] if seen is not None else None
        if (
            previous is not None
            and previous != ProcessingState.FAILED
            and _STATE_RANK[status.status] < _STATE_RANK[previous]
        ):
            logger.warning(
                "Ignoring backward status %s → %s for %s/%s",
                previous.value, status.status.value, key[0], key[1],
            )
            return status.model_copy(update={"status": previous})
        self._last_seen[key] = (status.status, self._clock())
        return status

    def _prune(self) -> None:
        """Drop expired COMPLETED results and long-unseen documents."""
        now = self._clock()
        if now < self._next_prune:
            return
        self._next_prune = now + _PRUNE_INTERVAL
        retention = max(
            self._settings.status_ttl_none,
            self._settings.status_ttl_watermark,
            self._settings.status_ttl_full,
        )
        for key in [k for k, (_, fresh_until) in self._completed.items() if now >= fresh_until]:
            del self._completed[key]
        for key in [k for k, (_, seen_at) in self._last_seen.items() if now - seen_at > retention]:
            del self._last_seen[key]

    # -- polling ---------------------------------------------------------------

    async def observe(
        self,
        lesson_id: str,
        document_id: str,
        *,
        protection_level: ProtectionLevel | None = None,
        enabled: bool = True,
        wait_first: bool = False,
    ) -> AsyncIterator[PollResult]:
        """Yield status results until a terminal one (inclusive).

        Yields nothing when disabled or when no document id is given.
        ``wait_first`` skips the immediate read, for callers that just
        observed a non-terminal status themselves.
        """
        if not enabled or not lesson_id or not document_id:
            return

        polls = 0
        if wait_first:
            await self._sleep(self._interval)
        while True:
            result = await self.fetch(lesson_id, document_id, protection_level)
            polls += 1
            yield result
            if result.terminal:
                return
            if self._max_polls and polls >= self._max_polls:
                logger.warning(
                    "Polling gave up on %s/%s after %d polls", lesson_id, document_id, polls
                )
                yield PollResult(
                    lesson_id,
                    document_id,
                    error=DocumentAccessError(
                        "Timed out. The document is still being processed. "
                        "Try again later.",
                        code=ErrorCode.POLL_TIMEOUT,
                    ),
                )
                return
            logger.info(
                "Still %s: %s/%s, checking again in %ss",
                result.status.status.value if result.status else "?",
                lesson_id, document_id, self._interval,
            )
            await self._sleep(self._interval)

    def start(
        self,
        lesson_id: str,
        document_id: str,
        on_result: PollCallback | None = None,
        *,
        protection_level: ProtectionLevel | None = None,
        wait_first: bool = False,
    ) -> PollHandle:
        """Run :meth:`observe` in the background and return its handle."""
        handle = PollHandle(lesson_id, document_id)

        async def _run() -> PollResult | None:
            async for result in self.observe(
                lesson_id,
                document_id,
                protection_level=protection_level,
                wait_first=wait_first,
            ):
                handle.last_result = result
                if on_result is not None:
                    outcome = on_result(result)
                    if inspect.isawaitable(outcome):
                        await outcome
            return handle.last_result

        handle._attach(asyncio.create_task(_run()))
        logger.info("Polling started for %s/%s", lesson_id, document_id)
        return handle

    # -- invalidation / retry --------------------------------------------------

    def invalidate(self, lesson_id: str, document_id: str) -> None:
        """Forget cached status so the next read goes to the server."""
        key = (lesson_id, document_id)
        self._completed.pop(key, None)
        self._last_seen.pop(key, None)

    def invalidate_lesson(self, lesson_id: str) -> None:
        for key in [k for k in self._completed if k[0] == lesson_id]:
            del self._completed[key]
        for key in [k for k in self._last_seen if k[0] == lesson_id]:
            del self._last_seen[key]

    async def retry_processing(self, lesson_id: str, document_id: str) -> PollResult:
        """Ask the server to reprocess a FAILED document, then re-read status."""
        try:
            await document_adapter.retry_processing(self._client, lesson_id, document_id)
        except DocumentAccessError as exc:
            logger.warning(
                "Processing retry rejected for %s/%s: %s", lesson_id, document_id, exc.message
            )
            return PollResult(lesson_id, document_id, error=exc)
        logger.info("Processing retry requested for %s/%s", lesson_id, document_id)
        self.invalidate(lesson_id, document_id)
        return await self.fetch(lesson_id, document_id)
