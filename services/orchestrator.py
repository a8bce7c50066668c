"""Document access orchestrator: the single entry point for a selection.

One orchestrator serves one hosting view (a lesson page, an SSE stream).  It
keeps a per-document arena of :class:`DocumentFlow` state machines, so
different documents run independently while a document that is already in
progress is never started twice.

Selection rules, first match wins:

1. ``NONE`` protection → DIRECT_OPEN with the catalog URL, no network calls.
2. A live cached grant → CACHED_OPEN, no network calls.
3. Otherwise CHECKING → (POLLING)* → REQUESTING_ACCESS → OPENED, with any
   classified failure ending in ERRORED.

``teardown()`` cancels outstanding polls and flows and silences late
results, so nothing is published to a consumer that has gone away.
"""

from __future__ import annotations

import asyncio
import logging
from functools import partial

from errors import (
    DocumentAccessError,
    DocumentStillProcessingError,
    ProcessingFailedError,
    RateLimitError,
)
from models.document import (
    AccessGrant,
    Document,
    ProcessingState,
    ProcessingStatus,
    ProtectionLevel,
    status_message,
)
from models.errors import ErrorCode, format_error
from models.flow import TRANSITIONS, FlowState, FlowUpdate
from services.access_broker import AccessBroker
from services.access_cache import AccessCache
from services.presentation import LoggingPresentationAdapter, PresentationAdapter
from services.status_poller import PollHandle, PollResult, StatusPoller

logger = logging.getLogger(__name__)


class InvalidTransitionError(RuntimeError):
    """A flow tried to move along an edge the state machine does not have."""


class DocumentFlow:
    """State of one document's access flow within a view."""

    def __init__(self, lesson_id: str, document: Document) -> None:
        self.lesson_id = lesson_id
        self.document = document
        self.state = FlowState.IDLE
        self.history: list[FlowState] = [FlowState.IDLE]
        self.url: str | None = None
        self.grant: AccessGrant | None = None
        self.status: ProcessingStatus | None = None
        self.error: DocumentAccessError | None = None
        self.poll_handle: PollHandle | None = None
        self.task: asyncio.Task[None] | None = None

    @property
    def document_id(self) -> str:
        return self.document.id

    def transition(self, new_state: FlowState) -> None:
        if new_state not in TRANSITIONS[self.state]:
            raise InvalidTransitionError(
                f"{self.document_id}: {self.state.value} → {new_state.value}"
            )
        if new_state != self.state:
            logger.info(
                "Flow %s/%s: %s → %s",
                self.lesson_id, self.document_id, self.state.value, new_state.value,
            )
        self.state = new_state
        self.history.append(new_state)


class DocumentAccessOrchestrator:
    """Decides, per selected document, the shortest path to an openable URL."""

    def __init__(
        self,
        lesson_id: str,
        *,
        cache: AccessCache,
        poller: StatusPoller,
        broker: AccessBroker,
        presenter: PresentationAdapter | None = None,
        locale: str | None = None,
    ) -> None:
        self.lesson_id = lesson_id
        self.locale = locale
        self._cache = cache
        self._poller = poller
        self._broker = broker
        self._presenter = presenter or LoggingPresentationAdapter()
        self._flows: dict[str, DocumentFlow] = {}
        self._in_progress: set[str] = set()
        self._closed = False

    async def __aenter__(self) -> DocumentAccessOrchestrator:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.teardown()

    # -- inspection ------------------------------------------------------------

    def flow_for(self, document_id: str) -> DocumentFlow | None:
        return self._flows.get(document_id)

    def is_in_progress(self, document_id: str) -> bool:
        return document_id in self._in_progress

    @property
    def closed(self) -> bool:
        return self._closed

    # -- selection -------------------------------------------------------------

    async def select(self, document: Document) -> DocumentFlow:
        """Handle a selection of *document* and return its finished flow.

        A repeated selection while the document is in progress joins the
        running flow instead of starting another one.
        """
        if self._closed:
            raise RuntimeError("orchestrator has been torn down")

        current = self._flows.get(document.id)
        if current is not None and document.id in self._in_progress:
            logger.info(
                "Flow %s/%s already in progress, joining", self.lesson_id, document.id
            )
            await self._join(current)
            return current

        flow = DocumentFlow(self.lesson_id, document)
        self._flows[document.id] = flow

        if document.protection_level == ProtectionLevel.NONE:
            flow.url = document.catalog_url(self.locale)
            if not flow.url:
                logger.warning("Unprotected document %s has no catalog URL", document.id)
            flow.transition(FlowState.DIRECT_OPEN)
            self._publish(flow, url=flow.url)
            return flow

        self._in_progress.add(document.id)
        flow.task = asyncio.create_task(self._run(flow))
        await self._join(flow)
        return flow

    async def _join(self, flow: DocumentFlow) -> None:
        if flow.task is None:
            return
        await asyncio.wait({flow.task})
        if not flow.task.cancelled():
            flow.task.result()

    async def _run(self, flow: DocumentFlow) -> None:
        document = flow.document
        try:
            grant = await self._cache.lookup(self.lesson_id, document.id)
            if grant is not None:
                logger.debug("Access cache hit: %s/%s", self.lesson_id, document.id)
                flow.grant = grant
                flow.url = grant.url
                flow.transition(FlowState.CACHED_OPEN)
                self._publish(flow, url=grant.url)
                return

            flow.transition(FlowState.CHECKING)
            self._publish(flow, message="Checking document status...")
            result: PollResult | None = await self._poller.fetch(
                self.lesson_id, document.id, document.protection_level
            )

            while True:
                status = await self._until_terminal(flow, result)
                if status is None:
                    return
                if status.status == ProcessingState.FAILED:
                    raise ProcessingFailedError(
                        status.processing_error, can_retry=status.can_retry_processing
                    )

                flow.transition(FlowState.REQUESTING_ACCESS)
                self._publish(
                    flow,
                    message="Requesting document access...",
                    processing_status=ProcessingState.COMPLETED,
                )
                try:
                    grant = await self._broker.request_access(
                        self.lesson_id, document.id, document.protection_level
                    )
                except DocumentStillProcessingError as exc:
                    # Server disagrees with our COMPLETED view; observe again.
                    self._poller.invalidate(self.lesson_id, document.id)
                    flow.transition(FlowState.POLLING)
                    self._publish(flow, message=exc.message, processing_status=exc.status)
                    result = None
                    continue
                break

            flow.grant = grant
            flow.url = grant.url
            flow.transition(FlowState.OPENED)
            self._publish(flow, url=grant.url)
        except DocumentAccessError as exc:
            self._fail(flow, exc)
        except Exception:
            logger.exception("Flow %s/%s crashed", self.lesson_id, document.id)
            if not flow.state.is_terminal:
                self._fail(
                    flow,
                    DocumentAccessError(
                        "Something went wrong while opening the document. Try again.",
                        code=ErrorCode.INTERNAL_ERROR,
                    ),
                )
        finally:
            self._in_progress.discard(document.id)
            flow.poll_handle = None

    async def _until_terminal(
        self, flow: DocumentFlow, result: PollResult | None
    ) -> ProcessingStatus | None:
        """Return the first terminal status, polling as long as needed.

        Raises the typed error of a failed read.  Returns None when the poll
        subscription was cancelled underneath us.
        """
        if result is not None:
            if result.error is not None:
                raise result.error
            flow.status = result.status
            if result.terminal:
                return result.status
            flow.transition(FlowState.POLLING)
            self._publish_progress(flow, result.status)

        handle = self._poller.start(
            self.lesson_id,
            flow.document_id,
            partial(self._on_poll_result, flow),
            protection_level=flow.document.protection_level,
            wait_first=True,
        )
        flow.poll_handle = handle
        try:
            final = await handle.wait()
        finally:
            handle.cancel()
            flow.poll_handle = None

        if final is None:
            return None
        if final.error is not None:
            raise final.error
        flow.status = final.status
        return final.status

    def _on_poll_result(self, flow: DocumentFlow, result: PollResult) -> None:
        if self._closed or result.status is None or result.terminal:
            return
        flow.status = result.status
        flow.transition(FlowState.POLLING)
        self._publish_progress(flow, result.status)

    def _publish_progress(self, flow: DocumentFlow, status: ProcessingStatus | None) -> None:
        if status is None:
            return
        self._publish(
            flow,
            message=f"Document is {status_message(status.status)}. Please wait...",
            processing_status=status.status,
        )

    def _fail(self, flow: DocumentFlow, exc: DocumentAccessError) -> None:
        flow.error = exc
        flow.transition(FlowState.ERRORED)
        logger.warning(
            "Flow %s/%s failed: %s",
            self.lesson_id, flow.document_id, format_error(exc.code, exc.message),
        )
        extra: dict = {}
        if isinstance(exc, RateLimitError):
            extra["rate_limit_info"] = exc.rate_limit_info
        if isinstance(exc, ProcessingFailedError):
            extra["processing_status"] = ProcessingState.FAILED
        self._publish(
            flow,
            error=exc.message,
            error_code=exc.code,
            retryable=exc.retryable,
            **extra,
        )

    def _publish(self, flow: DocumentFlow, **fields) -> None:
        if self._closed:
            return
        fields.setdefault(
            "rate_limit_info",
            self._broker.rate_limit_for(self.lesson_id, flow.document_id),
        )
        update = FlowUpdate(
            lesson_id=self.lesson_id,
            document_id=flow.document_id,
            state=flow.state,
            title=flow.document.title(self.locale),
            **fields,
        )
        self._presenter.publish(update)

    # -- retry / invalidation --------------------------------------------------

    async def retry_processing(self, document: Document) -> DocumentFlow:
        """Explicit user retry of a document whose processing FAILED."""
        flow = self._flows.get(document.id)
        error = flow.error if flow is not None else None
        if not isinstance(error, ProcessingFailedError) or not error.can_retry:
            raise DocumentAccessError(
                "Processing cannot be retried for this document.",
                code=ErrorCode.PROCESSING_FAILED,
            )
        result = await self._poller.retry_processing(self.lesson_id, document.id)
        if result.error is not None:
            raise result.error
        await self.invalidate(document.id)
        return await self.select(document)

    async def invalidate(self, document_id: str) -> None:
        """Drop cached grant, status and quota for one document."""
        await self._cache.invalidate(self.lesson_id, document_id)
        self._poller.invalidate(self.lesson_id, document_id)
        self._broker.forget(self.lesson_id, document_id)

    async def invalidate_all(self) -> None:
        """Drop cached grants, statuses and quotas of the whole lesson."""
        await self._cache.invalidate_lesson(self.lesson_id)
        self._poller.invalidate_lesson(self.lesson_id)
        self._broker.forget_lesson(self.lesson_id)

    # -- teardown --------------------------------------------------------------

    async def teardown(self, *, invalidate_cache: bool = False) -> None:
        """Release every poll subscription and in-progress marker of this view."""
        if self._closed:
            return
        self._closed = True
        pending: list[asyncio.Task[None]] = []
        for flow in self._flows.values():
            if flow.poll_handle is not None:
                flow.poll_handle.cancel()
            if flow.task is not None and not flow.task.done():
                flow.task.cancel()
                pending.append(flow.task)
        self._in_progress.clear()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        if invalidate_cache:
            for document_id in list(self._flows):
                await self._cache.invalidate(self.lesson_id, document_id)
        logger.info(
            "Orchestrator for lesson %s torn down (%d flows, %d cancelled)",
            self.lesson_id, len(self._flows), len(pending),
        )
