"""Per-document access flow states and the updates published for display."""

from __future__ import annotations

from enum import Enum

from models.base import CamelModel
from models.document import ProcessingState, RateLimitInfo
from models.errors import ErrorCode


class FlowState(str, Enum):
    IDLE = "IDLE"
    DIRECT_OPEN = "DIRECT_OPEN"
    CACHED_OPEN = "CACHED_OPEN"
    CHECKING = "CHECKING"
    POLLING = "POLLING"
    REQUESTING_ACCESS = "REQUESTING_ACCESS"
    OPENED = "OPENED"
    ERRORED = "ERRORED"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATES

    @property
    def is_open(self) -> bool:
        return self in (FlowState.DIRECT_OPEN, FlowState.CACHED_OPEN, FlowState.OPENED)


_TERMINAL_STATES = frozenset({
    FlowState.DIRECT_OPEN,
    FlowState.CACHED_OPEN,
    FlowState.OPENED,
    FlowState.ERRORED,
})


# Allowed moves of the per-document state machine.  REQUESTING_ACCESS may fall
# back to POLLING when the access endpoint answers 409 (not processed yet).
# IDLE may go straight to ERRORED when the flow breaks before any check.
TRANSITIONS: dict[FlowState, frozenset[FlowState]] = {
    FlowState.IDLE: frozenset({
        FlowState.DIRECT_OPEN,
        FlowState.CACHED_OPEN,
        FlowState.CHECKING,
        FlowState.ERRORED,
    }),
    FlowState.CHECKING: frozenset({
        FlowState.POLLING,
        FlowState.REQUESTING_ACCESS,
        FlowState.ERRORED,
    }),
    FlowState.POLLING: frozenset({
        FlowState.POLLING,
        FlowState.REQUESTING_ACCESS,
        FlowState.ERRORED,
    }),
    FlowState.REQUESTING_ACCESS: frozenset({
        FlowState.OPENED,
        FlowState.POLLING,
        FlowState.ERRORED,
    }),
    FlowState.DIRECT_OPEN: frozenset(),
    FlowState.CACHED_OPEN: frozenset(),
    FlowState.OPENED: frozenset(),
    FlowState.ERRORED: frozenset(),
}


class FlowUpdate(CamelModel):
    """One state transition as handed to the presentation adapter.

    ``url`` is set on the open states, ``error``/``error_code`` on ERRORED,
    ``processing_status`` while CHECKING/POLLING, and ``rate_limit_info``
    whenever quota metadata is known for the document.
    """

    lesson_id: str
    document_id: str
    state: FlowState
    title: str = ""
    url: str | None = None
    message: str | None = None
    error: str | None = None
    error_code: ErrorCode | None = None
    retryable: bool = False
    processing_status: ProcessingState | None = None
    rate_limit_info: RateLimitInfo | None = None

    @property
    def terminal(self) -> bool:
        return self.state.is_terminal
