"""Shared pytest fixtures for document delivery tests.

Provides:
- ``fake_api``: scripted document API served through ``httpx.MockTransport``
- ``client``: a started :class:`DocumentApiClient` talking to ``fake_api``
- ``clock``: controllable epoch clock for cache expiry
- ``settings``: settings with zero poll interval / retry delay
- ``cache``, ``poller``, ``broker``, ``presenter``, ``orchestrator``
"""

from __future__ import annotations

import asyncio
import re
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx
import pytest

from config.settings import Settings
from services.access_broker import AccessBroker
from services.access_cache import InMemoryAccessCache
from services.auth import StaticTokenProvider
from services.document_client import DocumentApiClient
from services.orchestrator import DocumentAccessOrchestrator
from services.presentation import QueuePresentationAdapter
from services.status_poller import StatusPoller

BASE_URL = "http://docs.test/api/v1"
LESSON_ID = "L1"

_PATH_RE = re.compile(
    r"^/api/v1/lessons/(?P<lesson>[^/]+)/documents"
    r"(?:/(?P<document>[^/]+)(?:/(?P<action>status|access|retry-processing))?)?$"
)


def status_payload(document_id: str, status: str, **extra: Any) -> dict[str, Any]:
    payload = {
        "documentId": document_id,
        "filename": f"{document_id}.pdf",
        "protectionLevel": "WATERMARK",
        "processingStatus": status,
        "processingError": None,
        "processingAttempts": 1,
        "canRetryProcessing": False,
    }
    payload.update(extra)
    return payload


class FakeClock:
    """Epoch clock that only moves when told to."""

    def __init__(self, start: float | None = None) -> None:
        self.now = start if start is not None else datetime(2026, 1, 1, tzinfo=timezone.utc).timestamp()

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def datetime_after(self, seconds: float) -> datetime:
        return datetime.fromtimestamp(self.now, tz=timezone.utc) + timedelta(seconds=seconds)


class RecordingSleep:
    """Stand-in for asyncio.sleep that records intervals and returns at once."""

    def __init__(self) -> None:
        self.intervals: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.intervals.append(seconds)
        await asyncio.sleep(0)


class FakeDocumentApi:
    """Scripted responses per document; the last scripted response repeats."""

    def __init__(self) -> None:
        self.catalog: dict[str, Any] = {}
        self.statuses: dict[str, list[tuple[int, Any]]] = {}
        self.access: dict[str, list[tuple[int, Any]]] = {}
        self.retry: dict[str, list[tuple[int, Any]]] = {}
        self.calls: list[tuple[str, str, str]] = []  # (method, action, document)
        self.auth_headers: list[str | None] = []

    # -- scripting -------------------------------------------------------------

    def script_status(self, document_id: str, *responses: str | tuple[int, Any]) -> None:
        self.statuses[document_id] = [
            (200, status_payload(document_id, r)) if isinstance(r, str) else r
            for r in responses
        ]

    def script_access(self, document_id: str, *responses: tuple[int, Any]) -> None:
        self.access[document_id] = list(responses)

    def script_retry(self, document_id: str, *responses: tuple[int, Any]) -> None:
        self.retry[document_id] = list(responses)

    def count(self, action: str, document_id: str | None = None) -> int:
        return sum(
            1 for _method, a, d in self.calls
            if a == action and (document_id is None or d == document_id)
        )

    # -- transport -------------------------------------------------------------

    @staticmethod
    def _next(queue: list[tuple[int, Any]]) -> tuple[int, Any]:
        if len(queue) > 1:
            return queue.pop(0)
        return queue[0]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.auth_headers.append(request.headers.get("Authorization"))
        match = _PATH_RE.match(request.url.path)
        if match is None:
            return httpx.Response(404)
        lesson, document = match["lesson"], match["document"]
        action = match["action"] or ("catalog" if document is None else "document")
        self.calls.append((request.method, action, document or ""))

        if action == "catalog":
            if lesson not in self.catalog:
                return httpx.Response(404)
            return httpx.Response(200, json=self.catalog[lesson])
        scripts = {"status": self.statuses, "access": self.access, "retry-processing": self.retry}
        queue = scripts.get(action, {}).get(document)
        if not queue:
            return httpx.Response(404, json={"message": "not scripted"})
        code, body = self._next(queue)
        if isinstance(body, Exception):
            raise body
        return httpx.Response(code, json=body)


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        status_poll_interval=0,
        transport_retry_delay=0,
        transport_max_attempts=3,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_api() -> FakeDocumentApi:
    return FakeDocumentApi()


@pytest.fixture
async def client(fake_api, settings):
    c = DocumentApiClient(
        StaticTokenProvider("test-token"),
        base_url=BASE_URL,
        max_attempts=settings.transport_max_attempts,
        retry_delay=0,
        transport=httpx.MockTransport(fake_api.handler),
    )
    await c.start()
    yield c
    await c.close()


@pytest.fixture
def cache(clock) -> InMemoryAccessCache:
    return InMemoryAccessCache(clock=clock)


@pytest.fixture
def poller(client, settings) -> StatusPoller:
    return StatusPoller(client, settings=settings)


@pytest.fixture
def broker(client, cache, settings, clock) -> AccessBroker:
    return AccessBroker(client, cache, settings=settings, clock=clock)


@pytest.fixture
def presenter() -> QueuePresentationAdapter:
    return QueuePresentationAdapter()


@pytest.fixture
async def orchestrator(cache, poller, broker, presenter):
    orch = DocumentAccessOrchestrator(
        LESSON_ID, cache=cache, poller=poller, broker=broker, presenter=presenter, locale="en"
    )
    yield orch
    await orch.teardown()
