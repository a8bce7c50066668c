"""Tests for services/status_poller.py: polling, result caching, typed errors."""

import asyncio

import httpx
import pytest

from errors import AuthError, NotFoundError, TransientNetworkError
from models.document import ProcessingState, ProtectionLevel
from models.errors import ErrorCode
from services.status_poller import StatusPoller, status_ttl_for
from tests.conftest import RecordingSleep, status_payload


class MonotonicClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


async def _collect(aiter):
    return [item async for item in aiter]


# ── TTL policy ───────────────────────────────────────────────


def test_status_ttl_by_protection_level(settings):
    assert status_ttl_for(ProtectionLevel.NONE, settings) == 60
    assert status_ttl_for(ProtectionLevel.WATERMARK, settings) == 1800
    assert status_ttl_for(ProtectionLevel.FULL, settings) == 3000
    assert status_ttl_for(None, settings) == 60


# ── observe ──────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_polls_on_fixed_interval_until_completed(client, fake_api, settings):
    sleep = RecordingSleep()
    poller = StatusPoller(client, interval=10, settings=settings, sleep=sleep)
    fake_api.script_status("D2", "PENDING", "PROCESSING", "COMPLETED")

    results = await _collect(poller.observe("L1", "D2"))

    assert [r.status.status for r in results] == [
        ProcessingState.PENDING,
        ProcessingState.PROCESSING,
        ProcessingState.COMPLETED,
    ]
    assert sleep.intervals == [10, 10]
    assert fake_api.count("status", "D2") == 3


@pytest.mark.asyncio
async def test_stops_on_failed(poller, fake_api):
    fake_api.script_status("D4", "PROCESSING", "FAILED", "COMPLETED")
    results = await _collect(poller.observe("L1", "D4"))
    assert results[-1].status.status == ProcessingState.FAILED
    assert results[-1].terminal
    assert fake_api.count("status", "D4") == 2


@pytest.mark.asyncio
async def test_disabled_or_missing_document_issues_nothing(poller, fake_api):
    assert await _collect(poller.observe("L1", "D2", enabled=False)) == []
    assert await _collect(poller.observe("L1", "")) == []
    assert fake_api.calls == []


@pytest.mark.asyncio
async def test_wait_first_sleeps_before_first_read(client, fake_api, settings):
    sleep = RecordingSleep()
    poller = StatusPoller(client, interval=10, settings=settings, sleep=sleep)
    fake_api.script_status("D2", "COMPLETED")
    results = await _collect(poller.observe("L1", "D2", wait_first=True))
    assert len(results) == 1
    assert sleep.intervals == [10]


@pytest.mark.asyncio
async def test_max_polls_yields_timeout(client, fake_api, settings):
    poller = StatusPoller(client, interval=0, max_polls=3, settings=settings)
    fake_api.script_status("D2", "PROCESSING")
    results = await _collect(poller.observe("L1", "D2"))
    assert fake_api.count("status", "D2") == 3
    assert results[-1].error.code == ErrorCode.POLL_TIMEOUT


# ── errors as values ─────────────────────────────────────────


@pytest.mark.parametrize("code, exc_type", [(401, AuthError), (403, AuthError), (404, NotFoundError)])
@pytest.mark.asyncio
async def test_terminal_errors_returned_not_raised(poller, fake_api, code, exc_type):
    fake_api.script_status("D2", (code, {}))
    results = await _collect(poller.observe("L1", "D2"))
    assert len(results) == 1
    assert isinstance(results[0].error, exc_type)
    assert results[0].terminal
    assert fake_api.count("status", "D2") == 1


@pytest.mark.asyncio
async def test_transient_errors_retried_three_times(poller, fake_api):
    fake_api.script_status("D2", (500, {}))
    result = await poller.fetch("L1", "D2")
    assert isinstance(result.error, TransientNetworkError)
    assert fake_api.count("status", "D2") == 3


@pytest.mark.asyncio
async def test_transient_error_recovers_within_budget(poller, fake_api):
    fake_api.script_status("D2", (500, {}), (502, {}), "PROCESSING")
    result = await poller.fetch("L1", "D2")
    assert result.status.status == ProcessingState.PROCESSING


# ── caching ──────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_completed_is_cached_per_protection_level(client, fake_api, settings):
    clock = MonotonicClock()
    poller = StatusPoller(client, interval=0, settings=settings, clock=clock)
    fake_api.script_status("D2", "COMPLETED")

    first = await poller.fetch("L1", "D2", ProtectionLevel.WATERMARK)
    second = await poller.fetch("L1", "D2", ProtectionLevel.WATERMARK)
    assert not first.from_cache
    assert second.from_cache
    assert fake_api.count("status", "D2") == 1

    clock.now += 1800
    third = await poller.fetch("L1", "D2", ProtectionLevel.WATERMARK)
    assert not third.from_cache
    assert fake_api.count("status", "D2") == 2


@pytest.mark.asyncio
async def test_completed_uses_status_protection_level_when_not_given(client, fake_api, settings):
    clock = MonotonicClock()
    poller = StatusPoller(client, interval=0, settings=settings, clock=clock)
    fake_api.script_status("D3", (200, status_payload("D3", "COMPLETED", protectionLevel="FULL")))
    await poller.fetch("L1", "D3")
    clock.now += 2999
    assert (await poller.fetch("L1", "D3")).from_cache


@pytest.mark.asyncio
async def test_failed_is_never_cached(poller, fake_api):
    fake_api.script_status("D4", "FAILED")
    await poller.fetch("L1", "D4")
    await poller.fetch("L1", "D4")
    assert fake_api.count("status", "D4") == 2


@pytest.mark.asyncio
async def test_concurrent_reads_share_one_request(poller, fake_api):
    fake_api.script_status("D2", "PROCESSING")
    results = await asyncio.gather(*(poller.fetch("L1", "D2") for _ in range(5)))
    assert all(r.status.status == ProcessingState.PROCESSING for r in results)
    assert fake_api.count("status", "D2") == 1


@pytest.mark.asyncio
async def test_backward_transition_is_ignored(poller, fake_api):
    fake_api.script_status("D2", "PROCESSING", "PENDING")
    await poller.fetch("L1", "D2")
    result = await poller.fetch("L1", "D2")
    assert result.status.status == ProcessingState.PROCESSING


@pytest.mark.asyncio
async def test_failed_may_move_back_to_pending(poller, fake_api):
    fake_api.script_status("D4", "FAILED", "PENDING")
    await poller.fetch("L1", "D4")
    result = await poller.fetch("L1", "D4")
    assert result.status.status == ProcessingState.PENDING


# ── subscription handle ──────────────────────────────────────


@pytest.mark.asyncio
async def test_start_delivers_results_and_wait_returns_terminal(poller, fake_api):
    fake_api.script_status("D2", "PENDING", "COMPLETED")
    seen = []
    handle = poller.start("L1", "D2", seen.append)
    final = await handle.wait()
    assert final.status.status == ProcessingState.COMPLETED
    assert [r.status.status for r in seen] == [ProcessingState.PENDING, ProcessingState.COMPLETED]
    assert handle.done


@pytest.mark.asyncio
async def test_async_callback_is_awaited(poller, fake_api):
    fake_api.script_status("D2", "COMPLETED")
    seen = []

    async def on_result(result):
        seen.append(result)

    await poller.start("L1", "D2", on_result).wait()
    assert len(seen) == 1


@pytest.mark.asyncio
async def test_cancel_stops_polling(poller, fake_api):
    fake_api.script_status("D2", "PROCESSING")
    handle = poller.start("L1", "D2")
    for _ in range(50):
        await asyncio.sleep(0)
    handle.cancel()
    assert await handle.wait() is None
    assert handle.cancelled
    # let a request that was already on the wire settle
    for _ in range(20):
        await asyncio.sleep(0)
    calls = fake_api.count("status", "D2")
    for _ in range(50):
        await asyncio.sleep(0)
    assert fake_api.count("status", "D2") == calls


# ── retry ────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_retry_processing_rereads_status(poller, fake_api):
    fake_api.script_status("D4", "FAILED", "PENDING")
    fake_api.script_retry("D4", (200, {"processingStatus": "PENDING"}))
    await poller.fetch("L1", "D4")
    result = await poller.retry_processing("L1", "D4")
    assert result.status.status == ProcessingState.PENDING
    assert fake_api.count("retry-processing", "D4") == 1


@pytest.mark.asyncio
async def test_retry_processing_rejected(poller, fake_api):
    fake_api.script_retry("D4", (403, {}))
    result = await poller.retry_processing("L1", "D4")
    assert isinstance(result.error, AuthError)


@pytest.mark.asyncio
async def test_network_error_then_ok_via_transport(poller, fake_api):
    fake_api.script_status("D2", (200, httpx.ConnectError("refused")), "COMPLETED")
    result = await poller.fetch("L1", "D2")
    assert result.status.status == ProcessingState.COMPLETED


@pytest.mark.asyncio
async def test_completed_never_turns_failed(client, fake_api, settings):
    clock = MonotonicClock()
    poller = StatusPoller(client, interval=0, settings=settings, clock=clock)
    fake_api.script_status("D2", "COMPLETED", "FAILED")
    await poller.fetch("L1", "D2")
    clock.now += 1800  # COMPLETED result expired, server read again
    result = await poller.fetch("L1", "D2")
    assert fake_api.count("status", "D2") == 2
    assert result.status.status == ProcessingState.COMPLETED


@pytest.mark.asyncio
async def test_failed_may_complete(poller, fake_api):
    fake_api.script_status("D4", "FAILED", "COMPLETED")
    await poller.fetch("L1", "D4")
    result = await poller.fetch("L1", "D4")
    assert result.status.status == ProcessingState.COMPLETED


@pytest.mark.asyncio
async def test_stale_bookkeeping_is_pruned(client, fake_api, settings):
    clock = MonotonicClock()
    poller = StatusPoller(client, interval=0, settings=settings, clock=clock)
    fake_api.script_status("D2", "COMPLETED")
    fake_api.script_status("D3", "PROCESSING")
    await poller.fetch("L1", "D2")
    assert ("L1", "D2") in poller._last_seen

    clock.now += 3001 + 60
    await poller.fetch("L1", "D3")
    assert ("L1", "D2") not in poller._last_seen
    assert ("L1", "D2") not in poller._completed
    assert ("L1", "D3") in poller._last_seen
