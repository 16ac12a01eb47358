from __future__ import annotations

import asyncio

import httpx
import pytest

from conftest import FakeRemoteService, FakeSleep, settle
from blackletter_core.cache import DOCUMENTS, EntityCache
from blackletter_core.models import DocumentStatus
from blackletter_core.poller import JobStatusPoller, PollPhase
from blackletter_core.remote.base import ServiceTransportError
from blackletter_core.remote.client import HttpRemoteService

P = DocumentStatus.PROCESSING
C = DocumentStatus.COMPLETED
F = DocumentStatus.FAILED


async def _load(service: FakeRemoteService, cache: EntityCache, doc_id: str, status: DocumentStatus) -> None:
    service.add_document(doc_id, status=status)
    await cache.get_all(DOCUMENTS)


@pytest.mark.asyncio
async def test_poll_until_completed_updates_cache_and_removes_state(
    service: FakeRemoteService, cache: EntityCache, fake_sleep: FakeSleep
) -> None:
    await _load(service, cache, "doc-1", P)
    service.job_statuses["doc-1"] = [P, P, C]
    poller = JobStatusPoller(service, cache, interval_s=5.0, sleep=fake_sleep)

    poller.start("doc-1")
    assert await poller.wait("doc-1") == C

    assert cache.peek(DOCUMENTS, "doc-1").status == C
    assert poller.active("doc-1") is None
    assert service.count("fetch_job_status") == 3
    # Constant delay between polls, never growing.
    assert fake_sleep.delays == [5.0, 5.0]


@pytest.mark.asyncio
async def test_failed_job_is_terminal(service: FakeRemoteService, cache: EntityCache, fake_sleep: FakeSleep) -> None:
    await _load(service, cache, "doc-1", P)
    service.job_statuses["doc-1"] = [F]
    seen: list[tuple[str, DocumentStatus]] = []
    poller = JobStatusPoller(service, cache, sleep=fake_sleep)
    poller.on_terminal(lambda doc_id, status: seen.append((doc_id, status)))

    poller.start("doc-1")
    assert await poller.wait("doc-1") == F
    assert cache.peek(DOCUMENTS, "doc-1").status == F
    assert seen == [("doc-1", F)]


@pytest.mark.asyncio
async def test_start_twice_returns_existing_state(
    service: FakeRemoteService, cache: EntityCache, fake_sleep: FakeSleep
) -> None:
    await _load(service, cache, "doc-1", P)
    service.gate = asyncio.Event()
    poller = JobStatusPoller(service, cache, sleep=fake_sleep)

    first = poller.start("doc-1")
    second = poller.start("doc-1")
    assert first is second
    await settle()
    assert service.count("fetch_job_status") == 1

    poller.cancel_all()
    service.gate.set()
    await settle()


@pytest.mark.asyncio
async def test_network_error_does_not_change_status_and_retries(
    service: FakeRemoteService, cache: EntityCache, fake_sleep: FakeSleep
) -> None:
    await _load(service, cache, "doc-1", P)
    service.job_statuses["doc-1"] = [ServiceTransportError("unreachable"), P, C]
    poller = JobStatusPoller(service, cache, interval_s=2.0, sleep=fake_sleep)

    state = poller.start("doc-1")
    assert await poller.wait("doc-1") == C
    assert state.attempt_count == 3
    assert state.last_error is None
    assert fake_sleep.delays == [2.0, 2.0]


@pytest.mark.asyncio
async def test_network_error_is_recorded_on_state(
    service: FakeRemoteService, cache: EntityCache, fake_sleep: FakeSleep
) -> None:
    await _load(service, cache, "doc-1", P)
    service.job_statuses["doc-1"] = [ServiceTransportError("unreachable")]
    poller = JobStatusPoller(service, cache, sleep=fake_sleep, max_attempts=2)

    state = poller.start("doc-1")
    assert await poller.wait("doc-1") is None
    assert state.phase == PollPhase.EXHAUSTED
    assert "unreachable" in (state.last_error or "")
    assert cache.peek(DOCUMENTS, "doc-1").status == P


@pytest.mark.asyncio
async def test_backward_status_is_ignored(
    service: FakeRemoteService, cache: EntityCache, fake_sleep: FakeSleep
) -> None:
    await _load(service, cache, "doc-1", P)
    service.job_statuses["doc-1"] = [DocumentStatus.UPLOADED, P, C]
    observed: list[DocumentStatus] = []
    cache.subscribe(
        lambda e: observed.append(cache.peek(DOCUMENTS, "doc-1").status) if e.kind == "updated" else None
    )
    poller = JobStatusPoller(service, cache, sleep=fake_sleep)

    poller.start("doc-1")
    assert await poller.wait("doc-1") == C
    assert observed == [C]


@pytest.mark.asyncio
async def test_cancel_discards_in_flight_response(
    service: FakeRemoteService, cache: EntityCache, fake_sleep: FakeSleep
) -> None:
    await _load(service, cache, "doc-1", P)
    service.job_statuses["doc-1"] = [C]
    service.gate = asyncio.Event()
    poller = JobStatusPoller(service, cache, sleep=fake_sleep)

    state = poller.start("doc-1")
    await settle()
    assert state.phase == PollPhase.POLLING

    poller.cancel("doc-1")
    assert await poller.wait("doc-1") is None
    service.gate.set()
    await settle()

    assert state.phase == PollPhase.CANCELLED
    assert cache.peek(DOCUMENTS, "doc-1").status == P
    assert service.count("fetch_job_status") == 1
    assert fake_sleep.delays == []


@pytest.mark.asyncio
async def test_cancel_while_scheduled_stops_further_polls(service: FakeRemoteService, cache: EntityCache) -> None:
    await _load(service, cache, "doc-1", P)
    service.job_statuses["doc-1"] = [P]
    poller = JobStatusPoller(service, cache, interval_s=60.0)

    with poller.watch("doc-1") as handle:
        await settle()
        assert handle.state.phase == PollPhase.SCHEDULED
        assert handle.state.next_poll_at is not None

    await settle()
    assert handle.state.phase == PollPhase.CANCELLED
    assert poller.active("doc-1") is None
    assert service.count("fetch_job_status") == 1


@pytest.mark.asyncio
async def test_poller_never_creates_documents(
    service: FakeRemoteService, cache: EntityCache, fake_sleep: FakeSleep
) -> None:
    service.job_statuses["ghost"] = [C]
    poller = JobStatusPoller(service, cache, sleep=fake_sleep)

    poller.start("ghost")
    assert await poller.wait("ghost") == C
    assert cache.peek(DOCUMENTS, "ghost") is None


def test_interval_must_be_positive(service: FakeRemoteService, cache: EntityCache) -> None:
    with pytest.raises(ValueError):
        JobStatusPoller(service, cache, interval_s=0)


@pytest.mark.asyncio
async def test_unexpected_status_check_error_is_retried(
    service: FakeRemoteService, cache: EntityCache, fake_sleep: FakeSleep
) -> None:
    await _load(service, cache, "doc-1", P)
    service.job_statuses["doc-1"] = [RuntimeError("Error -3 while decompressing data"), C]
    poller = JobStatusPoller(service, cache, sleep=fake_sleep, max_attempts=3)

    state = poller.start("doc-1")
    assert await poller.wait("doc-1") == C
    assert state.attempt_count == 2
    assert poller.active("doc-1") is None


@pytest.mark.asyncio
async def test_undecodable_http_response_is_retried(
    service: FakeRemoteService, cache: EntityCache, fake_sleep: FakeSleep
) -> None:
    await _load(service, cache, "doc-1", P)
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        if len(requests) == 1:
            raise httpx.DecodingError("Error -3 while decompressing data", request=request)
        return httpx.Response(200, json={"job_id": "doc-1", "status": "completed"})

    http = HttpRemoteService(base_url="http://api.test", projects_owner="u", transport=httpx.MockTransport(handler))
    poller = JobStatusPoller(http, cache, sleep=fake_sleep, max_attempts=3)

    state = poller.start("doc-1")
    assert await poller.wait("doc-1") == C
    assert len(requests) == 2
    assert state.phase == PollPhase.COMPLETED
    assert cache.peek(DOCUMENTS, "doc-1").status == C


@pytest.mark.asyncio
async def test_failing_terminal_listener_does_not_block_waiters(
    service: FakeRemoteService, cache: EntityCache, fake_sleep: FakeSleep
) -> None:
    await _load(service, cache, "doc-1", P)
    service.job_statuses["doc-1"] = [C]
    poller = JobStatusPoller(service, cache, sleep=fake_sleep)

    def broken(doc_id: str, status: DocumentStatus) -> None:
        raise RuntimeError("listener bug")

    seen: list[str] = []
    poller.on_terminal(broken)
    poller.on_terminal(lambda doc_id, status: seen.append(doc_id))

    poller.start("doc-1")
    assert await poller.wait("doc-1") == C
    assert seen == ["doc-1"]


@pytest.mark.asyncio
async def test_crashed_poll_releases_state_and_can_restart(
    service: FakeRemoteService, cache: EntityCache, fake_sleep: FakeSleep
) -> None:
    await _load(service, cache, "doc-1", P)
    service.job_statuses["doc-1"] = [C]

    def exploding(event) -> None:
        if event.kind == "updated":
            raise RuntimeError("view crashed")

    unsubscribe = cache.subscribe(exploding)
    poller = JobStatusPoller(service, cache, sleep=fake_sleep)

    first = poller.start("doc-1")
    assert await poller.wait("doc-1") is None
    assert first.phase == PollPhase.EXHAUSTED
    assert "view crashed" in (first.last_error or "")
    assert poller.active("doc-1") is None

    unsubscribe()
    second = poller.start("doc-1")
    assert second is not first
    assert await poller.wait("doc-1") == C
