"""Tests for sync orchestration: staleness, single-flight, failure persistence."""

from __future__ import annotations

import asyncio
from datetime import timedelta

import httpx
import pytest
from conftest import make_token_record

from calmirror.google.client import GoogleCalendarClient
from calmirror.google.credentials import SCOPE_CALENDAR_READONLY, TokenStore
from calmirror.google.errors import ErrorKind, SyncError
from calmirror.models import Event, EventSet, SyncOutcome, SyncStats, SyncStatus
from calmirror.storage.local_store import StoreWriteError
from calmirror.storage.units import UnitRepository
from calmirror.sync.orchestrator import SyncOrchestrator, SyncState

pytestmark = pytest.mark.unit

UNIT = "kitchen"


class _CountingRepository(UnitRepository):
    def __init__(self, store) -> None:
        super().__init__(store)
        self.event_writes: list[EventSet] = []
        self.stats_writes: list[SyncStats] = []
        self.fail_event_writes = False

    async def save_events(self, unit: str, event_set: EventSet) -> None:
        self.event_writes.append(event_set)
        if self.fail_event_writes:
            raise StoreWriteError("disk full")
        await super().save_events(unit, event_set)

    async def save_stats(self, unit: str, stats: SyncStats) -> None:
        self.stats_writes.append(stats)
        await super().save_stats(unit, stats)


class _SourceDouble:
    """In-memory event source; each call pops the next scripted outcome."""

    def __init__(self) -> None:
        self.outcomes: list[list[Event] | BaseException] = []
        self.calls: list[dict] = []
        self.started = asyncio.Event()
        self.gate: asyncio.Event | None = None
        self.hang = False

    async def fetch_events(
        self, calendar_id, *, max_results, weeks_ahead, calendar_name="", tz=None, deadline=None
    ):
        self.calls.append(
            {
                "calendar_id": calendar_id,
                "max_results": max_results,
                "weeks_ahead": weeks_ahead,
                "calendar_name": calendar_name,
                "deadline": deadline,
            }
        )
        self.started.set()
        if self.hang:
            await asyncio.sleep(3600)
        if self.gate is not None:
            await self.gate.wait()
        outcome = self.outcomes.pop(0) if self.outcomes else []
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


def _events(clock, *ids: str) -> list[Event]:
    base = clock() + timedelta(hours=2)
    return [
        Event(
            id=event_id,
            title=f"Event {event_id}",
            start=base + timedelta(hours=index),
            end=base + timedelta(hours=index + 1),
        )
        for index, event_id in enumerate(ids)
    ]


def _unexpected(request: httpx.Request) -> httpx.Response:
    raise AssertionError(f"unexpected request to {request.url}")


@pytest.fixture
def repo(store) -> _CountingRepository:
    return _CountingRepository(store)


@pytest.fixture
def source() -> _SourceDouble:
    return _SourceDouble()


@pytest.fixture
def orchestrator(repo, source, credentials_factory, clock, recording_sleep) -> SyncOrchestrator:
    return SyncOrchestrator(
        repo,
        credentials_factory(_unexpected),
        source,
        clock=clock,
        sleep=recording_sleep,
    )


@pytest.fixture
async def configured(repo, configuration, signed_in):
    await repo.save_configuration(UNIT, configuration)
    return configuration


# ---------------------------------------------------------------------------
# Success path and staleness
# ---------------------------------------------------------------------------


class TestExecute:
    async def test_success_writes_events_and_stats_once(
        self, orchestrator, repo, source, configured, clock
    ):
        source.outcomes.append(_events(clock, "b", "a"))

        result = await orchestrator.execute(UNIT)

        assert result.outcome is SyncOutcome.SUCCESS
        assert result.event_count == 2
        assert len(repo.event_writes) == 1
        assert len(repo.stats_writes) == 1
        stored = await repo.load_events(UNIT)
        assert stored is not None
        assert stored.status is SyncStatus.SUCCESS
        assert stored.last_sync == clock()
        assert stored.event_count == 2
        stats = await repo.load_stats(UNIT)
        assert (stats.sync_count, stats.success_count, stats.failure_count) == (1, 1, 0)
        assert source.calls[0]["calendar_id"] == configured.calendar_id
        assert source.calls[0]["max_results"] == configured.max_events
        assert source.calls[0]["calendar_name"] == "Family"
        assert source.calls[0]["deadline"] > asyncio.get_running_loop().time()
        assert orchestrator.state(UNIT) is SyncState.SUCCESS

    async def test_second_run_within_frequency_is_skipped(
        self, orchestrator, repo, source, configured, clock
    ):
        await orchestrator.execute(UNIT)
        clock.advance(hours=1)

        result = await orchestrator.execute(UNIT)

        assert result.outcome is SyncOutcome.SKIPPED
        assert len(source.calls) == 1
        assert len(repo.event_writes) == 1
        assert len(repo.stats_writes) == 1

    async def test_stale_data_is_synced_again(self, orchestrator, source, configured, clock):
        await orchestrator.execute(UNIT)
        clock.advance(hours=configured.sync_frequency_hours)

        assert await orchestrator.is_sync_needed(UNIT)
        result = await orchestrator.execute(UNIT)

        assert result.outcome is SyncOutcome.SUCCESS
        assert len(source.calls) == 2

    async def test_force_ignores_freshness(self, orchestrator, source, configured):
        await orchestrator.execute(UNIT)
        result = await orchestrator.execute(UNIT, force=True)

        assert result.outcome is SyncOutcome.SUCCESS
        assert len(source.calls) == 2

    async def test_unchanged_remote_data_gives_identical_events(
        self, orchestrator, repo, source, configured, clock
    ):
        source.outcomes.extend([_events(clock, "b", "a", "c"), _events(clock, "b", "a", "c")])

        await orchestrator.execute(UNIT, force=True)
        first = (await repo.load_events(UNIT)).model_dump(mode="json")["events"]
        clock.advance(minutes=5)
        await orchestrator.execute(UNIT, force=True)
        second = (await repo.load_events(UNIT)).model_dump(mode="json")["events"]

        assert first == second
        assert [event["id"] for event in first] == ["b", "a", "c"]

    async def test_unconfigured_unit_fails_without_writes(self, orchestrator, repo, source):
        result = await orchestrator.execute(UNIT)

        assert result.outcome is SyncOutcome.ERROR
        assert result.error is not None
        assert result.error.kind is ErrorKind.CONFIGURATION
        assert source.calls == []
        assert repo.event_writes == []
        assert repo.stats_writes == []

    async def test_disabled_unit_is_skipped_unless_forced(
        self, orchestrator, repo, source, configuration, signed_in
    ):
        await repo.save_configuration(UNIT, configuration.model_copy(update={"enabled": False}))

        assert (await orchestrator.execute(UNIT)).outcome is SyncOutcome.SKIPPED
        assert (await orchestrator.execute(UNIT, force=True)).outcome is SyncOutcome.SUCCESS
        assert len(source.calls) == 1

    async def test_status_reports_persisted_outcome(self, orchestrator, source, configured, clock):
        source.outcomes.append(_events(clock, "a"))
        await orchestrator.execute(UNIT)

        event_set, stats = await orchestrator.status(UNIT)

        assert event_set is not None and event_set.event_count == 1
        assert stats.success_count == 1


# ---------------------------------------------------------------------------
# Failure handling
# ---------------------------------------------------------------------------


class TestFailures:
    async def test_failure_preserves_previous_events(
        self, orchestrator, repo, source, configured, clock
    ):
        source.outcomes.append(_events(clock, "a", "b"))
        await orchestrator.execute(UNIT)
        first_sync = clock()
        clock.advance(hours=5)
        source.outcomes.append(
            SyncError(ErrorKind.SERVER, "Google server service temporarily unavailable")
        )

        result = await orchestrator.execute(UNIT)

        assert result.outcome is SyncOutcome.ERROR
        stored = await repo.load_events(UNIT)
        assert stored is not None
        assert stored.status is SyncStatus.ERROR
        assert stored.error_message == "Google server service temporarily unavailable"
        assert [event.id for event in stored.events] == ["a", "b"]
        assert stored.last_sync == first_sync
        stats = await repo.load_stats(UNIT)
        assert (stats.sync_count, stats.failure_count) == (2, 1)
        assert stats.last_failure == clock()
        assert len(repo.event_writes) == 2
        assert orchestrator.state(UNIT) is SyncState.FAILED

    async def test_clear_events_drops_previous_events(
        self, orchestrator, repo, source, configured, clock
    ):
        source.outcomes.extend([_events(clock, "a"), SyncError(ErrorKind.NETWORK, "offline")])
        await orchestrator.execute(UNIT)

        await orchestrator.execute(UNIT, force=True, clear_events=True)

        stored = await repo.load_events(UNIT)
        assert stored is not None and stored.events == []

    async def test_missing_scope_fails_before_fetch(
        self, orchestrator, repo, source, configuration, store, clock
    ):
        await repo.save_configuration(UNIT, configuration)
        await TokenStore(store).save(make_token_record(clock(), scopes=(SCOPE_CALENDAR_READONLY,)))

        result = await orchestrator.execute(UNIT)

        assert result.error is not None and result.error.kind is ErrorKind.PERMISSION
        assert source.calls == []
        stored = await repo.load_events(UNIT)
        assert stored is not None and stored.status is SyncStatus.ERROR

    async def test_timeout_becomes_retryable_network_error(
        self, repo, source, credentials_factory, configured, clock
    ):
        source.hang = True
        orchestrator = SyncOrchestrator(
            repo, credentials_factory(_unexpected), source, timeout=0.05, clock=clock
        )

        result = await orchestrator.execute(UNIT)

        assert result.error is not None
        assert result.error.kind is ErrorKind.NETWORK
        assert result.error.is_retryable
        assert len(repo.event_writes) == 1
        assert len(repo.stats_writes) == 1

    async def test_rate_limit_longer_than_timeout_keeps_its_kind(
        self, repo, credentials_factory, mock_http, configured, clock, recording_sleep
    ):
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(429, headers={"Retry-After": "2"})

        credentials = credentials_factory(_unexpected)
        client = GoogleCalendarClient(
            credentials, mock_http(handler), sleep=recording_sleep, clock=clock
        )
        orchestrator = SyncOrchestrator(repo, credentials, client, timeout=1.0, clock=clock)

        result = await orchestrator.execute(UNIT)

        assert result.outcome is SyncOutcome.ERROR
        assert result.error is not None
        assert result.error.kind is ErrorKind.RATE_LIMIT
        assert result.error.retry_after == 2.0
        assert len(requests) == 1
        assert recording_sleep.delays == []
        stored = await repo.load_events(UNIT)
        assert stored is not None
        assert stored.error_message == result.error.user_message

    async def test_calendar_id_missing_is_configuration_error(
        self, orchestrator, repo, source, configured
    ):
        config = configured.model_copy(update={"calendar_id": None})

        with pytest.raises(SyncError) as exc_info:
            await orchestrator._fetch(config, deadline=0.0)

        assert exc_info.value.kind is ErrorKind.CONFIGURATION
        assert source.calls == []

    async def test_unexpected_exception_is_returned_not_raised(
        self, orchestrator, source, configured
    ):
        source.outcomes.append(RuntimeError("kaboom"))

        result = await orchestrator.execute(UNIT)

        assert result.outcome is SyncOutcome.ERROR
        assert result.error is not None and result.error.kind is ErrorKind.UNKNOWN

    async def test_store_failure_counts_as_failed_sync(
        self, orchestrator, repo, source, configured, clock
    ):
        source.outcomes.append(_events(clock, "a"))
        repo.fail_event_writes = True

        result = await orchestrator.execute(UNIT)

        assert result.outcome is SyncOutcome.ERROR
        assert len(repo.event_writes) == 1
        stats = await repo.load_stats(UNIT)
        assert stats.failure_count == 1


# ---------------------------------------------------------------------------
# Concurrency and retry
# ---------------------------------------------------------------------------


class TestSingleFlight:
    async def test_concurrent_calls_share_one_attempt(
        self, orchestrator, repo, source, configured, clock
    ):
        source.gate = asyncio.Event()
        source.outcomes.append(_events(clock, "a"))

        first = asyncio.create_task(orchestrator.execute(UNIT, force=True))
        await source.started.wait()
        assert orchestrator.is_running(UNIT)
        second = asyncio.create_task(orchestrator.execute(UNIT, force=True))
        await asyncio.sleep(0)
        source.gate.set()

        results = await asyncio.gather(first, second)

        assert results[0] is results[1]
        assert len(source.calls) == 1
        assert len(repo.event_writes) == 1
        assert len(repo.stats_writes) == 1
        assert not orchestrator.is_running(UNIT)

    async def test_cancelled_caller_does_not_abort_attempt(
        self, orchestrator, repo, source, configured, clock
    ):
        source.gate = asyncio.Event()
        caller = asyncio.create_task(orchestrator.execute(UNIT, force=True))
        await source.started.wait()

        caller.cancel()
        with pytest.raises(asyncio.CancelledError):
            await caller
        source.gate.set()
        for _ in range(200):
            if not orchestrator.is_running(UNIT):
                break
            await asyncio.sleep(0.01)

        assert len(repo.event_writes) == 1


class TestSyncWithRetry:
    async def test_retries_until_success(
        self, orchestrator, source, configured, clock, recording_sleep
    ):
        source.outcomes.extend(
            [
                SyncError(ErrorKind.NETWORK, "offline"),
                SyncError(ErrorKind.SERVER, "down"),
                _events(clock, "a"),
            ]
        )

        result = await orchestrator.sync_with_retry(UNIT)

        assert result.outcome is SyncOutcome.SUCCESS
        assert recording_sleep.delays == [1.0, 2.0]
        assert len(source.calls) == 3

    async def test_reports_attempt_count_after_exhaustion(
        self, orchestrator, source, configured, recording_sleep
    ):
        source.outcomes.extend([SyncError(ErrorKind.SERVER, "down")] * 3)

        result = await orchestrator.sync_with_retry(UNIT, max_attempts=3)

        assert result.outcome is SyncOutcome.ERROR
        assert result.error is not None
        assert result.error.user_message == "Sync failed after 3 attempt(s). Last error: down"
        assert result.error.kind is ErrorKind.SERVER
        assert recording_sleep.delays == [1.0, 2.0]

    async def test_non_retryable_error_stops_early(
        self, orchestrator, source, configured, recording_sleep
    ):
        source.outcomes.append(SyncError(ErrorKind.PERMISSION, "denied"))

        result = await orchestrator.sync_with_retry(UNIT)

        assert result.error is not None
        assert result.error.user_message.startswith("Sync failed after 1 attempt(s)")
        assert len(source.calls) == 1
        assert recording_sleep.delays == []

    async def test_max_attempts_must_be_positive(self, orchestrator):
        with pytest.raises(ValueError):
            await orchestrator.sync_with_retry(UNIT, max_attempts=0)
