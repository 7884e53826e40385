"""Sync orchestration: staleness policy, single-flight, outcome persistence.

One sync attempt for a unit runs, strictly in order:

1. load configuration (read-only) and decide whether a sync is needed;
2. check granted scopes, then make sure a fresh access token exists;
3. fetch and parse events through the remote client;
4. write exactly one ``EventSet`` (success, or error with the previous
   events preserved);
5. write exactly one ``SyncStats`` update.

Steps 2 and 3 are bounded by an outer timeout; exceeding it cancels the
in-flight HTTP calls and is recorded as a retryable network error.  The same
deadline is handed to the source, which raises its classified error rather
than start a backoff wait that would outlast it.  Local
store writes happen outside the timeout and are never interrupted.

At most one attempt runs per unit.  A call made while an attempt is running
joins it and receives the same ``SyncResult``.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta, tzinfo
from enum import StrEnum
from typing import Protocol

from opentelemetry import trace

from calmirror.core.logging import unit_context
from calmirror.google.credentials import CredentialManager
from calmirror.google.errors import ErrorContext, ErrorKind, SyncError, classify_exception
from calmirror.models import (
    Configuration,
    Event,
    EventSet,
    SyncOutcome,
    SyncResult,
    SyncStats,
    SyncStatus,
)
from calmirror.storage.local_store import StoreError
from calmirror.storage.units import UnitRepository

logger = logging.getLogger(__name__)

SYNC_TIMEOUT_SECONDS = 30.0
DEFAULT_MAX_SYNC_ATTEMPTS = 3
RETRY_BASE_DELAY_SECONDS = 1.0


class SyncState(StrEnum):
    IDLE = "idle"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"


class EventSource(Protocol):
    """What the orchestrator needs from the remote client."""

    async def fetch_events(
        self,
        calendar_id: str,
        *,
        max_results: int,
        weeks_ahead: int,
        calendar_name: str = "",
        tz: tzinfo | None = None,
        deadline: float | None = None,
    ) -> list[Event]:
        """Fetch normalized upcoming events, giving up on backoff past *deadline*."""
        ...


class SyncOrchestrator:
    """Runs sync attempts for configured units.

    Parameters
    ----------
    repository:
        Per-unit storage for configuration, events and stats.
    credentials:
        The credential manager shared with ``source``.
    source:
        Remote event source, normally a ``GoogleCalendarClient``.
    timeout:
        Hard bound, in seconds, on the network phase of one attempt.
    """

    def __init__(
        self,
        repository: UnitRepository,
        credentials: CredentialManager,
        source: EventSource,
        *,
        timeout: float = SYNC_TIMEOUT_SECONDS,
        tz: tzinfo | None = None,
        clock: Callable[[], datetime] | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        self._repository = repository
        self._credentials = credentials
        self._source = source
        self._timeout = timeout
        self._tz = tz
        self._clock = clock or (lambda: datetime.now(UTC))
        self._sleep = sleep or asyncio.sleep
        self._in_flight: dict[str, asyncio.Task[SyncResult]] = {}
        self._states: dict[str, SyncState] = {}
        self._tracer = trace.get_tracer("calmirror")

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def state(self, unit: str) -> SyncState:
        return self._states.get(unit, SyncState.IDLE)

    def is_running(self, unit: str) -> bool:
        task = self._in_flight.get(unit)
        return task is not None and not task.done()

    async def status(self, unit: str) -> tuple[EventSet | None, SyncStats]:
        """Current persisted outcome for *unit*, as shown to the display layer."""
        return await self._repository.load_events(unit), await self._repository.load_stats(unit)

    async def is_sync_needed(self, unit: str, *, config: Configuration | None = None) -> bool:
        """True when the unit has never synced successfully or its data is stale."""
        if config is None:
            config = await self._repository.load_configuration(unit)
        if config is None or not config.is_ready or not config.enabled:
            return False

        stats = await self._repository.load_stats(unit)
        if stats.last_sync is None:
            return True
        age = self._clock() - stats.last_sync
        return age >= timedelta(hours=config.sync_frequency_hours)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute(
        self,
        unit: str,
        *,
        force: bool = False,
        clear_events: bool = False,
    ) -> SyncResult:
        """Run one sync attempt for *unit*, or join the one already running.

        A non-forced call returns ``SyncOutcome.SKIPPED`` when the unit is
        disabled or its data is still fresh.  Sync failures are returned as
        ``SyncOutcome.ERROR`` results, never raised.
        """
        running = self._in_flight.get(unit)
        if running is not None and not running.done():
            logger.info("Sync already running for unit %s; joining it", unit)
            return await asyncio.shield(running)

        task = asyncio.create_task(
            self._run(unit, force=force, clear_events=clear_events),
            name=f"calmirror-sync-{unit}",
        )
        self._in_flight[unit] = task
        task.add_done_callback(lambda done: self._forget(unit, done))
        return await asyncio.shield(task)

    def _forget(self, unit: str, task: asyncio.Task[SyncResult]) -> None:
        if self._in_flight.get(unit) is task:
            del self._in_flight[unit]

    async def sync_with_retry(
        self,
        unit: str,
        *,
        max_attempts: int = DEFAULT_MAX_SYNC_ATTEMPTS,
    ) -> SyncResult:
        """Forced sync with an outer retry loop, for user-triggered "sync now".

        Waits ``RETRY_BASE_DELAY_SECONDS * attempt`` between attempts and
        stops early on errors that are not retryable.
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

        result: SyncResult | None = None
        for attempt in range(1, max_attempts + 1):
            result = await self.execute(unit, force=True)
            if result.outcome is not SyncOutcome.ERROR:
                return result
            if result.error is not None and not result.error.is_retryable:
                break
            if attempt < max_attempts:
                await self._sleep(RETRY_BASE_DELAY_SECONDS * attempt)

        if result is None or result.error is None:
            raise RuntimeError(f"Sync for unit {unit} failed without an error")
        last = result.error
        result.error = SyncError(
            last.kind,
            f"Sync failed after {attempt} attempt(s). Last error: {last.user_message}",
            last.technical_message,
            is_retryable=last.is_retryable,
            severity=last.severity,
            status_code=last.status_code,
            reason=last.reason,
            retry_after=last.retry_after,
            requires_reauth=last.requires_reauth,
            missing_scopes=last.missing_scopes,
        )
        return result

    async def _run(
        self,
        unit: str,
        *,
        force: bool,
        clear_events: bool,
    ) -> SyncResult:
        with unit_context(unit), self._tracer.start_as_current_span("calmirror.sync") as span:
            span.set_attribute("calmirror.unit", unit)
            span.set_attribute("calmirror.force", force)
            self._states[unit] = SyncState.RUNNING
            try:
                result = await self._attempt(
                    unit, force=force, clear_events=clear_events
                )
            except BaseException:
                self._states[unit] = SyncState.FAILED
                raise
            span.set_attribute("calmirror.outcome", result.outcome.value)
            if result.outcome is SyncOutcome.ERROR:
                self._states[unit] = SyncState.FAILED
            elif result.outcome is SyncOutcome.SUCCESS:
                self._states[unit] = SyncState.SUCCESS
            else:
                self._states[unit] = SyncState.IDLE
            return result

    async def _attempt(
        self,
        unit: str,
        *,
        force: bool,
        clear_events: bool,
    ) -> SyncResult:
        config = await self._repository.load_configuration(unit)
        if config is None or not config.is_ready:
            error = SyncError(
                ErrorKind.CONFIGURATION,
                "Calendar is not configured",
                f"Unit {unit} has no usable configuration",
            )
            logger.warning("Sync skipped for unit %s: %s", unit, error.technical_message)
            return SyncResult(unit=unit, outcome=SyncOutcome.ERROR, error=error)

        if not force:
            if not config.enabled:
                logger.debug("Unit %s is disabled; not syncing", unit)
                return SyncResult(unit=unit, outcome=SyncOutcome.SKIPPED)
            if not await self.is_sync_needed(unit, config=config):
                logger.debug("Unit %s synced recently; not syncing", unit)
                return SyncResult(unit=unit, outcome=SyncOutcome.SKIPPED)

        error: SyncError | None = None
        events: list[Event] = []
        try:
            deadline = asyncio.get_running_loop().time() + self._timeout
            events = await asyncio.wait_for(
                self._fetch(config, deadline=deadline), timeout=self._timeout
            )
        except TimeoutError:
            error = SyncError(
                ErrorKind.NETWORK,
                "Sync took too long, please try again",
                f"Sync exceeded the {self._timeout:.0f}s limit",
                is_retryable=True,
            )
        except SyncError as exc:
            error = exc
        except Exception as exc:
            logger.warning("Unexpected error while syncing unit %s", unit, exc_info=True)
            error = classify_exception(exc, ErrorContext.CALENDAR_SYNC)

        now = self._clock()
        stats = await self._repository.load_stats(unit)

        if error is None:
            event_set = EventSet(
                last_sync=now,
                status=SyncStatus.SUCCESS,
                events=events,
                event_count=len(events),
            )
            try:
                await self._repository.save_events(unit, event_set)
            except StoreError as exc:
                error = SyncError(
                    ErrorKind.UNKNOWN,
                    "Could not save the calendar locally",
                    f"Local store write failed: {exc}",
                )
            else:
                await self._save_stats(unit, stats.record_success(now))
                logger.info("Synced %d event(s) for unit %s", len(events), unit)
                return SyncResult(
                    unit=unit,
                    outcome=SyncOutcome.SUCCESS,
                    event_count=len(events),
                    finished_at=now,
                )
        else:
            await self._persist_failure(
                unit, error, clear_events=clear_events
            )

        await self._save_stats(unit, stats.record_failure(now))
        logger.error(
            "Sync failed for unit %s (%s): %s",
            unit,
            error.kind.value,
            error.technical_message,
        )
        return SyncResult(unit=unit, outcome=SyncOutcome.ERROR, error=error, finished_at=now)

    async def _fetch(self, config: Configuration, *, deadline: float) -> list[Event]:
        if config.calendar_id is None:
            raise SyncError(
                ErrorKind.CONFIGURATION,
                "Calendar is not configured",
                "Configuration has no calendar_id",
            )
        await self._credentials.require_scopes()
        await self._credentials.ensure_access_token()
        return await self._source.fetch_events(
            config.calendar_id,
            max_results=config.max_events,
            weeks_ahead=config.weeks_ahead,
            calendar_name=config.calendar_name or "",
            tz=self._tz,
            deadline=deadline,
        )

    async def _persist_failure(
        self,
        unit: str,
        error: SyncError,
        *,
        clear_events: bool,
    ) -> None:
        previous = await self._repository.load_events(unit)
        kept = [] if clear_events or previous is None else previous.events
        event_set = EventSet(
            last_sync=previous.last_sync if previous is not None else None,
            status=SyncStatus.ERROR,
            error_message=error.user_message,
            events=kept,
            event_count=len(kept),
        )
        try:
            await self._repository.save_events(unit, event_set)
        except StoreError as exc:
            logger.error("Could not record sync failure for unit %s: %s", unit, exc)

    async def _save_stats(self, unit: str, stats: SyncStats) -> None:
        try:
            await self._repository.save_stats(unit, stats)
        except StoreError as exc:
            logger.error("Could not update sync stats for unit %s: %s", unit, exc)
