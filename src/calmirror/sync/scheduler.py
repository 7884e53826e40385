"""Periodic, on-demand and recovery scheduling of sync attempts.

Each scheduled unit owns one named asyncio task that loops forever:

    check constraints -> check quiet hours -> execute -> wait

The wait after a cycle is the unit's frequency plus a random flex delay of
up to ``flex_minutes``.  After a retryable failure the loop waits on the
backoff ladder instead (15 min, 30 min, 60 min, ...), never longer than
the normal interval.  A constraint miss re-checks after
``constraint_recheck_seconds`` without running.  All attempts go through
``SyncOrchestrator.execute`` and so share its single-flight guarantee.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta, tzinfo

from calmirror.models import DEFAULT_SYNC_FREQUENCY_HOURS, SyncOutcome, SyncResult
from calmirror.storage.units import UnitRepository
from calmirror.sync.orchestrator import SyncOrchestrator

logger = logging.getLogger(__name__)

DEFAULT_FLEX_MINUTES = 30
DEFAULT_CONSTRAINT_RECHECK_SECONDS = 900
DEFAULT_RETRY_ATTEMPTS = 3
BACKOFF_BASE_SECONDS = 15 * 60


def backoff_delay_seconds(attempt: int) -> float:
    """Delay before retry *attempt* (1-based): 15 min doubling each time."""
    if attempt < 1:
        raise ValueError("attempt must be at least 1")
    return float(BACKOFF_BASE_SECONDS * 2 ** (attempt - 1))


def _always_true() -> bool:
    return True


def _always_false() -> bool:
    return False


@dataclass(frozen=True)
class SyncConstraints:
    """Host conditions a periodic run requires.

    ``network_available`` must return True and ``battery_critical`` must
    return False for a run to proceed.  Manual syncs ignore constraints.
    """

    network_available: Callable[[], bool] = _always_true
    battery_critical: Callable[[], bool] = _always_false

    def satisfied(self) -> bool:
        return self.network_available() and not self.battery_critical()


class SyncScheduler:
    """Owns the background tasks that keep units in sync."""

    def __init__(
        self,
        orchestrator: SyncOrchestrator,
        repository: UnitRepository,
        *,
        flex_minutes: int = DEFAULT_FLEX_MINUTES,
        constraint_recheck_seconds: float = DEFAULT_CONSTRAINT_RECHECK_SECONDS,
        constraints: SyncConstraints | None = None,
        quiet_start: int | None = None,
        quiet_end: int | None = None,
        tz: tzinfo | None = None,
        clock: Callable[[], datetime] | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
        rand: Callable[[], float] | None = None,
    ) -> None:
        if flex_minutes < 0:
            raise ValueError("flex_minutes must not be negative")
        if (quiet_start is None) != (quiet_end is None):
            raise ValueError("quiet_start and quiet_end must be set together")
        self._orchestrator = orchestrator
        self._repository = repository
        self._flex_seconds = flex_minutes * 60
        self._recheck_seconds = constraint_recheck_seconds
        self._constraints = constraints or SyncConstraints()
        self._quiet_start = quiet_start
        self._quiet_end = quiet_end
        self._tz = tz
        self._clock = clock or (lambda: datetime.now(UTC))
        self._sleep = sleep or asyncio.sleep
        self._rand = rand or random.random
        self._periodic: dict[str, asyncio.Task[None]] = {}
        self._frequencies: dict[str, float] = {}
        self._failures: dict[str, int] = {}
        self._retries: dict[str, asyncio.Task[SyncResult]] = {}

    # ------------------------------------------------------------------
    # Periodic scheduling
    # ------------------------------------------------------------------

    def schedule_periodic(
        self,
        unit: str,
        frequency_hours: float = DEFAULT_SYNC_FREQUENCY_HOURS,
    ) -> asyncio.Task[None]:
        """Arm (or re-arm) the periodic loop for *unit*."""
        if frequency_hours <= 0:
            raise ValueError("frequency_hours must be positive")

        existing = self._periodic.pop(unit, None)
        if existing is not None and not existing.done():
            existing.cancel()

        self._frequencies[unit] = frequency_hours
        self._failures.pop(unit, None)
        task = asyncio.create_task(self._periodic_loop(unit), name=f"calmirror-periodic-{unit}")
        self._periodic[unit] = task
        logger.info(
            "Periodic sync scheduled for unit %s (every %gh, flex %dm)",
            unit,
            frequency_hours,
            self._flex_seconds // 60,
        )
        return task

    async def _periodic_loop(self, unit: str) -> None:
        try:
            while True:
                delay = await self.run_cycle(unit)
                await self._sleep(delay)
        except asyncio.CancelledError:
            logger.debug("Periodic sync loop cancelled for unit %s", unit)
            raise

    async def run_cycle(self, unit: str) -> float:
        """Run one periodic cycle for *unit*; return seconds until the next one."""
        interval = self._frequencies.get(unit, DEFAULT_SYNC_FREQUENCY_HOURS) * 3600

        if not self._constraints.satisfied():
            logger.info("Sync constraints not met for unit %s; re-checking later", unit)
            return self._recheck_seconds

        quiet_remaining = self.seconds_until_quiet_end()
        if quiet_remaining > 0:
            logger.info("Quiet hours; deferring sync of unit %s by %.0fs", unit, quiet_remaining)
            return quiet_remaining

        try:
            result = await self._orchestrator.execute(unit)
        except Exception:
            logger.exception("Periodic sync crashed for unit %s", unit)
            result = None

        if result is not None and result.outcome is not SyncOutcome.ERROR:
            self._failures.pop(unit, None)
            return interval + self._flex_seconds * self._rand()

        failures = self._failures.get(unit, 0) + 1
        self._failures[unit] = failures
        if result is not None and result.error is not None and not result.error.is_retryable:
            return interval + self._flex_seconds * self._rand()
        return min(backoff_delay_seconds(failures), interval)

    def seconds_until_quiet_end(self) -> float:
        """Seconds left in the current quiet window, 0.0 outside it."""
        if self._quiet_start is None or self._quiet_end is None:
            return 0.0
        if self._quiet_start == self._quiet_end:
            return 0.0

        now = self._clock().astimezone(self._tz)
        hour = now.hour
        if self._quiet_start < self._quiet_end:
            inside = self._quiet_start <= hour < self._quiet_end
        else:
            inside = hour >= self._quiet_start or hour < self._quiet_end
        if not inside:
            return 0.0

        end = now.replace(hour=self._quiet_end, minute=0, second=0, microsecond=0)
        if end <= now:
            end += timedelta(days=1)
        return (end - now).total_seconds()

    # ------------------------------------------------------------------
    # On-demand
    # ------------------------------------------------------------------

    async def sync_now(self, unit: str) -> SyncResult:
        """One-shot forced sync; joins an attempt already running for *unit*."""
        logger.info("Manual sync requested for unit %s", unit)
        return await self._orchestrator.execute(unit, force=True)

    def retry_with_backoff(
        self,
        unit: str,
        attempts: int = DEFAULT_RETRY_ATTEMPTS,
    ) -> asyncio.Task[SyncResult]:
        """Arm a retry chain for *unit*: try now, then after 15, 30, 60... minutes.

        The chain stops at the first attempt that does not fail with a
        retryable error.  An already armed chain for the unit is replaced.
        """
        if attempts < 1:
            raise ValueError("attempts must be at least 1")

        existing = self._retries.pop(unit, None)
        if existing is not None and not existing.done():
            existing.cancel()

        task = asyncio.create_task(
            self._retry_chain(unit, attempts), name=f"calmirror-retry-{unit}"
        )
        self._retries[unit] = task
        task.add_done_callback(lambda done: self._forget_retry(unit, done))
        return task

    def _forget_retry(self, unit: str, task: asyncio.Task[SyncResult]) -> None:
        if self._retries.get(unit) is task:
            del self._retries[unit]

    async def _retry_chain(self, unit: str, attempts: int) -> SyncResult:
        attempt = 1
        while True:
            result = await self._orchestrator.execute(unit, force=True)
            if result.outcome is not SyncOutcome.ERROR:
                return result
            if result.error is not None and not result.error.is_retryable:
                return result
            if attempt >= attempts:
                logger.warning("Giving up on unit %s after %d attempt(s)", unit, attempt)
                return result
            delay = backoff_delay_seconds(attempt)
            logger.info("Retrying unit %s in %.0fs (attempt %d/%d)", unit, delay, attempt, attempts)
            await self._sleep(delay)
            attempt += 1

    # ------------------------------------------------------------------
    # Recovery & cancellation
    # ------------------------------------------------------------------

    async def recover(self, units: Iterable[str] | None = None) -> list[str]:
        """Re-arm every configured, enabled unit after a restart.

        Existing tasks for those units are replaced.  Persisted stats and
        events are left untouched.  Returns the units that were armed.
        """
        candidates = list(units) if units is not None else await self._repository.list_units()
        armed: list[str] = []
        for unit in candidates:
            config = await self._repository.load_configuration(unit)
            if config is None or not config.is_ready or not config.enabled:
                if unit in self._periodic:
                    await self.cancel(unit)
                continue
            self.schedule_periodic(unit, config.sync_frequency_hours)
            armed.append(unit)
        logger.info("Recovered %d scheduled unit(s)", len(armed))
        return armed

    async def cancel(self, unit: str) -> bool:
        """Stop the periodic loop and any retry chain for *unit*."""
        tasks = [
            task
            for task in (self._periodic.pop(unit, None), self._retries.pop(unit, None))
            if task is not None
        ]
        self._frequencies.pop(unit, None)
        self._failures.pop(unit, None)
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        return bool(tasks)

    async def cancel_all(self) -> None:
        for unit in sorted(set(self._periodic) | set(self._retries)):
            await self.cancel(unit)

    def scheduled_units(self) -> list[str]:
        return sorted(unit for unit, task in self._periodic.items() if not task.done())
