"""Engine data model: configuration, events, icon associations, sync stats.

Everything persisted by the engine is a pydantic model serialized with
``model_dump_json`` and read back with ``model_validate_json``.  Datetimes are
always timezone-aware; events carry local-time boundaries.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import TYPE_CHECKING

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

if TYPE_CHECKING:
    from calmirror.google.errors import SyncError

DEFAULT_WEEKS_AHEAD = 4
DEFAULT_MAX_EVENTS = 50
DEFAULT_SYNC_FREQUENCY_HOURS = 4
DEFAULT_CALENDAR_COLOR = "#1976d2"


class SyncStatus(StrEnum):
    """Outcome recorded in the persisted event set."""

    SUCCESS = "success"
    ERROR = "error"


class SyncOutcome(StrEnum):
    """Outcome returned to callers of the orchestrator."""

    SUCCESS = "success"
    ERROR = "error"
    SKIPPED = "skipped"


class Configuration(BaseModel):
    """Per-unit configuration written by the setup flow."""

    model_config = ConfigDict(extra="ignore")

    widget_type: str = "calendar"
    calendar_id: str | None = None
    calendar_name: str | None = None
    weeks_ahead: int = Field(default=DEFAULT_WEEKS_AHEAD, gt=0)
    max_events: int = Field(default=DEFAULT_MAX_EVENTS, gt=0)
    sync_frequency_hours: int = Field(default=DEFAULT_SYNC_FREQUENCY_HOURS, gt=0)
    account_email: str | None = None
    is_configured: bool = False
    enabled: bool = True
    last_update: datetime | None = None

    @field_validator("calendar_id", "calendar_name", "account_email")
    @classmethod
    def _normalize_optional_text(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip()
        return normalized or None

    @property
    def is_ready(self) -> bool:
        """True when the unit can be synced."""
        return self.is_configured and self.calendar_id is not None


class CalendarInfo(BaseModel):
    """One entry of the remote calendar list."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    id: str = Field(min_length=1)
    name: str
    description: str | None = None
    is_shared: bool = False
    color: str = DEFAULT_CALENDAR_COLOR


class Event(BaseModel):
    """A normalized calendar event in local time."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    id: str = Field(min_length=1)
    title: str
    start: datetime
    end: datetime
    is_all_day: bool = False
    is_multi_day: bool = False
    calendar_name: str = ""
    location: str | None = None
    description: str | None = None

    @model_validator(mode="after")
    def _validate_window(self) -> Event:
        if self.start.tzinfo is None or self.end.tzinfo is None:
            raise ValueError("event boundaries must be timezone-aware")
        if self.end < self.start:
            raise ValueError("event end must not precede its start")
        return self


class EventSet(BaseModel):
    """The persisted result of the latest sync attempt for one unit."""

    model_config = ConfigDict(extra="ignore")

    last_sync: datetime | None = None
    status: SyncStatus = SyncStatus.SUCCESS
    error_message: str | None = None
    events: list[Event] = Field(default_factory=list)
    event_count: int = 0

    @model_validator(mode="after")
    def _order_events(self) -> EventSet:
        # Stable sort keeps provider order for events sharing a start time.
        self.events = sorted(self.events, key=lambda event: event.start)
        return self


class IconAssociation(BaseModel):
    """Keywords mapped to an icon reference."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    keywords: tuple[str, ...] = Field(min_length=1)
    icon: str = Field(min_length=1)
    display_name: str = ""

    @field_validator("keywords")
    @classmethod
    def _normalize_keywords(cls, value: tuple[str, ...]) -> tuple[str, ...]:
        normalized = tuple(keyword.strip() for keyword in value if keyword.strip())
        if not normalized:
            raise ValueError("keywords must contain at least one non-empty keyword")
        return normalized

    def matches(self, title: str) -> bool:
        lowered = title.casefold()
        return any(keyword.casefold() in lowered for keyword in self.keywords)


class IconSet(BaseModel):
    """Ordered icon associations for one unit."""

    model_config = ConfigDict(extra="ignore")

    associations: list[IconAssociation] = Field(default_factory=list)
    last_update: datetime | None = None


class SyncStats(BaseModel):
    """Cumulative counters for staleness, backoff and diagnostics."""

    model_config = ConfigDict(extra="ignore")

    last_sync: datetime | None = None
    last_failure: datetime | None = None
    sync_count: int = 0
    success_count: int = 0
    failure_count: int = 0

    @property
    def success_rate(self) -> float:
        if self.sync_count == 0:
            return 0.0
        return self.success_count / self.sync_count

    def record_success(self, at: datetime) -> SyncStats:
        return self.model_copy(
            update={
                "last_sync": at,
                "sync_count": self.sync_count + 1,
                "success_count": self.success_count + 1,
            }
        )

    def record_failure(self, at: datetime) -> SyncStats:
        return self.model_copy(
            update={
                "last_failure": at,
                "sync_count": self.sync_count + 1,
                "failure_count": self.failure_count + 1,
            }
        )


@dataclass
class SyncResult:
    """Outcome of one orchestrator run, returned to the caller."""

    unit: str
    outcome: SyncOutcome
    event_count: int = 0
    error: SyncError | None = None
    finished_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def ok(self) -> bool:
        return self.outcome is not SyncOutcome.ERROR
