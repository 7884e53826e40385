"""Google Calendar JSON -> normalized ``CalendarInfo`` / ``Event`` records.

All event boundaries are converted to one local timezone: the configured
zone when one is given, otherwise the host zone resolved separately for each
instant so that dates across a daylight-saving change keep their wall-clock
time.  All-day events span whole local days: start at 00:00:00 on the first
day, end at 23:59:59 on the last day (Google's ``end.date`` is exclusive).
A malformed item is dropped with a warning; it never aborts the rest of the
batch.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta, tzinfo
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from calmirror.models import DEFAULT_CALENDAR_COLOR, CalendarInfo, Event

logger = logging.getLogger(__name__)

DEFAULT_CALENDAR_NAME = "Untitled calendar"
DEFAULT_EVENT_TITLE = "Untitled event"
END_OF_DAY = time(23, 59, 59)


class EventsPage(BaseModel):
    """One page of the events endpoint after parsing."""

    model_config = ConfigDict(extra="forbid")

    events: list[Event] = Field(default_factory=list)
    next_page_token: str | None = None
    time_zone: str | None = None
    dropped: int = 0


def to_local(value: datetime, tz: tzinfo | None = None) -> datetime:
    """Convert *value* to *tz*, or to the host zone in effect at that instant.

    A naive *value* is taken as host-local wall time.
    """
    if tz is None:
        return value.astimezone()
    if value.tzinfo is None:
        value = value.astimezone()
    return value.astimezone(tz)


def local_wall_time(day: date, at: time, tz: tzinfo | None = None) -> datetime:
    """Wall-clock *at* on *day* in *tz*, or in the host zone for that date."""
    if tz is None:
        return datetime.combine(day, at).astimezone()
    return datetime.combine(day, at, tzinfo=tz)


def _coerce_zoneinfo(timezone: str | None) -> tzinfo | None:
    if not timezone:
        return None
    try:
        return ZoneInfo(timezone)
    except (ZoneInfoNotFoundError, ValueError):
        return None


def _normalize_optional_text(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    return normalized or None


def _parse_google_datetime(value: str, *, fallback_tz: tzinfo | None) -> datetime:
    normalized = value.strip()
    if normalized.endswith("Z"):
        normalized = f"{normalized[:-1]}+00:00"
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError as exc:
        raise ValueError(f"Google Calendar returned an invalid dateTime: {value}") from exc
    if parsed.tzinfo is not None or fallback_tz is None:
        return parsed
    return parsed.replace(tzinfo=fallback_tz)


def _parse_boundary(
    payload: Any,
    *,
    fallback_tz: tzinfo | None,
) -> datetime | date:
    """Return a ``datetime`` for timed boundaries, a ``date`` for all-day ones."""
    if not isinstance(payload, dict):
        raise ValueError("event boundary is missing")

    date_time = payload.get("dateTime")
    if isinstance(date_time, str) and date_time.strip():
        boundary_tz = _coerce_zoneinfo(_normalize_optional_text(payload.get("timeZone")))
        return _parse_google_datetime(date_time, fallback_tz=boundary_tz or fallback_tz)

    date_value = payload.get("date")
    if isinstance(date_value, str) and date_value.strip():
        try:
            return date.fromisoformat(date_value.strip())
        except ValueError as exc:
            raise ValueError(f"Google Calendar returned an invalid date: {date_value}") from exc

    raise ValueError("event boundary has neither dateTime nor date")


def parse_calendar_list(payload: Any) -> list[CalendarInfo]:
    """Parse a ``calendarList`` response; items without an id are skipped."""
    items = payload.get("items") if isinstance(payload, dict) else None
    if not isinstance(items, list):
        raise ValueError("calendar list response is missing an items array")

    calendars: list[CalendarInfo] = []
    for item in items:
        if not isinstance(item, dict):
            continue
        calendar_id = _normalize_optional_text(item.get("id"))
        if calendar_id is None:
            logger.warning("Skipping calendar list entry without an id")
            continue
        calendars.append(
            CalendarInfo(
                id=calendar_id,
                name=_normalize_optional_text(item.get("summaryOverride"))
                or _normalize_optional_text(item.get("summary"))
                or DEFAULT_CALENDAR_NAME,
                description=_normalize_optional_text(item.get("description")),
                is_shared=item.get("accessRole", "owner") != "owner",
                color=_normalize_optional_text(item.get("backgroundColor"))
                or DEFAULT_CALENDAR_COLOR,
            )
        )
    return calendars


def parse_event(
    item: dict[str, Any],
    *,
    tz: tzinfo | None = None,
    calendar_name: str = "",
    fallback_tz: tzinfo | None = None,
) -> Event:
    """Normalize one raw event.

    ``tz=None`` converts to the host zone in effect at each boundary.

    Raises:
        ValueError: If the id or a start/end boundary is missing or invalid.
    """
    event_id = _normalize_optional_text(item.get("id"))
    if event_id is None:
        raise ValueError("event is missing an id")

    source_tz = fallback_tz or tz
    start_raw = _parse_boundary(item.get("start"), fallback_tz=source_tz)
    end_raw = _parse_boundary(item.get("end"), fallback_tz=source_tz)

    if isinstance(start_raw, datetime):
        start = to_local(start_raw, tz)
        if isinstance(end_raw, datetime):
            end = to_local(end_raw, tz)
        else:
            end = local_wall_time(end_raw - timedelta(days=1), END_OF_DAY, tz)
        is_all_day = False
    else:
        first_day = start_raw
        # end.date is exclusive; an inverted or mixed-type end collapses to one day
        if isinstance(end_raw, datetime):
            last_day = first_day
        else:
            last_day = max(end_raw - timedelta(days=1), first_day)
        start = local_wall_time(first_day, time.min, tz)
        end = local_wall_time(last_day, END_OF_DAY, tz)
        is_all_day = True

    if end < start:
        raise ValueError(f"event {event_id} ends before it starts")

    organizer = item.get("organizer")
    organizer_name = None
    if isinstance(organizer, dict):
        organizer_name = _normalize_optional_text(organizer.get("displayName"))

    return Event(
        id=event_id,
        title=_normalize_optional_text(item.get("summary")) or DEFAULT_EVENT_TITLE,
        start=start,
        end=end,
        is_all_day=is_all_day,
        is_multi_day=start.date() != end.date(),
        calendar_name=calendar_name or organizer_name or "",
        location=_normalize_optional_text(item.get("location")),
        description=_normalize_optional_text(item.get("description")),
    )


def parse_events_page(
    payload: Any,
    *,
    calendar_name: str = "",
    tz: tzinfo | None = None,
) -> EventsPage:
    """Parse one ``events.list`` response page, sorted by start ascending."""
    if not isinstance(payload, dict):
        raise ValueError("events response is not a JSON object")
    items = payload.get("items", [])
    if not isinstance(items, list):
        raise ValueError("events response items is not an array")

    time_zone = _normalize_optional_text(payload.get("timeZone"))
    calendar_tz = _coerce_zoneinfo(time_zone)

    events: list[Event] = []
    dropped = 0
    for item in items:
        if not isinstance(item, dict):
            dropped += 1
            continue
        if item.get("status") == "cancelled":
            continue
        try:
            events.append(
                parse_event(
                    item,
                    tz=tz,
                    calendar_name=calendar_name,
                    fallback_tz=calendar_tz,
                )
            )
        except (ValueError, ValidationError) as exc:
            dropped += 1
            logger.warning("Dropping malformed event %r: %s", item.get("id"), exc)

    events.sort(key=lambda event: event.start)
    return EventsPage(
        events=events,
        next_page_token=_normalize_optional_text(payload.get("nextPageToken")),
        time_zone=time_zone,
        dropped=dropped,
    )


def parse_events(
    payload: Any,
    *,
    calendar_name: str = "",
    tz: tzinfo | None = None,
) -> list[Event]:
    return parse_events_page(payload, calendar_name=calendar_name, tz=tz).events
