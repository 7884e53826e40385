"""Authenticated Google Calendar API client with bounded retries.

Retry policy per logical operation:

- at most ``MAX_ATTEMPTS`` attempts;
- HTTP 401: force one token refresh and retry once; that retry does not
  consume an attempt;
- 429, 5xx and transport failures: wait ``retry_delay_seconds`` and retry,
  consuming an attempt;
- when the caller passes a ``deadline`` (event loop time) and the wait would
  run past it, the classified error is raised instead of sleeping;
- anything else: raise immediately.

Every failure leaves this module as a ``SyncError``.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta, tzinfo
from typing import Any
from urllib.parse import quote

import httpx

from calmirror.google.credentials import CredentialManager
from calmirror.google.errors import (
    ErrorContext,
    ErrorKind,
    SyncError,
    classify_exception,
    classify_response_object,
    retry_delay_seconds,
    technical_summary,
)
from calmirror.google.parser import parse_calendar_list, parse_events_page
from calmirror.models import CalendarInfo, Event

logger = logging.getLogger(__name__)

GOOGLE_CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"
MAX_ATTEMPTS = 3
REQUEST_TIMEOUT_SECONDS = 10.0
MAX_RETRY_DELAY_SECONDS = 60.0
MAX_PAGE_SIZE = 250
USER_AGENT = "calmirror/0.1.0 (httpx)"

Sleep = Callable[[float], Awaitable[None]]


def _google_rfc3339(value: datetime) -> str:
    normalized = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    return normalized.astimezone(UTC).isoformat().replace("+00:00", "Z")


class GoogleCalendarClient:
    """Read-only Google Calendar client.

    Parameters
    ----------
    credentials:
        The single ``CredentialManager`` shared with the orchestrator.
    http_client:
        Optional shared client; one with ``REQUEST_TIMEOUT_SECONDS`` is
        created and owned otherwise.
    sleep:
        Awaitable used for backoff waits, injectable for tests.
    """

    def __init__(
        self,
        credentials: CredentialManager,
        http_client: httpx.AsyncClient | None = None,
        *,
        max_attempts: int = MAX_ATTEMPTS,
        request_timeout: float = REQUEST_TIMEOUT_SECONDS,
        max_retry_delay: float = MAX_RETRY_DELAY_SECONDS,
        base_url: str = GOOGLE_CALENDAR_API_BASE_URL,
        sleep: Sleep | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._credentials = credentials
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=request_timeout)
        self._max_attempts = max_attempts
        self._request_timeout = request_timeout
        self._max_retry_delay = max_retry_delay
        self._base_url = base_url.rstrip("/")
        self._sleep = sleep or asyncio.sleep
        self._clock = clock or (lambda: datetime.now(UTC))

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def list_calendars(self, *, deadline: float | None = None) -> list[CalendarInfo]:
        """Return every calendar visible to the signed-in account."""
        calendars: list[CalendarInfo] = []
        page_token: str | None = None
        while True:
            params: dict[str, Any] = {"maxResults": MAX_PAGE_SIZE}
            if page_token:
                params["pageToken"] = page_token
            payload = await self._request_json(
                "/users/me/calendarList",
                params=params,
                context=ErrorContext.CALENDAR_LIST,
                deadline=deadline,
            )
            try:
                calendars.extend(parse_calendar_list(payload))
            except ValueError as exc:
                raise classify_exception(exc, ErrorContext.CALENDAR_LIST) from exc
            page_token = payload.get("nextPageToken")
            if not isinstance(page_token, str) or not page_token:
                return calendars

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
        """Fetch up to *max_results* upcoming events within *weeks_ahead* weeks.

        *deadline* is an event loop time after which no backoff wait may end.
        """
        if max_results < 1:
            raise ValueError("max_results must be at least 1")
        if weeks_ahead < 1:
            raise ValueError("weeks_ahead must be at least 1")

        now = self._clock()
        path = f"/calendars/{quote(calendar_id, safe='')}/events"
        base_params: dict[str, Any] = {
            "singleEvents": "true",
            "showDeleted": "false",
            "orderBy": "startTime",
            "timeMin": _google_rfc3339(now),
            "timeMax": _google_rfc3339(now + timedelta(weeks=weeks_ahead)),
        }

        events: list[Event] = []
        page_token: str | None = None
        while len(events) < max_results:
            params = dict(base_params)
            params["maxResults"] = min(max_results - len(events), MAX_PAGE_SIZE)
            if page_token:
                params["pageToken"] = page_token

            payload = await self._request_json(
                path, params=params, context=ErrorContext.EVENT_FETCH, deadline=deadline
            )
            try:
                page = parse_events_page(payload, calendar_name=calendar_name, tz=tz)
            except ValueError as exc:
                raise classify_exception(exc, ErrorContext.EVENT_FETCH) from exc

            if page.dropped:
                logger.warning(
                    "Dropped %d malformed event(s) from calendar %s", page.dropped, calendar_id
                )
            events.extend(page.events)
            page_token = page.next_page_token
            if page_token is None:
                break

        events.sort(key=lambda event: event.start)
        return events[:max_results]

    # ------------------------------------------------------------------
    # Request execution
    # ------------------------------------------------------------------

    async def _request_json(
        self,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        context: ErrorContext,
        deadline: float | None = None,
    ) -> dict[str, Any]:
        response = await self._request_with_retry(
            "GET", path, params=params, context=context, deadline=deadline
        )
        try:
            payload = response.json()
        except ValueError as exc:
            raise SyncError(
                ErrorKind.VALIDATION,
                "Unexpected response from Google",
                "Google Calendar API returned invalid JSON for a successful response",
            ) from exc
        if not isinstance(payload, dict):
            raise SyncError(
                ErrorKind.VALIDATION,
                "Unexpected response from Google",
                "Google Calendar API returned an unexpected JSON payload shape",
            )
        return payload

    async def _request_with_retry(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None,
        context: ErrorContext,
        deadline: float | None = None,
    ) -> httpx.Response:
        normalized_path = path if path.startswith("/") else f"/{path}"
        url = f"{self._base_url}{normalized_path}"
        refreshed_after_401 = False
        attempt = 0

        while True:
            attempt += 1
            try:
                response = await self._request_once(method, url, params=params)
                if response.status_code == 401 and not refreshed_after_401:
                    refreshed_after_401 = True
                    logger.info("Google Calendar returned 401; refreshing token and retrying once")
                    rejected = _bearer_token(response.request)
                    await self._credentials.ensure_access_token(
                        force_refresh=True, rejected_token=rejected
                    )
                    response = await self._request_once(method, url, params=params)
            except SyncError as exc:
                error = exc
            except (httpx.HTTPError, OSError) as exc:
                error = classify_exception(exc, context)
            else:
                if 200 <= response.status_code < 300:
                    return response
                error = classify_response_object(response, context)

            if not error.is_retryable or attempt >= self._max_attempts:
                logger.warning(
                    "Google Calendar request failed: %s",
                    technical_summary(error, context, attempt),
                )
                raise error

            delay = min(retry_delay_seconds(error, attempt), self._max_retry_delay)
            if deadline is not None:
                remaining = deadline - asyncio.get_running_loop().time()
                if delay >= remaining:
                    logger.warning(
                        "Google Calendar request failed; retry in %.1fs would exceed the "
                        "remaining %.1fs budget: %s",
                        delay,
                        max(remaining, 0.0),
                        technical_summary(error, context, attempt),
                    )
                    raise error
            logger.warning(
                "Google Calendar request failed (%s, attempt %d/%d); retrying in %.1fs",
                error.kind.value,
                attempt,
                self._max_attempts,
                delay,
            )
            await self._sleep(delay)

    async def _request_once(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None,
    ) -> httpx.Response:
        access_token = await self._credentials.ensure_access_token()
        headers = {
            "Authorization": f"Bearer {access_token}",
            "Accept": "application/json",
            "User-Agent": USER_AGENT,
        }
        return await self._http_client.request(
            method,
            url,
            params=params,
            headers=headers,
            timeout=self._request_timeout,
        )


def _bearer_token(request: httpx.Request) -> str | None:
    header = request.headers.get("Authorization", "")
    if header.startswith("Bearer "):
        return header[len("Bearer ") :]
    return None
