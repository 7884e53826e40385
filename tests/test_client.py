"""Tests for the Google Calendar client retry policy and pagination."""

from __future__ import annotations

import asyncio
from datetime import timedelta
from urllib.parse import unquote
from zoneinfo import ZoneInfo

import httpx
import pytest
from conftest import make_token_record

from calmirror.google.client import MAX_ATTEMPTS, GoogleCalendarClient
from calmirror.google.credentials import GOOGLE_OAUTH_TOKEN_URL, CredentialManager, TokenStore
from calmirror.google.errors import ErrorKind, SyncError

pytestmark = pytest.mark.unit

CALENDAR_ID = "family@group.calendar.google.com"
PARIS = ZoneInfo("Europe/Paris")


def _event_item(event_id: str, day: int) -> dict:
    return {
        "id": event_id,
        "summary": f"Event {event_id}",
        "start": {"dateTime": f"2025-03-{day:02d}T10:00:00Z"},
        "end": {"dateTime": f"2025-03-{day:02d}T11:00:00Z"},
    }


@pytest.fixture
def client_factory(store, oauth_client, clock, mock_http, recording_sleep):
    def _factory(handler) -> GoogleCalendarClient:
        http_client = mock_http(handler)
        credentials = CredentialManager(oauth_client, TokenStore(store), http_client, clock=clock)
        return GoogleCalendarClient(credentials, http_client, sleep=recording_sleep, clock=clock)

    return _factory


# ---------------------------------------------------------------------------
# Fetching
# ---------------------------------------------------------------------------


class TestFetchEvents:
    async def test_request_shape(self, client_factory, signed_in, clock):
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, json={"items": [_event_item("a", 11)]})

        client = client_factory(handler)
        events = await client.fetch_events(
            CALENDAR_ID, max_results=10, weeks_ahead=2, calendar_name="Family", tz=PARIS
        )

        assert [event.id for event in events] == ["a"]
        assert events[0].calendar_name == "Family"
        request = requests[0]
        assert unquote(request.url.path).endswith(f"/calendars/{CALENDAR_ID}/events")
        params = request.url.params
        assert params["singleEvents"] == "true"
        assert params["orderBy"] == "startTime"
        assert params["maxResults"] == "10"
        assert params["timeMin"] == "2025-03-10T09:00:00Z"
        expected_max = (clock() + timedelta(weeks=2)).isoformat().replace("+00:00", "Z")
        assert params["timeMax"] == expected_max
        assert request.headers["Authorization"] == f"Bearer {signed_in.access_token}"

    async def test_pagination_stops_at_max_results(self, client_factory, signed_in):
        pages = {
            None: {"items": [_event_item("a", 11), _event_item("b", 12)], "nextPageToken": "p2"},
            "p2": {"items": [_event_item("c", 13), _event_item("d", 14)], "nextPageToken": "p3"},
        }
        seen_tokens: list[str | None] = []

        def handler(request: httpx.Request) -> httpx.Response:
            token = request.url.params.get("pageToken")
            seen_tokens.append(token)
            return httpx.Response(200, json=pages[token])

        client = client_factory(handler)
        events = await client.fetch_events(CALENDAR_ID, max_results=3, weeks_ahead=4, tz=PARIS)

        assert [event.id for event in events] == ["a", "b", "c"]
        assert seen_tokens == [None, "p2"]

    async def test_invalid_limits_rejected(self, client_factory, signed_in):
        client = client_factory(lambda request: httpx.Response(200, json={"items": []}))
        with pytest.raises(ValueError):
            await client.fetch_events(CALENDAR_ID, max_results=0, weeks_ahead=4)

    async def test_list_calendars(self, client_factory, signed_in):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path.endswith("/users/me/calendarList")
            return httpx.Response(200, json={"items": [{"id": "c1", "summary": "Mine"}]})

        calendars = await client_factory(handler).list_calendars()
        assert [info.name for info in calendars] == ["Mine"]


# ---------------------------------------------------------------------------
# Retry policy
# ---------------------------------------------------------------------------


class TestRetryPolicy:
    async def test_persistent_503_gives_up_after_max_attempts(
        self, client_factory, signed_in, recording_sleep
    ):
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            return httpx.Response(503, text="Service Unavailable")

        client = client_factory(handler)
        with pytest.raises(SyncError) as exc_info:
            await client.fetch_events(CALENDAR_ID, max_results=5, weeks_ahead=4)

        assert calls == MAX_ATTEMPTS == 3
        assert exc_info.value.kind is ErrorKind.SERVER
        assert exc_info.value.is_retryable
        assert recording_sleep.delays == [2.0, 4.0]

    async def test_transient_503_then_success(self, client_factory, signed_in, recording_sleep):
        responses = [httpx.Response(503), httpx.Response(200, json={"items": []})]

        client = client_factory(lambda request: responses.pop(0))
        events = await client.fetch_events(CALENDAR_ID, max_results=5, weeks_ahead=4)

        assert events == []
        assert recording_sleep.delays == [2.0]

    async def test_429_waits_retry_after(self, client_factory, signed_in, recording_sleep):
        responses = [
            httpx.Response(429, headers={"Retry-After": "7"}),
            httpx.Response(200, json={"items": []}),
        ]

        client = client_factory(lambda request: responses.pop(0))
        await client.fetch_events(CALENDAR_ID, max_results=5, weeks_ahead=4)

        assert recording_sleep.delays == [7.0]

    async def test_wait_past_deadline_raises_classified_error(
        self, client_factory, signed_in, recording_sleep
    ):
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            return httpx.Response(429, headers={"Retry-After": "30"})

        deadline = asyncio.get_running_loop().time() + 5.0
        with pytest.raises(SyncError) as exc_info:
            await client_factory(handler).fetch_events(
                CALENDAR_ID, max_results=5, weeks_ahead=4, deadline=deadline
            )

        assert exc_info.value.kind is ErrorKind.RATE_LIMIT
        assert exc_info.value.retry_after == 30.0
        assert calls == 1
        assert recording_sleep.delays == []

    async def test_wait_within_deadline_still_retries(
        self, client_factory, signed_in, recording_sleep
    ):
        responses = [
            httpx.Response(429, headers={"Retry-After": "1"}),
            httpx.Response(200, json={"items": []}),
        ]

        deadline = asyncio.get_running_loop().time() + 60.0
        client = client_factory(lambda request: responses.pop(0))
        await client.fetch_events(CALENDAR_ID, max_results=5, weeks_ahead=4, deadline=deadline)

        assert recording_sleep.delays == [1.0]

    async def test_non_retryable_error_raised_immediately(
        self, client_factory, signed_in, recording_sleep
    ):
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            return httpx.Response(
                404, json={"error": {"code": 404, "message": "Not Found", "errors": []}}
            )

        with pytest.raises(SyncError) as exc_info:
            await client_factory(handler).fetch_events(CALENDAR_ID, max_results=5, weeks_ahead=4)

        assert exc_info.value.kind is ErrorKind.RESOURCE
        assert calls == 1
        assert recording_sleep.delays == []

    async def test_network_errors_are_retried_then_classified(
        self, client_factory, signed_in, recording_sleep
    ):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("offline", request=request)

        with pytest.raises(SyncError) as exc_info:
            await client_factory(handler).fetch_events(CALENDAR_ID, max_results=5, weeks_ahead=4)

        assert exc_info.value.kind is ErrorKind.NETWORK
        assert recording_sleep.delays == [2.0, 4.0]

    async def test_401_refreshes_once_and_retries(self, client_factory, signed_in):
        api_tokens: list[str] = []
        refreshes = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal refreshes
            if str(request.url) == GOOGLE_OAUTH_TOKEN_URL:
                refreshes += 1
                return httpx.Response(200, json={"access_token": "access-2", "expires_in": 3600})
            token = request.headers["Authorization"].removeprefix("Bearer ")
            api_tokens.append(token)
            if token == signed_in.access_token:
                return httpx.Response(401, json={"error": {"code": 401, "message": "Invalid"}})
            return httpx.Response(200, json={"items": [_event_item("a", 11)]})

        events = await client_factory(handler).fetch_events(
            CALENDAR_ID, max_results=5, weeks_ahead=4
        )

        assert [event.id for event in events] == ["a"]
        assert refreshes == 1
        assert api_tokens == [signed_in.access_token, "access-2"]

    async def test_repeated_401_becomes_authentication_error(self, client_factory, signed_in):
        refreshes = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal refreshes
            if str(request.url) == GOOGLE_OAUTH_TOKEN_URL:
                refreshes += 1
                return httpx.Response(200, json={"access_token": "access-2", "expires_in": 3600})
            return httpx.Response(401)

        with pytest.raises(SyncError) as exc_info:
            await client_factory(handler).fetch_events(CALENDAR_ID, max_results=5, weeks_ahead=4)

        assert exc_info.value.kind is ErrorKind.AUTHENTICATION
        assert refreshes == 1

    async def test_expired_token_refreshed_before_request(
        self, client_factory, store, clock
    ):
        await TokenStore(store).save(make_token_record(clock(), expires_in=timedelta(minutes=2)))
        order: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            if str(request.url) == GOOGLE_OAUTH_TOKEN_URL:
                order.append("refresh")
                return httpx.Response(200, json={"access_token": "access-2", "expires_in": 3600})
            order.append(request.headers["Authorization"])
            return httpx.Response(200, json={"items": []})

        await client_factory(handler).fetch_events(CALENDAR_ID, max_results=5, weeks_ahead=4)

        assert order == ["refresh", "Bearer access-2"]
