"""Shared fixtures for the calmirror test suite."""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable
from datetime import UTC, datetime, timedelta

import httpx
import pytest

from calmirror.google.credentials import (
    DEFAULT_SCOPES,
    CredentialManager,
    OAuthClientConfig,
    TokenRecord,
    TokenStore,
)
from calmirror.models import Configuration
from calmirror.storage.local_store import LocalStore
from calmirror.storage.units import UnitRepository

NOW = datetime(2025, 3, 10, 9, 0, tzinfo=UTC)


class FakeClock:
    """Mutable "now" shared by every component under test."""

    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


class RecordingSleep:
    """Stand-in for ``asyncio.sleep`` that records delays and returns at once."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def store(tmp_path, clock) -> LocalStore:
    return LocalStore(tmp_path / "data", clock=clock)


@pytest.fixture
def repository(store) -> UnitRepository:
    return UnitRepository(store)


@pytest.fixture
def oauth_client() -> OAuthClientConfig:
    return OAuthClientConfig(client_id="cid.apps.googleusercontent.com", client_secret="csecret")


@pytest.fixture
def configuration(clock) -> Configuration:
    return Configuration(
        calendar_id="family@group.calendar.google.com",
        calendar_name="Family",
        is_configured=True,
        last_update=clock(),
    )


def make_token_record(
    now: datetime = NOW,
    *,
    access_token: str = "access-1",
    refresh_token: str | None = "refresh-1",
    expires_in: timedelta = timedelta(hours=1),
    scopes: tuple[str, ...] = DEFAULT_SCOPES,
) -> TokenRecord:
    return TokenRecord(
        access_token=access_token,
        refresh_token=refresh_token,
        expires_at=now + expires_in,
        scopes=frozenset(scopes),
        account_email="someone@example.com",
    )


@pytest.fixture
def token_record(clock) -> TokenRecord:
    return make_token_record(clock())


Handler = Callable[[httpx.Request], httpx.Response]


@pytest.fixture
async def mock_http() -> AsyncIterator[Callable[[Handler], httpx.AsyncClient]]:
    """Hand out ``httpx.AsyncClient`` instances backed by ``MockTransport``."""
    created: list[httpx.AsyncClient] = []

    def _factory(handler: Handler) -> httpx.AsyncClient:
        http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        created.append(http_client)
        return http_client

    yield _factory
    for http_client in created:
        await http_client.aclose()


@pytest.fixture
def credentials_factory(
    store, oauth_client, clock, mock_http
) -> Callable[[Handler], CredentialManager]:
    """Build a ``CredentialManager`` whose HTTP traffic goes to *handler*."""

    def _factory(handler: Handler) -> CredentialManager:
        return CredentialManager(oauth_client, TokenStore(store), mock_http(handler), clock=clock)

    return _factory


@pytest.fixture
async def signed_in(store, token_record) -> AsyncIterator[TokenRecord]:
    """Persist a valid token record before the test runs."""
    await TokenStore(store).save(token_record)
    yield token_record
