"""OAuth2 credential lifecycle for the Google account that owns the mirrored calendars.

Token lifecycle::

    ABSENT -> VALID -> NEAR_EXPIRY -> EXPIRED -> REFRESHING -> VALID
                                                           \\-> REVOKED -> ABSENT

A token is handed out only while it is more than ``REFRESH_THRESHOLD`` away
from expiry.  Refreshes are single-flight: every caller (the orchestrator's
pre-flight check as well as the remote client's 401 handling) funnels through
one ``asyncio.Lock`` on one ``CredentialManager`` instance.

Secret material (client_secret, access and refresh tokens) is never logged
and never appears in ``repr()``.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from typing import Any
from urllib.parse import urlencode

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from calmirror.google.errors import (
    ErrorContext,
    ErrorKind,
    SyncError,
    classify_exception,
    classify_response_object,
)
from calmirror.storage.local_store import LocalStore, StoreNotFoundError

logger = logging.getLogger(__name__)

GOOGLE_OAUTH_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_OAUTH_REVOKE_URL = "https://oauth2.googleapis.com/revoke"
GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"

SCOPE_CALENDAR_READONLY = "https://www.googleapis.com/auth/calendar.readonly"
SCOPE_CALENDAR_EVENTS_READONLY = "https://www.googleapis.com/auth/calendar.events.readonly"
SCOPE_USERINFO_EMAIL = "https://www.googleapis.com/auth/userinfo.email"
SCOPE_USERINFO_PROFILE = "https://www.googleapis.com/auth/userinfo.profile"

CALENDAR_READ_SCOPES = frozenset({SCOPE_CALENDAR_READONLY, SCOPE_CALENDAR_EVENTS_READONLY})
DEFAULT_SCOPES = (
    SCOPE_CALENDAR_READONLY,
    SCOPE_CALENDAR_EVENTS_READONLY,
    SCOPE_USERINFO_EMAIL,
    SCOPE_USERINFO_PROFILE,
)

REFRESH_THRESHOLD = timedelta(minutes=10)
DEFAULT_EXPIRES_IN_SECONDS = 3600
DEFAULT_REDIRECT_URI = "http://127.0.0.1:8765/oauth/callback"
TOKENS_KEY = "auth/tokens.json"


class TokenState(StrEnum):
    ABSENT = "absent"
    VALID = "valid"
    NEAR_EXPIRY = "near_expiry"
    EXPIRED = "expired"
    REFRESHING = "refreshing"
    REVOKED = "revoked"


class OAuthClientConfig(BaseModel):
    """OAuth client registration used for authorization and refresh."""

    model_config = ConfigDict(extra="forbid")

    client_id: str = Field(min_length=1)
    client_secret: str | None = None
    redirect_uri: str = DEFAULT_REDIRECT_URI

    @field_validator("client_id")
    @classmethod
    def _normalize_client_id(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("client_id must be a non-empty string")
        return normalized

    @field_validator("client_secret")
    @classmethod
    def _normalize_client_secret(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip()
        return normalized or None

    def __repr__(self) -> str:
        secret = "<REDACTED>" if self.client_secret else None
        return (
            f"OAuthClientConfig(client_id={self.client_id!r}, "
            f"client_secret={secret}, redirect_uri={self.redirect_uri!r})"
        )

    __str__ = __repr__


class TokenRecord(BaseModel):
    """Persisted OAuth tokens for one account."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    access_token: str = Field(min_length=1)
    refresh_token: str | None = None
    expires_at: datetime
    scopes: frozenset[str] = frozenset()
    account_email: str | None = None
    token_type: str = "Bearer"

    def expires_within(self, threshold: timedelta, now: datetime) -> bool:
        return now + threshold >= self.expires_at

    def __repr__(self) -> str:
        return (
            f"TokenRecord(access_token=<REDACTED>, "
            f"refresh_token={'<REDACTED>' if self.refresh_token else None}, "
            f"expires_at={self.expires_at.isoformat()!r}, "
            f"scopes={sorted(self.scopes)!r}, account_email={self.account_email!r})"
        )

    # Pydantic's default __str__ would expose field values verbatim.
    __str__ = __repr__


def _coerce_expires_in_seconds(value: Any) -> int:
    if isinstance(value, bool):
        return DEFAULT_EXPIRES_IN_SECONDS
    if isinstance(value, int | float):
        return int(value) if value > 0 else DEFAULT_EXPIRES_IN_SECONDS
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip()) or DEFAULT_EXPIRES_IN_SECONDS
    return DEFAULT_EXPIRES_IN_SECONDS


def _normalize_scopes(scopes: str | Iterable[str] | None) -> frozenset[str]:
    if scopes is None:
        return frozenset()
    if isinstance(scopes, str):
        scopes = scopes.split()
    return frozenset(scope.strip() for scope in scopes if scope and scope.strip())


class TokenStore:
    """Persists the ``TokenRecord`` through the local store.

    Tokens are written without backups so that clearing them leaves no copy
    of the refresh token behind.
    """

    def __init__(self, store: LocalStore, *, key: str = TOKENS_KEY) -> None:
        self._store = store
        self._key = key

    async def load(self) -> TokenRecord | None:
        try:
            raw = await self._store.read(self._key)
        except StoreNotFoundError:
            return None
        try:
            return TokenRecord.model_validate_json(raw)
        except ValidationError as exc:
            logger.warning("Stored OAuth tokens are unreadable; treating as signed out: %s", exc)
            return None

    async def save(self, record: TokenRecord) -> None:
        payload = record.model_dump_json().encode()
        await self._store.write(self._key, payload, backup=False)

    async def clear(self) -> None:
        await self._store.delete(self._key)


class CredentialManager:
    """Owns the token record: hands out access tokens, refreshes, revokes.

    Parameters
    ----------
    client:
        OAuth client registration.
    token_store:
        Persistence for the token record.
    http_client:
        Shared ``httpx.AsyncClient``.  When omitted the manager creates and
        owns one; ``aclose`` releases it.
    clock:
        Source of "now", injectable for tests.
    """

    def __init__(
        self,
        client: OAuthClientConfig,
        token_store: TokenStore,
        http_client: httpx.AsyncClient | None = None,
        *,
        clock: Callable[[], datetime] | None = None,
        refresh_threshold: timedelta = REFRESH_THRESHOLD,
    ) -> None:
        self._client = client
        self._token_store = token_store
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=30.0)
        self._clock = clock or (lambda: datetime.now(UTC))
        self._refresh_threshold = refresh_threshold
        self._refresh_lock = asyncio.Lock()
        self._record: TokenRecord | None = None
        self._loaded = False
        self._refreshing = False
        self._revoked = False

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    async def load(self) -> TokenRecord | None:
        if not self._loaded:
            self._record = await self._token_store.load()
            self._loaded = True
        return self._record

    async def state(self) -> TokenState:
        record = await self.load()
        if self._refreshing:
            return TokenState.REFRESHING
        if record is None:
            return TokenState.REVOKED if self._revoked else TokenState.ABSENT
        now = self._clock()
        if now >= record.expires_at:
            return TokenState.EXPIRED
        if record.expires_within(self._refresh_threshold, now):
            return TokenState.NEAR_EXPIRY
        return TokenState.VALID

    def _fresh_token(self) -> str | None:
        record = self._record
        if record is None or record.expires_within(self._refresh_threshold, self._clock()):
            return None
        return record.access_token

    async def get_access_token(self) -> str | None:
        """Return the access token, or None when it needs a refresh first.

        None is returned when no token is stored or when the token expires
        within ``REFRESH_THRESHOLD``, even if it is technically still valid.
        """
        await self.load()
        return self._fresh_token()

    async def ensure_access_token(
        self,
        *,
        force_refresh: bool = False,
        rejected_token: str | None = None,
    ) -> str:
        """Return a usable access token, refreshing at most once per caller.

        ``rejected_token`` names a token the provider just refused; if another
        caller has already replaced it, the replacement is returned without a
        second refresh.
        """
        if not force_refresh:
            token = await self.get_access_token()
            if token is not None:
                return token

        async with self._refresh_lock:
            await self.load()
            token = self._fresh_token()
            if token is not None and (
                not force_refresh or (rejected_token is not None and token != rejected_token)
            ):
                return token

            record = await self._refresh_locked()
            return record.access_token

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    async def refresh(self) -> TokenRecord:
        """Exchange the refresh token for a new access token.

        Raises:
            SyncError: ``AUTHENTICATION`` with ``requires_reauth`` when the
                grant was revoked (stored credentials are cleared), or the
                classified transport/HTTP failure otherwise.
        """
        async with self._refresh_lock:
            return await self._refresh_locked()

    async def _refresh_locked(self) -> TokenRecord:
        record = await self.load()
        if record is None or not record.refresh_token:
            raise SyncError(
                ErrorKind.AUTHENTICATION,
                "Not signed in to Google",
                "No refresh token is stored",
                requires_reauth=True,
            )

        form: dict[str, str] = {
            "client_id": self._client.client_id,
            "refresh_token": record.refresh_token,
            "grant_type": "refresh_token",
        }
        if self._client.client_secret:
            form["client_secret"] = self._client.client_secret

        self._refreshing = True
        try:
            payload = await self._post_token_endpoint(form)
        except SyncError as exc:
            if exc.kind is ErrorKind.AUTHENTICATION and exc.requires_reauth:
                logger.warning("Refresh token rejected by Google; clearing stored credentials")
                await self._clear_locked(revoked=True)
            raise
        finally:
            self._refreshing = False

        access_token = payload.get("access_token")
        if not isinstance(access_token, str) or not access_token.strip():
            raise SyncError(
                ErrorKind.VALIDATION,
                "Unexpected response from Google",
                "Token response is missing a non-empty access_token",
            )

        rotated = payload.get("refresh_token")
        scopes = _normalize_scopes(payload.get("scope")) or record.scopes
        updated = record.model_copy(
            update={
                "access_token": access_token.strip(),
                "refresh_token": rotated.strip()
                if isinstance(rotated, str) and rotated.strip()
                else record.refresh_token,
                "expires_at": self._clock()
                + timedelta(seconds=_coerce_expires_in_seconds(payload.get("expires_in"))),
                "scopes": scopes,
            }
        )
        await self._token_store.save(updated)
        self._record = updated
        logger.info("Refreshed Google access token (expires_at=%s)", updated.expires_at.isoformat())
        return updated

    async def _post_token_endpoint(self, form: dict[str, str]) -> dict[str, Any]:
        try:
            response = await self._http_client.post(
                GOOGLE_OAUTH_TOKEN_URL,
                data=form,
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise classify_exception(exc, ErrorContext.AUTHENTICATION) from exc

        if response.status_code < 200 or response.status_code >= 300:
            raise classify_response_object(response, ErrorContext.AUTHENTICATION)

        try:
            payload = response.json()
        except ValueError as exc:
            raise SyncError(
                ErrorKind.VALIDATION,
                "Unexpected response from Google",
                "Token endpoint returned invalid JSON",
            ) from exc
        if not isinstance(payload, dict):
            raise SyncError(
                ErrorKind.VALIDATION,
                "Unexpected response from Google",
                "Token endpoint returned an unexpected JSON payload shape",
            )
        return payload

    # ------------------------------------------------------------------
    # Authorization
    # ------------------------------------------------------------------

    async def save_tokens(
        self,
        *,
        access_token: str,
        refresh_token: str | None,
        expires_in: Any,
        scopes: str | Iterable[str] | None = None,
        account_email: str | None = None,
    ) -> TokenRecord:
        """Persist the tokens obtained from the initial authorization."""
        record = TokenRecord(
            access_token=access_token.strip(),
            refresh_token=refresh_token.strip() if refresh_token else None,
            expires_at=self._clock() + timedelta(seconds=_coerce_expires_in_seconds(expires_in)),
            scopes=_normalize_scopes(scopes),
            account_email=account_email,
        )
        async with self._refresh_lock:
            await self._token_store.save(record)
            self._record = record
            self._loaded = True
            self._revoked = False
        logger.info("Stored Google tokens for %s", account_email or "<unknown account>")
        return record

    def build_authorization_url(
        self,
        state: str,
        *,
        scopes: Iterable[str] = DEFAULT_SCOPES,
        code_challenge: str | None = None,
        login_hint: str | None = None,
    ) -> str:
        params = {
            "client_id": self._client.client_id,
            "redirect_uri": self._client.redirect_uri,
            "response_type": "code",
            "scope": " ".join(scopes),
            "access_type": "offline",
            "prompt": "consent",
            "include_granted_scopes": "true",
            "state": state,
        }
        if code_challenge:
            params["code_challenge"] = code_challenge
            params["code_challenge_method"] = "S256"
        if login_hint:
            params["login_hint"] = login_hint
        return f"{GOOGLE_OAUTH_AUTH_URL}?{urlencode(params)}"

    async def exchange_code(self, code: str, *, code_verifier: str | None = None) -> TokenRecord:
        """Exchange an authorization code and persist the resulting tokens."""
        form: dict[str, str] = {
            "code": code,
            "client_id": self._client.client_id,
            "redirect_uri": self._client.redirect_uri,
            "grant_type": "authorization_code",
        }
        if self._client.client_secret:
            form["client_secret"] = self._client.client_secret
        if code_verifier:
            form["code_verifier"] = code_verifier

        payload = await self._post_token_endpoint(form)
        access_token = payload.get("access_token")
        if not isinstance(access_token, str) or not access_token.strip():
            raise SyncError(
                ErrorKind.VALIDATION,
                "Unexpected response from Google",
                "Token response is missing a non-empty access_token",
            )
        refresh_token = payload.get("refresh_token")
        if not isinstance(refresh_token, str) or not refresh_token.strip():
            logger.warning("Authorization code exchange returned no refresh token")
            refresh_token = None

        email = await self.fetch_user_email(access_token.strip())
        return await self.save_tokens(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=payload.get("expires_in"),
            scopes=payload.get("scope"),
            account_email=email,
        )

    async def fetch_user_email(self, access_token: str) -> str | None:
        """Best-effort lookup of the signed-in account's email."""
        try:
            response = await self._http_client.get(
                GOOGLE_USERINFO_URL,
                headers={"Authorization": f"Bearer {access_token}"},
            )
        except httpx.HTTPError as exc:
            logger.warning("Userinfo lookup failed: %s", exc)
            return None
        if response.status_code != 200:
            logger.warning("Userinfo lookup failed with HTTP %d", response.status_code)
            return None
        try:
            payload = response.json()
        except ValueError:
            return None
        email = payload.get("email") if isinstance(payload, dict) else None
        return email if isinstance(email, str) and email else None

    async def has_scopes(self, required: Iterable[str] = CALENDAR_READ_SCOPES) -> bool:
        record = await self.load()
        if record is None:
            return False
        return frozenset(required) <= record.scopes

    async def require_scopes(self, required: Iterable[str] = CALENDAR_READ_SCOPES) -> None:
        """Raise a ``PERMISSION`` error, without any network call, if scopes are missing."""
        required = frozenset(required)
        record = await self.load()
        if record is None:
            raise SyncError(
                ErrorKind.AUTHENTICATION,
                "Not signed in to Google",
                "No stored credentials",
                requires_reauth=True,
            )
        missing = required - record.scopes
        if missing:
            raise SyncError(
                ErrorKind.PERMISSION,
                "Calendar access was not granted",
                f"Missing OAuth scopes: {', '.join(sorted(missing))}",
                missing_scopes=tuple(sorted(missing)),
            )

    # ------------------------------------------------------------------
    # Sign-out
    # ------------------------------------------------------------------

    async def revoke(self) -> bool:
        """Revoke the grant at Google and clear local credentials.

        Returns:
            True if Google acknowledged the revocation.  Local credentials
            are cleared either way.
        """
        async with self._refresh_lock:
            record = await self.load()
            acknowledged = False
            if record is not None:
                token = record.refresh_token or record.access_token
                try:
                    response = await self._http_client.post(
                        GOOGLE_OAUTH_REVOKE_URL,
                        data={"token": token},
                        headers={"Content-Type": "application/x-www-form-urlencoded"},
                    )
                    acknowledged = response.status_code == 200
                    if not acknowledged:
                        logger.warning("Token revocation returned HTTP %d", response.status_code)
                except httpx.HTTPError as exc:
                    logger.warning("Token revocation request failed: %s", exc)
            await self._clear_locked(revoked=False)
            return acknowledged

    async def _clear_locked(self, *, revoked: bool) -> None:
        await self._token_store.clear()
        self._record = None
        self._loaded = True
        self._revoked = revoked

    async def token_info(self) -> dict[str, Any]:
        """Diagnostics about the stored token; contains no secret values."""
        record = await self.load()
        state = await self.state()
        if record is None:
            return {"state": state.value, "has_tokens": False}
        remaining = record.expires_at - self._clock()
        return {
            "state": state.value,
            "has_tokens": True,
            "has_refresh_token": record.refresh_token is not None,
            "account_email": record.account_email,
            "expires_at": record.expires_at.isoformat(),
            "expires_in_minutes": int(remaining.total_seconds() // 60),
            "scopes": sorted(record.scopes),
            "has_calendar_scopes": CALENDAR_READ_SCOPES <= record.scopes,
        }
