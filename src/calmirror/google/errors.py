"""Error taxonomy for Google OAuth and Calendar calls.

Every failure that crosses the remote-client boundary is a ``SyncError``: one
exception type tagged with an ``ErrorKind`` and carrying the retry and
severity metadata the caller needs.  ``classify_exception`` handles transport
failures, ``classify_response`` handles HTTP status/body pairs.
"""

from __future__ import annotations

import json
import re
from collections.abc import Mapping
from enum import StrEnum
from typing import Any

import httpx
from pydantic import ValidationError

DEFAULT_RATE_LIMIT_RETRY_AFTER_SECONDS = 60
QUOTA_RETRY_DELAY_SECONDS = 60.0
DEFAULT_RETRY_DELAY_SECONDS = 5.0
NETWORK_RETRY_DELAY_CAP_SECONDS = 30.0
SERVER_RETRY_DELAY_CAP_SECONDS = 60.0
SERVER_ERROR_STATUS_CODES = {500, 502, 503, 504}
CALENDAR_READ_SCOPE = "https://www.googleapis.com/auth/calendar.readonly"

_QUOTA_RETRYABLE_REASONS = {
    "userRateLimitExceeded",
    "rateLimitExceeded",
    "quotaExceeded",
    "calendarUsageLimitsExceeded",
}


class ErrorKind(StrEnum):
    NETWORK = "network"
    AUTHENTICATION = "authentication"
    PERMISSION = "permission"
    QUOTA = "quota"
    RATE_LIMIT = "rate_limit"
    VALIDATION = "validation"
    RESOURCE = "resource"
    CONFIGURATION = "configuration"
    SERVER = "server"
    UNKNOWN = "unknown"


class Severity(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class ErrorContext(StrEnum):
    """What the engine was doing when the error happened."""

    AUTHENTICATION = "authentication"
    CALENDAR_SYNC = "calendar_sync"
    CALENDAR_LIST = "calendar_list"
    EVENT_FETCH = "event_fetch"


_DEFAULT_RETRYABLE = {
    ErrorKind.NETWORK: True,
    ErrorKind.QUOTA: True,
    ErrorKind.RATE_LIMIT: True,
    ErrorKind.SERVER: True,
}


class SyncError(Exception):
    """A classified failure of a remote or sync operation.

    Parameters
    ----------
    kind:
        Taxonomy tag; callers branch on this.
    user_message:
        Short text safe to show to an end user.
    technical_message:
        Diagnostic text for logs.  Credential values are redacted.
    is_retryable:
        Defaults from ``kind`` (network, quota, rate-limit and server errors
        are retryable).
    severity:
        Defaults from ``kind`` via ``severity_for``.
    """

    def __init__(
        self,
        kind: ErrorKind,
        user_message: str,
        technical_message: str = "",
        *,
        is_retryable: bool | None = None,
        severity: Severity | None = None,
        status_code: int | None = None,
        reason: str | None = None,
        retry_after: float | None = None,
        requires_reauth: bool = False,
        missing_scopes: tuple[str, ...] = (),
    ) -> None:
        self.kind = kind
        self.user_message = user_message
        self.technical_message = redact_credential_values(technical_message or user_message)
        self.is_retryable = (
            _DEFAULT_RETRYABLE.get(kind, False) if is_retryable is None else is_retryable
        )
        self.status_code = status_code
        self.reason = reason
        self.retry_after = retry_after
        self.requires_reauth = requires_reauth
        self.missing_scopes = missing_scopes
        self.severity = severity or severity_for(kind, requires_reauth=requires_reauth)
        super().__init__(f"{kind.value}: {self.technical_message}")

    def __repr__(self) -> str:
        return (
            f"SyncError(kind={self.kind.value!r}, retryable={self.is_retryable}, "
            f"status_code={self.status_code!r}, message={self.technical_message!r})"
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "user_message": self.user_message,
            "technical_message": self.technical_message,
            "is_retryable": self.is_retryable,
            "severity": self.severity.value,
            "status_code": self.status_code,
            "retry_after": self.retry_after,
            "requires_reauth": self.requires_reauth,
            "missing_scopes": list(self.missing_scopes),
        }


def severity_for(kind: ErrorKind, *, requires_reauth: bool = False) -> Severity:
    match kind:
        case ErrorKind.NETWORK | ErrorKind.RATE_LIMIT:
            return Severity.LOW
        case ErrorKind.AUTHENTICATION:
            return Severity.HIGH if requires_reauth else Severity.MEDIUM
        case ErrorKind.PERMISSION | ErrorKind.CONFIGURATION | ErrorKind.UNKNOWN:
            return Severity.HIGH
        case _:
            return Severity.MEDIUM


# ---------------------------------------------------------------------------
# Redaction / body parsing
# ---------------------------------------------------------------------------


def redact_credential_values(message: str) -> str:
    """Redact token and client-secret values from *message*."""
    redacted = message
    redacted = re.sub(
        r"(?i)\b(client_secret|refresh_token|access_token|id_token|code)\s*=\s*([^\s,;&]+)",
        r"\1=[REDACTED]",
        redacted,
    )
    redacted = re.sub(
        r"""(?i)(['"]?(?:client_secret|refresh_token|access_token|id_token)['"]?\s*:\s*)"""
        r"""(['"]).*?\2""",
        r'\1"[REDACTED]"',
        redacted,
    )
    redacted = re.sub(r"(?i)\b(Bearer)\s+[A-Za-z0-9._~+/=-]+", r"\1 [REDACTED]", redacted)
    return redacted


def _squash(text: str, limit: int = 200) -> str:
    return " ".join(text.split())[:limit]


def _unknown_error_info(message: str) -> dict[str, str]:
    return {"code": "unknown", "message": message, "reason": "unknown", "domain": "unknown"}


def parse_error_body(body: str | bytes | None) -> dict[str, str]:
    """Extract ``code``, ``message``, ``reason`` and ``domain`` from an error body.

    Handles both the Calendar API shape (``{"error": {"code", "message",
    "errors": [{"reason", "domain"}]}}``) and the OAuth shape
    (``{"error": "...", "error_description": "..."}``).
    """
    if isinstance(body, bytes):
        body = body.decode("utf-8", errors="replace")
    if not body or not body.strip():
        return _unknown_error_info("")

    try:
        payload = json.loads(body)
    except ValueError:
        return _unknown_error_info(_squash(body))

    if not isinstance(payload, dict):
        return _unknown_error_info(_squash(body))

    error = payload.get("error")
    if isinstance(error, dict):
        details = error.get("errors")
        first = details[0] if isinstance(details, list) and details else {}
        first = first if isinstance(first, dict) else {}
        reason = error.get("reason") or first.get("reason") or error.get("status") or "unknown"
        return {
            "code": str(error.get("code", "unknown")),
            "message": _squash(str(error.get("message", ""))),
            "reason": str(reason),
            "domain": str(first.get("domain", "global")),
        }

    if isinstance(error, str):
        return {
            "code": error,
            "message": _squash(str(payload.get("error_description", error))),
            "reason": error,
            "domain": "oauth",
        }

    return _unknown_error_info(_squash(body))


def _retry_after_seconds(headers: Mapping[str, str] | None, body: str | bytes | None) -> float:
    if headers is not None:
        header_value = headers.get("Retry-After") or headers.get("retry-after")
        if header_value is not None:
            try:
                return max(float(header_value), 0.0)
            except ValueError:
                pass
    if body:
        try:
            payload = json.loads(body)
        except ValueError:
            payload = None
        if isinstance(payload, dict):
            value = payload.get("retryAfter")
            if isinstance(value, int | float) and not isinstance(value, bool) and value >= 0:
                return float(value)
    return float(DEFAULT_RATE_LIMIT_RETRY_AFTER_SECONDS)


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------


def classify_exception(
    exc: BaseException,
    context: ErrorContext = ErrorContext.CALENDAR_SYNC,
) -> SyncError:
    """Map a transport or parsing exception to a ``SyncError``."""
    if isinstance(exc, SyncError):
        return exc

    detail = str(exc) or type(exc).__name__
    if isinstance(exc, httpx.ConnectError):
        error = SyncError(
            ErrorKind.NETWORK, "No internet connection", f"Connection failed: {detail}"
        )
    elif isinstance(exc, httpx.TimeoutException | TimeoutError):
        error = SyncError(
            ErrorKind.NETWORK, "Connection too slow, please try again", f"Timeout: {detail}"
        )
    elif isinstance(exc, httpx.TransportError | OSError):
        error = SyncError(ErrorKind.NETWORK, "Connection error", detail)
    elif isinstance(exc, ValidationError | ValueError | httpx.DecodingError):
        error = SyncError(
            ErrorKind.VALIDATION,
            "Unexpected response from Google",
            f"Malformed response: {detail}",
        )
    else:
        error = SyncError(ErrorKind.UNKNOWN, "Unexpected error", f"{type(exc).__name__}: {detail}")

    error.user_message = contextual_message(error, context)
    return error


def classify_response(
    status_code: int,
    body: str | bytes | None = None,
    headers: Mapping[str, str] | None = None,
    context: ErrorContext = ErrorContext.CALENDAR_SYNC,
) -> SyncError:
    """Map a non-2xx HTTP response to a ``SyncError``."""
    info = parse_error_body(body)
    reason = info["reason"]
    technical = f"HTTP {status_code}: {info['message'] or reason}"

    if status_code == 400:
        if reason == "invalid_grant":
            error = SyncError(
                ErrorKind.AUTHENTICATION,
                "Session expired, sign in again",
                "Invalid or expired refresh token",
                requires_reauth=True,
            )
        elif reason == "invalid_request":
            error = SyncError(ErrorKind.CONFIGURATION, "Incorrect configuration", technical)
        elif reason == "invalid_client":
            error = SyncError(
                ErrorKind.CONFIGURATION,
                "Application is misconfigured",
                "Invalid OAuth client configuration",
            )
        else:
            error = SyncError(ErrorKind.VALIDATION, "Invalid request", technical)
    elif status_code == 401:
        error = SyncError(ErrorKind.AUTHENTICATION, "Authentication required", technical)
    elif status_code == 403:
        error = _classify_forbidden(reason, technical)
    elif status_code == 404:
        error = SyncError(
            ErrorKind.RESOURCE, "Calendar not found", "Calendar or resource not found"
        )
    elif status_code == 429:
        retry_after = _retry_after_seconds(headers, body)
        error = SyncError(
            ErrorKind.RATE_LIMIT,
            f"Too many requests, please wait {int(retry_after)}s",
            technical,
            retry_after=retry_after,
        )
    elif status_code in SERVER_ERROR_STATUS_CODES:
        raw = body.decode("utf-8", errors="replace") if isinstance(body, bytes) else body or ""
        service = "calendar" if "calendar" in raw.lower() else "server"
        if "oauth" in raw.lower():
            service = "authentication"
        error = SyncError(
            ErrorKind.SERVER, f"Google {service} service temporarily unavailable", technical
        )
    else:
        error = SyncError(
            ErrorKind.UNKNOWN,
            f"Server error ({status_code})",
            technical,
            is_retryable=status_code >= 500,
        )

    error.status_code = status_code
    error.reason = reason if reason != "unknown" else None
    error.user_message = contextual_message(error, context)
    return error


def _classify_forbidden(reason: str, technical: str) -> SyncError:
    if reason == "insufficientPermissions":
        return SyncError(
            ErrorKind.PERMISSION,
            "Insufficient permissions to read the calendar",
            "Calendar access not granted",
            missing_scopes=(CALENDAR_READ_SCOPE,),
        )
    if reason == "dailyLimitExceeded":
        return SyncError(
            ErrorKind.QUOTA,
            "Daily limit exceeded, try again tomorrow",
            "Daily quota exceeded",
            is_retryable=False,
        )
    if reason in _QUOTA_RETRYABLE_REASONS:
        return SyncError(ErrorKind.QUOTA, "Too many requests, please wait", technical)
    return SyncError(ErrorKind.PERMISSION, "Access denied", technical)


def classify_response_object(
    response: httpx.Response,
    context: ErrorContext = ErrorContext.CALENDAR_SYNC,
) -> SyncError:
    return classify_response(response.status_code, response.content, response.headers, context)


# ---------------------------------------------------------------------------
# Retry policy / presentation
# ---------------------------------------------------------------------------


def retry_delay_seconds(error: SyncError, attempt: int) -> float:
    """Recommended wait before retry number *attempt* (1-based)."""
    attempt = max(attempt, 1)
    match error.kind:
        case ErrorKind.RATE_LIMIT:
            return (
                error.retry_after
                if error.retry_after is not None
                else float(DEFAULT_RATE_LIMIT_RETRY_AFTER_SECONDS)
            )
        case ErrorKind.NETWORK:
            return min(NETWORK_RETRY_DELAY_CAP_SECONDS, float(2**attempt))
        case ErrorKind.SERVER:
            return min(SERVER_RETRY_DELAY_CAP_SECONDS, 2.0 * attempt)
        case ErrorKind.QUOTA:
            return QUOTA_RETRY_DELAY_SECONDS
        case _:
            return DEFAULT_RETRY_DELAY_SECONDS


def contextual_message(error: SyncError, context: ErrorContext) -> str:
    base = error.user_message
    match context, error.kind:
        case ErrorContext.AUTHENTICATION, ErrorKind.NETWORK:
            return "Cannot reach Google. Check your internet connection."
        case ErrorContext.AUTHENTICATION, ErrorKind.AUTHENTICATION:
            return "Google sign-in failed. Please try again."
        case ErrorContext.AUTHENTICATION, ErrorKind.PERMISSION:
            return "Permission denied. Calendar access is required."
        case ErrorContext.AUTHENTICATION, _:
            return f"Google sign-in error: {base}"
        case ErrorContext.CALENDAR_SYNC, ErrorKind.NETWORK:
            return "Unable to sync. Check your connection."
        case ErrorContext.CALENDAR_SYNC, ErrorKind.AUTHENTICATION:
            return "Session expired. Sign in again from the settings."
        case ErrorContext.CALENDAR_SYNC, ErrorKind.PERMISSION:
            return "Calendar access denied. Check the permissions."
        case ErrorContext.CALENDAR_SYNC, ErrorKind.QUOTA:
            return "Sync limit reached. Try again later."
        case ErrorContext.CALENDAR_LIST, ErrorKind.NETWORK:
            return "Unable to load your calendars."
        case ErrorContext.CALENDAR_LIST, ErrorKind.PERMISSION:
            return "Access to calendars denied."
        case ErrorContext.CALENDAR_LIST, _:
            return f"Error loading calendars: {base}"
        case ErrorContext.EVENT_FETCH, ErrorKind.RESOURCE:
            return "Calendar not found or deleted."
        case ErrorContext.EVENT_FETCH, ErrorKind.PERMISSION:
            return "No longer allowed to read this calendar."
        case ErrorContext.EVENT_FETCH, _:
            return f"Error loading events: {base}"
        case _:
            return f"Sync error: {base}"


def suggested_actions(error: SyncError) -> list[str]:
    match error.kind:
        case ErrorKind.NETWORK:
            actions = ["Check your internet connection", "Try again in a few minutes"]
            if "timeout" in error.technical_message.lower():
                actions.append("Try again on a faster connection")
            return actions
        case ErrorKind.AUTHENTICATION:
            if error.requires_reauth:
                return ["Sign in to your Google account again", "Check the application settings"]
            return ["Restart the sync"]
        case ErrorKind.PERMISSION:
            actions = [
                "Check the permissions in your Google account settings",
                "Sign in again to grant the permissions",
            ]
            if CALENDAR_READ_SCOPE in error.missing_scopes:
                actions.append("Allow calendar access when signing in")
            return actions
        case ErrorKind.QUOTA:
            actions = ["Wait before retrying", "Lower the sync frequency"]
            if not error.is_retryable:
                actions.append("Try again tomorrow")
            return actions
        case ErrorKind.RATE_LIMIT:
            wait = int(error.retry_after or DEFAULT_RATE_LIMIT_RETRY_AFTER_SECONDS)
            return [f"Wait {wait} seconds", "Avoid syncing too often"]
        case ErrorKind.CONFIGURATION | ErrorKind.VALIDATION:
            return ["Check the configuration", "Reconfigure the calendar"]
        case ErrorKind.RESOURCE:
            return ["Check that the calendar still exists", "Reconfigure the calendar if needed"]
        case ErrorKind.SERVER:
            return ["Try again in a few minutes", "The problem is temporary on Google's side"]
        case _:
            return ["Restart the application", "Check your internet connection"]


def technical_summary(error: SyncError, context: ErrorContext, attempt: int = 1) -> str:
    lines = [
        f"context={context.value}",
        f"attempt={attempt}",
        f"kind={error.kind.value}",
        f"retryable={error.is_retryable}",
        f"severity={error.severity.value}",
        f"technical={error.technical_message}",
    ]
    if error.requires_reauth:
        lines.append("requires_reauth=True")
    if error.missing_scopes:
        lines.append(f"missing_scopes={','.join(error.missing_scopes)}")
    if error.retry_after is not None:
        lines.append(f"retry_after={error.retry_after}")
    return " ".join(lines)
