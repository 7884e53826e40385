"""Google OAuth and Calendar API integration."""

from calmirror.google.client import GoogleCalendarClient
from calmirror.google.credentials import (
    CALENDAR_READ_SCOPES,
    CredentialManager,
    OAuthClientConfig,
    TokenRecord,
    TokenState,
    TokenStore,
)
from calmirror.google.errors import ErrorContext, ErrorKind, Severity, SyncError

__all__ = [
    "CALENDAR_READ_SCOPES",
    "CredentialManager",
    "ErrorContext",
    "ErrorKind",
    "GoogleCalendarClient",
    "OAuthClientConfig",
    "Severity",
    "SyncError",
    "TokenRecord",
    "TokenState",
    "TokenStore",
]
