"""Engine configuration loading and validation.

Reads ``calmirror.toml``, resolves ``${VAR_NAME}`` references from the
environment, and returns a validated ``EngineConfig`` dataclass.

Example::

    [calmirror]
    data_dir = "~/.local/share/calmirror"
    sync_timeout_seconds = 30
    timezone = "Europe/Paris"

    [calmirror.oauth]
    client_id = "${GOOGLE_OAUTH_CLIENT_ID}"
    client_secret = "${GOOGLE_OAUTH_CLIENT_SECRET}"

    [calmirror.logging]
    level = "INFO"
    format = "text"

    [calmirror.scheduler]
    flex_minutes = 30
    quiet_start = 23
    quiet_end = 6
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field
from datetime import tzinfo
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from calmirror.google.credentials import DEFAULT_REDIRECT_URI
from calmirror.sync.orchestrator import SYNC_TIMEOUT_SECONDS

CONFIG_FILENAME = "calmirror.toml"
DEFAULT_DATA_DIR = "~/.local/share/calmirror"
DEFAULT_FLEX_MINUTES = 30
DEFAULT_CONSTRAINT_RECHECK_SECONDS = 900

# Pattern matching ${VAR_NAME}
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


class ConfigError(Exception):
    """Raised when engine configuration is missing, malformed, or invalid."""


@dataclass
class LoggingConfig:
    """Logging configuration from [calmirror.logging] section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_root: str | None = None


@dataclass
class OAuthSettings:
    """Google OAuth client registration from [calmirror.oauth] section."""

    client_id: str | None = None
    client_secret: str | None = None
    redirect_uri: str = DEFAULT_REDIRECT_URI

    def __repr__(self) -> str:
        secret = "<set>" if self.client_secret else None
        return (
            f"OAuthSettings(client_id={self.client_id!r}, client_secret={secret!r}, "
            f"redirect_uri={self.redirect_uri!r})"
        )


@dataclass
class SchedulerSettings:
    """Periodic sync tuning from [calmirror.scheduler] section.

    ``quiet_start``/``quiet_end`` are local hours (0-23).  A window may wrap
    midnight (23 -> 6).  Both unset means no quiet hours.
    """

    flex_minutes: int = DEFAULT_FLEX_MINUTES
    constraint_recheck_seconds: int = DEFAULT_CONSTRAINT_RECHECK_SECONDS
    quiet_start: int | None = None
    quiet_end: int | None = None


@dataclass
class EngineConfig:
    """Parsed and validated engine configuration.

    ``timezone`` is the zone events are normalized to; ``None`` follows the
    host zone.
    """

    data_dir: Path = field(default_factory=lambda: Path(DEFAULT_DATA_DIR).expanduser())
    sync_timeout_seconds: float = SYNC_TIMEOUT_SECONDS
    timezone: tzinfo | None = None
    oauth: OAuthSettings = field(default_factory=OAuthSettings)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    scheduler: SchedulerSettings = field(default_factory=SchedulerSettings)


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

    Walks dicts, lists and strings; other leaf values pass through.

    Raises
    ------
    ConfigError
        If a referenced environment variable is not set.
    """
    if isinstance(value, dict):
        return {k: resolve_env_vars(v) for k, v in value.items()}

    if isinstance(value, list):
        return [resolve_env_vars(item) for item in value]

    if isinstance(value, str):
        return _resolve_string(value)

    return value


def _resolve_string(s: str) -> str:
    """Replace ``${VAR_NAME}`` occurrences, reporting every missing name at once."""
    missing: list[str] = []

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        env_value = os.environ.get(var_name)
        if env_value is None:
            missing.append(var_name)
            return match.group(0)
        return env_value

    result = _ENV_VAR_PATTERN.sub(_replace, s)

    if missing:
        vars_str = ", ".join(missing)
        raise ConfigError(f"Unresolved environment variable(s) in config value: {vars_str}")

    return result


def _section(parent: dict[str, Any], name: str, label: str) -> dict[str, Any]:
    value = parent.get(name, {})
    if not isinstance(value, dict):
        raise ConfigError(f"[{label}] must be a table")
    return value


def _optional_hour(raw: Any, label: str) -> int | None:
    if raw is None:
        return None
    if isinstance(raw, bool) or not isinstance(raw, int) or not 0 <= raw <= 23:
        raise ConfigError(f"Invalid {label}: {raw!r}. Expected an hour between 0 and 23.")
    return raw


def _coerce_zoneinfo(raw: Any, label: str) -> ZoneInfo | None:
    if raw is None or raw == "":
        return None
    if not isinstance(raw, str):
        raise ConfigError(f"Invalid {label}: {raw!r}. Expected an IANA zone name.")
    try:
        return ZoneInfo(raw.strip())
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ConfigError(f"Invalid {label}: {raw!r}. Unknown timezone.") from exc


def _positive_number(raw: Any, label: str) -> float:
    try:
        value = float(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid {label}: {raw!r}. Expected a number.") from exc
    if value <= 0:
        raise ConfigError(f"Invalid {label}: {raw!r}. Must be positive.")
    return value


def parse_config(data: dict[str, Any]) -> EngineConfig:
    """Build an ``EngineConfig`` from already-decoded TOML data."""
    data = resolve_env_vars(data)

    section = _section(data, "calmirror", "calmirror")

    data_dir = Path(str(section.get("data_dir", DEFAULT_DATA_DIR))).expanduser()
    sync_timeout_seconds = _positive_number(
        section.get("sync_timeout_seconds", SYNC_TIMEOUT_SECONDS),
        "calmirror.sync_timeout_seconds",
    )
    timezone = _coerce_zoneinfo(section.get("timezone"), "calmirror.timezone")

    # --- [calmirror.oauth] ---
    oauth_section = _section(section, "oauth", "calmirror.oauth")
    oauth = OAuthSettings(
        client_id=oauth_section.get("client_id") or None,
        client_secret=oauth_section.get("client_secret") or None,
        redirect_uri=str(oauth_section.get("redirect_uri", DEFAULT_REDIRECT_URI)),
    )

    # --- [calmirror.logging] ---
    logging_section = _section(section, "logging", "calmirror.logging")
    log_format = str(logging_section.get("format", "text")).lower()
    if log_format not in ("text", "json"):
        raise ConfigError(
            f"Invalid calmirror.logging.format: {log_format!r}. Expected 'text' or 'json'."
        )
    logging_config = LoggingConfig(
        level=str(logging_section.get("level", "INFO")).upper(),
        format=log_format,
        log_root=logging_section.get("log_root"),
    )

    # --- [calmirror.scheduler] ---
    scheduler_section = _section(section, "scheduler", "calmirror.scheduler")
    flex_minutes = int(scheduler_section.get("flex_minutes", DEFAULT_FLEX_MINUTES))
    if flex_minutes < 0:
        raise ConfigError(
            f"Invalid calmirror.scheduler.flex_minutes: {flex_minutes!r}. Must not be negative."
        )
    recheck = int(
        scheduler_section.get("constraint_recheck_seconds", DEFAULT_CONSTRAINT_RECHECK_SECONDS)
    )
    if recheck <= 0:
        raise ConfigError(
            f"Invalid calmirror.scheduler.constraint_recheck_seconds: {recheck!r}. "
            "Must be a positive integer."
        )
    quiet_start = _optional_hour(
        scheduler_section.get("quiet_start"), "calmirror.scheduler.quiet_start"
    )
    quiet_end = _optional_hour(scheduler_section.get("quiet_end"), "calmirror.scheduler.quiet_end")
    if (quiet_start is None) != (quiet_end is None):
        raise ConfigError("calmirror.scheduler.quiet_start and quiet_end must be set together")

    return EngineConfig(
        data_dir=data_dir,
        sync_timeout_seconds=sync_timeout_seconds,
        timezone=timezone,
        oauth=oauth,
        logging=logging_config,
        scheduler=SchedulerSettings(
            flex_minutes=flex_minutes,
            constraint_recheck_seconds=recheck,
            quiet_start=quiet_start,
            quiet_end=quiet_end,
        ),
    )


def load_config(path: Path | None = None) -> EngineConfig:
    """Load ``calmirror.toml``.

    *path* may be the file itself or the directory holding it.  A missing
    file given implicitly (``path=None`` and nothing in the working
    directory) yields the defaults.

    Raises
    ------
    ConfigError
        If an explicit file is missing, contains invalid TOML, or has
        invalid values.
    """
    explicit = path is not None
    toml_path = Path(path) if path is not None else Path.cwd() / CONFIG_FILENAME
    if toml_path.is_dir():
        toml_path = toml_path / CONFIG_FILENAME

    if not toml_path.exists():
        if explicit:
            raise ConfigError(f"Config file not found: {toml_path}")
        return EngineConfig()

    try:
        data = tomllib.loads(toml_path.read_bytes().decode())
    except (tomllib.TOMLDecodeError, UnicodeDecodeError) as exc:
        raise ConfigError(f"Invalid TOML in {toml_path}: {exc}") from exc

    return parse_config(data)
