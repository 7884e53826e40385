"""CLI for calmirror: sign in, pick calendars, sync and inspect units."""

from __future__ import annotations

import asyncio
import secrets
import signal
import sys
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

import click
import httpx

from calmirror.config import ConfigError, EngineConfig, load_config
from calmirror.core.logging import configure_logging
from calmirror.google.client import GoogleCalendarClient
from calmirror.google.credentials import CredentialManager, OAuthClientConfig, TokenStore
from calmirror.google.errors import SyncError, suggested_actions
from calmirror.icons import default_icon_set, icons_for_events
from calmirror.models import (
    DEFAULT_MAX_EVENTS,
    DEFAULT_SYNC_FREQUENCY_HOURS,
    DEFAULT_WEEKS_AHEAD,
    Configuration,
    SyncOutcome,
    SyncResult,
)
from calmirror.storage.local_store import LocalStore, NoBackupError
from calmirror.storage.units import UnitFile, UnitRepository
from calmirror.sync.orchestrator import SyncOrchestrator
from calmirror.sync.scheduler import SyncScheduler


@dataclass
class Engine:
    """The wired component graph for one CLI invocation."""

    config: EngineConfig
    repository: UnitRepository
    credentials: CredentialManager
    client: GoogleCalendarClient
    orchestrator: SyncOrchestrator


def _oauth_client(config: EngineConfig) -> OAuthClientConfig:
    if not config.oauth.client_id:
        raise click.ClickException(
            "No OAuth client configured. Set [calmirror.oauth] client_id in calmirror.toml."
        )
    return OAuthClientConfig(
        client_id=config.oauth.client_id,
        client_secret=config.oauth.client_secret,
        redirect_uri=config.oauth.redirect_uri,
    )


def _repository(config: EngineConfig) -> UnitRepository:
    return UnitRepository(LocalStore(config.data_dir))


@asynccontextmanager
async def open_engine(config: EngineConfig) -> AsyncIterator[Engine]:
    """Build the engine around one shared HTTP client and close it afterwards."""
    oauth = _oauth_client(config)
    repository = _repository(config)
    async with httpx.AsyncClient(timeout=30.0) as http_client:
        credentials = CredentialManager(oauth, TokenStore(repository.store), http_client)
        client = GoogleCalendarClient(credentials, http_client)
        orchestrator = SyncOrchestrator(
            repository,
            credentials,
            client,
            timeout=config.sync_timeout_seconds,
            tz=config.timezone,
        )
        yield Engine(
            config=config,
            repository=repository,
            credentials=credentials,
            client=client,
            orchestrator=orchestrator,
        )


def _echo_result(result: SyncResult) -> None:
    if result.outcome is SyncOutcome.SUCCESS:
        click.echo(f"{result.unit}: synced {result.event_count} event(s)")
    elif result.outcome is SyncOutcome.SKIPPED:
        click.echo(f"{result.unit}: up to date, nothing to do")
    else:
        message = result.error.user_message if result.error else "unknown error"
        click.echo(f"{result.unit}: sync failed: {message}", err=True)
        if result.error is not None:
            for action in suggested_actions(result.error):
                click.echo(f"  - {action}", err=True)


@click.group()
@click.version_option(version="0.1.0")
@click.option(
    "--config",
    "config_path",
    type=click.Path(path_type=Path),
    default=None,
    help="Path to calmirror.toml (or the directory holding it)",
)
@click.option("--log-level", default=None, help="Override the configured log level")
@click.pass_context
def cli(ctx: click.Context, config_path: Path | None, log_level: str | None) -> None:
    """calmirror: mirror a Google Calendar into local JSON files."""
    try:
        config = load_config(config_path)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc
    configure_logging(
        level=log_level or config.logging.level,
        fmt=config.logging.format,
        log_root=config.logging.log_root,
    )
    ctx.obj = config


# ---------------------------------------------------------------------------
# Account
# ---------------------------------------------------------------------------


@cli.command("auth-url")
@click.option("--state", default=None, help="Opaque state value (random when omitted)")
@click.option("--login-hint", default=None, help="Pre-select this Google account")
@click.pass_obj
def auth_url(config: EngineConfig, state: str | None, login_hint: str | None) -> None:
    """Print the Google consent URL to open in a browser."""
    oauth = _oauth_client(config)
    repository = _repository(config)
    credentials = CredentialManager(oauth, TokenStore(repository.store))

    async def _build() -> str:
        try:
            return credentials.build_authorization_url(
                state or secrets.token_urlsafe(16), login_hint=login_hint
            )
        finally:
            await credentials.aclose()

    click.echo(asyncio.run(_build()))


@cli.command("auth-exchange")
@click.argument("code")
@click.pass_obj
def auth_exchange(config: EngineConfig, code: str) -> None:
    """Exchange an authorization CODE for tokens and store them."""

    async def _exchange() -> None:
        async with open_engine(config) as engine:
            record = await engine.credentials.exchange_code(code)
        click.echo(f"Signed in as {record.account_email or 'unknown account'}")

    try:
        asyncio.run(_exchange())
    except SyncError as exc:
        raise click.ClickException(exc.user_message) from exc


@cli.command("sign-out")
@click.pass_obj
def sign_out(config: EngineConfig) -> None:
    """Revoke the Google grant and delete stored tokens."""

    async def _sign_out() -> bool:
        async with open_engine(config) as engine:
            return await engine.credentials.revoke()

    acknowledged = asyncio.run(_sign_out())
    if acknowledged:
        click.echo("Signed out")
    else:
        click.echo("Local credentials removed; Google did not confirm the revocation")


@cli.command()
@click.pass_obj
def calendars(config: EngineConfig) -> None:
    """List the calendars visible to the signed-in account."""

    async def _list() -> None:
        async with open_engine(config) as engine:
            found = await engine.client.list_calendars()
        if not found:
            click.echo("No calendars found")
            return
        click.echo(f"{'ID':<50} {'Shared':<7} {'Name'}")
        click.echo("-" * 80)
        for info in found:
            click.echo(f"{info.id:<50} {'yes' if info.is_shared else 'no':<7} {info.name}")

    try:
        asyncio.run(_list())
    except SyncError as exc:
        raise click.ClickException(exc.user_message) from exc


# ---------------------------------------------------------------------------
# Units
# ---------------------------------------------------------------------------


@cli.command()
@click.argument("unit")
@click.argument("calendar_id")
@click.option("--name", "calendar_name", default=None, help="Display name of the calendar")
@click.option("--weeks", type=click.IntRange(min=1), default=DEFAULT_WEEKS_AHEAD)
@click.option("--max-events", type=click.IntRange(min=1), default=DEFAULT_MAX_EVENTS)
@click.option(
    "--frequency",
    "frequency_hours",
    type=click.IntRange(min=1),
    default=DEFAULT_SYNC_FREQUENCY_HOURS,
    help="Hours between periodic syncs",
)
@click.option("--disable", is_flag=True, help="Keep the unit but stop periodic syncs")
@click.pass_obj
def configure(
    config: EngineConfig,
    unit: str,
    calendar_id: str,
    calendar_name: str | None,
    weeks: int,
    max_events: int,
    frequency_hours: int,
    disable: bool,
) -> None:
    """Point UNIT at CALENDAR_ID."""
    repository = _repository(config)
    unit_config = Configuration(
        calendar_id=calendar_id,
        calendar_name=calendar_name,
        weeks_ahead=weeks,
        max_events=max_events,
        sync_frequency_hours=frequency_hours,
        is_configured=True,
        enabled=not disable,
        last_update=datetime.now(UTC),
    )

    async def _save() -> None:
        await repository.save_configuration(unit, unit_config)
        if await repository.load_icons(unit) is None:
            await repository.save_icons(unit, default_icon_set())

    try:
        asyncio.run(_save())
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Configured {unit} -> {calendar_id}")


@cli.command()
@click.argument("unit")
@click.option("--force", is_flag=True, help="Sync even if the data is still fresh")
@click.option(
    "--retries",
    type=click.IntRange(min=1),
    default=1,
    help="Attempts for a forced sync with retry",
)
@click.pass_obj
def sync(config: EngineConfig, unit: str, force: bool, retries: int) -> None:
    """Sync UNIT now."""

    async def _sync() -> SyncResult:
        async with open_engine(config) as engine:
            if retries > 1:
                return await engine.orchestrator.sync_with_retry(unit, max_attempts=retries)
            return await engine.orchestrator.execute(unit, force=force)

    result = asyncio.run(_sync())
    _echo_result(result)
    if result.outcome is SyncOutcome.ERROR:
        sys.exit(1)


@cli.command()
@click.argument("unit")
@click.pass_obj
def status(config: EngineConfig, unit: str) -> None:
    """Show the last sync outcome and stored events of UNIT."""
    repository = _repository(config)

    async def _load():
        return (
            await repository.has_configuration(unit),
            await repository.load_configuration(unit),
            await repository.load_events(unit),
            await repository.load_stats(unit),
            await repository.load_icons(unit),
            await repository.storage_size(),
        )

    has_config, unit_config, event_set, stats, icon_set, size = asyncio.run(_load())
    if unit_config is None and has_config:
        click.echo(
            f"{unit}: configuration unreadable "
            f"(run 'calmirror restore {unit} {UnitFile.CONFIG.value}')"
        )
    elif unit_config is None:
        click.echo(f"{unit}: not configured")
    else:
        state = "enabled" if unit_config.enabled else "disabled"
        click.echo(f"{unit}: {unit_config.calendar_name or unit_config.calendar_id} ({state})")

    click.echo(
        f"Syncs: {stats.sync_count} (ok {stats.success_count}, failed {stats.failure_count}, "
        f"success rate {stats.success_rate:.0%})"
    )
    if stats.last_sync is not None:
        click.echo(f"Last successful sync: {stats.last_sync.isoformat()}")
    click.echo(f"Storage: {size} bytes")
    if event_set is None:
        click.echo("No events stored")
        return
    if event_set.error_message:
        click.echo(f"Last error: {event_set.error_message}")
    click.echo(f"Events: {event_set.event_count}")
    icons = icons_for_events(event_set.events, icon_set) if icon_set is not None else {}
    for event in event_set.events:
        when = event.start.date().isoformat() if event.is_all_day else event.start.isoformat()
        icon = f"  [{icons[event.id]}]" if event.id in icons else ""
        click.echo(f"  {when}  {event.title}{icon}")


@cli.command()
@click.argument("unit")
@click.argument("kind", type=click.Choice([*(k.value for k in UnitFile), "all"]))
@click.pass_obj
def restore(config: EngineConfig, unit: str, kind: str) -> None:
    """Restore KIND (or all files) of UNIT from the latest backup."""
    repository = _repository(config)
    if kind == "all":
        restored = asyncio.run(repository.restore_unit(unit))
        if not restored:
            raise click.ClickException(f"No backups found for {unit}")
        click.echo(f"Restored {', '.join(k.value for k in restored)} for {unit}")
        return
    try:
        record = asyncio.run(repository.restore(unit, UnitFile(kind)))
    except NoBackupError as exc:
        raise click.ClickException(f"No backup of {kind} for {unit}") from exc
    click.echo(f"Restored {kind} for {unit} from {record.created_at.isoformat()}")


# ---------------------------------------------------------------------------
# Long-running
# ---------------------------------------------------------------------------


@cli.command()
@click.pass_obj
def run(config: EngineConfig) -> None:
    """Re-arm every configured unit and keep syncing until interrupted."""
    asyncio.run(_run_forever(config))


async def _run_forever(config: EngineConfig) -> None:
    loop = asyncio.get_running_loop()
    shutdown_event = asyncio.Event()

    def _signal_handler() -> None:
        click.echo("\nShutting down...")
        shutdown_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _signal_handler)

    async with open_engine(config) as engine:
        scheduler = SyncScheduler(
            engine.orchestrator,
            engine.repository,
            flex_minutes=config.scheduler.flex_minutes,
            constraint_recheck_seconds=config.scheduler.constraint_recheck_seconds,
            quiet_start=config.scheduler.quiet_start,
            quiet_end=config.scheduler.quiet_end,
            tz=config.timezone,
        )
        armed = await scheduler.recover()
        if not armed:
            click.echo("No configured units to sync")
            return
        click.echo(f"Syncing {len(armed)} unit(s): {', '.join(armed)}")
        try:
            await shutdown_event.wait()
        finally:
            await scheduler.cancel_all()
