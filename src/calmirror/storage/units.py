"""Per-unit typed access to the configuration, data, icons and stats files.

Each configured unit owns the keys ``<unit>/config.json``,
``<unit>/data.json``, ``<unit>/icons.json`` and ``<unit>/stats.json``.
Documents are checked for their required fields before they are handed to
the store, so a structurally wrong document is rejected the same way as
malformed JSON.
"""

from __future__ import annotations

import json
import logging
import re
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ValidationError

from calmirror.models import Configuration, EventSet, IconSet, SyncStats
from calmirror.storage.local_store import (
    BACKUP_DIRNAME,
    BackupRecord,
    LocalStore,
    NoBackupError,
    StoreNotFoundError,
    StoreValidationError,
)

logger = logging.getLogger(__name__)

AUTH_NAMESPACE = "auth"
_UNIT_NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")
_RESERVED_UNIT_NAMES = frozenset({BACKUP_DIRNAME, AUTH_NAMESPACE})


class UnitFile(StrEnum):
    """Logical files owned by one unit."""

    CONFIG = "config"
    DATA = "data"
    ICONS = "icons"
    STATS = "stats"


_REQUIRED_FIELDS: dict[UnitFile, tuple[str, ...]] = {
    UnitFile.CONFIG: ("widget_type", "is_configured", "last_update"),
    UnitFile.DATA: ("last_sync", "status", "events"),
    UnitFile.ICONS: ("associations",),
    UnitFile.STATS: (),
}
_EVENT_REQUIRED_FIELDS = ("id", "title", "start", "end")
_ASSOCIATION_REQUIRED_FIELDS = ("keywords", "icon")


def validate_unit_name(unit: str) -> str:
    """Return *unit* unchanged if it is a usable unit name."""
    if not _UNIT_NAME_PATTERN.match(unit) or unit in _RESERVED_UNIT_NAMES:
        raise ValueError(f"Invalid unit name: {unit!r}")
    return unit


def unit_key(unit: str, kind: UnitFile) -> str:
    return f"{validate_unit_name(unit)}/{kind.value}.json"


def check_document(kind: UnitFile, document: Any) -> None:
    """Raise ``StoreValidationError`` when *document* lacks required fields."""
    if not isinstance(document, dict):
        raise StoreValidationError(f"{kind.value} document must be a JSON object")

    missing = [name for name in _REQUIRED_FIELDS[kind] if name not in document]
    if missing:
        raise StoreValidationError(
            f"{kind.value} document is missing required field(s): {', '.join(missing)}"
        )

    if kind is UnitFile.DATA:
        _check_items(kind, document.get("events"), _EVENT_REQUIRED_FIELDS, "events")
    elif kind is UnitFile.ICONS:
        _check_items(
            kind, document.get("associations"), _ASSOCIATION_REQUIRED_FIELDS, "associations"
        )


def _check_items(kind: UnitFile, items: Any, required: tuple[str, ...], label: str) -> None:
    if not isinstance(items, list):
        raise StoreValidationError(f"{kind.value} document field {label!r} must be a list")
    for index, item in enumerate(items):
        if not isinstance(item, dict):
            raise StoreValidationError(f"{label}[{index}] must be a JSON object")
        missing = [name for name in required if name not in item]
        if missing:
            raise StoreValidationError(
                f"{label}[{index}] is missing required field(s): {', '.join(missing)}"
            )


class UnitRepository:
    """Typed load/save of per-unit documents on top of a ``LocalStore``."""

    def __init__(self, store: LocalStore) -> None:
        self._store = store

    @property
    def store(self) -> LocalStore:
        return self._store

    # ------------------------------------------------------------------
    # Generic helpers
    # ------------------------------------------------------------------

    async def _load(self, unit: str, kind: UnitFile, model: type[BaseModel]) -> Any:
        key = unit_key(unit, kind)
        try:
            raw = await self._store.read(key)
        except StoreNotFoundError:
            return None

        try:
            document = json.loads(raw)
            check_document(kind, document)
            return model.model_validate(document)
        except (ValueError, StoreValidationError, ValidationError) as exc:
            logger.warning("Ignoring unreadable %s for unit %s: %s", kind.value, unit, exc)
            return None

    async def _save(self, unit: str, kind: UnitFile, value: BaseModel) -> None:
        document = value.model_dump(mode="json")
        check_document(kind, document)
        payload = json.dumps(document, ensure_ascii=False, indent=2).encode()
        await self._store.write(unit_key(unit, kind), payload)

    # ------------------------------------------------------------------
    # Typed accessors
    # ------------------------------------------------------------------

    async def load_configuration(self, unit: str) -> Configuration | None:
        return await self._load(unit, UnitFile.CONFIG, Configuration)

    async def save_configuration(self, unit: str, config: Configuration) -> None:
        await self._save(unit, UnitFile.CONFIG, config)

    async def load_events(self, unit: str) -> EventSet | None:
        return await self._load(unit, UnitFile.DATA, EventSet)

    async def save_events(self, unit: str, event_set: EventSet) -> None:
        await self._save(unit, UnitFile.DATA, event_set)

    async def load_icons(self, unit: str) -> IconSet | None:
        return await self._load(unit, UnitFile.ICONS, IconSet)

    async def save_icons(self, unit: str, icons: IconSet) -> None:
        await self._save(unit, UnitFile.ICONS, icons)

    async def load_stats(self, unit: str) -> SyncStats:
        return await self._load(unit, UnitFile.STATS, SyncStats) or SyncStats()

    async def save_stats(self, unit: str, stats: SyncStats) -> None:
        await self._save(unit, UnitFile.STATS, stats)

    # ------------------------------------------------------------------
    # Unit-level operations
    # ------------------------------------------------------------------

    async def has_configuration(self, unit: str) -> bool:
        return await self._store.exists(unit_key(unit, UnitFile.CONFIG))

    async def list_units(self) -> list[str]:
        """Names of all units that have a configuration file."""
        base_dir = self._store.base_dir
        if not base_dir.is_dir():
            return []
        units: list[str] = []
        for child in sorted(base_dir.iterdir()):
            if not child.is_dir() or child.name in _RESERVED_UNIT_NAMES:
                continue
            if not _UNIT_NAME_PATTERN.match(child.name):
                continue
            if (child / f"{UnitFile.CONFIG.value}.json").is_file():
                units.append(child.name)
        return units

    async def restore(self, unit: str, kind: UnitFile) -> BackupRecord:
        return await self._store.restore(unit_key(unit, kind))

    async def restore_unit(self, unit: str) -> list[UnitFile]:
        """Restore every file of *unit* that has a backup.

        Returns:
            The kinds that were restored.
        """
        restored: list[UnitFile] = []
        for kind in UnitFile:
            try:
                await self._store.restore(unit_key(unit, kind))
            except NoBackupError:
                continue
            restored.append(kind)
        return restored

    async def delete_unit(self, unit: str) -> None:
        """Remove every file of *unit*; other units are untouched."""
        for kind in UnitFile:
            await self._store.delete(unit_key(unit, kind))
        logger.info("Deleted files for unit %s", unit)

    async def storage_size(self) -> int:
        """Total bytes used by the store, backups included."""
        base_dir = self._store.base_dir
        if not base_dir.is_dir():
            return 0
        return sum(path.stat().st_size for path in base_dir.rglob("*") if path.is_file())
