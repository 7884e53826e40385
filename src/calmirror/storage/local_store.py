"""Durable key-scoped JSON storage with rotating backups.

Keys are relative POSIX paths of the form ``<unit>/<name>.json``.  Every key
maps to one file under ``base_dir``; its backups live under
``base_dir/backups/<unit>/`` and are named::

    {stem}_backup_{YYYYmmdd_HHMMSS_ffffff}{suffix}

with a ``_N`` counter appended when two backups share a timestamp.  At most ``max_backups`` files
are kept per key, oldest pruned first.

Writes are validated as JSON before disk is touched and land via a temporary
file plus ``os.replace`` so a reader never observes a half-written file.
Blocking filesystem work runs through ``asyncio.to_thread``.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import shutil
import tempfile
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path, PurePosixPath
from typing import NamedTuple

logger = logging.getLogger(__name__)

MAX_BACKUPS_PER_KEY = 5
BACKUP_DIRNAME = "backups"
_BACKUP_MARKER = "_backup_"
_BACKUP_TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S_%f"


class StoreError(Exception):
    """Base error raised by the local store."""


class StoreNotFoundError(StoreError):
    """Raised when a key has no persisted file."""

    def __init__(self, key: str) -> None:
        self.key = key
        super().__init__(f"No stored file for key: {key}")


class StoreValidationError(StoreError):
    """Raised when a payload is not well-formed JSON; nothing is written."""


class StoreWriteError(StoreError):
    """Raised when the filesystem rejects a write."""


class NoBackupError(StoreError):
    """Raised by ``restore`` when a key has no backup to restore from."""

    def __init__(self, key: str) -> None:
        self.key = key
        super().__init__(f"No backup available for key: {key}")


class BackupRecord(NamedTuple):
    """A timestamped copy of a persisted file."""

    key: str
    path: Path
    created_at: datetime


def validate_json_payload(data: bytes) -> None:
    """Raise ``StoreValidationError`` unless *data* is a JSON document."""
    try:
        json.loads(data)
    except (UnicodeDecodeError, ValueError) as exc:
        raise StoreValidationError(f"Payload is not well-formed JSON: {exc}") from exc


class LocalStore:
    """Filesystem-backed JSON store with backup-before-overwrite.

    Args:
        base_dir: Root directory of the store. Created on demand.
        max_backups: Number of backups retained per key.
        clock: Source of the current time, used for backup names.
    """

    def __init__(
        self,
        base_dir: Path,
        *,
        max_backups: int = MAX_BACKUPS_PER_KEY,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        if max_backups < 1:
            raise ValueError("max_backups must be at least 1")
        self.base_dir = Path(base_dir).resolve()
        self.max_backups = max_backups
        self._clock = clock or (lambda: datetime.now(UTC))

    # ------------------------------------------------------------------
    # Key resolution
    # ------------------------------------------------------------------

    def _key_to_path(self, key: str) -> Path:
        """Resolve *key* to a file path inside ``base_dir``.

        Raises:
            ValueError: If the key is empty, targets the backup area, or
                escapes the base directory.
        """
        parts = PurePosixPath(key).parts
        if not parts or key.endswith("/"):
            raise ValueError(f"Invalid store key: {key!r}")
        if parts[0] == BACKUP_DIRNAME:
            raise ValueError(f"Store key may not address the backup area: {key!r}")

        resolved_path = (self.base_dir / key).resolve()
        try:
            resolved_path.relative_to(self.base_dir)
        except ValueError as e:
            raise ValueError(f"Path traversal attempt detected: {key}") from e
        return resolved_path

    def _backup_dir(self, key: str) -> Path:
        parent = PurePosixPath(key).parent
        return self.base_dir / BACKUP_DIRNAME / parent

    def _ensure_dirs(self, key: str) -> Path:
        path = self._key_to_path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        self._backup_dir(key).mkdir(parents=True, exist_ok=True)
        return path

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def read(self, key: str) -> bytes:
        """Return the bytes stored under *key*.

        Raises:
            StoreNotFoundError: If nothing is stored under the key.
        """
        return await asyncio.to_thread(self._read_sync, key)

    async def write(self, key: str, data: bytes, *, backup: bool = True) -> None:
        """Validate and atomically persist *data* under *key*.

        The current file, if any, is backed up first unless ``backup`` is
        false.  A failed backup is logged and does not block the write.

        Raises:
            StoreValidationError: If *data* is not well-formed JSON.
            StoreWriteError: If the filesystem rejects the write.
        """
        validate_json_payload(data)
        await asyncio.to_thread(self._write_sync, key, data, backup)

    async def delete(self, key: str) -> bool:
        """Remove the file stored under *key*; backups are left in place.

        Returns:
            True if a file was removed, False if none existed.
        """
        return await asyncio.to_thread(self._delete_sync, key)

    async def exists(self, key: str) -> bool:
        try:
            path = self._key_to_path(key)
        except ValueError:
            return False
        return await asyncio.to_thread(path.is_file)

    async def backup(self, key: str) -> BackupRecord | None:
        """Copy the current file for *key* into the backup area.

        Returns:
            The new record, or None when there is nothing to back up.
        """
        return await asyncio.to_thread(self._backup_sync, key)

    async def restore(self, key: str) -> BackupRecord:
        """Replace the file for *key* with its most recent backup.

        Raises:
            NoBackupError: If the key has never been backed up.
        """
        return await asyncio.to_thread(self._restore_sync, key)

    async def list_backups(self, key: str) -> list[BackupRecord]:
        """Backups for *key*, newest first."""
        return await asyncio.to_thread(self._list_backups_sync, key)

    # ------------------------------------------------------------------
    # Blocking implementations
    # ------------------------------------------------------------------

    def _read_sync(self, key: str) -> bytes:
        path = self._ensure_dirs(key)
        if not path.is_file():
            raise StoreNotFoundError(key)
        return path.read_bytes()

    def _write_sync(self, key: str, data: bytes, backup: bool) -> None:
        path = self._ensure_dirs(key)
        if backup and path.is_file():
            try:
                self._backup_sync(key)
            except OSError as exc:
                logger.warning("Backup before write failed for %s: %s", key, exc)

        try:
            self._atomic_replace(path, data)
        except OSError as exc:
            raise StoreWriteError(f"Failed to write {key}: {exc}") from exc

    def _delete_sync(self, key: str) -> bool:
        path = self._ensure_dirs(key)
        if not path.is_file():
            return False
        path.unlink()
        return True

    def _backup_sync(self, key: str) -> BackupRecord | None:
        path = self._ensure_dirs(key)
        if not path.is_file():
            return None

        created_at = self._clock()
        target = self._backup_dir(key) / self._backup_name(path, created_at)
        collision = 0
        while target.exists():
            collision += 1
            target = target.with_name(
                f"{self._backup_name(path, created_at, with_suffix=False)}_{collision}{path.suffix}"
            )

        shutil.copy2(path, target)
        self._prune_sync(key)
        logger.debug("Backed up %s to %s", key, target.name)
        return BackupRecord(key=key, path=target, created_at=created_at)

    def _restore_sync(self, key: str) -> BackupRecord:
        path = self._ensure_dirs(key)
        backups = self._list_backups_sync(key)
        if not backups:
            raise NoBackupError(key)

        latest = backups[0]
        try:
            self._atomic_replace(path, latest.path.read_bytes())
        except OSError as exc:
            raise StoreWriteError(f"Failed to restore {key}: {exc}") from exc
        logger.info("Restored %s from backup %s", key, latest.path.name)
        return latest

    def _list_backups_sync(self, key: str) -> list[BackupRecord]:
        path = self._key_to_path(key)
        backup_dir = self._backup_dir(key)
        if not backup_dir.is_dir():
            return []

        prefix = f"{path.stem}{_BACKUP_MARKER}"
        ranked: list[tuple[tuple[datetime, int], BackupRecord]] = []
        for candidate in backup_dir.iterdir():
            if not candidate.is_file() or not candidate.name.startswith(prefix):
                continue
            if candidate.suffix != path.suffix:
                continue
            stamp = _parse_backup_stamp(candidate.name[len(prefix) :])
            if stamp is None:
                continue
            record = BackupRecord(key=key, path=candidate, created_at=stamp[0])
            ranked.append((stamp, record))

        ranked.sort(key=lambda item: item[0], reverse=True)
        return [record for _, record in ranked]

    def _prune_sync(self, key: str) -> None:
        for stale in self._list_backups_sync(key)[self.max_backups :]:
            try:
                stale.path.unlink()
            except FileNotFoundError:
                continue

    @staticmethod
    def _backup_name(path: Path, created_at: datetime, *, with_suffix: bool = True) -> str:
        name = f"{path.stem}{_BACKUP_MARKER}{created_at.strftime(_BACKUP_TIMESTAMP_FORMAT)}"
        return f"{name}{path.suffix}" if with_suffix else name

    @staticmethod
    def _atomic_replace(path: Path, data: bytes) -> None:
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(data)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise


def _parse_backup_stamp(tail: str) -> tuple[datetime, int] | None:
    # "20240601_120000_000000.json", or "20240601_120000_000000_1.json" on collision
    fields = tail.split(".", 1)[0].split("_")
    if len(fields) not in (3, 4):
        return None
    try:
        created_at = datetime.strptime("_".join(fields[:3]), _BACKUP_TIMESTAMP_FORMAT)
        collision = int(fields[3]) if len(fields) == 4 else 0
    except ValueError:
        return None
    return created_at.replace(tzinfo=UTC), collision
