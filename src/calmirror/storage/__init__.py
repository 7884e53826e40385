"""Durable local JSON storage with rotating backups."""

from calmirror.storage.local_store import (
    BackupRecord,
    LocalStore,
    NoBackupError,
    StoreError,
    StoreNotFoundError,
    StoreValidationError,
    StoreWriteError,
)
from calmirror.storage.units import UnitFile, UnitRepository

__all__ = [
    "BackupRecord",
    "LocalStore",
    "NoBackupError",
    "StoreError",
    "StoreNotFoundError",
    "StoreValidationError",
    "StoreWriteError",
    "UnitFile",
    "UnitRepository",
]
