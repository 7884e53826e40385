"""Tests for the durable local JSON store and its rotating backups."""

from __future__ import annotations

import json

import pytest

from calmirror.storage.local_store import (
    BACKUP_DIRNAME,
    MAX_BACKUPS_PER_KEY,
    LocalStore,
    NoBackupError,
    StoreNotFoundError,
    StoreValidationError,
    validate_json_payload,
)

pytestmark = pytest.mark.unit

KEY = "kitchen/data.json"


def _doc(version: int) -> bytes:
    return json.dumps({"version": version}).encode()


# ---------------------------------------------------------------------------
# Read / write
# ---------------------------------------------------------------------------


class TestReadWrite:
    async def test_write_then_read_returns_same_bytes(self, store: LocalStore):
        await store.write(KEY, _doc(1))

        assert await store.read(KEY) == _doc(1)
        assert await store.exists(KEY)

    async def test_read_missing_key_raises_not_found(self, store: LocalStore):
        with pytest.raises(StoreNotFoundError) as exc_info:
            await store.read(KEY)
        assert exc_info.value.key == KEY

    async def test_malformed_json_is_rejected_and_nothing_changes(self, store: LocalStore):
        await store.write(KEY, _doc(1))

        with pytest.raises(StoreValidationError):
            await store.write(KEY, b'{"version": ')

        assert await store.read(KEY) == _doc(1)
        assert await store.list_backups(KEY) == []

    async def test_write_leaves_no_temporary_files(self, store: LocalStore):
        await store.write(KEY, _doc(1))
        await store.write(KEY, _doc(2))

        names = sorted(path.name for path in (store.base_dir / "kitchen").iterdir())
        assert names == ["data.json"]

    async def test_units_are_isolated(self, store: LocalStore):
        await store.write("kitchen/data.json", _doc(1))
        await store.write("office/data.json", _doc(2))

        assert await store.read("kitchen/data.json") == _doc(1)
        assert await store.read("office/data.json") == _doc(2)

    @pytest.mark.parametrize("key", ["../escape.json", "", "kitchen/", f"{BACKUP_DIRNAME}/x.json"])
    async def test_invalid_keys_are_rejected(self, store: LocalStore, key: str):
        with pytest.raises(ValueError):
            await store.write(key, _doc(1))

    def test_validate_json_payload_rejects_non_utf8(self):
        with pytest.raises(StoreValidationError):
            validate_json_payload(b"\xff\xfe")


# ---------------------------------------------------------------------------
# Backups
# ---------------------------------------------------------------------------


class TestBackups:
    async def test_overwrite_backs_up_previous_content(self, store: LocalStore, clock):
        await store.write(KEY, _doc(1))
        clock.advance(seconds=1)
        await store.write(KEY, _doc(2))

        backups = await store.list_backups(KEY)
        assert len(backups) == 1
        assert backups[0].path.read_bytes() == _doc(1)
        assert backups[0].path.parent == store.base_dir / BACKUP_DIRNAME / "kitchen"
        assert backups[0].created_at == clock.now

    async def test_write_without_backup_flag_skips_backup(self, store: LocalStore):
        await store.write(KEY, _doc(1))
        await store.write(KEY, _doc(2), backup=False)

        assert await store.list_backups(KEY) == []

    async def test_retention_keeps_newest_backups_only(self, store: LocalStore, clock):
        for version in range(MAX_BACKUPS_PER_KEY + 3):
            await store.write(KEY, _doc(version))
            clock.advance(seconds=1)

        backups = await store.list_backups(KEY)
        assert len(backups) == MAX_BACKUPS_PER_KEY
        contents = [json.loads(record.path.read_bytes())["version"] for record in backups]
        # Newest first; the current file (last version) is not a backup.
        assert contents == [6, 5, 4, 3, 2]

    async def test_backups_sharing_a_timestamp_are_all_kept(self, store: LocalStore):
        await store.write(KEY, _doc(1))
        await store.write(KEY, _doc(2))
        await store.write(KEY, _doc(3))

        backups = await store.list_backups(KEY)
        assert [record.path.read_bytes() for record in backups] == [_doc(2), _doc(1)]

    async def test_explicit_backup_of_missing_key_returns_none(self, store: LocalStore):
        assert await store.backup(KEY) is None

    async def test_custom_retention(self, tmp_path, clock):
        store = LocalStore(tmp_path, max_backups=2, clock=clock)
        for version in range(5):
            await store.write(KEY, _doc(version))
            clock.advance(minutes=1)

        assert len(await store.list_backups(KEY)) == 2

    def test_max_backups_must_be_positive(self, tmp_path):
        with pytest.raises(ValueError):
            LocalStore(tmp_path, max_backups=0)


# ---------------------------------------------------------------------------
# Restore / delete
# ---------------------------------------------------------------------------


class TestRestore:
    async def test_restore_brings_back_latest_backup(self, store: LocalStore, clock):
        await store.write(KEY, _doc(1))
        clock.advance(seconds=1)
        await store.write(KEY, _doc(2))
        clock.advance(seconds=1)
        await store.write(KEY, _doc(3))

        record = await store.restore(KEY)

        assert await store.read(KEY) == _doc(2)
        assert record.path.read_bytes() == _doc(2)

    async def test_restore_without_backup_raises(self, store: LocalStore):
        await store.write(KEY, _doc(1))

        with pytest.raises(NoBackupError):
            await store.restore(KEY)

    async def test_delete_keeps_backups_for_recovery(self, store: LocalStore, clock):
        await store.write(KEY, _doc(1))
        clock.advance(seconds=1)
        await store.write(KEY, _doc(2))

        assert await store.delete(KEY) is True
        assert not await store.exists(KEY)

        await store.restore(KEY)
        assert await store.read(KEY) == _doc(1)

    async def test_delete_missing_key_returns_false(self, store: LocalStore):
        assert await store.delete(KEY) is False
