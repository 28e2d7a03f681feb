"""Tests for the per-device file store."""
import asyncio
import os
import secrets
from datetime import timedelta

import pytest

from devicesync.core.timeutil import utcnow
from devicesync.models.identity import IdentityRecord, SyncStatus, UserIdentity
from devicesync.services.device_store import IdentityRecordStore
from devicesync.services.identity_exceptions import (
    IdentityNotFoundError,
    IdentityValidationError,
    StoreUnavailableError,
)


def _alice():
    return UserIdentity(guid="guid-alice", handle="@alice", phone="+447700900123")


class TestRecords:
    """Basic record lifecycle."""

    def test_create_then_get(self, store):
        device_id = secrets.token_hex(32)

        async def run():
            created = await store.create(device_id)
            fetched = await store.get(device_id)
            return created, fetched

        created, fetched = asyncio.run(run())
        assert fetched is not None
        assert fetched.device_id == device_id
        assert fetched.internal_id == created.internal_id
        assert not fetched.is_linked
        assert fetched.last_status == SyncStatus.INITIALIZED

    def test_internal_id_is_not_the_device_id(self, store):
        device_id = secrets.token_hex(32)
        record = asyncio.run(store.create(device_id))

        assert record.internal_id != device_id
        path = store._path_for(record.internal_id)
        assert path.exists()
        assert path.parent.name == record.internal_id[:2]

    def test_create_is_idempotent(self, store):
        device_id = secrets.token_hex(32)

        async def run():
            first = await store.create(device_id)
            second = await store.create(device_id)
            return first, second, await store.scan()

        first, second, everything = asyncio.run(run())
        assert first.internal_id == second.internal_id
        assert len(everything) == 1

    def test_link_and_sync_state_log(self, store):
        device_id = secrets.token_hex(32)

        async def run():
            record = await store.create(device_id)
            record.link(_alice(), verified_at=utcnow())
            await store.put(record, status=SyncStatus.LINKED_TO_USER)
            return await store.get(device_id), await store.sync_states(device_id)

        record, states = asyncio.run(run())
        assert record.is_linked
        assert record.user_handle == "@alice"
        assert [s.status for s in states] == [SyncStatus.INITIALIZED, SyncStatus.LINKED_TO_USER]

    def test_partial_link_is_rejected(self, store):
        record = IdentityRecord(device_id=secrets.token_hex(32), user_guid="guid-alice")

        with pytest.raises(IdentityValidationError):
            asyncio.run(store.put(record))

    def test_malformed_device_id(self, store):
        assert asyncio.run(store.get("not-a-device")) is None

        with pytest.raises(IdentityValidationError):
            asyncio.run(store.put(IdentityRecord(device_id="ABC")))

    def test_unlink_keeps_record(self, store):
        device_id = secrets.token_hex(32)

        async def run():
            record = IdentityRecord(device_id=device_id)
            record.link(_alice(), verified_at=utcnow())
            await store.put(record)
            await store.unlink(device_id)
            return await store.get(device_id)

        record = asyncio.run(run())
        assert record is not None
        assert not record.is_linked
        assert record.last_verified_at is None
        assert record.last_status == SyncStatus.RESET

    def test_append_sync_state_for_unknown_device(self, store):
        with pytest.raises(IdentityNotFoundError):
            asyncio.run(store.append_sync_state(secrets.token_hex(32), SyncStatus.VERIFIED))


class TestScanning:
    """Scans, lookups and their caches."""

    def test_corrupt_file_is_skipped(self, store):
        async def run():
            await store.create(secrets.token_hex(32))
            await store.create(secrets.token_hex(32))
            bad_dir = store.root / "zz"
            os.makedirs(bad_dir, exist_ok=True)
            (bad_dir / "broken.sqlite3").write_bytes(b"this is not a database")
            return await store.scan()

        records = asyncio.run(run())
        assert len(records) == 2

    def test_missing_root_is_unavailable(self, tmp_path):
        store = IdentityRecordStore(root=str(tmp_path / "missing"))

        with pytest.raises(StoreUnavailableError):
            asyncio.run(store.scan())

    def test_find_linked_newest_verification_first(self, store):
        older, newer = secrets.token_hex(32), secrets.token_hex(32)

        async def run():
            for device_id, age in ((older, 10), (newer, 1)):
                record = IdentityRecord(device_id=device_id)
                record.link(_alice(), verified_at=utcnow() - timedelta(days=age))
                await store.put(record)
            await store.create(secrets.token_hex(32))
            return await store.find_linked(handle="@alice")

        records = asyncio.run(run())
        assert [r.device_id for r in records] == [newer, older]

    def test_find_linked_needs_a_field(self, store):
        assert asyncio.run(store.find_linked()) == []

    def test_lookup_falls_back_to_scan_without_index(self, store):
        device_id = secrets.token_hex(32)

        async def run():
            await store.create(device_id)
            store.index.clear()
            return await store.get(device_id)

        assert asyncio.run(run()).device_id == device_id
        assert store.index.get(device_id) is not None

    def test_scan_cache_dropped_on_write(self, tmp_path):
        store = IdentityRecordStore(root=str(tmp_path / "devices"), scan_cache_ttl=3600)
        store.initialize()

        async def run():
            await store.create(secrets.token_hex(32))
            first = await store.scan()
            await store.create(secrets.token_hex(32))
            second = await store.scan()
            return first, second

        first, second = asyncio.run(run())
        assert len(first) == 1
        assert len(second) == 2

    def test_scan_returns_copies(self, store):
        device_id = secrets.token_hex(32)

        async def run():
            await store.create(device_id)
            (record,) = await store.scan()
            record.device_name = "mutated"
            return await store.get(device_id)

        assert asyncio.run(run()).device_name is None

    def test_delete_for_user(self, store):
        async def run():
            for _ in range(2):
                record = IdentityRecord(device_id=secrets.token_hex(32))
                record.link(_alice(), verified_at=utcnow())
                await store.put(record)
            deleted = await store.delete_for_user("guid-alice")
            return deleted, await store.scan()

        deleted, remaining = asyncio.run(run())
        assert deleted == 2
        assert remaining == []


class TestLockedUpdates:
    """Read-modify-write of one device happens under its lock."""

    def _slow_lookups(self, store, monkeypatch):
        locate = store._locate

        async def slow_locate(device_id):
            await asyncio.sleep(0.05)
            return await locate(device_id)

        monkeypatch.setattr(store, "_locate", slow_locate)

    def test_create_does_not_undo_a_concurrent_link(self, store, monkeypatch):
        device_id = secrets.token_hex(32)
        self._slow_lookups(store, monkeypatch)

        def link(record):
            record.link(_alice(), verified_at=utcnow())
            return SyncStatus.LINKED_TO_USER

        async def run():
            await asyncio.gather(store.create(device_id), store.update(device_id, link, create=True))
            return await store.get(device_id)

        record = asyncio.run(run())
        assert record.is_linked
        assert record.user_guid == "guid-alice"

    def test_concurrent_updates_both_apply(self, store, monkeypatch):
        device_id = secrets.token_hex(32)
        asyncio.run(store.create(device_id))
        self._slow_lookups(store, monkeypatch)

        def rename(record):
            record.device_name = "Kitchen iPad"
            return SyncStatus.DEVICE_RENAMED

        def set_type(record):
            record.device_type = "tablet"
            return None

        async def run():
            await asyncio.gather(store.update(device_id, rename), store.update(device_id, set_type))
            return await store.get(device_id)

        record = asyncio.run(run())
        assert record.device_name == "Kitchen iPad"
        assert record.device_type == "tablet"

    def test_update_unknown_device(self, store):
        with pytest.raises(IdentityNotFoundError):
            asyncio.run(store.update(secrets.token_hex(32), lambda record: None))

    def test_failed_mutation_writes_nothing(self, store):
        device_id = secrets.token_hex(32)

        def boom(record):
            record.device_name = "half done"
            raise IdentityValidationError("rejected")

        async def run():
            await store.create(device_id)
            with pytest.raises(IdentityValidationError):
                await store.update(device_id, boom)
            return await store.get(device_id)

        assert asyncio.run(run()).device_name is None
