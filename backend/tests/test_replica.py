"""Tests for the client-side offline replica."""
import asyncio
from datetime import timedelta

import aiosqlite
import pytest

from devicesync.client.replica import MetaKey, OfflineReplica
from devicesync.core.timeutil import to_iso, utcnow
from devicesync.models.sync import ChangeQueueEntry, ChangeTable, ChangeType, RemoteChange
from devicesync.services.identity_exceptions import IdentityNotFoundError, IdentityValidationError

GUID = "guid-alice"
DEVICE = "ab" * 32


async def _seeded(path):
    replica = OfflineReplica(str(path), flush_delay=0.01)
    await replica.init()
    await replica.write(ChangeTable.USERS, {"guid": GUID, "handle": "@alice", "phone": "+447700900123"})
    await replica.write(ChangeTable.DEVICES, {
        "id": DEVICE, "user_guid": GUID, "user_handle": "@alice", "user_phone": "+447700900123",
    })
    return replica


class TestLocalMutations:
    """Record changes and the queue move together."""

    def test_write_does_not_queue(self, tmp_path):
        async def run():
            replica = await _seeded(tmp_path / "replica.db")
            pending = await replica.pending_count()
            await replica.close()
            return pending

        assert asyncio.run(run()) == 0

    def test_rename_handle_updates_user_and_devices(self, tmp_path):
        async def run():
            replica = await _seeded(tmp_path / "replica.db")
            change = await replica.rename_handle(GUID, "@alice_new")
            user = await replica.read(ChangeTable.USERS, GUID)
            device = await replica.read(ChangeTable.DEVICES, DEVICE)
            queue = await replica.drain_queue()
            await replica.close()
            return change, user, device, queue

        change, user, device, queue = asyncio.run(run())
        assert user["handle"] == "@alice_new"
        assert device["user_handle"] == "@alice_new"
        assert len(queue) == 1
        assert queue[0].id == change.id
        assert queue[0].table_name == ChangeTable.USERS
        assert queue[0].change_data["old_handle"] == "@alice"

    def test_rename_device(self, tmp_path):
        async def run():
            replica = await _seeded(tmp_path / "replica.db")
            await replica.rename_device(DEVICE, "Kitchen iPad")
            device = await replica.read(ChangeTable.DEVICES, DEVICE)
            queue = await replica.drain_queue()
            await replica.close()
            return device, queue

        device, queue = asyncio.run(run())
        assert device["device_name"] == "Kitchen iPad"
        assert queue[0].to_wire()["operation"] == ChangeType.UPDATE
        assert queue[0].to_wire()["data"]["device_name"] == "Kitchen iPad"

    def test_unknown_records(self, tmp_path):
        async def run():
            replica = await _seeded(tmp_path / "replica.db")
            try:
                with pytest.raises(IdentityNotFoundError):
                    await replica.rename_handle("other-guid", "@x")
                with pytest.raises(IdentityNotFoundError):
                    await replica.rename_device("cd" * 32, "x")
                return await replica.pending_count()
            finally:
                await replica.close()

        assert asyncio.run(run()) == 0

    def test_failed_mutation_rolls_back(self, tmp_path):
        async def run():
            replica = await _seeded(tmp_path / "replica.db")
            change = ChangeQueueEntry(ChangeTable.USERS, GUID, ChangeType.UPDATE, {"handle": "@x"})
            with pytest.raises(aiosqlite.OperationalError):
                await replica._mutate([
                    ("UPDATE users SET handle = ? WHERE guid = ?", ("@x", GUID)),
                    ("UPDATE no_such_table SET x = 1", ()),
                ], change)
            user = await replica.read(ChangeTable.USERS, GUID)
            pending = await replica.pending_count()
            await replica.close()
            return user, pending

        user, pending = asyncio.run(run())
        assert user["handle"] == "@alice"
        assert pending == 0

    def test_offline_pin(self, tmp_path):
        async def run():
            replica = await _seeded(tmp_path / "replica.db")
            await replica.set_pin(GUID, "1234")
            results = (await replica.verify_pin(GUID, "1234"), await replica.verify_pin(GUID, "9999"))
            queue = await replica.drain_queue()
            await replica.close()
            return results, queue

        (good, bad), queue = asyncio.run(run())
        assert good
        assert not bad
        assert queue[0].change_data["pin_hash"].startswith("$2")

    def test_invalid_pin(self, tmp_path):
        async def run():
            replica = await _seeded(tmp_path / "replica.db")
            try:
                await replica.set_pin(GUID, "12")
            finally:
                await replica.close()

        with pytest.raises(IdentityValidationError):
            asyncio.run(run())

    def test_mark_synced(self, tmp_path):
        async def run():
            replica = await _seeded(tmp_path / "replica.db")
            first = await replica.rename_device(DEVICE, "one")
            await replica.rename_device(DEVICE, "two")
            marked = await replica.mark_synced([str(first.id)])
            remaining = await replica.drain_queue()
            await replica.close()
            return marked, remaining

        marked, remaining = asyncio.run(run())
        assert marked == 1
        assert [c.change_data["device_name"] for c in remaining] == ["two"]


class TestPersistence:
    """Snapshots on disk."""

    def test_reload_after_close(self, tmp_path):
        path = tmp_path / "client" / "replica.db"

        async def run():
            replica = await _seeded(path)
            await replica.rename_device(DEVICE, "Kitchen iPad")
            await replica.set_meta(MetaKey.AUTH_VERSION, 3)
            await replica.close()

            reopened = OfflineReplica(str(path))
            await reopened.init()
            device = await reopened.read(ChangeTable.DEVICES, DEVICE)
            pending = await reopened.pending_count()
            version = await reopened.get_meta(MetaKey.AUTH_VERSION)
            await reopened.close()
            return device, pending, version

        device, pending, version = asyncio.run(run())
        assert path.exists()
        assert device["device_name"] == "Kitchen iPad"
        assert pending == 1
        assert version == "3"

    def test_debounced_flush_writes_snapshot(self, tmp_path):
        path = tmp_path / "replica.db"

        async def run():
            replica = await _seeded(path)
            await asyncio.sleep(0.2)
            exists = path.exists()
            await replica.close()
            return exists

        assert asyncio.run(run())
        assert not (tmp_path / "replica.db.tmp").exists()

    def test_unreadable_snapshot_starts_empty(self, tmp_path):
        path = tmp_path / "replica.db"
        path.write_bytes(b"garbage")

        async def run():
            replica = OfflineReplica(str(path))
            await replica.init()
            users = await replica.read_all(ChangeTable.USERS)
            await replica.close()
            return users

        assert asyncio.run(run()) == []

    def test_requires_init(self, tmp_path):
        replica = OfflineReplica(str(tmp_path / "replica.db"))

        with pytest.raises(RuntimeError):
            asyncio.run(replica.read(ChangeTable.USERS, GUID))


class TestServerDeltas:
    """Last-write-wins application of pulled changes."""

    def _device_change(self, updated_at, name):
        return RemoteChange(
            id="device-1",
            table_name=ChangeTable.DEVICES,
            record_id=DEVICE,
            operation=ChangeType.UPSERT,
            data={"device_id": DEVICE, "device_name": name, "updated_at": to_iso(updated_at)},
            created_at=updated_at,
        )

    def test_newer_server_row_wins(self, tmp_path):
        async def run():
            replica = await _seeded(tmp_path / "replica.db")
            applied = await replica.apply_remote_change(
                self._device_change(utcnow() + timedelta(minutes=1), "From server")
            )
            device = await replica.read(ChangeTable.DEVICES, DEVICE)
            pending = await replica.pending_count()
            await replica.close()
            return applied, device, pending

        applied, device, pending = asyncio.run(run())
        assert applied
        assert device["device_name"] == "From server"
        assert device["user_handle"] == "@alice"
        assert pending == 0

    def test_older_server_row_is_ignored(self, tmp_path):
        async def run():
            replica = await _seeded(tmp_path / "replica.db")
            applied = await replica.apply_remote_change(
                self._device_change(utcnow() - timedelta(days=1), "Old name")
            )
            device = await replica.read(ChangeTable.DEVICES, DEVICE)
            await replica.close()
            return applied, device

        applied, device = asyncio.run(run())
        assert not applied
        assert device["device_name"] is None

    def test_forced_server_row_replaces_newer_local_row(self, tmp_path):
        async def run():
            replica = await _seeded(tmp_path / "replica.db")
            await replica.rename_device(DEVICE, "Rejected name")
            applied = await replica.apply_remote_change(
                self._device_change(utcnow() - timedelta(days=1), None), force=True
            )
            device = await replica.read(ChangeTable.DEVICES, DEVICE)
            await replica.close()
            return applied, device

        applied, device = asyncio.run(run())
        assert applied
        assert device["device_name"] is None
        assert device["user_handle"] == "@alice"

    def test_new_server_row_is_inserted(self, tmp_path):
        other = "cd" * 32

        async def run():
            replica = await _seeded(tmp_path / "replica.db")
            change = self._device_change(utcnow(), "Laptop")
            change.record_id = other
            change.data["device_id"] = other
            await replica.apply_remote_change(change)
            devices = await replica.read_all(ChangeTable.DEVICES)
            await replica.close()
            return devices

        assert len(asyncio.run(run())) == 2

    def test_unknown_table_is_ignored(self, tmp_path):
        async def run():
            replica = await _seeded(tmp_path / "replica.db")
            applied = await replica.apply_remote_change(
                RemoteChange(id="x", table_name="entries", record_id="1", operation=ChangeType.UPDATE)
            )
            await replica.close()
            return applied

        assert not asyncio.run(run())

    def test_wipe(self, tmp_path):
        async def run():
            replica = await _seeded(tmp_path / "replica.db")
            await replica.rename_device(DEVICE, "Kitchen iPad")
            await replica.set_meta(MetaKey.DEVICE_ID, DEVICE)
            await replica.wipe()
            state = (
                await replica.read_all(ChangeTable.USERS),
                await replica.read_all(ChangeTable.DEVICES),
                await replica.pending_count(),
                await replica.get_meta(MetaKey.DEVICE_ID),
            )
            await replica.close()
            return state

        assert asyncio.run(run()) == ([], [], 0, None)
