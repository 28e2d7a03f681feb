import asyncio
import json
import logging
import os
import re
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import aiosqlite
import bcrypt

from ..core.config import settings
from ..core.timeutil import utcnow, to_iso, from_iso
from ..models.sync import ChangeQueueEntry, ChangeTable, ChangeType, RemoteChange
from ..services.identity_exceptions import IdentityNotFoundError, IdentityValidationError

logger = logging.getLogger(__name__)

REPLICA_SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    guid TEXT PRIMARY KEY,
    handle TEXT UNIQUE,
    phone TEXT,
    has_pin INTEGER DEFAULT 0,
    pin_hash TEXT,
    created_at TEXT,
    updated_at TEXT
);

CREATE TABLE IF NOT EXISTS devices (
    id TEXT PRIMARY KEY,
    user_guid TEXT,
    user_handle TEXT,
    user_phone TEXT,
    device_name TEXT,
    last_verified_at TEXT,
    created_at TEXT,
    updated_at TEXT
);

CREATE TABLE IF NOT EXISTS local_changes (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    table_name TEXT NOT NULL,
    record_id TEXT NOT NULL,
    change_type TEXT NOT NULL,
    change_data TEXT,
    created_at TEXT NOT NULL,
    synced INTEGER DEFAULT 0
);

CREATE INDEX IF NOT EXISTS idx_local_changes_pending ON local_changes(synced, created_at);

CREATE TABLE IF NOT EXISTS sync_meta (
    key TEXT PRIMARY KEY,
    value TEXT
);
"""

# entity -> (primary key column, columns)
ENTITIES = {
    ChangeTable.USERS: (
        "guid",
        ("guid", "handle", "phone", "has_pin", "pin_hash", "created_at", "updated_at"),
    ),
    ChangeTable.DEVICES: (
        "id",
        ("id", "user_guid", "user_handle", "user_phone", "device_name",
         "last_verified_at", "created_at", "updated_at"),
    ),
}

# Server payload keys that differ from replica columns
REMOTE_FIELD_ALIASES = {
    ChangeTable.DEVICES: {"device_id": "id"},
    ChangeTable.USERS: {},
}

PIN_PATTERN = re.compile(r"^\d{4}$")


class MetaKey:
    LAST_SYNC_AT = "last_sync_at"
    DEVICE_ID = "device_id"
    USER_GUID = "user_guid"
    AUTH_VERSION = "auth_version"


class OfflineReplica:
    """Client-side copy of identity state plus the queue of unsynced changes.

    The replica lives in an in-memory SQLite database. Every write schedules
    one debounced snapshot to ``path``; the snapshot is written to a temporary
    file and moved into place, so the file on disk is always a complete
    database. A change that was enqueued but not yet flushed is lost if the
    process dies inside the debounce window.
    """

    def __init__(self, path: Optional[str] = None, flush_delay: Optional[float] = None):
        self.path = Path(path or settings.REPLICA_PATH)
        self.flush_delay = flush_delay if flush_delay is not None else settings.REPLICA_FLUSH_DELAY_SECONDS
        self._db: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()
        self._flush_task: Optional[asyncio.Task] = None
        self._dirty = False

    @property
    def is_initialized(self) -> bool:
        return self._db is not None

    async def init(self) -> bool:
        """Open the replica, loading the last snapshot if there is one"""
        async with self._lock:
            if self._db is not None:
                return True

            db = await aiosqlite.connect(":memory:")
            db.row_factory = aiosqlite.Row
            if self.path.exists():
                try:
                    async with aiosqlite.connect(self.path) as snapshot:
                        await snapshot.backup(db)
                    logger.info(f"Loaded replica snapshot from {self.path}")
                except aiosqlite.Error as e:
                    logger.warning(f"Replica snapshot {self.path} is unreadable, starting empty: {e}")
            await db.executescript(REPLICA_SCHEMA)
            await db.commit()
            self._db = db
            return True

    def _require_db(self) -> aiosqlite.Connection:
        if self._db is None:
            raise RuntimeError("Replica is not initialized; call init() first")
        return self._db

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _schedule_flush(self):
        self._dirty = True
        if self._flush_task is None or self._flush_task.done():
            self._flush_task = asyncio.create_task(self._delayed_flush())

    async def _delayed_flush(self):
        await asyncio.sleep(self.flush_delay)
        try:
            await self.flush()
        except (aiosqlite.Error, OSError) as e:
            logger.error(f"Failed to persist replica to {self.path}: {e}", exc_info=True)

    async def flush(self):
        """Write the replica to disk now"""
        db = self._require_db()
        async with self._lock:
            if not self._dirty:
                return
            self._dirty = False
            os.makedirs(self.path.parent, exist_ok=True)
            tmp_path = self.path.with_name(self.path.name + ".tmp")
            try:
                if tmp_path.exists():
                    tmp_path.unlink()
                async with aiosqlite.connect(tmp_path) as target:
                    await db.backup(target)
                os.replace(tmp_path, self.path)
            except (aiosqlite.Error, OSError):
                self._dirty = True
                raise
        logger.debug(f"Replica persisted to {self.path}")

    async def close(self):
        """Flush pending writes and release the database"""
        if self._db is None:
            return
        if self._flush_task is not None and not self._flush_task.done():
            self._flush_task.cancel()
            try:
                await self._flush_task
            except asyncio.CancelledError:
                logger.debug("Pending replica flush cancelled")
        self._flush_task = None
        await self.flush()
        await self._db.close()
        self._db = None

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------

    @staticmethod
    def _entity(entity: str):
        if entity not in ENTITIES:
            raise IdentityValidationError(f"Unknown replica entity {entity}")
        return ENTITIES[entity]

    async def read(self, entity: str, key: str) -> Optional[Dict[str, Any]]:
        key_column, _ = self._entity(entity)
        db = self._require_db()
        cursor = await db.execute(f"SELECT * FROM {entity} WHERE {key_column} = ?", (key,))
        row = await cursor.fetchone()
        return dict(row) if row else None

    async def read_all(self, entity: str) -> List[Dict[str, Any]]:
        key_column, _ = self._entity(entity)
        db = self._require_db()
        cursor = await db.execute(f"SELECT * FROM {entity} ORDER BY {key_column}")
        rows = await cursor.fetchall()
        return [dict(row) for row in rows]

    async def _upsert(self, db: aiosqlite.Connection, entity: str, record: Dict[str, Any]):
        key_column, columns = self._entity(entity)
        values = {column: record[column] for column in columns if column in record}
        if key_column not in values:
            raise IdentityValidationError(f"{entity} record needs a {key_column}")
        names = list(values.keys())
        updates = ", ".join(f"{name} = excluded.{name}" for name in names if name != key_column)
        sql = (
            f"INSERT INTO {entity} ({', '.join(names)}) "
            f"VALUES ({', '.join('?' for _ in names)})"
        )
        if updates:
            sql += f" ON CONFLICT({key_column}) DO UPDATE SET {updates}"
        else:
            sql += f" ON CONFLICT({key_column}) DO NOTHING"
        await db.execute(sql, tuple(values.values()))

    async def write(self, entity: str, record: Dict[str, Any]):
        """Upsert a record without queueing it for sync"""
        record = dict(record)
        record.setdefault("updated_at", to_iso(utcnow()))
        db = self._require_db()
        async with self._lock:
            try:
                await self._upsert(db, entity, record)
                await db.commit()
            except Exception:
                await db.rollback()
                raise
        self._schedule_flush()

    # ------------------------------------------------------------------
    # Change queue
    # ------------------------------------------------------------------

    async def _insert_change(self, db: aiosqlite.Connection, change: ChangeQueueEntry) -> int:
        cursor = await db.execute(
            """INSERT INTO local_changes (table_name, record_id, change_type, change_data, created_at, synced)
               VALUES (?, ?, ?, ?, ?, 0)""",
            (change.table_name, change.record_id, change.change_type,
             json.dumps(change.change_data), to_iso(change.created_at))
        )
        change.id = cursor.lastrowid
        return change.id

    async def enqueue(self, change: ChangeQueueEntry) -> int:
        db = self._require_db()
        async with self._lock:
            try:
                change_id = await self._insert_change(db, change)
                await db.commit()
            except Exception:
                await db.rollback()
                raise
        self._schedule_flush()
        return change_id

    async def drain_queue(self) -> List[ChangeQueueEntry]:
        """Unsynced changes, oldest first"""
        db = self._require_db()
        cursor = await db.execute(
            "SELECT * FROM local_changes WHERE synced = 0 ORDER BY created_at, id"
        )
        rows = await cursor.fetchall()
        return [ChangeQueueEntry.from_row(dict(row)) for row in rows]

    async def mark_synced(self, ids: Iterable) -> int:
        change_ids = [int(change_id) for change_id in ids]
        if not change_ids:
            return 0
        db = self._require_db()
        async with self._lock:
            cursor = await db.execute(
                f"UPDATE local_changes SET synced = 1 WHERE id IN ({', '.join('?' for _ in change_ids)})",
                tuple(change_ids)
            )
            await db.commit()
        self._schedule_flush()
        return cursor.rowcount

    async def pending_count(self) -> int:
        db = self._require_db()
        cursor = await db.execute("SELECT COUNT(*) FROM local_changes WHERE synced = 0")
        row = await cursor.fetchone()
        return row[0]

    async def _mutate(self, statements, change: ChangeQueueEntry) -> int:
        """Apply record updates and queue their change in one transaction"""
        db = self._require_db()
        async with self._lock:
            try:
                for sql, params in statements:
                    await db.execute(sql, params)
                change_id = await self._insert_change(db, change)
                await db.commit()
            except Exception:
                await db.rollback()
                raise
        self._schedule_flush()
        return change_id

    async def rename_handle(self, guid: str, new_handle: str) -> ChangeQueueEntry:
        user = await self.read(ChangeTable.USERS, guid)
        if user is None:
            raise IdentityNotFoundError(f"No local user {guid}")
        now = to_iso(utcnow())
        change = ChangeQueueEntry(
            table_name=ChangeTable.USERS,
            record_id=guid,
            change_type=ChangeType.UPDATE,
            change_data={"handle": new_handle, "old_handle": user["handle"], "updated_at": now},
        )
        await self._mutate([
            ("UPDATE users SET handle = ?, updated_at = ? WHERE guid = ?", (new_handle, now, guid)),
            ("UPDATE devices SET user_handle = ?, updated_at = ? WHERE user_guid = ?", (new_handle, now, guid)),
        ], change)
        return change

    async def rename_device(self, device_id: str, device_name: str) -> ChangeQueueEntry:
        if await self.read(ChangeTable.DEVICES, device_id) is None:
            raise IdentityNotFoundError("No local device record")
        now = to_iso(utcnow())
        change = ChangeQueueEntry(
            table_name=ChangeTable.DEVICES,
            record_id=device_id,
            change_type=ChangeType.UPDATE,
            change_data={"device_name": device_name, "updated_at": now},
        )
        await self._mutate([
            ("UPDATE devices SET device_name = ?, updated_at = ? WHERE id = ?", (device_name, now, device_id)),
        ], change)
        return change

    async def set_pin(self, guid: str, pin: str) -> ChangeQueueEntry:
        if not pin or not PIN_PATTERN.match(pin):
            raise IdentityValidationError("PIN must be exactly 4 digits")
        if await self.read(ChangeTable.USERS, guid) is None:
            raise IdentityNotFoundError(f"No local user {guid}")
        pin_hash = bcrypt.hashpw(pin.encode('utf-8'), bcrypt.gensalt()).decode('utf-8')
        now = to_iso(utcnow())
        change = ChangeQueueEntry(
            table_name=ChangeTable.USERS,
            record_id=guid,
            change_type=ChangeType.UPDATE,
            change_data={"pin_hash": pin_hash, "updated_at": now},
        )
        await self._mutate([
            ("UPDATE users SET has_pin = 1, pin_hash = ?, updated_at = ? WHERE guid = ?", (pin_hash, now, guid)),
        ], change)
        return change

    async def verify_pin(self, guid: str, pin: str) -> bool:
        """Offline PIN check against the locally held hash"""
        user = await self.read(ChangeTable.USERS, guid)
        if not user or not user.get("pin_hash"):
            return False
        try:
            return bcrypt.checkpw(pin.encode('utf-8'), user["pin_hash"].encode('utf-8'))
        except ValueError:
            return False

    # ------------------------------------------------------------------
    # Server deltas
    # ------------------------------------------------------------------

    async def apply_remote_change(self, change: RemoteChange, force: bool = False) -> bool:
        """Apply a server delta with last-write-wins; never queues anything.

        Returns False when the local row is at least as new as the delta,
        unless ``force`` is set for a server row that replaces a rejected change.
        """
        if change.table_name not in ENTITIES:
            logger.warning(f"Ignoring server change for unknown table {change.table_name}")
            return False
        key_column, _ = ENTITIES[change.table_name]
        aliases = REMOTE_FIELD_ALIASES[change.table_name]
        record = {aliases.get(name, name): value for name, value in change.data.items()}
        record[key_column] = change.record_id
        if "has_pin" in record:
            record["has_pin"] = 1 if record["has_pin"] else 0
        incoming = change.updated_at
        if incoming is not None:
            record["updated_at"] = to_iso(incoming)

        db = self._require_db()
        async with self._lock:
            cursor = await db.execute(
                f"SELECT updated_at FROM {change.table_name} WHERE {key_column} = ?",
                (change.record_id,)
            )
            row = await cursor.fetchone()
            local = from_iso(row["updated_at"]) if row else None
            if not force and local is not None and incoming is not None and local >= incoming:
                return False
            try:
                await self._upsert(db, change.table_name, record)
                await db.commit()
            except Exception:
                await db.rollback()
                raise
        self._schedule_flush()
        return True

    async def wipe(self):
        """Destroy all local identity state and the queue"""
        db = self._require_db()
        async with self._lock:
            for table in ("users", "devices", "local_changes", "sync_meta"):
                await db.execute(f"DELETE FROM {table}")
            await db.commit()
            self._dirty = True
        await self.flush()
        logger.info("Replica wiped")

    # ------------------------------------------------------------------
    # Metadata
    # ------------------------------------------------------------------

    async def get_meta(self, key: str, default: Optional[str] = None) -> Optional[str]:
        db = self._require_db()
        cursor = await db.execute("SELECT value FROM sync_meta WHERE key = ?", (key,))
        row = await cursor.fetchone()
        return row["value"] if row and row["value"] is not None else default

    async def set_meta(self, key: str, value: Optional[Any]):
        db = self._require_db()
        async with self._lock:
            await db.execute(
                "INSERT INTO sync_meta (key, value) VALUES (?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                (key, None if value is None else str(value))
            )
            await db.commit()
        self._schedule_flush()
