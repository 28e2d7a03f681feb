import asyncio
import dataclasses
import logging
import os
import time
import uuid
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional, Tuple

import aiosqlite

from ..core.config import settings
from ..core.timeutil import utcnow, to_iso
from ..db.device_schema import create_tables
from ..db.migrations import run_migrations
from ..models.identity import (
    IdentityRecord,
    SyncStateEntry,
    SyncStatus,
    is_valid_device_id,
    short_id,
)
from .identity_exceptions import (
    IdentityNotFoundError,
    IdentityValidationError,
    StoreUnavailableError,
    TransientStoreError,
)
from .record_index import RecordIndex

logger = logging.getLogger(__name__)

RecordPredicate = Callable[[IdentityRecord], bool]

DEVICE_FILE_SUFFIX = ".sqlite3"


def _verified_sort_key(record: IdentityRecord) -> float:
    # Never-verified records sort as the oldest
    if record.last_verified_at is None:
        return float("-inf")
    return record.last_verified_at.timestamp()


class IdentityRecordStore:
    """Sharded collection of per-device SQLite files.

    Each file at ``<root>/<shard>/<internal_id>.sqlite3`` holds exactly one
    device's identity row and its sync-state log. Files are named after a
    server-assigned id, so lookups by device id go through a TTL index and
    fall back to a scan.
    """

    def __init__(
        self,
        root: Optional[str] = None,
        shard_prefix_length: Optional[int] = None,
        scan_cache_ttl: Optional[float] = None,
        index_ttl: Optional[float] = None,
    ):
        self.root = Path(root or settings.DEVICE_STORE_DIR)
        self.shard_prefix_length = shard_prefix_length or settings.DEVICE_SHARD_PREFIX_LENGTH
        self.scan_cache_ttl = scan_cache_ttl if scan_cache_ttl is not None else settings.SCAN_CACHE_TTL_SECONDS
        self.index = RecordIndex(index_ttl)
        self._locks: Dict[str, asyncio.Lock] = {}
        self._scan_cache: Optional[Tuple[int, List[IdentityRecord]]] = None
        self._generation = 0

    def initialize(self):
        """Ensure the store root exists"""
        os.makedirs(self.root, exist_ok=True)

    # ------------------------------------------------------------------
    # Paths, locks and caches
    # ------------------------------------------------------------------

    def _path_for(self, internal_id: str) -> Path:
        shard = internal_id[:self.shard_prefix_length]
        return self.root / shard / f"{internal_id}{DEVICE_FILE_SUFFIX}"

    def _lock_for(self, device_id: str) -> asyncio.Lock:
        lock = self._locks.get(device_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[device_id] = lock
        return lock

    def purge_idle_locks(self) -> int:
        """Forget per-device locks nobody holds"""
        idle = [key for key, lock in self._locks.items() if not lock.locked()]
        for key in idle:
            del self._locks[key]
        return len(idle)

    def _invalidate(self, device_id: Optional[str] = None):
        self._generation += 1
        self._scan_cache = None
        if device_id is not None:
            self.index.invalidate(device_id)

    def _bucket(self) -> int:
        if self.scan_cache_ttl <= 0:
            return -1
        return int(time.time() / self.scan_cache_ttl)

    def check_available(self):
        """Raise StoreUnavailableError when the root cannot be read"""
        if not self.root.is_dir() or not os.access(self.root, os.R_OK | os.X_OK):
            raise StoreUnavailableError(f"Device store root {self.root} is not accessible")

    def _iter_files(self) -> Iterator[Path]:
        self.check_available()
        try:
            shards = sorted(entry for entry in self.root.iterdir() if entry.is_dir())
        except OSError as e:
            raise StoreUnavailableError(f"Cannot list device store root {self.root}: {e}") from e

        for shard in shards:
            try:
                files = sorted(shard.glob(f"*{DEVICE_FILE_SUFFIX}"))
            except OSError as e:
                logger.warning(f"Skipping unreadable shard {shard}: {e}")
                continue
            yield from files

    # ------------------------------------------------------------------
    # File IO
    # ------------------------------------------------------------------

    async def _read_file(self, path: Path) -> IdentityRecord:
        """Read one device file without creating or migrating it"""
        try:
            async with aiosqlite.connect(f"file:{path.as_posix()}?mode=ro", uri=True) as db:
                db.row_factory = aiosqlite.Row
                cursor = await db.execute("SELECT * FROM device_info WHERE id = 1")
                row = await cursor.fetchone()
                if row is None:
                    raise TransientStoreError(f"Device file {path} has no identity row")
                cursor = await db.execute(
                    "SELECT status FROM sync_state ORDER BY id DESC LIMIT 1"
                )
                status_row = await cursor.fetchone()
            return IdentityRecord.from_dict(
                dict(row),
                internal_id=path.stem,
                last_status=status_row["status"] if status_row else None,
            )
        except TransientStoreError:
            raise
        except (aiosqlite.Error, OSError, KeyError, ValueError) as e:
            raise TransientStoreError(f"Cannot read device file {path}: {e}") from e

    async def _write_file(self, path: Path, record: IdentityRecord, status: Optional[str] = None):
        """Write the identity row, and optionally a status entry, in one transaction"""
        data = record.to_dict()
        columns = ["id"] + list(data.keys())
        placeholders = ", ".join("?" for _ in columns)
        updates = ", ".join(f"{column} = excluded.{column}" for column in data.keys())

        os.makedirs(path.parent, exist_ok=True)
        try:
            async with aiosqlite.connect(path) as db:
                await create_tables(db)
                await run_migrations(db)
                await db.execute(
                    f"INSERT INTO device_info ({', '.join(columns)}) VALUES ({placeholders}) "
                    f"ON CONFLICT(id) DO UPDATE SET {updates}",
                    (1, *data.values())
                )
                if status is not None:
                    await db.execute(
                        "INSERT INTO sync_state (last_sync, status) VALUES (?, ?)",
                        (to_iso(utcnow()), status)
                    )
                await db.commit()
        except aiosqlite.Error as e:
            logger.error(f"Failed to write device file {path}: {e}", exc_info=True)
            raise TransientStoreError(f"Cannot write device file {path}: {e}") from e

        if status is not None:
            record.last_status = status

    async def _locate(self, device_id: str) -> Optional[Tuple[Path, IdentityRecord]]:
        """Find the file holding a device, verifying index hits by reading"""
        cached_path = self.index.get(device_id)
        if cached_path is not None:
            try:
                record = await self._read_file(cached_path)
                if record.device_id == device_id:
                    return cached_path, record
            except TransientStoreError as e:
                logger.debug(f"Index entry for {short_id(device_id)} is stale: {e}")
            self.index.invalidate(device_id)

        matches = await self.scan(lambda r: r.device_id == device_id)
        if not matches:
            return None
        if len(matches) > 1:
            logger.warning(f"{len(matches)} files claim device {short_id(device_id)}, using the newest")
            matches.sort(key=lambda r: r.updated_at.timestamp() if r.updated_at else 0, reverse=True)
        record = matches[0]
        path = self._path_for(record.internal_id)
        self.index.put(device_id, path)
        return path, record

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def scan(self, predicate: Optional[RecordPredicate] = None) -> List[IdentityRecord]:
        """Return all readable records matching ``predicate``.

        Unreadable files are logged and skipped. Full results are cached for
        one time bucket and the cache is dropped on every write.
        """
        bucket = self._bucket()
        cached = self._scan_cache
        if cached is not None and cached[0] == bucket:
            records = cached[1]
        else:
            generation = self._generation
            records = []
            for path in self._iter_files():
                try:
                    records.append(await self._read_file(path))
                except TransientStoreError as e:
                    logger.warning(f"Skipping device file: {e}")
                    continue
                self.index.put(records[-1].device_id, path)
            if generation == self._generation and bucket >= 0:
                self._scan_cache = (bucket, records)

        # Callers may mutate what they get back
        return [dataclasses.replace(r) for r in records if predicate is None or predicate(r)]

    async def get(self, device_id: str) -> Optional[IdentityRecord]:
        if not is_valid_device_id(device_id):
            return None
        located = await self._locate(device_id)
        return located[1] if located else None

    async def put(self, record: IdentityRecord, status: Optional[str] = None) -> IdentityRecord:
        """Insert or replace a device record in its own file"""
        if not is_valid_device_id(record.device_id):
            raise IdentityValidationError("Malformed device id")
        if record.is_partially_linked:
            raise IdentityValidationError(
                "A device must be linked with guid, handle and phone together"
            )
        self.check_available()

        async with self._lock_for(record.device_id):
            return await self._put_locked(record, status)

    async def _put_locked(self, record: IdentityRecord, status: Optional[str] = None) -> IdentityRecord:
        """Write a record; the caller holds the device's lock"""
        path = None
        if record.internal_id:
            candidate = self._path_for(record.internal_id)
            if candidate.exists():
                path = candidate
        if path is None:
            located = await self._locate(record.device_id)
            if located is not None:
                path = located[0]
                record.internal_id = located[1].internal_id
            else:
                record.internal_id = uuid.uuid4().hex
                path = self._path_for(record.internal_id)

        record.updated_at = utcnow()
        await self._write_file(path, record, status)
        self._invalidate(record.device_id)
        self.index.put(record.device_id, path)
        logger.debug(f"Stored device {short_id(record.device_id)} in {path.name}")
        return record

    async def update(
        self,
        device_id: str,
        mutate: Callable[[IdentityRecord], Optional[str]],
        create: bool = False,
    ) -> IdentityRecord:
        """Read, change and write one device under its lock.

        ``mutate`` edits the record in place and returns the sync status to
        log, or None for no log entry. Exceptions it raises abort the write.
        """
        if not is_valid_device_id(device_id):
            raise IdentityValidationError("Malformed device id")
        self.check_available()

        async with self._lock_for(device_id):
            located = await self._locate(device_id)
            if located is not None:
                record = located[1]
            elif create:
                record = IdentityRecord(device_id=device_id)
            else:
                raise IdentityNotFoundError(f"Unknown device {short_id(device_id)}")
            status = mutate(record)
            if record.is_partially_linked:
                raise IdentityValidationError(
                    "A device must be linked with guid, handle and phone together"
                )
            return await self._put_locked(record, status)

    async def create(self, device_id: str) -> IdentityRecord:
        """Create an empty record for a device seen for the first time"""
        if not is_valid_device_id(device_id):
            raise IdentityValidationError("Malformed device id")
        self.check_available()

        async with self._lock_for(device_id):
            located = await self._locate(device_id)
            if located is not None:
                return located[1]
            record = await self._put_locked(IdentityRecord(device_id=device_id), SyncStatus.INITIALIZED)
        logger.info(f"Initialized identity record for device {short_id(device_id)}")
        return record

    async def append_sync_state(self, device_id: str, status: str):
        async with self._lock_for(device_id):
            located = await self._locate(device_id)
            if located is None:
                raise IdentityNotFoundError(f"Unknown device {short_id(device_id)}")
            path = located[0]
            try:
                async with aiosqlite.connect(path) as db:
                    await db.execute(
                        "INSERT INTO sync_state (last_sync, status) VALUES (?, ?)",
                        (to_iso(utcnow()), status)
                    )
                    await db.commit()
            except aiosqlite.Error as e:
                raise TransientStoreError(f"Cannot append sync state to {path}: {e}") from e
            self._invalidate()

    async def sync_states(self, device_id: str) -> List[SyncStateEntry]:
        """Full sync-state log of a device, oldest first"""
        located = await self._locate(device_id)
        if located is None:
            raise IdentityNotFoundError(f"Unknown device {short_id(device_id)}")
        try:
            async with aiosqlite.connect(f"file:{located[0].as_posix()}?mode=ro", uri=True) as db:
                db.row_factory = aiosqlite.Row
                cursor = await db.execute("SELECT last_sync, status FROM sync_state ORDER BY id")
                rows = await cursor.fetchall()
        except aiosqlite.Error as e:
            raise TransientStoreError(f"Cannot read sync state of {located[0]}: {e}") from e
        return [SyncStateEntry.from_dict(dict(row)) for row in rows]

    async def unlink(self, device_id: str) -> IdentityRecord:
        """Clear the user fields of a device but keep its record"""
        def _unlink(record: IdentityRecord) -> str:
            record.unlink()
            return SyncStatus.RESET

        record = await self.update(device_id, _unlink)
        logger.info(f"Unlinked device {short_id(device_id)}")
        return record

    async def find_linked(
        self,
        guid: Optional[str] = None,
        handle: Optional[str] = None,
        phone: Optional[str] = None,
    ) -> List[IdentityRecord]:
        """Linked records matching every given field, most recently verified first"""
        if not (guid or handle or phone):
            return []

        def matches(record: IdentityRecord) -> bool:
            if not record.is_linked:
                return False
            if guid and record.user_guid != guid:
                return False
            if handle and record.user_handle != handle:
                return False
            if phone and record.user_phone != phone:
                return False
            return True

        records = await self.scan(matches)
        records.sort(key=_verified_sort_key, reverse=True)
        return records

    async def delete_for_user(self, guid: str) -> int:
        """Delete every device file linked to a user"""
        deleted = 0
        for record in await self.find_linked(guid=guid):
            async with self._lock_for(record.device_id):
                path = self._path_for(record.internal_id)
                try:
                    os.remove(path)
                    deleted += 1
                except FileNotFoundError:
                    pass
                except OSError as e:
                    logger.error(f"Failed to delete device file {path}: {e}", exc_info=True)
                    raise TransientStoreError(f"Cannot delete device file {path}: {e}") from e
                self._invalidate(record.device_id)
        if deleted:
            logger.info(f"Deleted {deleted} device record(s) for user {guid}")
        return deleted


# Singleton instance
_device_store = None

def get_device_store() -> IdentityRecordStore:
    """Get singleton IdentityRecordStore instance"""
    global _device_store
    if _device_store is None:
        _device_store = IdentityRecordStore()
        _device_store.initialize()
    return _device_store
