import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

from ..core.config import settings
from ..core.timeutil import utcnow, to_iso
from ..models.identity import IdentityRecord, SyncStatus, UserIdentity, short_id
from ..models.sync import ChangeTable, ChangeType, PullResult, PushResult, RemoteChange
from .identity_exceptions import (
    IdentityConflictError,
    IdentityNotFoundError,
    IdentityValidationError,
    TransientStoreError,
)
from .identity_service import IdentityService, get_identity_service

logger = logging.getLogger(__name__)


class SyncService:
    """Server side of the sync protocol: applies pushed batches, serves deltas"""

    def __init__(self, identity: Optional[IdentityService] = None):
        self.identity = identity if identity is not None else get_identity_service()
        self.store = self.identity.store
        self.user_registry = self.identity.user_registry

    async def apply_changes(self, user: UserIdentity, changes: List[RemoteChange]) -> PushResult:
        """Apply a pushed batch oldest first with last-write-wins per entity.

        Each entity is compared against its server ``updated_at`` as it was
        before the batch, so several changes to one entity in a batch do not
        supersede each other.
        """
        result = PushResult()
        baselines: Dict[str, Optional[datetime]] = {}
        to_correct: List[Tuple[str, str]] = []
        fallback = utcnow()
        ordered = sorted(changes, key=lambda c: c.created_at or fallback)

        for change in ordered:
            try:
                if change.table_name == ChangeTable.DEVICES:
                    applied = await self._apply_device_change(user, change, baselines)
                elif change.table_name == ChangeTable.USERS:
                    applied = await self._apply_user_change(user, change, baselines)
                else:
                    logger.warning(f"Unhandled change table: {change.table_name}")
                    result.failed.append(change.id)
                    continue
            except (IdentityValidationError, IdentityConflictError, IdentityNotFoundError) as e:
                logger.warning(f"Rejected change {change.id} ({change.table_name}): {e}")
                result.rejected.append(change.id)
                to_correct.append((change.table_name, change.record_id))
                continue
            except TransientStoreError as e:
                logger.error(f"Error processing change {change.id}: {e}", exc_info=True)
                result.failed.append(change.id)
                continue

            (result.applied if applied else result.superseded).append(change.id)

        result.auth_version = await self.user_registry.get_auth_version(user.guid)
        result.corrections = await self._corrections(user, to_correct)
        logger.info(
            f"Sync push for {user.guid}: {len(result.applied)} applied, "
            f"{len(result.superseded)} superseded, {len(result.rejected)} rejected, "
            f"{len(result.failed)} failed"
        )
        return result

    async def _corrections(self, user: UserIdentity,
                           entities: List[Tuple[str, str]]) -> List[RemoteChange]:
        """Current server rows for rejected entities the caller owns.

        A rejected user change also returns the user's devices, since the
        client copied the rejected handle onto them.
        """
        corrections: List[RemoteChange] = []
        seen = set()

        def _add(change: RemoteChange):
            key = (change.table_name, change.record_id)
            if key not in seen:
                seen.add(key)
                corrections.append(change)

        for table, record_id in entities:
            if table == ChangeTable.USERS and record_id in (user.guid, user.handle):
                current = await self.user_registry.get_user_by_guid(user.guid)
                if current is None:
                    continue
                _add(self._user_change(current, include_pin=True))
                for record in await self.store.find_linked(guid=user.guid):
                    _add(self._device_change(record))
            elif table == ChangeTable.DEVICES:
                record = await self.store.get(record_id)
                if record is not None and record.user_guid == user.guid:
                    _add(self._device_change(record))
        return corrections

    @staticmethod
    def _user_change(user: UserIdentity, include_pin: bool) -> RemoteChange:
        data = {
            "guid": user.guid,
            "handle": user.handle,
            "phone": user.phone,
            "has_pin": user.has_pin,
            "auth_version": user.auth_version,
            "updated_at": to_iso(user.updated_at),
        }
        if include_pin:
            data["pin_hash"] = user.pin_hash
        return RemoteChange(
            id=f"user-{user.guid}-{int(user.updated_at.timestamp())}",
            table_name=ChangeTable.USERS,
            record_id=user.guid,
            operation=ChangeType.UPDATE,
            data=data,
            created_at=user.updated_at,
        )

    @staticmethod
    def _device_change(record: IdentityRecord) -> RemoteChange:
        return RemoteChange(
            id=f"device-{record.internal_id}-{int(record.updated_at.timestamp())}",
            table_name=ChangeTable.DEVICES,
            record_id=record.device_id,
            operation=ChangeType.UPSERT,
            data={
                "device_id": record.device_id,
                "user_guid": record.user_guid,
                "user_handle": record.user_handle,
                "user_phone": record.user_phone,
                "device_name": record.device_name,
                "device_type": record.device_type,
                "last_verified_at": to_iso(record.last_verified_at),
                "created_at": to_iso(record.created_at),
                "updated_at": to_iso(record.updated_at),
            },
            created_at=record.updated_at,
        )

    @staticmethod
    def _is_superseded(change: RemoteChange, baseline: Optional[datetime]) -> bool:
        return (change.created_at is not None and baseline is not None
                and change.created_at < baseline)

    async def _apply_device_change(self, user: UserIdentity, change: RemoteChange,
                                   baselines: Dict[str, Optional[datetime]]) -> bool:
        key = f"device:{change.record_id}"
        record = await self.store.get(change.record_id)
        if record is not None and record.is_linked and record.user_guid != user.guid:
            raise IdentityNotFoundError(f"Unknown device {short_id(change.record_id)}")
        if key not in baselines:
            baselines[key] = record.updated_at if record else None
        if self._is_superseded(change, baselines[key]):
            logger.debug(f"Device change {change.id} superseded by server state")
            return False

        data = change.data
        if change.operation == ChangeType.UPDATE:
            if record is None or not record.is_linked:
                raise IdentityNotFoundError(f"Unknown device {short_id(change.record_id)}")
            if "device_name" in data:
                await self.identity.rename_device(record.device_id, data["device_name"], guid=user.guid)
            return True

        if change.operation == ChangeType.UPSERT:
            def _upsert(current: IdentityRecord) -> str:
                if current.is_linked and current.user_guid != user.guid:
                    raise IdentityNotFoundError(f"Unknown device {short_id(change.record_id)}")
                if not current.is_linked:
                    # A device registered offline is linked but still unverified
                    current.link(user)
                if "device_name" in data:
                    current.device_name = data["device_name"]
                if "device_type" in data:
                    current.device_type = data["device_type"]
                return SyncStatus.DEVICE_RENAMED

            await self.store.update(change.record_id, _upsert, create=True)
            return True

        raise IdentityValidationError(f"Unsupported operation {change.operation}")

    async def _apply_user_change(self, user: UserIdentity, change: RemoteChange,
                                 baselines: Dict[str, Optional[datetime]]) -> bool:
        if change.record_id not in (user.guid, user.handle):
            raise IdentityNotFoundError("Change targets another user")
        key = f"user:{user.guid}"
        if key not in baselines:
            baselines[key] = user.updated_at
        if self._is_superseded(change, baselines[key]):
            logger.debug(f"User change {change.id} superseded by server state")
            return False
        if change.operation != ChangeType.UPDATE:
            raise IdentityValidationError(f"Unsupported operation {change.operation}")

        data = change.data
        current = await self.user_registry.get_user_by_guid(user.guid)
        if data.get("handle") and data["handle"] != current.handle:
            await self.identity.change_handle(user.guid, data["handle"])
        if "pin_hash" in data and data["pin_hash"] != current.pin_hash:
            await self.identity.set_pin_hash(user.guid, data["pin_hash"])
        return True

    async def collect_changes(self, user: UserIdentity, since: Optional[datetime] = None) -> PullResult:
        """The user row and the user's devices changed after ``since``"""
        current_time = utcnow()
        if since is None:
            since = current_time - timedelta(days=settings.SYNC_DEFAULT_LOOKBACK_DAYS)

        changes: List[RemoteChange] = []
        fresh_user = await self.user_registry.get_user_changed_since(user.guid, since)
        if fresh_user is not None:
            pin_changed = bool(fresh_user.pin_set_at and fresh_user.pin_set_at > since)
            changes.append(self._user_change(fresh_user, include_pin=pin_changed))

        for record in await self.store.find_linked(guid=user.guid):
            if record.updated_at is None or record.updated_at <= since:
                continue
            changes.append(self._device_change(record))

        logger.debug(f"Sync pull for {user.guid}: {len(changes)} change(s) since {since.isoformat()}")
        return PullResult(changes=changes, since=since, current_time=current_time)


# Singleton instance
_sync_service = None

def get_sync_service() -> SyncService:
    """Get singleton SyncService instance"""
    global _sync_service
    if _sync_service is None:
        _sync_service = SyncService()
    return _sync_service
