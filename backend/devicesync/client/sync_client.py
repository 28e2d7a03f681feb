"""
Client sync loop: push the local change queue, then pull server deltas
"""
import asyncio
import logging
from typing import Optional, Dict, Any

from ..core.config import settings
from ..core.timeutil import to_iso, from_iso
from ..models.sync import ChangeTable, SyncResult, SyncResultStatus
from ..services.identity_exceptions import (
    NotAuthenticatedError,
    StaleAuthVersionError,
    SyncTransportError,
)
from .replica import MetaKey, OfflineReplica
from .transport import HttpSyncTransport

logger = logging.getLogger(__name__)


class SyncClient:
    """Reconciles an OfflineReplica with the server.

    Only one sync runs at a time; callers that ask for a sync while one is
    in flight share its result. ``last_sync_at`` only advances after a run
    in which every queued change was acknowledged and every delta applied.
    """

    def __init__(
        self,
        replica: OfflineReplica,
        transport: HttpSyncTransport,
        interval_seconds: Optional[float] = None,
    ):
        self.replica = replica
        self.transport = transport
        self.interval_seconds = interval_seconds or settings.SYNC_INTERVAL_SECONDS
        self.is_online = False
        self.last_result: Optional[SyncResult] = None
        self._inflight: Optional[asyncio.Task] = None
        self._loop_task: Optional[asyncio.Task] = None

    @property
    def is_syncing(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    async def sync(self) -> SyncResult:
        """Run one sync, or join the one already running"""
        if not self.is_syncing:
            self._inflight = asyncio.create_task(self._run_sync())
        return await asyncio.shield(self._inflight)

    async def _run_sync(self) -> SyncResult:
        if not self.is_online:
            result = SyncResult(status=SyncResultStatus.OFFLINE, message="Device is offline")
            self.last_result = result
            return result

        try:
            result = await self._push_and_pull()
        except StaleAuthVersionError as e:
            logger.warning(f"Auth version is stale (server at {e.current_version}); wiping replica")
            await self.replica.wipe()
            result = SyncResult(status=SyncResultStatus.STALE, message="Signed out: identity changed elsewhere")
        except NotAuthenticatedError as e:
            logger.warning(f"Sync refused: {e}")
            result = SyncResult(status=SyncResultStatus.ERROR, message=str(e))
        except SyncTransportError as e:
            logger.warning(f"Sync failed, will retry: {e}")
            result = SyncResult(status=SyncResultStatus.ERROR, message=str(e))

        self.last_result = result
        return result

    async def _credentials(self):
        device_id = await self.replica.get_meta(MetaKey.DEVICE_ID)
        if not device_id:
            raise NotAuthenticatedError("Replica has no registered device")
        version = await self.replica.get_meta(MetaKey.AUTH_VERSION)
        return device_id, int(version) if version is not None else None

    async def _push_and_pull(self) -> SyncResult:
        device_id, auth_version = await self._credentials()
        complete = True

        pending = await self.replica.drain_queue()
        pushed = 0
        if pending:
            push = await self.transport.push(pending, device_id, auth_version)
            pushed = await self.replica.mark_synced(push.acknowledged)
            if push.failed:
                complete = False
                logger.info(f"{len(push.failed)} change(s) not accepted yet, keeping them queued")
            for change in push.corrections:
                try:
                    await self.replica.apply_remote_change(change, force=True)
                except Exception as e:
                    logger.error(f"Failed to restore server row {change.record_id}: {e}", exc_info=True)
                    complete = False
            if push.auth_version is not None:
                auth_version = push.auth_version
                await self.replica.set_meta(MetaKey.AUTH_VERSION, auth_version)

        since = from_iso(await self.replica.get_meta(MetaKey.LAST_SYNC_AT))
        pull = await self.transport.pull(since, device_id, auth_version)
        pulled = 0
        for change in pull.changes:
            try:
                applied = await self.replica.apply_remote_change(change)
            except Exception as e:
                logger.error(f"Failed to apply server change {change.id}: {e}", exc_info=True)
                complete = False
                continue
            if applied:
                pulled += 1
            if change.table_name == ChangeTable.USERS and change.data.get("auth_version") is not None:
                await self.replica.set_meta(MetaKey.AUTH_VERSION, change.data["auth_version"])

        if complete:
            await self.replica.set_meta(MetaKey.LAST_SYNC_AT, to_iso(pull.current_time))
            status = SyncResultStatus.SUCCESS
            message = "Sync complete"
        else:
            status = SyncResultStatus.PARTIAL
            message = "Some changes are still pending"

        logger.info(f"Sync {status.value}: pushed {pushed}, pulled {pulled}")
        return SyncResult(pushed=pushed, pulled=pulled, status=status, message=message)

    # ------------------------------------------------------------------
    # Connectivity and periodic sync
    # ------------------------------------------------------------------

    async def set_online(self, online: bool) -> Optional[SyncResult]:
        """Record a connectivity change; coming online syncs immediately"""
        was_online = self.is_online
        self.is_online = online
        if online and not was_online:
            logger.info("Connectivity restored, syncing")
            await self.start()
            return await self.sync()
        if not online and was_online:
            logger.info("Connectivity lost, pausing periodic sync")
            await self.stop()
        return None

    async def start(self):
        if self._loop_task is None or self._loop_task.done():
            self._loop_task = asyncio.create_task(self._periodic_loop())

    async def stop(self):
        if self._loop_task is None:
            return
        self._loop_task.cancel()
        try:
            await self._loop_task
        except asyncio.CancelledError:
            logger.debug("Periodic sync cancelled")
        self._loop_task = None

    async def _periodic_loop(self):
        while self.is_online:
            try:
                await asyncio.sleep(self.interval_seconds)
                await self.sync()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in periodic sync: {e}", exc_info=True)

    def get_status(self) -> Dict[str, Any]:
        return {
            "online": self.is_online,
            "syncing": self.is_syncing,
            "last_result": self.last_result.to_dict() if self.last_result else None,
        }
