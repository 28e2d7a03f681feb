"""
Background housekeeping for the in-memory parts of the identity engine
"""
import asyncio
import logging
from typing import Dict, Optional

from ..core.config import settings
from .device_store import IdentityRecordStore, get_device_store
from .session_manager import SessionManager, get_session_manager
from .verification_service import VerificationCache, get_verification_cache

logger = logging.getLogger(__name__)


class BackgroundTaskManager:
    """Periodically purges expired challenges, idle locks and stale sessions"""

    def __init__(
        self,
        verification_cache: Optional[VerificationCache] = None,
        store: Optional[IdentityRecordStore] = None,
        session_manager: Optional[SessionManager] = None,
        interval_seconds: Optional[float] = None,
    ):
        self._verification_cache = verification_cache
        self._store = store
        self._session_manager = session_manager
        self.interval_seconds = interval_seconds or settings.CLEANUP_INTERVAL_SECONDS
        self.is_running = False
        self.tasks: Dict[str, asyncio.Task] = {}

    @property
    def verification_cache(self) -> VerificationCache:
        return self._verification_cache if self._verification_cache is not None else get_verification_cache()

    @property
    def store(self) -> IdentityRecordStore:
        return self._store if self._store is not None else get_device_store()

    @property
    def session_manager(self) -> SessionManager:
        return self._session_manager if self._session_manager is not None else get_session_manager()

    async def start(self):
        """Start all background tasks"""
        if self.is_running:
            return

        self.is_running = True
        logger.info("Starting background task manager")
        self.tasks['cleanup'] = asyncio.create_task(self._cleanup_loop())

    async def stop(self):
        """Stop all background tasks"""
        if not self.is_running:
            return

        self.is_running = False
        logger.info("Stopping background task manager")

        for task_name, task in self.tasks.items():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                logger.info(f"Cancelled task: {task_name}")

        self.tasks.clear()
        logger.info("Background tasks stopped")

    def run_cleanup(self) -> Dict[str, int]:
        """One housekeeping pass"""
        counts = {
            "challenges": self.verification_cache.purge_expired(),
            "device_locks": self.store.purge_idle_locks(),
            "index_entries": self.store.index.purge_expired(),
            "sessions": self.session_manager.cleanup_expired_sessions(),
        }
        if any(counts.values()):
            logger.debug(f"Housekeeping purged {counts}")
        return counts

    async def _cleanup_loop(self):
        logger.info("Started cleanup loop")

        while self.is_running:
            try:
                self.run_cleanup()
                await asyncio.sleep(self.interval_seconds)
            except asyncio.CancelledError:
                logger.info("Cleanup loop cancelled")
                break
            except Exception as e:
                logger.error(f"Error in cleanup loop: {e}", exc_info=True)
                await asyncio.sleep(self.interval_seconds)


# Global instance
background_manager = BackgroundTaskManager()
