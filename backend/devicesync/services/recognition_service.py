import logging
from datetime import datetime, timedelta
from typing import Optional

from ..core.config import settings
from ..core.timeutil import utcnow
from ..models.identity import (
    IdentityRecord,
    SyncStatus,
    UserHints,
    is_valid_device_id,
    mask_handle,
    mask_phone,
    short_id,
)
from ..models.recognition import (
    Authenticated,
    MatchKind,
    NeedsVerification,
    RecognitionResult,
    Unregistered,
)
from .device_store import IdentityRecordStore, get_device_store
from .session_manager import LoginSession

logger = logging.getLogger(__name__)


class RecognitionService:
    """Decides whether a device is known, and whether it may skip verification.

    Strategies run in strict priority and the first hit wins:

    1. the linked record stored under the presented device id
    2. a linked record of the hinted user, searched by guid, handle, phone
    3. nothing: the device is unregistered

    A hit verified within the freshness window authenticates, anything older
    needs a fresh verification code. Registration flow never authenticates.
    """

    def __init__(self, store: Optional[IdentityRecordStore] = None,
                 freshness_days: Optional[int] = None):
        self.store = store if store is not None else get_device_store()
        days = freshness_days if freshness_days is not None else settings.FRESHNESS_WINDOW_DAYS
        self.freshness_window = timedelta(days=days)

    async def recognize(
        self,
        device_id: Optional[str],
        hints: Optional[UserHints] = None,
        registration_flow: bool = False,
        session: Optional[LoginSession] = None,
    ) -> RecognitionResult:
        valid_id = is_valid_device_id(device_id)
        if device_id and not valid_id:
            logger.warning("Malformed device id presented, falling back to hints")

        if session is not None:
            registration_flow = registration_flow or session.registration_flow
            hints = (hints or UserHints()).merged_with(session.combined_hints())
            if valid_id and not registration_flow:
                cached = session.cached_recognition(device_id)
                if cached is not None:
                    logger.debug(f"Recognition cache hit for {short_id(device_id)}")
                    return cached
        hints = hints or UserHints()
        now = utcnow()

        # 1. Exact match on the presented device id
        if valid_id:
            record = await self.store.get(device_id)
            if record is None:
                await self.store.create(device_id)
            elif record.is_linked:
                logger.debug(f"Exact match for {short_id(device_id)} ({mask_handle(record.user_handle)})")
                result = self._decide(record, device_id, MatchKind.EXACT, False, registration_flow, now)
                return self._finish(result, session)

        # 2. Cross-identity match on the hints
        if hints.any():
            for kind, field_name, value in (
                (MatchKind.GUID, "guid", hints.user_guid),
                (MatchKind.HANDLE, "handle", hints.user_handle),
                (MatchKind.PHONE, "phone", hints.user_phone),
            ):
                if not value:
                    continue
                candidates = await self.store.find_linked(**{field_name: value})
                if not candidates:
                    continue
                record = candidates[0]
                logger.debug(
                    f"Cross-browser {kind.value} match: {short_id(device_id)} -> "
                    f"{short_id(record.device_id)} ({mask_handle(record.user_handle)})"
                )
                result = self._decide(
                    record, device_id if valid_id else None, kind, True, registration_flow, now
                )
                if valid_id and record.device_id != device_id:
                    await self._remember_cross_browser(device_id, record, result)
                return self._finish(result, session)

        # 3. No match
        logger.debug(f"No match for device {short_id(device_id)}")
        return Unregistered()

    def _decide(self, record: IdentityRecord, device_id: Optional[str], match: MatchKind,
                cross_browser: bool, registration_flow: bool, now: datetime) -> RecognitionResult:
        if not registration_flow and record.is_fresh(self.freshness_window, now):
            return Authenticated(
                handle=record.user_handle,
                guid=record.user_guid,
                device_id=device_id,
                match=match,
                cross_browser=cross_browser,
            )
        return NeedsVerification(
            handle=record.user_handle,
            masked_phone=mask_phone(record.user_phone),
            guid=record.user_guid,
            device_id=device_id,
            match=match,
            cross_browser=cross_browser,
            registration_flow=registration_flow,
        )

    async def _remember_cross_browser(self, device_id: str, matched: IdentityRecord,
                                      result: RecognitionResult):
        """Record what a cross-browser match means for the presenting device"""
        if isinstance(result, Authenticated):
            def _adopt(record: IdentityRecord) -> str:
                record.user_guid = matched.user_guid
                record.user_handle = matched.user_handle
                record.user_phone = matched.user_phone
                record.last_verified_at = matched.last_verified_at
                return SyncStatus.CROSS_BROWSER_LINKED

            await self.store.update(device_id, _adopt, create=True)
            logger.info(f"Linked {short_id(device_id)} to {mask_handle(matched.user_handle)} across browsers")
        else:
            await self.store.append_sync_state(device_id, SyncStatus.PENDING_REGISTRATION)

    def _finish(self, result: RecognitionResult, session: Optional[LoginSession]) -> RecognitionResult:
        if session is None or not isinstance(result, Authenticated):
            return result
        if result.device_id:
            session.cache_recognition(result.device_id, result)
            session.device_id = result.device_id
        return result


# Singleton instance
_recognition_service = None

def get_recognition_service() -> RecognitionService:
    """Get singleton RecognitionService instance"""
    global _recognition_service
    if _recognition_service is None:
        _recognition_service = RecognitionService()
    return _recognition_service
