import logging
import re
import secrets
from dataclasses import dataclass
from typing import Optional, Dict, Any, List

import bcrypt

from ..core.config import settings
from ..core.timeutil import utcnow
from ..models.identity import (
    IdentityRecord,
    SyncStatus,
    UserHints,
    UserIdentity,
    VerificationChallenge,
    is_valid_device_id,
    mask_handle,
    mask_phone,
    short_id,
)
from ..models.recognition import Authenticated, RecognitionResult
from .auth_version_service import AuthVersionService, AuthVersionStatus, get_auth_version_service
from .collaborators import (
    DefaultHandleValidator,
    DefaultPhoneValidator,
    HandleValidator,
    LoggingSmsSender,
    PhoneValidator,
    SmsSender,
)
from .device_store import IdentityRecordStore, get_device_store
from .identity_exceptions import (
    IdentityNotFoundError,
    IdentityValidationError,
    InvalidTransitionError,
    NotAuthenticatedError,
)
from .recognition_service import RecognitionService
from .session_manager import LoginSession, SessionManager, SessionState, get_session_manager
from .user_registry_service import UserRegistryService, get_user_registry_service
from .verification_service import VerificationCache, get_verification_cache

logger = logging.getLogger(__name__)

PIN_PATTERN = re.compile(r"^\d{4}$")


@dataclass
class VerificationOutcome:
    """What a consumed verification code achieved"""
    linked: bool
    user: Optional[UserIdentity]
    device_id: str
    needs_handle: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "linked": self.linked,
            "needs_handle": self.needs_handle,
            "device_key": self.device_id,
            "user": self.user.to_public_dict() if self.user else None,
        }


class IdentityService:
    """Device identity engine: recognition, verification and security events"""

    def __init__(
        self,
        store: Optional[IdentityRecordStore] = None,
        user_registry: Optional[UserRegistryService] = None,
        verification_cache: Optional[VerificationCache] = None,
        session_manager: Optional[SessionManager] = None,
        sms_sender: Optional[SmsSender] = None,
        phone_validator: Optional[PhoneValidator] = None,
        handle_validator: Optional[HandleValidator] = None,
        recognition: Optional[RecognitionService] = None,
        auth_versions: Optional[AuthVersionService] = None,
    ):
        self.store = store if store is not None else get_device_store()
        self.user_registry = user_registry if user_registry is not None else get_user_registry_service()
        self.verification_cache = verification_cache if verification_cache is not None else get_verification_cache()
        self.session_manager = session_manager if session_manager is not None else get_session_manager()
        self.sms_sender = sms_sender or LoggingSmsSender()
        self.phone_validator = phone_validator or DefaultPhoneValidator()
        self.handle_validator = handle_validator or DefaultHandleValidator()
        self.recognition = recognition or RecognitionService(self.store)
        self.auth_versions = auth_versions or (
            AuthVersionService(self.user_registry) if user_registry else get_auth_version_service()
        )

    def _hash_pin(self, pin: str) -> str:
        """Hash PIN using bcrypt"""
        salt = bcrypt.gensalt()
        hashed = bcrypt.hashpw(pin.encode('utf-8'), salt)
        return hashed.decode('utf-8')

    def _verify_pin(self, pin: str, hashed: str) -> bool:
        """Verify PIN against hash"""
        try:
            return bcrypt.checkpw(pin.encode('utf-8'), hashed.encode('utf-8'))
        except ValueError:
            return False

    def _validate_handle(self, handle: str) -> str:
        handle = (handle or "").strip()
        if not self.handle_validator.validate(handle):
            raise IdentityValidationError(
                "Handle must start with @ and contain only letters, numbers, and underscores"
            )
        return handle

    def _resolve_device_id(self, device_id: Optional[str], session: Optional[LoginSession]) -> str:
        """Use the presented id, then the session's, else mint a server-side one"""
        if is_valid_device_id(device_id):
            return device_id
        if session is not None and is_valid_device_id(session.device_id):
            return session.device_id
        generated = secrets.token_hex(32)
        logger.info(f"No usable device id presented, generated {short_id(generated)}")
        return generated

    async def _require_user(self, guid: str) -> UserIdentity:
        user = await self.user_registry.get_user_by_guid(guid)
        if user is None:
            raise IdentityNotFoundError(f"Unknown user {guid}")
        return user

    async def _link_device(self, device_id: str, user: UserIdentity) -> IdentityRecord:
        """Link a device to a user and stamp it as verified now"""
        def _link(record: IdentityRecord) -> str:
            if record.is_linked and record.user_guid != user.guid:
                logger.info(f"Device {short_id(device_id)} moves from user {record.user_guid} to {user.guid}")
            status = SyncStatus.VERIFIED if record.user_guid == user.guid else SyncStatus.LINKED_TO_USER
            record.link(user, verified_at=utcnow())
            return status

        return await self.store.update(device_id, _link, create=True)

    # ------------------------------------------------------------------
    # Recognition and verification
    # ------------------------------------------------------------------

    async def recognize_device(
        self,
        device_id: Optional[str],
        hints: Optional[UserHints] = None,
        registration_flow: bool = False,
        session: Optional[LoginSession] = None,
    ) -> RecognitionResult:
        result = await self.recognition.recognize(device_id, hints, registration_flow, session)
        if (session is not None and isinstance(result, Authenticated)
                and session.state == SessionState.UNREGISTERED):
            user = await self.user_registry.get_user_by_guid(result.guid)
            if user is not None:
                session.authenticate(user, result.device_id)
        return result

    async def issue_verification(
        self,
        phone: str,
        session: Optional[LoginSession] = None,
        handle: Optional[str] = None,
        device_id: Optional[str] = None,
    ) -> VerificationChallenge:
        """Send a fresh code to a phone, replacing any live one"""
        phone = self.phone_validator.format_and_validate(phone)
        if handle:
            handle = self._validate_handle(handle)

        if session is not None:
            session.transition(SessionState.AWAITING_CODE)
            session.phone = phone
            if handle:
                session.pending_handle = handle
            if is_valid_device_id(device_id):
                session.device_id = device_id

        if is_valid_device_id(device_id):
            await self.store.create(device_id)
            await self.store.append_sync_state(device_id, SyncStatus.PENDING_REGISTRATION)

        challenge = self.verification_cache.issue(phone)
        minutes = int(self.verification_cache.ttl.total_seconds() // 60)
        message = (
            f"Your {settings.SMS_SENDER_NAME} verification code is {challenge.code}. "
            f"It expires in {minutes} minutes."
        )
        try:
            sent = await self.sms_sender.send_sms(phone, message)
        except Exception as e:
            logger.error(f"SMS delivery to {mask_phone(phone)} failed: {e}", exc_info=True)
            sent = False
        if not sent:
            logger.warning(f"Verification code for {mask_phone(phone)} was not delivered")
        return challenge

    async def consume_verification(
        self,
        phone: str,
        code: str,
        device_id: Optional[str] = None,
        session: Optional[LoginSession] = None,
        handle: Optional[str] = None,
    ) -> VerificationOutcome:
        """Check a submitted code and link the device on success"""
        phone = self.phone_validator.format_and_validate(phone)
        if session is not None and session.state != SessionState.AWAITING_CODE:
            raise InvalidTransitionError(session.state.value, SessionState.LINKED.value)

        handle = handle or (session.pending_handle if session else None)
        if handle:
            handle = self._validate_handle(handle)
        device_id = self._resolve_device_id(device_id, session)

        async with self.verification_cache.locked(phone):
            self.verification_cache.check(phone, code)

            user = await self.user_registry.get_user_by_phone(phone)
            if user is None and not handle:
                self.verification_cache.consume(phone)
                if session is not None:
                    session.transition(SessionState.AWAITING_HANDLE)
                    session.device_id = device_id
                logger.info(f"Code confirmed for new number {mask_phone(phone)}, waiting for a handle")
                return VerificationOutcome(linked=False, user=None, device_id=device_id, needs_handle=True)

            if user is None:
                user = await self.user_registry.create_user(handle=handle, phone=phone)
            await self._link_device(device_id, user)
            self.verification_cache.consume(phone)

        if session is not None:
            session.transition(SessionState.LINKED)
            session.authenticate(user, device_id)
        logger.info(f"Device {short_id(device_id)} verified for {mask_handle(user.handle)}")
        return VerificationOutcome(linked=True, user=user, device_id=device_id)

    async def complete_registration(
        self,
        session: LoginSession,
        handle: str,
        device_id: Optional[str] = None,
    ) -> VerificationOutcome:
        """Create the user for a confirmed number and link the device"""
        if session.state != SessionState.AWAITING_HANDLE or not session.phone:
            raise InvalidTransitionError(session.state.value, SessionState.LINKED.value)
        handle = self._validate_handle(handle)
        device_id = self._resolve_device_id(device_id, session)

        async with self.verification_cache.locked(session.phone):
            user = await self.user_registry.get_user_by_phone(session.phone)
            if user is None:
                user = await self.user_registry.create_user(handle=handle, phone=session.phone)
            await self._link_device(device_id, user)

        session.transition(SessionState.LINKED)
        session.authenticate(user, device_id)
        logger.info(f"Registered {mask_handle(user.handle)} on device {short_id(device_id)}")
        return VerificationOutcome(linked=True, user=user, device_id=device_id)

    def logout(self, session: LoginSession):
        session.logout()

    # ------------------------------------------------------------------
    # Auth version gate
    # ------------------------------------------------------------------

    async def check_auth_version(self, guid: str, presented_version: Optional[int]) -> AuthVersionStatus:
        return await self.auth_versions.check(guid, presented_version)

    async def device_user(self, device_id: Optional[str]) -> UserIdentity:
        """The user a device key is linked to, without any version check"""
        if not is_valid_device_id(device_id):
            raise NotAuthenticatedError("Missing or malformed device key")
        record = await self.store.get(device_id)
        if record is None or not record.is_linked:
            raise NotAuthenticatedError("Device is not linked to a user")
        user = await self.user_registry.get_user_by_guid(record.user_guid)
        if user is None:
            raise NotAuthenticatedError("Device belongs to a deleted user")
        return user

    async def authenticate_device(self, device_id: Optional[str],
                                  presented_version: Optional[int]) -> UserIdentity:
        """Resolve the user behind a device key, rejecting stale auth versions"""
        user = await self.device_user(device_id)
        try:
            await self.auth_versions.require_current(user.guid, presented_version)
        except IdentityNotFoundError as e:
            raise NotAuthenticatedError("Device belongs to a deleted user") from e
        return await self._require_user(user.guid)

    async def _invalidate_user(self, guid: str, reason: str) -> int:
        version = await self.auth_versions.bump(guid, reason)
        ended = self.session_manager.end_user_sessions(guid)
        if ended:
            logger.info(f"Logged out {ended} session(s) of user {guid} after {reason}")
        return version

    # ------------------------------------------------------------------
    # Security events
    # ------------------------------------------------------------------

    async def change_handle(self, guid: str, new_handle: str) -> UserIdentity:
        new_handle = self._validate_handle(new_handle)
        user = await self._require_user(guid)
        if user.handle == new_handle:
            return user
        await self.user_registry.update_handle(guid, new_handle)

        def _rehandle(record: IdentityRecord) -> Optional[str]:
            if record.user_guid != guid:
                return None
            record.user_handle = new_handle
            return SyncStatus.HANDLE_UPDATED

        for record in await self.store.find_linked(guid=guid):
            await self.store.update(record.device_id, _rehandle)

        await self._invalidate_user(guid, "handle change")
        logger.info(f"User {guid} renamed {mask_handle(user.handle)} -> {mask_handle(new_handle)}")
        return await self._require_user(guid)

    async def set_pin(self, guid: str, pin: str) -> UserIdentity:
        if not pin or not PIN_PATTERN.match(pin):
            raise IdentityValidationError("PIN must be exactly 4 digits")
        return await self.set_pin_hash(guid, self._hash_pin(pin))

    async def set_pin_hash(self, guid: str, pin_hash: Optional[str]) -> UserIdentity:
        """Store an already-hashed PIN, as pushed by an offline client"""
        await self._require_user(guid)
        await self.user_registry.update_pin_hash(guid, pin_hash)
        await self._invalidate_user(guid, "PIN change")
        return await self._require_user(guid)

    async def verify_pin(self, guid: str, pin: str) -> bool:
        user = await self._require_user(guid)
        if not user.pin_hash:
            return False
        return self._verify_pin(pin, user.pin_hash)

    async def full_reset(self, guid: str) -> int:
        """Unlink every device of a user and invalidate all their sessions"""
        await self._require_user(guid)
        devices = await self.store.find_linked(guid=guid)
        for record in devices:
            await self.store.unlink(record.device_id)
        version = await self._invalidate_user(guid, "full reset")
        logger.info(f"Full reset of user {guid}: {len(devices)} device(s) unlinked")
        return version

    async def reset_device(self, device_id: str) -> IdentityRecord:
        """Unlink one device; other devices of the user stay signed in"""
        if not is_valid_device_id(device_id):
            raise IdentityValidationError("Malformed device id")
        return await self.store.unlink(device_id)

    async def delete_user(self, guid: str) -> int:
        await self._require_user(guid)
        deleted = await self.store.delete_for_user(guid)
        await self.user_registry.delete_user(guid)
        self.session_manager.end_user_sessions(guid)
        logger.info(f"Deleted user {guid} and {deleted} device record(s)")
        return deleted

    async def rename_device(self, device_id: str, device_name: str,
                            guid: Optional[str] = None) -> IdentityRecord:
        def _rename(record: IdentityRecord) -> str:
            if guid is not None and record.user_guid != guid:
                raise IdentityNotFoundError(f"Unknown device {short_id(device_id)}")
            record.device_name = device_name
            return SyncStatus.DEVICE_RENAMED

        if not is_valid_device_id(device_id):
            raise IdentityNotFoundError(f"Unknown device {short_id(device_id)}")
        return await self.store.update(device_id, _rename)

    async def list_devices(self, guid: str) -> List[IdentityRecord]:
        return await self.store.find_linked(guid=guid)


# Singleton instance
_identity_service = None

def get_identity_service() -> IdentityService:
    """Get singleton IdentityService instance"""
    global _identity_service
    if _identity_service is None:
        _identity_service = IdentityService()
    return _identity_service
