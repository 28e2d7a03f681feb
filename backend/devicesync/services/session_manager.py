import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional, Dict, Any, Tuple

from ..core.config import settings
from ..core.timeutil import utcnow
from ..models.identity import UserHints, UserIdentity, mask_phone
from ..models.recognition import RecognitionResult
from .identity_exceptions import InvalidTransitionError

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    UNREGISTERED = "unregistered"
    AWAITING_CODE = "awaiting_code"
    AWAITING_HANDLE = "awaiting_handle"
    LINKED = "linked"
    AUTHENTICATED = "authenticated"


ALLOWED_TRANSITIONS = {
    SessionState.UNREGISTERED: {
        SessionState.AWAITING_CODE,
        SessionState.AUTHENTICATED,
    },
    SessionState.AWAITING_CODE: {
        SessionState.AWAITING_CODE,
        SessionState.AWAITING_HANDLE,
        SessionState.LINKED,
        SessionState.UNREGISTERED,
    },
    SessionState.AWAITING_HANDLE: {
        SessionState.AWAITING_CODE,
        SessionState.LINKED,
        SessionState.UNREGISTERED,
    },
    SessionState.LINKED: {
        SessionState.AUTHENTICATED,
        SessionState.UNREGISTERED,
    },
    SessionState.AUTHENTICATED: {
        SessionState.AWAITING_CODE,
        SessionState.UNREGISTERED,
    },
}


@dataclass
class LoginSession:
    """Everything one login attempt knows about its user and device"""
    session_id: str
    created_at: datetime
    last_activity: datetime
    expires_at: datetime
    state: SessionState = SessionState.UNREGISTERED
    registration_flow: bool = False
    phone: Optional[str] = None
    pending_handle: Optional[str] = None
    device_id: Optional[str] = None
    hints: UserHints = field(default_factory=UserHints)
    previous_hints: UserHints = field(default_factory=UserHints)
    user: Optional[UserIdentity] = None
    auth_version: Optional[int] = None
    recognition_cache: Dict[str, Tuple[RecognitionResult, float]] = field(default_factory=dict)

    @property
    def is_authenticated(self) -> bool:
        return self.state == SessionState.AUTHENTICATED and self.user is not None

    def can_transition(self, target: SessionState) -> bool:
        if target not in ALLOWED_TRANSITIONS[self.state]:
            return False
        # Registration always goes through a code, never the fast path
        if (self.registration_flow and self.state == SessionState.UNREGISTERED
                and target == SessionState.AUTHENTICATED):
            return False
        return True

    def transition(self, target: SessionState):
        if not self.can_transition(target):
            raise InvalidTransitionError(self.state.value, target.value)
        logger.debug(f"Session {self.session_id[:8]}: {self.state.value} -> {target.value}")
        self.state = target

    def combined_hints(self) -> UserHints:
        """Current-session hints, falling back to the ones kept from a logout"""
        return self.hints.merged_with(self.previous_hints)

    def cache_recognition(self, device_id: str, result: RecognitionResult,
                          ttl_seconds: Optional[float] = None):
        ttl = ttl_seconds if ttl_seconds is not None else settings.RECOGNITION_CACHE_SECONDS
        self.recognition_cache[device_id] = (result, time.monotonic() + ttl)

    def cached_recognition(self, device_id: str) -> Optional[RecognitionResult]:
        entry = self.recognition_cache.get(device_id)
        if entry is None:
            return None
        result, expires_at = entry
        if time.monotonic() >= expires_at:
            del self.recognition_cache[device_id]
            return None
        return result

    def authenticate(self, user: UserIdentity, device_id: Optional[str] = None):
        """Move to AUTHENTICATED and remember who the session belongs to"""
        self.transition(SessionState.AUTHENTICATED)
        self.user = user
        self.auth_version = user.auth_version
        self.hints = UserHints.from_user(user)
        if device_id:
            self.device_id = device_id
        self.registration_flow = False
        self.pending_handle = None

    def logout(self):
        """Forget the user but keep their identifiers as hints for next time"""
        if self.user is not None:
            self.previous_hints = UserHints.from_user(self.user)
        elif self.hints.any():
            self.previous_hints = self.hints
        self.hints = UserHints()
        self.user = None
        self.auth_version = None
        self.phone = None
        self.pending_handle = None
        self.registration_flow = False
        self.recognition_cache.clear()
        self.state = SessionState.UNREGISTERED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "state": self.state.value,
            "registration_flow": self.registration_flow,
            "masked_phone": mask_phone(self.phone),
            "pending_handle": self.pending_handle,
            "user": self.user.to_public_dict() if self.user else None,
            "expires_at": self.expires_at.isoformat(),
        }


class SessionManager:
    """In-memory registry of login sessions"""

    def __init__(self, session_duration_hours: Optional[int] = None):
        self.active_sessions: Dict[str, LoginSession] = {}
        hours = session_duration_hours or settings.SESSION_DURATION_HOURS
        self.session_duration = timedelta(hours=hours)

    def create_session(self, registration_flow: bool = False) -> LoginSession:
        """Create new login session"""
        now = utcnow()
        session = LoginSession(
            session_id=str(uuid.uuid4()),
            created_at=now,
            last_activity=now,
            expires_at=now + self.session_duration,
            registration_flow=registration_flow,
        )
        self.active_sessions[session.session_id] = session
        return session

    def get_session(self, session_id: Optional[str]) -> Optional[LoginSession]:
        """Get active session by session ID"""
        if not session_id:
            return None
        session = self.active_sessions.get(session_id)
        if not session:
            return None

        now = utcnow()
        if now > session.expires_at:
            self.end_session(session_id)
            return None

        session.last_activity = now
        return session

    def get_or_create_session(self, session_id: Optional[str] = None,
                              registration_flow: bool = False) -> LoginSession:
        session = self.get_session(session_id)
        if session is None:
            session = self.create_session(registration_flow=registration_flow)
        elif registration_flow:
            session.registration_flow = True
        return session

    def end_session(self, session_id: str) -> bool:
        """End a specific session"""
        return self.active_sessions.pop(session_id, None) is not None

    def end_user_sessions(self, guid: str) -> int:
        """Log out every session belonging to a user"""
        ended = 0
        for session in self.active_sessions.values():
            if session.user is not None and session.user.guid == guid:
                session.logout()
                ended += 1
        return ended

    def cleanup_expired_sessions(self) -> int:
        """Remove expired sessions"""
        now = utcnow()
        expired_sessions = [
            session_id for session_id, session in self.active_sessions.items()
            if now > session.expires_at
        ]
        for session_id in expired_sessions:
            self.end_session(session_id)
        return len(expired_sessions)

    def get_active_sessions_count(self) -> int:
        """Get count of active sessions"""
        self.cleanup_expired_sessions()
        return len(self.active_sessions)


# Singleton instance
_session_manager = None

def get_session_manager() -> SessionManager:
    """Get singleton SessionManager instance"""
    global _session_manager
    if _session_manager is None:
        _session_manager = SessionManager()
    return _session_manager
