from .device_store import IdentityRecordStore, get_device_store
from .user_registry_service import UserRegistryService, get_user_registry_service
from .verification_service import VerificationCache, get_verification_cache
from .session_manager import SessionManager, SessionState, LoginSession, get_session_manager
from .auth_version_service import AuthVersionService, AuthVersionStatus, get_auth_version_service
from .recognition_service import RecognitionService, get_recognition_service
from .identity_service import IdentityService, VerificationOutcome, get_identity_service
from .sync_service import SyncService, get_sync_service
from .background_tasks import BackgroundTaskManager, background_manager

__all__ = [
    "IdentityRecordStore",
    "get_device_store",
    "UserRegistryService",
    "get_user_registry_service",
    "VerificationCache",
    "get_verification_cache",
    "SessionManager",
    "SessionState",
    "LoginSession",
    "get_session_manager",
    "AuthVersionService",
    "AuthVersionStatus",
    "get_auth_version_service",
    "RecognitionService",
    "get_recognition_service",
    "IdentityService",
    "VerificationOutcome",
    "get_identity_service",
    "SyncService",
    "get_sync_service",
    "BackgroundTaskManager",
    "background_manager"
]
