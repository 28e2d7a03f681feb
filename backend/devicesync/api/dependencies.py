from fastapi import Depends, Header, Response
from typing import Optional

from devicesync.models.identity import UserIdentity
from devicesync.services.identity_service import IdentityService, get_identity_service
from devicesync.services.session_manager import LoginSession, SessionManager, get_session_manager
from devicesync.services.sync_service import SyncService, get_sync_service

SESSION_HEADER = "X-Session-Id"


def identity_service() -> IdentityService:
    return get_identity_service()


def sync_service() -> SyncService:
    return get_sync_service()


def session_manager() -> SessionManager:
    return get_session_manager()


async def get_login_session(
    response: Response,
    x_session_id: Optional[str] = Header(None),
    sessions: SessionManager = Depends(session_manager),
) -> LoginSession:
    """
    Login session named by the X-Session-Id header, created when missing
    or expired. The id in use is echoed back on the response.
    """
    session = sessions.get_or_create_session(x_session_id)
    response.headers[SESSION_HEADER] = session.session_id
    return session


async def get_current_user(
    x_device_key: Optional[str] = Header(None),
    x_auth_version: Optional[int] = Header(None),
    identity: IdentityService = Depends(identity_service),
) -> UserIdentity:
    """
    Dependency for device-authenticated endpoints.
    Raises NotAuthenticatedError or StaleAuthVersionError, which the
    exception handlers turn into 401 responses.
    """
    return await identity.authenticate_device(x_device_key, x_auth_version)
