from fastapi import APIRouter, Depends
from datetime import datetime

from devicesync.api.dependencies import identity_service, session_manager
from devicesync.api.schemas import HealthResponse
from devicesync.core.config import settings
from devicesync.services.identity_exceptions import IdentityException
from devicesync.services.identity_service import IdentityService
from devicesync.services.session_manager import SessionManager

router = APIRouter(prefix="/health", tags=["health"])


@router.get("/", response_model=HealthResponse)
async def health_check(
    identity: IdentityService = Depends(identity_service),
    sessions: SessionManager = Depends(session_manager),
):
    """Health check endpoint"""
    try:
        identity.store.check_available()
        store_status = "available"
    except IdentityException:
        store_status = "unavailable"

    try:
        await identity.user_registry.list_users()
        registry_status = "connected"
    except Exception:
        registry_status = "disconnected"

    healthy = store_status == "available" and registry_status == "connected"
    return HealthResponse(
        status="healthy" if healthy else "unhealthy",
        service="device-identity-sync",
        version=settings.VERSION,
        timestamp=datetime.now().isoformat(),
        device_store=store_status,
        user_registry=registry_status,
        active_sessions=sessions.get_active_sessions_count(),
    )


@router.get("/version", response_model=dict)
async def get_version():
    """Get API version information"""
    return {
        "service": "device-identity-sync",
        "version": settings.VERSION,
        "app_name": settings.APP_NAME,
        "debug": settings.DEBUG
    }
