from fastapi import APIRouter

from devicesync.api.routes import (
    devices_router,
    verification_router,
    auth_router,
    sync_router,
    health_router
)
from devicesync.core.config import settings

# Create main API router
api_router = APIRouter(prefix=settings.API_V1_STR)

# Include all route modules
api_router.include_router(devices_router)
api_router.include_router(verification_router)
api_router.include_router(auth_router)
api_router.include_router(sync_router)
api_router.include_router(health_router)
