from .devices import router as devices_router
from .verification import router as verification_router
from .auth import router as auth_router
from .sync import router as sync_router
from .health import router as health_router

__all__ = [
    "devices_router",
    "verification_router",
    "auth_router",
    "sync_router",
    "health_router"
]
