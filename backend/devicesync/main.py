import logging

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.exceptions import RequestValidationError
from contextlib import asynccontextmanager

from devicesync.core.config import settings
from devicesync.api.api import api_router
from devicesync.api.errors import (
    http_exception_handler,
    validation_exception_handler,
    identity_exception_handler,
    general_exception_handler
)
from devicesync.services.background_tasks import background_manager
from devicesync.services.device_store import get_device_store
from devicesync.services.identity_exceptions import IdentityException
from devicesync.services.user_registry_service import get_user_registry_service

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    get_device_store().initialize()
    await get_user_registry_service().initialize()
    await background_manager.start()
    logger.info(f"{settings.APP_NAME} {settings.VERSION} started")

    yield

    # Shutdown
    await background_manager.stop()


app = FastAPI(
    title="Device Identity Sync API",
    description="Device recognition, SMS verification and offline-first identity sync",
    version=settings.VERSION,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc"
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.BACKEND_CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Session-Id"]
)

# Add exception handlers
app.add_exception_handler(HTTPException, http_exception_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(IdentityException, identity_exception_handler)
app.add_exception_handler(Exception, general_exception_handler)

# Include API routes
app.include_router(api_router)


@app.get("/")
async def root():
    return {
        "message": "Device Identity Sync API",
        "version": settings.VERSION,
        "status": "operational",
        "docs_url": "/docs"
    }
