from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
import logging

from devicesync.services.identity_exceptions import (
    IdentityConflictError,
    IdentityException,
    IdentityNotFoundError,
    IdentityValidationError,
    NotAuthenticatedError,
    StaleAuthVersionError,
)

logger = logging.getLogger(__name__)


def _error_body(request: Request, status_code: int, message: str, **extra) -> dict:
    body = {
        "success": False,
        "message": message,
        "status_code": status_code,
        "path": str(request.url.path)
    }
    body.update(extra)
    return body


async def http_exception_handler(request: Request, exc: HTTPException):
    """Handle HTTP exceptions with structured error response"""
    logger.warning(f"HTTP {exc.status_code}: {exc.detail} - {request.url}")

    return JSONResponse(
        status_code=exc.status_code,
        content=_error_body(request, exc.status_code, exc.detail)
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Handle validation errors with detailed error information"""
    logger.warning(f"Validation error: {exc.errors()} - {request.url}")

    return JSONResponse(
        status_code=422,
        content=_error_body(request, 422, "Validation error", errors=exc.errors())
    )


async def identity_exception_handler(request: Request, exc: IdentityException):
    """Map engine exceptions onto HTTP status codes"""
    if isinstance(exc, StaleAuthVersionError):
        logger.info(f"Stale auth version {exc.presented_version} (current {exc.current_version}) - {request.url}")
        return JSONResponse(
            status_code=401,
            content=_error_body(
                request, 401, "Session is out of date, please sign in again",
                error="AuthVersionMismatch", current_version=exc.current_version
            )
        )
    if isinstance(exc, NotAuthenticatedError):
        logger.info(f"Not authenticated: {exc} - {request.url}")
        return JSONResponse(
            status_code=401,
            content=_error_body(request, 401, str(exc), error="NotAuthenticated")
        )
    if isinstance(exc, IdentityConflictError):
        logger.warning(f"Conflict on {exc.field}: {exc} - {request.url}")
        return JSONResponse(
            status_code=409,
            content=_error_body(request, 409, str(exc), error_code="conflict", field=exc.field)
        )
    if isinstance(exc, IdentityNotFoundError):
        logger.warning(f"Not found: {exc} - {request.url}")
        return JSONResponse(status_code=404, content=_error_body(request, 404, str(exc)))
    if isinstance(exc, IdentityValidationError):
        logger.warning(f"Rejected input: {exc} - {request.url}")
        return JSONResponse(status_code=422, content=_error_body(request, 422, str(exc)))

    # Store failures and anything else from the engine
    logger.error(f"Identity engine error: {exc} - {request.url}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content=_error_body(request, 500, "Identity store is unavailable, please retry later")
    )


async def general_exception_handler(request: Request, exc: Exception):
    """Handle unexpected exceptions"""
    logger.error(f"Unexpected error: {str(exc)} - {request.url}", exc_info=True)

    return JSONResponse(
        status_code=500,
        content=_error_body(request, 500, "Internal server error")
    )
