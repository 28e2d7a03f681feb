from pydantic import BaseModel
from typing import Optional


class ErrorResponse(BaseModel):
    """Standard error response"""
    success: bool = False
    message: str
    status_code: int
    path: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    current_version: Optional[int] = None

    class Config:
        json_schema_extra = {
            "example": {
                "success": False,
                "message": "Session is out of date, please sign in again",
                "status_code": 401,
                "path": "/api/v1/sync",
                "error": "AuthVersionMismatch",
                "current_version": 3
            }
        }


class HealthResponse(BaseModel):
    """Health check response"""
    status: str = "healthy"
    service: str = "device-identity-sync"
    version: str = "0.1.0"
    timestamp: str
    device_store: str = "available"
    user_registry: str = "connected"
    active_sessions: int = 0

    class Config:
        json_schema_extra = {
            "example": {
                "status": "healthy",
                "service": "device-identity-sync",
                "version": "0.1.0",
                "timestamp": "2024-01-01T12:00:00Z",
                "device_store": "available",
                "user_registry": "connected",
                "active_sessions": 2
            }
        }
