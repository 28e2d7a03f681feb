"""
Identity-related schemas for the API.
"""

from typing import Optional
from pydantic import BaseModel, Field


class UserPublic(BaseModel):
    """User fields that may leave the server."""
    guid: str
    handle: str
    masked_phone: Optional[str] = None
    auth_version: int
    has_pin: bool = False


class RecognizeRequest(BaseModel):
    """Request schema for device recognition."""
    device_key: Optional[str] = Field(None, description="Device id held by the client, 64 hex characters")
    user_guid: Optional[str] = Field(None, description="Known user guid, if any")
    user_handle: Optional[str] = Field(None, description="Known handle, if any")
    user_phone: Optional[str] = Field(None, description="Known phone number, if any")
    registration_flow: bool = Field(False, description="Force verification even for fresh devices")


class RecognitionResponse(BaseModel):
    """Response schema for a recognition outcome."""
    status: str
    handle: Optional[str] = None
    masked_phone: Optional[str] = None
    guid: Optional[str] = None
    device_key: Optional[str] = None
    match: Optional[str] = None
    cross_browser: bool = False
    device_not_registered: bool = False
    session_id: str

    class Config:
        json_schema_extra = {
            "example": {
                "status": "needs_verification",
                "handle": "@alice",
                "masked_phone": "*******0123",
                "guid": "3f0c2d9e-1b7a-4c55-9a43-6f1e2b8d7c10",
                "device_key": "9f86d081884c7d659a2feaa0c55ad015a3bf4f1b2b0b822cd15d6c15b0f00a08",
                "match": "exact",
                "cross_browser": False,
                "device_not_registered": False,
                "session_id": "5b7c7e0e-2f61-4d7e-9b43-7a0f5f0c9c11"
            }
        }


class VerificationRequest(BaseModel):
    """Request schema for sending a verification code."""
    phone: str = Field(..., min_length=1, description="Phone number in any common format")
    handle: Optional[str] = Field(None, description="Handle to register if the number is new")
    device_key: Optional[str] = Field(None, description="Device id to link once verified")


class VerificationIssuedResponse(BaseModel):
    """Response schema for a sent verification code."""
    success: bool = True
    message: str = "Verification code sent"
    masked_phone: str
    expires_at: str
    session_id: str


class VerificationConfirmRequest(BaseModel):
    """Request schema for submitting a verification code."""
    phone: str = Field(..., min_length=1)
    code: str = Field(..., min_length=1, description="Code received by SMS")
    device_key: Optional[str] = None
    handle: Optional[str] = None


class CompleteRegistrationRequest(BaseModel):
    """Request schema for choosing a handle after a new number was confirmed."""
    handle: str = Field(..., min_length=2)
    device_key: Optional[str] = None


class VerificationOutcomeResponse(BaseModel):
    """Response schema for a consumed verification code."""
    linked: bool
    needs_handle: bool = False
    device_key: str
    user: Optional[UserPublic] = None
    session_id: str


class AuthVersionResponse(BaseModel):
    """Response schema for an auth version check."""
    guid: str
    auth_version: int
    presented_version: Optional[int] = None
    status: str
