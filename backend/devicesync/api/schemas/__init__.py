from .identity import (
    UserPublic,
    RecognizeRequest,
    RecognitionResponse,
    VerificationRequest,
    VerificationIssuedResponse,
    VerificationConfirmRequest,
    CompleteRegistrationRequest,
    VerificationOutcomeResponse,
    AuthVersionResponse
)
from .sync import (
    SyncChange,
    SyncPushRequest,
    SyncPushResponse,
    SyncPullResponse
)
from .common import (
    ErrorResponse,
    HealthResponse
)

__all__ = [
    # Identity schemas
    "UserPublic",
    "RecognizeRequest",
    "RecognitionResponse",
    "VerificationRequest",
    "VerificationIssuedResponse",
    "VerificationConfirmRequest",
    "CompleteRegistrationRequest",
    "VerificationOutcomeResponse",
    "AuthVersionResponse",

    # Sync schemas
    "SyncChange",
    "SyncPushRequest",
    "SyncPushResponse",
    "SyncPullResponse",

    # Common schemas
    "ErrorResponse",
    "HealthResponse"
]
