"""
Custom exceptions for the device identity engine
"""
from typing import Optional


class IdentityException(Exception):
    """Base exception for the identity engine"""
    pass


class IdentityValidationError(IdentityException):
    """Raised when input is malformed (device id, phone, handle, code)"""
    pass


class VerificationCodeMismatchError(IdentityValidationError):
    """Raised when a submitted code does not match the live challenge"""
    pass


class InvalidTransitionError(IdentityValidationError):
    """Raised when a login session is asked to make an illegal state change"""

    def __init__(self, current: str, target: str):
        super().__init__(f"Cannot move session from {current} to {target}")
        self.current = current
        self.target = target


class IdentityNotFoundError(IdentityException):
    """Raised when a device, user or challenge does not exist"""
    pass


class ChallengeNotFoundError(IdentityNotFoundError):
    """Raised when no live verification challenge exists for a phone"""
    pass


class IdentityConflictError(IdentityException):
    """Raised when a handle or phone already belongs to a different user"""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class NotAuthenticatedError(IdentityException):
    """Raised when a request carries no usable device identity"""
    pass


class StaleAuthVersionError(IdentityException):
    """Raised when a presented auth version is lower than the current one"""

    def __init__(self, current_version: int, presented_version: Optional[int] = None):
        super().__init__(
            f"Auth version {presented_version} is stale (current {current_version})"
        )
        self.current_version = current_version
        self.presented_version = presented_version


class TransientStoreError(IdentityException):
    """Raised when a single device file cannot be read or written"""
    pass


class StoreUnavailableError(IdentityException):
    """Raised when the device store as a whole cannot be accessed"""
    pass


class SyncTransportError(IdentityException):
    """Raised when the sync server cannot be reached or answers with an error"""
    pass
