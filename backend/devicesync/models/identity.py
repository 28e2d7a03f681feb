from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional, Dict, Any
import re

from ..core.timeutil import utcnow, to_iso, from_iso

DEVICE_ID_PATTERN = re.compile(r"^[0-9a-f]{64}$")


def is_valid_device_id(device_id: Optional[str]) -> bool:
    """A device id is a 256-bit token written as 64 lowercase hex characters"""
    return isinstance(device_id, str) and bool(DEVICE_ID_PATTERN.match(device_id))


def mask_phone(phone: Optional[str]) -> Optional[str]:
    """Hide everything but the last four digits"""
    if not phone:
        return None
    return f"*******{phone[-4:]}"


def mask_handle(handle: Optional[str]) -> Optional[str]:
    """Keep '@', the first and the last character of a handle"""
    if not handle:
        return None
    if len(handle) <= 3:
        return handle
    middle_length = min(len(handle) - 3, 3)
    return f"{handle[:2]}{'*' * middle_length}{handle[-1]}"


def short_id(device_id: Optional[str]) -> str:
    """Truncated device id for log lines"""
    if not device_id:
        return "<none>"
    return f"{device_id[:10]}..."


class SyncStatus:
    """Statuses written to a device's sync-state log"""
    INITIALIZED = "initialized"
    PENDING_REGISTRATION = "pending_registration"
    LINKED_TO_USER = "linked_to_user"
    VERIFIED = "verified"
    HANDLE_UPDATED = "handle_updated"
    CROSS_BROWSER_LINKED = "cross_browser_linked"
    DEVICE_RENAMED = "device_renamed"
    RESET = "reset"


@dataclass
class SyncStateEntry:
    """One entry of a device's append-only sync-state log"""
    timestamp: datetime
    status: str

    @classmethod
    def from_dict(cls, data: dict):
        return cls(timestamp=from_iso(data["last_sync"]), status=data["status"])


@dataclass
class IdentityRecord:
    """Identity of one physical device, stored in its own file"""
    device_id: str
    user_guid: Optional[str] = None
    user_handle: Optional[str] = None
    user_phone: Optional[str] = None
    created_at: Optional[datetime] = None
    last_verified_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    device_name: Optional[str] = None
    device_type: Optional[str] = None
    internal_id: Optional[str] = None
    last_status: Optional[str] = None

    def __post_init__(self):
        if self.created_at is None:
            self.created_at = utcnow()
        if self.updated_at is None:
            self.updated_at = self.created_at

    @property
    def is_linked(self) -> bool:
        return bool(self.user_guid and self.user_handle and self.user_phone)

    @property
    def is_partially_linked(self) -> bool:
        fields = [self.user_guid, self.user_handle, self.user_phone]
        return any(fields) and not all(fields)

    def link(self, user: "UserIdentity", verified_at: Optional[datetime] = None):
        """Attach the device to a user, setting all three user fields together"""
        self.user_guid = user.guid
        self.user_handle = user.handle
        self.user_phone = user.phone
        if verified_at is not None:
            self.last_verified_at = verified_at

    def unlink(self):
        self.user_guid = None
        self.user_handle = None
        self.user_phone = None
        self.last_verified_at = None

    def is_fresh(self, window: timedelta, now: Optional[datetime] = None) -> bool:
        """True when the device was verified within the freshness window"""
        if self.last_verified_at is None:
            return False
        now = now or utcnow()
        return self.last_verified_at > now - window

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for database storage"""
        return {
            "device_id": self.device_id,
            "handle": self.user_handle,
            "guid": self.user_guid,
            "phone": self.user_phone,
            "created_at": to_iso(self.created_at),
            "last_verified_at": to_iso(self.last_verified_at),
            "updated_at": to_iso(self.updated_at),
            "device_name": self.device_name,
            "device_type": self.device_type,
        }

    @classmethod
    def from_dict(cls, data: dict, internal_id: Optional[str] = None,
                  last_status: Optional[str] = None):
        """Create IdentityRecord from a device_info row"""
        return cls(
            device_id=data["device_id"],
            user_guid=data.get("guid"),
            user_handle=data.get("handle"),
            user_phone=data.get("phone"),
            created_at=from_iso(data.get("created_at")),
            last_verified_at=from_iso(data.get("last_verified_at")),
            updated_at=from_iso(data.get("updated_at")),
            device_name=data.get("device_name"),
            device_type=data.get("device_type"),
            internal_id=internal_id,
            last_status=last_status,
        )


@dataclass
class UserIdentity:
    """Authoritative user record held in the shared registry"""
    guid: str
    handle: str
    phone: str
    auth_version: int = 1
    pin_hash: Optional[str] = None
    pin_set_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    id: Optional[int] = None

    @property
    def has_pin(self) -> bool:
        return bool(self.pin_hash)

    def to_public_dict(self) -> Dict[str, Any]:
        """Fields safe to hand to callers outside the engine"""
        return {
            "guid": self.guid,
            "handle": self.handle,
            "masked_phone": mask_phone(self.phone),
            "auth_version": self.auth_version,
            "has_pin": self.has_pin,
        }

    @classmethod
    def from_dict(cls, data: dict):
        """Create UserIdentity from a registry row"""
        return cls(
            id=data.get("id"),
            guid=data["guid"],
            handle=data["handle"],
            phone=data["phone"],
            auth_version=data.get("auth_version") or 1,
            pin_hash=data.get("pin_hash"),
            pin_set_at=from_iso(data.get("pin_set_at")),
            created_at=from_iso(data.get("created_at")),
            updated_at=from_iso(data.get("updated_at")),
        )


@dataclass
class UserHints:
    """guid/handle/phone carried over from a current or prior session"""
    user_guid: Optional[str] = None
    user_handle: Optional[str] = None
    user_phone: Optional[str] = None

    def any(self) -> bool:
        return bool(self.user_guid or self.user_handle or self.user_phone)

    def merged_with(self, other: Optional["UserHints"]) -> "UserHints":
        """Fill empty fields from another set of hints"""
        if other is None:
            return self
        return UserHints(
            user_guid=self.user_guid or other.user_guid,
            user_handle=self.user_handle or other.user_handle,
            user_phone=self.user_phone or other.user_phone,
        )

    @classmethod
    def from_user(cls, user: UserIdentity) -> "UserHints":
        return cls(user_guid=user.guid, user_handle=user.handle, user_phone=user.phone)


@dataclass
class VerificationChallenge:
    """Live verification code for one phone number"""
    phone: str
    code: str
    expires_at: datetime
    issued_at: datetime = field(default_factory=utcnow)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at
