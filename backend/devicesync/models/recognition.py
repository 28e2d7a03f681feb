"""Recognition outcomes, one variant per branch of the recognition algorithm"""
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Dict, Any, Union


class RecognitionStatus(str, Enum):
    """Status reported to callers of recognize_device"""
    AUTHENTICATED = "authenticated"
    NEEDS_VERIFICATION = "needs_verification"
    UNREGISTERED = "unregistered"


class MatchKind(str, Enum):
    """Strategy that produced a match"""
    EXACT = "exact"
    GUID = "guid"
    HANDLE = "handle"
    PHONE = "phone"


@dataclass(frozen=True)
class Unregistered:
    status = RecognitionStatus.UNREGISTERED

    def to_dict(self) -> Dict[str, Any]:
        return {"status": self.status.value, "device_not_registered": True}


@dataclass(frozen=True)
class NeedsVerification:
    handle: str
    masked_phone: Optional[str]
    guid: str
    device_id: Optional[str]
    match: MatchKind
    cross_browser: bool = False
    registration_flow: bool = False

    status = RecognitionStatus.NEEDS_VERIFICATION

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "handle": self.handle,
            "masked_phone": self.masked_phone,
            "guid": self.guid,
            "device_key": self.device_id,
            "match": self.match.value,
            "cross_browser": self.cross_browser,
        }


@dataclass(frozen=True)
class Authenticated:
    handle: str
    guid: str
    device_id: Optional[str]
    match: MatchKind
    cross_browser: bool = False

    status = RecognitionStatus.AUTHENTICATED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "handle": self.handle,
            "guid": self.guid,
            "device_key": self.device_id,
            "match": self.match.value,
            "cross_browser": self.cross_browser,
        }


RecognitionResult = Union[Unregistered, NeedsVerification, Authenticated]
