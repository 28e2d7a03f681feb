from .identity import (
    IdentityRecord,
    UserIdentity,
    UserHints,
    VerificationChallenge,
    SyncStatus,
    SyncStateEntry,
    is_valid_device_id
)
from .recognition import (
    RecognitionStatus,
    MatchKind,
    Unregistered,
    NeedsVerification,
    Authenticated,
    RecognitionResult
)
from .sync import (
    ChangeTable,
    ChangeType,
    ChangeQueueEntry,
    RemoteChange,
    PushResult,
    PullResult,
    SyncResult,
    SyncResultStatus
)

__all__ = [
    "IdentityRecord",
    "UserIdentity",
    "UserHints",
    "VerificationChallenge",
    "SyncStatus",
    "SyncStateEntry",
    "is_valid_device_id",
    "RecognitionStatus",
    "MatchKind",
    "Unregistered",
    "NeedsVerification",
    "Authenticated",
    "RecognitionResult",
    "ChangeTable",
    "ChangeType",
    "ChangeQueueEntry",
    "RemoteChange",
    "PushResult",
    "PullResult",
    "SyncResult",
    "SyncResultStatus"
]
