from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, Dict, Any, List
import json

from ..core.timeutil import utcnow, to_iso, from_iso


class ChangeTable:
    """Entities that travel through the sync protocol"""
    USERS = "users"
    DEVICES = "devices"


class ChangeType:
    UPDATE = "update"
    UPSERT = "upsert"


class SyncResultStatus(str, Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    ERROR = "error"
    OFFLINE = "offline"
    STALE = "stale"


@dataclass
class ChangeQueueEntry:
    """A local mutation waiting to be pushed to the server"""
    table_name: str
    record_id: str
    change_type: str
    change_data: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    synced: bool = False
    id: Optional[int] = None

    def to_wire(self) -> Dict[str, Any]:
        """Shape sent to the server in a push batch"""
        return {
            "id": str(self.id),
            "table_name": self.table_name,
            "record_id": self.record_id,
            "operation": self.change_type,
            "data": self.change_data,
            "created_at": to_iso(self.created_at),
        }

    @classmethod
    def from_row(cls, row: dict):
        """Create ChangeQueueEntry from a local_changes row"""
        data = row.get("change_data")
        return cls(
            id=row.get("id"),
            table_name=row["table_name"],
            record_id=row["record_id"],
            change_type=row["change_type"],
            change_data=json.loads(data) if data else {},
            created_at=from_iso(row.get("created_at")),
            synced=bool(row.get("synced")),
        )


@dataclass
class RemoteChange:
    """A server-side change, either pushed by a client or pulled from the server"""
    id: str
    table_name: str
    record_id: str
    operation: str
    data: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[datetime] = None

    @property
    def updated_at(self) -> Optional[datetime]:
        return from_iso(self.data.get("updated_at")) or self.created_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "table_name": self.table_name,
            "record_id": self.record_id,
            "operation": self.operation,
            "data": self.data,
            "created_at": to_iso(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: dict):
        return cls(
            id=str(data["id"]),
            table_name=data["table_name"],
            record_id=str(data["record_id"]),
            operation=data.get("operation") or ChangeType.UPDATE,
            data=dict(data.get("data") or {}),
            created_at=from_iso(data.get("created_at")),
        )


@dataclass
class PushResult:
    """Server acknowledgement of a pushed batch"""
    applied: List[str] = field(default_factory=list)
    superseded: List[str] = field(default_factory=list)
    rejected: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    auth_version: Optional[int] = None
    # Current server rows of entities whose changes were rejected
    corrections: List[RemoteChange] = field(default_factory=list)

    @property
    def acknowledged(self) -> List[str]:
        """Ids the client may mark synced; only failed ones are retried"""
        return self.applied + self.superseded + self.rejected


@dataclass
class PullResult:
    """Server deltas since a timestamp"""
    changes: List[RemoteChange]
    since: datetime
    current_time: datetime


@dataclass
class SyncResult:
    pushed: int = 0
    pulled: int = 0
    status: SyncResultStatus = SyncResultStatus.SUCCESS
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.status == SyncResultStatus.SUCCESS

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pushed": self.pushed,
            "pulled": self.pulled,
            "status": self.status.value,
            "message": self.message,
        }
