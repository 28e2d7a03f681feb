"""
Sync protocol schemas for the API.
"""

from typing import Optional, List, Dict, Any
from pydantic import BaseModel, Field

from devicesync.models.sync import RemoteChange


class SyncChange(BaseModel):
    """One change as it travels over the wire."""
    id: str
    table_name: str = Field(..., description="users or devices")
    record_id: str
    operation: str = Field("update", description="update or upsert")
    data: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[str] = None

    def to_remote(self) -> RemoteChange:
        return RemoteChange.from_dict(self.model_dump())


class SyncPushRequest(BaseModel):
    """Request schema for a pushed batch of local changes."""
    changes: List[SyncChange] = Field(default_factory=list)


class SyncPushResponse(BaseModel):
    """Response schema for a pushed batch."""
    success: bool = True
    processed: List[str] = Field(default_factory=list, description="Ids the client may mark synced")
    applied: List[str] = Field(default_factory=list)
    superseded: List[str] = Field(default_factory=list)
    rejected: List[str] = Field(default_factory=list)
    failed: List[str] = Field(default_factory=list, description="Ids to retry on the next sync")
    auth_version: Optional[int] = None
    corrections: List[SyncChange] = Field(
        default_factory=list, description="Server rows that replace rejected local changes"
    )
    message: str = ""


class SyncPullResponse(BaseModel):
    """Response schema for server deltas."""
    changes: List[SyncChange] = Field(default_factory=list)
    since: str
    current_time: str
