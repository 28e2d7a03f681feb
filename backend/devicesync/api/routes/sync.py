from fastapi import APIRouter, Depends, Query
from typing import Optional

from devicesync.api.dependencies import get_current_user, sync_service
from devicesync.api.schemas import ErrorResponse, SyncChange, SyncPullResponse, SyncPushRequest, SyncPushResponse
from devicesync.core.timeutil import from_iso, to_iso
from devicesync.models.identity import UserIdentity
from devicesync.services.identity_exceptions import IdentityValidationError
from devicesync.services.sync_service import SyncService

router = APIRouter(
    prefix="/sync",
    tags=["sync"],
    responses={401: {"model": ErrorResponse}, 422: {"model": ErrorResponse}},
)


@router.post("", response_model=SyncPushResponse)
async def push_changes(
    request: SyncPushRequest,
    user: UserIdentity = Depends(get_current_user),
    sync: SyncService = Depends(sync_service),
):
    """Apply a batch of offline changes. Failed ids stay queued on the client."""
    result = await sync.apply_changes(user, [change.to_remote() for change in request.changes])
    return SyncPushResponse(
        processed=result.acknowledged,
        applied=result.applied,
        superseded=result.superseded,
        rejected=result.rejected,
        failed=result.failed,
        auth_version=result.auth_version,
        corrections=[SyncChange(**change.to_dict()) for change in result.corrections],
        message=f"Processed {len(result.acknowledged)} of {len(request.changes)} change(s)",
    )


@router.get("", response_model=SyncPullResponse)
async def pull_changes(
    since: Optional[str] = Query(None, description="ISO timestamp of the last successful sync"),
    user: UserIdentity = Depends(get_current_user),
    sync: SyncService = Depends(sync_service),
):
    """Server changes for the caller's user and devices since a timestamp"""
    try:
        since_at = from_iso(since)
    except ValueError as e:
        raise IdentityValidationError(f"Invalid since timestamp: {since}") from e
    result = await sync.collect_changes(user, since_at)
    return SyncPullResponse(
        changes=[SyncChange(**change.to_dict()) for change in result.changes],
        since=to_iso(result.since),
        current_time=to_iso(result.current_time),
    )
