from fastapi import APIRouter, Depends, Header
from typing import Optional

from devicesync.api.dependencies import identity_service
from devicesync.api.schemas import AuthVersionResponse, ErrorResponse
from devicesync.services.identity_service import IdentityService

router = APIRouter(prefix="/auth", tags=["authentication"], responses={401: {"model": ErrorResponse}})


@router.get("/version", response_model=AuthVersionResponse)
async def get_auth_version(
    x_device_key: Optional[str] = Header(None),
    x_auth_version: Optional[int] = Header(None),
    identity: IdentityService = Depends(identity_service),
):
    """
    Report the current auth version of the device's user and whether the
    presented one is still valid. A stale answer tells the client to wipe
    its local identity state.
    """
    user = await identity.device_user(x_device_key)
    status = await identity.check_auth_version(user.guid, x_auth_version)
    return AuthVersionResponse(
        guid=user.guid,
        auth_version=user.auth_version,
        presented_version=x_auth_version,
        status=status.value,
    )
