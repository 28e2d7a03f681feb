from fastapi import APIRouter, Depends

from devicesync.api.dependencies import get_login_session, identity_service
from devicesync.api.schemas import ErrorResponse, RecognizeRequest, RecognitionResponse
from devicesync.models.identity import UserHints
from devicesync.services.identity_service import IdentityService
from devicesync.services.session_manager import LoginSession

router = APIRouter(prefix="/devices", tags=["devices"], responses={422: {"model": ErrorResponse}})


@router.post("/recognize", response_model=RecognitionResponse)
async def recognize_device(
    request: RecognizeRequest,
    session: LoginSession = Depends(get_login_session),
    identity: IdentityService = Depends(identity_service),
):
    """Decide whether the presenting device is signed in, needs a code, or is unknown"""
    hints = UserHints(
        user_guid=request.user_guid,
        user_handle=request.user_handle,
        user_phone=request.user_phone,
    )
    result = await identity.recognize_device(
        request.device_key,
        hints=hints,
        registration_flow=request.registration_flow,
        session=session,
    )
    return RecognitionResponse(**result.to_dict(), session_id=session.session_id)
