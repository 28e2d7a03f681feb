from fastapi import APIRouter, Depends

from devicesync.api.dependencies import get_login_session, identity_service
from devicesync.api.schemas import (
    ErrorResponse,
    CompleteRegistrationRequest,
    UserPublic,
    VerificationConfirmRequest,
    VerificationIssuedResponse,
    VerificationOutcomeResponse,
    VerificationRequest,
)
from devicesync.core.timeutil import to_iso
from devicesync.models.identity import mask_phone
from devicesync.services.identity_service import IdentityService, VerificationOutcome
from devicesync.services.session_manager import LoginSession

router = APIRouter(
    prefix="/verification",
    tags=["verification"],
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}, 422: {"model": ErrorResponse}},
)


def _outcome_response(outcome: VerificationOutcome, session: LoginSession) -> VerificationOutcomeResponse:
    return VerificationOutcomeResponse(
        linked=outcome.linked,
        needs_handle=outcome.needs_handle,
        device_key=outcome.device_id,
        user=UserPublic(**outcome.user.to_public_dict()) if outcome.user else None,
        session_id=session.session_id,
    )


@router.post("", response_model=VerificationIssuedResponse)
async def send_verification_code(
    request: VerificationRequest,
    session: LoginSession = Depends(get_login_session),
    identity: IdentityService = Depends(identity_service),
):
    """Send a verification code by SMS; a new request replaces any live code"""
    challenge = await identity.issue_verification(
        request.phone,
        session=session,
        handle=request.handle,
        device_id=request.device_key,
    )
    return VerificationIssuedResponse(
        masked_phone=mask_phone(challenge.phone),
        expires_at=to_iso(challenge.expires_at),
        session_id=session.session_id,
    )


@router.post("/confirm", response_model=VerificationOutcomeResponse)
async def confirm_verification_code(
    request: VerificationConfirmRequest,
    session: LoginSession = Depends(get_login_session),
    identity: IdentityService = Depends(identity_service),
):
    """Check a submitted code and link the device to the phone's user"""
    outcome = await identity.consume_verification(
        request.phone,
        request.code,
        device_id=request.device_key,
        session=session,
        handle=request.handle,
    )
    return _outcome_response(outcome, session)


@router.post("/handle", response_model=VerificationOutcomeResponse)
async def complete_registration(
    request: CompleteRegistrationRequest,
    session: LoginSession = Depends(get_login_session),
    identity: IdentityService = Depends(identity_service),
):
    """Pick a handle for a newly confirmed number and finish registration"""
    outcome = await identity.complete_registration(session, request.handle, device_id=request.device_key)
    return _outcome_response(outcome, session)
