# backend/app/api/v1/endpoints/mfa.py
"""
MFA endpoints.

Endpoints:
- POST /mfa/evaluate - Decide whether this login needs a code
- POST /mfa/enroll - Start enrollment (secret + QR code)
- POST /mfa/enroll/verify - Confirm enrollment with a first code
- GET /mfa/status - Enrollment state and trusted devices
- DELETE /mfa/devices/{fingerprint} - Forget one trusted device
- DELETE /mfa/admin/{identity} - Admin reset of a user's MFA
- GET /mfa/admin/{identity}/metadata - Export MFA state as provider metadata
- PUT /mfa/admin/{identity}/metadata - Import MFA state from provider metadata

All user endpoints require the identity provider's session token.
"""
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Response, status

from backend.app.api import deps
from backend.app.schemas.mfa import (
    DecisionResponse,
    DeviceInput,
    EnrollRequest,
    EnrollResponse,
    EnrollVerifyRequest,
    EvaluateRequest,
    MessageResponse,
    MfaStatusResponse,
    ProfileMetadata,
    SessionIdentity,
    TrustedDeviceResponse,
)
from backend.app.security import device as device_security
from backend.app.security import errors
from backend.app.security.gate import Decision, Outcome
from backend.app.services.mfa import MfaService

router = APIRouter()


def _resolve_fingerprint(body: DeviceInput) -> str:
    try:
        if body.device_fingerprint:
            return device_security.normalize_fingerprint(body.device_fingerprint)
        if body.device:
            return device_security.derive_fingerprint(body.device.model_dump())
    except errors.ValidationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))

    raise HTTPException(
        status_code=status.HTTP_400_BAD_REQUEST,
        detail="device_fingerprint or device attributes are required",
    )


def _decision_response(decision: Decision, response: Response) -> DecisionResponse:
    if decision.outcome == Outcome.BLOCKED:
        response.status_code = status.HTTP_429_TOO_MANY_REQUESTS
        response.headers["Retry-After"] = str(decision.retry_after)

    return DecisionResponse(
        decision=decision.outcome,
        reason=decision.reason,
        retry_after=decision.retry_after,
        remaining_attempts=decision.remaining_attempts,
    )


@router.post("/evaluate", response_model=DecisionResponse)
async def evaluate_login(
    request: EvaluateRequest,
    response: Response,
    session: SessionIdentity = Depends(deps.get_current_identity),
    service: MfaService = Depends(deps.get_mfa_service),
):
    """
    Decide the MFA step for a password-verified session.

    Call once without a code; on challenge_required call again with the
    code the user typed. A blocked identity gets 429 with Retry-After.
    """
    fingerprint = _resolve_fingerprint(request)
    result = await service.evaluate(session.sub, fingerprint, request.code)
    return _decision_response(result.decision, response)


@router.post("/enroll", response_model=EnrollResponse)
async def start_enrollment(
    request: Optional[EnrollRequest] = None,
    session: SessionIdentity = Depends(deps.get_current_identity),
    service: MfaService = Depends(deps.get_mfa_service),
):
    """
    Generate a new secret for the authenticated user.

    The secret stays pending until /enroll/verify accepts a code from it.
    Calling this again replaces the pending secret.
    """
    account = (request.account_name if request else None) or session.email or session.sub
    try:
        enrollment = await service.begin_enrollment(session.sub, account)
    except errors.AlreadyEnrolled:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="MFA is already enabled for this account",
        )

    return EnrollResponse(
        secret=enrollment.secret,
        provisioning_uri=enrollment.provisioning_uri,
        qr_code=enrollment.qr_code,
    )


@router.post("/enroll/verify", response_model=DecisionResponse)
async def verify_enrollment(
    request: EnrollVerifyRequest,
    response: Response,
    session: SessionIdentity = Depends(deps.get_current_identity),
    service: MfaService = Depends(deps.get_mfa_service),
):
    """Activate the pending secret and trust the current device."""
    fingerprint = _resolve_fingerprint(request)
    try:
        result = await service.complete_enrollment(session.sub, fingerprint, request.code)
    except errors.EnrollmentNotStarted:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="No enrollment in progress",
        )

    return _decision_response(result.decision, response)


@router.get("/status", response_model=MfaStatusResponse)
async def get_status(
    session: SessionIdentity = Depends(deps.get_current_identity),
    service: MfaService = Depends(deps.get_mfa_service),
):
    mfa_status = await service.status(session.sub)
    return MfaStatusResponse(
        mfa_enabled=mfa_status.enrolled,
        enrollment_pending=mfa_status.enrollment_pending,
        trusted_devices=[
            TrustedDeviceResponse(
                fingerprint=device.record.fingerprint,
                last_verified_at=device.record.last_verified_at,
                trusted=device.trusted,
                trusted_until=device.trusted_until,
            )
            for device in mfa_status.devices
        ],
    )


@router.delete("/devices/{fingerprint}", response_model=MessageResponse)
async def forget_device(
    fingerprint: str,
    session: SessionIdentity = Depends(deps.get_current_identity),
    service: MfaService = Depends(deps.get_mfa_service),
):
    if not await service.forget_device(session.sub, fingerprint):
        raise HTTPException(status_code=404, detail="Device not found")
    return MessageResponse(success=True, message="Device will be challenged on next login.")


@router.delete(
    "/admin/{identity}",
    response_model=MessageResponse,
    dependencies=[Depends(deps.require_admin)],
)
async def reset_mfa(
    identity: str,
    service: MfaService = Depends(deps.get_mfa_service),
):
    """Remove the user's secret, trusted devices and failed attempts."""
    try:
        await service.reset(identity.strip())
    except errors.ConfigurationMissing:
        raise HTTPException(status_code=404, detail="MFA is not configured for this user")

    return MessageResponse(success=True, message="MFA has been reset.")


@router.get(
    "/admin/{identity}/metadata",
    response_model=ProfileMetadata,
    dependencies=[Depends(deps.require_admin)],
)
async def export_metadata(
    identity: str,
    service: MfaService = Depends(deps.get_mfa_service),
):
    """Secret and trusted devices in the identity provider's metadata format."""
    return ProfileMetadata(**await service.export_metadata(identity.strip()))


@router.put(
    "/admin/{identity}/metadata",
    response_model=ProfileMetadata,
    dependencies=[Depends(deps.require_admin)],
)
async def import_metadata(
    identity: str,
    request: ProfileMetadata,
    service: MfaService = Depends(deps.get_mfa_service),
):
    """
    Replace a user's MFA state with metadata kept by the identity provider.

    Unreadable device timestamps are skipped; a malformed secret or
    fingerprint is rejected with 400.
    """
    try:
        profile = await service.import_metadata(identity.strip(), request.model_dump())
    except errors.ValidationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))

    return ProfileMetadata(**profile.to_metadata())
