# backend/app/schemas/mfa.py
"""
Pydantic schemas for the MFA endpoints.

Codes are never echoed back. The only response that carries a secret is
the enrollment response, because the user has to type or scan it.
"""
from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from backend.app.security.gate import Outcome


class SessionIdentity(BaseModel):
    """Claims read from the identity provider's session token."""
    sub: Optional[str] = None
    email: Optional[str] = None


class DeviceAttributes(BaseModel):
    """Browser characteristics used to derive a fingerprint server-side."""
    user_agent: Optional[str] = Field(None, max_length=512)
    language: Optional[str] = Field(None, max_length=64)
    platform: Optional[str] = Field(None, max_length=64)
    screen: Optional[str] = Field(None, max_length=32)
    timezone: Optional[str] = Field(None, max_length=64)
    canvas: Optional[str] = Field(None, max_length=256, description="Hash of the canvas rendering")


class DeviceInput(BaseModel):
    """
    Either an opaque fingerprint computed by the client, or the raw
    attributes to derive one from. The explicit fingerprint wins.
    """
    device_fingerprint: Optional[str] = Field(None, max_length=128)
    device: Optional[DeviceAttributes] = None


class EvaluateRequest(DeviceInput):
    code: Optional[str] = Field(None, max_length=16, description="6-digit authenticator code")


class EnrollVerifyRequest(DeviceInput):
    code: str = Field(..., min_length=1, max_length=16)


class EnrollRequest(BaseModel):
    account_name: Optional[str] = Field(
        None,
        max_length=255,
        description="Label shown in the authenticator app (defaults to the session email)"
    )


class DecisionResponse(BaseModel):
    decision: Outcome
    reason: str
    retry_after: Optional[int] = None
    remaining_attempts: Optional[int] = None


class EnrollResponse(BaseModel):
    secret: str
    provisioning_uri: str
    qr_code: Optional[str] = Field(None, description="Base64 PNG of the provisioning URI")


class TrustedDeviceResponse(BaseModel):
    fingerprint: str
    last_verified_at: datetime
    trusted: bool
    trusted_until: datetime


class MfaStatusResponse(BaseModel):
    mfa_enabled: bool
    enrollment_pending: bool
    trusted_devices: List[TrustedDeviceResponse]


class MessageResponse(BaseModel):
    success: bool
    message: str


class ProfileMetadata(BaseModel):
    """Per-user MFA state in the identity provider's user-metadata format."""
    ollypass_secret: Optional[str] = Field(None, max_length=64)
    trusted_devices: Dict[str, Optional[str]] = Field(
        default_factory=dict,
        description="Fingerprint to ISO-8601 time of the last successful code"
    )
