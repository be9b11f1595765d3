# backend/app/security/totp.py
"""
TOTP (Time-based One-Time Password) implementation
RFC 6238 compliant - Compatible with Google Authenticator, Authy, Aegis

Key points:
- 6-digit codes
- 30-second time step
- HMAC-SHA1 by default (SHA-256/512 selectable via TOTP_DIGEST)
- Base32 secret encoding, 32 characters = 160 bits
- Every function takes the clock explicitly; nothing reads the wall clock
"""
import base64
import binascii
import hashlib
import io
from typing import Optional

import pyotp
import qrcode

from backend.app.core.clock import Clock
from backend.app.security.errors import ValidationError


TIME_STEP_SECONDS = 30
CODE_DIGITS = 6

# 32 base32 characters carry 160 bits of entropy
SECRET_LENGTH = 32

_BASE32_ALPHABET = frozenset("ABCDEFGHIJKLMNOPQRSTUVWXYZ234567")

_DIGESTS = {
    "sha1": hashlib.sha1,
    "sha256": hashlib.sha256,
    "sha512": hashlib.sha512,
}


def generate_totp_secret() -> str:
    """
    Generate a new random TOTP secret (Base32 encoded).
    Returns 32-character Base32 string.
    """
    return pyotp.random_base32(length=SECRET_LENGTH)


def normalize_secret(secret: str) -> str:
    """
    Canonical form of a Base32 secret: upper case, no spaces or padding.

    Raises ValidationError for anything that is not at least 160 bits of
    valid Base32.
    """
    if not secret:
        raise ValidationError("Secret is empty")

    cleaned = secret.strip().replace(" ", "").replace("-", "").upper().rstrip("=")
    if len(cleaned) < SECRET_LENGTH:
        raise ValidationError("Secret is shorter than 160 bits")
    if not set(cleaned) <= _BASE32_ALPHABET:
        raise ValidationError("Secret contains non-Base32 characters")

    try:
        base64.b32decode(cleaned + "=" * (-len(cleaned) % 8))
    except binascii.Error as exc:
        raise ValidationError("Secret is not valid Base32") from exc

    return cleaned


def normalize_code(code: str) -> str:
    """Strip whitespace from a submitted code and check it is 6 digits."""
    if not code:
        raise ValidationError("Code is empty")

    cleaned = code.strip().replace(" ", "")
    if len(cleaned) != CODE_DIGITS or not cleaned.isdigit():
        raise ValidationError(f"Code must be {CODE_DIGITS} digits")
    return cleaned


def _build_totp(secret: str, digest: str = "sha1") -> pyotp.TOTP:
    try:
        digestmod = _DIGESTS[digest]
    except KeyError:
        raise ValidationError(f"Unsupported TOTP digest: {digest}")

    return pyotp.TOTP(
        normalize_secret(secret),
        digits=CODE_DIGITS,
        digest=digestmod,
        interval=TIME_STEP_SECONDS,
    )


def time_step(clock: Clock) -> int:
    """Index of the 30-second window containing ``clock.now()``."""
    return int(clock.now().timestamp() // TIME_STEP_SECONDS)


def get_current_totp(secret: str, clock: Clock, digest: str = "sha1") -> str:
    """
    Get the TOTP code for the step containing ``clock.now()``.
    Useful for testing only - never expose this in production!
    """
    return _build_totp(secret, digest).at(clock.now())


def verify_totp(
    secret: str,
    code: str,
    clock: Clock,
    drift_steps: int = 1,
    digest: str = "sha1",
) -> bool:
    """
    Verify a 6-digit TOTP code.

    Accepts the codes of every step in [step - drift_steps, step + drift_steps].
    Comparison is constant-time. Malformed codes or secrets return False.
    """
    try:
        cleaned = normalize_code(code)
        totp = _build_totp(secret, digest)
    except ValidationError:
        return False

    return totp.verify(cleaned, for_time=clock.now(), valid_window=max(0, drift_steps))


def get_totp_uri(
    secret: str,
    account: str,
    issuer: str = "OllyTracker",
    digest: str = "sha1",
) -> str:
    """
    Generate the otpauth:// URI for QR code encoding.

    Format: otpauth://totp/{issuer}:{account}?secret={secret}&issuer={issuer}

    Authenticator apps scan this to add the account.
    """
    return _build_totp(secret, digest).provisioning_uri(name=account, issuer_name=issuer)


def generate_qr_code_base64(uri: str) -> str:
    """
    Generate a QR code image for ``uri`` as Base64-encoded PNG.

    Frontend can display this directly using: <img src="data:image/png;base64,{result}">
    """
    qr = qrcode.QRCode(
        version=1,
        error_correction=qrcode.constants.ERROR_CORRECT_L,
        box_size=10,
        border=4,
    )
    qr.add_data(uri)
    qr.make(fit=True)

    img = qr.make_image(fill_color="black", back_color="white")

    buffer = io.BytesIO()
    img.save(buffer, format="PNG")
    buffer.seek(0)

    return base64.b64encode(buffer.read()).decode("utf-8")


class TotpVerifier:
    """
    TOTP operations bound to one digest/drift/issuer configuration.

    Stateless apart from configuration; safe to share between requests.
    """

    def __init__(self, digest: str = "sha1", drift_steps: int = 1, issuer: str = "OllyTracker"):
        if digest not in _DIGESTS:
            raise ValidationError(f"Unsupported TOTP digest: {digest}")
        self.digest = digest
        self.drift_steps = drift_steps
        self.issuer = issuer

    def generate_secret(self) -> str:
        return generate_totp_secret()

    def current_code(self, secret: str, clock: Clock) -> str:
        return get_current_totp(secret, clock, self.digest)

    def verify(
        self,
        secret: str,
        code: str,
        clock: Clock,
        drift_steps: Optional[int] = None,
    ) -> bool:
        if drift_steps is None:
            drift_steps = self.drift_steps
        return verify_totp(secret, code, clock, drift_steps, self.digest)

    def provisioning_uri(self, secret: str, account: str) -> str:
        return get_totp_uri(secret, account, self.issuer, self.digest)

    def qr_code(self, uri: str) -> str:
        return generate_qr_code_base64(uri)
