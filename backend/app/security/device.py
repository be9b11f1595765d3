# backend/app/security/device.py
"""
Device fingerprints.

A fingerprint is an opaque string the browser can reproduce on every
visit. It is a convenience signal only: two devices with the same
attributes collide and share trust, and a client can present any
fingerprint it likes. The TOTP code remains the actual proof.
"""
import hashlib
import json
from typing import Any, Mapping

from backend.app.security.errors import ValidationError


FINGERPRINT_MAX_LENGTH = 128

# Attributes collected by the login page
FINGERPRINT_ATTRIBUTES = (
    "user_agent",
    "language",
    "platform",
    "screen",
    "timezone",
    "canvas",
)


def derive_fingerprint(attributes: Mapping[str, Any]) -> str:
    """
    Derive a stable fingerprint from client-observable attributes.

    Only the known attribute names are used, serialized in a fixed order,
    so extra or reordered keys do not change the result.
    Returns 32 hex characters of SHA-256.
    """
    canonical = {
        name: str(attributes.get(name) or "").strip()
        for name in FINGERPRINT_ATTRIBUTES
    }
    if not any(canonical.values()):
        raise ValidationError("No device attributes supplied")

    payload = json.dumps(canonical, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()[:32]


def normalize_fingerprint(fingerprint: str) -> str:
    """Validate an opaque fingerprint supplied by the client."""
    cleaned = (fingerprint or "").strip()
    if not cleaned:
        raise ValidationError("Device fingerprint is empty")
    if len(cleaned) > FINGERPRINT_MAX_LENGTH:
        raise ValidationError(
            f"Device fingerprint longer than {FINGERPRINT_MAX_LENGTH} characters"
        )
    return cleaned
