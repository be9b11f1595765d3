# backend/app/security/errors.py
"""
Exceptions raised by the MFA engine.

Wrong codes and rate limiting are ordinary decisions, not exceptions.
These classes cover malformed input, missing enrollment and storage
failures.
"""


class MfaError(Exception):
    """Base class for MFA engine errors."""


class ValidationError(MfaError):
    """Malformed code, secret or device fingerprint."""


class ConfigurationMissing(MfaError):
    """The identity has no enrolled TOTP secret."""

    def __init__(self, identity: str):
        super().__init__(f"No MFA secret enrolled for {identity}")
        self.identity = identity


class StoreUnavailable(MfaError):
    """The backing store for profiles, trust records or attempts failed."""


class AlreadyEnrolled(MfaError):
    """Enrollment requested for an identity that already has a secret."""


class EnrollmentNotStarted(MfaError):
    """A code was submitted for enrollment without a pending secret."""
