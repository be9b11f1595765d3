# backend/app/security/gate.py
"""
MFA gate: one decision per login attempt.

Order of checks:
1. Rate limit (blocked keys never reach code verification)
2. Enrollment (no secret → pass-through)
3. Device trust (trusted device → allowed without a code)
4. Code verification (valid → trust device, invalid → record failure)

Steps 1-4 hold the limiter's lock for the identity, so concurrent
attempts cannot all pass a stale "not blocked" check.

The gate works on values: it receives the user's MfaProfile and returns
an updated copy in the GateResult. Persisting that copy is the caller's job.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from backend.app.core.clock import Clock, FixedClock, SystemClock, ensure_aware
from backend.app.security.profile import MfaProfile
from backend.app.security.rate_limit import LoginRateLimiter
from backend.app.security.totp import TotpVerifier
from backend.app.security.trust import DeviceTrustStore, TrustRecord

logger = logging.getLogger(__name__)


class Outcome(str, Enum):
    ALLOWED = "allowed"
    ALLOWED_AND_TRUSTED = "allowed_and_trusted"
    CHALLENGE_REQUIRED = "challenge_required"
    CHALLENGE_RETRY = "challenge_retry"
    BLOCKED = "blocked"


# Reasons attached to decisions
MFA_NOT_CONFIGURED = "mfa_not_configured"
TRUSTED_DEVICE = "trusted_device"
CODE_VERIFIED = "code_verified"
CODE_REQUIRED = "code_required"
CODE_INVALID = "code_invalid"
RATE_LIMITED = "rate_limited"
STORE_UNAVAILABLE = "store_unavailable"


@dataclass(frozen=True)
class Decision:
    outcome: Outcome
    reason: str
    retry_after: Optional[int] = None
    remaining_attempts: Optional[int] = None

    @property
    def allowed(self) -> bool:
        return self.outcome in (Outcome.ALLOWED, Outcome.ALLOWED_AND_TRUSTED)

    @classmethod
    def allow(cls, reason: str) -> "Decision":
        return cls(Outcome.ALLOWED, reason)

    @classmethod
    def allow_and_trust(cls) -> "Decision":
        return cls(Outcome.ALLOWED_AND_TRUSTED, CODE_VERIFIED)

    @classmethod
    def challenge(cls, reason: str = CODE_REQUIRED) -> "Decision":
        return cls(Outcome.CHALLENGE_REQUIRED, reason)

    @classmethod
    def retry(cls, remaining_attempts: int) -> "Decision":
        return cls(Outcome.CHALLENGE_RETRY, CODE_INVALID, remaining_attempts=remaining_attempts)

    @classmethod
    def block(cls, retry_after: int) -> "Decision":
        return cls(Outcome.BLOCKED, RATE_LIMITED, retry_after=retry_after)


@dataclass
class GateResult:
    decision: Decision
    profile: MfaProfile
    # Set only when this call wrote a new trust timestamp
    trust_record: Optional[TrustRecord] = None

    @property
    def trust_updated(self) -> bool:
        return self.trust_record is not None


@dataclass(frozen=True)
class Enrollment:
    identity: str
    secret: str
    provisioning_uri: str
    qr_code: Optional[str] = None


class MfaGate:
    def __init__(
        self,
        verifier: TotpVerifier,
        trust: DeviceTrustStore,
        limiter: LoginRateLimiter,
        clock: Optional[Clock] = None,
    ):
        self.verifier = verifier
        self.trust = trust
        self.limiter = limiter
        self.clock = clock or SystemClock()

    def _now(self, now: Optional[datetime]) -> datetime:
        return ensure_aware(now) if now is not None else self.clock.now()

    def _blocked(self, identity: str, now: datetime) -> Optional[Decision]:
        if not self.limiter.is_blocked(identity, now):
            return None
        retry_after = self.limiter.retry_after(identity, now)
        logger.warning(f"MFA attempt blocked for {identity}, retry after {retry_after}s")
        return Decision.block(retry_after)

    def _failed(self, identity: str, now: datetime) -> Decision:
        self.limiter.record_attempt(identity, now)
        remaining = self.limiter.remaining_attempts(identity, now)
        logger.info(f"Invalid MFA code for {identity}, {remaining} attempts left")
        return Decision.retry(remaining)

    def evaluate(
        self,
        identity: str,
        fingerprint: str,
        profile: MfaProfile,
        submitted_code: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> GateResult:
        """
        Decide whether this login may proceed.

        Never raises for a wrong or malformed code; those come back as
        CHALLENGE_RETRY with the number of attempts left.
        """
        now = self._now(now)
        profile = profile.copy()

        # Rate check, verification and recording run as one step per identity
        with self.limiter.hold(identity):
            return self._evaluate(identity, fingerprint, profile, submitted_code, now)

    def _evaluate(
        self,
        identity: str,
        fingerprint: str,
        profile: MfaProfile,
        submitted_code: Optional[str],
        now: datetime,
    ) -> GateResult:
        blocked = self._blocked(identity, now)
        if blocked:
            return GateResult(blocked, profile)

        if not profile.enrolled:
            return GateResult(Decision.allow(MFA_NOT_CONFIGURED), profile)

        record = self.trust.lookup(profile, fingerprint)
        if self.trust.is_trusted(record, now):
            logger.debug(f"Trusted device recognized for {identity}")
            return GateResult(Decision.allow(TRUSTED_DEVICE), profile)

        if not submitted_code:
            return GateResult(Decision.challenge(), profile)

        if self.verifier.verify(profile.secret, submitted_code, FixedClock(now)):
            record = self.trust.record_trust(profile, fingerprint, now)
            logger.info(f"MFA verified for {identity}")
            return GateResult(Decision.allow_and_trust(), profile, record)

        return GateResult(self._failed(identity, now), profile)

    def enroll(self, identity: str, account: Optional[str] = None, with_qr: bool = True) -> Enrollment:
        """
        Generate a fresh secret and its provisioning URI.

        Nothing is persisted; the secret becomes the user's only after
        ``finalize_enrollment`` accepts a code derived from it.
        """
        secret = self.verifier.generate_secret()
        uri = self.verifier.provisioning_uri(secret, account or identity)
        qr_code = self.verifier.qr_code(uri) if with_qr else None
        logger.info(f"MFA enrollment started for {identity}")
        return Enrollment(identity=identity, secret=secret, provisioning_uri=uri, qr_code=qr_code)

    def finalize_enrollment(
        self,
        identity: str,
        fingerprint: str,
        profile: MfaProfile,
        secret: str,
        code: str,
        now: Optional[datetime] = None,
    ) -> GateResult:
        """
        Bind ``secret`` to the profile once the user proves they can derive codes.

        The enrolling device is trusted on success. Failures count
        against the same limiter as login attempts.
        """
        now = self._now(now)
        profile = profile.copy()

        with self.limiter.hold(identity):
            blocked = self._blocked(identity, now)
            if blocked:
                return GateResult(blocked, profile)

            if not self.verifier.verify(secret, code, FixedClock(now)):
                return GateResult(self._failed(identity, now), profile)

        profile.secret = secret
        profile.trusted_devices.clear()
        record = self.trust.record_trust(profile, fingerprint, now)
        logger.info(f"MFA enrollment completed for {identity}")
        return GateResult(Decision.allow_and_trust(), profile, record)
