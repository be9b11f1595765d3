# backend/app/services/mfa.py
"""
MFA service: wires the gate to persistent storage for one request.

Each public method holds the identity's lock for the whole
load → decide → persist sequence. That lock is per process; login and
enrollment also lock the identity's ``mfa_profiles`` row (SELECT ... FOR
UPDATE) so workers sharing a PostgreSQL database are serialized too.
SQLite ignores row locks, so a SQLite deployment must run one worker.

Store failures:
- while loading: the login is answered with CHALLENGE_REQUIRED
  (reason store_unavailable); nothing is trusted
- while recording trust: same answer, the verified code is not turned
  into device trust
- while recording a failed attempt: logged, the decision stands
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.clock import Clock, SystemClock
from backend.app.core.config import Settings
from backend.app.security.device import normalize_fingerprint
from backend.app.security.errors import (
    AlreadyEnrolled,
    ConfigurationMissing,
    EnrollmentNotStarted,
    StoreUnavailable,
)
from backend.app.security.gate import (
    STORE_UNAVAILABLE,
    Decision,
    Enrollment,
    GateResult,
    MfaGate,
)
from backend.app.security.profile import MfaProfile
from backend.app.security.rate_limit import (
    AttemptStore,
    InMemoryAttemptStore,
    LoginRateLimiter,
    SnapshotAttemptStore,
)
from backend.app.security.totp import TotpVerifier, normalize_secret
from backend.app.security.trust import DeviceTrustStore, TrustRecord
from backend.app.services.locks import KeyedLock, identity_locks
from backend.app.services.store import SqlAttemptLog, SqlProfileStore

logger = logging.getLogger(__name__)


def build_gate(settings: Settings, attempt_store: AttemptStore, clock: Clock) -> MfaGate:
    """Assemble an MfaGate from settings."""
    verifier = TotpVerifier(
        digest=settings.TOTP_DIGEST,
        drift_steps=settings.TOTP_DRIFT_STEPS,
        issuer=settings.MFA_ISSUER,
    )
    trust = DeviceTrustStore(
        trust_window_hours=settings.TRUST_WINDOW_HOURS,
        carryover_enabled=settings.CARRYOVER_ENABLED,
        cutoff_hour=settings.CARRYOVER_CUTOFF_HOUR,
        tz=settings.timezone,
    )
    limiter = LoginRateLimiter(
        attempt_store,
        window_seconds=settings.RATE_LIMIT_WINDOW_SECONDS,
        max_attempts=settings.RATE_LIMIT_MAX_ATTEMPTS,
    )
    return MfaGate(verifier, trust, limiter, clock)


@dataclass(frozen=True)
class DeviceStatus:
    record: TrustRecord
    trusted: bool
    trusted_until: datetime


@dataclass(frozen=True)
class MfaStatus:
    identity: str
    enrolled: bool
    enrollment_pending: bool
    devices: List[DeviceStatus]


class MfaService:
    def __init__(
        self,
        db: AsyncSession,
        settings: Settings,
        clock: Optional[Clock] = None,
        memory_store: Optional[InMemoryAttemptStore] = None,
        locks: KeyedLock = identity_locks,
    ):
        self.settings = settings
        self.clock = clock or SystemClock()
        self.profiles = SqlProfileStore(db)
        self.attempt_log = SqlAttemptLog(db)
        self.memory_store = memory_store if memory_store is not None else InMemoryAttemptStore()
        self.locks = locks

    @property
    def window(self) -> timedelta:
        return timedelta(seconds=self.settings.RATE_LIMIT_WINDOW_SECONDS)

    @property
    def uses_database_attempts(self) -> bool:
        return self.settings.ATTEMPT_STORE == "database"

    async def _attempt_store(self, identity: str, now: datetime) -> AttemptStore:
        if not self.uses_database_attempts:
            return self.memory_store
        since = now - self.window
        attempts = await self.attempt_log.load(identity, since)
        return SnapshotAttemptStore({identity: attempts})

    async def _flush_attempts(self, identity: str, store: AttemptStore, now: datetime) -> None:
        if not isinstance(store, SnapshotAttemptStore):
            return
        added = store.added.get(identity)
        if added:
            prune_before = now - self.window
            await self.attempt_log.append(identity, added, prune_before)

    async def _rollback_quietly(self) -> None:
        try:
            await self.profiles.rollback()
        except StoreUnavailable:
            logger.error("Rollback failed after MFA store error")

    async def evaluate(
        self,
        identity: str,
        fingerprint: str,
        submitted_code: Optional[str] = None,
    ) -> GateResult:
        now = self.clock.now()

        async with self.locks.hold(identity):
            try:
                profile, _ = await self.profiles.load(identity, for_update=True)
                store = await self._attempt_store(identity, now)
            except StoreUnavailable:
                logger.warning(f"MFA store unavailable, challenging {identity}")
                return GateResult(Decision.challenge(STORE_UNAVAILABLE), MfaProfile(identity))

            gate = build_gate(self.settings, store, self.clock)
            result = gate.evaluate(identity, fingerprint, profile, submitted_code, now)

            try:
                if result.trust_updated:
                    await self.profiles.save_trust(result.trust_record)
                await self._flush_attempts(identity, store, now)
                await self.profiles.commit()
            except StoreUnavailable:
                await self._rollback_quietly()
                if result.trust_updated:
                    logger.error(f"Device trust not recorded for {identity}, failing closed")
                    return GateResult(Decision.challenge(STORE_UNAVAILABLE), profile)
                logger.error(f"Failed attempt for {identity} was not persisted")

            return result

    async def begin_enrollment(self, identity: str, account: Optional[str] = None) -> Enrollment:
        """Issue a new pending secret. Raises AlreadyEnrolled if MFA is active."""
        async with self.locks.hold(identity):
            profile, _ = await self.profiles.load(identity)
            if profile.enrolled:
                raise AlreadyEnrolled(f"MFA already enabled for {identity}")

            gate = build_gate(self.settings, self.memory_store, self.clock)
            enrollment = gate.enroll(identity, account)
            await self.profiles.set_pending_secret(identity, enrollment.secret)
            await self.profiles.commit()
            return enrollment

    async def complete_enrollment(self, identity: str, fingerprint: str, code: str) -> GateResult:
        """
        Confirm the pending secret with a code.

        On success the secret becomes active and the enrolling device is the
        only trusted device. Raises EnrollmentNotStarted without a pending secret.
        """
        now = self.clock.now()

        async with self.locks.hold(identity):
            profile, pending = await self.profiles.load(identity, for_update=True)
            if not pending:
                raise EnrollmentNotStarted(f"No pending enrollment for {identity}")

            store = await self._attempt_store(identity, now)
            gate = build_gate(self.settings, store, self.clock)
            result = gate.finalize_enrollment(identity, fingerprint, profile, pending, code, now)

            try:
                if result.trust_updated:
                    await self.profiles.activate_secret(identity, pending)
                    await self.profiles.replace_trusted_devices(result.profile)
                await self._flush_attempts(identity, store, now)
                await self.profiles.commit()
            except StoreUnavailable:
                await self._rollback_quietly()
                raise

            return result

    async def status(self, identity: str) -> MfaStatus:
        now = self.clock.now()
        profile, pending = await self.profiles.load(identity)
        trust = build_gate(self.settings, self.memory_store, self.clock).trust

        devices = []
        for fingerprint in sorted(profile.trusted_devices):
            record = trust.lookup(profile, fingerprint)
            devices.append(DeviceStatus(
                record=record,
                trusted=trust.is_trusted(record, now),
                trusted_until=trust.trusted_until(record),
            ))

        return MfaStatus(
            identity=identity,
            enrolled=profile.enrolled,
            enrollment_pending=bool(pending),
            devices=devices,
        )

    async def forget_device(self, identity: str, fingerprint: str) -> bool:
        async with self.locks.hold(identity):
            removed = await self.profiles.forget_device(identity, fingerprint)
            await self.profiles.commit()
        if removed:
            logger.info(f"Trusted device removed for {identity}")
        return removed

    async def reset(self, identity: str) -> None:
        """
        Admin reset: destroy the secret, trusted devices and failed attempts.

        Raises ConfigurationMissing when the identity has nothing enrolled.
        """
        async with self.locks.hold(identity):
            removed = await self.profiles.delete_profile(identity)
            if not removed:
                await self._rollback_quietly()
                raise ConfigurationMissing(identity)

            await self.attempt_log.clear(identity)
            await self.profiles.commit()
            self.memory_store.clear(identity)

        logger.info(f"MFA reset for {identity}")

    async def export_metadata(self, identity: str) -> Dict[str, Any]:
        """The identity's secret and trusted devices as a provider metadata blob."""
        profile, _ = await self.profiles.load(identity)
        return profile.to_metadata()

    async def import_metadata(self, identity: str, metadata: Dict[str, Any]) -> MfaProfile:
        """
        Replace the stored secret and trusted devices with a provider blob.

        Used to migrate users whose MFA state lives in the identity
        provider's user metadata. Unreadable device timestamps are dropped,
        a pending enrollment is discarded. Raises ValidationError for a
        malformed secret or fingerprint.
        """
        profile = MfaProfile.from_metadata(identity, metadata)
        if profile.secret:
            profile.secret = normalize_secret(profile.secret)
        profile.trusted_devices = {
            normalize_fingerprint(fingerprint): verified_at
            for fingerprint, verified_at in profile.trusted_devices.items()
        }

        async with self.locks.hold(identity):
            try:
                await self.profiles.activate_secret(identity, profile.secret)
                await self.profiles.replace_trusted_devices(profile)
                await self.profiles.commit()
            except StoreUnavailable:
                await self._rollback_quietly()
                raise

        logger.info(f"MFA metadata imported for {identity}")
        return profile
