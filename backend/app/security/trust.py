# backend/app/security/trust.py
"""
Device trust decisions.

A device that has proven possession of the TOTP secret is trusted for
TRUST_WINDOW_HOURS. When carryover is enabled, a verification made on
Friday (or over the weekend) also stays valid until Monday at the cutoff
hour, so the first login after a weekend does not need a new code.

Expiry is computed from the stored timestamp; records are never deleted
because they expired.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Optional

from backend.app.core.clock import ensure_aware
from backend.app.security.carryover import carryover_window, is_monday_before_cutoff
from backend.app.security.profile import MfaProfile

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TrustRecord:
    identity: str
    fingerprint: str
    last_verified_at: datetime


class DeviceTrustStore:
    """
    Trust rules over the ``trusted_devices`` map of an ``MfaProfile``.

    Holds configuration only. Records live in the profile passed in, and
    there is at most one timestamp per (identity, fingerprint).
    """

    def __init__(
        self,
        trust_window_hours: int = 24,
        carryover_enabled: bool = True,
        cutoff_hour: int = 8,
        tz: tzinfo = timezone.utc,
    ):
        self.trust_window = timedelta(hours=trust_window_hours)
        self.carryover_enabled = carryover_enabled
        self.cutoff_hour = cutoff_hour
        self.tz = tz

    def lookup(self, profile: MfaProfile, fingerprint: str) -> Optional[TrustRecord]:
        verified_at = profile.trusted_devices.get(fingerprint)
        if verified_at is None:
            return None
        return TrustRecord(profile.identity, fingerprint, ensure_aware(verified_at))

    def record_trust(self, profile: MfaProfile, fingerprint: str, now: datetime) -> TrustRecord:
        """Overwrite the timestamp for ``fingerprint`` in ``profile``."""
        now = ensure_aware(now)
        profile.trusted_devices[fingerprint] = now
        logger.info(f"Trusted device recorded for {profile.identity}")
        return TrustRecord(profile.identity, fingerprint, now)

    def is_trusted(self, record: Optional[TrustRecord], now: datetime) -> bool:
        if record is None:
            return False

        now = ensure_aware(now)
        verified_at = ensure_aware(record.last_verified_at)

        if now - verified_at <= self.trust_window:
            return True

        if not self.carryover_enabled:
            return False

        return self._within_weekend_carryover(verified_at, now)

    def trusted_until(self, record: TrustRecord) -> datetime:
        """
        Latest instant at which ``record`` is still trusted.

        Not a continuous interval: a Friday evening record lapses on
        Saturday evening and is trusted again from Monday 00:00 until the
        cutoff. The end of the carryover interval is exclusive, so a record whose
        carryover reaches further than the base window reports the last
        microsecond before the cutoff.
        """
        verified_at = ensure_aware(record.last_verified_at)
        base_end = verified_at + self.trust_window
        if not self.carryover_enabled:
            return base_end

        start, end = carryover_window(verified_at, self.tz, self.cutoff_hour)
        carry_end = end - timedelta(microseconds=1)
        if start <= verified_at < end and carry_end > base_end:
            return carry_end
        return base_end

    def _within_weekend_carryover(self, verified_at: datetime, now: datetime) -> bool:
        if not is_monday_before_cutoff(now, self.tz, self.cutoff_hour):
            return False

        start, end = carryover_window(verified_at, self.tz, self.cutoff_hour)
        # ``now`` must be the Monday that closes the record's own weekend,
        # otherwise a Friday from weeks ago would revive every Monday.
        return start <= verified_at < end and start <= now < end
