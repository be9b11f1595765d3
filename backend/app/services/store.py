# backend/app/services/store.py
"""
SQL adapters for MFA profiles, trusted devices and the failed-attempt log.

Nothing here commits implicitly; the MFA service calls ``commit`` once per
request. Every SQLAlchemy failure surfaces as StoreUnavailable.
"""
import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterable, Iterator, List, Optional, Tuple

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.clock import ensure_aware
from backend.app.models.login_attempt import LoginAttempt
from backend.app.models.mfa_profile import MfaProfileRecord
from backend.app.models.trusted_device import TrustedDevice
from backend.app.security.errors import StoreUnavailable
from backend.app.security.profile import MfaProfile
from backend.app.security.trust import TrustRecord

logger = logging.getLogger(__name__)


def _utc(value: datetime) -> datetime:
    # SQLite keeps no offset, so everything is written and compared in UTC
    return ensure_aware(value).astimezone(timezone.utc)


@contextmanager
def _store_errors(action: str) -> Iterator[None]:
    try:
        yield
    except SQLAlchemyError as exc:
        logger.error(f"MFA store failure during {action}: {exc}")
        raise StoreUnavailable(f"{action} failed") from exc


class SqlProfileStore:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def _record(self, identity: str, for_update: bool = False) -> Optional[MfaProfileRecord]:
        query = select(MfaProfileRecord).where(MfaProfileRecord.identity == identity)
        if for_update:
            # Row lock until commit; SQLite has none and relies on one worker
            query = query.with_for_update()
        result = await self.db.execute(query)
        return result.scalars().first()

    async def load(
        self, identity: str, for_update: bool = False
    ) -> Tuple[MfaProfile, Optional[str]]:
        """
        Return the user's profile and pending enrollment secret, if any.

        ``for_update`` locks the profile row for the rest of the transaction,
        serializing attempts for one identity across workers.
        """
        with _store_errors("profile load"):
            record = await self._record(identity, for_update)
            result = await self.db.execute(
                select(TrustedDevice).where(TrustedDevice.identity == identity)
            )
            devices = result.scalars().all()

        profile = MfaProfile(
            identity=identity,
            secret=record.totp_secret if record else None,
            trusted_devices={
                device.fingerprint: ensure_aware(device.last_verified_at)
                for device in devices
            },
        )
        return profile, record.pending_secret if record else None

    async def save_trust(self, record: TrustRecord) -> None:
        """Insert or overwrite the timestamp for one (identity, fingerprint)."""
        with _store_errors("trust save"):
            result = await self.db.execute(
                select(TrustedDevice).where(
                    TrustedDevice.identity == record.identity,
                    TrustedDevice.fingerprint == record.fingerprint,
                )
            )
            device = result.scalars().first()
            if device is None:
                device = TrustedDevice(identity=record.identity, fingerprint=record.fingerprint)
            device.last_verified_at = _utc(record.last_verified_at)
            self.db.add(device)
            await self.db.flush()

    async def replace_trusted_devices(self, profile: MfaProfile) -> None:
        with _store_errors("trust replace"):
            await self.db.execute(
                delete(TrustedDevice).where(TrustedDevice.identity == profile.identity)
            )
            for fingerprint, verified_at in profile.trusted_devices.items():
                self.db.add(TrustedDevice(
                    identity=profile.identity,
                    fingerprint=fingerprint,
                    last_verified_at=_utc(verified_at),
                ))
            await self.db.flush()

    async def forget_device(self, identity: str, fingerprint: str) -> bool:
        with _store_errors("device removal"):
            result = await self.db.execute(
                delete(TrustedDevice).where(
                    TrustedDevice.identity == identity,
                    TrustedDevice.fingerprint == fingerprint,
                )
            )
        return result.rowcount > 0

    async def set_pending_secret(self, identity: str, secret: str) -> None:
        with _store_errors("pending secret save"):
            record = await self._record(identity)
            if record is None:
                record = MfaProfileRecord(identity=identity)
            record.pending_secret = secret
            self.db.add(record)
            await self.db.flush()

    async def activate_secret(self, identity: str, secret: Optional[str]) -> None:
        with _store_errors("secret activation"):
            record = await self._record(identity)
            if record is None:
                record = MfaProfileRecord(identity=identity)
            record.totp_secret = secret
            record.pending_secret = None
            self.db.add(record)
            await self.db.flush()

    async def delete_profile(self, identity: str) -> bool:
        """Remove the secret, pending secret and every trusted device."""
        with _store_errors("profile reset"):
            result = await self.db.execute(
                delete(MfaProfileRecord).where(MfaProfileRecord.identity == identity)
            )
            await self.db.execute(
                delete(TrustedDevice).where(TrustedDevice.identity == identity)
            )
        return result.rowcount > 0

    async def commit(self) -> None:
        with _store_errors("commit"):
            await self.db.commit()

    async def rollback(self) -> None:
        with _store_errors("rollback"):
            await self.db.rollback()


class SqlAttemptLog:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def load(self, key: str, since: datetime) -> List[datetime]:
        with _store_errors("attempt load"):
            result = await self.db.execute(
                select(LoginAttempt.attempted_at)
                .where(LoginAttempt.key == key, LoginAttempt.attempted_at >= _utc(since))
                .order_by(LoginAttempt.attempted_at)
            )
            return [ensure_aware(value) for value in result.scalars().all()]

    async def append(self, key: str, attempts: Iterable[datetime], prune_before: datetime) -> None:
        """Store new attempts and drop rows that left the window."""
        with _store_errors("attempt save"):
            await self.db.execute(
                delete(LoginAttempt).where(
                    LoginAttempt.key == key,
                    LoginAttempt.attempted_at < _utc(prune_before),
                )
            )
            for attempted_at in attempts:
                self.db.add(LoginAttempt(key=key, attempted_at=_utc(attempted_at)))
            await self.db.flush()

    async def clear(self, key: str) -> None:
        with _store_errors("attempt clear"):
            await self.db.execute(delete(LoginAttempt).where(LoginAttempt.key == key))
