# backend/app/models/trusted_device.py
from sqlalchemy import Column, Integer, String, DateTime, UniqueConstraint

from backend.app.db.base import Base


class TrustedDevice(Base):
    """
    Last successful MFA verification per (identity, device fingerprint).

    One row per pair; a new verification updates ``last_verified_at``.
    Rows are not removed when trust lapses.
    """
    __tablename__ = "trusted_devices"
    __table_args__ = (
        UniqueConstraint("identity", "fingerprint", name="uq_trusted_device_identity_fingerprint"),
    )

    id = Column(Integer, primary_key=True, index=True)
    identity = Column(String(255), index=True, nullable=False)
    fingerprint = Column(String(128), nullable=False)
    last_verified_at = Column(DateTime(timezone=True), nullable=False)
