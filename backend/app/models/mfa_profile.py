# backend/app/models/mfa_profile.py
"""
ORM model standing in for the identity provider's per-user MFA metadata.

Only the TOTP secret (active and pending) is kept here; device trust and
failed attempts have their own tables.
"""
from sqlalchemy import Column, Integer, String, DateTime
from sqlalchemy.sql import func

from backend.app.db.base import Base


class MfaProfileRecord(Base):
    __tablename__ = "mfa_profiles"

    id = Column(Integer, primary_key=True, index=True)

    # `sub` claim of the provider session token
    identity = Column(String(255), unique=True, index=True, nullable=False)

    # Base32 secret, NULL until an enrollment is verified
    totp_secret = Column(String(64), nullable=True)

    # Secret handed out by /mfa/enroll and not yet confirmed with a code
    pending_secret = Column(String(64), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now()
    )
