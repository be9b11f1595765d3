# backend/app/models/login_attempt.py
from sqlalchemy import Column, Integer, String, DateTime, Index

from backend.app.db.base import Base


class LoginAttempt(Base):
    """
    One failed MFA attempt.

    Rows older than the limiter window are deleted the next time the same
    key records a failure.
    """
    __tablename__ = "login_attempts"
    __table_args__ = (
        Index("ix_login_attempts_key_attempted_at", "key", "attempted_at"),
    )

    id = Column(Integer, primary_key=True)
    key = Column(String(255), nullable=False)
    attempted_at = Column(DateTime(timezone=True), nullable=False)
