# backend/app/api/deps.py
import secrets
from typing import Optional

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import jwt, JWTError
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.clock import Clock, SystemClock
from backend.app.core.config import Settings, get_settings, settings
from backend.app.db.base import get_db
from backend.app.schemas.mfa import SessionIdentity
from backend.app.security.rate_limit import InMemoryAttemptStore
from backend.app.services.mfa import MfaService

# Tokens are minted by the identity provider; tokenUrl only documents where
reusable_oauth2 = OAuth2PasswordBearer(tokenUrl=settings.IDENTITY_PROVIDER_TOKEN_URL)

system_clock = SystemClock()

# Fallback attempt log for ATTEMPT_STORE=memory, shared by every request
memory_attempt_store = InMemoryAttemptStore()


def get_app_settings() -> Settings:
    return get_settings()


def get_clock() -> Clock:
    return system_clock


def get_attempt_store() -> InMemoryAttemptStore:
    return memory_attempt_store


async def get_current_identity(
        token: str = Depends(reusable_oauth2),
        app_settings: Settings = Depends(get_app_settings),
) -> SessionIdentity:
    """
    Validate the provider session token.

    The provider has already checked the password; a valid token means
    "password verified, MFA not yet decided".
    """
    try:
        payload = jwt.decode(
            token, app_settings.SECRET_KEY, algorithms=[app_settings.ALGORITHM]
        )
        session = SessionIdentity(**payload)
    except (JWTError, ValidationError):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Could not validate credentials",
        )

    if not session.sub or not session.sub.strip():
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Could not validate credentials",
        )

    # Subjects are opaque and case-sensitive; only the email label is folded
    session.sub = session.sub.strip()
    if session.email:
        session.email = session.email.strip().lower()
    return session


async def get_mfa_service(
        db: AsyncSession = Depends(get_db),
        app_settings: Settings = Depends(get_app_settings),
        clock: Clock = Depends(get_clock),
        store: InMemoryAttemptStore = Depends(get_attempt_store),
) -> MfaService:
    return MfaService(db, app_settings, clock=clock, memory_store=store)


async def require_admin(
        x_admin_key: Optional[str] = Header(None),
        app_settings: Settings = Depends(get_app_settings),
) -> None:
    expected = app_settings.ADMIN_API_KEY
    if not expected or not x_admin_key or not secrets.compare_digest(x_admin_key, expected):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin key required",
        )
