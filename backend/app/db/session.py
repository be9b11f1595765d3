# backend/app/db/session.py
"""
Async database session management for SQLAlchemy.

- aiosqlite for local development and tests (no pooling)
- asyncpg for PostgreSQL in production (pooled, pre-ping)
"""
from typing import AsyncGenerator

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool, AsyncAdaptedQueuePool

from backend.app.core.config import settings


def _create_async_engine() -> AsyncEngine:
    """
    Build the engine for settings.DATABASE_URL.

    SQLite gets NullPool and check_same_thread=False; PostgreSQL gets a
    small queue pool that recycles connections every 5 minutes.
    """
    if settings.is_sqlite:
        return create_async_engine(
            settings.DATABASE_URL,
            echo=settings.DATABASE_ECHO,
            poolclass=NullPool,
            connect_args={"check_same_thread": False},
        )

    return create_async_engine(
        settings.DATABASE_URL,
        echo=settings.DATABASE_ECHO,
        poolclass=AsyncAdaptedQueuePool,
        pool_size=5,
        max_overflow=10,
        # Hosted Postgres drops idle connections
        pool_pre_ping=True,
        pool_recycle=300,
    )


engine: AsyncEngine = _create_async_engine()


# expire_on_commit=False keeps loaded rows readable after commit
AsyncSessionLocal: async_sessionmaker[AsyncSession] = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI dependency yielding one session per request.

    Does NOT auto-commit; the MFA service commits after each write.
    """
    async with AsyncSessionLocal() as session:
        yield session
