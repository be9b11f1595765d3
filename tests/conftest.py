"""
Pytest configuration and shared fixtures for OllyPass tests.

This module provides common test fixtures for:
- A throwaway SQLite database (configured before the app is imported)
- Fixed clocks and the RFC 6238 reference secret
- Provider session tokens
- A TestClient with the clock and attempt store overridden
"""
import asyncio
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path

import pytest

# Settings are read at import time, so the environment goes first
_TEST_DIR = Path(tempfile.mkdtemp(prefix="ollypass-tests-"))
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_TEST_DIR / 'ollypass-test.db'}"
os.environ["SECRET_KEY"] = "test-secret-key"
os.environ["ADMIN_API_KEY"] = "test-admin-key"
os.environ["ATTEMPT_STORE"] = "database"
os.environ["CORS_ORIGINS"] = ""

from fastapi.testclient import TestClient  # noqa: E402
from jose import jwt  # noqa: E402

from backend.app.api import deps  # noqa: E402
from backend.app.core.clock import FixedClock  # noqa: E402
from backend.app.db.base import Base, engine  # noqa: E402
from backend.app.main import app  # noqa: E402
from backend.app.security.rate_limit import InMemoryAttemptStore  # noqa: E402
from backend.app.security.totp import get_current_totp  # noqa: E402


# RFC 6238 appendix B secret ("12345678901234567890")
RFC_SECRET = "GEZDGNBVGY3TQOJQGEZDGNBVGY3TQOJQ"

# 2024-03-01 is a Friday, 2024-03-04 the Monday after
FRIDAY_EVENING = datetime(2024, 3, 1, 18, 0, tzinfo=timezone.utc)
WEDNESDAY_NOON = datetime(2024, 3, 6, 12, 0, tzinfo=timezone.utc)


# ============================================
# Time and secret fixtures
# ============================================

@pytest.fixture
def clock():
    """Clock pinned to a Wednesday noon (UTC), far from any weekend rule."""
    return FixedClock(WEDNESDAY_NOON)


@pytest.fixture
def friday_clock():
    return FixedClock(FRIDAY_EVENING)


@pytest.fixture
def secret():
    return RFC_SECRET


@pytest.fixture
def wrong_code():
    """
    Return a factory producing a code that is NOT valid for (secret, clock)
    within one step of drift in either direction.
    """
    def _wrong(secret, clock, digest="sha1"):
        valid = set()
        for offset in (-30, 0, 30):
            step_clock = FixedClock(clock.now())
            step_clock.advance(seconds=offset)
            valid.add(get_current_totp(secret, step_clock, digest))
        for candidate in ("000000", "111111", "222222", "333333"):
            if candidate not in valid:
                return candidate
        raise AssertionError("could not find an invalid code")

    return _wrong


# ============================================
# Identity provider fixtures
# ============================================

@pytest.fixture
def make_token():
    def _make(sub, email=None, key="test-secret-key"):
        claims = {"sub": sub}
        if email:
            claims["email"] = email
        return jwt.encode(claims, key, algorithm="HS256")

    return _make


@pytest.fixture
def auth_headers(make_token):
    def _headers(sub="u2", email=None):
        return {"Authorization": f"Bearer {make_token(sub, email)}"}

    return _headers


# ============================================
# Database and app fixtures
# ============================================

async def _recreate_tables():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)


@pytest.fixture
def clean_db():
    """Drop and recreate every table so each test starts empty."""
    asyncio.run(_recreate_tables())
    yield


@pytest.fixture
def memory_store():
    return InMemoryAttemptStore()


@pytest.fixture
def client(clean_db, clock, memory_store):
    """TestClient with the clock and in-memory attempt store overridden."""
    app.dependency_overrides[deps.get_clock] = lambda: clock
    app.dependency_overrides[deps.get_attempt_store] = lambda: memory_store

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()
