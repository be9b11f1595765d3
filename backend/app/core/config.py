"""
Configuration for the OllyPass MFA service, loaded with pydantic-settings.

Security considerations:
- SECRET_KEY is shared with the identity provider and MUST be set in production
- ADMIN_API_KEY disables the admin reset endpoint when left empty
- CORS_ORIGINS parsed from comma-separated env var, never defaults to "*"
- Database URLs normalized for async drivers automatically
"""
from functools import lru_cache
from typing import List
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


SUPPORTED_TOTP_DIGESTS = ("sha1", "sha256", "sha512")


class Settings(BaseSettings):
    """
    Strictly typed application settings.

    Priority for loading:
    1. Environment variables (highest priority)
    2. .env file (via pydantic-settings)
    3. Default values (lowest priority, dev-safe only)
    """

    # ─────────────────────────────────────────────────────────────
    # Application metadata
    # ─────────────────────────────────────────────────────────────
    PROJECT_NAME: str = "OllyPass"
    PROJECT_VERSION: str = "1.0.0"
    API_V1_STR: str = "/api/v1"
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"

    # ─────────────────────────────────────────────────────────────
    # Identity provider session tokens
    # Tokens are issued by the provider after password login; this
    # service only validates them.
    # ─────────────────────────────────────────────────────────────
    SECRET_KEY: str = "INSECURE_DEV_KEY_CHANGE_IN_PRODUCTION"
    ALGORITHM: str = "HS256"
    IDENTITY_PROVIDER_TOKEN_URL: str = "/auth/login"

    # Empty key = admin endpoints always answer 403
    ADMIN_API_KEY: str = ""

    # ─────────────────────────────────────────────────────────────
    # TOTP
    # ─────────────────────────────────────────────────────────────
    MFA_ISSUER: str = "OllyTracker"
    TOTP_DIGEST: str = "sha1"
    TOTP_DRIFT_STEPS: int = 1

    @field_validator("TOTP_DIGEST", mode="before")
    @classmethod
    def check_totp_digest(cls, v: str) -> str:
        """Authenticator apps only understand the RFC 6238 HMAC digests."""
        digest = (v or "sha1").strip().lower()
        if digest not in SUPPORTED_TOTP_DIGESTS:
            raise ValueError(
                f"TOTP_DIGEST must be one of {', '.join(SUPPORTED_TOTP_DIGESTS)}"
            )
        return digest

    # ─────────────────────────────────────────────────────────────
    # Device trust window
    # CARRYOVER_* controls the Friday → Monday morning extension.
    # MFA_TIMEZONE decides what "Monday 08:00" means.
    # ─────────────────────────────────────────────────────────────
    TRUST_WINDOW_HOURS: int = 24
    CARRYOVER_ENABLED: bool = True
    CARRYOVER_CUTOFF_HOUR: int = 8
    MFA_TIMEZONE: str = "UTC"

    @field_validator("MFA_TIMEZONE", mode="before")
    @classmethod
    def check_timezone(cls, v: str) -> str:
        name = (v or "UTC").strip()
        try:
            ZoneInfo(name)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"Unknown timezone: {name}") from exc
        return name

    @field_validator("CARRYOVER_CUTOFF_HOUR")
    @classmethod
    def check_cutoff_hour(cls, v: int) -> int:
        if not 0 <= v <= 23:
            raise ValueError("CARRYOVER_CUTOFF_HOUR must be between 0 and 23")
        return v

    # ─────────────────────────────────────────────────────────────
    # Failed attempt limiter
    # ATTEMPT_STORE: "database" (shared, survives restarts) or
    # "memory" (process-local fallback, lost on restart)
    # ─────────────────────────────────────────────────────────────
    RATE_LIMIT_WINDOW_SECONDS: int = 900
    RATE_LIMIT_MAX_ATTEMPTS: int = 5
    ATTEMPT_STORE: str = "database"

    @field_validator("ATTEMPT_STORE", mode="before")
    @classmethod
    def check_attempt_store(cls, v: str) -> str:
        backend = (v or "database").strip().lower()
        if backend not in ("database", "memory"):
            raise ValueError("ATTEMPT_STORE must be 'database' or 'memory'")
        return backend

    # ─────────────────────────────────────────────────────────────
    # Database Configuration
    # Priority: DATABASE_URL env var → SQLite fallback for local dev
    # ─────────────────────────────────────────────────────────────
    DATABASE_URL: str = "sqlite+aiosqlite:///./ollypass.db"
    DATABASE_ECHO: bool = False

    @field_validator("DATABASE_URL", mode="before")
    @classmethod
    def normalize_database_url(cls, v: str) -> str:
        """
        Normalize database URLs for async SQLAlchemy compatibility.

        Conversions:
        - postgres://     → postgresql+asyncpg://
        - postgresql://   → postgresql+asyncpg://
        - sqlite:///      → sqlite+aiosqlite:///
        """
        if v is None:
            return "sqlite+aiosqlite:///./ollypass.db"

        url = v.strip()

        if url.startswith("postgres://"):
            return url.replace("postgres://", "postgresql+asyncpg://", 1)

        if url.startswith("postgresql://") and "+asyncpg" not in url:
            return url.replace("postgresql://", "postgresql+asyncpg://", 1)

        if url.startswith("sqlite:///") and "+aiosqlite" not in url:
            return url.replace("sqlite:///", "sqlite+aiosqlite:///", 1)

        return url

    # ─────────────────────────────────────────────────────────────
    # CORS Configuration
    # Empty string → empty list (NOT "*")
    # ─────────────────────────────────────────────────────────────
    CORS_ORIGINS: str = "http://localhost:5500,http://127.0.0.1:5500"

    @property
    def BACKEND_CORS_ORIGINS(self) -> List[str]:
        """Parse CORS_ORIGINS into a list, dropping blank entries."""
        if not self.CORS_ORIGINS or not self.CORS_ORIGINS.strip():
            return []

        return [
            origin.strip()
            for origin in self.CORS_ORIGINS.split(",")
            if origin.strip()
        ]

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        # Unknown keys in .env are ignored
        extra="ignore",
    )

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT.lower() == "production"

    @property
    def is_sqlite(self) -> bool:
        return "sqlite" in self.DATABASE_URL.lower()

    @property
    def timezone(self) -> ZoneInfo:
        """Timezone used for the weekend carryover calendar."""
        return ZoneInfo(self.MFA_TIMEZONE)


@lru_cache()
def get_settings() -> Settings:
    """
    Cached settings instance.

    Settings are parsed once per process; tests that need different
    values construct ``Settings(...)`` directly.
    """
    return Settings()


settings = get_settings()
