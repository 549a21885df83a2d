"""Application settings loaded from environment variables."""
from functools import lru_cache
from typing import Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings for the AFMS core. Every value can be overridden via .env."""

    APP_NAME: str = "AFMS Core"
    APP_VERSION: str = "0.1.0"

    # SQLite locally, PostgreSQL (asyncpg) in production
    DATABASE_URL: str = "sqlite+aiosqlite:///./afms.db"

    LOG_LEVEL: str = "INFO"

    # Bearer token gating the HTTP API. Unset means open (local development).
    API_TOKEN: Optional[str] = None

    # Rules engine
    RULES_CACHE_TTL_SECONDS: int = 300

    # Idempotency
    IDEMPOTENCY_TTL_SECONDS: int = 24 * 60 * 60
    ATTENDANCE_DEDUP_WINDOW_MINUTES: int = 5
    ATTENDANCE_DEDUP_FAIL_OPEN: bool = True

    # Event bus
    EVENT_BUS_MAX_RETRIES: int = 3

    # Observability
    HEALTH_CHECK_TIMEOUT_SECONDS: float = 10.0
    METRICS_COLLECTION_INTERVAL_SECONDS: int = 30  # 0 disables collection
    MEMORY_LIMIT_MB: int = 1024

    # Projections: check-ins after this hour count as late
    WORK_START_HOUR: int = 8

    @field_validator("DATABASE_URL")
    @classmethod
    def use_async_driver(cls, v: str) -> str:
        """Render/Heroku hand out postgres:// URLs; the async engine needs asyncpg."""
        if v.startswith("postgres://"):
            v = v.replace("postgres://", "postgresql://", 1)
        if v.startswith("postgresql://"):
            v = v.replace("postgresql://", "postgresql+asyncpg://", 1)
        return v

    @field_validator("LOG_LEVEL")
    @classmethod
    def normalize_log_level(cls, v: str) -> str:
        return v.upper()

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()
