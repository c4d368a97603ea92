"""
Environment configuration — single source of truth for all settings.

Uses pydantic-settings for type-safe config with .env file support.
All values have sensible defaults for local development.

Usage:
    from vecisafe.app.core.config import settings
    print(settings.FANOUT_RADIUS_M)
"""

from __future__ import annotations

from functools import lru_cache
from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application-wide settings loaded from environment variables or .env file.

    Precedence: env var > .env file > default value
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # ── Application ──
    APP_NAME: str = "VeciSafe Core"
    APP_VERSION: str = "1.0.0"
    ENVIRONMENT: str = "development"  # development | staging | production
    DEBUG: bool = True
    LOG_LEVEL: str = "INFO"  # DEBUG | INFO | WARNING | ERROR | CRITICAL
    SECRET_KEY: str = "dev-secret-key-change-in-production"

    # ── Server ──
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    WORKERS: int = 1
    RELOAD: bool = True

    # ── CORS ──
    CORS_ORIGINS: List[str] = [
        "http://localhost:8081",
        "http://localhost:19006",
    ]
    CORS_ALLOW_ALL: bool = True  # False in production

    # ── Session store ──
    SESSION_BACKEND: str = "memory"  # memory | redis
    REDIS_URL: str = "redis://localhost:6379/0"
    SESSION_KEY_PREFIX: str = "vecisafe"

    # ── Identity verification ──
    REQUIRE_VERIFIED: bool = False  # reporting policy
    VERIFICATION_CODE_TTL_SECONDS: int = 300  # 5 min
    VERIFICATION_MAX_ATTEMPTS: int = 5
    VERIFICATION_CODE_LENGTH: int = 6
    SMS_PROVIDER: str = "simulation"  # simulation | http
    SMS_GATEWAY_URL: Optional[str] = None
    SMS_API_KEY: Optional[str] = None

    # ── Fanout ──
    FANOUT_RADIUS_M: float = 500.0
    FANOUT_MAX_ATTEMPTS: int = 5
    FANOUT_BACKOFF_BASE_SECONDS: float = 1.0
    FANOUT_BACKOFF_FACTOR: float = 2.0
    FANOUT_BACKOFF_MAX_SECONDS: Optional[float] = None
    FANOUT_WORKERS: int = 16  # concurrent push sends
    PUSH_PROVIDER: str = "simulation"  # simulation | http
    PUSH_GATEWAY_URL: Optional[str] = None
    PUSH_API_KEY: Optional[str] = None
    PUSH_TIMEOUT_SECONDS: float = 10.0

    # ── Spatial ──
    GEO_INDEX_BACKEND: str = "grid"  # grid | linear
    GEO_CELL_SIZE_DEG: float = 0.01  # ~1.1 km of latitude

    # ── Alerts ──
    ALERT_DETAILS_MAX_LENGTH: int = 2000
    ALERT_MEDIA_MAX: int = 10
    ALERT_FEED_DEFAULT_LIMIT: int = 50

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"


@lru_cache()
def get_settings() -> Settings:
    """Cached settings singleton."""
    return Settings()


settings = get_settings()
