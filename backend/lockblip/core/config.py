"""
LockBlip Ghost - Configuration
==============================

All application settings loaded from environment variables.
Uses pydantic-settings for validation and type conversion.
"""

from functools import lru_cache
from typing import Literal

from pydantic import computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ==========================================================================
    # Application
    # ==========================================================================
    APP_NAME: str = "LockBlip Ghost"
    APP_VERSION: str = "1.0.0"
    ENVIRONMENT: Literal["development", "staging", "production", "test"] = "development"
    DEBUG: bool = False

    # ==========================================================================
    # API
    # ==========================================================================
    API_V1_PREFIX: str = "/api/v1"
    CORS_ORIGINS: list[str] = ["http://localhost:3000", "http://localhost:5173"]

    # ==========================================================================
    # Database (supports SQLite and PostgreSQL)
    # ==========================================================================
    DATABASE_URL: str = "sqlite+aiosqlite:///./lockblip_ghost.db"
    DATABASE_POOL_SIZE: int = 5
    DATABASE_MAX_OVERFLOW: int = 10
    DATABASE_ECHO: bool = False

    @computed_field  # type: ignore[misc]
    @property
    def is_sqlite(self) -> bool:
        return "sqlite" in self.DATABASE_URL

    # ==========================================================================
    # Authentication (tokens are issued by the main LockBlip API)
    # ==========================================================================
    SECRET_KEY: str = "CHANGE-ME-IN-PRODUCTION-USE-LONG-RANDOM-STRING"
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 30

    # ==========================================================================
    # Ghost Mode
    # ==========================================================================
    GHOST_SESSION_MINUTES: int = 30
    GHOST_PIN_MIN_LENGTH: int = 4
    GHOST_PIN_MAX_LENGTH: int = 8
    GHOST_DEFAULT_AUTO_LOCK_SECONDS: int = 30

    # bcrypt cost; tests lower it to keep hashing fast
    PIN_HASH_ROUNDS: int = 12

    ACCESS_PIN_LENGTH: int = 6
    ACCESS_GRANT_MINUTES: int = 60
    CONVERSATION_TTL_HOURS: int = 24

    MESSAGE_DEFAULT_AUTO_DELETE_SECONDS: int = 30
    MESSAGE_MAX_AUTO_DELETE_SECONDS: int = 86400
    MESSAGE_TTL_HOURS: int = 24

    # ==========================================================================
    # Background Workers
    # ==========================================================================
    REAPER_ENABLED: bool = True
    REAPER_INTERVAL_SECONDS: float = 10.0
    REAPER_BATCH_SIZE: int = 100

    AUDIT_QUEUE_SIZE: int = 1000
    AUDIT_PAGE_SIZE: int = 100
    AUDIT_RETENTION_DAYS: int = 30

    # ==========================================================================
    # Computed Properties
    # ==========================================================================
    @computed_field  # type: ignore[misc]
    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT == "development"

    @computed_field  # type: ignore[misc]
    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    @computed_field  # type: ignore[misc]
    @property
    def is_test(self) -> bool:
        return self.ENVIRONMENT == "test"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Convenience export
settings = get_settings()
