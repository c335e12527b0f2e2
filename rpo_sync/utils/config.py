"""
Configuration Management

Uses Pydantic Settings for environment-based configuration.
Loads from .env file automatically.

Cache connection settings live in `rpo_sync.cache.config.CacheConfig`.
"""

from typing import Optional
from functools import lru_cache
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    # Durable store (PostgreSQL in production, SQLite for local development)
    DATABASE_URL: Optional[str] = None
    POSTGRES_URL: Optional[str] = None
    SQLITE_PATH: str = "rpo_sync_dev.db"
    DB_POOL_SIZE: int = 10
    DB_MAX_OVERFLOW: int = 10
    DB_POOL_TIMEOUT: int = 30
    SQL_DEBUG: bool = False

    # Reconciliation worker
    SYNC_INTERVAL_SECONDS: float = 1.0
    DISCOVERY_INTERVAL_SECONDS: float = 60.0
    SYNC_MAX_ATTEMPTS: Optional[int] = None  # None = retry forever

    # Tenant discovery
    SCHEMAS_FILE: str = "schemas.json"
    TENANT_SCHEMA_PREFIX: str = "RPO_"

    # Application Settings
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"  # Ignore extra fields in .env file
        case_sensitive = False  # Allow both UPPERCASE and lowercase


@lru_cache
def get_settings() -> Settings:
    """Get or create cached settings instance."""
    return Settings()
