"""
Configuration Management

Uses Pydantic Settings for environment-based configuration.
Loads from .env file automatically.
"""

from typing import Optional
from functools import lru_cache
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    # Database (SQLite fallback when no URL is set)
    DATABASE_URL: Optional[str] = None
    POSTGRES_URL: Optional[str] = None
    SQLITE_PATH: str = "bulkengine_dev.db"
    SQL_DEBUG: bool = False

    # Application Settings
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"

    # Benchmark comparison
    PRICE_CHANGE_THRESHOLD: float = 0.10  # Relative, strictly greater than

    # Duplicate resolution
    DUPLICATE_STALE_DAYS: int = 90  # Reviews older than this default to move_to_new

    # Listing
    DEFAULT_PAGE_SIZE: int = 50
    MAX_PAGE_SIZE: int = 500

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"  # Ignore extra fields in .env file
        case_sensitive = False  # Allow both UPPERCASE and lowercase


@lru_cache
def get_settings() -> Settings:
    """Get or create cached settings instance."""
    return Settings()
