"""
Application Configuration
Environment variables and settings management for the authorization engine
"""

from pydantic_settings import BaseSettings
from pydantic import Field, field_validator
from typing import Optional


class Settings(BaseSettings):
    """Authorization engine settings with environment variable support"""

    # Application
    ENVIRONMENT: str = Field(default="development", description="Application environment")
    DEBUG: bool = Field(default=False, description="Debug mode")
    LOG_LEVEL: str = Field(default="INFO", description="Logging level")

    # Assignment store (no URL means the in-memory store is used)
    DATABASE_URL: Optional[str] = Field(default=None, description="Assignment store database URL")
    DB_POOL_SIZE: int = Field(default=10, description="Database connection pool size")
    DB_MAX_OVERFLOW: int = Field(default=20, description="Database max overflow connections")
    DB_POOL_TIMEOUT: int = Field(default=30, description="Database pool timeout in seconds")
    DB_POOL_RECYCLE: int = Field(default=3600, description="Database pool recycle time in seconds")

    # Shared decision cache tier
    REDIS_URL: Optional[str] = Field(default=None, description="Redis URL for the shared decision cache")

    # Decision cache
    RBAC_CACHE_ENABLED: bool = Field(default=True, description="Enable the decision cache")
    RBAC_CACHE_MAX_ENTRIES: int = Field(default=10_000, description="Maximum cached permission sets")
    RBAC_CACHE_TTL_SECONDS: float = Field(default=300.0, description="Ceiling on cached entry age")

    # Resolution
    RBAC_STORE_TIMEOUT_SECONDS: Optional[float] = Field(
        default=2.0,
        description="Upper bound for one resolution against the assignment store"
    )
    RBAC_CATALOG_PATH: Optional[str] = Field(
        default=None,
        description="JSON role catalog; built-in defaults are used when unset"
    )
    RBAC_AUDIT_LOG_PATH: Optional[str] = Field(
        default=None,
        description="File that additionally receives every authorization decision"
    )

    @field_validator("ENVIRONMENT")
    @classmethod
    def validate_environment(cls, v):
        """Validate environment value"""
        allowed = ["development", "test", "staging", "production"]
        if v not in allowed:
            raise ValueError(f"Environment must be one of: {allowed}")
        return v

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v):
        """Validate log level"""
        allowed = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in allowed:
            raise ValueError(f"Log level must be one of: {allowed}")
        return v.upper()

    @field_validator("RBAC_CACHE_MAX_ENTRIES")
    @classmethod
    def validate_cache_size(cls, v):
        if v < 1:
            raise ValueError("RBAC_CACHE_MAX_ENTRIES must be positive")
        return v

    @field_validator("RBAC_STORE_TIMEOUT_SECONDS")
    @classmethod
    def validate_store_timeout(cls, v):
        if v is not None and v <= 0:
            return None
        return v

    model_config = {
        "env_file": ".env",
        "case_sensitive": True,
        "extra": "ignore",
    }


def database_config(settings: Settings) -> dict:
    """Engine keyword arguments derived from settings"""
    config = {
        "pool_pre_ping": True,
        "echo": settings.ENVIRONMENT == "development" and settings.DEBUG,
    }
    # SQLite engines do not accept queue pool sizing
    if settings.DATABASE_URL and not settings.DATABASE_URL.startswith("sqlite"):
        config.update(
            pool_size=settings.DB_POOL_SIZE,
            max_overflow=settings.DB_MAX_OVERFLOW,
            pool_timeout=settings.DB_POOL_TIMEOUT,
            pool_recycle=settings.DB_POOL_RECYCLE,
        )
    return config
