"""
Engine configuration, read from the environment (and .env) by pydantic-settings.

Settings are loaded once per process through get_settings(); production
requirements are checked on that first load so a misconfigured deployment
fails at startup rather than on the first request.
"""
import socket
from typing import Optional
from urllib.parse import quote_plus

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

ENVIRONMENTS = ("development", "production")
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def _resolve_db_host(host: str) -> str:
    # asyncpg resolves hostnames inside the event loop; resolve once up front
    if not host or host in ("localhost", "127.0.0.1"):
        return host
    try:
        return socket.gethostbyname(host)
    except socket.gaierror:
        return host


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # PostgreSQL (system of record)
    DB_USER: str = Field(..., description="Database user")
    DB_PASSWORD: str = Field(..., description="Database password")
    DB_NAME: str = Field(..., description="Database name")
    DB_HOST: str = Field(default="localhost", description="Database host")
    DB_PORT: str = Field(default="5432", description="Database port")
    DB_POOL_SIZE: int = Field(default=20, description="Persistent connections kept by the pool")
    DB_MAX_OVERFLOW: int = Field(default=40, description="Extra connections allowed under load")
    DB_POOL_RECYCLE: int = Field(default=1800, description="Seconds before a pooled connection is replaced")

    # Gateway integration
    INTERNAL_API_KEY: Optional[str] = Field(default=None, description="Shared key expected in X-Internal-Key")
    ALLOWED_ORIGINS: str = Field(default="", description="Comma-separated CORS origins")

    ENVIRONMENT: str = Field(default="production", description="development or production")
    LOG_LEVEL: str = Field(default="INFO", description="Root log level")

    # Reservation limits
    RESERVATION_DEFAULT_TTL_MINUTES: int = Field(default=15, description="Hold duration when the caller gives none")
    RESERVATION_MAX_TTL_MINUTES: int = Field(default=120, description="Longer requested holds are clamped to this")
    RESERVATION_MAX_EXTEND_MINUTES: int = Field(default=60, description="Upper bound for one extend call")
    RESERVATION_BATCH_MAX_ITEMS: int = Field(default=50, description="Max lines in reserve/confirm batches")
    AVAILABILITY_BULK_MAX_ITEMS: int = Field(default=100, description="Max stock items in one bulk availability read")

    # Expiration sweeper
    SWEEPER_ENABLED: bool = Field(default=True, description="Run the sweeper inside the API process")
    SWEEPER_INTERVAL_SECONDS: int = Field(default=30, description="Pause between sweeps")
    SWEEPER_BATCH_SIZE: int = Field(default=500, description="Max reservations expired by one sweep")

    TX_MAX_ATTEMPTS: int = Field(default=3, description="Attempts for a unit of work that hits lock contention")
    RATE_LIMIT_RESERVE: str = Field(default="120/minute", description="Per-client limit on admission endpoints")

    @field_validator("ENVIRONMENT")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        if v not in ENVIRONMENTS:
            raise ValueError(f"ENVIRONMENT must be one of {ENVIRONMENTS}")
        return v

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        if v.upper() not in LOG_LEVELS:
            raise ValueError(f"LOG_LEVEL must be one of {LOG_LEVELS}")
        return v.upper()

    @field_validator(
        "RESERVATION_DEFAULT_TTL_MINUTES",
        "RESERVATION_MAX_TTL_MINUTES",
        "RESERVATION_MAX_EXTEND_MINUTES",
        "RESERVATION_BATCH_MAX_ITEMS",
        "AVAILABILITY_BULK_MAX_ITEMS",
        "SWEEPER_BATCH_SIZE",
        "TX_MAX_ATTEMPTS",
    )
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be at least 1")
        return v

    def validate_production_settings(self) -> list[str]:
        """Problems that make this configuration unfit for production (empty when fine)."""
        if not self.is_production:
            return []
        errors = []
        if not self.INTERNAL_API_KEY:
            errors.append("INTERNAL_API_KEY is required in production")
        if not self.ALLOWED_ORIGINS:
            errors.append("ALLOWED_ORIGINS is required in production")
        return errors

    @property
    def db_url(self) -> str:
        host = _resolve_db_host(self.DB_HOST)
        return (
            f"postgresql+asyncpg://{self.DB_USER}:{quote_plus(self.DB_PASSWORD)}"
            f"@{host}:{self.DB_PORT}/{self.DB_NAME}"
        )

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    @property
    def allowed_origins_list(self) -> list[str]:
        return [origin.strip() for origin in self.ALLOWED_ORIGINS.split(",") if origin.strip()]


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Process-wide settings; raises ValueError on an invalid production configuration."""
    global _settings
    if _settings is None:
        settings = Settings()
        errors = settings.validate_production_settings()
        if errors:
            raise ValueError("Configuration errors:\n" + "\n".join(f"  - {e}" for e in errors))
        _settings = settings
    return _settings
