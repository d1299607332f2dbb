"""Configuration management using Pydantic Settings."""

from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Environment
    env: Literal["dev", "staging", "prod"] = "dev"

    # Server
    server_host: str = "0.0.0.0"
    server_port: int = 5000

    # Redis
    redis_url: str | None = Field(
        default=None,
        description="Redis connection URL (in-process memory stores are used if not set)",
    )
    redis_connect_timeout_seconds: int = 5

    # Cache
    cache_default_ttl_seconds: int = Field(
        default=300,
        description="TTL used when a cache write does not specify one",
    )

    # Rate limiting
    rate_limit_window_ms: int = 60_000
    rate_limit_max: int = 100
    rate_limit_ai_max: int = 10
    rate_limit_auth_max: int = 5
    rate_limit_strict_max: int = 3
    rate_limit_read_only_max: int = 500

    # Jobs
    job_max_attempts: int = Field(
        default=3,
        description="Attempts per job before it is marked failed",
    )
    job_backoff_base_ms: int = Field(
        default=1000,
        description="Delay before the first retry (doubles on each further attempt)",
    )
    job_backoff_max_ms: int = Field(
        default=300_000,
        description="Maximum delay between retries",
    )
    job_timeout_seconds: float = Field(
        default=300,
        description="Execution deadline for a single handler invocation",
    )
    job_retention_hours: int = Field(
        default=24,
        description="How long completed and failed jobs stay readable",
    )
    worker_poll_interval_ms: int = 500
    worker_shutdown_timeout_seconds: float = 30
    workers_enabled: bool = Field(
        default=True,
        description="Run worker pools in this process (disable for API-only replicas)",
    )

    # Worker pools
    email_concurrency: int = 5
    email_rate_max: int | None = 10
    email_rate_duration_ms: int = 1000
    ai_concurrency: int = 2
    ai_rate_max: int | None = 5
    ai_rate_duration_ms: int = 60_000
    reports_concurrency: int = 2
    notifications_concurrency: int = 10

    # SMTP
    smtp_host: str = "smtp.gmail.com"
    smtp_port: int = 587
    smtp_user: str | None = None
    smtp_password: str | None = None
    smtp_from: str = "FluxERP <noreply@fluxerp.com>"
    smtp_use_tls: bool = True

    # Links rendered into emails
    frontend_url: str = "http://localhost:3000"

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    log_format: Literal["json", "console"] = "json"

    @field_validator("redis_url")
    @classmethod
    def empty_redis_url_is_unset(cls, v: str | None) -> str | None:
        """Treat REDIS_URL= as not configured."""
        if v is not None and not v.strip():
            return None
        return v

    @property
    def smtp_configured(self) -> bool:
        """Check if SMTP credentials are present."""
        return bool(self.smtp_user and self.smtp_password)

    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.env == "prod"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
