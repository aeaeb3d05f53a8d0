"""Application configuration management."""

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

    # -------------------------------------------------------------------------
    # Application Settings
    # -------------------------------------------------------------------------
    app_name: str = "leen-catalog-sync"
    app_env: Literal["development", "staging", "production", "test"] = "development"
    debug: bool = False
    log_level: str = "INFO"

    # -------------------------------------------------------------------------
    # API Settings
    # -------------------------------------------------------------------------
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_workers: int = 2
    cors_origins: list[str] = Field(default_factory=lambda: ["http://localhost:5173"])

    @field_validator("cors_origins", mode="before")
    @classmethod
    def parse_cors_origins(cls, v: str | list[str]) -> list[str]:
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",")]
        return v

    # -------------------------------------------------------------------------
    # PostgreSQL Database (the storefront catalog database)
    # -------------------------------------------------------------------------
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_user: str = "postgres"
    postgres_password: str = ""
    postgres_db: str = "postgres"
    database_dsn: str = ""

    db_pool_size: int = 5
    db_max_overflow: int = 5
    db_pool_recycle: int = 300

    @property
    def database_url(self) -> str:
        """Construct the async connection URL, honouring DATABASE_DSN when set."""
        if self.database_dsn:
            return self.database_dsn
        return (
            f"postgresql+asyncpg://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    @property
    def database_url_sync(self) -> str:
        """Construct synchronous PostgreSQL connection URL (for Alembic)."""
        if self.database_dsn:
            return self.database_dsn.replace("+asyncpg", "").replace("+aiosqlite", "")
        return (
            f"postgresql://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    # -------------------------------------------------------------------------
    # Redis
    # -------------------------------------------------------------------------
    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_password: str = ""
    redis_db: int = 0

    @property
    def redis_url(self) -> str:
        """Construct Redis connection URL."""
        if self.redis_password:
            return f"redis://:{self.redis_password}@{self.redis_host}:{self.redis_port}/{self.redis_db}"
        return f"redis://{self.redis_host}:{self.redis_port}/{self.redis_db}"

    # -------------------------------------------------------------------------
    # Celery
    # -------------------------------------------------------------------------
    celery_broker_url: str = ""
    celery_result_backend: str = ""

    @property
    def celery_broker(self) -> str:
        """Get Celery broker URL, defaulting to Redis URL."""
        return self.celery_broker_url or self.redis_url

    @property
    def celery_backend(self) -> str:
        """Get Celery result backend URL, defaulting to Redis URL."""
        return self.celery_result_backend or self.redis_url

    # -------------------------------------------------------------------------
    # Stripe
    # -------------------------------------------------------------------------
    stripe_secret_key: str = ""
    stripe_api_version: str = "2023-10-16"
    stripe_currency: str = "eur"
    stripe_max_network_retries: int = 2

    # -------------------------------------------------------------------------
    # Security
    # -------------------------------------------------------------------------
    sync_api_key: str = ""
    api_key_header: str = "X-API-Key"

    # -------------------------------------------------------------------------
    # Sync Queue Settings
    # -------------------------------------------------------------------------
    sync_batch_size: int = 10
    sync_max_batch_size: int = 100
    sync_max_retries: int = 5
    sync_inter_job_delay_ms: int = 200
    sync_retry_base_delay_seconds: float = 30.0
    sync_retry_max_delay_seconds: float = 1800.0
    sync_queue_retention_days: int = 7
    sync_stale_processing_minutes: int = 15
    sync_lock_ttl_seconds: int = 300
    sync_stats_cache_ttl_seconds: int = 30

    # -------------------------------------------------------------------------
    # Sync Worker Settings
    # -------------------------------------------------------------------------
    sync_enqueue_interval_minutes: int = 60


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
