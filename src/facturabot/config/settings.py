"""Application settings loaded from environment variables."""

from enum import Enum
from functools import lru_cache
from typing import Literal

from pydantic import BaseModel, Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class DeploymentMode(str, Enum):
    """How many worker processes share the coordination primitives."""

    SINGLE_PROCESS = "single_process"
    MULTI_PROCESS = "multi_process"


class LockConfig(BaseModel):
    """Configuration for the distributed lock service.

    TTLs are in seconds. The invoice lock is extended when each external call
    attempt starts and again before the invoice is stored, so its TTL must
    exceed the longest single attempt. A TTL shorter than a request's whole
    retry budget lets the lock lapse between retries, which fails the request.
    """

    key_prefix: str = "facturabot:lock"
    default_ttl_seconds: float = 10.0
    """TTL used when a caller does not pass one."""

    retry_base_delay_seconds: float = 0.1
    """First backoff delay; doubled on each failed attempt."""

    retry_max_delay_seconds: float = 1.0
    """Cap for the exponential backoff."""

    default_max_attempts: int = 5

    invoice_ttl_seconds: float = 300.0
    invoice_max_attempts: int = 3

    folio_ttl_seconds: float = 5.0
    folio_max_attempts: int = 3

    quota_ttl_seconds: float = 3.0
    quota_max_attempts: int = 2

    batch_ttl_seconds: float = 60.0


class OutboundQueueConfig(BaseModel):
    """Configuration for the outbound invoicing API queue."""

    max_concurrent: int = Field(default=5, ge=1)
    max_queue_size: int = Field(default=100, ge=1)
    processing_interval_seconds: float = Field(default=0.2, gt=0)
    retry_delay_seconds: float = Field(default=2.0, ge=0)
    max_retries: int = Field(default=3, ge=0)
    default_timeout_seconds: float = Field(default=30.0, gt=0)
    timeout_fast_seconds: float = Field(default=5.0, gt=0)
    timeout_normal_seconds: float = Field(default=30.0, gt=0)
    timeout_slow_seconds: float = Field(default=60.0, gt=0)
    timeout_critical_seconds: float = Field(default=120.0, gt=0)
    timeout_backoff: float = Field(default=1.5, ge=1.0)
    """Timeout multiplier per retry; retries never exceed the critical timeout."""

    global_rate_limit: int | None = Field(default=None, ge=1)
    """Requests per window across every process sharing REDIS_URL; None disables."""

    global_rate_window_seconds: int = Field(default=1, ge=1)


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    # Environment
    ENVIRONMENT: Literal["development", "test", "staging", "production"] = "development"
    DEBUG: bool = False
    DEPLOYMENT_MODE: DeploymentMode = DeploymentMode.SINGLE_PROCESS

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./facturabot.db"
    DATABASE_POOL_SIZE: int = 5
    DATABASE_MAX_OVERFLOW: int = 10

    # Shared cache; absence selects the in-process lock backend
    REDIS_URL: str | None = None
    REDIS_MAX_CONNECTIONS: int = 20

    # External invoicing API
    INVOICING_API_URL: str = "https://www.facturapi.io"
    INVOICING_API_TIMEOUT_SECONDS: float = 30.0
    INVOICING_API_KEY: SecretStr | None = None

    # Application Configuration
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"

    # Folios
    folio_seed: int = 800
    folio_default_series: str = "A"
    folio_batch_size: int = Field(default=10, ge=1)

    # Subscriptions
    trial_days: int = 14

    locks: LockConfig = LockConfig()
    queue: OutboundQueueConfig = OutboundQueueConfig()

    @property
    def is_multi_process(self) -> bool:
        """Whether several worker processes share this deployment."""
        return self.DEPLOYMENT_MODE == DeploymentMode.MULTI_PROCESS


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
