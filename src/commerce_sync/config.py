"""Application settings loaded from environment variables."""

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

ALL_OBJECT_TYPES = ("orders", "skus", "refunds", "shipping-discounts", "fulfillments")


class ShopSettings(BaseModel):
    """Upstream connection details for a single shop."""

    access_token: SecretStr | None = None
    currency: str = "DKK"
    api_base_url: str | None = None

    def base_url(self, shop: str) -> str:
        if self.api_base_url:
            return self.api_base_url.rstrip("/")
        return f"https://{shop}"


class Settings(BaseSettings):
    """Runtime configuration sourced from environment variables and .env."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    DATABASE_URL: str
    SECRET_KEY: SecretStr
    DATABASE_POOL_SIZE: int = Field(default=5, ge=1)
    DATABASE_MAX_OVERFLOW: int = Field(default=10, ge=0)
    SQLITE_BUSY_TIMEOUT_SECONDS: int = Field(default=30, ge=1)
    HOST: str = "0.0.0.0"
    PORT: int = Field(default=8000, ge=1, le=65535)
    LOG_LEVEL: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    LOG_FORMAT: Literal["json", "text"] = "text"
    LOG_FILE: Path | None = None
    LOG_FILE_MAX_BYTES: int = Field(default=10_485_760, ge=1)
    LOG_FILE_BACKUP_COUNT: int = Field(default=5, ge=1)

    SHOPS: dict[str, ShopSettings] = Field(default_factory=dict)
    SHOPIFY_API_VERSION: str = "2024-10"
    SYNC_WORKER_BASE_URL: str | None = None
    SYNC_WORKER_TOKEN: SecretStr | None = None
    SYNC_WORKER_TIMEOUT_SECONDS: float = Field(default=150.0, gt=0)

    DISPATCHER_BATCH_SIZE: int = Field(default=20, ge=1)
    DISPATCHER_ROUND_DELAY_SECONDS: float = Field(default=1.0, ge=0)
    DISPATCHER_TIME_BUDGET_SECONDS: float = Field(default=120.0, gt=0)
    DISPATCHER_EXECUTION_TIMEOUT_SECONDS: float = Field(default=110.0, gt=0)
    DISPATCHER_ENFORCE_DEPENDENCIES: bool = False
    WATCHDOG_STALE_AFTER_SECONDS: int = Field(default=120, ge=1)
    WATCHDOG_REFUND_STALE_AFTER_SECONDS: int = Field(default=300, ge=1)
    JOB_CREATION_BATCH_SIZE: int = Field(default=100, ge=1)
    GAP_DETECTION_PAGE_SIZE: int = Field(default=1000, ge=1)
    JOB_MAX_ATTEMPTS: int = Field(default=5, ge=1)
    REFUND_CHUNK_THRESHOLD: int = Field(default=300, ge=1)
    REFUND_CHUNK_SIZE: int = Field(default=100, ge=1)
    REFUND_CHUNK_DELAY_SECONDS: float = Field(default=1.0, ge=0)
    UPSTREAM_MAX_ATTEMPTS: int = Field(default=3, ge=1)
    UPSTREAM_BACKOFF_BASE_SECONDS: float = Field(default=0.5, ge=0)
    VALIDATION_REQUEST_DELAY_SECONDS: float = Field(default=0.5, ge=0)
    SMART_SYNC_MAX_ITERATIONS: int = Field(default=50, ge=1)

    SCHEDULER_ENABLED: bool = True
    SCHEDULER_JOBSTORE_URL: str = "sqlite:///./scheduler-jobs.sqlite"
    SCHEDULER_DISPATCH_INTERVAL_SECONDS: int = Field(default=60, ge=1)
    SCHEDULER_WATCHDOG_INTERVAL_SECONDS: int = Field(default=120, ge=1)
    SCHEDULER_VALIDATION_CRON_HOUR: int = Field(default=2, ge=0, le=23)
    SCHEDULER_DAILY_GAP_FILL_CRON_HOUR: int = Field(default=5, ge=0, le=23)
    DAILY_SYNC_OBJECT_TYPES: list[str] = Field(
        default_factory=lambda: list(ALL_OBJECT_TYPES)
    )
    SHUTDOWN_GRACE_PERIOD_SECONDS: int = Field(default=30, ge=1)

    @field_validator("LOG_FILE", mode="before")
    @classmethod
    def parse_log_file(cls, value: object) -> object:
        if value in (None, ""):
            return None
        return value

    @field_validator("DAILY_SYNC_OBJECT_TYPES")
    @classmethod
    def validate_object_types(cls, value: list[str]) -> list[str]:
        unknown = sorted(set(value) - set(ALL_OBJECT_TYPES))
        if unknown:
            raise ValueError(f"Unknown object types: {', '.join(unknown)}")
        return value

    @property
    def shop_names(self) -> list[str]:
        return sorted(self.SHOPS)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached settings instance."""

    return Settings()  # type: ignore[call-arg]
