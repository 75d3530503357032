"""Configuration management for Courier."""

import logging
from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings

from courier.engine.scheduler import DEFAULT_PROFILES
from courier.models.attempts import BackoffProfile
from courier.models.status import DeliveryPriority

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Courier configuration loaded from environment variables.

    All settings can be overridden via environment variables with
    the COURIER_ prefix. For example:
        COURIER_DATABASE_URL=postgresql+asyncpg://localhost/courier
        COURIER_DISPATCH_BATCH_SIZE=100

    Backoff profiles are nested, so a single row can be changed with:
        COURIER_BACKOFF_PROFILES__critical__max_attempts=8
    or the whole table given as JSON in COURIER_BACKOFF_PROFILES.
    """

    # Environment
    env: Literal["development", "production", "test"] = Field(
        default="development",
        description="Environment: development, production, or test",
    )

    # Storage
    database_url: str = Field(
        default="sqlite+aiosqlite:///courier.db",
        description="SQLAlchemy async database URL for the delivery store",
    )

    # Dispatch
    dispatch_batch_size: int = Field(
        default=50,
        ge=1,
        le=1000,
        description="Maximum deliveries selected per dispatcher cycle",
    )
    dispatch_poll_interval_seconds: float = Field(
        default=1.0,
        gt=0.0,
        description="Idle wait between dispatcher cycles",
    )
    dispatch_max_concurrent: int = Field(
        default=10,
        ge=1,
        description="Maximum attempts in flight per dispatcher",
    )
    attempt_timeout_seconds: float = Field(
        default=30.0,
        gt=0.0,
        description="Per-attempt timeout when the endpoint sets none",
    )
    processing_lease_seconds: float = Field(
        default=300.0,
        gt=0.0,
        description="Age after which an attempt with no written result is reclaimed",
    )
    user_agent: str = Field(
        default="Courier-Webhooks/1.0",
        description="User-Agent header sent with deliveries",
    )

    # Lifecycle
    default_expiry_hours: float = Field(
        default=24.0,
        gt=0.0,
        description="Lifetime of a delivery when the producer gives none",
    )
    backoff_profiles: dict[DeliveryPriority, BackoffProfile] = Field(
        default_factory=lambda: dict(DEFAULT_PROFILES),
        description="Retry profile per priority; must contain a 'normal' row",
    )

    # Logging
    log_level: str = Field(
        default="INFO",
        description="Logging level",
    )
    log_format: Literal["json", "text"] = Field(
        default="json",
        description="Log output format",
    )

    @model_validator(mode="after")
    def validate_backoff_profiles(self) -> "Settings":
        """Require a NORMAL row, which every missing priority falls back to."""
        if DeliveryPriority.NORMAL not in self.backoff_profiles:
            raise ValueError(
                "backoff_profiles must define a 'normal' profile; "
                f"got: {sorted(p.value for p in self.backoff_profiles)}"
            )
        missing = [p.value for p in DeliveryPriority if p not in self.backoff_profiles]
        if missing:
            logger.debug("Priorities without a backoff profile use 'normal': %s", missing)
        return self

    model_config = {
        "env_prefix": "COURIER_",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "env_nested_delimiter": "__",
    }


# Global settings instance
settings = Settings()
