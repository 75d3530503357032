"""Attempt bookkeeping and backoff profiles."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class BackoffProfile(BaseModel):
    """Retry timing for one priority class.

    Attributes:
        max_attempts: Total attempts allowed, including the first one.
        retry_delay: Base delay before a retry, in milliseconds.
        backoff_multiplier: Growth factor per failed attempt.
        exponential_backoff: Whether the delay grows; constant otherwise.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    max_attempts: int = Field(default=3, ge=1, description="Total attempts allowed")
    retry_delay: int = Field(default=1000, ge=0, description="Base retry delay (ms)")
    backoff_multiplier: float = Field(default=2.0, ge=1.0, description="Delay growth factor")
    exponential_backoff: bool = Field(default=True, description="Grow delay per attempt")


class AttemptRecord(BaseModel):
    """One completed attempt. Entries are never rewritten once appended."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    attempt_number: int = Field(ge=1)
    timestamp: datetime
    success: bool
    status_code: int | None = None
    response_time: int | None = Field(default=None, description="Round trip (ms)")
    error: str | None = None


class DeliveryAttempts(BaseModel):
    """Attempt counters, retry configuration and history for a delivery.

    ``len(history) == count`` holds after every transition.
    """

    model_config = ConfigDict(extra="forbid")

    count: int = Field(default=0, ge=0)
    max_attempts: int = Field(default=3, ge=1)
    retry_delay: int = Field(default=1000, ge=0, description="Base retry delay (ms)")
    exponential_backoff: bool = True
    backoff_multiplier: float = Field(default=2.0, ge=1.0)
    next_attempt_at: datetime | None = None
    last_attempt_at: datetime | None = None
    history: list[AttemptRecord] = Field(default_factory=list)

    @classmethod
    def from_profile(cls, profile: BackoffProfile) -> DeliveryAttempts:
        """Fresh attempt state governed by ``profile``."""
        return cls(
            max_attempts=profile.max_attempts,
            retry_delay=profile.retry_delay,
            exponential_backoff=profile.exponential_backoff,
            backoff_multiplier=profile.backoff_multiplier,
        )

    @property
    def profile(self) -> BackoffProfile:
        """The backoff profile these attempts were created with."""
        return BackoffProfile(
            max_attempts=self.max_attempts,
            retry_delay=self.retry_delay,
            backoff_multiplier=self.backoff_multiplier,
            exponential_backoff=self.exponential_backoff,
        )

    @property
    def exhausted(self) -> bool:
        return self.count >= self.max_attempts

    def append(
        self,
        success: bool,
        now: datetime,
        status_code: int | None = None,
        response_time: int | None = None,
        error: str | None = None,
    ) -> AttemptRecord:
        """Count a completed attempt and add it to the history."""
        self.count += 1
        self.last_attempt_at = now
        entry = AttemptRecord(
            attempt_number=self.count,
            timestamp=now,
            success=success,
            status_code=status_code,
            response_time=response_time,
            error=error,
        )
        self.history.append(entry)
        return entry


__all__ = ["AttemptRecord", "BackoffProfile", "DeliveryAttempts"]
