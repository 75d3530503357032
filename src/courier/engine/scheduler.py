"""Backoff scheduling for failed deliveries.

Retry timing is data: each priority maps to a ``BackoffProfile`` row, and a
new priority tier only needs a new row in the table.
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime, timedelta

from courier.models.attempts import BackoffProfile
from courier.models.status import DeliveryPriority

DEFAULT_PROFILE = BackoffProfile(
    max_attempts=3,
    retry_delay=1000,
    backoff_multiplier=2.0,
    exponential_backoff=True,
)

CRITICAL_PROFILE = BackoffProfile(
    max_attempts=5,
    retry_delay=500,
    backoff_multiplier=2.0,
    exponential_backoff=True,
)

DEFAULT_PROFILES: Mapping[DeliveryPriority, BackoffProfile] = {
    DeliveryPriority.LOW: DEFAULT_PROFILE,
    DeliveryPriority.NORMAL: DEFAULT_PROFILE,
    DeliveryPriority.HIGH: DEFAULT_PROFILE,
    DeliveryPriority.CRITICAL: CRITICAL_PROFILE,
}


def profile_for(
    priority: DeliveryPriority,
    profiles: Mapping[DeliveryPriority, BackoffProfile] | None = None,
) -> BackoffProfile:
    """Look up the backoff profile for a priority.

    Falls back to the NORMAL row, then to the built-in default, when the
    table has no row for ``priority``.
    """
    table = DEFAULT_PROFILES if profiles is None else profiles
    profile = table.get(priority) or table.get(DeliveryPriority.NORMAL)
    return profile or DEFAULT_PROFILE


def next_attempt_delay(profile: BackoffProfile, attempts_so_far: int) -> timedelta:
    """Delay before the next attempt.

    Args:
        profile: Backoff profile governing the delivery.
        attempts_so_far: Attempts counted before the failing one (0 on the
            first failure).

    Returns:
        ``retry_delay * backoff_multiplier ** attempts_so_far`` with
        exponential backoff, ``retry_delay`` otherwise.
    """
    if attempts_so_far < 0:
        raise ValueError(f"attempts_so_far must be >= 0, got {attempts_so_far}")
    if profile.exponential_backoff:
        delay_ms = profile.retry_delay * profile.backoff_multiplier**attempts_so_far
    else:
        delay_ms = profile.retry_delay
    return timedelta(milliseconds=delay_ms)


def next_attempt_at(
    profile: BackoffProfile,
    attempts_so_far: int,
    now: datetime,
) -> datetime:
    """When the next attempt is due, counting from ``now``."""
    return now + next_attempt_delay(profile, attempts_so_far)


__all__ = [
    "CRITICAL_PROFILE",
    "DEFAULT_PROFILE",
    "DEFAULT_PROFILES",
    "next_attempt_at",
    "next_attempt_delay",
    "profile_for",
]
