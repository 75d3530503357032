"""Base helpers and shared types for Courier models."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from uuid import uuid4

_EPOCH = datetime(1970, 1, 1, tzinfo=UTC)


def generate_id(prefix: str) -> str:
    """Generate a unique ID with the given prefix.

    Examples:
        generate_id("dlv") -> "dlv_a1b2c3d4e5f6"
        generate_id("evt") -> "evt_a1b2c3d4e5f6"
    """
    return f"{prefix}_{uuid4().hex[:12]}"


def utcnow() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(UTC)


def to_micros(value: datetime) -> int:
    """Convert a datetime to integer epoch microseconds.

    Exact at datetime resolution, so ordering and due checks on the result
    agree with comparing the datetimes. Naive datetimes are treated as UTC.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return (value - _EPOCH) // timedelta(microseconds=1)


def elapsed_ms(start: datetime | None, end: datetime) -> int | None:
    """Milliseconds between two instants, or None when start is unknown."""
    if start is None:
        return None
    return max(0, int((end - start).total_seconds() * 1000))
