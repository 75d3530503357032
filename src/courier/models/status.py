"""Delivery status and priority enumerations."""

from __future__ import annotations

from enum import Enum


class DeliveryStatus(str, Enum):
    """Lifecycle state of a delivery record."""

    PENDING = "pending"
    PROCESSING = "processing"
    SUCCESS = "success"
    FAILED = "failed"
    RETRYING = "retrying"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class DeliveryPriority(str, Enum):
    """Delivery priority; fixed at creation."""

    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        """Sort rank, higher is dispatched first."""
        return PRIORITY_RANK[self]


TERMINAL_STATUSES = frozenset(
    {
        DeliveryStatus.SUCCESS,
        DeliveryStatus.FAILED,
        DeliveryStatus.CANCELLED,
        DeliveryStatus.EXPIRED,
    }
)

# Statuses a worker may claim from
CLAIMABLE_STATUSES = frozenset({DeliveryStatus.PENDING, DeliveryStatus.RETRYING})

PRIORITY_RANK = {
    DeliveryPriority.LOW: 0,
    DeliveryPriority.NORMAL: 1,
    DeliveryPriority.HIGH: 2,
    DeliveryPriority.CRITICAL: 3,
}


__all__ = [
    "CLAIMABLE_STATUSES",
    "PRIORITY_RANK",
    "TERMINAL_STATUSES",
    "DeliveryPriority",
    "DeliveryStatus",
]
