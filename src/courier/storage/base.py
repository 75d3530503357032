"""Delivery store interface.

A store loads delivery records and writes them back with a compare-and-set
on the status the writer last observed. That single primitive is what makes
concurrent workers safe: a claim, a result or a cancel only lands if nobody
moved the record in between.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import TYPE_CHECKING, Any

from courier.models.status import PRIORITY_RANK, DeliveryStatus

if TYPE_CHECKING:
    from courier.models.delivery import DeliveryRecord


def ready_sort_key(record: DeliveryRecord) -> tuple[int, datetime, datetime]:
    """Sort key for due records: priority first, then oldest due time."""
    due = record.due_at or record.scheduled_at
    return (-PRIORITY_RANK[record.priority], due, record.created_at)


class DeliveryStore(ABC):
    """Persistence adapter for delivery records.

    Implementations must make ``compare_and_set`` atomic with respect to
    every other write on the same record.
    """

    @abstractmethod
    async def insert(self, record: DeliveryRecord) -> str:
        """Persist a new record.

        Returns:
            The record ID.

        Raises:
            StorageError: If a record with the same ID already exists.
        """

    @abstractmethod
    async def get(self, record_id: str) -> DeliveryRecord | None:
        """Load a record by ID, or None when it does not exist."""

    @abstractmethod
    async def compare_and_set(
        self, record: DeliveryRecord, expected_status: DeliveryStatus
    ) -> bool:
        """Replace the stored record if its status is still ``expected_status``.

        Args:
            record: Record carrying the new state.
            expected_status: Status the writer observed before mutating.

        Returns:
            True if the write landed, False if the record moved on.
        """

    @abstractmethod
    async def find_ready(self, now: datetime, limit: int) -> list[DeliveryRecord]:
        """Due records ordered by priority, due time and creation time.

        Due means PENDING with ``scheduled_at <= now`` or RETRYING with
        ``next_attempt_at <= now``. Expired records are included; the
        selector decides what to do with them.
        """

    @abstractmethod
    async def find_active(self, endpoint_id: str | None = None) -> list[DeliveryRecord]:
        """Non-terminal records, optionally for a single endpoint."""

    @abstractmethod
    async def list_for_endpoint(
        self,
        endpoint_id: str,
        status: DeliveryStatus | None = None,
        limit: int = 100,
    ) -> list[DeliveryRecord]:
        """Records for an endpoint, newest first."""

    @abstractmethod
    async def count_by_status(self, endpoint_id: str | None = None) -> dict[DeliveryStatus, int]:
        """Number of records per status."""

    async def initialize(self) -> None:  # noqa: B027
        """Prepare the store for use (connections, schema)."""

    async def close(self) -> None:  # noqa: B027
        """Release resources held by the store."""

    async def __aenter__(self) -> DeliveryStore:
        """Async context manager entry."""
        await self.initialize()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Async context manager exit."""
        await self.close()


__all__ = ["DeliveryStore", "ready_sort_key"]
