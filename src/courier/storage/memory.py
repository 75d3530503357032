"""In-memory delivery store.

Suitable for tests and single-process deployments. Records are copied on the
way in and out so callers never share state with the store, and every write
is guarded by one asyncio lock, which makes compare-and-set atomic within
the event loop.
"""

from __future__ import annotations

import asyncio
from collections import Counter
from datetime import datetime
from typing import TYPE_CHECKING

from courier.exceptions import StorageError
from courier.models.status import TERMINAL_STATUSES, DeliveryStatus

from .base import DeliveryStore, ready_sort_key

if TYPE_CHECKING:
    from courier.models.delivery import DeliveryRecord


class InMemoryDeliveryStore(DeliveryStore):
    """Delivery store backed by a dict."""

    def __init__(self) -> None:
        self._records: dict[str, DeliveryRecord] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._records)

    async def insert(self, record: DeliveryRecord) -> str:
        async with self._lock:
            if record.id in self._records:
                raise StorageError(f"Delivery already exists: {record.id}")
            self._records[record.id] = record.model_copy(deep=True)
        return record.id

    async def get(self, record_id: str) -> DeliveryRecord | None:
        stored = self._records.get(record_id)
        return stored.model_copy(deep=True) if stored is not None else None

    async def compare_and_set(
        self, record: DeliveryRecord, expected_status: DeliveryStatus
    ) -> bool:
        async with self._lock:
            stored = self._records.get(record.id)
            if stored is None or stored.status is not expected_status:
                return False
            self._records[record.id] = record.model_copy(deep=True)
            return True

    async def find_ready(self, now: datetime, limit: int) -> list[DeliveryRecord]:
        if limit <= 0:
            return []
        ready = [record for record in self._records.values() if record.is_due(now)]
        ready.sort(key=ready_sort_key)
        return [record.model_copy(deep=True) for record in ready[:limit]]

    async def find_active(self, endpoint_id: str | None = None) -> list[DeliveryRecord]:
        return [
            record.model_copy(deep=True)
            for record in self._records.values()
            if record.status not in TERMINAL_STATUSES
            and (endpoint_id is None or record.endpoint_id == endpoint_id)
        ]

    async def list_for_endpoint(
        self,
        endpoint_id: str,
        status: DeliveryStatus | None = None,
        limit: int = 100,
    ) -> list[DeliveryRecord]:
        matches = [
            record
            for record in self._records.values()
            if record.endpoint_id == endpoint_id and (status is None or record.status is status)
        ]
        matches.sort(key=lambda r: r.created_at, reverse=True)
        return [record.model_copy(deep=True) for record in matches[:limit]]

    async def count_by_status(self, endpoint_id: str | None = None) -> dict[DeliveryStatus, int]:
        counts = Counter(
            record.status
            for record in self._records.values()
            if endpoint_id is None or record.endpoint_id == endpoint_id
        )
        return dict(counts)


__all__ = ["InMemoryDeliveryStore"]
