"""Selection of deliveries that are ready for an attempt.

The selector is the query side of the dispatcher: it asks the store for due
records, ordered by priority and age, and expires stale records on the way
so they are never handed to a worker.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from courier.engine.classifier import RawFailure
from courier.models.status import DeliveryStatus

if TYPE_CHECKING:
    from courier.models.delivery import DeliveryRecord
    from courier.storage.base import DeliveryStore

logger = logging.getLogger(__name__)

# Upper bound on store round trips per batch when many due records expire
_MAX_ROUNDS = 10


class Selector:
    """Yields the next eligible deliveries from a store.

    Example:
        ```python
        selector = Selector(store)
        batch = await selector.next_batch(now=utcnow(), limit=50)
        ```
    """

    def __init__(self, store: DeliveryStore) -> None:
        self._store = store

    async def next_batch(self, now: datetime, limit: int) -> list[DeliveryRecord]:
        """Return up to ``limit`` records that are due at ``now``.

        A record is due when it is PENDING with ``scheduled_at <= now`` or
        RETRYING with ``next_attempt_at <= now``. Due records whose expiry
        has passed are moved to EXPIRED and persisted instead of returned.

        Ordering is priority (highest first), then due time (oldest first),
        then creation time.

        Args:
            now: Current time.
            limit: Maximum number of records to return.

        Returns:
            Eligible records, never more than ``limit``.
        """
        if limit <= 0:
            return []

        batch: list[DeliveryRecord] = []
        seen: set[str] = set()
        for _ in range(_MAX_ROUNDS):
            candidates = await self._store.find_ready(now, limit)
            if not candidates:
                break

            expired = 0
            for record in candidates:
                if record.id in seen:
                    continue
                seen.add(record.id)
                if record.is_expired(now):
                    await self._expire(record, now)
                    expired += 1
                else:
                    batch.append(record)

            # Only refill when expiries left room in the batch
            if expired == 0 or len(batch) >= limit:
                break

        return batch[:limit]

    async def expire_due(self, now: datetime) -> int:
        """Expire every active record whose expiry has passed.

        Records in PROCESSING are left alone; their attempt decides.

        Returns:
            Number of records moved to EXPIRED.
        """
        expired = 0
        for record in await self._store.find_active():
            if record.status is DeliveryStatus.PROCESSING or not record.is_expired(now):
                continue
            if await self._expire(record, now):
                expired += 1
        if expired:
            logger.info("Expired stale deliveries", extra={"count": expired})
        return expired

    async def reclaim_stale(self, now: datetime, lease: timedelta) -> int:
        """Fail attempts that started at least ``lease`` ago and never finished.

        A worker that dies between claim and write-back leaves its record in
        PROCESSING. Such attempts count as timed out, so the record retries or
        fails under the usual rules.

        Returns:
            Number of records moved out of PROCESSING.
        """
        reclaimed = 0
        for record in await self._store.find_active():
            if record.status is not DeliveryStatus.PROCESSING:
                continue
            if record.sent_at is not None and record.sent_at + lease > now:
                continue
            failure = RawFailure(message="Attempt abandoned without a result", timed_out=True)
            record.record_failure(failure, now=now)
            if await self._store.compare_and_set(record, DeliveryStatus.PROCESSING):
                reclaimed += 1
                logger.warning(
                    "Reclaimed abandoned attempt",
                    extra={
                        "delivery_id": record.id,
                        "endpoint_id": record.endpoint_id,
                        "status": record.status.value,
                    },
                )
        return reclaimed

    async def _expire(self, record: DeliveryRecord, now: datetime) -> bool:
        expected = record.status
        record.expire(now)
        swapped = await self._store.compare_and_set(record, expected)
        if swapped:
            logger.info(
                "Delivery expired before attempt",
                extra={
                    "delivery_id": record.id,
                    "endpoint_id": record.endpoint_id,
                    "attempts": record.attempts.count,
                },
            )
        else:
            logger.debug(
                "Delivery changed before expiry was written",
                extra={"delivery_id": record.id},
            )
        return swapped


__all__ = ["Selector"]
