"""Courier service layer.

``DeliveryService`` is the thin persistence wrapper event producers and
operators talk to. It builds records with the pure model, stores them, and
applies operator actions (cancel, redeliver) with the same compare-and-set
the dispatcher uses, so it can run next to any number of workers.

Example:
    ```python
    from courier.service import DeliveryService

    async with DeliveryService.from_settings() as courier:
        record = await courier.create(
            endpoint_id="ep_orders",
            event_type="order.created",
            data={"order_id": "ord_123"},
            priority=DeliveryPriority.HIGH,
        )
        print(f"Queued delivery {record.id}")
    ```
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from courier.config import Settings
from courier.exceptions import NotFoundError, ValidationError
from courier.models import (
    AttemptRecord,
    DeliveryPriority,
    DeliveryRecord,
    DeliveryStatus,
    EventContext,
    EventEnvelope,
    utcnow,
)
from courier.storage import DeliveryStore, SqlDeliveryStore

logger = logging.getLogger(__name__)

# Compare-and-set rounds before an operator write gives up on a busy record
_MAX_WRITE_ROUNDS = 5

ENDPOINT_DELETED_REASON = "Endpoint deleted"


@dataclass
class DeliveryService:
    """Creates, looks up and cancels deliveries.

    Attributes:
        store: Delivery store shared with the dispatchers.
        settings: Configuration (expiry default, backoff profiles).
        clock: Source of the current time.
    """

    store: DeliveryStore
    settings: Settings = field(default_factory=Settings)
    clock: Callable[[], datetime] = field(default=utcnow)

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> DeliveryService:
        """Create a service on a SQL store at ``settings.database_url``."""
        if settings is None:
            settings = Settings()
        return cls(store=SqlDeliveryStore(settings.database_url), settings=settings)

    async def initialize(self) -> None:
        await self.store.initialize()

    async def close(self) -> None:
        await self.store.close()

    async def __aenter__(self) -> DeliveryService:
        await self.initialize()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    async def create(
        self,
        endpoint_id: str,
        event_type: str,
        data: Any = None,
        priority: DeliveryPriority = DeliveryPriority.NORMAL,
        organization_id: str | None = None,
        expires_after: timedelta | None = None,
        *,
        scheduled_at: datetime | None = None,
        context: EventContext | None = None,
        previous_data: Any = None,
        trace_id: str | None = None,
        correlation_id: str | None = None,
        tags: list[str] | None = None,
    ) -> DeliveryRecord:
        """Create and persist a pending delivery.

        Args:
            endpoint_id: Target endpoint.
            event_type: Event type being delivered.
            data: Event data, or a prebuilt ``EventEnvelope`` stored as given.
            priority: Dispatch priority.
            organization_id: Owning organization.
            expires_after: Lifetime; ``settings.default_expiry_hours`` if None.
            scheduled_at: Earliest first attempt; now if None.
            context: Triggering context for the envelope.
            previous_data: Prior state for update events.
            trace_id: Distributed trace identifier.
            correlation_id: Caller correlation identifier.
            tags: Free-form labels.

        Returns:
            The stored record.
        """
        if not endpoint_id:
            raise ValidationError("endpoint_id", "must not be empty")
        if not event_type:
            raise ValidationError("event_type", "must not be empty")

        now = self.clock()
        record = DeliveryRecord.create(
            endpoint_id,
            event_type,
            data,
            priority,
            organization_id,
            expires_after or timedelta(hours=self.settings.default_expiry_hours),
            scheduled_at=scheduled_at,
            context=context,
            previous_data=previous_data,
            profiles=self.settings.backoff_profiles,
            now=now,
        )
        if trace_id:
            record.set_trace_id(trace_id)
        if correlation_id:
            record.set_correlation_id(correlation_id)
        if tags:
            record.metadata.tags.extend(tags)
        if context is not None and context.user_id:
            record.metadata.triggered_by = context.user_id
        if isinstance(data, EventEnvelope):
            record.metadata.source_event = data.event_id

        await self.store.insert(record)
        logger.info(
            "Delivery created",
            extra={
                "delivery_id": record.id,
                "endpoint_id": endpoint_id,
                "event_type": event_type,
                "priority": priority.value,
            },
        )
        return record

    async def create_retry(
        self,
        delivery_id: str,
        scheduled_at: datetime | None = None,
    ) -> DeliveryRecord:
        """Redeliver a finished delivery as a new record.

        Raises:
            NotFoundError: If the delivery does not exist.
            InvalidStateTransition: If the delivery is still active.
        """
        original = await self.get(delivery_id)
        now = self.clock()
        retry = DeliveryRecord.create_retry(original, scheduled_at or now, now=now)
        if retry.expires_at is None:
            retry.set_expiration(self.settings.default_expiry_hours, now=now)

        await self.store.insert(retry)
        logger.info(
            "Redelivery created",
            extra={"delivery_id": retry.id, "original_delivery_id": original.id},
        )
        return retry

    async def get(self, delivery_id: str) -> DeliveryRecord:
        """Load a delivery.

        Raises:
            NotFoundError: If the delivery does not exist.
        """
        record = await self.store.get(delivery_id)
        if record is None:
            raise NotFoundError("delivery", delivery_id)
        return record

    async def history(self, delivery_id: str) -> list[AttemptRecord]:
        """Attempt history of a delivery, oldest first."""
        record = await self.get(delivery_id)
        return list(record.attempts.history)

    async def list_for_endpoint(
        self,
        endpoint_id: str,
        status: DeliveryStatus | None = None,
        limit: int = 100,
    ) -> list[DeliveryRecord]:
        return await self.store.list_for_endpoint(endpoint_id, status=status, limit=limit)

    async def stats(self, endpoint_id: str | None = None) -> dict[DeliveryStatus, int]:
        """Number of deliveries per status, optionally for one endpoint."""
        return await self.store.count_by_status(endpoint_id)

    async def cancel(self, delivery_id: str, reason: str | None = None) -> DeliveryRecord:
        """Cancel a delivery. Cancelling a finished delivery changes nothing.

        A cancel that races a dispatcher is retried against the fresh state,
        so it lands unless the record reached a terminal state first.

        Raises:
            NotFoundError: If the delivery does not exist.
        """
        record, _ = await self._cancel(delivery_id, reason)
        return record

    async def _cancel(self, delivery_id: str, reason: str | None) -> tuple[DeliveryRecord, bool]:
        """Cancel and report whether this call made the write."""
        for _ in range(_MAX_WRITE_ROUNDS):
            record = await self.get(delivery_id)
            if record.is_terminal:
                return record, False

            expected = record.status
            record.cancel(reason, now=self.clock())
            if await self.store.compare_and_set(record, expected):
                logger.info(
                    "Delivery cancelled",
                    extra={
                        "delivery_id": delivery_id,
                        "reason": reason,
                        "previous": expected.value,
                    },
                )
                return record, True

        logger.warning(
            "Delivery kept changing, cancel not applied", extra={"delivery_id": delivery_id}
        )
        return await self.get(delivery_id), False

    async def cancel_pending_for_endpoint(
        self,
        endpoint_id: str,
        reason: str = ENDPOINT_DELETED_REASON,
    ) -> int:
        """Cancel every active delivery for an endpoint.

        Returns:
            Number of deliveries this call cancelled. Records cancelled or
            finished by someone else in the meantime are not counted.
        """
        cancelled = 0
        for record in await self.store.find_active(endpoint_id):
            _, applied = await self._cancel(record.id, reason)
            if applied:
                cancelled += 1

        if cancelled:
            logger.info(
                "Cancelled pending deliveries for endpoint",
                extra={"endpoint_id": endpoint_id, "count": cancelled, "reason": reason},
            )
        return cancelled


__all__ = ["ENDPOINT_DELETED_REASON", "DeliveryService"]
