"""Dispatcher: the worker loop that drives deliveries through attempts.

Each cycle selects due records, claims them with a compare-and-set, sends
them through the transport under a per-attempt timeout, and writes the
outcome back with a second compare-and-set against PROCESSING. Any number
of dispatchers may share a store; the compare-and-set decides who wins.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from datetime import datetime, timedelta
from enum import Enum

from pydantic import BaseModel

from courier.config import settings
from courier.engine.classifier import RawFailure
from courier.engine.selector import Selector
from courier.exceptions import InvalidStateTransition, TransportError
from courier.logging import delivery_context
from courier.models.base import utcnow
from courier.models.delivery import DeliveryRecord, ResponseSnapshot
from courier.models.errors import ErrorKind
from courier.models.status import DeliveryStatus
from courier.storage.base import DeliveryStore

from .endpoints import EndpointResolver
from .transport import Transport, TransportResponse, build_request

logger = logging.getLogger(__name__)


class AttemptOutcome(str, Enum):
    """What happened to one selected record."""

    SUCCEEDED = "succeeded"
    RETRYING = "retrying"
    FAILED = "failed"
    SKIPPED = "skipped"  # claimed by another worker first
    DISCARDED = "discarded"  # record changed while the attempt was in flight


class DispatchSummary(BaseModel):
    """Counts for one dispatcher cycle."""

    selected: int = 0
    succeeded: int = 0
    retrying: int = 0
    failed: int = 0
    skipped: int = 0
    discarded: int = 0

    def add(self, outcome: AttemptOutcome) -> None:
        setattr(self, outcome.value, getattr(self, outcome.value) + 1)

    @property
    def attempted(self) -> int:
        return self.succeeded + self.retrying + self.failed + self.discarded


class Dispatcher:
    """Claims due deliveries and attempts them.

    Example:
        ```python
        dispatcher = Dispatcher(store, HttpxTransport(), resolver)

        # One cycle
        summary = await dispatcher.run_once()

        # Until stopped
        stop = asyncio.Event()
        await dispatcher.run_forever(stop)
        ```
    """

    def __init__(
        self,
        store: DeliveryStore,
        transport: Transport,
        resolver: EndpointResolver,
        *,
        selector: Selector | None = None,
        clock: Callable[[], datetime] = utcnow,
        batch_size: int | None = None,
        max_concurrent: int | None = None,
        attempt_timeout_seconds: float | None = None,
        poll_interval_seconds: float | None = None,
        processing_lease_seconds: float | None = None,
        user_agent: str | None = None,
    ) -> None:
        """Initialize the dispatcher.

        Args:
            store: Delivery store shared with producers and other workers.
            transport: Sends one attempt.
            resolver: Resolves endpoint IDs to targets.
            selector: Query side over ``store``; created if None.
            clock: Source of the current time.
            batch_size: Records selected per cycle.
            max_concurrent: Attempts in flight at once.
            attempt_timeout_seconds: Timeout when the endpoint sets none.
            poll_interval_seconds: Idle wait between cycles in ``run_forever``.
            processing_lease_seconds: Age after which an unfinished attempt is
                reclaimed by the idle sweep.
            user_agent: User-Agent recorded on request snapshots.

        Unset values come from settings.
        """
        self._store = store
        self._transport = transport
        self._resolver = resolver
        self._selector = selector or Selector(store)
        self._clock = clock
        self._batch_size = batch_size or settings.dispatch_batch_size
        self._timeout = attempt_timeout_seconds or settings.attempt_timeout_seconds
        self._poll_interval = poll_interval_seconds or settings.dispatch_poll_interval_seconds
        self._user_agent = user_agent or settings.user_agent
        self._lease = timedelta(
            seconds=processing_lease_seconds or settings.processing_lease_seconds
        )
        self._semaphore = asyncio.Semaphore(max_concurrent or settings.dispatch_max_concurrent)

    async def run_once(self) -> DispatchSummary:
        """Run one select-claim-attempt cycle.

        Returns:
            Counts of what happened to the selected records.
        """
        batch = await self._selector.next_batch(self._clock(), self._batch_size)
        summary = DispatchSummary(selected=len(batch))
        if not batch:
            return summary

        results = await asyncio.gather(
            *(self._process(record) for record in batch),
            return_exceptions=True,
        )
        for record, result in zip(batch, results, strict=True):
            if isinstance(result, BaseException):
                # A record stuck in PROCESSING here is picked up by reclaim_stale
                logger.error(
                    "Dispatching delivery %s failed: %s",
                    record.id,
                    result,
                    exc_info=result,
                )
                continue
            summary.add(result)

        logger.info("Dispatch cycle complete", extra=summary.model_dump())
        return summary

    async def run_forever(self, stop: asyncio.Event | None = None) -> None:
        """Run cycles until ``stop`` is set.

        Sleeps for the poll interval whenever a cycle finds less than a full
        batch. While idle it expires stale records and reclaims attempts
        that never wrote a result.
        """
        stop = stop or asyncio.Event()
        logger.info(
            "Dispatcher started",
            extra={"batch_size": self._batch_size, "poll_interval": self._poll_interval},
        )
        while not stop.is_set():
            summary = await self.run_once()
            if summary.selected >= self._batch_size:
                continue

            now = self._clock()
            await self._selector.expire_due(now)
            await self._selector.reclaim_stale(now, self._lease)
            try:
                await asyncio.wait_for(stop.wait(), timeout=self._poll_interval)
            except TimeoutError:
                pass
        logger.info("Dispatcher stopped")

    async def _process(self, record: DeliveryRecord) -> AttemptOutcome:
        async with self._semaphore:
            with delivery_context(record.id, endpoint_id=record.endpoint_id):
                if not await self._claim(record):
                    return AttemptOutcome.SKIPPED
                await self._attempt(record)
                return await self._finish(record)

    async def _claim(self, record: DeliveryRecord) -> bool:
        expected = record.status
        try:
            record.claim(self._clock())
        except InvalidStateTransition:
            logger.debug("Delivery no longer claimable", extra={"status": expected.value})
            return False

        if not await self._store.compare_and_set(record, expected):
            logger.debug("Delivery already claimed by another worker")
            return False
        return True

    async def _attempt(self, record: DeliveryRecord) -> None:
        """Make one attempt and feed the outcome into the record."""
        try:
            target = await self._resolver.resolve(record.endpoint_id)
        except Exception as e:
            logger.exception("Endpoint lookup failed: %s", e)
            self._fail_internally(record, f"Endpoint lookup failed: {e}")
            return

        if target is None or not target.enabled:
            failure = RawFailure(
                message="Endpoint not found or disabled",
                kind=ErrorKind.VALIDATION,
                retryable=False,
            )
            record.record_failure(failure, now=self._clock())
            return

        timeout = target.timeout_seconds or self._timeout
        try:
            record.attach_request(build_request(record, target, self._user_agent, timeout))
        except Exception as e:
            logger.exception("Building request failed: %s", e)
            self._fail_internally(record, f"Building request failed: {e}")
            return

        response: TransportResponse | None = None
        failure: RawFailure | None = None
        snapshot: ResponseSnapshot | None = None
        started = time.perf_counter()
        try:
            response = await asyncio.wait_for(self._transport.send(record, target), timeout=timeout)
        except TransportError as e:
            failure, snapshot = e.failure, e.response
        except TimeoutError:
            failure = RawFailure(
                message=f"Attempt timeout after {timeout}s",
                code="ETIMEDOUT",
                timed_out=True,
            )
        except Exception as e:
            logger.exception("Transport raised unexpectedly: %s", e)
            failure = RawFailure.from_exception(e)

        now = self._clock()
        if response is not None:
            record.record_success(response.to_snapshot(), response.response_time, now)
            return

        assert failure is not None
        if snapshot is not None and snapshot.response_time is None:
            snapshot.response_time = int((time.perf_counter() - started) * 1000)
        record.record_failure(failure, snapshot, now)

    def _fail_internally(self, record: DeliveryRecord, message: str) -> None:
        """Record a failure on our side of the attempt as retryable.

        Lookup and request-building faults say nothing about the receiver, so
        they never fail a delivery on their own.
        """
        failure = RawFailure(message=message, kind=ErrorKind.NETWORK, retryable=True)
        record.record_failure(failure, now=self._clock())

    async def _finish(self, record: DeliveryRecord) -> AttemptOutcome:
        """Persist the attempt's result unless the record moved on meanwhile."""
        if not await self._store.compare_and_set(record, DeliveryStatus.PROCESSING):
            current = await self._store.get(record.id)
            logger.info(
                "Attempt result discarded, delivery changed while in flight",
                extra={"status": current.status.value if current else None},
            )
            return AttemptOutcome.DISCARDED

        if record.status is DeliveryStatus.SUCCESS:
            logger.info(
                "Webhook delivered: %s (attempt %d)",
                record.event_type,
                record.attempts.count,
            )
            return AttemptOutcome.SUCCEEDED

        error = record.error
        if record.status is DeliveryStatus.RETRYING:
            next_at = record.attempts.next_attempt_at
            logger.info(
                "Webhook scheduled for retry: %s (attempt %d at %s)",
                record.event_type,
                record.attempts.count + 1,
                next_at.isoformat() if next_at else None,
                extra={"error_kind": error.kind if error else None},
            )
            return AttemptOutcome.RETRYING

        logger.warning(
            "Webhook delivery failed: %s after %d attempts: %s",
            record.event_type,
            record.attempts.count,
            error.message if error else "unknown",
            extra={"error_kind": error.kind if error else None},
        )
        return AttemptOutcome.FAILED


__all__ = ["AttemptOutcome", "DispatchSummary", "Dispatcher"]
