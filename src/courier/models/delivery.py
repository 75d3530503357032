"""Delivery record and its state machine.

A ``DeliveryRecord`` tracks one event being delivered to one endpoint. The
record owns its transitions; every operation takes an explicit ``now`` so the
logic stays free of clocks and storage and can be tested in isolation.

States and legal transitions::

    PENDING    -> PROCESSING              claim
    RETRYING   -> PROCESSING              claim, once next_attempt_at is reached
    PROCESSING -> SUCCESS                 record_success
    PROCESSING -> RETRYING                record_failure, retry-eligible
    PROCESSING -> FAILED                  record_failure, permanent or exhausted
    PENDING, RETRYING, PROCESSING -> CANCELLED    cancel
    PENDING, RETRYING -> EXPIRED          expire

SUCCESS, FAILED, CANCELLED and EXPIRED are terminal. Mutations on a terminal
record are no-ops so late or duplicate callbacks cannot corrupt it; only
``claim`` raises, because a worker must never dispatch a finished record.
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime, timedelta
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from courier.engine.classifier import RawFailure, classify
from courier.engine.scheduler import next_attempt_at, profile_for
from courier.exceptions import InvalidStateTransition, ValidationError

from .attempts import BackoffProfile, DeliveryAttempts
from .base import elapsed_ms, generate_id, utcnow
from .errors import DeliveryError, RateLimitFailure
from .payload import EventContext, EventEnvelope
from .status import CLAIMABLE_STATUSES, TERMINAL_STATUSES, DeliveryPriority, DeliveryStatus

DEFAULT_EXPIRY_HOURS = 24

CANCELLATION_REASON_KEY = "cancellation_reason"


class RequestSnapshot(BaseModel):
    """Request sent on the latest attempt."""

    model_config = ConfigDict(extra="forbid")

    url: str | None = None
    method: str | None = None
    headers: dict[str, str] = Field(default_factory=dict)
    body: str | None = None
    timeout: float | None = Field(default=None, description="Attempt timeout (seconds)")
    user_agent: str | None = None


class ResponseSnapshot(BaseModel):
    """Response received on the latest attempt."""

    model_config = ConfigDict(extra="forbid")

    status_code: int | None = None
    status_text: str | None = None
    headers: dict[str, str] = Field(default_factory=dict)
    body: str | None = Field(default=None, description="Response body (truncated)")
    response_time: int | None = Field(default=None, description="Round trip (ms)")
    content_type: str | None = None
    content_length: int | None = None


class DeliveryMetadata(BaseModel):
    """Tracing, timing and lineage information for a delivery.

    Attributes:
        trace_id: Distributed trace identifier.
        correlation_id: Caller-supplied correlation identifier.
        queue_time: Time between becoming due and being claimed (ms).
        processing_time: Time between claim and completion (ms).
        total_time: Time between creation and completion (ms).
        triggered_by: User or system that triggered the event.
        source_event: Original event that caused this delivery.
        delivery_attempt: Number of the attempt in flight or last made.
        is_retry: Whether this record redelivers an earlier one.
        original_delivery_id: The record this one redelivers.
        tags: Free-form labels.
        custom_fields: Free-form key/value data.
    """

    model_config = ConfigDict(extra="forbid")

    trace_id: str | None = None
    correlation_id: str | None = None
    queue_time: int | None = None
    processing_time: int | None = None
    total_time: int | None = None
    triggered_by: str | None = None
    source_event: str | None = None
    delivery_attempt: int | None = None
    is_retry: bool = False
    original_delivery_id: str | None = None
    tags: list[str] = Field(default_factory=list)
    custom_fields: dict[str, Any] = Field(default_factory=dict)


class DeliveryRecord(BaseModel):
    """One event on its way to one endpoint.

    Attributes:
        id: Unique, immutable identifier.
        endpoint_id: Target endpoint; resolved by the endpoint collaborator.
        event_type: Type of the event being delivered.
        organization_id: Owning organization (optional).
        status: Current lifecycle state.
        priority: Dispatch priority, fixed at creation.
        payload: Event envelope; never changes after creation.
        request: Request sent on the latest attempt.
        response: Response to the latest attempt, once one completed.
        attempts: Attempt counters, retry settings and history.
        error: Classified error of the latest attempt, if it failed.
        metadata: Tracing, timing and lineage information.
        scheduled_at: Earliest time of the first attempt.
        sent_at: When the latest attempt started.
        completed_at: When the record reached a terminal state.
        expires_at: No attempt is made at or after this time.
        created_at: Creation time.
        updated_at: Last modification time.
    """

    model_config = ConfigDict(extra="forbid")

    id: str = Field(default_factory=lambda: generate_id("dlv"))
    endpoint_id: str = Field(description="Target endpoint")
    event_type: str = Field(description="Event type being delivered")
    organization_id: str | None = Field(default=None, description="Organization (optional)")
    status: DeliveryStatus = Field(default=DeliveryStatus.PENDING)
    priority: DeliveryPriority = Field(default=DeliveryPriority.NORMAL)
    payload: EventEnvelope
    request: RequestSnapshot = Field(default_factory=RequestSnapshot)
    response: ResponseSnapshot | None = None
    attempts: DeliveryAttempts = Field(default_factory=DeliveryAttempts)
    error: DeliveryError | None = None
    metadata: DeliveryMetadata = Field(default_factory=DeliveryMetadata)
    scheduled_at: datetime = Field(default_factory=utcnow)
    sent_at: datetime | None = None
    completed_at: datetime | None = None
    expires_at: datetime | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def create(
        cls,
        endpoint_id: str,
        event_type: str,
        payload: Any = None,
        priority: DeliveryPriority = DeliveryPriority.NORMAL,
        organization_id: str | None = None,
        expires_after: timedelta | None = None,
        *,
        scheduled_at: datetime | None = None,
        context: EventContext | None = None,
        previous_data: Any = None,
        profiles: Mapping[DeliveryPriority, BackoffProfile] | None = None,
        now: datetime | None = None,
    ) -> DeliveryRecord:
        """Create a pending delivery.

        Args:
            endpoint_id: Target endpoint.
            event_type: Event type being delivered.
            payload: Event data to wrap, or a ready ``EventEnvelope`` that is
                stored as given.
            priority: Dispatch priority; selects the backoff profile.
            organization_id: Owning organization.
            expires_after: Lifetime of the delivery; no expiry when None.
            scheduled_at: Earliest first attempt; defaults to ``now``.
            context: Triggering context for a wrapped envelope.
            previous_data: Prior state for update events.
            profiles: Priority to backoff profile table.
            now: Current time.

        Returns:
            A new record in PENDING.
        """
        now = now or utcnow()
        if expires_after is not None and expires_after <= timedelta(0):
            raise ValidationError("expires_after", "must be a positive duration")

        if isinstance(payload, EventEnvelope):
            envelope = payload
        else:
            envelope = EventEnvelope.wrap(
                event_type, payload, context=context, previous_data=previous_data, now=now
            )

        if organization_id is None and envelope.context is not None:
            organization_id = envelope.context.organization_id

        return cls(
            endpoint_id=endpoint_id,
            event_type=event_type,
            organization_id=organization_id,
            priority=priority,
            payload=envelope,
            attempts=DeliveryAttempts.from_profile(profile_for(priority, profiles)),
            scheduled_at=scheduled_at or now,
            expires_at=now + expires_after if expires_after is not None else None,
            created_at=now,
            updated_at=now,
        )

    @classmethod
    def create_retry(
        cls,
        original: DeliveryRecord,
        scheduled_at: datetime,
        now: datetime | None = None,
    ) -> DeliveryRecord:
        """Create a new delivery that redelivers ``original``.

        Automatic retries happen in place (RETRYING). A new record is only
        created for redelivery of a finished delivery, so at most one record
        of a lineage is ever active.

        Raises:
            InvalidStateTransition: If ``original`` is not terminal.
        """
        if not original.is_terminal:
            raise InvalidStateTransition(original.id, original.status, "create_retry")

        now = now or utcnow()
        attempts = DeliveryAttempts.from_profile(original.attempts.profile)
        # An expiry already behind the new schedule is dropped; the caller sets a fresh one
        expires_at = original.expires_at
        if expires_at is not None and expires_at <= scheduled_at:
            expires_at = None
        metadata = original.metadata.model_copy(
            deep=True,
            update={
                "queue_time": None,
                "processing_time": None,
                "total_time": None,
                "delivery_attempt": None,
                "is_retry": True,
                "original_delivery_id": original.id,
            },
        )
        metadata.custom_fields.pop(CANCELLATION_REASON_KEY, None)
        return cls(
            endpoint_id=original.endpoint_id,
            event_type=original.event_type,
            organization_id=original.organization_id,
            priority=original.priority,
            payload=original.payload,
            attempts=attempts,
            metadata=metadata,
            scheduled_at=scheduled_at,
            expires_at=expires_at,
            created_at=now,
            updated_at=now,
        )

    # ------------------------------------------------------------------
    # Derived state
    # ------------------------------------------------------------------

    @property
    def is_terminal(self) -> bool:
        """Whether no further transitions are possible."""
        return self.status in TERMINAL_STATUSES

    @property
    def due_at(self) -> datetime | None:
        """When the record becomes eligible for its next attempt."""
        if self.status is DeliveryStatus.PENDING:
            return self.scheduled_at
        if self.status is DeliveryStatus.RETRYING:
            return self.attempts.next_attempt_at
        return None

    def is_expired(self, now: datetime | None = None) -> bool:
        """Whether the expiry time has been reached."""
        now = now or utcnow()
        return self.expires_at is not None and self.expires_at <= now

    def is_due(self, now: datetime | None = None) -> bool:
        """Whether the record may be claimed at ``now``."""
        now = now or utcnow()
        due = self.due_at
        return due is not None and due <= now

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def claim(self, now: datetime | None = None) -> DeliveryRecord:
        """Move a pending or retrying record to PROCESSING.

        Raises:
            InvalidStateTransition: If the record is terminal or already being
                processed.
        """
        if self.status not in CLAIMABLE_STATUSES:
            raise InvalidStateTransition(self.id, self.status, "claim")

        now = now or utcnow()
        due = self.due_at
        self.status = DeliveryStatus.PROCESSING
        self.sent_at = now
        self.attempts.next_attempt_at = None
        self.metadata.queue_time = elapsed_ms(due, now)
        self.metadata.delivery_attempt = self.attempts.count + 1
        self.updated_at = now
        return self

    def record_success(
        self,
        response: ResponseSnapshot | None,
        response_time: int,
        now: datetime | None = None,
    ) -> DeliveryRecord:
        """Record a successful attempt and finish the delivery.

        Raises:
            InvalidStateTransition: If the record is not being processed.
        """
        if self.is_terminal:
            return self
        self._require_processing("record_success")

        now = now or utcnow()
        snapshot = response.model_copy() if response is not None else ResponseSnapshot()
        snapshot.response_time = response_time
        self.attempts.append(
            success=True,
            now=now,
            status_code=snapshot.status_code,
            response_time=response_time,
        )
        self.response = snapshot
        self.error = None
        self.status = DeliveryStatus.SUCCESS
        self._complete(now)
        return self

    def record_failure(
        self,
        raw_error: RawFailure,
        response: ResponseSnapshot | None = None,
        now: datetime | None = None,
    ) -> DeliveryRecord:
        """Record a failed attempt and decide between retry and failure.

        The delivery is retried only if the error is retryable, attempts
        remain, and the retry would happen before ``expires_at``. Running out
        of attempts wins over a retryable classification.

        Raises:
            InvalidStateTransition: If the record is not being processed.
        """
        if self.is_terminal:
            return self
        self._require_processing("record_failure")

        now = now or utcnow()
        error = classify(raw_error)
        attempts_so_far = self.attempts.count

        if response is not None:
            self.response = response
        status_code = response.status_code if response is not None else raw_error.status_code
        self.attempts.append(
            success=False,
            now=now,
            status_code=status_code,
            response_time=response.response_time if response is not None else None,
            error=error.message,
        )
        self.error = error

        retry_at = self._retry_time(error, attempts_so_far, now)
        if retry_at is not None:
            self.status = DeliveryStatus.RETRYING
            self.attempts.next_attempt_at = retry_at
            self.updated_at = now
        else:
            self.status = DeliveryStatus.FAILED
            self.attempts.next_attempt_at = None
            self._complete(now)
        return self

    def cancel(self, reason: str | None = None, now: datetime | None = None) -> DeliveryRecord:
        """Cancel the delivery. No-op once terminal."""
        if self.is_terminal:
            return self

        now = now or utcnow()
        self.status = DeliveryStatus.CANCELLED
        self.attempts.next_attempt_at = None
        if reason:
            self.metadata.custom_fields[CANCELLATION_REASON_KEY] = reason
        self._complete(now)
        return self

    def expire(self, now: datetime | None = None) -> DeliveryRecord:
        """Expire a delivery that was not attempted in time. No-op once terminal.

        Raises:
            InvalidStateTransition: If an attempt is in flight.
        """
        if self.is_terminal:
            return self
        if self.status not in CLAIMABLE_STATUSES:
            raise InvalidStateTransition(self.id, self.status, "expire")

        now = now or utcnow()
        self.status = DeliveryStatus.EXPIRED
        self.attempts.next_attempt_at = None
        self._complete(now)
        return self

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def attach_request(self, request: RequestSnapshot) -> DeliveryRecord:
        """Store the request sent on the current attempt."""
        self.request = request
        return self

    def set_expiration(
        self, hours: float = DEFAULT_EXPIRY_HOURS, now: datetime | None = None
    ) -> DeliveryRecord:
        """Expire the delivery ``hours`` from now."""
        if hours <= 0:
            raise ValidationError("hours", "must be positive")
        now = now or utcnow()
        self.expires_at = now + timedelta(hours=hours)
        return self

    def add_metadata(self, key: str, value: Any) -> DeliveryRecord:
        self.metadata.custom_fields[key] = value
        return self

    def set_trace_id(self, trace_id: str) -> DeliveryRecord:
        self.metadata.trace_id = trace_id
        return self

    def set_correlation_id(self, correlation_id: str) -> DeliveryRecord:
        self.metadata.correlation_id = correlation_id
        return self

    def _require_processing(self, operation: str) -> None:
        if self.status is not DeliveryStatus.PROCESSING:
            raise InvalidStateTransition(self.id, self.status, operation)

    def _retry_time(
        self, error: DeliveryError, attempts_so_far: int, now: datetime
    ) -> datetime | None:
        if not error.retryable or self.attempts.exhausted:
            return None
        if self.is_expired(now):
            return None

        retry_at = next_attempt_at(self.attempts.profile, attempts_so_far, now)
        if isinstance(error, RateLimitFailure) and error.retry_after:
            retry_at = max(retry_at, now + timedelta(seconds=error.retry_after))

        if self.expires_at is not None and retry_at >= self.expires_at:
            return None
        return retry_at

    def _complete(self, now: datetime) -> None:
        if self.completed_at is None:
            self.completed_at = now
            self.metadata.processing_time = elapsed_ms(self.sent_at, now)
            self.metadata.total_time = elapsed_ms(self.created_at, now)
        self.updated_at = now


__all__ = [
    "CANCELLATION_REASON_KEY",
    "DEFAULT_EXPIRY_HOURS",
    "DeliveryMetadata",
    "DeliveryRecord",
    "RequestSnapshot",
    "ResponseSnapshot",
]
