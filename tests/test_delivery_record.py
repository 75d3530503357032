"""Unit tests for the delivery record state machine."""

from __future__ import annotations

from datetime import timedelta

import pytest
from pydantic import ValidationError as ModelValidationError

from courier.engine.classifier import RawFailure
from courier.exceptions import InvalidStateTransition, ValidationError
from courier.models import (
    BackoffProfile,
    DeliveryPriority,
    DeliveryRecord,
    DeliveryStatus,
    ErrorKind,
    EventContext,
    EventEnvelope,
)
from courier.models.delivery import ResponseSnapshot
from courier.models.errors import HttpFailure, NetworkFailure, RateLimitFailure


def _http(status: int) -> RawFailure:
    return RawFailure(message=f"HTTP {status}", status_code=status)


def _ok() -> ResponseSnapshot:
    return ResponseSnapshot(status_code=200, status_text="OK", body="ok")


def _assert_history_consistent(record: DeliveryRecord) -> None:
    assert len(record.attempts.history) == record.attempts.count
    numbers = [entry.attempt_number for entry in record.attempts.history]
    assert numbers == list(range(1, record.attempts.count + 1))


class TestCreate:
    """Tests for DeliveryRecord.create."""

    def test_defaults(self, make_record, now):
        record = make_record()
        assert record.id.startswith("dlv_")
        assert record.status is DeliveryStatus.PENDING
        assert record.priority is DeliveryPriority.NORMAL
        assert record.scheduled_at == now
        assert record.created_at == now
        assert record.expires_at is None
        assert record.completed_at is None
        assert record.response is None
        assert record.error is None
        assert record.attempts.count == 0
        assert record.attempts.max_attempts == 3
        assert record.due_at == now

    def test_wraps_payload(self, make_record, now):
        context = EventContext(user_id="usr_1", organization_id="org_9", source="orders")
        record = make_record(data={"a": 1}, context=context, previous_data={"a": 0})
        assert record.payload.event == "order.created"
        assert record.payload.event_id.startswith("evt_")
        assert record.payload.version == "1.0"
        assert record.payload.timestamp == now
        assert record.payload.data == {"a": 1}
        assert record.payload.previous_data == {"a": 0}
        assert record.organization_id == "org_9"

    def test_prebuilt_envelope_stored_as_given(self, make_record):
        envelope = EventEnvelope(event="order.created", data={"nested": [1, 2, {"x": None}]})
        record = make_record(data=envelope)
        assert record.payload == envelope
        assert record.payload.event_id == envelope.event_id

    def test_critical_profile(self, make_record):
        record = make_record(priority=DeliveryPriority.CRITICAL)
        assert record.attempts.max_attempts == 5
        assert record.attempts.retry_delay == 500

    def test_expiry(self, make_record, now):
        record = make_record(expires_after=timedelta(hours=24))
        assert record.expires_at == now + timedelta(hours=24)

    def test_non_positive_expiry_rejected(self, make_record):
        with pytest.raises(ValidationError):
            make_record(expires_after=timedelta(0))

    def test_payload_is_frozen(self, make_record):
        record = make_record()
        with pytest.raises(ModelValidationError):
            record.payload.data = {"changed": True}

    def test_json_round_trip(self, make_record):
        record = make_record(data={"amount": 12.5, "items": ["a", "b"]})
        record.claim(record.created_at)
        record.record_failure(_http(500), now=record.created_at)
        restored = DeliveryRecord.model_validate_json(record.model_dump_json())
        assert restored.model_dump() == record.model_dump()
        assert isinstance(restored.error, HttpFailure)


class TestClaim:
    """Tests for claim."""

    def test_claim_pending(self, make_record, now):
        record = make_record()
        later = now + timedelta(milliseconds=250)
        record.claim(later)
        assert record.status is DeliveryStatus.PROCESSING
        assert record.sent_at == later
        assert record.metadata.queue_time == 250
        assert record.metadata.delivery_attempt == 1
        assert record.attempts.next_attempt_at is None

    def test_claim_processing_raises(self, make_record, now):
        record = make_record().claim(now)
        with pytest.raises(InvalidStateTransition) as exc_info:
            record.claim(now)
        assert exc_info.value.current == "processing"
        assert exc_info.value.operation == "claim"

    def test_claim_terminal_raises(self, make_record, now):
        record = make_record().cancel(now=now)
        with pytest.raises(InvalidStateTransition):
            record.claim(now)

    def test_claim_retrying(self, make_record, now):
        record = make_record().claim(now)
        record.record_failure(_http(500), now=now)
        retry_at = record.attempts.next_attempt_at
        record.claim(retry_at)
        assert record.status is DeliveryStatus.PROCESSING
        assert record.metadata.delivery_attempt == 2
        assert record.metadata.queue_time == 0


class TestRecordSuccess:
    """Tests for record_success."""

    def test_success(self, make_record, now):
        record = make_record().claim(now)
        done = now + timedelta(milliseconds=120)
        record.record_success(_ok(), 120, done)

        assert record.status is DeliveryStatus.SUCCESS
        assert record.completed_at == done
        assert record.response.status_code == 200
        assert record.response.response_time == 120
        assert record.error is None
        assert record.attempts.count == 1
        assert record.attempts.history[0].success is True
        assert record.attempts.history[0].status_code == 200
        assert record.metadata.processing_time == 120
        assert record.metadata.total_time == 120
        _assert_history_consistent(record)

    def test_success_clears_previous_error(self, make_record, now):
        record = make_record().claim(now)
        record.record_failure(_http(500), now=now)
        record.claim(record.attempts.next_attempt_at)
        record.record_success(_ok(), 5, record.sent_at)
        assert record.error is None
        assert [e.success for e in record.attempts.history] == [False, True]

    def test_success_on_pending_raises(self, make_record, now):
        with pytest.raises(InvalidStateTransition):
            make_record().record_success(_ok(), 1, now)

    def test_success_on_terminal_is_noop(self, make_record, now):
        record = make_record().cancel("stop", now)
        before = record.model_copy(deep=True)
        record.record_success(_ok(), 1, now + timedelta(seconds=1))
        assert record == before


class TestRecordFailure:
    """Tests for record_failure and the retry decision."""

    def test_connection_refused_fails_immediately(self, make_record, now):
        """ECONNREFUSED is permanent: FAILED after the first attempt."""
        record = make_record().claim(now)
        record.record_failure(RawFailure(message="refused", code="ECONNREFUSED"), now=now)

        assert record.status is DeliveryStatus.FAILED
        assert record.attempts.next_attempt_at is None
        assert record.completed_at == now
        assert isinstance(record.error, NetworkFailure)
        assert record.error.retryable is False
        _assert_history_consistent(record)

    def test_server_error_schedules_retry(self, make_record, now):
        """HTTP 500 goes to RETRYING one base delay after the attempt."""
        record = make_record().claim(now)
        record.record_failure(_http(500), now=now)

        assert record.status is DeliveryStatus.RETRYING
        assert record.attempts.last_attempt_at == now
        assert record.attempts.next_attempt_at == now + timedelta(milliseconds=1000)
        assert record.completed_at is None
        assert record.due_at == record.attempts.next_attempt_at
        assert record.attempts.history[0].error == "HTTP 500"
        assert record.attempts.history[0].status_code == 500

    def test_not_found_fails_immediately(self, make_record, now):
        record = make_record().claim(now)
        record.record_failure(_http(404), now=now)
        assert record.status is DeliveryStatus.FAILED
        assert record.error.retryable is False

    def test_exhaustion(self, make_record, now):
        """Three HTTP 500s under max_attempts=3 end in FAILED."""
        record = make_record()
        t = now
        delays = []
        for _ in range(3):
            record.claim(t)
            record.record_failure(_http(500), now=t)
            if record.status is DeliveryStatus.RETRYING:
                delays.append(record.attempts.next_attempt_at - t)
                t = record.attempts.next_attempt_at

        assert record.status is DeliveryStatus.FAILED
        assert record.attempts.count == 3
        assert record.attempts.next_attempt_at is None
        assert record.error.retryable is True
        assert delays == [timedelta(seconds=1), timedelta(seconds=2)]
        _assert_history_consistent(record)

    def test_exhaustion_wins_over_retryable(self, make_record, now):
        profiles = {DeliveryPriority.NORMAL: BackoffProfile(max_attempts=1)}
        record = make_record(profiles=profiles).claim(now)
        record.record_failure(RawFailure(timed_out=True), now=now)
        assert record.status is DeliveryStatus.FAILED

    def test_retry_past_expiry_fails(self, make_record, now):
        """A retry that would land at or after expiry fails the record instead."""
        record = make_record(expires_after=timedelta(milliseconds=1000)).claim(now)
        record.record_failure(_http(500), now=now)
        assert record.status is DeliveryStatus.FAILED
        assert record.attempts.next_attempt_at is None

    def test_retry_before_expiry_allowed(self, make_record, now):
        record = make_record(expires_after=timedelta(milliseconds=1001)).claim(now)
        record.record_failure(_http(500), now=now)
        assert record.status is DeliveryStatus.RETRYING
        assert record.attempts.next_attempt_at < record.expires_at

    def test_failure_after_expiry_fails(self, make_record, now):
        record = make_record(expires_after=timedelta(seconds=10)).claim(now)
        record.record_failure(_http(503), now=now + timedelta(seconds=10))
        assert record.status is DeliveryStatus.FAILED

    def test_rate_limit_honors_retry_after(self, make_record, now):
        record = make_record().claim(now)
        raw = RawFailure(kind=ErrorKind.RATE_LIMIT, status_code=429, retry_after=30)
        record.record_failure(raw, now=now)
        assert isinstance(record.error, RateLimitFailure)
        assert record.attempts.next_attempt_at == now + timedelta(seconds=30)

    def test_response_snapshot_stored(self, make_record, now):
        record = make_record().claim(now)
        response = ResponseSnapshot(status_code=502, body="bad gateway", response_time=40)
        record.record_failure(_http(502), response, now)
        assert record.response == response
        assert record.attempts.history[0].response_time == 40

    def test_failure_on_retrying_raises(self, make_record, now):
        record = make_record().claim(now)
        record.record_failure(_http(500), now=now)
        with pytest.raises(InvalidStateTransition):
            record.record_failure(_http(500), now=now)

    def test_failure_on_terminal_is_noop(self, make_record, now):
        record = make_record().claim(now)
        record.record_success(_ok(), 3, now)
        record.record_failure(_http(500), now=now)
        assert record.status is DeliveryStatus.SUCCESS
        assert record.attempts.count == 1


class TestCancelAndExpire:
    """Tests for cancel and expire."""

    def test_cancel_is_idempotent(self, make_record, now):
        record = make_record()
        record.cancel("Endpoint deleted", now)
        snapshot = record.model_copy(deep=True)
        record.cancel("again", now + timedelta(minutes=1))

        assert record.status is DeliveryStatus.CANCELLED
        assert record == snapshot
        assert record.completed_at == now
        assert record.metadata.custom_fields["cancellation_reason"] == "Endpoint deleted"

    def test_cancel_in_flight(self, make_record, now):
        record = make_record().claim(now)
        record.cancel(now=now)
        assert record.status is DeliveryStatus.CANCELLED
        assert "cancellation_reason" not in record.metadata.custom_fields

    def test_cancel_retrying_clears_next_attempt(self, make_record, now):
        record = make_record().claim(now)
        record.record_failure(_http(500), now=now)
        record.cancel(now=now)
        assert record.attempts.next_attempt_at is None

    def test_expire_pending(self, make_record, now):
        record = make_record(expires_after=timedelta(hours=1))
        later = now + timedelta(hours=1)
        assert record.is_expired(later)
        record.expire(later)
        assert record.status is DeliveryStatus.EXPIRED
        assert record.completed_at == later
        assert record.due_at is None

    def test_expire_processing_raises(self, make_record, now):
        record = make_record().claim(now)
        with pytest.raises(InvalidStateTransition):
            record.expire(now)

    def test_expire_terminal_is_noop(self, make_record, now):
        record = make_record().cancel(now=now)
        record.expire(now + timedelta(days=2))
        assert record.status is DeliveryStatus.CANCELLED


class TestCreateRetry:
    """Tests for redelivery as a new record."""

    def test_copies_lineage(self, make_record, now):
        original = make_record(priority=DeliveryPriority.HIGH, organization_id="org_1")
        original.set_trace_id("trace_1").add_metadata("tenant", "acme")
        original.claim(now)
        original.record_failure(_http(404), now=now)

        later = now + timedelta(hours=1)
        retry = DeliveryRecord.create_retry(original, later, now=later)

        assert retry.id != original.id
        assert retry.status is DeliveryStatus.PENDING
        assert retry.payload == original.payload
        assert retry.priority is DeliveryPriority.HIGH
        assert retry.organization_id == "org_1"
        assert retry.attempts.count == 0
        assert retry.attempts.history == []
        assert retry.attempts.max_attempts == original.attempts.max_attempts
        assert retry.metadata.is_retry is True
        assert retry.metadata.original_delivery_id == original.id
        assert retry.metadata.trace_id == "trace_1"
        assert retry.metadata.custom_fields["tenant"] == "acme"
        assert retry.scheduled_at == later
        assert retry.error is None

    def test_active_original_rejected(self, make_record, now):
        with pytest.raises(InvalidStateTransition):
            DeliveryRecord.create_retry(make_record(), now)


class TestHelpers:
    """Tests for metadata helpers."""

    def test_set_expiration(self, make_record, now):
        record = make_record().set_expiration(now=now)
        assert record.expires_at == now + timedelta(hours=24)

    def test_set_expiration_rejects_non_positive(self, make_record):
        with pytest.raises(ValidationError):
            make_record().set_expiration(0)

    def test_correlation_id(self, make_record):
        record = make_record().set_correlation_id("corr_1")
        assert record.metadata.correlation_id == "corr_1"
