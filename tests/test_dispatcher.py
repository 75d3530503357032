"""Tests for the dispatcher worker loop."""

from __future__ import annotations

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest

from courier.dispatch import (
    AttemptOutcome,
    Dispatcher,
    DispatchSummary,
    EndpointTarget,
    StaticEndpointResolver,
    TransportResponse,
)
from courier.engine.classifier import RawFailure
from courier.exceptions import TransportError
from courier.models import DeliveryStatus, ErrorKind
from courier.models.delivery import ResponseSnapshot
from courier.storage import InMemoryDeliveryStore

TARGET = EndpointTarget(url="https://hooks.example.com/orders")


def ok(status_code: int = 200) -> TransportResponse:
    return TransportResponse(status_code=status_code, status_text="OK", response_time=12)


def http_error(status_code: int) -> TransportError:
    failure = RawFailure(message=f"HTTP {status_code}", status_code=status_code)
    return TransportError(failure, response=ResponseSnapshot(status_code=status_code))


class ScriptedTransport:
    """Transport that plays back a list of responses and errors."""

    def __init__(self, *outcomes, delay: float = 0.0) -> None:
        self.outcomes = list(outcomes)
        self.delay = delay
        self.calls: list[str] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def send(self, record, target):
        self.calls.append(record.id)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
            if isinstance(outcome, BaseException):
                raise outcome
            return outcome
        finally:
            self.in_flight -= 1


@pytest.fixture
def store() -> InMemoryDeliveryStore:
    return InMemoryDeliveryStore()


@pytest.fixture
def resolver() -> StaticEndpointResolver:
    return StaticEndpointResolver({"ep_orders": TARGET})


@pytest.fixture
def make_dispatcher(store, resolver, clock):
    def _make(transport, **kwargs) -> Dispatcher:
        kwargs.setdefault("batch_size", 10)
        kwargs.setdefault("max_concurrent", 5)
        kwargs.setdefault("poll_interval_seconds", 0.01)
        return Dispatcher(store, transport, resolver, clock=clock, **kwargs)

    return _make


class TestRunOnce:
    """Tests for a single dispatch cycle."""

    @pytest.mark.asyncio
    async def test_empty_store(self, make_dispatcher):
        summary = await make_dispatcher(ScriptedTransport(ok())).run_once()
        assert summary == DispatchSummary()

    @pytest.mark.asyncio
    async def test_success(self, store, make_dispatcher, make_record):
        record = make_record()
        await store.insert(record)
        transport = ScriptedTransport(ok())

        summary = await make_dispatcher(transport).run_once()

        assert summary.selected == 1
        assert summary.succeeded == 1
        assert summary.attempted == 1
        stored = await store.get(record.id)
        assert stored.status is DeliveryStatus.SUCCESS
        assert stored.attempts.count == 1
        assert stored.response.status_code == 200
        assert stored.response.response_time == 12
        assert stored.request.url == TARGET.url
        assert stored.request.headers["X-Webhook-ID"] == record.id
        assert stored.metadata.delivery_attempt == 1

    @pytest.mark.asyncio
    async def test_retry_then_success(self, store, make_dispatcher, make_record, clock):
        record = make_record()
        await store.insert(record)
        dispatcher = make_dispatcher(ScriptedTransport(http_error(500), ok()))

        first = await dispatcher.run_once()
        assert first.retrying == 1
        stored = await store.get(record.id)
        assert stored.status is DeliveryStatus.RETRYING
        assert stored.attempts.next_attempt_at == clock.now + timedelta(seconds=1)

        # Not due yet
        assert (await dispatcher.run_once()).selected == 0

        clock.advance(seconds=1)
        second = await dispatcher.run_once()
        assert second.succeeded == 1
        stored = await store.get(record.id)
        assert stored.status is DeliveryStatus.SUCCESS
        assert stored.attempts.count == 2
        assert stored.error is None
        assert [a.success for a in stored.attempts.history] == [False, True]

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, store, make_dispatcher, make_record, clock):
        record = make_record()
        await store.insert(record)
        dispatcher = make_dispatcher(ScriptedTransport(http_error(500)))

        assert (await dispatcher.run_once()).retrying == 1
        clock.advance(seconds=1)
        assert (await dispatcher.run_once()).retrying == 1
        clock.advance(seconds=2)
        assert (await dispatcher.run_once()).failed == 1

        stored = await store.get(record.id)
        assert stored.status is DeliveryStatus.FAILED
        assert stored.attempts.count == 3
        assert stored.completed_at == clock.now
        assert stored.error.kind == ErrorKind.HTTP

    @pytest.mark.asyncio
    async def test_permanent_client_error(self, store, make_dispatcher, make_record):
        record = make_record()
        await store.insert(record)

        summary = await make_dispatcher(ScriptedTransport(http_error(404))).run_once()

        assert summary.failed == 1
        stored = await store.get(record.id)
        assert stored.status is DeliveryStatus.FAILED
        assert stored.error.retryable is False
        assert stored.response.status_code == 404

    @pytest.mark.asyncio
    async def test_missing_endpoint(self, store, make_dispatcher, make_record):
        record = make_record(endpoint_id="ep_gone")
        await store.insert(record)
        transport = ScriptedTransport(ok())

        summary = await make_dispatcher(transport).run_once()

        assert summary.failed == 1
        assert transport.calls == []
        stored = await store.get(record.id)
        assert stored.status is DeliveryStatus.FAILED
        assert stored.error.kind == ErrorKind.VALIDATION
        assert stored.attempts.count == 1

    @pytest.mark.asyncio
    async def test_disabled_endpoint(self, store, resolver, make_dispatcher, make_record):
        resolver.register("ep_orders", TARGET.model_copy(update={"enabled": False}))
        record = make_record()
        await store.insert(record)
        transport = ScriptedTransport(ok())

        assert (await make_dispatcher(transport).run_once()).failed == 1
        assert transport.calls == []

    @pytest.mark.asyncio
    async def test_attempt_timeout(self, store, make_dispatcher, make_record):
        record = make_record()
        await store.insert(record)
        dispatcher = make_dispatcher(
            ScriptedTransport(ok(), delay=1.0), attempt_timeout_seconds=0.05
        )

        summary = await dispatcher.run_once()

        assert summary.retrying == 1
        stored = await store.get(record.id)
        assert stored.status is DeliveryStatus.RETRYING
        assert stored.error.kind == ErrorKind.TIMEOUT
        assert stored.request.timeout == 0.05

    @pytest.mark.asyncio
    async def test_unexpected_transport_exception(self, store, make_dispatcher, make_record):
        record = make_record()
        await store.insert(record)

        summary = await make_dispatcher(ScriptedTransport(RuntimeError("boom"))).run_once()

        assert summary.retrying == 1
        stored = await store.get(record.id)
        assert stored.error.kind == ErrorKind.NETWORK
        assert stored.error.message == "boom"

    @pytest.mark.asyncio
    async def test_rate_limit_retry_after(self, store, make_dispatcher, make_record, clock):
        record = make_record()
        await store.insert(record)
        failure = RawFailure(
            message="HTTP 429", status_code=429, kind=ErrorKind.RATE_LIMIT, retry_after=30
        )

        await make_dispatcher(ScriptedTransport(TransportError(failure))).run_once()

        stored = await store.get(record.id)
        assert stored.status is DeliveryStatus.RETRYING
        assert stored.attempts.next_attempt_at == clock.now + timedelta(seconds=30)


class TestConcurrency:
    """Tests for races between workers and operators."""

    @pytest.mark.asyncio
    async def test_lost_claim_is_skipped(self, store, resolver, clock, make_record):
        record = make_record()
        await store.insert(record)

        # Another worker claims the stored copy first
        other = await store.get(record.id)
        other.claim(clock.now)
        assert await store.compare_and_set(other, DeliveryStatus.PENDING)

        selector = AsyncMock()
        selector.next_batch = AsyncMock(return_value=[record])
        transport = ScriptedTransport(ok())
        dispatcher = Dispatcher(store, transport, resolver, selector=selector, clock=clock)

        summary = await dispatcher.run_once()

        assert summary.skipped == 1
        assert summary.attempted == 0
        assert transport.calls == []

    @pytest.mark.asyncio
    async def test_cancel_during_attempt_discards_result(
        self, store, make_dispatcher, make_record, clock
    ):
        record = make_record()
        await store.insert(record)

        class CancellingTransport:
            async def send(self, sent, target):
                current = await store.get(sent.id)
                current.cancel("operator", now=clock.now)
                await store.compare_and_set(current, DeliveryStatus.PROCESSING)
                return ok()

        summary = await make_dispatcher(CancellingTransport()).run_once()

        assert summary.discarded == 1
        stored = await store.get(record.id)
        assert stored.status is DeliveryStatus.CANCELLED
        assert stored.attempts.count == 0

    @pytest.mark.asyncio
    async def test_two_dispatchers_attempt_once(self, store, resolver, clock, make_record):
        record = make_record()
        await store.insert(record)
        transport = ScriptedTransport(ok(), delay=0.01)
        first = Dispatcher(store, transport, resolver, clock=clock)
        second = Dispatcher(store, transport, resolver, clock=clock)

        results = await asyncio.gather(first.run_once(), second.run_once())

        assert sum(r.succeeded for r in results) == 1
        assert transport.calls == [record.id]

    @pytest.mark.asyncio
    async def test_respects_max_concurrent(self, store, make_dispatcher, make_record):
        for _ in range(5):
            await store.insert(make_record())
        transport = ScriptedTransport(ok(), delay=0.02)

        summary = await make_dispatcher(transport, max_concurrent=2).run_once()

        assert summary.succeeded == 5
        assert transport.max_in_flight == 2

    @pytest.mark.asyncio
    async def test_storage_fault_leaves_record(self, store, make_dispatcher, make_record):
        record = make_record()
        await store.insert(record)
        dispatcher = make_dispatcher(ScriptedTransport(ok()))
        store.compare_and_set = AsyncMock(side_effect=RuntimeError("db down"))

        summary = await dispatcher.run_once()

        assert summary.selected == 1
        assert summary.attempted == 0
        assert (await store.get(record.id)).status is DeliveryStatus.PENDING


class TestInternalFaults:
    """Tests for faults on our side of an attempt after the claim landed."""

    @pytest.mark.asyncio
    async def test_resolver_outage_retries_then_recovers(
        self, store, make_dispatcher, make_record, clock, resolver
    ):
        record = make_record()
        await store.insert(record)
        resolver.resolve = AsyncMock(side_effect=[ConnectionError("registry down"), TARGET])
        transport = ScriptedTransport(ok())
        dispatcher = make_dispatcher(transport)

        first = await dispatcher.run_once()

        assert first.retrying == 1
        assert transport.calls == []
        stored = await store.get(record.id)
        assert stored.status is DeliveryStatus.RETRYING
        assert stored.error.kind == ErrorKind.NETWORK
        assert stored.error.retryable is True
        assert "registry down" in stored.error.message
        assert stored.attempts.count == 1

        clock.advance(seconds=1)
        second = await dispatcher.run_once()

        assert second.succeeded == 1
        assert (await store.get(record.id)).status is DeliveryStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_request_build_failure_retries(self, store, make_dispatcher, make_record):
        record = make_record()
        await store.insert(record)
        transport = ScriptedTransport(ok())

        with patch(
            "courier.dispatch.dispatcher.build_request", side_effect=ValueError("bad header")
        ):
            summary = await make_dispatcher(transport).run_once()

        assert summary.retrying == 1
        assert transport.calls == []
        stored = await store.get(record.id)
        assert stored.status is DeliveryStatus.RETRYING
        assert stored.error.retryable is True

    @pytest.mark.asyncio
    async def test_lost_result_write_is_reclaimed(
        self, store, make_dispatcher, make_record, clock
    ):
        record = make_record()
        await store.insert(record)
        dispatcher = make_dispatcher(ScriptedTransport(ok()), processing_lease_seconds=60)
        real_cas = store.compare_and_set

        async def failing_write_back(updated, expected):
            if expected is DeliveryStatus.PROCESSING:
                raise RuntimeError("db down")
            return await real_cas(updated, expected)

        store.compare_and_set = failing_write_back
        summary = await dispatcher.run_once()
        store.compare_and_set = real_cas

        assert summary.attempted == 0
        assert (await store.get(record.id)).status is DeliveryStatus.PROCESSING

        clock.advance(seconds=61)
        stop = asyncio.Event()
        asyncio.get_running_loop().call_later(0.05, stop.set)
        await asyncio.wait_for(dispatcher.run_forever(stop), 2)

        stored = await store.get(record.id)
        assert stored.status is DeliveryStatus.RETRYING
        assert stored.error.kind == ErrorKind.TIMEOUT
        assert stored.attempts.count == 1
        assert stored.attempts.next_attempt_at == clock.now + timedelta(seconds=1)


class TestRunForever:
    """Tests for the polling loop."""

    @pytest.mark.asyncio
    async def test_delivers_until_stopped(self, store, make_dispatcher, make_record):
        record = make_record()
        await store.insert(record)
        stop = asyncio.Event()

        class StoppingTransport:
            async def send(self, sent, target):
                stop.set()
                return ok()

        await asyncio.wait_for(make_dispatcher(StoppingTransport()).run_forever(stop), timeout=2)

        assert (await store.get(record.id)).status is DeliveryStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_idle_sweep_expires_records(self, store, make_dispatcher, make_record, clock):
        record = make_record(
            scheduled_at=clock.now + timedelta(hours=1), expires_after=timedelta(seconds=1)
        )
        await store.insert(record)
        clock.advance(seconds=2)
        stop = asyncio.Event()
        asyncio.get_running_loop().call_later(0.05, stop.set)

        await asyncio.wait_for(make_dispatcher(ScriptedTransport(ok())).run_forever(stop), 2)

        assert (await store.get(record.id)).status is DeliveryStatus.EXPIRED

    def test_outcome_values(self):
        assert {o.value for o in AttemptOutcome} == {
            "succeeded",
            "retrying",
            "failed",
            "skipped",
            "discarded",
        }
