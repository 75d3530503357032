"""Pytest configuration and shared fixtures."""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest
import pytest_asyncio

from courier.models import DeliveryPriority, DeliveryRecord
from courier.storage import InMemoryDeliveryStore, SqlDeliveryStore

T0 = datetime(2026, 1, 15, 12, 0, 0, tzinfo=UTC)


class FakeClock:
    """Manually advanced clock for dispatcher and service tests."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def now() -> datetime:
    """Fixed reference time."""
    return T0


@pytest.fixture
def clock() -> FakeClock:
    """Clock starting at the reference time."""
    return FakeClock()


@pytest.fixture
def make_record(now: datetime) -> Callable[..., DeliveryRecord]:
    """Factory for pending delivery records created at the reference time."""

    def _make(
        endpoint_id: str = "ep_orders",
        event_type: str = "order.created",
        data: Any = None,
        priority: DeliveryPriority = DeliveryPriority.NORMAL,
        **kwargs: Any,
    ) -> DeliveryRecord:
        kwargs.setdefault("now", now)
        return DeliveryRecord.create(
            endpoint_id,
            event_type,
            {"order_id": "ord_123"} if data is None else data,
            priority,
            **kwargs,
        )

    return _make


@pytest.fixture
def memory_store() -> InMemoryDeliveryStore:
    return InMemoryDeliveryStore()


@pytest_asyncio.fixture
async def sql_store() -> AsyncIterator[SqlDeliveryStore]:
    """SQL store on a private in-memory SQLite database."""
    async with SqlDeliveryStore("sqlite+aiosqlite:///:memory:") as store:
        yield store


@pytest_asyncio.fixture(params=["memory", "sql"])
async def store(request: pytest.FixtureRequest) -> AsyncIterator[Any]:
    """Each store implementation, for contract tests."""
    if request.param == "memory":
        yield InMemoryDeliveryStore()
        return
    async with SqlDeliveryStore("sqlite+aiosqlite:///:memory:") as sql:
        yield sql
