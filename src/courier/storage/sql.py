"""SQLAlchemy delivery store.

Each record is stored as a JSON document next to the handful of columns the
selector filters and sorts on. Timestamps in those columns are epoch
microseconds so ordering behaves the same on every backend.

Compare-and-set is a conditional ``UPDATE ... WHERE id = :id AND status =
:expected``; the row count tells whether the write landed. Two workers racing
for the same record therefore cannot both claim it, without any locking.

Example:
    ```python
    async with SqlDeliveryStore("sqlite+aiosqlite:///courier.db") as store:
        await store.insert(record)
        ready = await store.find_ready(utcnow(), limit=50)
    ```
"""

from __future__ import annotations

import functools
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any, ParamSpec, TypeVar

from sqlalchemy import BigInteger, Index, Integer, String, Text, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.pool import StaticPool

from courier.exceptions import ConfigurationError, StorageError
from courier.models.base import to_micros
from courier.models.delivery import DeliveryRecord
from courier.models.status import (
    CLAIMABLE_STATUSES,
    PRIORITY_RANK,
    TERMINAL_STATUSES,
    DeliveryStatus,
)

from .base import DeliveryStore
from .retry import storage_retry

logger = logging.getLogger(__name__)

P = ParamSpec("P")
T = TypeVar("T")


class Base(DeclarativeBase):
    pass


class DeliveryRow(Base):
    """Table row for one delivery record."""

    __tablename__ = "courier_deliveries"
    __table_args__ = (
        Index("ix_courier_deliveries_ready", "status", "due_at_us"),
        Index("ix_courier_deliveries_endpoint", "endpoint_id", "created_at_us"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    endpoint_id: Mapped[str] = mapped_column(String(255), nullable=False)
    event_type: Mapped[str] = mapped_column(String(255), nullable=False)
    organization_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    priority_rank: Mapped[int] = mapped_column(Integer, nullable=False)
    due_at_us: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    expires_at_us: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    created_at_us: Mapped[int] = mapped_column(BigInteger, nullable=False)
    updated_at_us: Mapped[int] = mapped_column(BigInteger, nullable=False)
    document: Mapped[str] = mapped_column(Text, nullable=False)


def _columns(record: DeliveryRecord) -> dict[str, Any]:
    """Column values for a record, document included."""
    due = record.due_at
    return {
        "endpoint_id": record.endpoint_id,
        "event_type": record.event_type,
        "organization_id": record.organization_id,
        "status": record.status.value,
        "priority_rank": PRIORITY_RANK[record.priority],
        "due_at_us": to_micros(due) if due is not None else None,
        "expires_at_us": to_micros(record.expires_at) if record.expires_at is not None else None,
        "created_at_us": to_micros(record.created_at),
        "updated_at_us": to_micros(record.updated_at),
        "document": record.model_dump_json(),
    }


def _to_record(row: DeliveryRow) -> DeliveryRecord:
    return DeliveryRecord.model_validate_json(row.document)


def _wrap_errors(action: str) -> Callable[[Callable[P, Awaitable[T]]], Callable[P, Awaitable[T]]]:
    """Translate database errors that survived retries into StorageError."""

    def decorator(fn: Callable[P, Awaitable[T]]) -> Callable[P, Awaitable[T]]:
        @functools.wraps(fn)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            try:
                return await fn(*args, **kwargs)
            except StorageError:
                raise
            except SQLAlchemyError as e:
                logger.error("Storage operation failed: %s", action, exc_info=True)
                raise StorageError(f"Failed to {action}: {e}") from e

        return wrapper

    return decorator


class SqlDeliveryStore(DeliveryStore):
    """Delivery store on any SQLAlchemy async engine.

    Args:
        url: Database URL (e.g. ``sqlite+aiosqlite:///courier.db`` or
            ``postgresql+asyncpg://...``).
        engine: Existing engine to use instead of creating one from ``url``.
        create_schema: Create the table on ``initialize()`` if missing.
    """

    def __init__(
        self,
        url: str | None = None,
        engine: AsyncEngine | None = None,
        create_schema: bool = True,
    ) -> None:
        if engine is None and url is None:
            raise ConfigurationError("SqlDeliveryStore needs a database URL or an engine")
        self._url = url
        self._engine = engine
        self._owns_engine = engine is None
        self._create_schema = create_schema
        self._sessionmaker: async_sessionmaker[Any] | None = None

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            raise StorageError("Store not initialized. Call initialize() first.")
        return self._engine

    @property
    def _sessions(self) -> async_sessionmaker[Any]:
        if self._sessionmaker is None:
            raise StorageError("Store not initialized. Call initialize() first.")
        return self._sessionmaker

    async def initialize(self) -> None:
        """Create the engine and, if asked, the schema."""
        if self._engine is None:
            assert self._url is not None
            kwargs: dict[str, Any] = {}
            if self._url.startswith("sqlite") and ":memory:" in self._url:
                # One shared connection, otherwise every session sees an empty database
                kwargs = {"poolclass": StaticPool, "connect_args": {"check_same_thread": False}}
            self._engine = create_async_engine(self._url, **kwargs)
        self._sessionmaker = async_sessionmaker(self._engine, expire_on_commit=False)

        if self._create_schema:
            async with self._engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
        logger.debug("Delivery store initialized", extra={"url": self._url})

    async def close(self) -> None:
        """Dispose of the engine if this store created it."""
        if self._engine is not None and self._owns_engine:
            await self._engine.dispose()
            self._engine = None
        self._sessionmaker = None

    @_wrap_errors("insert delivery")
    @storage_retry
    async def insert(self, record: DeliveryRecord) -> str:
        row = DeliveryRow(id=record.id, **_columns(record))
        try:
            async with self._sessions() as session, session.begin():
                session.add(row)
        except IntegrityError as e:
            raise StorageError(f"Delivery already exists: {record.id}") from e
        return record.id

    @_wrap_errors("load delivery")
    @storage_retry
    async def get(self, record_id: str) -> DeliveryRecord | None:
        async with self._sessions() as session:
            row = await session.get(DeliveryRow, record_id)
            return _to_record(row) if row is not None else None

    @_wrap_errors("update delivery")
    @storage_retry
    async def compare_and_set(
        self, record: DeliveryRecord, expected_status: DeliveryStatus
    ) -> bool:
        stmt = (
            update(DeliveryRow)
            .where(DeliveryRow.id == record.id, DeliveryRow.status == expected_status.value)
            .values(**_columns(record))
        )
        async with self._sessions() as session, session.begin():
            result = await session.execute(stmt)
        return bool(result.rowcount == 1)

    @_wrap_errors("find ready deliveries")
    @storage_retry
    async def find_ready(self, now: datetime, limit: int) -> list[DeliveryRecord]:
        if limit <= 0:
            return []
        stmt = (
            select(DeliveryRow)
            .where(
                DeliveryRow.status.in_([s.value for s in CLAIMABLE_STATUSES]),
                DeliveryRow.due_at_us <= to_micros(now),
            )
            .order_by(
                DeliveryRow.priority_rank.desc(),
                DeliveryRow.due_at_us.asc(),
                DeliveryRow.created_at_us.asc(),
            )
            .limit(limit)
        )
        async with self._sessions() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [_to_record(row) for row in rows]

    @_wrap_errors("find active deliveries")
    @storage_retry
    async def find_active(self, endpoint_id: str | None = None) -> list[DeliveryRecord]:
        stmt = select(DeliveryRow).where(
            DeliveryRow.status.not_in([s.value for s in TERMINAL_STATUSES])
        )
        if endpoint_id is not None:
            stmt = stmt.where(DeliveryRow.endpoint_id == endpoint_id)
        async with self._sessions() as session:
            rows = (await session.execute(stmt.order_by(DeliveryRow.created_at_us))).scalars().all()
        return [_to_record(row) for row in rows]

    @_wrap_errors("list deliveries")
    @storage_retry
    async def list_for_endpoint(
        self,
        endpoint_id: str,
        status: DeliveryStatus | None = None,
        limit: int = 100,
    ) -> list[DeliveryRecord]:
        stmt = select(DeliveryRow).where(DeliveryRow.endpoint_id == endpoint_id)
        if status is not None:
            stmt = stmt.where(DeliveryRow.status == status.value)
        stmt = stmt.order_by(DeliveryRow.created_at_us.desc()).limit(limit)
        async with self._sessions() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [_to_record(row) for row in rows]

    @_wrap_errors("count deliveries")
    @storage_retry
    async def count_by_status(self, endpoint_id: str | None = None) -> dict[DeliveryStatus, int]:
        stmt = select(DeliveryRow.status, func.count()).group_by(DeliveryRow.status)
        if endpoint_id is not None:
            stmt = stmt.where(DeliveryRow.endpoint_id == endpoint_id)
        async with self._sessions() as session:
            rows = (await session.execute(stmt)).all()
        return {DeliveryStatus(status): count for status, count in rows}


__all__ = ["Base", "DeliveryRow", "SqlDeliveryStore"]
