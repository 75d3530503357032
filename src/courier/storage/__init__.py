"""Storage backends for Courier.

This module provides the persistence layer for delivery records. Every
backend offers the same compare-and-set write so workers can share it
without a global lock.

Example:
    ```python
    from courier.storage import SqlDeliveryStore

    async with SqlDeliveryStore("sqlite+aiosqlite:///courier.db") as store:
        await store.insert(record)
        ready = await store.find_ready(now, limit=50)
    ```
"""

from .base import DeliveryStore, ready_sort_key
from .memory import InMemoryDeliveryStore
from .retry import storage_retry
from .sql import SqlDeliveryStore

__all__ = [
    "DeliveryStore",
    "InMemoryDeliveryStore",
    "SqlDeliveryStore",
    "ready_sort_key",
    "storage_retry",
]
