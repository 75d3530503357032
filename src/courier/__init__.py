"""Courier: reliable webhook delivery.

Delivers business events to external HTTP endpoints at least once, despite
unreliable networks and receivers. Each delivery is a record with its own
state machine; failures are classified, retried with backoff per priority,
and expire when they can no longer be useful.

Quick Start:
    from courier import DeliveryService, Dispatcher, HttpxTransport

    async with DeliveryService.from_settings() as courier:
        await courier.create(
            endpoint_id="ep_orders",
            event_type="order.created",
            data={"order_id": "ord_123"},
        )

        async with HttpxTransport() as transport:
            dispatcher = Dispatcher(courier.store, transport, resolver)
            await dispatcher.run_once()

Delivery States:
    - PENDING: Created, waiting for its scheduled time
    - PROCESSING: Claimed by a worker, attempt in flight
    - RETRYING: Last attempt failed, next attempt scheduled
    - SUCCESS, FAILED, CANCELLED, EXPIRED: Terminal
"""

__version__ = "0.1.0"

# Exceptions
from .exceptions import (
    ConfigurationError,
    CourierError,
    InvalidStateTransition,
    NotFoundError,
    StorageError,
    TransportError,
    ValidationError,
)

# Models (before the engine, which builds on them)
from .models import (
    AttemptRecord,
    BackoffProfile,
    DeliveryError,
    DeliveryPriority,
    DeliveryRecord,
    DeliveryStatus,
    ErrorKind,
    EventContext,
    EventEnvelope,
)

# Configuration
from .config import Settings, settings

# Logging
from .logging import (
    bind_context,
    clear_context,
    configure_logging,
    delivery_context,
    get_logger,
    logger,
    unbind_context,
)

# Engine
from .engine import RawFailure, Selector, classify, next_attempt_delay, profile_for

# Storage
from .storage import DeliveryStore, InMemoryDeliveryStore, SqlDeliveryStore

# Dispatch
from .dispatch import (
    Dispatcher,
    EndpointResolver,
    EndpointTarget,
    HttpxTransport,
    StaticEndpointResolver,
    Transport,
    TransportResponse,
)

# Service
from .service import DeliveryService

__all__ = [
    # Version
    "__version__",
    # Configuration
    "Settings",
    "settings",
    # Exceptions
    "CourierError",
    "InvalidStateTransition",
    "ValidationError",
    "NotFoundError",
    "StorageError",
    "ConfigurationError",
    "TransportError",
    # Logging
    "configure_logging",
    "get_logger",
    "logger",
    "bind_context",
    "clear_context",
    "unbind_context",
    "delivery_context",
    # Models
    "AttemptRecord",
    "BackoffProfile",
    "DeliveryError",
    "DeliveryPriority",
    "DeliveryRecord",
    "DeliveryStatus",
    "ErrorKind",
    "EventContext",
    "EventEnvelope",
    # Engine
    "RawFailure",
    "Selector",
    "classify",
    "next_attempt_delay",
    "profile_for",
    # Storage
    "DeliveryStore",
    "InMemoryDeliveryStore",
    "SqlDeliveryStore",
    # Dispatch
    "Dispatcher",
    "EndpointResolver",
    "EndpointTarget",
    "HttpxTransport",
    "StaticEndpointResolver",
    "Transport",
    "TransportResponse",
    # Service
    "DeliveryService",
]
