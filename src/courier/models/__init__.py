"""Delivery models for Courier.

Core Types:
    - DeliveryRecord: One event on its way to one endpoint, with its own
      state machine and attempt history
    - EventEnvelope: Immutable payload sent to the endpoint

Supporting Types:
    - DeliveryStatus, DeliveryPriority: Lifecycle state and dispatch priority
    - DeliveryAttempts, AttemptRecord, BackoffProfile: Attempt bookkeeping
    - DeliveryError: Discriminated union of classified failures
    - RequestSnapshot, ResponseSnapshot, DeliveryMetadata: Attempt detail
"""

from .attempts import AttemptRecord, BackoffProfile, DeliveryAttempts
from .base import elapsed_ms, generate_id, to_micros, utcnow
from .errors import (
    AuthenticationFailure,
    DeliveryError,
    ErrorKind,
    HttpFailure,
    NetworkFailure,
    RateLimitFailure,
    ServerFailure,
    TimeoutFailure,
    ValidationFailure,
)
from .payload import ENVELOPE_VERSION, EventContext, EventEnvelope
from .status import (
    CLAIMABLE_STATUSES,
    PRIORITY_RANK,
    TERMINAL_STATUSES,
    DeliveryPriority,
    DeliveryStatus,
)

# Imported last: the record depends on the engine, which depends on the types above
from .delivery import (  # noqa: E402
    DEFAULT_EXPIRY_HOURS,
    DeliveryMetadata,
    DeliveryRecord,
    RequestSnapshot,
    ResponseSnapshot,
)

__all__ = [
    # Base helpers
    "elapsed_ms",
    "generate_id",
    "to_micros",
    "utcnow",
    # Status
    "CLAIMABLE_STATUSES",
    "PRIORITY_RANK",
    "TERMINAL_STATUSES",
    "DeliveryPriority",
    "DeliveryStatus",
    # Attempts
    "AttemptRecord",
    "BackoffProfile",
    "DeliveryAttempts",
    # Errors
    "AuthenticationFailure",
    "DeliveryError",
    "ErrorKind",
    "HttpFailure",
    "NetworkFailure",
    "RateLimitFailure",
    "ServerFailure",
    "TimeoutFailure",
    "ValidationFailure",
    # Payload
    "ENVELOPE_VERSION",
    "EventContext",
    "EventEnvelope",
    # Delivery
    "DEFAULT_EXPIRY_HOURS",
    "DeliveryMetadata",
    "DeliveryRecord",
    "RequestSnapshot",
    "ResponseSnapshot",
]
