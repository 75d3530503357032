"""Event envelope delivered to webhook endpoints.

The envelope is frozen: once a delivery record is created its payload is
never rewritten, so every attempt (and every redelivery) sends the same bytes.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from .base import generate_id, utcnow

ENVELOPE_VERSION = "1.0"


class EventContext(BaseModel):
    """Who and what triggered the event.

    Attributes:
        user_id: User that caused the event.
        organization_id: Organization the event belongs to.
        session_id: Session in which the event occurred.
        user_agent: Client user agent, if known.
        ip_address: Client address, if known.
        source: Subsystem that produced the event.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    user_id: str | None = None
    organization_id: str | None = None
    session_id: str | None = None
    user_agent: str | None = None
    ip_address: str | None = None
    source: str | None = None


class EventEnvelope(BaseModel):
    """Payload sent to webhook endpoints.

    Attributes:
        event: Event type (e.g. "user.created").
        event_id: Unique identifier for this event occurrence.
        timestamp: When the event occurred.
        version: Envelope schema version.
        data: Event-specific payload data.
        context: Triggering context (optional).
        previous_data: Prior state, for update events (optional).
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    event: str = Field(description="Event type")
    event_id: str = Field(default_factory=lambda: generate_id("evt"))
    timestamp: datetime = Field(default_factory=utcnow, description="When the event occurred")
    version: str = Field(default=ENVELOPE_VERSION, description="Envelope schema version")
    data: Any = Field(default=None, description="Event-specific payload")
    context: EventContext | None = Field(default=None, description="Triggering context")
    previous_data: Any = Field(default=None, description="Prior state for update events")

    @classmethod
    def wrap(
        cls,
        event: str,
        data: Any,
        context: EventContext | None = None,
        previous_data: Any = None,
        now: datetime | None = None,
    ) -> EventEnvelope:
        """Build an envelope around raw event data."""
        return cls(
            event=event,
            timestamp=now or utcnow(),
            data=data,
            context=context,
            previous_data=previous_data,
        )


__all__ = ["ENVELOPE_VERSION", "EventContext", "EventEnvelope"]
