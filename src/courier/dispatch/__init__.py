"""Delivery dispatch: worker loop, transport and endpoint lookup.

Example:
    ```python
    from courier.dispatch import Dispatcher, HttpxTransport, StaticEndpointResolver

    async with HttpxTransport() as transport:
        dispatcher = Dispatcher(store, transport, resolver)
        await dispatcher.run_forever(stop_event)
    ```
"""

from .dispatcher import AttemptOutcome, Dispatcher, DispatchSummary
from .endpoints import EndpointResolver, EndpointTarget, StaticEndpointResolver
from .transport import (
    DEFAULT_USER_AGENT,
    HttpxTransport,
    Transport,
    TransportResponse,
    build_request,
)

__all__ = [
    "AttemptOutcome",
    "DEFAULT_USER_AGENT",
    "DispatchSummary",
    "Dispatcher",
    "EndpointResolver",
    "EndpointTarget",
    "HttpxTransport",
    "StaticEndpointResolver",
    "Transport",
    "TransportResponse",
    "build_request",
]
