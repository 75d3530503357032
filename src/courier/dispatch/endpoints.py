"""Endpoint configuration lookup.

Endpoint management lives outside Courier. The dispatcher only needs to turn
an ``endpoint_id`` into somewhere to send the request, which is what an
``EndpointResolver`` does.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict, Field


class EndpointTarget(BaseModel):
    """Where and how to deliver for one endpoint.

    Attributes:
        url: Destination URL.
        method: HTTP method.
        headers: Extra headers sent with every delivery.
        timeout_seconds: Per-attempt timeout; the dispatcher default applies
            when unset.
        enabled: Disabled endpoints are treated as missing.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    url: str = Field(description="Destination URL")
    method: str = Field(default="POST", description="HTTP method")
    headers: dict[str, str] = Field(default_factory=dict, description="Extra request headers")
    timeout_seconds: float | None = Field(default=None, gt=0, description="Attempt timeout")
    enabled: bool = Field(default=True, description="Whether deliveries may be sent")


@runtime_checkable
class EndpointResolver(Protocol):
    """Resolves an endpoint ID to its delivery target."""

    async def resolve(self, endpoint_id: str) -> EndpointTarget | None:
        """Return the target, or None if the endpoint does not exist."""
        ...


class StaticEndpointResolver:
    """Resolver backed by a fixed mapping.

    Example:
        ```python
        resolver = StaticEndpointResolver(
            {"ep_orders": EndpointTarget(url="https://example.com/hooks")}
        )
        ```
    """

    def __init__(self, endpoints: dict[str, EndpointTarget] | None = None) -> None:
        self._endpoints: dict[str, EndpointTarget] = dict(endpoints or {})

    def register(self, endpoint_id: str, target: EndpointTarget) -> None:
        self._endpoints[endpoint_id] = target

    def remove(self, endpoint_id: str) -> None:
        self._endpoints.pop(endpoint_id, None)

    async def resolve(self, endpoint_id: str) -> EndpointTarget | None:
        return self._endpoints.get(endpoint_id)


__all__ = ["EndpointResolver", "EndpointTarget", "StaticEndpointResolver"]
