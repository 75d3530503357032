"""Transport collaborators that send one delivery attempt.

A transport either returns a ``TransportResponse`` for a 2xx answer or raises
``TransportError`` carrying a ``RawFailure`` for anything else. It never
touches the delivery record; the dispatcher feeds the outcome back in.
"""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING, Protocol, runtime_checkable

import httpx
from pydantic import BaseModel, ConfigDict, Field

from courier.engine.classifier import RawFailure, parse_retry_after
from courier.exceptions import TransportError
from courier.models.delivery import RequestSnapshot, ResponseSnapshot
from courier.models.errors import ErrorKind

if TYPE_CHECKING:
    from courier.models.delivery import DeliveryRecord

    from .endpoints import EndpointTarget

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "Courier-Webhooks/1.0"

# Response bodies are truncated before they are stored on the record
MAX_BODY_CHARS = 1000


class TransportResponse(BaseModel):
    """Successful answer from the receiver.

    Attributes:
        status_code: HTTP status code.
        status_text: HTTP reason phrase.
        headers: Response headers.
        body: Response body (truncated).
        response_time: Round trip in milliseconds.
    """

    model_config = ConfigDict(extra="forbid")

    status_code: int
    status_text: str | None = None
    headers: dict[str, str] = Field(default_factory=dict)
    body: str | None = None
    response_time: int = Field(default=0, ge=0, description="Round trip (ms)")

    def to_snapshot(self) -> ResponseSnapshot:
        """Response snapshot to store on the delivery record."""
        return _snapshot(
            self.status_code, self.status_text, self.headers, self.body, self.response_time
        )


@runtime_checkable
class Transport(Protocol):
    """Sends one attempt of a delivery to its target."""

    async def send(self, record: DeliveryRecord, target: EndpointTarget) -> TransportResponse:
        """Send the record's payload.

        Raises:
            TransportError: If the attempt failed for any reason.
        """
        ...


def build_request(
    record: DeliveryRecord,
    target: EndpointTarget,
    user_agent: str = DEFAULT_USER_AGENT,
    timeout_seconds: float | None = None,
) -> RequestSnapshot:
    """Describe the request for one attempt of ``record``.

    Endpoint headers are applied last so an endpoint can override defaults.
    """
    headers = {
        "Content-Type": "application/json",
        "User-Agent": user_agent,
        "X-Webhook-ID": record.id,
        "X-Webhook-Event": record.event_type,
        "X-Webhook-Timestamp": record.created_at.isoformat(),
        **target.headers,
    }
    return RequestSnapshot(
        url=target.url,
        method=target.method.upper(),
        headers=headers,
        body=record.payload.model_dump_json(),
        timeout=timeout_seconds if timeout_seconds is not None else target.timeout_seconds,
        user_agent=headers.get("User-Agent"),
    )


class HttpxTransport:
    """Transport on an ``httpx.AsyncClient``.

    Non-2xx answers raise ``TransportError``; a 429 is reported as a rate
    limit with the receiver's Retry-After hint.

    Example:
        ```python
        async with HttpxTransport() as transport:
            response = await transport.send(record, target)
        ```
    """

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        user_agent: str = DEFAULT_USER_AGENT,
        timeout_seconds: float = 30.0,
    ) -> None:
        """Initialize the transport.

        Args:
            client: Client to send with. One is created on first use if None.
            user_agent: User-Agent header value.
            timeout_seconds: Request timeout when the endpoint sets none.
        """
        self._client = client
        self._owns_client = client is None
        self._user_agent = user_agent
        self._timeout = timeout_seconds

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout, follow_redirects=False)
        return self._client

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> HttpxTransport:
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.close()

    async def send(self, record: DeliveryRecord, target: EndpointTarget) -> TransportResponse:
        timeout = target.timeout_seconds or self._timeout
        request = build_request(record, target, self._user_agent, timeout)

        started = time.perf_counter()
        try:
            response = await self.client.request(
                request.method or "POST",
                target.url,
                content=request.body,
                headers=request.headers,
                timeout=timeout,
            )
        except httpx.HTTPError as e:
            raise TransportError(RawFailure.from_exception(e)) from e
        elapsed = int((time.perf_counter() - started) * 1000)

        body = response.text[:MAX_BODY_CHARS] if response.text else None
        headers = dict(response.headers)
        status_text = response.reason_phrase or None

        if response.is_success:
            logger.debug(
                "Webhook delivered: %s to %s (status %d)",
                record.event_type,
                target.url,
                response.status_code,
            )
            return TransportResponse(
                status_code=response.status_code,
                status_text=status_text,
                headers=headers,
                body=body,
                response_time=elapsed,
            )

        failure = RawFailure(
            message=f"HTTP {response.status_code}: {status_text or 'Unknown'}",
            status_code=response.status_code,
            status_text=status_text,
            response_body=body,
            retry_after=parse_retry_after(response.headers.get("Retry-After")),
            kind=ErrorKind.RATE_LIMIT if response.status_code == 429 else None,
        )
        raise TransportError(
            failure,
            response=_snapshot(response.status_code, status_text, headers, body, elapsed),
        )


def _snapshot(
    status_code: int,
    status_text: str | None,
    headers: dict[str, str],
    body: str | None,
    response_time: int,
) -> ResponseSnapshot:
    lowered = {k.lower(): v for k, v in headers.items()}
    length = lowered.get("content-length")
    return ResponseSnapshot(
        status_code=status_code,
        status_text=status_text,
        headers=headers,
        body=body,
        response_time=response_time,
        content_type=lowered.get("content-type"),
        content_length=int(length) if length and length.isdigit() else None,
    )


__all__ = [
    "DEFAULT_USER_AGENT",
    "HttpxTransport",
    "Transport",
    "TransportResponse",
    "build_request",
]
