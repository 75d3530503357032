"""Classified delivery errors.

Every failed attempt is described by exactly one variant of ``DeliveryError``,
discriminated on ``kind``. Variants carry only the detail that makes sense
for their kind, so code that inspects an error can match on the class.
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class ErrorKind(str, Enum):
    """Category of a delivery failure."""

    NETWORK = "network"
    TIMEOUT = "timeout"
    HTTP = "http"
    VALIDATION = "validation"
    AUTHENTICATION = "authentication"
    RATE_LIMIT = "rate_limit"
    SERVER_ERROR = "server_error"


class _ErrorBase(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    message: str = Field(default="Unknown error", description="Human-readable failure message")
    retryable: bool = Field(default=True, description="Whether another attempt may succeed")
    code: str | None = Field(default=None, description="Transport error code, if any")
    details: dict[str, Any] = Field(default_factory=dict, description="Free-form diagnostics")


class NetworkFailure(_ErrorBase):
    """Connection-level failure (DNS, refused, reset)."""

    kind: Literal["network"] = "network"
    errno: int | None = None
    syscall: str | None = None
    hostname: str | None = None
    port: int | None = None


class TimeoutFailure(_ErrorBase):
    """Attempt exceeded its time budget."""

    kind: Literal["timeout"] = "timeout"


class HttpFailure(_ErrorBase):
    """Receiver answered with a non-success HTTP status."""

    kind: Literal["http"] = "http"
    status_code: int | None = None
    status_text: str | None = None
    response_body: str | None = None


class ValidationFailure(_ErrorBase):
    """Request was rejected before or during sending as malformed."""

    kind: Literal["validation"] = "validation"
    retryable: bool = False


class AuthenticationFailure(_ErrorBase):
    """Receiver rejected our credentials."""

    kind: Literal["authentication"] = "authentication"
    retryable: bool = False


class RateLimitFailure(_ErrorBase):
    """Receiver asked us to slow down."""

    kind: Literal["rate_limit"] = "rate_limit"
    retry_after: float | None = Field(default=None, description="Seconds hinted by receiver")


class ServerFailure(_ErrorBase):
    """Receiver-side fault reported by the transport."""

    kind: Literal["server_error"] = "server_error"
    status_code: int | None = None


DeliveryError = Annotated[
    NetworkFailure
    | TimeoutFailure
    | HttpFailure
    | ValidationFailure
    | AuthenticationFailure
    | RateLimitFailure
    | ServerFailure,
    Field(discriminator="kind"),
]


__all__ = [
    "AuthenticationFailure",
    "DeliveryError",
    "ErrorKind",
    "HttpFailure",
    "NetworkFailure",
    "RateLimitFailure",
    "ServerFailure",
    "TimeoutFailure",
    "ValidationFailure",
]
