"""Failure classification for delivery attempts.

Transports describe what went wrong as a ``RawFailure``; ``classify`` turns
that into exactly one ``DeliveryError`` variant and decides whether another
attempt may succeed. Rules are applied in order and later rules override
earlier ones when a single failure carries several signals:

1. Default: network error, retryable.
2. Transport fault code: network error; ENOTFOUND and ECONNREFUSED point at a
   permanently bad address and are not retried.
3. HTTP response: http error; permanent client statuses are not retried.
4. Timeout signal: timeout error, always retryable.
5. Explicit kind set by the transport: wins over everything above.
"""

from __future__ import annotations

import asyncio
import errno as errno_codes
import socket
from typing import Any

import httpx
from pydantic import BaseModel, ConfigDict, Field

from courier.exceptions import TransportError
from courier.models.errors import (
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

DEFAULT_MESSAGE = "Unknown error"

# Network codes that indicate a bad address rather than a transient fault
NON_RETRYABLE_NETWORK_CODES = frozenset({"ENOTFOUND", "ECONNREFUSED"})

# Client errors that will not change on retry
NON_RETRYABLE_STATUSES = frozenset({400, 401, 403, 404, 405, 410, 422})

TIMEOUT_CODES = frozenset({"ECONNABORTED", "ETIMEDOUT"})

# Retryability of explicitly pre-classified kinds when the transport is silent
_DEFAULT_RETRYABLE: dict[ErrorKind, bool] = {
    ErrorKind.NETWORK: True,
    ErrorKind.TIMEOUT: True,
    ErrorKind.HTTP: True,
    ErrorKind.VALIDATION: False,
    ErrorKind.AUTHENTICATION: False,
    ErrorKind.RATE_LIMIT: True,
    ErrorKind.SERVER_ERROR: True,
}

_DNS_MARKERS = (
    "name or service not known",
    "nodename nor servname",
    "temporary failure in name resolution",
    "getaddrinfo failed",
    "no address associated",
)


class RawFailure(BaseModel):
    """Transport-neutral description of a failed attempt.

    Attributes:
        message: Error message reported by the transport.
        code: Network fault code (e.g. "ECONNREFUSED").
        errno: OS error number, if known.
        syscall: Failing system call, if known.
        hostname: Target host, if known.
        port: Target port, if known.
        status_code: HTTP status, when the receiver answered.
        status_text: HTTP reason phrase.
        response_body: Response body (truncated).
        timed_out: Explicit timeout signal.
        kind: Pre-classified error kind set by the transport.
        retryable: Retryability for a pre-classified kind.
        retry_after: Receiver-suggested wait, in seconds.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    message: str | None = None
    code: str | None = None
    errno: int | None = None
    syscall: str | None = None
    hostname: str | None = None
    port: int | None = None
    status_code: int | None = Field(default=None, ge=100, le=599)
    status_text: str | None = None
    response_body: str | None = None
    timed_out: bool = False
    kind: ErrorKind | None = None
    retryable: bool | None = None
    retry_after: float | None = Field(default=None, ge=0)

    @classmethod
    def from_exception(cls, exc: BaseException) -> RawFailure:
        """Describe an exception raised while sending a delivery.

        Understands httpx exceptions, timeouts, and OS-level socket errors.
        Anything else is reported with its message only.
        """
        if isinstance(exc, TransportError):
            return exc.failure

        message = str(exc) or type(exc).__name__

        if isinstance(exc, httpx.TimeoutException):
            return cls(message=str(exc) or "Request timeout", code="ETIMEDOUT", timed_out=True)
        if isinstance(exc, asyncio.TimeoutError | TimeoutError):
            return cls(message=str(exc) or "Attempt timeout", timed_out=True)
        if isinstance(exc, httpx.HTTPStatusError):
            response = exc.response
            return cls(
                message=message,
                status_code=response.status_code,
                status_text=response.reason_phrase or None,
                response_body=response.text[:1000] if response.text else None,
                retry_after=parse_retry_after(response.headers.get("Retry-After")),
            )
        if isinstance(exc, httpx.RequestError):
            hostname, port = _request_target(exc)
            os_error = _find_os_error(exc)
            code = _os_error_code(os_error) if os_error is not None else None
            if code is None and any(m in message.lower() for m in _DNS_MARKERS):
                code = "ENOTFOUND"
            if code is None and isinstance(exc, httpx.ConnectError):
                if "refused" in message.lower():
                    code = "ECONNREFUSED"
            if code is None and isinstance(exc, httpx.RemoteProtocolError | httpx.ReadError):
                code = "ECONNRESET"
            return cls(
                message=message,
                code=code,
                errno=getattr(os_error, "errno", None),
                syscall="connect" if isinstance(exc, httpx.ConnectError) else None,
                hostname=hostname,
                port=port,
            )
        if isinstance(exc, OSError):
            return cls(message=message, code=_os_error_code(exc), errno=exc.errno)
        return cls(message=message)


def classify(raw: RawFailure) -> DeliveryError:
    """Classify a raw failure into a delivery error variant.

    Args:
        raw: Failure signal produced by the transport.

    Returns:
        The error variant for the failure, with ``retryable`` resolved.
    """
    message = raw.message or DEFAULT_MESSAGE
    kind = ErrorKind.NETWORK
    retryable = True

    if raw.code:
        kind = ErrorKind.NETWORK
        retryable = raw.code not in NON_RETRYABLE_NETWORK_CODES

    if raw.status_code is not None:
        kind = ErrorKind.HTTP
        retryable = is_retryable_status(raw.status_code)

    if _is_timeout(raw):
        kind = ErrorKind.TIMEOUT
        retryable = True

    if raw.kind is not None:
        kind = raw.kind
        retryable = raw.retryable if raw.retryable is not None else _DEFAULT_RETRYABLE[kind]

    return _build(kind, message, retryable, raw)


def is_retryable_status(status_code: int) -> bool:
    """Whether a non-success HTTP status is worth retrying."""
    return status_code not in NON_RETRYABLE_STATUSES


def parse_retry_after(value: str | None) -> float | None:
    """Parse a Retry-After header given in seconds. HTTP dates are ignored."""
    if not value:
        return None
    try:
        seconds = float(value.strip())
    except ValueError:
        return None
    return seconds if seconds >= 0 else None


def _is_timeout(raw: RawFailure) -> bool:
    if raw.timed_out:
        return True
    if raw.code in TIMEOUT_CODES:
        return True
    return bool(raw.message) and "timeout" in raw.message.lower()


def _http_details(raw: RawFailure) -> dict[str, Any]:
    details: dict[str, Any] = {}
    if raw.status_code is not None:
        details["status_code"] = raw.status_code
    if raw.status_text:
        details["status_text"] = raw.status_text
    return details


def _build(kind: ErrorKind, message: str, retryable: bool, raw: RawFailure) -> DeliveryError:
    if kind is ErrorKind.NETWORK:
        return NetworkFailure(
            message=message,
            retryable=retryable,
            code=raw.code,
            errno=raw.errno,
            syscall=raw.syscall,
            hostname=raw.hostname,
            port=raw.port,
        )
    if kind is ErrorKind.HTTP:
        return HttpFailure(
            message=message,
            retryable=retryable,
            code=raw.code,
            status_code=raw.status_code,
            status_text=raw.status_text,
            response_body=raw.response_body,
        )
    if kind is ErrorKind.TIMEOUT:
        return TimeoutFailure(
            message=message, retryable=retryable, code=raw.code, details=_http_details(raw)
        )
    if kind is ErrorKind.RATE_LIMIT:
        return RateLimitFailure(
            message=message,
            retryable=retryable,
            code=raw.code,
            retry_after=raw.retry_after,
            details=_http_details(raw),
        )
    if kind is ErrorKind.SERVER_ERROR:
        return ServerFailure(
            message=message, retryable=retryable, code=raw.code, status_code=raw.status_code
        )
    if kind is ErrorKind.AUTHENTICATION:
        return AuthenticationFailure(
            message=message, retryable=retryable, code=raw.code, details=_http_details(raw)
        )
    return ValidationFailure(
        message=message, retryable=retryable, code=raw.code, details=_http_details(raw)
    )


def _find_os_error(exc: BaseException) -> OSError | None:
    """Walk the exception chain looking for the underlying socket error."""
    seen: set[int] = set()
    current: BaseException | None = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        if isinstance(current, OSError):
            return current
        current = current.__cause__ or current.__context__
    return None


def _os_error_code(exc: OSError) -> str | None:
    if isinstance(exc, socket.gaierror):
        return "ENOTFOUND"
    if isinstance(exc, ConnectionRefusedError):
        return "ECONNREFUSED"
    if exc.errno is not None:
        return errno_codes.errorcode.get(exc.errno)
    return None


def _request_target(exc: httpx.RequestError) -> tuple[str | None, int | None]:
    try:
        url = exc.request.url
    except RuntimeError:
        # httpx raises when the exception was built without a request
        return None, None
    return url.host or None, url.port


__all__ = [
    "DEFAULT_MESSAGE",
    "NON_RETRYABLE_NETWORK_CODES",
    "NON_RETRYABLE_STATUSES",
    "RawFailure",
    "classify",
    "is_retryable_status",
    "parse_retry_after",
]
