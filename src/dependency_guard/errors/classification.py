"""
Error classification for retry and reporting decisions.

Retryability is decided from a fixed set of transport/status signals, never
from payload contents:
- HTTP 408, 429, 500, 502, 503, 504
- connection reset (typed, or ECONNRESET in the message)
- timeout (typed, or ETIMEDOUT or "timeout" in the message)
"""

from __future__ import annotations

import asyncio
import contextlib
from enum import Enum

import httpx

from dependency_guard.errors.base import (
    CircuitOpenError,
    GuardError,
    MaxRetriesExceededError,
    OperationTimeoutError,
    RateLimitExceededError,
)


class TransientSignal(str, Enum):
    """Signals that mark a failure as transient."""

    REQUEST_TIMEOUT = "http_408"
    THROTTLED = "http_429"
    SERVER_ERROR = "http_500"
    BAD_GATEWAY = "http_502"
    UNAVAILABLE = "http_503"
    GATEWAY_TIMEOUT = "http_504"
    CONNECTION_RESET = "connection_reset"
    TIMEOUT = "timeout"


class ErrorKind(str, Enum):
    """Terminal outcome kinds reported to callers and telemetry."""

    CIRCUIT_OPEN = "circuit_open"
    RATE_LIMITED = "rate_limited"
    TIMEOUT = "timeout"
    MAX_RETRIES_EXCEEDED = "max_retries_exceeded"
    FATAL = "fatal"


RETRYABLE_STATUS: dict[int, TransientSignal] = {
    408: TransientSignal.REQUEST_TIMEOUT,
    429: TransientSignal.THROTTLED,
    500: TransientSignal.SERVER_ERROR,
    502: TransientSignal.BAD_GATEWAY,
    503: TransientSignal.UNAVAILABLE,
    504: TransientSignal.GATEWAY_TIMEOUT,
}

# Socket-level failures raised by httpx when the peer drops the connection
_RESET_TYPES: tuple[type[BaseException], ...] = (
    ConnectionResetError,
    httpx.ReadError,
    httpx.WriteError,
    httpx.RemoteProtocolError,
)

_TIMEOUT_TYPES: tuple[type[BaseException], ...] = (
    OperationTimeoutError,
    httpx.TimeoutException,
    asyncio.TimeoutError,
    TimeoutError,
)

_MAX_CAUSE_DEPTH = 5


def extract_status_code(error: BaseException) -> int | None:
    """Extract an HTTP-like status code from an error.

    Looks at ``httpx.HTTPStatusError.response`` first, then the
    ``status_code``, ``status`` and integer ``code`` attributes that SDK
    errors commonly carry.

    Args:
        error: The exception

    Returns:
        Status code, or None if the error carries none
    """
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code

    for attr in ("status_code", "status", "code"):
        value = getattr(error, attr, None)
        if isinstance(value, bool):
            continue
        if isinstance(value, int):
            return value
        if isinstance(value, str) and value.isdigit():
            return int(value)
    return None


def _detect_own_signal(error: BaseException) -> TransientSignal | None:
    if isinstance(error, _TIMEOUT_TYPES):
        return TransientSignal.TIMEOUT

    if isinstance(error, _RESET_TYPES):
        return TransientSignal.CONNECTION_RESET

    status = extract_status_code(error)
    if status is not None and status in RETRYABLE_STATUS:
        return RETRYABLE_STATUS[status]

    message = str(error)
    if "ECONNRESET" in message:
        return TransientSignal.CONNECTION_RESET
    if "ETIMEDOUT" in message or "timeout" in message.lower():
        return TransientSignal.TIMEOUT

    return None


def detect_signal(error: BaseException) -> TransientSignal | None:
    """Find the transient signal an error carries, if any.

    The error's cause chain is followed when the error itself carries no
    signal, so wrapped transport errors are still recognised.

    Args:
        error: The exception to inspect

    Returns:
        The detected TransientSignal, or None for fatal errors
    """
    # Layer decisions are final and never retried here
    if isinstance(error, (CircuitOpenError, RateLimitExceededError, MaxRetriesExceededError)):
        return None

    current: BaseException | None = error
    for _ in range(_MAX_CAUSE_DEPTH):
        if current is None:
            break
        signal = _detect_own_signal(current)
        if signal is not None:
            return signal
        current = current.__cause__
    return None


def is_retryable(error: BaseException) -> bool:
    """Check whether an error should be retried.

    Args:
        error: The exception

    Returns:
        True if the error carries a transient signal
    """
    return detect_signal(error) is not None


def get_retry_after(error: BaseException) -> float | None:
    """Get a server-provided retry delay hint in seconds.

    Supports a ``retry_after`` attribute (seconds), a
    ``retry_after_ms``/``retryAfterInMilliseconds`` attribute, and the
    ``Retry-After`` header of an ``httpx`` response.

    Args:
        error: The exception

    Returns:
        Hint in seconds, or None
    """
    value = getattr(error, "retry_after", None)
    if isinstance(value, (int, float)) and not isinstance(value, bool) and value > 0:
        return float(value)

    for attr in ("retry_after_ms", "retryAfterInMilliseconds"):
        value = getattr(error, attr, None)
        if isinstance(value, (int, float)) and not isinstance(value, bool) and value > 0:
            return float(value) / 1000.0

    if isinstance(error, httpx.HTTPStatusError):
        header = error.response.headers.get("retry-after")
        if header:
            with contextlib.suppress(ValueError):
                seconds = float(header)
                if seconds > 0:
                    return seconds

    return None


def classify_error(error: BaseException) -> ErrorKind:
    """Classify a terminal error into one of the reported kinds.

    Args:
        error: The exception that ended a protected call

    Returns:
        ErrorKind
    """
    if isinstance(error, CircuitOpenError):
        return ErrorKind.CIRCUIT_OPEN
    if isinstance(error, RateLimitExceededError):
        return ErrorKind.RATE_LIMITED
    if isinstance(error, MaxRetriesExceededError):
        return ErrorKind.MAX_RETRIES_EXCEEDED
    if isinstance(error, OperationTimeoutError):
        return ErrorKind.TIMEOUT
    return ErrorKind.FATAL


def http_status_for(error: BaseException) -> int:
    """Map an error to the status an upstream API layer should return.

    503 for isolation/throttling, 504 for timeouts and exhausted retries,
    500 for anything else.

    Args:
        error: The exception

    Returns:
        HTTP status code
    """
    if isinstance(error, GuardError):
        return error.http_status
    return 500
