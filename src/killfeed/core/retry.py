"""
Killfeed Retry Logic

Resilient upstream call handling with bounded exponential backoff.

This module provides:
- Error classification for upstream HTTP failures (retryable vs. not)
- retry_async(): tenacity-driven retry loop with a hard per-attempt timeout
- Jitter that is only ever added to the backoff delay, never subtracted

Exhausted retries are reported as a failed RetryResult rather than an
exception so batch callers can skip the item and keep going.
"""

from __future__ import annotations

import asyncio
import json
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Generic, Optional, TypeVar, Union

import httpx
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt
from tenacity.wait import wait_base

from .logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

# Default retry configuration
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_INITIAL_DELAY = 5.0  # seconds
DEFAULT_MAX_DELAY = 30.0  # seconds
DEFAULT_JITTER_RATIO = 0.1

# HTTP status codes that should trigger retry
RETRYABLE_STATUS_CODES = {
    429,  # Too Many Requests (rate limited)
    503,  # Service Unavailable
    502,  # Bad Gateway
    504,  # Gateway Timeout
}

# Status codes that should NOT be retried (client errors)
NON_RETRYABLE_STATUS_CODES = {
    400,  # Bad Request
    401,  # Unauthorized
    403,  # Forbidden
    404,  # Not Found
    422,  # Unprocessable Entity
}


class UpstreamUnavailable(Exception):
    """
    A transient upstream failure.

    Raised for rate limiting, gateway errors and transport failures. These
    are retried and count toward the service's circuit breaker.
    """

    retryable = True

    def __init__(
        self,
        message: str,
        service: str = "",
        status_code: Optional[int] = None,
        retry_after: Optional[float] = None,
        original_error: Optional[Exception] = None,
    ) -> None:
        self.message: str = message
        self.service: str = service
        self.status_code: Optional[int] = status_code
        self.retry_after: Optional[float] = retry_after  # Retry-After header value in seconds
        self.original_error: Optional[Exception] = original_error
        super().__init__(self.message)


class InvalidUpstreamPayload(Exception):
    """
    A permanent upstream failure.

    Client errors (404, 403, ...) and payloads that fail to parse. Never
    retried and never counted against a circuit breaker.
    """

    retryable = False

    def __init__(
        self,
        message: str,
        service: str = "",
        status_code: Optional[int] = None,
        original_error: Optional[Exception] = None,
    ) -> None:
        self.message: str = message
        self.service: str = service
        self.status_code: Optional[int] = status_code
        self.original_error: Optional[Exception] = original_error
        super().__init__(self.message)


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Parse a Retry-After header given in seconds."""
    if not value:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def classify_httpx_error(
    error: httpx.HTTPStatusError,
    service: str = "",
) -> Union[UpstreamUnavailable, InvalidUpstreamPayload]:
    """
    Classify an httpx HTTP status error as retryable or non-retryable.

    Args:
        error: The httpx HTTPStatusError to classify
        service: Upstream service name for error reporting

    Returns:
        UpstreamUnavailable for transient errors (429, 5xx)
        InvalidUpstreamPayload for permanent errors (404, 403, etc.)
    """
    status_code = error.response.status_code

    try:
        error_json = error.response.json()
        message = error_json.get("error", str(error)) if isinstance(error_json, dict) else str(error)
    except (json.JSONDecodeError, ValueError):
        message = error.response.text or str(error)

    if status_code in RETRYABLE_STATUS_CODES or status_code >= 500:
        return UpstreamUnavailable(
            message=message,
            service=service,
            status_code=status_code,
            retry_after=_parse_retry_after(error.response.headers.get("retry-after")),
            original_error=error,
        )
    return InvalidUpstreamPayload(
        message=message, service=service, status_code=status_code, original_error=error
    )


def is_retryable_error(exc: BaseException) -> bool:
    """
    Determine if an exception should trigger a retry.

    Args:
        exc: The exception to check

    Returns:
        True if the operation should be retried
    """
    if isinstance(exc, (UpstreamUnavailable, InvalidUpstreamPayload)):
        return exc.retryable

    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code in RETRYABLE_STATUS_CODES

    # Connection reset, connect/read timeouts
    if isinstance(exc, httpx.TransportError):
        return True

    if isinstance(exc, (TimeoutError, asyncio.TimeoutError)):
        return True

    return bool(getattr(exc, "retryable", False))


def compute_backoff(
    attempt: int,
    initial_delay: float = DEFAULT_INITIAL_DELAY,
    max_delay: float = DEFAULT_MAX_DELAY,
) -> float:
    """
    Base delay after a failed attempt: initial * 2^(attempt-1), capped.

    Args:
        attempt: Number of the attempt that just failed (1-indexed)
        initial_delay: Delay after the first failure
        max_delay: Upper bound

    Returns:
        Delay in seconds, before jitter
    """
    return min(initial_delay * (2 ** (attempt - 1)), max_delay)


class wait_backoff_added_jitter(wait_base):
    """
    Exponential backoff plus up to ``jitter_ratio`` of extra random delay.

    Honors a Retry-After hint carried by UpstreamUnavailable when it is
    longer than the computed delay (still capped at max_delay).
    """

    def __init__(
        self,
        initial_delay: float = DEFAULT_INITIAL_DELAY,
        max_delay: float = DEFAULT_MAX_DELAY,
        jitter_ratio: float = DEFAULT_JITTER_RATIO,
    ) -> None:
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self.jitter_ratio = jitter_ratio

    def __call__(self, retry_state: RetryCallState) -> float:
        base = compute_backoff(retry_state.attempt_number, self.initial_delay, self.max_delay)

        outcome = retry_state.outcome
        exc = outcome.exception() if outcome is not None else None
        if isinstance(exc, UpstreamUnavailable) and exc.retry_after:
            base = min(max(base, exc.retry_after), self.max_delay)

        return base + random.uniform(0, base * self.jitter_ratio)


@dataclass
class RetryResult(Generic[T]):
    """Outcome of retry_async()."""

    value: Optional[T] = None
    error: Optional[BaseException] = None
    attempts: int = 0

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> T:
        """Return the value or re-raise the terminal error."""
        if self.error is not None:
            raise self.error
        return self.value  # type: ignore[return-value]


async def retry_async(
    op: Callable[[], Awaitable[T]],
    *,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    initial_delay: float = DEFAULT_INITIAL_DELAY,
    max_delay: float = DEFAULT_MAX_DELAY,
    timeout: Optional[float] = None,
    is_retryable: Callable[[BaseException], bool] = is_retryable_error,
    description: str = "operation",
    sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
) -> RetryResult[T]:
    """
    Run ``op`` with bounded exponential backoff.

    Each attempt races ``op()`` against ``timeout``; exceeding it counts as a
    failed (retryable) attempt. Non-retryable errors end the loop at once.

    Args:
        op: Zero-argument coroutine factory
        max_attempts: Total attempts including the first
        initial_delay: Delay after the first failure
        max_delay: Backoff cap
        timeout: Per-attempt timeout in seconds (None = no timeout)
        is_retryable: Error classifier
        description: Human-readable label for log lines
        sleep: Override for asyncio.sleep (tests)

    Returns:
        RetryResult carrying the value or the terminal error
    """

    def _log_retry(retry_state: RetryCallState) -> None:
        outcome = retry_state.outcome
        exc = outcome.exception() if outcome is not None else None
        wait = retry_state.next_action.sleep if retry_state.next_action else 0.0
        logger.warning(
            "%s failed (attempt %d/%d): %s; retrying in %.1fs",
            description,
            retry_state.attempt_number,
            max_attempts,
            exc,
            wait,
        )

    retrying_kwargs: dict[str, Any] = {
        "stop": stop_after_attempt(max_attempts),
        "wait": wait_backoff_added_jitter(initial_delay, max_delay),
        "retry": retry_if_exception(is_retryable),
        "before_sleep": _log_retry,
        "reraise": True,
    }
    if sleep is not None:
        retrying_kwargs["sleep"] = sleep

    attempts = 0
    try:
        async for attempt in AsyncRetrying(**retrying_kwargs):
            with attempt:
                attempts = attempt.retry_state.attempt_number
                if timeout is not None:
                    value = await asyncio.wait_for(op(), timeout)
                else:
                    value = await op()
    except Exception as e:
        if isinstance(e, (TimeoutError, asyncio.TimeoutError)):
            logger.warning("%s timed out after %d attempt(s)", description, attempts)
        else:
            logger.debug("%s gave up after %d attempt(s): %s", description, attempts, e)
        return RetryResult(error=e, attempts=attempts)

    return RetryResult(value=value, attempts=attempts)
