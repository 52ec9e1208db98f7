"""
Per-service circuit breaker.

One breaker guards each upstream (zKillboard, ESI). After ``threshold``
consecutive failures the breaker opens and rejects calls without running
them. Once ``cooldown`` has elapsed a single probe call is let through:
success closes the breaker, failure reopens it and restarts the cooldown.

All state changes happen between awaits, so one instance can be shared by
every coroutine in the process.
"""

from __future__ import annotations

import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, TypeVar

from .logging import get_logger
from .retry import InvalidUpstreamPayload

logger = get_logger(__name__)

T = TypeVar("T")

DEFAULT_THRESHOLD = 3
DEFAULT_COOLDOWN = 30.0  # seconds


class BreakerStatus(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class BreakerOpenError(Exception):
    """Raised instead of running the operation while a breaker is open."""

    def __init__(self, name: str, retry_at: Optional[float] = None) -> None:
        self.name = name
        self.retry_at = retry_at
        super().__init__(f"Circuit breaker '{name}' is open")


@dataclass
class BreakerState:
    """Snapshot of a breaker for status reporting."""

    name: str
    state: str
    failure_count: int
    threshold: int
    cooldown: float
    last_failure_time: Optional[float]
    next_attempt_time: Optional[float]

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state,
            "failure_count": self.failure_count,
            "threshold": self.threshold,
            "cooldown": self.cooldown,
            "last_failure_time": self.last_failure_time,
            "next_attempt_time": self.next_attempt_time,
        }


def _counts_as_failure(exc: BaseException) -> bool:
    """Client errors say nothing about upstream health."""
    return not isinstance(exc, InvalidUpstreamPayload)


class CircuitBreaker:
    """
    Consecutive-failure circuit breaker with single-flight probing.

    Args:
        name: Service name used in logs and errors
        threshold: Consecutive failures that open the breaker
        cooldown: Seconds to stay open before probing
        is_failure: Predicate deciding which exceptions count as failures
        clock: Monotonic time source (injectable for tests)
    """

    def __init__(
        self,
        name: str,
        threshold: int = DEFAULT_THRESHOLD,
        cooldown: float = DEFAULT_COOLDOWN,
        is_failure: Callable[[BaseException], bool] = _counts_as_failure,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if threshold < 1:
            raise ValueError("threshold must be >= 1")
        self.name = name
        self.threshold = threshold
        self.cooldown = cooldown
        self._is_failure = is_failure
        self._clock = clock

        self._status = BreakerStatus.CLOSED
        self._failure_count = 0
        self._last_failure_time: Optional[float] = None
        self._probe_in_flight = False

    @property
    def status(self) -> BreakerStatus:
        return self._status

    @property
    def failure_count(self) -> int:
        return self._failure_count

    @property
    def is_open(self) -> bool:
        return self._status is BreakerStatus.OPEN

    def _next_attempt_time(self) -> Optional[float]:
        if self._status is not BreakerStatus.OPEN or self._last_failure_time is None:
            return None
        return self._last_failure_time + self.cooldown

    def _admit(self) -> bool:
        """
        Decide whether a call may run. Returns True when the call is the probe.

        Raises:
            BreakerOpenError: If the call must be rejected
        """
        if self._status is BreakerStatus.CLOSED:
            return False

        if self._status is BreakerStatus.OPEN:
            elapsed = self._clock() - (self._last_failure_time or 0.0)
            if elapsed < self.cooldown:
                raise BreakerOpenError(self.name, self._next_attempt_time())
            logger.info("Circuit breaker '%s' cooldown elapsed, probing", self.name)
            self._status = BreakerStatus.HALF_OPEN

        # HALF_OPEN: only one probe at a time
        if self._probe_in_flight:
            raise BreakerOpenError(self.name)
        self._probe_in_flight = True
        return True

    def _on_success(self) -> None:
        if self._status is not BreakerStatus.CLOSED:
            logger.info("Circuit breaker '%s' closed", self.name)
        self._status = BreakerStatus.CLOSED
        self._failure_count = 0
        self._last_failure_time = None

    def _on_failure(self, probe: bool) -> None:
        self._failure_count += 1
        self._last_failure_time = self._clock()

        if probe:
            self._status = BreakerStatus.OPEN
            logger.warning("Circuit breaker '%s' probe failed, reopening", self.name)
        elif self._status is BreakerStatus.CLOSED and self._failure_count >= self.threshold:
            self._status = BreakerStatus.OPEN
            logger.warning(
                "Circuit breaker '%s' opened after %d failures (threshold: %d)",
                self.name,
                self._failure_count,
                self.threshold,
            )

    async def execute(self, op: Callable[[], Awaitable[T]]) -> T:
        """
        Run ``op`` through the breaker.

        Args:
            op: Zero-argument coroutine factory

        Returns:
            The operation's result

        Raises:
            BreakerOpenError: Breaker is open; ``op`` was not invoked
            Exception: Whatever ``op`` raised
        """
        probe = self._admit()
        try:
            result = await op()
        except Exception as e:
            if self._is_failure(e):
                self._on_failure(probe)
            elif probe:
                # Inconclusive probe: let the next call probe again
                self._status = BreakerStatus.OPEN
            raise
        else:
            self._on_success()
            return result
        finally:
            if probe:
                self._probe_in_flight = False

    def reset(self) -> None:
        """Force the breaker closed and clear its counters."""
        self._status = BreakerStatus.CLOSED
        self._failure_count = 0
        self._last_failure_time = None
        self._probe_in_flight = False
        logger.info("Circuit breaker '%s' reset", self.name)

    def get_state(self) -> BreakerState:
        """Snapshot the breaker for status reporting."""
        return BreakerState(
            name=self.name,
            state=self._status.value,
            failure_count=self._failure_count,
            threshold=self.threshold,
            cooldown=self.cooldown,
            last_failure_time=self._last_failure_time,
            next_attempt_time=self._next_attempt_time(),
        )
