"""
Tests for the per-service circuit breaker.
"""

from __future__ import annotations

import asyncio

import pytest

from killfeed.core.circuit_breaker import BreakerOpenError, BreakerStatus, CircuitBreaker
from killfeed.core.retry import InvalidUpstreamPayload, UpstreamUnavailable

pytestmark = pytest.mark.asyncio


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def breaker(clock: FakeClock) -> CircuitBreaker:
    return CircuitBreaker("esi", threshold=3, cooldown=30.0, clock=clock)


async def _fail():
    raise UpstreamUnavailable("503")


async def _ok():
    return "ok"


async def _trip(breaker: CircuitBreaker, times: int) -> None:
    for _ in range(times):
        with pytest.raises(UpstreamUnavailable):
            await breaker.execute(_fail)


class TestCircuitBreaker:
    async def test_opens_after_threshold(self, breaker: CircuitBreaker):
        await _trip(breaker, 2)
        assert breaker.status is BreakerStatus.CLOSED

        await _trip(breaker, 1)
        assert breaker.status is BreakerStatus.OPEN

    async def test_open_breaker_does_not_invoke_op(self, breaker: CircuitBreaker):
        await _trip(breaker, 3)
        calls = []

        async def op():
            calls.append(1)
            return "ok"

        with pytest.raises(BreakerOpenError) as exc_info:
            await breaker.execute(op)

        assert calls == []
        assert exc_info.value.name == "esi"

    async def test_success_resets_failure_count(self, breaker: CircuitBreaker):
        await _trip(breaker, 2)
        await breaker.execute(_ok)
        await _trip(breaker, 2)

        assert breaker.status is BreakerStatus.CLOSED
        assert breaker.failure_count == 2

    async def test_client_errors_do_not_count(self, breaker: CircuitBreaker):
        async def not_found():
            raise InvalidUpstreamPayload("404")

        for _ in range(5):
            with pytest.raises(InvalidUpstreamPayload):
                await breaker.execute(not_found)

        assert breaker.status is BreakerStatus.CLOSED
        assert breaker.failure_count == 0

    async def test_probe_after_cooldown_closes_on_success(
        self, breaker: CircuitBreaker, clock: FakeClock
    ):
        await _trip(breaker, 3)
        clock.advance(29.0)
        with pytest.raises(BreakerOpenError):
            await breaker.execute(_ok)

        clock.advance(1.0)
        assert await breaker.execute(_ok) == "ok"
        assert breaker.status is BreakerStatus.CLOSED
        assert breaker.failure_count == 0

    async def test_failed_probe_reopens_and_restarts_cooldown(
        self, breaker: CircuitBreaker, clock: FakeClock
    ):
        await _trip(breaker, 3)
        clock.advance(30.0)

        with pytest.raises(UpstreamUnavailable):
            await breaker.execute(_fail)
        assert breaker.status is BreakerStatus.OPEN

        clock.advance(10.0)
        with pytest.raises(BreakerOpenError):
            await breaker.execute(_ok)

    async def test_single_probe_in_flight(self, breaker: CircuitBreaker, clock: FakeClock):
        await _trip(breaker, 3)
        clock.advance(30.0)

        release = asyncio.Event()

        async def slow_probe():
            await release.wait()
            return "probe"

        probe = asyncio.create_task(breaker.execute(slow_probe))
        await asyncio.sleep(0)
        assert breaker.status is BreakerStatus.HALF_OPEN

        with pytest.raises(BreakerOpenError):
            await breaker.execute(_ok)

        release.set()
        assert await probe == "probe"
        assert breaker.status is BreakerStatus.CLOSED

    async def test_reset(self, breaker: CircuitBreaker):
        await _trip(breaker, 3)
        breaker.reset()

        assert breaker.status is BreakerStatus.CLOSED
        assert await breaker.execute(_ok) == "ok"

    async def test_state_snapshot(self, breaker: CircuitBreaker, clock: FakeClock):
        await _trip(breaker, 3)
        state = breaker.get_state().to_dict()

        assert state["name"] == "esi"
        assert state["state"] == "open"
        assert state["failure_count"] == 3
        assert state["next_attempt_time"] == clock.now + 30.0

    async def test_invalid_threshold(self):
        with pytest.raises(ValueError):
            CircuitBreaker("zkillboard", threshold=0)
