"""
Tests for Killfeed Retry Logic.

Tests error classification, backoff calculation and the retry executor.
"""

from __future__ import annotations

import asyncio
from unittest.mock import MagicMock

import httpx
import pytest

from killfeed.core.retry import (
    DEFAULT_INITIAL_DELAY,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_MAX_DELAY,
    InvalidUpstreamPayload,
    UpstreamUnavailable,
    classify_httpx_error,
    compute_backoff,
    is_retryable_error,
    retry_async,
    wait_backoff_added_jitter,
)


def _status_error(status: int, headers: dict | None = None, body: bytes = b"") -> httpx.HTTPStatusError:
    request = httpx.Request("GET", "https://esi.evetech.net/latest/killmails/1/abc/")
    response = httpx.Response(status, headers=headers or {}, content=body, request=request)
    return httpx.HTTPStatusError("error", request=request, response=response)


class Recorder:
    """Async sleep replacement that records requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


# =============================================================================
# Classification
# =============================================================================


class TestClassification:
    def test_defaults(self):
        assert DEFAULT_MAX_ATTEMPTS == 3
        assert DEFAULT_INITIAL_DELAY == 5.0
        assert DEFAULT_MAX_DELAY == 30.0

    @pytest.mark.parametrize("status", [429, 502, 503, 504, 500])
    def test_transient_statuses(self, status):
        error = classify_httpx_error(_status_error(status), service="esi")
        assert isinstance(error, UpstreamUnavailable)
        assert error.status_code == status
        assert error.service == "esi"

    @pytest.mark.parametrize("status", [400, 403, 404, 422])
    def test_client_errors_are_permanent(self, status):
        error = classify_httpx_error(_status_error(status), service="zkillboard")
        assert isinstance(error, InvalidUpstreamPayload)
        assert error.status_code == status

    def test_retry_after_header_parsed(self):
        error = classify_httpx_error(_status_error(429, {"Retry-After": "12"}))
        assert isinstance(error, UpstreamUnavailable)
        assert error.retry_after == 12.0

    def test_json_error_message_used(self):
        error = classify_httpx_error(_status_error(404, body=b'{"error": "Invalid killmail_id"}'))
        assert error.message == "Invalid killmail_id"

    def test_is_retryable(self):
        request = httpx.Request("GET", "https://zkillboard.com/api/")
        assert is_retryable_error(UpstreamUnavailable("503"))
        assert is_retryable_error(httpx.ConnectError("refused", request=request))
        assert is_retryable_error(asyncio.TimeoutError())
        assert not is_retryable_error(InvalidUpstreamPayload("404"))
        assert not is_retryable_error(ValueError("bug"))


# =============================================================================
# Backoff
# =============================================================================


class TestBackoff:
    def test_doubles_and_caps(self):
        assert compute_backoff(1, 5.0, 30.0) == 5.0
        assert compute_backoff(2, 5.0, 30.0) == 10.0
        assert compute_backoff(3, 5.0, 30.0) == 20.0
        assert compute_backoff(4, 5.0, 30.0) == 30.0
        assert compute_backoff(10, 5.0, 30.0) == 30.0

    def test_jitter_is_only_added(self):
        wait = wait_backoff_added_jitter(initial_delay=5.0, max_delay=30.0, jitter_ratio=0.1)
        state = MagicMock()
        state.attempt_number = 2
        state.outcome = None

        for _ in range(50):
            delay = wait(state)
            assert 10.0 <= delay <= 11.0

    def test_retry_after_hint_extends_delay(self):
        wait = wait_backoff_added_jitter(initial_delay=1.0, max_delay=30.0, jitter_ratio=0.0)
        state = MagicMock()
        state.attempt_number = 1
        state.outcome.exception.return_value = UpstreamUnavailable("429", retry_after=7.0)

        assert wait(state) == 7.0


# =============================================================================
# Executor
# =============================================================================


class TestRetryAsync:
    @pytest.mark.asyncio
    async def test_success_first_try(self):
        sleep = Recorder()

        async def op():
            return 42

        result = await retry_async(op, sleep=sleep)

        assert result.ok
        assert result.value == 42
        assert result.attempts == 1
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_recovers_after_transient_failures(self):
        sleep = Recorder()
        calls = []

        async def op():
            calls.append(1)
            if len(calls) < 3:
                raise UpstreamUnavailable("503")
            return "ok"

        result = await retry_async(op, max_attempts=3, initial_delay=1.0, max_delay=10.0, sleep=sleep)

        assert result.unwrap() == "ok"
        assert result.attempts == 3
        assert len(sleep.delays) == 2
        assert 1.0 <= sleep.delays[0] <= 1.1
        assert 2.0 <= sleep.delays[1] <= 2.2

    @pytest.mark.asyncio
    async def test_permanent_error_stops_immediately(self):
        sleep = Recorder()

        async def op():
            raise InvalidUpstreamPayload("404")

        result = await retry_async(op, max_attempts=5, sleep=sleep)

        assert not result.ok
        assert isinstance(result.error, InvalidUpstreamPayload)
        assert result.attempts == 1
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_exhausted_reports_last_error(self):
        sleep = Recorder()

        async def op():
            raise UpstreamUnavailable("still down")

        result = await retry_async(op, max_attempts=3, sleep=sleep)

        assert not result.ok
        assert result.attempts == 3
        with pytest.raises(UpstreamUnavailable, match="still down"):
            result.unwrap()

    @pytest.mark.asyncio
    async def test_per_attempt_timeout_counts_as_failure(self):
        sleep = Recorder()

        async def op():
            await asyncio.sleep(5)

        result = await retry_async(op, max_attempts=2, timeout=0.01, sleep=sleep)

        assert isinstance(result.error, asyncio.TimeoutError)
        assert result.attempts == 2

    @pytest.mark.asyncio
    async def test_custom_classifier(self):
        sleep = Recorder()
        calls = []

        async def op():
            calls.append(1)
            raise KeyError("nope")

        result = await retry_async(
            op, max_attempts=3, is_retryable=lambda e: isinstance(e, KeyError), sleep=sleep
        )

        assert len(calls) == 3
        assert isinstance(result.error, KeyError)
