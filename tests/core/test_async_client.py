"""
Tests for the async upstream HTTP client.
"""

from __future__ import annotations

import httpx
import pytest

from killfeed.core.async_client import DEFAULT_USER_AGENT, AsyncUpstreamClient
from killfeed.core.retry import InvalidUpstreamPayload, UpstreamUnavailable

pytestmark = pytest.mark.asyncio


def _client(handler) -> AsyncUpstreamClient:
    return AsyncUpstreamClient(
        "esi", "https://esi.example/latest/", transport=httpx.MockTransport(handler)
    )


class TestAsyncUpstreamClient:
    async def test_get_json(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"killmail_id": 1})

        async with _client(handler) as client:
            data = await client.get_json("killmails/1/abc/")

        assert data == {"killmail_id": 1}
        assert str(seen[0].url) == "https://esi.example/latest/killmails/1/abc/"
        assert seen[0].headers["User-Agent"] == DEFAULT_USER_AGENT

    async def test_not_found_is_permanent(self):
        async with _client(lambda r: httpx.Response(404, json={"error": "Not found"})) as client:
            with pytest.raises(InvalidUpstreamPayload) as exc_info:
                await client.get_json("/killmails/1/abc/")

        assert exc_info.value.status_code == 404
        assert exc_info.value.service == "esi"

    async def test_server_error_is_transient(self):
        async with _client(lambda r: httpx.Response(503, text="down")) as client:
            with pytest.raises(UpstreamUnavailable) as exc_info:
                await client.get_json("/killmails/1/abc/")

        assert exc_info.value.status_code == 503

    async def test_rate_limit_carries_retry_after(self):
        response = httpx.Response(429, headers={"Retry-After": "3"})
        async with _client(lambda r: response) as client:
            with pytest.raises(UpstreamUnavailable) as exc_info:
                await client.get_json("/killmails/1/abc/")

        assert exc_info.value.retry_after == 3.0

    async def test_transport_error_is_transient(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        async with _client(handler) as client:
            with pytest.raises(UpstreamUnavailable):
                await client.get_json("/killmails/1/abc/")

    async def test_invalid_json(self):
        async with _client(lambda r: httpx.Response(200, text="<html>")) as client:
            with pytest.raises(InvalidUpstreamPayload, match="invalid JSON"):
                await client.get_json("/killmails/1/abc/")

    async def test_requires_open(self):
        client = _client(lambda r: httpx.Response(200, json={}))
        with pytest.raises(RuntimeError, match="not open"):
            await client.get_json("/")

    async def test_error_limit_headers_tracked(self):
        response = httpx.Response(
            200,
            json={},
            headers={"x-esi-error-limit-remain": "42", "x-esi-error-limit-reset": "30"},
        )
        async with _client(lambda r: response) as client:
            await client.get_json("/")
            assert client._error_limit_remain == 42
