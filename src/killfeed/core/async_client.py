"""
Killfeed Async HTTP Client

Async JSON client for upstream services (zKillboard, ESI) using httpx.
Converts HTTP and transport failures into the retry module's error
taxonomy; retrying and circuit breaking are layered on by the caller.

Uses httpx.AsyncClient for true async I/O (no run_in_executor).
"""

from __future__ import annotations

import asyncio
import time
from typing import TYPE_CHECKING, Any, Optional, Union

import httpx

from .logging import get_logger
from .retry import InvalidUpstreamPayload, UpstreamUnavailable, classify_httpx_error

if TYPE_CHECKING:
    from collections.abc import Mapping

logger = get_logger(__name__)

DEFAULT_USER_AGENT = "killfeed/1.0 (killmail ingestion)"

JSONValue = Union[dict, list, int, float, str, None]


class AsyncUpstreamClient:
    """
    Async HTTP client for one upstream JSON API.

    Must be used as an async context manager (or opened/closed explicitly)
    to ensure proper connection pooling.

    Usage:
        async with AsyncUpstreamClient("esi", "https://esi.evetech.net/latest") as client:
            data = await client.get_json("/killmails/123/abc/")
    """

    def __init__(
        self,
        service: str,
        base_url: str,
        timeout: float = 30.0,
        user_agent: str = DEFAULT_USER_AGENT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        """
        Initialize the client.

        Args:
            service: Service name used in errors and logs
            base_url: API base URL
            timeout: Transport-level timeout in seconds
            user_agent: User-Agent header value
            transport: Optional httpx transport (tests)
        """
        self.service = service
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.user_agent = user_agent
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

        # ESI error-limit tracking (ignored by services that do not send the headers)
        self._error_limit_remain: int = 100
        self._error_limit_reset: float = 0
        self._error_limit_threshold: int = 20
        self._lock = asyncio.Lock()

    async def open(self) -> None:
        """Create the underlying httpx client."""
        if self._client is not None:
            return
        kwargs: dict[str, Any] = {
            "timeout": httpx.Timeout(self.timeout),
            "headers": {"Accept": "application/json", "User-Agent": self.user_agent},
            "follow_redirects": True,
        }
        if self._transport is not None:
            kwargs["transport"] = self._transport
        self._client = httpx.AsyncClient(**kwargs)

    async def close(self) -> None:
        """Close the underlying httpx client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> AsyncUpstreamClient:
        await self.open()
        return self

    async def __aexit__(
        self,
        exc_type: Optional[type],
        exc_val: Optional[BaseException],
        exc_tb: Optional[Any],
    ) -> None:
        await self.close()

    def _url(self, path: str) -> str:
        if not path.startswith("/"):
            path = "/" + path
        return f"{self.base_url}{path}"

    def _update_rate_limits(self, headers: Mapping[str, str]) -> None:
        """Update error-limit tracking from response headers."""
        if "x-esi-error-limit-remain" in headers:
            try:
                self._error_limit_remain = int(headers["x-esi-error-limit-remain"])
            except (ValueError, TypeError):
                pass

        if "x-esi-error-limit-reset" in headers:
            try:
                self._error_limit_reset = time.time() + int(headers["x-esi-error-limit-reset"])
            except (ValueError, TypeError):
                pass

    async def _check_rate_limit(self) -> None:
        """Back off briefly when the error budget is nearly spent."""
        async with self._lock:
            if time.time() > self._error_limit_reset:
                self._error_limit_remain = 100

            if self._error_limit_remain < self._error_limit_threshold:
                wait_time = min(max(0.0, self._error_limit_reset - time.time()), 5.0)
                if wait_time > 0:
                    logger.debug("%s error limit low, sleeping %.1fs", self.service, wait_time)
                    await asyncio.sleep(wait_time)

    async def get_json(
        self,
        path: str,
        params: Optional[dict[str, Any]] = None,
    ) -> JSONValue:
        """
        GET a JSON document.

        Args:
            path: Endpoint path relative to base_url
            params: Optional query parameters

        Returns:
            Parsed JSON response

        Raises:
            UpstreamUnavailable: 429/5xx responses and transport failures
            InvalidUpstreamPayload: Other 4xx responses or undecodable bodies
        """
        if self._client is None:
            raise RuntimeError(f"{self.service} client not open. Use 'async with' or open().")

        await self._check_rate_limit()

        try:
            response = await self._client.get(self._url(path), params=params)
            self._update_rate_limits(response.headers)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            self._update_rate_limits(e.response.headers)
            raise classify_httpx_error(e, service=self.service) from e
        except httpx.TransportError as e:
            raise UpstreamUnavailable(
                f"{self.service} transport error: {e!r}", service=self.service, original_error=e
            ) from e

        try:
            return response.json()
        except ValueError as e:
            raise InvalidUpstreamPayload(
                f"{self.service} returned invalid JSON",
                service=self.service,
                status_code=response.status_code,
                original_error=e,
            ) from e
