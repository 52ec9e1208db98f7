"""
RedisQ Poller Service.

Long-polls zKillboard's RedisQ endpoint for real-time kill notifications
and hands each delivered reference to the ingestion coordinator.

RedisQ keeps the queue position server-side per queue ID, so no local
checkpoint is kept.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from collections import Counter
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Optional

import httpx

from ...core.async_client import DEFAULT_USER_AGENT
from ...core.logging import get_logger
from ...core.retry import InvalidUpstreamPayload, UpstreamUnavailable
from ..ingestion.models import IngestResult, KillSummary, Origin

if TYPE_CHECKING:
    from ..ingestion.coordinator import IngestionCoordinator

logger = get_logger(__name__)

# RedisQ endpoint (moved to zkillredisq.stream in May 2025)
REDISQ_URL = "https://zkillredisq.stream/listen.php"

DEFAULT_RATE_LIMIT_BACKOFF = 30.0


@dataclass
class RedisQConfig:
    """
    Configuration for the RedisQ polling service.

    Loaded from KillfeedSettings.
    """

    enabled: bool = False
    url: str = REDISQ_URL
    queue_id: str = ""
    ttw_seconds: int = 10
    error_backoff_seconds: float = 5.0
    read_timeout_seconds: float = 60.0
    user_agent: str = DEFAULT_USER_AGENT

    @classmethod
    def from_settings(cls, settings: Any) -> RedisQConfig:
        """
        Create config from KillfeedSettings.

        Args:
            settings: KillfeedSettings instance

        Returns:
            RedisQConfig instance
        """
        return cls(
            enabled=settings.redisq_enabled,
            url=settings.redisq_url,
            queue_id=settings.redisq_queue_id,
            ttw_seconds=settings.redisq_ttw_seconds,
            error_backoff_seconds=settings.redisq_error_backoff_seconds,
            user_agent=settings.user_agent,
        )


@dataclass
class PollerStatus:
    """
    Status snapshot of the RedisQ poller.

    Used for status reporting and health checks.
    """

    is_running: bool = False
    queue_id: str = ""
    last_poll_time: Optional[datetime] = None
    last_kill_time: Optional[datetime] = None
    polls: int = 0
    packages_received: int = 0
    errors_last_hour: int = 0
    outcomes: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict:
        """Convert to JSON-serializable dict."""
        return {
            "is_running": self.is_running,
            "queue_id": self.queue_id,
            "last_poll_time": self.last_poll_time.isoformat() if self.last_poll_time else None,
            "last_kill_time": self.last_kill_time.isoformat() if self.last_kill_time else None,
            "polls": self.polls,
            "packages_received": self.packages_received,
            "errors_last_hour": self.errors_last_hour,
            "outcomes": dict(self.outcomes),
        }


def _retry_after(response: httpx.Response) -> float:
    value = response.headers.get("Retry-After")
    if value:
        try:
            return float(value)
        except ValueError:
            pass
    return DEFAULT_RATE_LIMIT_BACKOFF


@dataclass
class RedisQPoller:
    """
    RedisQ polling service for real-time killmails.

    Each delivered package becomes a KillSummary and is ingested with
    origin=realtime; the coordinator fetches ESI detail.
    """

    config: RedisQConfig
    coordinator: IngestionCoordinator
    transport: Optional[httpx.AsyncBaseTransport] = None
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep

    # Runtime state
    _running: bool = False
    _client: Optional[httpx.AsyncClient] = None
    _poll_task: Optional[asyncio.Task] = None
    _last_poll_time: Optional[datetime] = None
    _last_kill_time: Optional[datetime] = None

    # Metrics
    _polls: int = 0
    _packages_received: int = 0
    _outcomes: Counter = field(default_factory=Counter)
    _errors_last_hour: list[float] = field(default_factory=list)
    _consecutive_errors: int = 0

    @property
    def is_running(self) -> bool:
        return self._running

    def ensure_queue_id(self) -> str:
        """Generate a queue ID once unless one is configured."""
        if not self.config.queue_id:
            self.config.queue_id = f"killfeed-{uuid.uuid4().hex[:8]}"
            logger.info("Generated new queue ID: %s", self.config.queue_id)
        return self.config.queue_id

    async def open(self) -> None:
        """Create the HTTP client without starting the loop."""
        if self._client is not None:
            return
        self.ensure_queue_id()
        kwargs: dict[str, Any] = {
            # Read timeout must exceed the server-side wait (ttw)
            "timeout": httpx.Timeout(self.config.read_timeout_seconds, connect=10.0),
            "headers": {"User-Agent": self.config.user_agent, "Accept": "application/json"},
            "follow_redirects": True,
        }
        if self.transport is not None:
            kwargs["transport"] = self.transport
        self._client = httpx.AsyncClient(**kwargs)

    async def start(self) -> None:
        """Start the poller service."""
        if self._running:
            logger.warning("Poller already running")
            return

        await self.open()
        self._running = True
        self._poll_task = asyncio.create_task(self._poll_loop())
        logger.info("RedisQ poller started (queue=%s)", self.config.queue_id)

    async def stop(self) -> None:
        """
        Stop polling.

        An ingestion already handed to the coordinator keeps running; the
        runtime drains it before closing the store.
        """
        if not self._running and self._client is None:
            return

        self._running = False

        if self._poll_task:
            self._poll_task.cancel()
            try:
                await self._poll_task
            except asyncio.CancelledError:
                pass
            self._poll_task = None

        if self._client:
            await self._client.aclose()
            self._client = None

        logger.info(
            "RedisQ poller stopped (packages=%d, polls=%d)", self._packages_received, self._polls
        )

    def is_healthy(self) -> bool:
        """
        Check if the poller is healthy.

        Returns:
            True if running without excessive errors
        """
        if not self._running:
            return False

        if self._last_poll_time:
            since_poll = (datetime.now(timezone.utc) - self._last_poll_time).total_seconds()
            if since_poll > 120:  # No poll in 2 minutes
                return False

        self._prune_old_errors()
        return len(self._errors_last_hour) <= 50

    def get_status(self) -> PollerStatus:
        """
        Get current poller status.

        Returns:
            PollerStatus snapshot
        """
        self._prune_old_errors()
        return PollerStatus(
            is_running=self._running,
            queue_id=self.config.queue_id,
            last_poll_time=self._last_poll_time,
            last_kill_time=self._last_kill_time,
            polls=self._polls,
            packages_received=self._packages_received,
            errors_last_hour=len(self._errors_last_hour),
            outcomes=dict(self._outcomes),
        )

    async def _poll_loop(self) -> None:
        """Main polling loop."""
        while self._running:
            try:
                await self.poll_once()
                self._consecutive_errors = 0
            except asyncio.CancelledError:
                break
            except Exception as e:
                self._record_error()
                self._consecutive_errors += 1
                logger.warning("Poll error (consecutive=%d): %s", self._consecutive_errors, e)
                await self.sleep(self.config.error_backoff_seconds)

    async def poll_once(self) -> Optional[IngestResult]:
        """
        Execute a single poll to RedisQ.

        Returns:
            The ingestion result if a kill was delivered, else None

        Raises:
            UpstreamUnavailable: Non-200 response or transport failure
            InvalidUpstreamPayload: Undecodable response body
        """
        if not self._client:
            raise RuntimeError("Poller not open. Call start() or open() first.")

        params = {"queueID": self.config.queue_id, "ttw": str(self.config.ttw_seconds)}

        try:
            response = await self._client.get(self.config.url, params=params)
        except httpx.TimeoutException:
            # Normal for long-poll, just retry
            return None
        except httpx.TransportError as e:
            raise UpstreamUnavailable(
                f"RedisQ transport error: {e!r}", service="redisq", original_error=e
            ) from e

        self._polls += 1
        self._last_poll_time = datetime.now(timezone.utc)

        if response.status_code == 429:
            backoff = _retry_after(response)
            logger.warning("RedisQ rate limited (429), backing off %.1fs", backoff)
            await self.sleep(backoff)
            return None

        if response.status_code != 200:
            raise UpstreamUnavailable(
                f"RedisQ returned {response.status_code}",
                service="redisq",
                status_code=response.status_code,
            )

        try:
            data = response.json()
        except ValueError as e:
            raise InvalidUpstreamPayload(
                "RedisQ returned invalid JSON", service="redisq", original_error=e
            ) from e

        package = data.get("package") if isinstance(data, dict) else None
        if package is None:
            # No kill available (normal during quiet periods)
            return None

        try:
            summary = KillSummary.from_redisq_package(package)
        except InvalidUpstreamPayload as e:
            logger.debug("Invalid kill package received: %s", e)
            return None

        self._packages_received += 1

        # Shielded so stop() never interrupts a write; the runtime drains it
        result = await asyncio.shield(
            self.coordinator.ingest_reference(
                summary.killmail_id, Origin.REALTIME, hash=summary.hash, summary=summary
            )
        )
        self._outcomes[result.outcome.value] += 1
        self._last_kill_time = datetime.now(timezone.utc)
        return result

    def _record_error(self) -> None:
        """Record an error timestamp."""
        self._errors_last_hour.append(time.time())
        self._prune_old_errors()

    def _prune_old_errors(self) -> None:
        """Remove error timestamps older than 1 hour."""
        cutoff = time.time() - 3600
        self._errors_last_hour = [t for t in self._errors_last_hour if t > cutoff]
