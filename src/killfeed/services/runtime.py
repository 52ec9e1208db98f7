"""
Ingestion Runtime.

Builds the whole pipeline from settings, owns its background tasks and
exposes the administrative actions used by the CLI.

Startup order:
    store (migrations) -> roster snapshot -> upstream clients -> roster
    refresh loop -> enrichment / RedisQ / websocket / metrics log ->
    optional startup backfill

Shutdown order:
    consumers -> drain in-flight writes -> loops -> clients and store
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Optional

import httpx

from ..core.config import KillfeedSettings, get_settings
from ..core.logging import get_logger
from .ingestion.backfill import BackfillConfig, BackfillOrchestrator, BackfillReport
from .ingestion.clients import EsiKillmailClient, ZKillboardClient
from .ingestion.coordinator import IngestionCoordinator
from .ingestion.enrichment import EnrichmentConfig, EnrichmentReport, EnrichmentScheduler
from .ingestion.fetcher import FetcherConfig, KillmailFetcher
from .ingestion.metrics import IngestionMetrics
from .ingestion.roster import TrackedCharacters
from .killmail_store import KillmailStore, SQLiteKillmailStore, TrackedCharacter
from .redisq.poller import RedisQConfig, RedisQPoller
from .wanderer.client import WandererConfig, WandererKillsClient

logger = get_logger(__name__)

DEFAULT_DRAIN_TIMEOUT = 30.0


class IngestionRuntime:
    """
    Wires and runs the ingestion pipeline.

    Args:
        settings: Configuration (defaults to get_settings())
        store: Killmail store (defaults to SQLite at the configured path)
        zkill_transport: Optional httpx transport for zKillboard (tests)
        esi_transport: Optional httpx transport for ESI (tests)
    """

    def __init__(
        self,
        settings: Optional[KillfeedSettings] = None,
        store: Optional[KillmailStore] = None,
        zkill_transport: Optional[httpx.AsyncBaseTransport] = None,
        esi_transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.settings = settings or get_settings()
        s = self.settings

        self.store: KillmailStore = store or SQLiteKillmailStore(s.killmail_db_path)
        self.roster = TrackedCharacters(self.store, s.roster_refresh_seconds)
        self.metrics = IngestionMetrics()

        self.zkill = ZKillboardClient(
            s.zkill_base_url, s.zkill_timeout_seconds, s.user_agent, zkill_transport
        )
        self.esi = EsiKillmailClient(s.esi_base_url, s.esi_timeout_seconds, s.user_agent, esi_transport)
        self.fetcher = KillmailFetcher(self.zkill, self.esi, FetcherConfig.from_settings(s))
        self.coordinator = IngestionCoordinator(self.store, self.roster, self.fetcher, self.metrics)

        self.enrichment = EnrichmentScheduler(
            self.store, self.coordinator, EnrichmentConfig.from_settings(s)
        )
        self.backfill = BackfillOrchestrator(
            self.store, self.fetcher, self.coordinator, BackfillConfig.from_settings(s)
        )

        self.poller: Optional[RedisQPoller] = None
        if s.redisq_enabled:
            self.poller = RedisQPoller(RedisQConfig.from_settings(s), self.coordinator)

        self.websocket: Optional[WandererKillsClient] = None
        if s.websocket_enabled:
            self.websocket = WandererKillsClient(WandererConfig.from_settings(s), self.coordinator)

        self._opened = False
        self._running = False
        self._metrics_task: Optional[asyncio.Task] = None
        self._backfill_task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._running

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def open(self) -> None:
        """Open the store and clients without starting background work."""
        if self._opened:
            return
        await self.store.initialize()
        await self.roster.refresh()
        await self.zkill.open()
        await self.esi.open()
        self._opened = True
        logger.info("Runtime opened (%d tracked characters)", len(self.roster))

    async def start(self) -> None:
        """Open everything and start all enabled background services."""
        if self._running:
            logger.warning("Runtime already running")
            return

        await self.open()
        self._running = True

        await self.roster.start()

        if self.settings.enrichment_enabled:
            await self.enrichment.start()

        if self.poller is not None:
            await self.poller.start()

        if self.websocket is not None:
            await self.websocket.update_character_subscriptions(add=self.roster.snapshot)
            self.roster.add_listener(self._on_roster_change)
            await self.websocket.start()

        if self.settings.metrics_log_interval_seconds > 0:
            self._metrics_task = asyncio.create_task(self._metrics_loop())

        if self.settings.backfill_on_start:
            self._backfill_task = asyncio.create_task(self._startup_backfill())

        logger.info("Ingestion runtime started")

    async def stop(self, drain_timeout: float = DEFAULT_DRAIN_TIMEOUT) -> None:
        """Stop consumers, drain in-flight writes, then close everything."""
        if not self._running and not self._opened:
            return

        # 1. Consumers: no new poll or subscribe cycles
        if self.poller is not None:
            await self.poller.stop()
        if self.websocket is not None:
            await self.websocket.stop()
        # Backfill and enrichment finish the group in hand before exiting
        self.backfill.request_stop()
        if self._backfill_task is not None:
            await self._finish(self._backfill_task, drain_timeout, "Startup backfill")
            self._backfill_task = None
        await self.enrichment.stop()

        # 2. Drain writes already handed to the coordinator
        if not await self.coordinator.wait_idle(drain_timeout):
            logger.warning(
                "Shutdown drain timed out with %d writes in flight", self.coordinator.in_flight
            )
        self.backfill.clear_stop()

        # 3. Loops
        await self.roster.stop()
        await self._cancel(self._metrics_task)
        self._metrics_task = None

        # 4. Clients and store
        await self.zkill.close()
        await self.esi.close()
        await self.store.close()

        self._running = False
        self._opened = False
        logger.info("Ingestion runtime stopped (%s)", self.metrics.summary_line())

    async def _cancel(self, task: Optional[asyncio.Task]) -> None:
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _finish(self, task: asyncio.Task, timeout: float, label: str) -> None:
        done, _ = await asyncio.wait({task}, timeout=timeout)
        if not done:
            logger.warning("%s did not stop within %.0fs, cancelling", label, timeout)
        await self._cancel(task)

    async def _startup_backfill(self) -> None:
        try:
            await self.backfill.run()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("Startup backfill failed: %s", e)

    async def _metrics_loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self.settings.metrics_log_interval_seconds)
                logger.info("Ingestion metrics: %s", self.metrics.summary_line())
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.warning("Metrics log error: %s", e)

    async def _on_roster_change(self, added: frozenset[int], removed: frozenset[int]) -> None:
        if self.websocket is not None:
            await self.websocket.update_character_subscriptions(add=added, remove=removed)

    # =========================================================================
    # Admin Actions
    # =========================================================================

    async def run_enrichment(self) -> EnrichmentReport:
        await self.open()
        return await self.enrichment.run_manual()

    async def run_backfill(
        self, character_ids: Optional[list[int]] = None, force: bool = False
    ) -> BackfillReport:
        await self.open()
        return await self.backfill.run(character_ids, force=force)

    def reset_circuit_breakers(self) -> dict[str, Any]:
        self.fetcher.reset_breakers()
        return {name: state.to_dict() for name, state in self.fetcher.get_breaker_states().items()}

    async def track_character(
        self,
        character_id: int,
        name: Optional[str] = None,
        corporation_id: Optional[int] = None,
        alliance_id: Optional[int] = None,
    ) -> TrackedCharacter:
        """Add a character to the roster and refresh the snapshot."""
        await self.open()
        await self.store.add_tracked_character(
            TrackedCharacter(
                character_id=character_id,
                name=name,
                corporation_id=corporation_id,
                alliance_id=alliance_id,
                added_at=int(time.time()),
            )
        )
        await self.roster.refresh()
        character = await self.store.get_tracked_character(character_id)
        assert character is not None
        return character

    async def untrack_character(self, character_id: int) -> bool:
        """Remove a character from the roster. Stored kills are kept."""
        await self.open()
        removed = await self.store.remove_tracked_character(character_id)
        if removed:
            await self.roster.refresh()
        return removed

    async def get_metrics(self) -> dict[str, Any]:
        """Counters, breaker states and the status of every component."""
        result: dict[str, Any] = {
            "running": self._running,
            "tracked_characters": len(self.roster),
            "ingestion": self.metrics.to_dict(),
            "breakers": {
                name: state.to_dict() for name, state in self.fetcher.get_breaker_states().items()
            },
            "enrichment": self.enrichment.get_status(),
            "backfill_active": sorted(self.backfill.active_characters),
            "redisq": self.poller.get_status().to_dict() if self.poller else None,
            "websocket": self.websocket.get_status().to_dict() if self.websocket else None,
        }
        if self._opened:
            stats = await self.store.get_stats()
            result["store"] = {
                "total_kills": stats.total_kills,
                "partial_kills": stats.partial_kills,
                "total_losses": stats.total_losses,
                "checkpoints": stats.checkpoints,
                "oldest_kill_time": stats.oldest_kill_time,
                "newest_kill_time": stats.newest_kill_time,
                "database_size_bytes": stats.database_size_bytes,
            }
        return result


# =============================================================================
# Module-level singleton
# =============================================================================

_runtime: Optional[IngestionRuntime] = None


def get_runtime(settings: Optional[KillfeedSettings] = None) -> IngestionRuntime:
    """
    Get or create the runtime singleton.

    Args:
        settings: Settings for a new runtime (ignored if already created)
    """
    global _runtime
    if _runtime is None:
        _runtime = IngestionRuntime(settings)
    return _runtime


def reset_runtime() -> None:
    """Reset the runtime singleton (for testing)."""
    global _runtime
    _runtime = None
