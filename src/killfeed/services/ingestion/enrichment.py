"""
Enrichment Scheduler.

Periodically re-drives partial kill rows through the coordinator so that
kills stored while ESI was unavailable eventually become fully populated.
Runs never overlap; a manual trigger during a scheduled run waits for it.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Optional

from ...core.logging import get_logger
from .models import IngestOutcome

if TYPE_CHECKING:
    from ..killmail_store import KillmailStore
    from .coordinator import IngestionCoordinator

logger = get_logger(__name__)

MAX_REPORTED_ERRORS = 5


@dataclass
class EnrichmentConfig:
    interval_minutes: float = 15.0
    batch_limit: int = 50
    batch_size: int = 5

    @classmethod
    def from_settings(cls, settings: Any) -> EnrichmentConfig:
        return cls(
            interval_minutes=settings.enrichment_interval_minutes,
            batch_limit=settings.enrichment_batch_size,
            batch_size=settings.batch_size,
        )


@dataclass
class EnrichmentReport:
    """Result of one enrichment run."""

    examined: int = 0
    enriched: int = 0
    failed: int = 0
    still_irrelevant: int = 0
    errors: list[str] = field(default_factory=list)
    started_at: Optional[datetime] = None
    duration_seconds: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "examined": self.examined,
            "enriched": self.enriched,
            "failed": self.failed,
            "still_irrelevant": self.still_irrelevant,
            "errors": list(self.errors),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "duration_seconds": round(self.duration_seconds, 2),
        }


class EnrichmentScheduler:
    """
    Background job that upgrades partial rows to full rows.

    Args:
        store: Source of partial rows
        coordinator: Ingestion coordinator (enrichment path)
        config: Interval and batch sizes
    """

    def __init__(
        self,
        store: KillmailStore,
        coordinator: IngestionCoordinator,
        config: Optional[EnrichmentConfig] = None,
    ) -> None:
        self.store = store
        self.coordinator = coordinator
        self.config = config or EnrichmentConfig()
        self._lock = asyncio.Lock()
        self._running = False
        self._stopping = False
        self._task: Optional[asyncio.Task] = None
        self._last_report: Optional[EnrichmentReport] = None
        self._runs = 0

    @property
    def is_running(self) -> bool:
        """True while a run holds the lock."""
        return self._lock.locked()

    async def start(self) -> None:
        if self._running:
            logger.warning("Enrichment scheduler already running")
            return
        self._running = True
        self._task = asyncio.create_task(self._loop())
        logger.info("Enrichment scheduler started (every %.1f min)", self.config.interval_minutes)

    async def stop(self) -> None:
        """Stop the schedule, letting a run in progress finish its current group."""
        self._running = False
        self._stopping = True
        try:
            async with self._lock:
                pass
            if self._task:
                self._task.cancel()
                try:
                    await self._task
                except asyncio.CancelledError:
                    pass
                self._task = None
        finally:
            self._stopping = False

    async def _loop(self) -> None:
        while self._running:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.warning("Enrichment loop error: %s", e)
            try:
                await asyncio.sleep(self.config.interval_minutes * 60)
            except asyncio.CancelledError:
                break

    async def run_manual(self) -> EnrichmentReport:
        """Run now, waiting for any in-progress run to finish first."""
        logger.info("Manual enrichment requested")
        return await self.run_once()

    async def run_once(self) -> EnrichmentReport:
        """
        Enrich up to ``batch_limit`` partial rows, oldest first.

        Returns:
            EnrichmentReport for this run
        """
        async with self._lock:
            report = EnrichmentReport(started_at=datetime.now(timezone.utc))
            start = time.monotonic()

            partials = await self.store.find_partial(limit=self.config.batch_limit)
            report.examined = len(partials)

            size = max(1, self.config.batch_size)
            for i in range(0, len(partials), size):
                if self._stopping:
                    logger.info("Enrichment run interrupted by shutdown after %d rows", i)
                    break
                group = partials[i : i + size]
                results = await asyncio.gather(
                    *(self.coordinator.enrich(p) for p in group), return_exceptions=True
                )
                for partial, result in zip(group, results):
                    if isinstance(result, asyncio.CancelledError):
                        raise result
                    if isinstance(result, BaseException):
                        report.failed += 1
                        report.errors.append(f"{partial.killmail_id}: {result}")
                    elif result.outcome is IngestOutcome.FULL:
                        report.enriched += 1
                    elif result.outcome is IngestOutcome.SKIPPED_IRRELEVANT:
                        report.still_irrelevant += 1
                    elif result.outcome is IngestOutcome.SKIPPED_DUPLICATE:
                        # Upgraded concurrently by another feed
                        report.enriched += 1
                    else:
                        report.failed += 1
                        report.errors.append(f"{partial.killmail_id}: {result.reason or result.outcome.value}")

            report.duration_seconds = time.monotonic() - start
            self._last_report = report
            self._runs += 1

        for error in report.errors[:MAX_REPORTED_ERRORS]:
            logger.warning("Enrichment error: %s", error)
        if len(report.errors) > MAX_REPORTED_ERRORS:
            logger.warning(
                "... and %d more enrichment errors", len(report.errors) - MAX_REPORTED_ERRORS
            )
        report.errors = report.errors[:MAX_REPORTED_ERRORS]

        logger.info(
            "Enrichment run: examined=%d enriched=%d failed=%d still_irrelevant=%d",
            report.examined,
            report.enriched,
            report.failed,
            report.still_irrelevant,
        )
        return report

    def get_status(self) -> dict[str, Any]:
        fetcher = self.coordinator.fetcher
        return {
            "scheduled": self._running,
            "is_running": self.is_running,
            "runs": self._runs,
            "interval_minutes": self.config.interval_minutes,
            "last_report": self._last_report.to_dict() if self._last_report else None,
            "breakers": {
                name: state.to_dict() for name, state in fetcher.get_breaker_states().items()
            }
            if fetcher is not None
            else {},
        }
