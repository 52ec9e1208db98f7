"""
Backfill Orchestrator.

Walks each tracked character's zKillboard history (kills, then losses)
newest first, down to the stream's checkpoint or the age cutoff, and
feeds every new reference through the coordinator with origin=backfill.

A stream's checkpoint advances only when the walk finishes cleanly: it
reached the checkpoint, the age cutoff or the end of the history, and no
item failed. A page failure or a page/record cap leaves older kills
unread, so the checkpoint stays put and the next run re-reads the same
range; dedup makes the repeat cheap.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Optional

from ...core.logging import get_logger
from ...core.retry import InvalidUpstreamPayload
from .checkpoint import STREAM_KINDS, CheckpointStore, stream_name
from .fetcher import IndexUnavailable
from .models import IngestOutcome, IngestResult, KillSummary, Origin

if TYPE_CHECKING:
    from ..killmail_store import KillmailStore
    from .coordinator import IngestionCoordinator
    from .fetcher import KillmailFetcher

logger = get_logger(__name__)


class StopReason(str, Enum):
    CHECKPOINT = "checkpoint"
    AGE = "age"
    EXHAUSTED = "exhausted"
    CLIENT_ERROR = "client-error"
    UPSTREAM_UNAVAILABLE = "upstream-unavailable"
    MAX_PAGES = "max-pages"
    MAX_RECORDS = "max-records"
    STOPPED = "stopped"


# Stops after which nothing newer than the cutoff is left unread
COMPLETE_STOPS = frozenset({StopReason.CHECKPOINT, StopReason.AGE, StopReason.EXHAUSTED})


@dataclass
class BackfillConfig:
    max_age_days: int = 30
    max_pages: int = 20
    max_records: int = 500
    max_consecutive_empty: int = 5
    workers: int = 3
    skip_recent_minutes: int = 60
    batch_size: int = 5

    @classmethod
    def from_settings(cls, settings: Any) -> BackfillConfig:
        return cls(
            max_age_days=settings.backfill_max_age_days,
            max_pages=settings.backfill_max_pages,
            max_records=settings.backfill_max_records,
            max_consecutive_empty=settings.backfill_max_consecutive_empty,
            workers=settings.backfill_workers,
            skip_recent_minutes=settings.backfill_skip_recent_minutes,
            batch_size=settings.batch_size,
        )


@dataclass
class StreamReport:
    """Result of walking one history stream."""

    stream: str
    character_id: int
    kind: str
    pages: int = 0
    processed: int = 0
    written: int = 0
    duplicates: int = 0
    irrelevant: int = 0
    skipped: int = 0
    failed: int = 0
    stop_reason: Optional[StopReason] = None
    checkpoint_before: int = 0
    checkpoint_after: int = 0
    advanced: bool = False

    @property
    def clean(self) -> bool:
        return self.failed == 0 and self.stop_reason in COMPLETE_STOPS

    def tally(self, result: IngestResult) -> None:
        self.processed += 1
        if result.outcome.wrote:
            self.written += 1
        elif result.outcome is IngestOutcome.SKIPPED_DUPLICATE:
            self.duplicates += 1
        elif result.outcome is IngestOutcome.SKIPPED_IRRELEVANT:
            self.irrelevant += 1
        elif result.outcome is IngestOutcome.FAILED:
            self.failed += 1
        elif result.outcome is IngestOutcome.SKIPPED:
            self.skipped += 1
            # An unreachable index would otherwise be skipped past forever
            if result.reason and result.reason.startswith("index-unavailable"):
                self.failed += 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "stream": self.stream,
            "pages": self.pages,
            "processed": self.processed,
            "written": self.written,
            "duplicates": self.duplicates,
            "irrelevant": self.irrelevant,
            "skipped": self.skipped,
            "failed": self.failed,
            "stop_reason": self.stop_reason.value if self.stop_reason else None,
            "checkpoint_before": self.checkpoint_before,
            "checkpoint_after": self.checkpoint_after,
            "advanced": self.advanced,
        }


@dataclass
class BackfillReport:
    """Result of one backfill run across characters."""

    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    characters: list[int] = field(default_factory=list)
    skipped_recent: list[int] = field(default_factory=list)
    streams: list[StreamReport] = field(default_factory=list)
    errors: dict[int, str] = field(default_factory=dict)
    duration_seconds: float = 0.0

    @property
    def written(self) -> int:
        return sum(s.written for s in self.streams)

    @property
    def failed(self) -> int:
        return sum(s.failed for s in self.streams)

    def stream(self, name: str) -> Optional[StreamReport]:
        return next((s for s in self.streams if s.stream == name), None)

    def to_dict(self) -> dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "characters": list(self.characters),
            "skipped_recent": list(self.skipped_recent),
            "written": self.written,
            "failed": self.failed,
            "streams": [s.to_dict() for s in self.streams],
            "errors": {str(k): v for k, v in self.errors.items()},
            "duration_seconds": round(self.duration_seconds, 2),
        }


class BackfillOrchestrator:
    """
    Bounded, checkpointed history backfill.

    Args:
        store: Killmail store (roster and checkpoints)
        fetcher: History pages
        coordinator: Ingestion entry point
        config: Limits and concurrency
    """

    def __init__(
        self,
        store: KillmailStore,
        fetcher: KillmailFetcher,
        coordinator: IngestionCoordinator,
        config: Optional[BackfillConfig] = None,
    ) -> None:
        self.store = store
        self.fetcher = fetcher
        self.coordinator = coordinator
        self.checkpoints = CheckpointStore(store)
        self.config = config or BackfillConfig()
        self._active: set[int] = set()
        self._stop_requested = False

    @property
    def active_characters(self) -> frozenset[int]:
        return frozenset(self._active)

    def request_stop(self) -> None:
        """Ask running walks to finish their current group and stop."""
        self._stop_requested = True

    def clear_stop(self) -> None:
        self._stop_requested = False

    async def run(
        self, character_ids: Optional[list[int]] = None, force: bool = False
    ) -> BackfillReport:
        """
        Backfill characters concurrently, at most ``workers`` at a time.

        Args:
            character_ids: Characters to backfill (default: whole roster)
            force: Ignore the recent-backfill skip window
        """
        report = BackfillReport()
        start = time.monotonic()

        if character_ids is None:
            character_ids = [c.character_id for c in await self.store.list_tracked_characters()]
        report.characters = list(character_ids)

        semaphore = asyncio.Semaphore(max(1, self.config.workers))

        async def one(character_id: int) -> Optional[list[StreamReport]]:
            async with semaphore:
                return await self.backfill_character(character_id, force=force)

        results = await asyncio.gather(*(one(cid) for cid in character_ids), return_exceptions=True)
        for character_id, result in zip(character_ids, results):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, BaseException):
                report.errors[character_id] = str(result)
                logger.warning("Backfill for character %d failed: %s", character_id, result)
            elif result is None:
                report.skipped_recent.append(character_id)
            else:
                report.streams.extend(result)

        report.duration_seconds = time.monotonic() - start
        logger.info(
            "Backfill complete: %d characters, %d written, %d failed, %d skipped (recent)",
            len(character_ids),
            report.written,
            report.failed,
            len(report.skipped_recent),
        )
        return report

    async def backfill_character(
        self, character_id: int, force: bool = False
    ) -> Optional[list[StreamReport]]:
        """
        Backfill both history streams for one character.

        Returns:
            Stream reports, or None if the character was skipped
        """
        tracked = await self.store.get_tracked_character(character_id)
        if tracked is None:
            raise ValueError(f"Character {character_id} is not tracked")

        if character_id in self._active:
            logger.info("Backfill for %d already in progress, skipping", character_id)
            return None

        if not force and tracked.last_backfill_at and self.config.skip_recent_minutes > 0:
            age = time.time() - tracked.last_backfill_at
            if age < self.config.skip_recent_minutes * 60:
                logger.info(
                    "Skipping backfill for %d (last run %.0f min ago)", character_id, age / 60
                )
                return None

        self._active.add(character_id)
        try:
            reports = []
            for kind in STREAM_KINDS:
                reports.append(await self.backfill_stream(character_id, kind))
            if not self._stop_requested:
                await self.store.mark_backfilled(character_id, int(time.time()))
            return reports
        finally:
            self._active.discard(character_id)

    async def backfill_stream(self, character_id: int, kind: str) -> StreamReport:
        """Walk one stream newest-first until a stop condition is met."""
        cfg = self.config
        stream = stream_name(kind, character_id)
        last_seen = await self.checkpoints.last_seen_id(stream)
        cutoff = datetime.now(timezone.utc) - timedelta(days=cfg.max_age_days)
        report = StreamReport(
            stream=stream,
            character_id=character_id,
            kind=kind,
            checkpoint_before=last_seen,
            checkpoint_after=last_seen,
        )

        newest_id = 0
        newest_time: Optional[datetime] = None
        consecutive_empty = 0
        page = 1

        while True:
            if self._stop_requested:
                report.stop_reason = StopReason.STOPPED
                break
            if page > cfg.max_pages:
                report.stop_reason = StopReason.MAX_PAGES
                break

            try:
                summaries = await self.fetcher.history(character_id, kind, page)  # type: ignore[arg-type]
            except InvalidUpstreamPayload as e:
                logger.warning("Backfill %s page %d rejected: %s", stream, page, e)
                report.stop_reason = StopReason.CLIENT_ERROR
                break
            except IndexUnavailable as e:
                logger.warning("Backfill %s page %d unavailable: %s", stream, page, e.reason)
                report.stop_reason = StopReason.UPSTREAM_UNAVAILABLE
                break

            report.pages += 1
            if not summaries:
                # zKillboard occasionally serves an empty page mid-history
                consecutive_empty += 1
                if consecutive_empty >= cfg.max_consecutive_empty:
                    report.stop_reason = StopReason.EXHAUSTED
                    break
                page += 1
                continue
            consecutive_empty = 0

            fresh = [s for s in summaries if s.killmail_id > last_seen]
            reached_checkpoint = len(fresh) < len(summaries)

            remaining = cfg.max_records - report.processed
            hit_record_cap = len(fresh) >= remaining
            fresh = fresh[:remaining]

            too_old = False
            stopped = False
            size = max(1, cfg.batch_size)
            for i in range(0, len(fresh), size):
                if self._stop_requested:
                    stopped = True
                    break
                group = fresh[i : i + size]
                results = await self._ingest_group(group, character_id, cutoff)
                for summary, result in zip(group, results):
                    if isinstance(result, asyncio.CancelledError):
                        raise result
                    if isinstance(result, BaseException):
                        report.failed += 1
                        logger.warning("Backfill item %d failed: %s", summary.killmail_id, result)
                        continue
                    if result.outcome is IngestOutcome.SKIPPED_TOO_OLD:
                        too_old = True
                        continue
                    report.tally(result)
                    if summary.killmail_id > newest_id:
                        newest_id = summary.killmail_id
                        newest_time = result.kill_time or summary.kill_time
                if too_old:
                    break

            if stopped:
                report.stop_reason = StopReason.STOPPED
                break
            if too_old:
                report.stop_reason = StopReason.AGE
                break
            if reached_checkpoint:
                report.stop_reason = StopReason.CHECKPOINT
                break
            if hit_record_cap:
                report.stop_reason = StopReason.MAX_RECORDS
                break
            page += 1

        if report.clean and newest_id > 0:
            report.advanced = await self.checkpoints.advance(stream, newest_id, newest_time)
            if report.advanced:
                report.checkpoint_after = newest_id
        elif not report.clean:
            logger.info(
                "Backfill %s incomplete (%s, %d failed); checkpoint stays at %d",
                stream,
                report.stop_reason.value if report.stop_reason else "unknown",
                report.failed,
                last_seen,
            )

        logger.info(
            "Backfill %s: %d pages, %d processed, %d written, stop=%s",
            stream,
            report.pages,
            report.processed,
            report.written,
            report.stop_reason.value if report.stop_reason else None,
        )
        return report

    async def _ingest_group(
        self, group: list[KillSummary], character_id: int, cutoff: datetime
    ) -> list[Any]:
        return await asyncio.gather(
            *(
                self.coordinator.ingest_reference(
                    s.killmail_id,
                    Origin.BACKFILL,
                    summary=s,
                    character_id=character_id,
                    not_before=cutoff,
                )
                for s in group
            ),
            return_exceptions=True,
        )
