"""
Ingestion Coordinator.

The single entry point through which every feed (backfill, realtime
websocket and long-poll, enrichment) writes killmails. Each request names
its origin explicitly and goes through the same steps:

1. Dedup against the stored completeness of the kill
2. Fetch detail if the feed supplied only a reference
3. Relevance against the tracked-character snapshot
4. Atomic write of the kill, its participants and its loss view

Outcomes are returned as IngestResult values. Nothing but cancellation
escapes to the caller, so batch loops never need their own handlers.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, Optional, TypeVar

from ...core.logging import get_logger
from ...core.retry import InvalidUpstreamPayload, RetryResult, retry_async
from ..killmail_store.protocol import Completeness, PartialKillmail, PersistenceFailure
from .fetcher import DetailUnavailable, IndexUnavailable
from .metrics import IngestionMetrics
from .models import (
    DraftKillmail,
    IngestOutcome,
    IngestResult,
    KillSummary,
    Origin,
    from_epoch,
    partial_fact,
)

if TYPE_CHECKING:
    from ..killmail_store import KillmailStore
    from .fetcher import KillmailFetcher
    from .roster import TrackedCharacters

logger = get_logger(__name__)

T = TypeVar("T")


def _is_transient_persistence(exc: BaseException) -> bool:
    return isinstance(exc, PersistenceFailure) and exc.retryable


@dataclass
class CoordinatorConfig:
    """Retry policy for store writes (lock contention only)."""

    write_attempts: int = 3
    write_initial_delay: float = 0.1
    write_max_delay: float = 1.0


@dataclass
class _KeyLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class IngestionCoordinator:
    """
    Dedup, relevance and persistence for every feed.

    Args:
        store: Killmail store (initialized)
        roster: Tracked-character snapshot
        fetcher: Detail fetcher; required for ingest_reference() and enrich()
        metrics: Shared counters (created if omitted)
        config: Write retry policy
        sleep: Override for write-retry backoff sleep (tests)
    """

    def __init__(
        self,
        store: KillmailStore,
        roster: TrackedCharacters,
        fetcher: Optional[KillmailFetcher] = None,
        metrics: Optional[IngestionMetrics] = None,
        config: Optional[CoordinatorConfig] = None,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
    ) -> None:
        self.store = store
        self.roster = roster
        self.fetcher = fetcher
        self.metrics = metrics or IngestionMetrics()
        self.config = config or CoordinatorConfig()
        self._sleep = sleep
        self._key_locks: dict[int, _KeyLock] = {}
        self._idle = asyncio.Event()
        self._idle.set()

    # =========================================================================
    # In-flight tracking
    # =========================================================================

    @property
    def in_flight(self) -> int:
        return self.metrics.in_flight

    def _begin(self) -> None:
        self.metrics.in_flight += 1
        self._idle.clear()

    def _end(self) -> None:
        self.metrics.in_flight -= 1
        if self.metrics.in_flight <= 0:
            self.metrics.in_flight = 0
            self._idle.set()

    async def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """
        Wait until no ingestion request is in flight.

        Returns:
            False if the timeout expired first
        """
        try:
            await asyncio.wait_for(self._idle.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return True

    @asynccontextmanager
    async def _killmail_lock(self, killmail_id: int) -> AsyncIterator[None]:
        """Serialize requests for the same killmail so dedup sees prior writes."""
        entry = self._key_locks.get(killmail_id)
        if entry is None:
            entry = self._key_locks[killmail_id] = _KeyLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                self._key_locks.pop(killmail_id, None)

    async def _run(
        self,
        killmail_id: int,
        origin: Origin,
        work: Callable[[], Awaitable[IngestResult]],
    ) -> IngestResult:
        self._begin()
        try:
            async with self._killmail_lock(killmail_id):
                result = await work()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("Ingestion of %d (%s) failed: %s", killmail_id, origin.value, e)
            result = IngestResult(killmail_id, IngestOutcome.FAILED, origin, reason=str(e))
        finally:
            self._end()

        self.metrics.record(result)
        if result.outcome is IngestOutcome.FAILED:
            logger.warning(
                "Killmail %d (%s) failed: %s", killmail_id, origin.value, result.reason
            )
        else:
            logger.debug(
                "Killmail %d (%s): %s%s",
                killmail_id,
                origin.value,
                result.outcome.value,
                f" ({result.reason})" if result.reason else "",
            )
        return result

    # =========================================================================
    # Entry points
    # =========================================================================

    async def ingest_draft(
        self,
        draft: DraftKillmail,
        origin: Origin,
        character_id: Optional[int] = None,
    ) -> IngestResult:
        """
        Ingest a draft that already carries full detail.

        Args:
            draft: Killmail with participants
            origin: Feed that produced it
            character_id: Backfilled character (backfill origin only)
        """
        return await self._run(
            draft.killmail_id, origin, lambda: self._ingest_draft(draft, origin, character_id)
        )

    async def ingest_reference(
        self,
        killmail_id: int,
        origin: Origin,
        *,
        hash: Optional[str] = None,
        summary: Optional[KillSummary] = None,
        character_id: Optional[int] = None,
        not_before: Optional[datetime] = None,
    ) -> IngestResult:
        """
        Ingest a kill known only by reference, fetching detail first.

        Args:
            killmail_id: Killmail ID
            origin: Feed that produced the reference
            hash: Killmail hash if known
            summary: zKillboard summary if known
            character_id: Backfilled character (backfill origin only)
            not_before: Kills older than this are reported as skipped-too-old
        """

        async def work() -> IngestResult:
            if await self.store.get_completeness(killmail_id) is Completeness.FULL:
                return IngestResult(
                    killmail_id,
                    IngestOutcome.SKIPPED_DUPLICATE,
                    origin,
                    kill_time=summary.kill_time if summary else None,
                )

            if (
                not_before is not None
                and summary is not None
                and summary.kill_time is not None
                and summary.kill_time < not_before
            ):
                return IngestResult(
                    killmail_id, IngestOutcome.SKIPPED_TOO_OLD, origin, kill_time=summary.kill_time
                )

            if self.fetcher is None:
                raise RuntimeError("Coordinator has no fetcher configured")

            try:
                draft = await self.fetcher.fetch(killmail_id, hash=hash, summary=summary)
            except DetailUnavailable as e:
                return await self._partial_fallback(e.summary, origin, character_id, e.reason)
            except IndexUnavailable as e:
                return IngestResult(
                    killmail_id, IngestOutcome.SKIPPED, origin, reason=f"index-unavailable: {e.reason}"
                )
            except InvalidUpstreamPayload as e:
                return IngestResult(
                    killmail_id, IngestOutcome.SKIPPED, origin, reason=f"invalid-payload: {e.message}"
                )

            if not_before is not None and draft.kill_time < not_before:
                return IngestResult(
                    killmail_id, IngestOutcome.SKIPPED_TOO_OLD, origin, kill_time=draft.kill_time
                )

            return await self._ingest_draft(draft, origin, character_id)

        return await self._run(killmail_id, origin, work)

    async def ingest_partial(
        self,
        summary: KillSummary,
        origin: Origin,
        character_id: Optional[int] = None,
    ) -> IngestResult:
        """Store summary-only data as a partial row."""

        async def work() -> IngestResult:
            if not self._is_relevant(summary.actor_ids, origin, character_id):
                return IngestResult(summary.killmail_id, IngestOutcome.SKIPPED_IRRELEVANT, origin)
            return await self._write_partial(summary, origin)

        return await self._run(summary.killmail_id, origin, work)

    async def enrich(self, partial: PartialKillmail) -> IngestResult:
        """Re-drive a stored partial row through the full-detail path."""
        summary = None
        fact = await self.store.get_kill(partial.killmail_id)
        if fact is not None and fact.hash:
            summary = KillSummary(
                killmail_id=fact.killmail_id,
                hash=fact.hash,
                total_value=fact.total_value,
                points=fact.points,
                npc=fact.npc,
                solo=fact.solo,
                awox=fact.awox,
                labels=list(fact.labels),
                kill_time=from_epoch(fact.kill_time),
                system_id=fact.system_id or None,
            )
        return await self.ingest_reference(
            partial.killmail_id, Origin.ENRICHMENT, hash=partial.hash, summary=summary
        )

    # =========================================================================
    # Steps
    # =========================================================================

    def _is_relevant(
        self, actor_ids: frozenset[int], origin: Origin, character_id: Optional[int]
    ) -> bool:
        snapshot = self.roster.snapshot
        if origin is Origin.BACKFILL and character_id is not None:
            return character_id in snapshot
        return bool(actor_ids & snapshot)

    async def _ingest_draft(
        self, draft: DraftKillmail, origin: Origin, character_id: Optional[int]
    ) -> IngestResult:
        killmail_id = draft.killmail_id
        existing = await self.store.get_completeness(killmail_id)

        if existing is Completeness.FULL or (existing is not None and not draft.has_detail):
            return IngestResult(
                killmail_id, IngestOutcome.SKIPPED_DUPLICATE, origin, kill_time=draft.kill_time
            )

        if not self._is_relevant(draft.actor_ids(), origin, character_id):
            return IngestResult(
                killmail_id, IngestOutcome.SKIPPED_IRRELEVANT, origin, kill_time=draft.kill_time
            )

        if not draft.has_detail:
            return await self._write_partial(
                KillSummary(
                    killmail_id=killmail_id,
                    hash=draft.hash,
                    total_value=draft.total_value,
                    points=draft.points,
                    labels=list(draft.labels),
                    kill_time=draft.kill_time,
                    system_id=draft.system_id or None,
                ),
                origin,
            )

        record = draft.to_record(self.roster.snapshot)
        write = await self._write(lambda: self.store.upsert_full(record), f"write {killmail_id}")
        if not write.ok:
            return IngestResult(
                killmail_id,
                IngestOutcome.FAILED,
                origin,
                reason=f"persistence: {write.error}",
                kill_time=draft.kill_time,
            )
        return IngestResult(killmail_id, IngestOutcome.FULL, origin, kill_time=draft.kill_time)

    async def _partial_fallback(
        self,
        summary: KillSummary,
        origin: Origin,
        character_id: Optional[int],
        reason: str,
    ) -> IngestResult:
        """Detail is unavailable: keep what the index told us, if we know it matters."""
        detail_reason = f"detail-unavailable: {reason}"
        if origin is Origin.ENRICHMENT or not self._is_relevant(
            summary.actor_ids, origin, character_id
        ):
            return IngestResult(summary.killmail_id, IngestOutcome.SKIPPED, origin, reason=detail_reason)
        result = await self._write_partial(summary, origin)
        if result.outcome is IngestOutcome.PARTIAL:
            result.reason = detail_reason
        return result

    async def _write_partial(self, summary: KillSummary, origin: Origin) -> IngestResult:
        killmail_id = summary.killmail_id
        if await self.store.get_completeness(killmail_id) is not None:
            return IngestResult(
                killmail_id, IngestOutcome.SKIPPED_DUPLICATE, origin, kill_time=summary.kill_time
            )

        fact = partial_fact(summary)
        write = await self._write(lambda: self.store.upsert_partial(fact), f"partial {killmail_id}")
        if not write.ok:
            return IngestResult(
                killmail_id, IngestOutcome.FAILED, origin, reason=f"persistence: {write.error}"
            )
        if not write.value:
            return IngestResult(
                killmail_id, IngestOutcome.SKIPPED_DUPLICATE, origin, kill_time=summary.kill_time
            )
        return IngestResult(
            killmail_id, IngestOutcome.PARTIAL, origin, kill_time=from_epoch(fact.kill_time)
        )

    async def _write(self, op: Callable[[], Awaitable[T]], description: str) -> RetryResult[T]:
        result = await retry_async(
            op,
            max_attempts=self.config.write_attempts,
            initial_delay=self.config.write_initial_delay,
            max_delay=self.config.write_max_delay,
            is_retryable=_is_transient_persistence,
            description=description,
            sleep=self._sleep,
        )
        if result.attempts > 1:
            self.metrics.write_retries += result.attempts - 1
        return result
