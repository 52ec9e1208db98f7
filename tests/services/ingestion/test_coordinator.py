"""
Tests for the ingestion coordinator.

Covers dedup, relevance per origin, the partial fallback when detail is
unavailable, write retries and in-flight tracking.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from killfeed.core.retry import InvalidUpstreamPayload
from killfeed.services.ingestion.models import IngestOutcome, Origin
from killfeed.services.killmail_store import Completeness, PartialKillmail, PersistenceFailure

pytestmark = pytest.mark.asyncio

NOW = datetime.now(timezone.utc).replace(microsecond=0)


class TestDraftIngestion:
    async def test_relevant_victim_written_full(self, coordinator, store, make_draft):
        result = await coordinator.ingest_draft(make_draft(1, victim_id=111), Origin.REALTIME)

        assert result.outcome is IngestOutcome.FULL
        assert await store.get_completeness(1) is Completeness.FULL
        assert await store.get_loss(1) is not None

    async def test_relevant_attacker_written_full(self, coordinator, store, make_draft):
        draft = make_draft(2, victim_id=333, attacker_ids=(222, None))

        result = await coordinator.ingest_draft(draft, Origin.REALTIME)

        assert result.outcome is IngestOutcome.FULL
        assert await store.get_loss(2) is None
        characters = await store.get_kill_characters(2)
        assert [(c.character_id, c.role) for c in characters] == [(222, "attacker")]

    async def test_untracked_participants_skipped(self, coordinator, store, make_draft):
        draft = make_draft(3, victim_id=333, attacker_ids=(444,))

        result = await coordinator.ingest_draft(draft, Origin.REALTIME)

        assert result.outcome is IngestOutcome.SKIPPED_IRRELEVANT
        assert await store.get_completeness(3) is None

    async def test_repeat_is_duplicate(self, coordinator, store, make_draft):
        draft = make_draft(1, victim_id=111, attacker_ids=(222, None))

        first = await coordinator.ingest_draft(draft, Origin.REALTIME)
        second = await coordinator.ingest_draft(draft, Origin.BACKFILL, character_id=111)

        assert first.outcome is IngestOutcome.FULL
        assert second.outcome is IngestOutcome.SKIPPED_DUPLICATE
        assert len(await store.get_attackers(1)) == 2
        assert (await store.get_stats()).total_kills == 1

    async def test_backfill_relevance_uses_character(self, coordinator, store, make_draft):
        # Participants are untracked, but the kill came from 111's history
        draft = make_draft(4, victim_id=333, attacker_ids=(444,))

        tracked = await coordinator.ingest_draft(draft, Origin.BACKFILL, character_id=111)
        untracked = await coordinator.ingest_draft(
            make_draft(5, victim_id=333), Origin.BACKFILL, character_id=555
        )

        assert tracked.outcome is IngestOutcome.FULL
        assert untracked.outcome is IngestOutcome.SKIPPED_IRRELEVANT

    async def test_concurrent_same_kill_written_once(self, coordinator, store, make_draft):
        draft = make_draft(6, victim_id=111)

        results = await asyncio.gather(
            coordinator.ingest_draft(draft, Origin.REALTIME),
            coordinator.ingest_draft(draft, Origin.BACKFILL, character_id=111),
        )

        outcomes = sorted(r.outcome.value for r in results)
        assert outcomes == ["full", "skipped-duplicate"]
        assert coordinator.metrics.count(IngestOutcome.FULL) == 1


class TestReferenceIngestion:
    async def test_fetch_then_write(self, coordinator, store, fetcher, make_esi_killmail):
        fetcher.kills[10] = make_esi_killmail(10, victim_id=111)

        result = await coordinator.ingest_reference(10, Origin.REALTIME, hash="hash10")

        assert result.outcome is IngestOutcome.FULL
        assert fetcher.fetch_calls == [10]
        kill = await store.get_kill(10)
        assert kill is not None and kill.total_value == 12_345_679

    async def test_full_kill_not_refetched(self, coordinator, fetcher, make_esi_killmail):
        fetcher.kills[10] = make_esi_killmail(10, victim_id=111)
        await coordinator.ingest_reference(10, Origin.REALTIME)

        result = await coordinator.ingest_reference(10, Origin.REALTIME)

        assert result.outcome is IngestOutcome.SKIPPED_DUPLICATE
        assert fetcher.fetch_calls == [10]

    async def test_duplicate_carries_summary_kill_time(
        self, coordinator, fetcher, make_esi_killmail, make_summary
    ):
        fetcher.kills[12] = make_esi_killmail(12, victim_id=111)
        await coordinator.ingest_reference(12, Origin.REALTIME)
        summary = make_summary(12, kill_time=NOW - timedelta(hours=1))

        result = await coordinator.ingest_reference(12, Origin.BACKFILL, summary=summary)

        assert result.outcome is IngestOutcome.SKIPPED_DUPLICATE
        assert result.kill_time == NOW - timedelta(hours=1)

    async def test_concurrent_references_fetch_once(self, coordinator, fetcher, make_esi_killmail):
        fetcher.kills[11] = make_esi_killmail(11, victim_id=111)
        fetcher.delay = 0.01

        results = await asyncio.gather(
            coordinator.ingest_reference(11, Origin.REALTIME),
            coordinator.ingest_reference(11, Origin.REALTIME),
        )

        assert sorted(r.outcome.value for r in results) == ["full", "skipped-duplicate"]
        assert fetcher.fetch_calls == [11]

    async def test_detail_unavailable_writes_partial(self, coordinator, store, fetcher):
        fetcher.unavailable_detail(20, actor_ids=frozenset({111, 999}))

        result = await coordinator.ingest_reference(20, Origin.REALTIME)

        assert result.outcome is IngestOutcome.PARTIAL
        assert result.reason == "detail-unavailable: breaker-open"
        assert await store.get_completeness(20) is Completeness.PARTIAL
        kill = await store.get_kill(20)
        assert kill is not None and kill.hash == "hash20"

    async def test_detail_unavailable_without_known_participants(self, coordinator, store, fetcher):
        fetcher.unavailable_detail(21)

        result = await coordinator.ingest_reference(21, Origin.REALTIME)

        assert result.outcome is IngestOutcome.SKIPPED
        assert result.reason.startswith("detail-unavailable")
        assert await store.get_completeness(21) is None

    async def test_detail_unavailable_backfill_writes_partial(self, coordinator, store, fetcher):
        fetcher.unavailable_detail(22)

        result = await coordinator.ingest_reference(22, Origin.BACKFILL, character_id=222)

        assert result.outcome is IngestOutcome.PARTIAL
        assert await store.get_completeness(22) is Completeness.PARTIAL

    async def test_index_unavailable_skips(self, coordinator, store, fetcher):
        fetcher.unavailable_index(23)

        result = await coordinator.ingest_reference(23, Origin.REALTIME)

        assert result.outcome is IngestOutcome.SKIPPED
        assert result.reason == "index-unavailable: timeout"
        assert await store.get_completeness(23) is None

    async def test_invalid_payload_skips(self, coordinator, fetcher):
        fetcher.kills[24] = InvalidUpstreamPayload("ESI killmail is not an object", service="esi")

        result = await coordinator.ingest_reference(24, Origin.REALTIME)

        assert result.outcome is IngestOutcome.SKIPPED
        assert result.reason == "invalid-payload: ESI killmail is not an object"

    async def test_unexpected_error_reported_as_failed(self, coordinator, fetcher):
        fetcher.kills[25] = RuntimeError("boom")

        result = await coordinator.ingest_reference(25, Origin.REALTIME)

        assert result.outcome is IngestOutcome.FAILED
        assert result.reason == "boom"
        assert coordinator.in_flight == 0

    async def test_too_old_by_summary_skips_fetch(self, coordinator, fetcher, make_summary):
        summary = make_summary(30, kill_time=NOW - timedelta(days=10))

        result = await coordinator.ingest_reference(
            30, Origin.BACKFILL, summary=summary, character_id=111, not_before=NOW - timedelta(days=7)
        )

        assert result.outcome is IngestOutcome.SKIPPED_TOO_OLD
        assert fetcher.fetch_calls == []

    async def test_too_old_by_detail(self, coordinator, store, fetcher, make_esi_killmail):
        fetcher.kills[31] = make_esi_killmail(31, victim_id=111, kill_time=NOW - timedelta(days=10))

        result = await coordinator.ingest_reference(
            31, Origin.BACKFILL, character_id=111, not_before=NOW - timedelta(days=7)
        )

        assert result.outcome is IngestOutcome.SKIPPED_TOO_OLD
        assert await store.get_completeness(31) is None

    async def test_no_fetcher_configured(self, store, roster):
        from killfeed.services.ingestion.coordinator import IngestionCoordinator

        coordinator = IngestionCoordinator(store, roster)

        result = await coordinator.ingest_reference(1, Origin.REALTIME)

        assert result.outcome is IngestOutcome.FAILED
        assert "no fetcher" in result.reason


class TestPartialIngestion:
    async def test_relevant_summary_written(self, coordinator, store, make_summary):
        summary = make_summary(40, actor_ids=frozenset({222}))

        result = await coordinator.ingest_partial(summary, Origin.REALTIME)

        assert result.outcome is IngestOutcome.PARTIAL
        assert await store.get_completeness(40) is Completeness.PARTIAL

    async def test_irrelevant_summary_skipped(self, coordinator, store, make_summary):
        result = await coordinator.ingest_partial(make_summary(41), Origin.REALTIME)

        assert result.outcome is IngestOutcome.SKIPPED_IRRELEVANT
        assert await store.get_completeness(41) is None

    async def test_partial_never_replaces_full(self, coordinator, make_draft, make_summary):
        await coordinator.ingest_draft(make_draft(42, victim_id=111), Origin.REALTIME)

        result = await coordinator.ingest_partial(
            make_summary(42, actor_ids=frozenset({111})), Origin.REALTIME
        )

        assert result.outcome is IngestOutcome.SKIPPED_DUPLICATE

    async def test_second_partial_is_duplicate(self, coordinator, make_summary):
        summary = make_summary(43, actor_ids=frozenset({111}))

        assert (await coordinator.ingest_partial(summary, Origin.REALTIME)).outcome is IngestOutcome.PARTIAL
        assert (
            await coordinator.ingest_partial(summary, Origin.REALTIME)
        ).outcome is IngestOutcome.SKIPPED_DUPLICATE


class TestEnrichment:
    async def test_partial_upgraded_to_full(self, coordinator, store, fetcher, make_esi_killmail):
        fetcher.unavailable_detail(50, actor_ids=frozenset({111}))
        await coordinator.ingest_reference(50, Origin.REALTIME)
        partial = (await store.find_partial())[0]

        fetcher.kills[50] = make_esi_killmail(50, victim_id=111)
        result = await coordinator.enrich(partial)

        assert result.outcome is IngestOutcome.FULL
        assert result.origin is Origin.ENRICHMENT
        kill = await store.get_kill(50)
        assert kill is not None
        assert kill.fully_populated is True
        assert kill.hash == "hash50"
        assert await store.find_partial() == []

    async def test_still_unavailable_leaves_partial(self, coordinator, store, fetcher):
        fetcher.unavailable_detail(51, actor_ids=frozenset({111}))
        await coordinator.ingest_reference(51, Origin.REALTIME)

        result = await coordinator.enrich(PartialKillmail(killmail_id=51, hash="hash51", kill_time=0))

        assert result.outcome is IngestOutcome.SKIPPED
        assert await store.get_completeness(51) is Completeness.PARTIAL


class TestWrites:
    async def test_lock_contention_retried(self, coordinator, store, make_draft, monkeypatch):
        real_upsert = store.upsert_full
        calls = []

        async def flaky(record):
            calls.append(record.fact.killmail_id)
            if len(calls) == 1:
                raise PersistenceFailure("database is locked", retryable=True)
            await real_upsert(record)

        monkeypatch.setattr(store, "upsert_full", flaky)

        result = await coordinator.ingest_draft(make_draft(60, victim_id=111), Origin.REALTIME)

        assert result.outcome is IngestOutcome.FULL
        assert calls == [60, 60]
        assert coordinator.metrics.write_retries == 1

    async def test_permanent_failure_not_retried(self, coordinator, store, make_draft, monkeypatch):
        calls = []

        async def broken(record):
            calls.append(record.fact.killmail_id)
            raise PersistenceFailure("CHECK constraint failed", retryable=False)

        monkeypatch.setattr(store, "upsert_full", broken)

        result = await coordinator.ingest_draft(make_draft(61, victim_id=111), Origin.REALTIME)

        assert result.outcome is IngestOutcome.FAILED
        assert result.reason.startswith("persistence:")
        assert calls == [61]
        assert await store.get_completeness(61) is None


class TestInFlight:
    async def test_idle_when_nothing_running(self, coordinator):
        assert await coordinator.wait_idle(timeout=0.1) is True

    async def test_wait_idle_during_fetch(self, coordinator, fetcher, make_esi_killmail):
        fetcher.kills[70] = make_esi_killmail(70, victim_id=111)
        fetcher.delay = 0.05

        task = asyncio.create_task(coordinator.ingest_reference(70, Origin.REALTIME))
        await asyncio.sleep(0)

        assert coordinator.in_flight == 1
        assert await coordinator.wait_idle(timeout=0.001) is False
        assert await coordinator.wait_idle(timeout=1.0) is True
        assert (await task).outcome is IngestOutcome.FULL

    async def test_metrics_per_origin(self, coordinator, make_draft):
        await coordinator.ingest_draft(make_draft(80, victim_id=111), Origin.REALTIME)
        await coordinator.ingest_draft(make_draft(81, victim_id=333), Origin.REALTIME)

        metrics = coordinator.metrics
        assert metrics.count(IngestOutcome.FULL, Origin.REALTIME) == 1
        assert metrics.count(IngestOutcome.SKIPPED_IRRELEVANT) == 1
        assert metrics.count(IngestOutcome.FULL, Origin.BACKFILL) == 0
        assert metrics.total == 2
