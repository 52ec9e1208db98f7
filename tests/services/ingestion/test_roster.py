"""Tests for the tracked-character snapshot and backfill checkpoints."""

from __future__ import annotations

import asyncio

import pytest

from killfeed.services.ingestion.checkpoint import (
    CheckpointStore,
    kills_stream,
    losses_stream,
    stream_name,
)
from killfeed.services.ingestion.models import from_epoch
from killfeed.services.ingestion.roster import TrackedCharacters

pytestmark = pytest.mark.asyncio


class TestTrackedCharacters:
    async def test_refresh_swaps_snapshot(self, store, track):
        await track(111)
        roster = TrackedCharacters(store)
        assert roster.snapshot == frozenset()

        await roster.refresh()
        before = roster.snapshot
        await track(222)
        await roster.refresh()

        assert before == frozenset({111})
        assert roster.snapshot == frozenset({111, 222})
        assert 222 in roster
        assert roster.contains(None) is False
        assert len(roster) == 2

    async def test_refresh_reports_changes(self, store, track):
        await track(111, 222)
        roster = TrackedCharacters(store)
        await roster.refresh()

        await store.remove_tracked_character(111)
        await track(333)
        added, removed = await roster.refresh()

        assert added == frozenset({333})
        assert removed == frozenset({111})

    async def test_listeners_sync_and_async(self, store, track):
        roster = TrackedCharacters(store)
        seen = []

        def on_change(added, removed):
            seen.append(("sync", added, removed))

        async def on_change_async(added, removed):
            seen.append(("async", added, removed))

        roster.add_listener(on_change)
        roster.add_listener(on_change_async)
        await track(111)
        await roster.refresh()
        # Unchanged roster: no notification
        await roster.refresh()

        assert seen == [
            ("sync", frozenset({111}), frozenset()),
            ("async", frozenset({111}), frozenset()),
        ]

    async def test_failing_listener_isolated(self, store, track, caplog):
        roster = TrackedCharacters(store)
        seen = []

        def broken(added, removed):
            raise RuntimeError("listener exploded")

        roster.add_listener(broken)
        roster.add_listener(lambda added, removed: seen.append(added))
        await track(111)
        await roster.refresh()

        assert roster.snapshot == frozenset({111})
        assert seen == [frozenset({111})]
        assert "listener exploded" in caplog.text

    async def test_refresh_loop(self, store, track):
        roster = TrackedCharacters(store, refresh_interval=0.01)
        await roster.start()
        try:
            await track(111)
            for _ in range(100):
                if 111 in roster:
                    break
                await asyncio.sleep(0.01)
        finally:
            await roster.stop()

        assert roster.snapshot == frozenset({111})
        assert roster.last_refresh is not None


class TestCheckpoints:
    async def test_stream_names(self):
        assert kills_stream(111) == "kills:111"
        assert losses_stream(111) == "losses:111"
        with pytest.raises(ValueError):
            stream_name("assists", 111)

    async def test_advance_is_monotonic(self, store):
        checkpoints = CheckpointStore(store)
        assert await checkpoints.last_seen_id("kills:111") == 0

        assert await checkpoints.advance("kills:111", 600, from_epoch(1_700_000_000)) is True
        assert await checkpoints.advance("kills:111", 550) is False

        checkpoint = await checkpoints.get("kills:111")
        assert checkpoint.last_seen_id == 600
        assert checkpoint.last_seen_time == 1_700_000_000
