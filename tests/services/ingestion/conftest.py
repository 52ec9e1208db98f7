"""Fixtures for ingestion pipeline tests."""

from __future__ import annotations

import pytest_asyncio

from killfeed.services.ingestion.coordinator import CoordinatorConfig, IngestionCoordinator
from killfeed.services.ingestion.roster import TrackedCharacters


async def _no_sleep(delay: float) -> None:
    return None


@pytest_asyncio.fixture
async def roster(store, track) -> TrackedCharacters:
    """Roster snapshot with characters 111 and 222 tracked."""
    await track(111, 222)
    roster = TrackedCharacters(store)
    await roster.refresh()
    return roster


@pytest_asyncio.fixture
async def coordinator(store, roster, fetcher) -> IngestionCoordinator:
    return IngestionCoordinator(
        store,
        roster,
        fetcher,
        config=CoordinatorConfig(write_attempts=3, write_initial_delay=0.0, write_max_delay=0.0),
        sleep=_no_sleep,
    )
