"""
Killfeed Test Suite - Shared Fixtures

Provides an initialized SQLite store, killmail payload factories and a
scripted fetcher used by the ingestion tests.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncGenerator
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Optional

import pytest
import pytest_asyncio

from killfeed.core.config import reset_settings
from killfeed.core.logging import reset_logging
from killfeed.services.ingestion.fetcher import DetailUnavailable, IndexUnavailable
from killfeed.services.ingestion.models import KillSummary, parse_esi_killmail
from killfeed.services.killmail_store import SQLiteKillmailStore, TrackedCharacter

# Fixed reference time for generated kills
NOW = datetime.now(timezone.utc).replace(microsecond=0)


@pytest.fixture(autouse=True)
def clean_state():
    """Reset settings cache and let caplog see killfeed log records."""
    reset_settings()
    reset_logging()
    yield
    reset_settings()


# =============================================================================
# Store Fixtures
# =============================================================================


@pytest.fixture
def temp_db_path(tmp_path: Path) -> Path:
    """Create a temporary database path."""
    return tmp_path / "killfeed_test.db"


@pytest_asyncio.fixture
async def store(temp_db_path: Path) -> AsyncGenerator[SQLiteKillmailStore, None]:
    """Create and initialize a test store."""
    store = SQLiteKillmailStore(db_path=temp_db_path)
    await store.initialize()
    yield store
    await store.close()


@pytest.fixture
def track(store: SQLiteKillmailStore):
    """
    Add characters to the roster.

    Usage:
        await track(111, 222)
    """

    async def _track(*character_ids: int) -> None:
        for cid in character_ids:
            await store.add_tracked_character(TrackedCharacter(character_id=cid, name=f"Pilot {cid}"))

    return _track


# =============================================================================
# Payload Factories
# =============================================================================


def build_esi_killmail(
    killmail_id: int,
    victim_id: Optional[int] = None,
    attacker_ids: tuple[Optional[int], ...] = (None,),
    kill_time: Optional[datetime] = None,
    system_id: int = 30000142,
    ship_type_id: int = 587,
) -> dict[str, Any]:
    """ESI /killmails/{id}/{hash}/ response body."""
    kill_time = kill_time or NOW - timedelta(hours=1)
    attackers = [
        {
            "character_id": cid,
            "corporation_id": 98000001 if cid else None,
            "damage_done": 100 * (i + 1),
            "final_blow": i == 0,
            "security_status": -2.5,
            "ship_type_id": 11198,
            "weapon_type_id": 2488,
        }
        for i, cid in enumerate(attacker_ids)
    ]
    for attacker in attackers:
        for key in [k for k, v in attacker.items() if v is None]:
            del attacker[key]
    victim: dict[str, Any] = {
        "corporation_id": 98000002,
        "ship_type_id": ship_type_id,
        "damage_taken": sum(a["damage_done"] for a in attackers),
    }
    if victim_id is not None:
        victim["character_id"] = victim_id
    return {
        "killmail_id": killmail_id,
        "killmail_time": kill_time.strftime("%Y-%m-%dT%H:%M:%SZ"),
        "solar_system_id": system_id,
        "victim": victim,
        "attackers": attackers,
    }


def build_summary(
    killmail_id: int,
    kill_time: Optional[datetime] = None,
    total_value: float = 12_345_678.6,
    actor_ids: frozenset[int] = frozenset(),
) -> KillSummary:
    summary = KillSummary.from_zkb(
        killmail_id,
        {
            "hash": f"hash{killmail_id}",
            "totalValue": total_value,
            "points": 10,
            "npc": False,
            "solo": False,
            "awox": False,
            "labels": ["pvp", "loc:highsec"],
        },
        kill_time=kill_time,
    )
    summary.actor_ids = actor_ids
    return summary


@pytest.fixture
def make_esi_killmail() -> Callable[..., dict[str, Any]]:
    return build_esi_killmail


@pytest.fixture
def make_summary() -> Callable[..., KillSummary]:
    return build_summary


@pytest.fixture
def make_draft():
    """Full-detail draft built the same way the fetcher builds one."""

    def _make(killmail_id: int, victim_id=None, attacker_ids=(None,), kill_time=None):
        esi = build_esi_killmail(killmail_id, victim_id, attacker_ids, kill_time)
        return parse_esi_killmail(esi, build_summary(killmail_id))

    return _make


# =============================================================================
# Scripted Fetcher
# =============================================================================


class ScriptedFetcher:
    """
    Stand-in for KillmailFetcher.

    ``kills`` maps killmail_id to an ESI body or an exception instance;
    ``pages`` maps (character_id, kind, page) to a list of summaries or an
    exception instance.
    """

    def __init__(self) -> None:
        self.kills: dict[int, Any] = {}
        self.pages: dict[tuple[int, str, int], Any] = {}
        self.fetch_calls: list[int] = []
        self.history_calls: list[tuple[int, str, int]] = []
        self.resets = 0
        self.delay = 0.0

    def unavailable_detail(self, killmail_id: int, actor_ids: frozenset[int] = frozenset()):
        """Make ESI unavailable for a kill; the summary is still known."""
        summary = build_summary(killmail_id, actor_ids=actor_ids)
        self.kills[killmail_id] = DetailUnavailable(killmail_id, "breaker-open", summary)

    def unavailable_index(self, killmail_id: int):
        self.kills[killmail_id] = IndexUnavailable(killmail_id, "timeout")

    async def fetch(self, killmail_id: int, hash=None, summary=None):
        self.fetch_calls.append(killmail_id)
        if self.delay:
            await asyncio.sleep(self.delay)
        entry = self.kills[killmail_id]
        if isinstance(entry, BaseException):
            raise entry
        return parse_esi_killmail(entry, summary or build_summary(killmail_id))

    async def history(self, character_id: int, kind: str, page: int):
        self.history_calls.append((character_id, kind, page))
        entry = self.pages.get((character_id, kind, page), [])
        if isinstance(entry, BaseException):
            raise entry
        return list(entry)

    def get_breaker_states(self) -> dict:
        return {}

    def reset_breakers(self) -> None:
        self.resets += 1


@pytest.fixture
def fetcher() -> ScriptedFetcher:
    return ScriptedFetcher()
