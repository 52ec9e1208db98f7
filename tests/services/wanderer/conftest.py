"""
Fixtures for wanderer-kills websocket tests.

FakeServer stands in for ``websockets.connect``: every connect() returns a
FakeSocket that answers ``phx_join`` and records every frame sent to it.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest

from killfeed.services.ingestion.models import IngestOutcome, IngestResult
from killfeed.services.wanderer.client import LOBBY_TOPIC


class FakeSocket:
    def __init__(self, server: FakeServer, reject_join: bool, early_frames: list[str]) -> None:
        self.server = server
        self.reject_join = reject_join
        self.early_frames = early_frames
        self.sent: list[list[Any]] = []
        self.inbox: asyncio.Queue[Optional[str]] = asyncio.Queue()
        self.closed = False

    async def __aenter__(self) -> FakeSocket:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        self.closed = True

    async def send(self, raw: str) -> None:
        frame = json.loads(raw)
        self.sent.append(frame)
        join_ref, ref, topic, event, _payload = frame
        if event == "phx_join":
            # Server events may race ahead of the join reply
            for early in self.early_frames:
                self.inbox.put_nowait(early)
            status = "error" if self.reject_join else "ok"
            reply = [join_ref, ref, topic, "phx_reply", {"status": status, "response": {}}]
            self.inbox.put_nowait(json.dumps(reply))

    def push(self, event: str, payload: Any, topic: str = LOBBY_TOPIC) -> None:
        """Deliver a server event to the client."""
        self.inbox.put_nowait(json.dumps([None, None, topic, event, payload]))

    async def recv(self) -> str:
        item = await self.inbox.get()
        if item is None:
            raise ConnectionError("socket closed")
        return item

    def __aiter__(self) -> FakeSocket:
        return self

    async def __anext__(self) -> str:
        item = await self.inbox.get()
        if item is None:
            raise StopAsyncIteration
        return item

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self.inbox.put_nowait(None)

    def frames(self, event: str) -> list[list[Any]]:
        return [f for f in self.sent if f[3] == event]

    @property
    def events(self) -> list[str]:
        return [f[3] for f in self.sent]


class FakeServer:
    """
    Scripted wanderer-kills endpoint.

    ``reject_joins`` is the number of connections whose join is refused;
    ``early_events`` are (event, payload) pairs sent to the next connection
    before its join reply.
    """

    def __init__(self) -> None:
        self.sockets: list[FakeSocket] = []
        self.urls: list[str] = []
        self.reject_joins = 0
        self.early_events: list[tuple[str, Any]] = []

    def connect(self, url: str) -> FakeSocket:
        self.urls.append(url)
        reject = self.reject_joins > 0
        if reject:
            self.reject_joins -= 1
        early = [json.dumps([None, None, LOBBY_TOPIC, e, p]) for e, p in self.early_events]
        self.early_events = []
        socket = FakeSocket(self, reject, early)
        self.sockets.append(socket)
        return socket

    @property
    def latest(self) -> FakeSocket:
        return self.sockets[-1]


@pytest.fixture
def server() -> FakeServer:
    return FakeServer()


@pytest.fixture
def mock_coordinator():
    coordinator = MagicMock()

    async def ingest_draft(draft, origin, character_id=None):
        return IngestResult(draft.killmail_id, IngestOutcome.FULL, origin)

    coordinator.ingest_draft = AsyncMock(side_effect=ingest_draft)
    return coordinator


def build_wanderer_killmail(
    killmail_id: int, victim_id: Optional[int] = 111, attacker_id: Optional[int] = 222
) -> dict[str, Any]:
    """Enriched killmail as delivered in ``killmail_update``."""
    return {
        "killmail_id": killmail_id,
        "kill_time": "2026-01-01T12:00:00Z",
        "system_id": 30000142,
        "victim": {
            "character_id": victim_id,
            "character_name": "Victim",
            "corporation_id": 98000002,
            "ship_type_id": 587,
            "ship_name": "Rifter",
            "damage_taken": 500,
        },
        "attackers": [
            {
                "character_id": attacker_id,
                "corporation_id": 98000001,
                "damage_done": 500,
                "final_blow": True,
                "security_status": -1.5,
                "ship_type_id": 11198,
                "weapon_type_id": 2488,
            }
        ],
        "zkb": {
            "hash": f"hash{killmail_id}",
            "total_value": 1_234_567.8,
            "points": 3,
            "npc": False,
            "solo": True,
            "awox": False,
            "labels": ["pvp", "solo"],
        },
        "position": {"x": 1.0, "y": 2.0, "z": 3.0},
    }


@pytest.fixture
def make_wanderer_killmail():
    return build_wanderer_killmail


async def wait_until(predicate, timeout: float = 1.0) -> None:
    """Poll ``predicate`` until it is true or fail the test."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            pytest.fail("condition not met in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def until():
    return wait_until
