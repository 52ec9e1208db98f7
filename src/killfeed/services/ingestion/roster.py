"""
Tracked-character snapshot.

The roster lives in the store; this module keeps an immutable in-memory
copy for relevance checks. Each refresh builds a new frozenset and swaps
the reference in one assignment, so readers always see either the old or
the new set, never a mix.
"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Optional, Union

from ...core.logging import get_logger

if TYPE_CHECKING:
    from ..killmail_store import KillmailStore

logger = get_logger(__name__)

DEFAULT_REFRESH_SECONDS = 300.0

# Called with (added, removed) after a refresh that changed the set
RosterListener = Callable[[frozenset[int], frozenset[int]], Union[Awaitable[None], None]]


class TrackedCharacters:
    """
    Owned, atomically replaced snapshot of tracked character ids.

    Args:
        store: Roster source
        refresh_interval: Seconds between background refreshes
    """

    def __init__(self, store: KillmailStore, refresh_interval: float = DEFAULT_REFRESH_SECONDS):
        self._store = store
        self.refresh_interval = refresh_interval
        self._snapshot: frozenset[int] = frozenset()
        self._listeners: list[RosterListener] = []
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._last_refresh: Optional[datetime] = None

    @property
    def snapshot(self) -> frozenset[int]:
        return self._snapshot

    @property
    def last_refresh(self) -> Optional[datetime]:
        return self._last_refresh

    def contains(self, character_id: Optional[int]) -> bool:
        return character_id is not None and character_id in self._snapshot

    def __contains__(self, character_id: object) -> bool:
        return character_id in self._snapshot

    def __len__(self) -> int:
        return len(self._snapshot)

    def add_listener(self, listener: RosterListener) -> None:
        self._listeners.append(listener)

    async def refresh(self) -> tuple[frozenset[int], frozenset[int]]:
        """
        Reload the roster and swap the snapshot.

        Returns:
            (added, removed) relative to the previous snapshot
        """
        characters = await self._store.list_tracked_characters()
        new = frozenset(c.character_id for c in characters)
        old = self._snapshot
        self._snapshot = new
        self._last_refresh = datetime.now(timezone.utc)

        added, removed = new - old, old - new
        if added or removed:
            logger.info(
                "Roster refreshed: %d tracked (+%d, -%d)", len(new), len(added), len(removed)
            )
            await self._notify(added, removed)
        return added, removed

    async def _notify(self, added: frozenset[int], removed: frozenset[int]) -> None:
        for listener in list(self._listeners):
            try:
                result = listener(added, removed)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.warning("Roster listener failed: %s", e)

    async def start(self) -> None:
        """Start the periodic refresh loop."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._refresh_loop())

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _refresh_loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self.refresh_interval)
                await self.refresh()
            except asyncio.CancelledError:
                break
            except Exception as e:
                # Keep serving the previous snapshot
                logger.warning("Roster refresh error: %s", e)
