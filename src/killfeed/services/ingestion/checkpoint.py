"""
Backfill checkpoints.

One checkpoint per (character, history kind) stream. A checkpoint only
moves forward; the monotonic guard is enforced by the store's upsert.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Optional

from ...core.logging import get_logger
from .models import to_epoch

if TYPE_CHECKING:
    from ..killmail_store import Checkpoint, KillmailStore

logger = get_logger(__name__)

STREAM_KINDS = ("kills", "losses")


def stream_name(kind: str, character_id: int) -> str:
    """Stream name for a character's history, e.g. ``kills:123``."""
    if kind not in STREAM_KINDS:
        raise ValueError(f"Unknown stream kind: {kind}")
    return f"{kind}:{character_id}"


def kills_stream(character_id: int) -> str:
    return stream_name("kills", character_id)


def losses_stream(character_id: int) -> str:
    return stream_name("losses", character_id)


class CheckpointStore:
    """Read and advance backfill checkpoints."""

    def __init__(self, store: KillmailStore):
        self._store = store

    async def get(self, stream: str) -> Optional[Checkpoint]:
        return await self._store.get_checkpoint(stream)

    async def last_seen_id(self, stream: str) -> int:
        checkpoint = await self.get(stream)
        return checkpoint.last_seen_id if checkpoint else 0

    async def advance(
        self, stream: str, last_seen_id: int, last_seen_time: Optional[datetime] = None
    ) -> bool:
        """
        Move a stream's checkpoint forward.

        Returns:
            True if the checkpoint moved; False if last_seen_id was not newer
        """
        moved = await self._store.advance_checkpoint(
            stream, last_seen_id, to_epoch(last_seen_time) if last_seen_time else None
        )
        if moved:
            logger.debug("Checkpoint %s advanced to %d", stream, last_seen_id)
        else:
            logger.debug("Checkpoint %s not advanced (%d is not newer)", stream, last_seen_id)
        return moved
