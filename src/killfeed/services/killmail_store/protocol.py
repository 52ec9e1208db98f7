"""
Killmail Store Protocol Interface.

This file defines the narrow persistence contract the ingestion pipeline is
written against, plus the row-shaped records that cross it.

Every write is atomic at single-killmail granularity: a kill fact, its
victim and attacker rows, its tracked-character links and its loss view are
committed together or not at all.
"""

from __future__ import annotations

from abc import abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Protocol, runtime_checkable

# =============================================================================
# Errors
# =============================================================================


class PersistenceFailure(Exception):
    """
    A storage operation failed and was rolled back.

    ``retryable`` is set for lock contention (database is locked/busy); the
    coordinator retries those before counting the item as failed.
    """

    def __init__(self, message: str, retryable: bool = False, original_error: Exception | None = None):
        self.message = message
        self.retryable = retryable
        self.original_error = original_error
        super().__init__(message)


# =============================================================================
# Data Classes
# =============================================================================


class Completeness(str, Enum):
    """Completeness of a stored kill fact."""

    PARTIAL = "partial"
    FULL = "full"


@dataclass
class KillFact:
    """Core killmail row."""

    killmail_id: int
    kill_time: int  # Unix timestamp
    system_id: int
    ship_type_id: int  # Victim ship; 0 when unknown
    npc: bool
    solo: bool
    awox: bool
    labels: list[str]
    total_value: int  # Whole ISK
    points: int
    hash: str | None = None
    fully_populated: bool = False

    @property
    def completeness(self) -> Completeness:
        return Completeness.FULL if self.fully_populated else Completeness.PARTIAL


@dataclass
class KillVictim:
    killmail_id: int
    character_id: int | None
    corporation_id: int | None
    alliance_id: int | None
    ship_type_id: int
    damage_taken: int


@dataclass
class KillAttacker:
    killmail_id: int
    character_id: int | None
    corporation_id: int | None
    alliance_id: int | None
    damage_done: int
    final_blow: bool
    security_status: float | None
    ship_type_id: int | None
    weapon_type_id: int | None


@dataclass
class KillCharacter:
    """Link between a kill and a tracked character who took part in it."""

    killmail_id: int
    character_id: int
    role: str  # 'attacker' | 'victim'


@dataclass
class LossFact:
    """Per-tracked-character view of a kill in which that character died."""

    killmail_id: int
    character_id: int
    kill_time: int
    ship_type_id: int
    system_id: int
    total_value: int
    attacker_count: int
    labels: list[str]


@dataclass
class KillmailRecord:
    """Everything written for one fully populated killmail."""

    fact: KillFact
    victim: KillVictim
    attackers: list[KillAttacker] = field(default_factory=list)
    characters: list[KillCharacter] = field(default_factory=list)
    loss: LossFact | None = None


@dataclass
class PartialKillmail:
    """A kill fact still waiting for enrichment."""

    killmail_id: int
    kill_time: int
    hash: str | None


@dataclass
class Checkpoint:
    """Resume cursor for one backfill stream."""

    stream_name: str
    last_seen_id: int
    last_seen_time: int | None  # Unix timestamp


@dataclass
class TrackedCharacter:
    """A roster entry."""

    character_id: int
    name: str | None = None
    corporation_id: int | None = None
    alliance_id: int | None = None
    added_at: int | None = None
    last_backfill_at: int | None = None


@dataclass
class StoreStats:
    """Storage statistics for observability."""

    total_kills: int
    partial_kills: int
    total_losses: int
    tracked_characters: int
    checkpoints: int
    oldest_kill_time: int | None
    newest_kill_time: int | None
    database_size_bytes: int


# =============================================================================
# Protocol Interface
# =============================================================================


@runtime_checkable
class KillmailStore(Protocol):
    """
    Abstract interface for killmail storage.

    Implementations must be async-compatible and safe to call from many
    coroutines at once (backfill workers, enrichment, realtime consumers).

    Design notes:
    - All timestamps are Unix epoch integers
    - killmail_id is globally unique (assigned upstream)
    - fully_populated never goes from true back to false
    """

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    @abstractmethod
    async def initialize(self) -> None:
        """Open the store, running migrations if needed."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Close the store and release resources."""
        ...

    # -------------------------------------------------------------------------
    # Killmails
    # -------------------------------------------------------------------------

    @abstractmethod
    async def get_completeness(self, killmail_id: int) -> Completeness | None:
        """Return the stored completeness, or None if the kill is unknown."""
        ...

    @abstractmethod
    async def get_kill(self, killmail_id: int) -> KillFact | None:
        """Get a single kill fact by id."""
        ...

    @abstractmethod
    async def upsert_full(self, record: KillmailRecord) -> None:
        """
        Write a fully populated killmail in one transaction.

        Replaces victim, attacker and character rows, upserts the loss view
        when present, and sets fully_populated.

        Raises:
            PersistenceFailure: The transaction was rolled back
        """
        ...

    @abstractmethod
    async def upsert_partial(self, fact: KillFact) -> bool:
        """
        Write summary-only kill data with fully_populated = false.

        An existing full row is left untouched.

        Returns:
            True if a row was inserted or updated
        """
        ...

    @abstractmethod
    async def upsert_loss_view(self, loss: LossFact) -> None:
        """Insert or re-derive the loss view for a kill."""
        ...

    @abstractmethod
    async def find_partial(self, limit: int = 50) -> list[PartialKillmail]:
        """Partial kills ordered oldest first."""
        ...

    @abstractmethod
    async def get_attackers(self, killmail_id: int) -> list[KillAttacker]:
        ...

    @abstractmethod
    async def get_victim(self, killmail_id: int) -> KillVictim | None:
        ...

    @abstractmethod
    async def get_loss(self, killmail_id: int) -> LossFact | None:
        ...

    @abstractmethod
    async def get_kill_characters(self, killmail_id: int) -> list[KillCharacter]:
        ...

    # -------------------------------------------------------------------------
    # Checkpoints
    # -------------------------------------------------------------------------

    @abstractmethod
    async def get_checkpoint(self, stream_name: str) -> Checkpoint | None:
        ...

    @abstractmethod
    async def advance_checkpoint(
        self, stream_name: str, last_seen_id: int, last_seen_time: int | None
    ) -> bool:
        """
        Move a checkpoint forward.

        Returns:
            False (and changes nothing) unless last_seen_id is greater
            than the stored value.
        """
        ...

    # -------------------------------------------------------------------------
    # Roster
    # -------------------------------------------------------------------------

    @abstractmethod
    async def list_tracked_characters(self) -> list[TrackedCharacter]:
        ...

    @abstractmethod
    async def get_tracked_character(self, character_id: int) -> TrackedCharacter | None:
        ...

    @abstractmethod
    async def add_tracked_character(self, character: TrackedCharacter) -> None:
        ...

    @abstractmethod
    async def remove_tracked_character(self, character_id: int) -> bool:
        ...

    @abstractmethod
    async def mark_backfilled(self, character_id: int, when: int) -> None:
        ...

    # -------------------------------------------------------------------------
    # Maintenance
    # -------------------------------------------------------------------------

    @abstractmethod
    async def purge_all(self) -> int:
        """Delete every killmail and loss row. Returns kills deleted."""
        ...

    @abstractmethod
    async def get_stats(self) -> StoreStats:
        """Get storage statistics for observability."""
        ...
