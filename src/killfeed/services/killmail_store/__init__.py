"""
Killmail Store - Persistent Storage for Ingested Kills.

SQLite-backed storage for kill facts, participants, loss views, backfill
checkpoints and the tracked-character roster.

Key Components:
- SQLiteKillmailStore: SQLite implementation with WAL mode for concurrent access
- MigrationRunner: Versioned schema migrations applied at startup
- Protocol classes: KillmailStore, KillmailRecord, KillFact, Checkpoint, etc.

Usage:
    from killfeed.services.killmail_store import SQLiteKillmailStore

    store = SQLiteKillmailStore()
    await store.initialize()

    if await store.get_completeness(kill_id) is None:
        await store.upsert_full(record)
"""

from .migrations import MigrationRunner
from .protocol import (
    Checkpoint,
    Completeness,
    KillAttacker,
    KillCharacter,
    KillFact,
    KillmailRecord,
    KillmailStore,
    KillVictim,
    LossFact,
    PartialKillmail,
    PersistenceFailure,
    StoreStats,
    TrackedCharacter,
)
from .sqlite import SQLiteKillmailStore

__all__ = [
    # Store implementation
    "SQLiteKillmailStore",
    "MigrationRunner",
    # Protocol
    "KillmailStore",
    "PersistenceFailure",
    "Completeness",
    "KillFact",
    "KillVictim",
    "KillAttacker",
    "KillCharacter",
    "LossFact",
    "KillmailRecord",
    "PartialKillmail",
    "Checkpoint",
    "TrackedCharacter",
    "StoreStats",
]
