"""
SQLite Implementation of the Killmail Store.

Uses WAL mode so readers never block the single writer. Multi-row writes
for one killmail run inside an explicit BEGIN IMMEDIATE transaction, and
an asyncio.Lock serializes write transactions on the shared connection.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

import aiosqlite

from .migrations import MigrationRunner
from .protocol import (
    Checkpoint,
    Completeness,
    KillAttacker,
    KillCharacter,
    KillFact,
    KillmailRecord,
    KillVictim,
    LossFact,
    PartialKillmail,
    PersistenceFailure,
    StoreStats,
    TrackedCharacter,
)

logger = logging.getLogger(__name__)

_TRANSIENT_MARKERS = ("locked", "busy")


def _persistence_failure(operation: str, error: sqlite3.Error) -> PersistenceFailure:
    """Wrap a sqlite error, flagging lock contention as retryable."""
    message = str(error).lower()
    retryable = isinstance(error, sqlite3.OperationalError) and any(
        marker in message for marker in _TRANSIENT_MARKERS
    )
    return PersistenceFailure(f"{operation} failed: {error}", retryable=retryable, original_error=error)


def _labels_to_db(labels: list[str]) -> str:
    return json.dumps(sorted(set(labels)))


def _labels_from_db(value: str | None) -> list[str]:
    if not value:
        return []
    try:
        loaded = json.loads(value)
    except json.JSONDecodeError:
        return []
    return [str(label) for label in loaded] if isinstance(loaded, list) else []


class SQLiteKillmailStore:
    """
    SQLite implementation of KillmailStore.

    See migrations/*.sql for table definitions.

    Connection configuration:
        PRAGMA journal_mode=WAL
        PRAGMA busy_timeout=5000
        PRAGMA synchronous=NORMAL
        PRAGMA foreign_keys=ON
    """

    def __init__(self, db_path: Path | str | None = None):
        """
        Initialize the store.

        Args:
            db_path: Path to database file. Defaults to {instance_root}/cache/killfeed.db.
        """
        if db_path is None:
            from ...core.config import get_settings

            db_path = get_settings().killmail_db_path

        self.db_path = Path(db_path)
        self._db: aiosqlite.Connection | None = None
        self._write_lock: asyncio.Lock | None = None

    async def initialize(self) -> None:
        """
        Initialize database, running migrations if needed.

        Must be called before any other operations.
        """
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        # Autocommit mode: transactions are opened explicitly
        self._db = await aiosqlite.connect(self.db_path, isolation_level=None)

        await self._db.execute("PRAGMA journal_mode=WAL")
        await self._db.execute("PRAGMA busy_timeout=5000")
        await self._db.execute("PRAGMA synchronous=NORMAL")
        await self._db.execute("PRAGMA foreign_keys=ON")

        runner = MigrationRunner(self._db)
        await runner.run_migrations()

        self._db.row_factory = aiosqlite.Row
        self._write_lock = asyncio.Lock()

        logger.info("Killmail store initialized: %s", self.db_path)

    async def close(self) -> None:
        """Close the store and release resources."""
        if self._db:
            await self._db.close()
            self._db = None
            logger.info("Killmail store closed")

    @property
    def db(self) -> aiosqlite.Connection:
        """Get the database connection, raising if not initialized."""
        if self._db is None:
            raise RuntimeError("Store not initialized. Call initialize() first.")
        return self._db

    @asynccontextmanager
    async def _write_transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Serialize and wrap a multi-statement write in BEGIN IMMEDIATE/COMMIT."""
        db = self.db
        assert self._write_lock is not None
        async with self._write_lock:
            await db.execute("BEGIN IMMEDIATE")
            try:
                yield db
            except BaseException:
                await db.execute("ROLLBACK")
                raise
            try:
                await db.execute("COMMIT")
            except sqlite3.Error:
                await db.execute("ROLLBACK")
                raise

    # -------------------------------------------------------------------------
    # Killmails
    # -------------------------------------------------------------------------

    async def get_completeness(self, killmail_id: int) -> Completeness | None:
        cursor = await self.db.execute(
            "SELECT fully_populated FROM kill_facts WHERE killmail_id = ?", (killmail_id,)
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return Completeness.FULL if row[0] else Completeness.PARTIAL

    async def get_kill(self, killmail_id: int) -> KillFact | None:
        cursor = await self.db.execute(
            """
            SELECT killmail_id, kill_time, system_id, ship_type_id, npc, solo, awox,
                   labels, total_value, points, hash, fully_populated
            FROM kill_facts WHERE killmail_id = ?
            """,
            (killmail_id,),
        )
        row = await cursor.fetchone()
        return self._row_to_fact(row) if row else None

    def _row_to_fact(self, row: aiosqlite.Row) -> KillFact:
        return KillFact(
            killmail_id=row["killmail_id"],
            kill_time=row["kill_time"],
            system_id=row["system_id"],
            ship_type_id=row["ship_type_id"],
            npc=bool(row["npc"]),
            solo=bool(row["solo"]),
            awox=bool(row["awox"]),
            labels=_labels_from_db(row["labels"]),
            total_value=row["total_value"],
            points=row["points"],
            hash=row["hash"],
            fully_populated=bool(row["fully_populated"]),
        )

    async def upsert_full(self, record: KillmailRecord) -> None:
        """Write a fully populated killmail and its related rows atomically."""
        fact = record.fact
        killmail_id = fact.killmail_id
        now = int(time.time())

        try:
            async with self._write_transaction() as db:
                await db.execute(
                    """
                    INSERT INTO kill_facts (
                        killmail_id, kill_time, system_id, ship_type_id, npc, solo, awox,
                        labels, total_value, points, hash, fully_populated,
                        ingested_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 1, ?, ?)
                    ON CONFLICT(killmail_id) DO UPDATE SET
                        kill_time = excluded.kill_time,
                        system_id = excluded.system_id,
                        ship_type_id = excluded.ship_type_id,
                        npc = excluded.npc,
                        solo = excluded.solo,
                        awox = excluded.awox,
                        labels = excluded.labels,
                        total_value = excluded.total_value,
                        points = excluded.points,
                        hash = COALESCE(excluded.hash, kill_facts.hash),
                        fully_populated = 1,
                        updated_at = excluded.updated_at
                    """,
                    (
                        killmail_id,
                        fact.kill_time,
                        fact.system_id,
                        fact.ship_type_id,
                        fact.npc,
                        fact.solo,
                        fact.awox,
                        _labels_to_db(fact.labels),
                        fact.total_value,
                        fact.points,
                        fact.hash,
                        now,
                        now,
                    ),
                )

                victim = record.victim
                await db.execute("DELETE FROM kill_victims WHERE killmail_id = ?", (killmail_id,))
                await db.execute(
                    """
                    INSERT INTO kill_victims (
                        killmail_id, character_id, corporation_id, alliance_id,
                        ship_type_id, damage_taken
                    ) VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        killmail_id,
                        victim.character_id,
                        victim.corporation_id,
                        victim.alliance_id,
                        victim.ship_type_id,
                        victim.damage_taken,
                    ),
                )

                await db.execute("DELETE FROM kill_attackers WHERE killmail_id = ?", (killmail_id,))
                if record.attackers:
                    await db.executemany(
                        """
                        INSERT INTO kill_attackers (
                            killmail_id, character_id, corporation_id, alliance_id,
                            damage_done, final_blow, security_status, ship_type_id, weapon_type_id
                        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        [
                            (
                                killmail_id,
                                a.character_id,
                                a.corporation_id,
                                a.alliance_id,
                                a.damage_done,
                                a.final_blow,
                                a.security_status,
                                a.ship_type_id,
                                a.weapon_type_id,
                            )
                            for a in record.attackers
                        ],
                    )

                await db.execute("DELETE FROM kill_characters WHERE killmail_id = ?", (killmail_id,))
                if record.characters:
                    await db.executemany(
                        """
                        INSERT OR IGNORE INTO kill_characters (killmail_id, character_id, role)
                        VALUES (?, ?, ?)
                        """,
                        [(killmail_id, c.character_id, c.role) for c in record.characters],
                    )

                if record.loss is not None:
                    await self._upsert_loss(db, record.loss)
        except sqlite3.Error as e:
            raise _persistence_failure(f"upsert_full({killmail_id})", e) from e

    async def upsert_partial(self, fact: KillFact) -> bool:
        """Write summary-only data; never touches a fully populated row."""
        now = int(time.time())
        try:
            async with self._write_transaction() as db:
                cursor = await db.execute(
                    """
                    INSERT INTO kill_facts (
                        killmail_id, kill_time, system_id, ship_type_id, npc, solo, awox,
                        labels, total_value, points, hash, fully_populated,
                        ingested_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0, ?, ?)
                    ON CONFLICT(killmail_id) DO UPDATE SET
                        kill_time = excluded.kill_time,
                        system_id = excluded.system_id,
                        ship_type_id = excluded.ship_type_id,
                        npc = excluded.npc,
                        solo = excluded.solo,
                        awox = excluded.awox,
                        labels = excluded.labels,
                        total_value = excluded.total_value,
                        points = excluded.points,
                        hash = COALESCE(excluded.hash, kill_facts.hash),
                        updated_at = excluded.updated_at
                    WHERE kill_facts.fully_populated = 0
                    """,
                    (
                        fact.killmail_id,
                        fact.kill_time,
                        fact.system_id,
                        fact.ship_type_id,
                        fact.npc,
                        fact.solo,
                        fact.awox,
                        _labels_to_db(fact.labels),
                        fact.total_value,
                        fact.points,
                        fact.hash,
                        now,
                        now,
                    ),
                )
                return cursor.rowcount > 0
        except sqlite3.Error as e:
            raise _persistence_failure(f"upsert_partial({fact.killmail_id})", e) from e

    async def _upsert_loss(self, db: aiosqlite.Connection, loss: LossFact) -> None:
        await db.execute(
            """
            INSERT INTO loss_facts (
                killmail_id, character_id, kill_time, ship_type_id, system_id,
                total_value, attacker_count, labels
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(killmail_id) DO UPDATE SET
                character_id = excluded.character_id,
                kill_time = excluded.kill_time,
                ship_type_id = excluded.ship_type_id,
                system_id = excluded.system_id,
                total_value = excluded.total_value,
                attacker_count = excluded.attacker_count,
                labels = excluded.labels
            """,
            (
                loss.killmail_id,
                loss.character_id,
                loss.kill_time,
                loss.ship_type_id,
                loss.system_id,
                loss.total_value,
                loss.attacker_count,
                _labels_to_db(loss.labels),
            ),
        )

    async def upsert_loss_view(self, loss: LossFact) -> None:
        try:
            async with self._write_transaction() as db:
                await self._upsert_loss(db, loss)
        except sqlite3.Error as e:
            raise _persistence_failure(f"upsert_loss_view({loss.killmail_id})", e) from e

    async def find_partial(self, limit: int = 50) -> list[PartialKillmail]:
        cursor = await self.db.execute(
            """
            SELECT killmail_id, kill_time, hash FROM kill_facts
            WHERE fully_populated = 0
            ORDER BY kill_time ASC, killmail_id ASC
            LIMIT ?
            """,
            (limit,),
        )
        rows = await cursor.fetchall()
        return [
            PartialKillmail(killmail_id=r["killmail_id"], kill_time=r["kill_time"], hash=r["hash"])
            for r in rows
        ]

    async def get_attackers(self, killmail_id: int) -> list[KillAttacker]:
        cursor = await self.db.execute(
            """
            SELECT killmail_id, character_id, corporation_id, alliance_id, damage_done,
                   final_blow, security_status, ship_type_id, weapon_type_id
            FROM kill_attackers WHERE killmail_id = ? ORDER BY id
            """,
            (killmail_id,),
        )
        return [
            KillAttacker(
                killmail_id=r["killmail_id"],
                character_id=r["character_id"],
                corporation_id=r["corporation_id"],
                alliance_id=r["alliance_id"],
                damage_done=r["damage_done"],
                final_blow=bool(r["final_blow"]),
                security_status=r["security_status"],
                ship_type_id=r["ship_type_id"],
                weapon_type_id=r["weapon_type_id"],
            )
            for r in await cursor.fetchall()
        ]

    async def get_victim(self, killmail_id: int) -> KillVictim | None:
        cursor = await self.db.execute(
            """
            SELECT killmail_id, character_id, corporation_id, alliance_id, ship_type_id, damage_taken
            FROM kill_victims WHERE killmail_id = ?
            """,
            (killmail_id,),
        )
        r = await cursor.fetchone()
        if r is None:
            return None
        return KillVictim(
            killmail_id=r["killmail_id"],
            character_id=r["character_id"],
            corporation_id=r["corporation_id"],
            alliance_id=r["alliance_id"],
            ship_type_id=r["ship_type_id"],
            damage_taken=r["damage_taken"],
        )

    async def get_loss(self, killmail_id: int) -> LossFact | None:
        cursor = await self.db.execute(
            """
            SELECT killmail_id, character_id, kill_time, ship_type_id, system_id,
                   total_value, attacker_count, labels
            FROM loss_facts WHERE killmail_id = ?
            """,
            (killmail_id,),
        )
        r = await cursor.fetchone()
        if r is None:
            return None
        return LossFact(
            killmail_id=r["killmail_id"],
            character_id=r["character_id"],
            kill_time=r["kill_time"],
            ship_type_id=r["ship_type_id"],
            system_id=r["system_id"],
            total_value=r["total_value"],
            attacker_count=r["attacker_count"],
            labels=_labels_from_db(r["labels"]),
        )

    async def get_kill_characters(self, killmail_id: int) -> list[KillCharacter]:
        cursor = await self.db.execute(
            """
            SELECT killmail_id, character_id, role FROM kill_characters
            WHERE killmail_id = ? ORDER BY character_id
            """,
            (killmail_id,),
        )
        return [
            KillCharacter(killmail_id=r["killmail_id"], character_id=r["character_id"], role=r["role"])
            for r in await cursor.fetchall()
        ]

    # -------------------------------------------------------------------------
    # Checkpoints
    # -------------------------------------------------------------------------

    async def get_checkpoint(self, stream_name: str) -> Checkpoint | None:
        cursor = await self.db.execute(
            """
            SELECT stream_name, last_seen_id, last_seen_time
            FROM ingestion_checkpoints WHERE stream_name = ?
            """,
            (stream_name,),
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return Checkpoint(
            stream_name=row["stream_name"],
            last_seen_id=row["last_seen_id"],
            last_seen_time=row["last_seen_time"],
        )

    async def advance_checkpoint(
        self, stream_name: str, last_seen_id: int, last_seen_time: int | None
    ) -> bool:
        """Monotonic upsert: lower or equal ids leave the row unchanged."""
        if last_seen_id <= 0:
            return False
        try:
            async with self._write_transaction() as db:
                cursor = await db.execute(
                    """
                    INSERT INTO ingestion_checkpoints (
                        stream_name, last_seen_id, last_seen_time, updated_at
                    ) VALUES (?, ?, ?, ?)
                    ON CONFLICT(stream_name) DO UPDATE SET
                        last_seen_id = excluded.last_seen_id,
                        last_seen_time = excluded.last_seen_time,
                        updated_at = excluded.updated_at
                    WHERE excluded.last_seen_id > ingestion_checkpoints.last_seen_id
                    """,
                    (stream_name, last_seen_id, last_seen_time, int(time.time())),
                )
                return cursor.rowcount > 0
        except sqlite3.Error as e:
            raise _persistence_failure(f"advance_checkpoint({stream_name})", e) from e

    # -------------------------------------------------------------------------
    # Roster
    # -------------------------------------------------------------------------

    def _row_to_character(self, r: aiosqlite.Row) -> TrackedCharacter:
        return TrackedCharacter(
            character_id=r["character_id"],
            name=r["name"],
            corporation_id=r["corporation_id"],
            alliance_id=r["alliance_id"],
            added_at=r["added_at"],
            last_backfill_at=r["last_backfill_at"],
        )

    async def list_tracked_characters(self) -> list[TrackedCharacter]:
        cursor = await self.db.execute(
            """
            SELECT character_id, name, corporation_id, alliance_id, added_at, last_backfill_at
            FROM tracked_characters ORDER BY character_id
            """
        )
        return [self._row_to_character(r) for r in await cursor.fetchall()]

    async def get_tracked_character(self, character_id: int) -> TrackedCharacter | None:
        cursor = await self.db.execute(
            """
            SELECT character_id, name, corporation_id, alliance_id, added_at, last_backfill_at
            FROM tracked_characters WHERE character_id = ?
            """,
            (character_id,),
        )
        r = await cursor.fetchone()
        return self._row_to_character(r) if r else None

    async def add_tracked_character(self, character: TrackedCharacter) -> None:
        try:
            async with self._write_transaction() as db:
                await db.execute(
                    """
                    INSERT INTO tracked_characters (
                        character_id, name, corporation_id, alliance_id, added_at
                    ) VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT(character_id) DO UPDATE SET
                        name = COALESCE(excluded.name, tracked_characters.name),
                        corporation_id = COALESCE(excluded.corporation_id, tracked_characters.corporation_id),
                        alliance_id = COALESCE(excluded.alliance_id, tracked_characters.alliance_id)
                    """,
                    (
                        character.character_id,
                        character.name,
                        character.corporation_id,
                        character.alliance_id,
                        character.added_at or int(time.time()),
                    ),
                )
        except sqlite3.Error as e:
            raise _persistence_failure(f"add_tracked_character({character.character_id})", e) from e

    async def remove_tracked_character(self, character_id: int) -> bool:
        try:
            async with self._write_transaction() as db:
                cursor = await db.execute(
                    "DELETE FROM tracked_characters WHERE character_id = ?", (character_id,)
                )
                return cursor.rowcount > 0
        except sqlite3.Error as e:
            raise _persistence_failure(f"remove_tracked_character({character_id})", e) from e

    async def mark_backfilled(self, character_id: int, when: int) -> None:
        try:
            async with self._write_transaction() as db:
                await db.execute(
                    "UPDATE tracked_characters SET last_backfill_at = ? WHERE character_id = ?",
                    (when, character_id),
                )
        except sqlite3.Error as e:
            raise _persistence_failure(f"mark_backfilled({character_id})", e) from e

    # -------------------------------------------------------------------------
    # Maintenance
    # -------------------------------------------------------------------------

    async def purge_all(self) -> int:
        """Delete every kill (cascading to participants and loss views)."""
        try:
            async with self._write_transaction() as db:
                cursor = await db.execute("DELETE FROM kill_facts")
                deleted = cursor.rowcount
                await db.execute("DELETE FROM loss_facts")
        except sqlite3.Error as e:
            raise _persistence_failure("purge_all", e) from e

        logger.warning("Purged %d killmails", deleted)
        return deleted

    async def get_stats(self) -> StoreStats:
        async def scalar(sql: str) -> int | None:
            cursor = await self.db.execute(sql)
            row = await cursor.fetchone()
            return row[0] if row else None

        page_count = await scalar("PRAGMA page_count") or 0
        page_size = await scalar("PRAGMA page_size") or 0

        return StoreStats(
            total_kills=await scalar("SELECT COUNT(*) FROM kill_facts") or 0,
            partial_kills=await scalar("SELECT COUNT(*) FROM kill_facts WHERE fully_populated = 0")
            or 0,
            total_losses=await scalar("SELECT COUNT(*) FROM loss_facts") or 0,
            tracked_characters=await scalar("SELECT COUNT(*) FROM tracked_characters") or 0,
            checkpoints=await scalar("SELECT COUNT(*) FROM ingestion_checkpoints") or 0,
            oldest_kill_time=await scalar("SELECT MIN(kill_time) FROM kill_facts"),
            newest_kill_time=await scalar("SELECT MAX(kill_time) FROM kill_facts"),
            database_size_bytes=page_count * page_size,
        )
