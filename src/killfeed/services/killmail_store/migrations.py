"""
Database Migration Runner for the Killmail Store.

Applies versioned SQL migrations on startup. Migration files live in the
``migrations/`` directory next to this module and are named
``NNN_description.sql``; applied versions are recorded in the
``schema_migrations`` table.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    import aiosqlite

logger = logging.getLogger(__name__)

# Directory containing migration SQL files
MIGRATIONS_DIR = Path(__file__).parent / "migrations"


@dataclass(frozen=True)
class Migration:
    """One versioned schema migration."""

    version: int
    description: str
    path: Path

    def read_sql(self) -> str:
        return self.path.read_text(encoding="utf-8")


def parse_migration_filename(filename: str) -> tuple[int, str] | None:
    """
    Split ``NNN_some_description.sql`` into (version, "some description").

    Returns:
        None if the name has no numeric version prefix.
    """
    stem = filename.rsplit(".", 1)[0]
    prefix, _, rest = stem.partition("_")
    try:
        version = int(prefix)
    except ValueError:
        return None
    return version, rest.replace("_", " ") if rest else stem


def discover_migrations(directory: Path = MIGRATIONS_DIR) -> list[Migration]:
    """
    List migrations in version order.

    Raises:
        ValueError: If two files share a version number
    """
    migrations: dict[int, Migration] = {}
    for path in sorted(directory.glob("*.sql")):
        parsed = parse_migration_filename(path.name)
        if parsed is None:
            logger.warning("Skipping invalid migration file: %s", path.name)
            continue
        version, description = parsed
        if version in migrations:
            raise ValueError(
                f"Duplicate migration version {version:03d}: "
                f"{migrations[version].path.name} and {path.name}"
            )
        migrations[version] = Migration(version, description, path)
    return [migrations[v] for v in sorted(migrations)]


class MigrationRunner:
    """
    Apply pending migrations to an open connection.

    Each migration script and its schema_migrations row are committed
    together, so a failed script leaves the version unrecorded.
    """

    def __init__(self, db: aiosqlite.Connection, directory: Path = MIGRATIONS_DIR):
        """
        Initialize the migration runner.

        Args:
            db: Open database connection
            directory: Directory holding NNN_*.sql files
        """
        self.db = db
        self.directory = directory

    async def run_migrations(self) -> int:
        """
        Apply pending migrations.

        Returns:
            Number of migrations applied.
        """
        await self._ensure_migrations_table()
        current_version = await self.current_version()

        pending = [m for m in discover_migrations(self.directory) if m.version > current_version]
        for migration in pending:
            await self._apply_migration(migration)

        if pending:
            logger.info("Applied %d database migration(s)", len(pending))

        return len(pending)

    async def current_version(self) -> int:
        """Latest applied migration version, or 0 if none applied."""
        cursor = await self.db.execute("SELECT MAX(version) FROM schema_migrations")
        row = await cursor.fetchone()
        return row[0] if row and row[0] is not None else 0

    async def applied_versions(self) -> list[int]:
        """All recorded migration versions, ascending."""
        cursor = await self.db.execute("SELECT version FROM schema_migrations ORDER BY version")
        return [row[0] for row in await cursor.fetchall()]

    async def _ensure_migrations_table(self) -> None:
        await self.db.execute(
            """
            CREATE TABLE IF NOT EXISTS schema_migrations (
                version INTEGER PRIMARY KEY,
                applied_at INTEGER NOT NULL,
                description TEXT
            )
            """
        )
        await self.db.commit()

    async def _apply_migration(self, migration: Migration) -> None:
        logger.info("Applying migration %03d: %s", migration.version, migration.description)

        # executescript() commits any open transaction first, so the version
        # row is written inside the script's own transaction.
        script = (
            "BEGIN;\n"
            f"{migration.read_sql()}\n"
            "INSERT INTO schema_migrations (version, applied_at, description) "
            f"VALUES ({migration.version}, {int(time.time())}, "
            f"'{migration.description.replace(chr(39), chr(39) * 2)}');\n"
            "COMMIT;"
        )
        try:
            await self.db.executescript(script)
        except Exception:
            await self.db.rollback()
            raise

        logger.info("Migration %03d applied successfully", migration.version)
