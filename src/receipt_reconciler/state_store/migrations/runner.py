"""
Versioned schema migrations for the state store.

Migration modules live next to this file and are named {version}_{name}.py,
e.g. 001_search_jobs.py. Each one defines:
- VERSION: int
- NAME: str
- upgrade(conn) -> None
- downgrade(conn) -> None (optional, may raise NotImplementedError)

Applied versions are recorded in the `migrations` table.
"""

import importlib
import logging
import sqlite3
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

logger = logging.getLogger(__name__)

MIGRATION_GLOB = "[0-9][0-9][0-9]_*.py"


class MigrationError(Exception):
    """A migration could not be loaded or applied."""

    pass


@dataclass
class Migration:
    """A single schema migration."""

    version: int
    name: str
    upgrade: Callable[[sqlite3.Connection], None]
    downgrade: Callable[[sqlite3.Connection], None] | None

    @property
    def label(self) -> str:
        return f"{self.version:03d}_{self.name}"


def get_all_migrations() -> list[Migration]:
    """
    Load every migration module in this package.

    Returns:
        Migrations sorted by version

    Raises:
        MigrationError: If a module lacks VERSION/NAME/upgrade or two
            modules share a version
    """
    found: dict[int, Migration] = {}

    for py_file in sorted(Path(__file__).parent.glob(MIGRATION_GLOB)):
        module = importlib.import_module(f"{__package__}.{py_file.stem}")
        try:
            migration = Migration(
                version=module.VERSION,
                name=module.NAME,
                upgrade=module.upgrade,
                downgrade=getattr(module, "downgrade", None),
            )
        except AttributeError as e:
            raise MigrationError(f"Invalid migration module {py_file.stem}: {e}") from e

        if migration.version in found:
            raise MigrationError(
                f"Duplicate migration version {migration.version}: "
                f"{found[migration.version].label} and {migration.label}"
            )
        found[migration.version] = migration

    return [found[v] for v in sorted(found)]


class MigrationRunner:
    """
    Applies and rolls back migrations on one connection.

    Every migration runs in its own transaction together with the
    bookkeeping row, so a failed migration leaves no trace.
    """

    def __init__(self, conn: sqlite3.Connection):
        """Initialize with a database connection."""
        self.conn = conn
        self.conn.execute(
            """
            CREATE TABLE IF NOT EXISTS migrations (
                version INTEGER PRIMARY KEY,
                name TEXT NOT NULL,
                applied_at TEXT NOT NULL
            )
        """
        )
        self.conn.commit()

    def get_applied_versions(self) -> set[int]:
        """Versions recorded as applied."""
        rows = self.conn.execute("SELECT version FROM migrations").fetchall()
        return {row[0] for row in rows}

    def get_current_version(self) -> int:
        """Highest applied version, 0 for a fresh database."""
        applied = self.get_applied_versions()
        return max(applied) if applied else 0

    def get_pending(self) -> list[Migration]:
        """Migrations not applied yet, in version order."""
        applied = self.get_applied_versions()
        return [m for m in get_all_migrations() if m.version not in applied]

    def _run(self, migration: Migration, direction: str) -> None:
        step = migration.upgrade if direction == "up" else migration.downgrade
        if step is None:
            raise NotImplementedError(f"Migration {migration.label} does not support rollback")

        logger.info(f"Migrating {direction}: {migration.label}")
        try:
            step(self.conn)
            if direction == "up":
                applied_at = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
                self.conn.execute(
                    "INSERT INTO migrations (version, name, applied_at) VALUES (?, ?, ?)",
                    (migration.version, migration.name, applied_at),
                )
            else:
                self.conn.execute(
                    "DELETE FROM migrations WHERE version = ?", (migration.version,)
                )
            self.conn.commit()
        except Exception as e:
            self.conn.rollback()
            logger.error(f"Migration {migration.label} ({direction}) failed: {e}")
            raise

    def apply_migration(self, migration: Migration) -> None:
        """Apply a single migration."""
        self._run(migration, "up")

    def rollback_migration(self, migration: Migration) -> None:
        """Roll back a single migration."""
        self._run(migration, "down")

    def run_pending(self) -> list[int]:
        """
        Apply all pending migrations.

        Returns:
            Versions applied by this call
        """
        applied = []
        for migration in self.get_pending():
            self.apply_migration(migration)
            applied.append(migration.version)

        if applied:
            logger.info(f"Applied {len(applied)} migrations: {applied}")
        else:
            logger.debug("No pending migrations")
        return applied

    def migrate_to(self, target_version: int) -> None:
        """
        Move the schema up or down to a version.

        Args:
            target_version: Version to end at (0 rolls back everything)
        """
        migrations = get_all_migrations()
        applied = self.get_applied_versions()

        for migration in migrations:
            if migration.version <= target_version and migration.version not in applied:
                self.apply_migration(migration)

        for migration in reversed(migrations):
            if migration.version > target_version and migration.version in applied:
                self.rollback_migration(migration)
