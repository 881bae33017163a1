"""
Schema versioning for the jobstore SQLite database.

The schema is built by replaying numbered steps. Each step owns one table
and is an idempotent "DROP TABLE IF EXISTS then CREATE TABLE", so re-running
a step is always safe and downgrades reuse the same mechanism as
destructive upgrades.

Versions:
    100: downloads table
    101: request_headers table

Invariants:
    - Steps are applied in strictly ascending order, one at a time
    - Every applied step records a row in schema_version
    - Version 31 is an alias of 100 (same schema from another codeline)
    - Versions below 100, and versions above the target, destroy and
      recreate all data; this is logged at WARNING
    - A target without a step for every version is rejected at construction

How to change safely:
    - Add a new step with the next version number and bump CURRENT_VERSION
    - Never edit a released step to mean something different
    - Test upgrades from every supported version to the new one
"""

from __future__ import annotations

import logging
import sqlite3
import time
from collections.abc import Callable, Mapping
from pathlib import Path

from ..errors import MigrationError
from ..schema.columns import (
    DOWNLOAD_COLUMN_TYPES,
    DOWNLOADS_TABLE,
    HEADER_DOWNLOAD_ID,
    HEADER_ID,
    HEADER_NAME,
    HEADER_VALUE,
    HEADERS_TABLE,
)

logger = logging.getLogger(__name__)

CURRENT_VERSION = 101
OLDEST_VERSION = 100
# Version just below the first step; replaying from here rebuilds everything.
BASELINE_VERSION = OLDEST_VERSION - 1

LEGACY_ALIASES: Mapping[int, int] = {31: 100}


def _create_downloads_table(conn: sqlite3.Connection) -> None:
    columns = ",\n    ".join(f"{name} {sql_type}" for name, sql_type in DOWNLOAD_COLUMN_TYPES)
    conn.execute(f"DROP TABLE IF EXISTS {DOWNLOADS_TABLE}")
    conn.execute(f"CREATE TABLE {DOWNLOADS_TABLE} (\n    {columns}\n)")


def _create_headers_table(conn: sqlite3.Connection) -> None:
    conn.execute(f"DROP TABLE IF EXISTS {HEADERS_TABLE}")
    conn.execute(
        f"""
        CREATE TABLE {HEADERS_TABLE} (
            {HEADER_ID} INTEGER PRIMARY KEY AUTOINCREMENT,
            {HEADER_DOWNLOAD_ID} INTEGER NOT NULL,
            {HEADER_NAME} TEXT NOT NULL,
            {HEADER_VALUE} TEXT NOT NULL
        )
        """
    )
    conn.execute(
        f"CREATE INDEX IF NOT EXISTS idx_{HEADERS_TABLE}_download "
        f"ON {HEADERS_TABLE}({HEADER_DOWNLOAD_ID})"
    )


MIGRATION_STEPS: Mapping[int, Callable[[sqlite3.Connection], None]] = {
    100: _create_downloads_table,
    101: _create_headers_table,
}


class SchemaManager:
    """Opens, creates and upgrades the jobstore database.

    Each call to connect() returns a fresh configured connection; open()
    additionally brings the schema to the target version.

    Thread safety:
        Migration runs inside a BEGIN IMMEDIATE transaction, so concurrent
        openers serialize and the second one sees the migrated version.

    Example:
        >>> manager = SchemaManager("/var/lib/jobstore/downloads.db")
        >>> conn = manager.open()
        >>> manager.get_version(conn)
        101
    """

    def __init__(
        self,
        db_path: str | Path,
        target_version: int = CURRENT_VERSION,
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
        cache_size_pages: int = -2000,
        steps: Mapping[int, Callable[[sqlite3.Connection], None]] = MIGRATION_STEPS,
    ) -> None:
        """Initialize the schema manager.

        Args:
            db_path: SQLite database file
            target_version: Version to migrate to on open()
            wal_mode: Enable SQLite WAL journal mode
            busy_timeout_ms: SQLite busy timeout
            cache_size_pages: SQLite cache size (negative = KB)
            steps: Version -> step function table

        Raises:
            MigrationError: If any version up to target_version has no step
        """
        self.db_path = Path(db_path)
        self.target_version = target_version
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms
        self.cache_size_pages = cache_size_pages
        self._steps = dict(steps)

        if target_version < OLDEST_VERSION:
            raise MigrationError(
                f"Target version {target_version} is older than {OLDEST_VERSION}",
                version=target_version,
            )
        for version in range(OLDEST_VERSION, target_version + 1):
            if version not in self._steps:
                raise MigrationError(
                    f"Don't know how to upgrade to {version}", version=version
                )

    def connect(self) -> sqlite3.Connection:
        """Create a configured connection without touching the schema."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(
            str(self.db_path),
            timeout=self.busy_timeout_ms / 1000.0,
            isolation_level=None,  # Autocommit by default, explicit transactions
        )
        conn.row_factory = sqlite3.Row
        conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
        conn.execute(f"PRAGMA cache_size = {self.cache_size_pages}")
        if self.wal_mode:
            conn.execute("PRAGMA journal_mode = WAL")
        conn.execute("PRAGMA synchronous = NORMAL")
        return conn

    def open(self) -> sqlite3.Connection:
        """Open the database, creating or migrating it to the target version.

        Returns:
            Connection to a database at target_version
        """
        conn = self.connect()
        try:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS schema_version (
                    version INTEGER PRIMARY KEY,
                    applied_at INTEGER NOT NULL
                )
                """
            )
            conn.execute("BEGIN IMMEDIATE")
            try:
                current = self.get_version(conn)
                if current != self.target_version:
                    self.migrate(conn, current, self.target_version)
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise
        except Exception:
            conn.close()
            raise
        return conn

    def get_version(self, conn: sqlite3.Connection) -> int:
        """Return the stored schema version, 0 for an empty database."""
        try:
            row = conn.execute("SELECT MAX(version) FROM schema_version").fetchone()
        except sqlite3.OperationalError:
            return 0
        return row[0] if row and row[0] is not None else 0

    def applied_versions(self, conn: sqlite3.Connection) -> list[int]:
        """Return recorded step versions in ascending order."""
        cursor = conn.execute("SELECT version FROM schema_version ORDER BY version")
        return [row[0] for row in cursor.fetchall()]

    def migrate(self, conn: sqlite3.Connection, from_version: int, to_version: int) -> list[int]:
        """Apply every step after from_version up to to_version.

        The caller owns the surrounding transaction.

        Args:
            conn: Open connection
            from_version: Stored version (0 for a new database)
            to_version: Version to reach

        Returns:
            Versions applied, in order

        Raises:
            MigrationError: If a step is missing for a version in range
        """
        start = self._normalize(conn, from_version, to_version)

        applied = []
        for version in range(start + 1, to_version + 1):
            self._upgrade_to(conn, version)
            applied.append(version)
        return applied

    def _normalize(self, conn: sqlite3.Connection, from_version: int, to_version: int) -> int:
        if from_version in LEGACY_ALIASES:
            alias = LEGACY_ALIASES[from_version]
            logger.info(
                "Treating legacy schema version as its alias",
                extra={"from_version": from_version, "alias": alias},
            )
            return alias

        if from_version == 0:
            logger.info("Populating new database", extra={"db_path": str(self.db_path)})
            return BASELINE_VERSION

        if from_version < OLDEST_VERSION:
            logger.warning(
                f"Upgrading downloads database from version {from_version} to version "
                f"{to_version}, which will destroy all old data",
                extra={"from_version": from_version, "to_version": to_version},
            )
        elif from_version > to_version:
            logger.warning(
                f"Downgrading downloads database from version {from_version} "
                f"(current version is {to_version}), destroying all old data",
                extra={"from_version": from_version, "to_version": to_version},
            )
        else:
            return from_version

        conn.execute("DELETE FROM schema_version")
        return BASELINE_VERSION

    def _upgrade_to(self, conn: sqlite3.Connection, version: int) -> None:
        step = self._steps.get(version)
        if step is None:
            raise MigrationError(f"Don't know how to upgrade to {version}", version=version)
        try:
            step(conn)
        except sqlite3.Error:
            logger.error("Schema step failed", extra={"version": version}, exc_info=True)
            raise
        conn.execute(
            "INSERT OR REPLACE INTO schema_version (version, applied_at) VALUES (?, ?)",
            (version, int(time.time() * 1000)),
        )
        logger.info("Applied schema step", extra={"version": version})
