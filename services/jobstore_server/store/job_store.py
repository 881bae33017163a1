"""
SQLite store for download jobs and their request headers.

This module executes statements against the jobstore database. It knows
table and column names but nothing about callers: every access decision
arrives here already expressed as a Predicate.

Invariants:
    - One connection per operation; SQLite WAL mode lets reads run during writes
    - Multi-statement operations run inside BEGIN IMMEDIATE ... COMMIT
    - Delete computes the matched job ids once and reuses them for the
      header cascade and the row delete
    - sqlite3 errors surface as StorageError

How to change safely:
    - Column names reaching SQL text must come from schema.columns, never
      from callers; values always go through placeholders
    - Keep header cascade before parent delete
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from typing import Any

from ..access.scoper import Predicate
from ..errors import StorageError
from ..schema.columns import (
    DOWNLOADS_TABLE,
    HEADER_DOWNLOAD_ID,
    HEADER_ID,
    HEADER_NAME,
    HEADER_VALUE,
    HEADERS_TABLE,
    ID,
)
from .migrations import SchemaManager

logger = logging.getLogger(__name__)

# SQLite's default host parameter limit is 999; stay well under it.
_ID_CHUNK_SIZE = 500


class JobStore:
    """Statement execution over the downloads and request_headers tables.

    Thread safety:
        Each call opens its own connection, so the store may be shared
        across threads.

    Example:
        >>> store = JobStore(SchemaManager("/tmp/downloads.db"))
        >>> store.initialize()
        101
        >>> job_id = store.insert_job({"uri": "https://example.com/a"}, [])
    """

    def __init__(self, schema: SchemaManager) -> None:
        self.schema = schema

    @property
    def db_path(self) -> str:
        return str(self.schema.db_path)

    def initialize(self) -> int:
        """Create or migrate the database.

        Returns:
            The schema version after opening
        """
        conn = self.schema.open()
        try:
            version = self.schema.get_version(conn)
        finally:
            conn.close()
        logger.info(
            "Opened job store",
            extra={"db_path": self.db_path, "schema_version": version},
        )
        return version

    @contextmanager
    def _connection(self, operation: str) -> Iterator[sqlite3.Connection]:
        try:
            conn = self.schema.connect()
        except sqlite3.Error as e:
            logger.error("Cannot connect to job store", extra={"operation": operation})
            raise StorageError(f"{operation} failed: {e}", operation=operation) from e
        try:
            yield conn
        except (sqlite3.Error, OverflowError) as e:
            logger.error(
                "Job store statement failed",
                extra={"operation": operation, "error": str(e)},
            )
            raise StorageError(f"{operation} failed: {e}", operation=operation) from e
        finally:
            conn.close()

    @contextmanager
    def _transaction(self, operation: str) -> Iterator[sqlite3.Connection]:
        with self._connection(operation) as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise

    def insert_job(
        self,
        values: Mapping[str, Any],
        headers: Sequence[tuple[str, str]],
    ) -> int:
        """Insert a job row and its request headers atomically.

        Args:
            values: Column values for the downloads row
            headers: (name, value) pairs for request_headers

        Returns:
            The new job id

        Raises:
            StorageError: If either insert fails; nothing is kept
        """
        with self._transaction("insert") as conn:
            if values:
                columns = ", ".join(values.keys())
                placeholders = ", ".join("?" for _ in values)
                cursor = conn.execute(
                    f"INSERT INTO {DOWNLOADS_TABLE} ({columns}) VALUES ({placeholders})",
                    tuple(values.values()),
                )
            else:
                cursor = conn.execute(f"INSERT INTO {DOWNLOADS_TABLE} DEFAULT VALUES")
            job_id = cursor.lastrowid
            if headers:
                conn.executemany(
                    f"""
                    INSERT INTO {HEADERS_TABLE} ({HEADER_DOWNLOAD_ID}, {HEADER_NAME}, {HEADER_VALUE})
                    VALUES (?, ?, ?)
                    """,
                    [(job_id, name, value) for name, value in headers],
                )

        logger.debug(
            "Inserted job",
            extra={"job_id": job_id, "header_count": len(headers)},
        )
        return job_id

    def query_jobs(
        self,
        columns: Sequence[str],
        where: Predicate | None = None,
        order_by: str | None = None,
    ) -> list[tuple[Any, ...]]:
        """Select rows from the downloads table.

        Args:
            columns: Validated column names to select
            where: Optional filter
            order_by: Validated ORDER BY fragment

        Returns:
            Row tuples in column order
        """
        sql = f"SELECT {', '.join(columns)} FROM {DOWNLOADS_TABLE}"
        args: tuple[Any, ...] = ()
        if where is not None:
            sql += f" WHERE {where.sql}"
            args = where.args
        if order_by:
            sql += f" ORDER BY {order_by}"

        with self._connection("query") as conn:
            cursor = conn.execute(sql, args)
            return [tuple(row) for row in cursor.fetchall()]

    def query_headers(
        self,
        job_id: int,
        parent_filter: Predicate | None = None,
    ) -> list[tuple[str, str]]:
        """Select (header, value) rows for one job.

        Args:
            job_id: Owning job id
            parent_filter: Optional restriction the parent job row must satisfy
        """
        sql = f"SELECT {HEADER_NAME}, {HEADER_VALUE} FROM {HEADERS_TABLE} WHERE {HEADER_DOWNLOAD_ID} = ?"
        args: tuple[Any, ...] = (job_id,)
        if parent_filter is not None:
            sql += (
                f" AND {HEADER_DOWNLOAD_ID} IN "
                f"(SELECT {ID} FROM {DOWNLOADS_TABLE} WHERE {parent_filter.sql})"
            )
            args += parent_filter.args
        sql += f" ORDER BY {HEADER_ID}"

        with self._connection("query_headers") as conn:
            cursor = conn.execute(sql, args)
            return [(row[0], row[1]) for row in cursor.fetchall()]

    def update_jobs(self, values: Mapping[str, Any], where: Predicate | None) -> int:
        """Update matching job rows.

        Returns:
            Number of rows changed (0 without executing when values is empty)
        """
        if not values:
            return 0
        assignments = ", ".join(f"{column} = ?" for column in values)
        sql = f"UPDATE {DOWNLOADS_TABLE} SET {assignments}"
        args: tuple[Any, ...] = tuple(values.values())
        if where is not None:
            sql += f" WHERE {where.sql}"
            args += where.args

        with self._connection("update") as conn:
            cursor = conn.execute(sql, args)
            return cursor.rowcount

    def delete_jobs(self, where: Predicate | None) -> int:
        """Delete matching job rows and every request header they own.

        Returns:
            Number of job rows deleted
        """
        sql = f"SELECT {ID} FROM {DOWNLOADS_TABLE}"
        args: tuple[Any, ...] = ()
        if where is not None:
            sql += f" WHERE {where.sql}"
            args = where.args

        with self._transaction("delete") as conn:
            job_ids = [row[0] for row in conn.execute(sql, args).fetchall()]
            count = 0
            for start in range(0, len(job_ids), _ID_CHUNK_SIZE):
                chunk = job_ids[start:start + _ID_CHUNK_SIZE]
                placeholders = ", ".join("?" for _ in chunk)
                conn.execute(
                    f"DELETE FROM {HEADERS_TABLE} WHERE {HEADER_DOWNLOAD_ID} IN ({placeholders})",
                    chunk,
                )
                cursor = conn.execute(
                    f"DELETE FROM {DOWNLOADS_TABLE} WHERE {ID} IN ({placeholders})",
                    chunk,
                )
                count += cursor.rowcount

        logger.debug("Deleted jobs", extra={"count": count})
        return count

