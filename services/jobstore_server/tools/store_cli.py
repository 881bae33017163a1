"""
Store CLI tool for the jobstore.

This tool inspects and maintains the job database:
- migrate: Open the configured store, creating or upgrading it
- columns: Print the column policy as JSON
- dump: Print every job row as JSON lines

Usage:
    jobstore-admin migrate
    jobstore-admin columns
    jobstore-admin dump --columns id,uri,status

Invariants:
    - Output is deterministic (sorted JSON keys)
    - dump reads as the system identity and so sees every row
    - Failures exit non-zero with the error on stderr

How to change safely:
    - Add new commands, don't modify existing ones
    - Keep output format stable for scripting
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from collections.abc import Iterator, Sequence
from typing import Any

from ..access import Caller
from ..config import ProviderConfig
from ..errors import JobStoreError
from ..main import build_provider, build_schema_manager, setup_logging
from ..schema.columns import describe_policy

logger = logging.getLogger(__name__)


class StoreCLI:
    """Administrative commands over a configured store.

    Example:
        >>> cli = StoreCLI(ProviderConfig.from_env())
        >>> cli.migrate()
        101
        >>> for line in cli.dump(["id", "status"]):
        ...     print(line)
    """

    def __init__(self, config: ProviderConfig) -> None:
        self.config = config

    def migrate(self) -> int:
        """Open the store, applying pending migrations.

        Returns:
            Resulting schema version
        """
        schema = build_schema_manager(self.config)
        conn = schema.open()
        try:
            return schema.get_version(conn)
        finally:
            conn.close()

    def columns(self) -> str:
        return json.dumps(describe_policy(), indent=2, sort_keys=True)

    def dump(self, columns: Sequence[str] | None = None) -> Iterator[str]:
        """Yield every job row as one JSON object per line.

        Args:
            columns: Columns to include (all columns if None)
        """
        caller = Caller.of(uid=self.config.access.system_uid, pid=os.getpid())
        with build_provider(self.config) as provider:
            rows = provider.query(
                provider.router.collection_address,
                caller,
                projection=columns,
                sort_order="id ASC",
            ).as_dicts()
        for row in rows:
            yield json.dumps(row, sort_keys=True)


def _split_columns(raw: str | None) -> list[str] | None:
    if not raw:
        return None
    return [c.strip() for c in raw.split(",") if c.strip()]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="jobstore-admin", description="Jobstore database administration tool"
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("migrate", help="Create or upgrade the database")
    subparsers.add_parser("columns", help="Print the column policy as JSON")

    dump_parser = subparsers.add_parser("dump", help="Print every job as JSON lines")
    dump_parser.add_argument(
        "--columns", "-c", help="Comma-separated columns to include (default: all)"
    )
    return parser


def main(argv: list[str] | None = None) -> None:
    """CLI entry point for the store tool."""
    args = build_parser().parse_args(argv)

    try:
        config = ProviderConfig.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    setup_logging(config)
    cli = StoreCLI(config)

    try:
        if args.command == "migrate":
            version = cli.migrate()
            print(f"Database at {config.storage.db_path} is at version {version}")

        elif args.command == "columns":
            print(cli.columns())

        elif args.command == "dump":
            for line in cli.dump(_split_columns(args.columns)):
                print(line)

    except JobStoreError as e:
        details: dict[str, Any] = {"code": e.code, **e.details}
        logger.error(f"{args.command} failed: {e.message}", extra=details)
        print(f"Error: {e.message}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
