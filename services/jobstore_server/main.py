"""
Jobstore Server - Main entry point and wiring.

This module assembles a DownloadProvider from configuration:
- SchemaManager + JobStore (opened and migrated)
- ResourceRouter for the configured authority
- AccessScoper with the configured system and trusted identities
- In-process change notifier and work trigger
- Rooted path validator and static package resolver

Usage:
    python -m services.jobstore_server.main

Run as a module it is a startup check: it validates configuration, brings
the database to the current schema version and exits. Callers embed the
provider in process through build_provider().

Configuration is entirely via environment variables.
See config.py for all available settings.

Invariants:
    - The store is migrated before the provider is returned
    - Logging is configured once, before any component logs
    - Whoever builds a provider closes it; close() stops notification delivery

How to change safely:
    - Swap collaborators through build_provider() arguments, not globals
"""

from __future__ import annotations

import logging
import sys
from concurrent.futures import ThreadPoolExecutor

import json_log_formatter

from .access import AccessScoper, RootedPathValidator, StaticPackageResolver
from .config import ProviderConfig
from .errors import JobStoreError
from .notify import ChangeNotifier, InMemoryChangeNotifier, InMemoryWorkTrigger, WorkTrigger
from .provider import DownloadProvider
from .routing import ResourceRouter
from .store import JobStore, SchemaManager

logger = logging.getLogger(__name__)


def setup_logging(config: ProviderConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Provider configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]


def build_schema_manager(config: ProviderConfig) -> SchemaManager:
    return SchemaManager(
        config.storage.db_path,
        wal_mode=config.storage.wal_mode,
        busy_timeout_ms=config.storage.busy_timeout_ms,
        cache_size_pages=config.storage.cache_size_pages,
    )


def build_provider(
    config: ProviderConfig,
    notifier: ChangeNotifier | None = None,
    work_trigger: WorkTrigger | None = None,
) -> DownloadProvider:
    """Build a ready-to-use provider.

    Args:
        config: Provider configuration
        notifier: Optional change notifier (in-process by default)
        work_trigger: Optional work trigger (in-process by default)

    Returns:
        DownloadProvider over an opened and migrated store

    Raises:
        StorageError: If the database cannot be opened
        MigrationError: If the schema cannot be brought up to date
    """
    store = JobStore(build_schema_manager(config))
    store.initialize()

    if notifier is None:
        executor = None
        if config.notify.async_dispatch:
            executor = ThreadPoolExecutor(
                max_workers=config.notify.max_workers,
                thread_name_prefix="jobstore-notify",
            )
        notifier = InMemoryChangeNotifier(
            executor=executor,
            history_size=config.notify.history_size,
        )

    return DownloadProvider(
        store=store,
        router=ResourceRouter(authority=config.access.authority),
        scoper=AccessScoper(
            system_uid=config.access.system_uid,
            trusted_uids=config.access.trusted_helper_uids,
        ),
        notifier=notifier,
        work_trigger=work_trigger or InMemoryWorkTrigger(),
        path_validator=RootedPathValidator(config.access.allowed_path_roots),
        package_resolver=StaticPackageResolver(config.access.package_owners),
    )


def main() -> None:
    """Validate configuration and bring the database to the current schema."""
    try:
        config = ProviderConfig.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    setup_logging(config)
    config.log_config()

    try:
        provider = build_provider(config)
    except JobStoreError as e:
        logger.error(f"Jobstore startup check failed: {e}", exc_info=True)
        sys.exit(1)

    with provider:
        logger.info(
            "Jobstore database ready",
            extra={
                "db_path": provider.store.db_path,
                "schema_version": provider.store.schema.target_version,
                "collection": provider.router.collection_address,
            },
        )


if __name__ == "__main__":
    main()
