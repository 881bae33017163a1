"""
Configuration management for the jobstore server.

All configuration is done via environment variables - no config files.
This module provides typed configuration classes with validation.

Invariants:
    - All settings have sensible defaults for local development
    - Invalid values fail at load time, not on first request
    - allowed_path_roots is never empty; it defaults to data_dir

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Parse list-valued variables through the helpers below
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

_DEFAULT_DATA_DIR = "/var/lib/jobstore"


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


def _parse_uid_list(raw: str) -> tuple[int, ...]:
    return tuple(int(part) for part in raw.split(",") if part.strip())


def _parse_package_owners(raw: str) -> dict[str, int]:
    """Parse `pkg=uid,pkg=uid` into a mapping."""
    owners: dict[str, int] = {}
    for entry in raw.split(","):
        entry = entry.strip()
        if not entry:
            continue
        package, sep, uid = entry.partition("=")
        if not sep or not package.strip():
            raise ValueError(f"Invalid JOBSTORE_PACKAGES entry '{entry}'. Expected pkg=uid")
        owners[package.strip()] = int(uid)
    return owners


@dataclass(frozen=True)
class StorageConfig:
    """Local storage configuration.

    Attributes:
        data_dir: Directory holding the SQLite database
        db_name: Database file name inside data_dir
        wal_mode: SQLite WAL mode enabled
        busy_timeout_ms: SQLite busy timeout in milliseconds
        cache_size_pages: SQLite cache size in pages (negative = KB)
    """

    data_dir: str = _DEFAULT_DATA_DIR
    db_name: str = "downloads.db"
    wal_mode: bool = True
    busy_timeout_ms: int = 5000
    cache_size_pages: int = -2000  # 2MB

    @property
    def db_path(self) -> str:
        return os.path.join(self.data_dir, self.db_name)

    @classmethod
    def from_env(cls) -> StorageConfig:
        """Load configuration from environment variables."""
        return cls(
            data_dir=os.getenv("JOBSTORE_DATA_DIR", _DEFAULT_DATA_DIR),
            db_name=os.getenv("JOBSTORE_DB_NAME", "downloads.db"),
            wal_mode=_env_bool("SQLITE_WAL_MODE", "true"),
            busy_timeout_ms=int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "5000")),
            cache_size_pages=int(os.getenv("SQLITE_CACHE_SIZE", "-2000")),
        )


@dataclass(frozen=True)
class AccessConfig:
    """Caller identity and access policy configuration.

    Attributes:
        authority: Address authority component
        system_uid: Identity of the privileged system
        trusted_helper_uids: Identities that bypass row restriction
        allowed_path_roots: Directories open_file() may serve from
        package_owners: Package name to owning uid
    """

    authority: str = "downloads"
    system_uid: int = 1000
    trusted_helper_uids: tuple[int, ...] = ()
    allowed_path_roots: tuple[str, ...] = (_DEFAULT_DATA_DIR,)
    package_owners: dict[str, int] = field(default_factory=dict)

    @classmethod
    def from_env(cls, data_dir: str = _DEFAULT_DATA_DIR) -> AccessConfig:
        """Load configuration from environment variables.

        Args:
            data_dir: Fallback path root when JOBSTORE_PATH_ROOTS is unset
        """
        roots_raw = os.getenv("JOBSTORE_PATH_ROOTS", "")
        roots = tuple(r for r in roots_raw.split(os.pathsep) if r) or (data_dir,)
        return cls(
            authority=os.getenv("JOBSTORE_AUTHORITY", "downloads"),
            system_uid=int(os.getenv("JOBSTORE_SYSTEM_UID", "1000")),
            trusted_helper_uids=_parse_uid_list(os.getenv("JOBSTORE_TRUSTED_UIDS", "")),
            allowed_path_roots=roots,
            package_owners=_parse_package_owners(os.getenv("JOBSTORE_PACKAGES", "")),
        )


@dataclass(frozen=True)
class NotifyConfig:
    """Change notification configuration.

    Attributes:
        async_dispatch: Deliver observer callbacks on a thread pool
        max_workers: Thread pool size when async_dispatch is enabled
        history_size: Recent change addresses kept by the in-process notifier
    """

    async_dispatch: bool = False
    max_workers: int = 2
    history_size: int = 100

    @classmethod
    def from_env(cls) -> NotifyConfig:
        """Load configuration from environment variables."""
        return cls(
            async_dispatch=_env_bool("JOBSTORE_NOTIFY_ASYNC", "false"),
            max_workers=int(os.getenv("JOBSTORE_NOTIFY_WORKERS", "2")),
            history_size=int(os.getenv("JOBSTORE_NOTIFY_HISTORY", "100")),
        )


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
    """

    log_level: str = "INFO"
    log_format: str = "json"

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
        )


@dataclass
class ProviderConfig:
    """Complete provider configuration.

    Attributes:
        storage: Local storage configuration
        access: Access policy configuration
        notify: Change notification configuration
        observability: Logging configuration
    """

    storage: StorageConfig = field(default_factory=StorageConfig)
    access: AccessConfig = field(default_factory=AccessConfig)
    notify: NotifyConfig = field(default_factory=NotifyConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> ProviderConfig:
        """Load complete configuration from environment variables.

        Returns:
            ProviderConfig with all sections populated from environment.

        Raises:
            ValueError: If configuration is missing or invalid.
        """
        storage = StorageConfig.from_env()
        config = cls(
            storage=storage,
            access=AccessConfig.from_env(data_dir=storage.data_dir),
            notify=NotifyConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )
        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if not self.storage.db_name:
            raise ValueError("JOBSTORE_DB_NAME must not be empty")
        if self.storage.busy_timeout_ms < 0:
            raise ValueError("SQLITE_BUSY_TIMEOUT_MS must be >= 0")
        if not self.access.authority:
            raise ValueError("JOBSTORE_AUTHORITY must not be empty")
        if not self.access.allowed_path_roots:
            raise ValueError("At least one path root is required")
        if self.notify.max_workers < 1:
            raise ValueError("JOBSTORE_NOTIFY_WORKERS must be >= 1")
        if self.notify.history_size < 0:
            raise ValueError("JOBSTORE_NOTIFY_HISTORY must be >= 0")
        if self.observability.log_format not in ("json", "text"):
            raise ValueError(
                f"Invalid LOG_FORMAT '{self.observability.log_format}'. Must be one of: json, text"
            )

        if not os.path.exists(self.storage.data_dir):
            logger.warning(
                f"Data directory does not exist: {self.storage.data_dir}. "
                "It will be created on first open."
            )

    def log_config(self) -> None:
        """Log configuration."""
        logger.info(
            "Provider configuration loaded",
            extra={
                "db_path": self.storage.db_path,
                "wal_mode": self.storage.wal_mode,
                "authority": self.access.authority,
                "system_uid": self.access.system_uid,
                "trusted_uids": list(self.access.trusted_helper_uids),
                "path_roots": list(self.access.allowed_path_roots),
                "packages": len(self.access.package_owners),
                "notify_async": self.notify.async_dispatch,
                "log_level": self.observability.log_level,
            },
        )
