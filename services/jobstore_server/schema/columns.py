"""
Column policy for the downloads table.

Defines the table's columns, the enumerated values stored in them, and
which columns a caller may read or write:
- READABLE_COLUMNS: ordered allow-list for restricted readers
- CREATE_COPY_*: columns copied verbatim from a create payload
- SAFE_UPDATE_COLUMNS: columns a cross-process caller may update
- STORE_ONLY_COLUMNS: columns never written through update

Invariants:
    - All tables here are immutable and built at import time
    - READABLE_COLUMNS never contains owner or secondary-owner identity
    - Value coercion mirrors the column's SQL type

How to change safely:
    - New columns need a migration step in store/migrations.py first
    - Adding to READABLE_COLUMNS widens what every app can see; review it
    - Never reorder enum values, they are persisted
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, MutableMapping
from enum import IntEnum
from typing import Any

from ..errors import InvalidFieldError, InvalidProjectionError

DOWNLOADS_TABLE = "downloads"
HEADERS_TABLE = "request_headers"

# Create payload keys with this prefix carry one "Name: Value" request header each.
HEADER_KEY_PREFIX = "http_header_"

# SQLite INTEGER is a signed 64-bit value
SQLITE_INT_MIN = -(2**63)
SQLITE_INT_MAX = 2**63 - 1


class Destination(IntEnum):
    """Where a download's payload is stored."""

    EXTERNAL = 0
    CACHE_PARTITION = 1
    CACHE_PARTITION_PURGEABLE = 2
    CACHE_PARTITION_NOROAMING = 3
    FILE_URI = 4


class Visibility(IntEnum):
    """Notification behaviour for a download."""

    VISIBLE = 0
    VISIBLE_NOTIFY_COMPLETED = 1
    HIDDEN = 2


class Control(IntEnum):
    RUN = 0
    PAUSED = 1


class Status(IntEnum):
    """Download status codes, HTTP-like."""

    PENDING = 190
    RUNNING = 192
    PAUSED = 193
    SUCCESS = 200
    BAD_REQUEST = 400
    NOT_ACCEPTABLE = 406
    LENGTH_REQUIRED = 411
    PRECONDITION_FAILED = 412
    CANCELED = 490
    UNKNOWN_ERROR = 491
    FILE_ERROR = 492
    HTTP_DATA_ERROR = 495
    TOO_MANY_REDIRECTS = 497
    INSUFFICIENT_SPACE_ERROR = 498
    DEVICE_NOT_FOUND_ERROR = 499


# Column names
ID = "id"
URI = "uri"
RETRY_AFTER_REDIRECT_COUNT = "retry_after_redirect_count"
APP_DATA = "app_data"
NO_INTEGRITY = "no_integrity"
FILE_NAME_HINT = "file_name_hint"
OTA_UPDATE = "ota_update"
LOCAL_PATH = "local_path"
MIME_TYPE = "mime_type"
DESTINATION = "destination"
NO_SYSTEM_FILES = "no_system_files"
VISIBILITY = "visibility"
CONTROL = "control"
STATUS = "status"
FAILED_CONNECTIONS = "failed_connections"
LAST_MODIFICATION = "last_modification"
NOTIFICATION_PACKAGE = "notification_package"
NOTIFICATION_CLASS = "notification_class"
NOTIFICATION_EXTRAS = "notification_extras"
COOKIE_DATA = "cookie_data"
USER_AGENT = "user_agent"
REFERER = "referer"
TOTAL_BYTES = "total_bytes"
CURRENT_BYTES = "current_bytes"
ETAG = "etag"
OWNER_UID = "owner_uid"
SECONDARY_OWNER_UID = "secondary_owner_uid"
TITLE = "title"
DESCRIPTION = "description"
MEDIA_SCANNED = "media_scanned"

# Request header columns
HEADER_ID = "id"
HEADER_DOWNLOAD_ID = "download_id"
HEADER_NAME = "header"
HEADER_VALUE = "value"

# (name, SQL type) in table order
DOWNLOAD_COLUMN_TYPES: tuple[tuple[str, str], ...] = (
    (ID, "INTEGER PRIMARY KEY AUTOINCREMENT"),
    (URI, "TEXT"),
    (RETRY_AFTER_REDIRECT_COUNT, "INTEGER"),
    (APP_DATA, "TEXT"),
    (NO_INTEGRITY, "BOOLEAN"),
    (FILE_NAME_HINT, "TEXT"),
    (OTA_UPDATE, "BOOLEAN"),
    (LOCAL_PATH, "TEXT"),
    (MIME_TYPE, "TEXT"),
    (DESTINATION, "INTEGER"),
    (NO_SYSTEM_FILES, "BOOLEAN"),
    (VISIBILITY, "INTEGER"),
    (CONTROL, "INTEGER"),
    (STATUS, "INTEGER"),
    (FAILED_CONNECTIONS, "INTEGER"),
    (LAST_MODIFICATION, "BIGINT"),
    (NOTIFICATION_PACKAGE, "TEXT"),
    (NOTIFICATION_CLASS, "TEXT"),
    (NOTIFICATION_EXTRAS, "TEXT"),
    (COOKIE_DATA, "TEXT"),
    (USER_AGENT, "TEXT"),
    (REFERER, "TEXT"),
    (TOTAL_BYTES, "INTEGER"),
    (CURRENT_BYTES, "INTEGER"),
    (ETAG, "TEXT"),
    (OWNER_UID, "INTEGER"),
    (SECONDARY_OWNER_UID, "INTEGER"),
    (TITLE, "TEXT"),
    (DESCRIPTION, "TEXT"),
    (MEDIA_SCANNED, "BOOLEAN"),
)

ALL_COLUMNS: tuple[str, ...] = tuple(name for name, _ in DOWNLOAD_COLUMN_TYPES)
ALL_COLUMNS_SET: frozenset[str] = frozenset(ALL_COLUMNS)
COLUMN_SQL_TYPES: Mapping[str, str] = dict(DOWNLOAD_COLUMN_TYPES)

READABLE_COLUMNS: tuple[str, ...] = (
    ID,
    APP_DATA,
    LOCAL_PATH,
    MIME_TYPE,
    VISIBILITY,
    DESTINATION,
    CONTROL,
    STATUS,
    LAST_MODIFICATION,
    NOTIFICATION_PACKAGE,
    NOTIFICATION_CLASS,
    TOTAL_BYTES,
    CURRENT_BYTES,
    TITLE,
    DESCRIPTION,
)
READABLE_COLUMNS_SET: frozenset[str] = frozenset(READABLE_COLUMNS)

CREATE_COPY_STRINGS: tuple[str, ...] = (
    URI,
    APP_DATA,
    FILE_NAME_HINT,
    MIME_TYPE,
    NOTIFICATION_EXTRAS,
    COOKIE_DATA,
    USER_AGENT,
    REFERER,
    TITLE,
    DESCRIPTION,
)
CREATE_COPY_BOOLEANS: tuple[str, ...] = (NO_INTEGRITY,)
CREATE_COPY_INTEGERS: tuple[str, ...] = (CONTROL,)

SAFE_UPDATE_COLUMNS: tuple[str, ...] = (APP_DATA, VISIBILITY, CONTROL, TITLE, DESCRIPTION)
STORE_ONLY_COLUMNS: frozenset[str] = frozenset({ID, OWNER_UID})

# Destinations any caller may request without ACCESS_ADVANCED
UNPRIVILEGED_DESTINATIONS: frozenset[int] = frozenset(
    {Destination.EXTERNAL, Destination.CACHE_PARTITION_PURGEABLE, Destination.FILE_URI}
)


def validate_projection(projection: Iterable[str] | None) -> tuple[str, ...]:
    """Validate a restricted caller's projection against the allow-list.

    Args:
        projection: Requested columns, or None for the default

    Returns:
        The columns to select

    Raises:
        InvalidProjectionError: If any column is outside the allow-list
    """
    if projection is None:
        return READABLE_COLUMNS
    columns = tuple(projection)
    for column in columns:
        if column not in READABLE_COLUMNS_SET:
            raise InvalidProjectionError(column)
    return columns


def validate_table_projection(projection: Iterable[str] | None) -> tuple[str, ...]:
    """Validate an unrestricted caller's projection against the table's columns."""
    if projection is None:
        return ALL_COLUMNS
    columns = tuple(projection)
    for column in columns:
        if column not in ALL_COLUMNS_SET:
            raise InvalidProjectionError(column)
    return columns


def as_int(key: str, value: Any) -> int | None:
    """Coerce a field value to an integer.

    Accepts ints, bools, integral floats and numeric strings.

    Raises:
        InvalidFieldError: If the value is not integral or does not fit
            in a SQLite INTEGER
    """
    if value is None:
        return None
    result: int | None = None
    if isinstance(value, bool):
        result = int(value)
    elif isinstance(value, int):
        result = value
    elif isinstance(value, float) and value.is_integer():
        result = int(value)
    elif isinstance(value, str):
        try:
            result = int(value.strip())
        except ValueError:
            pass
    if result is None:
        raise InvalidFieldError(key, f"Field '{key}' expects an integer, got {value!r}")
    if not SQLITE_INT_MIN <= result <= SQLITE_INT_MAX:
        raise InvalidFieldError(key, f"Field '{key}' is out of range: {result}")
    return result


def as_str(key: str, value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, (bytes, bytearray)):
        raise InvalidFieldError(key, f"Field '{key}' expects text, got bytes")
    return str(value)


def as_bool(key: str, value: Any) -> bool | None:
    """Coerce a field value to a boolean ("true"/"false", 0/1, bool)."""
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value != 0
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in ("true", "1"):
            return True
        if lowered in ("false", "0"):
            return False
    raise InvalidFieldError(key, f"Field '{key}' expects a boolean, got {value!r}")


def coerce_column(key: str, value: Any) -> Any:
    """Coerce a value according to the SQL type of column `key`.

    Raises:
        InvalidFieldError: If `key` is not a column of the downloads table
    """
    sql_type = COLUMN_SQL_TYPES.get(key)
    if sql_type is None:
        raise InvalidFieldError(key, f"Unknown column '{key}'")
    if sql_type.startswith("INTEGER") or sql_type == "BIGINT":
        return as_int(key, value)
    if sql_type == "BOOLEAN":
        return as_bool(key, value)
    return as_str(key, value)


def copy_string(key: str, source: Mapping[str, Any], dest: MutableMapping[str, Any]) -> None:
    value = as_str(key, source.get(key))
    if value is not None:
        dest[key] = value


def copy_integer(key: str, source: Mapping[str, Any], dest: MutableMapping[str, Any]) -> None:
    value = as_int(key, source.get(key))
    if value is not None:
        dest[key] = value


def copy_boolean(key: str, source: Mapping[str, Any], dest: MutableMapping[str, Any]) -> None:
    value = as_bool(key, source.get(key))
    if value is not None:
        dest[key] = value


def describe_policy() -> dict[str, Any]:
    """Summarize the column policy for tooling output."""
    return {
        "table": DOWNLOADS_TABLE,
        "columns": [{"name": name, "type": sql_type} for name, sql_type in DOWNLOAD_COLUMN_TYPES],
        "readable": list(READABLE_COLUMNS),
        "create_copy": sorted(CREATE_COPY_STRINGS + CREATE_COPY_BOOLEANS + CREATE_COPY_INTEGERS),
        "safe_update": list(SAFE_UPDATE_COLUMNS),
        "store_only": sorted(STORE_ONLY_COLUMNS),
        "header_key_prefix": HEADER_KEY_PREFIX,
    }
