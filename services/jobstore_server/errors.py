"""
Error types for the jobstore server.

This module defines every exception raised across the provider:
- JobStoreError: Base exception
- ClientError: Bad address, arguments or payload
- AuthorizationError: Caller lacks a required permission
- NotFoundError / AmbiguousMatchError: Addressed row resolution failures
- StorageError: Underlying SQLite failure
- MigrationError: Schema cannot be brought to the target version

Invariants:
    - All errors inherit from JobStoreError
    - Errors carry a stable code for programmatic handling
    - Silently dropped privileged fields are never reported through here
"""

from __future__ import annotations

from typing import Any


class JobStoreError(Exception):
    """Base exception for all jobstore errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "JOBSTORE_ERROR"
        self.details = details or {}


class ClientError(JobStoreError):
    """The caller supplied an invalid address or argument."""

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, code=code or "CLIENT_ERROR", details=details)


class UnknownAddressError(ClientError):
    """Address does not match any known resource shape."""

    def __init__(self, address: str, operation: str | None = None) -> None:
        prefix = f"Cannot {operation} address" if operation else "Unknown address"
        super().__init__(
            f"{prefix}: {address}",
            code="UNKNOWN_ADDRESS",
            details={"address": address, "operation": operation},
        )
        self.address = address


class InvalidProjectionError(ClientError):
    """Requested projection names a column the caller may not read."""

    def __init__(self, column: str) -> None:
        super().__init__(
            f"column {column} is not allowed in queries",
            code="INVALID_PROJECTION",
            details={"column": column},
        )
        self.column = column


class InvalidSelectionError(ClientError):
    """Caller-supplied selection or sort order failed validation."""

    def __init__(self, message: str, selection: str | None = None) -> None:
        super().__init__(message, code="INVALID_SELECTION", details={"selection": selection})
        self.selection = selection


class InvalidHeaderError(ClientError):
    """Request header line is not of the form 'Name: Value'."""

    def __init__(self, line: str) -> None:
        super().__init__(
            f"Invalid HTTP header line: {line}",
            code="INVALID_HEADER",
            details={"line": line},
        )
        self.line = line


class InvalidFieldError(ClientError):
    """A field value cannot be coerced to its column type, or the column is unknown."""

    def __init__(self, field_name: str, message: str | None = None) -> None:
        super().__init__(
            message or f"Invalid value for field '{field_name}'",
            code="INVALID_FIELD",
            details={"field": field_name},
        )
        self.field_name = field_name


class UnsupportedOperationError(ClientError):
    """Operation is not supported on the addressed resource."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="UNSUPPORTED_OPERATION")


class InvalidModeError(ClientError):
    """File open requested with a mode other than read-only."""

    def __init__(self, address: str, mode: str) -> None:
        super().__init__(
            f"Bad mode for {address}: {mode}",
            code="INVALID_MODE",
            details={"address": address, "mode": mode},
        )
        self.mode = mode


class InvalidPathError(ClientError):
    """Stored local path was rejected by the path validator."""

    def __init__(self, path: str) -> None:
        super().__init__("Invalid filename.", code="INVALID_PATH", details={"path": path})
        self.path = path


class AuthorizationError(JobStoreError):
    """Caller lacks the permission the operation requires.

    Raised when:
    - Destination class is outside the caller-permitted set
    - A destination requires a permission the caller lacks
    """

    def __init__(
        self,
        message: str,
        uid: int | None = None,
        permission: str | None = None,
    ) -> None:
        super().__init__(
            message,
            code="AUTHORIZATION_ERROR",
            details={"uid": uid, "permission": permission},
        )
        self.uid = uid
        self.permission = permission


class UnauthorizedDestinationError(AuthorizationError):
    """Destination class requires an elevated permission."""

    def __init__(self, destination: int, uid: int | None = None) -> None:
        super().__init__("unauthorized destination code", uid=uid)
        self.destination = destination
        self.details["destination"] = destination


class MissingPermissionError(AuthorizationError):
    """A specific permission must be held for this request."""


class NotFoundError(JobStoreError):
    """No row, filename or file exists for the addressed item."""

    def __init__(self, message: str, address: str | None = None) -> None:
        super().__init__(message, code="NOT_FOUND", details={"address": address})
        self.address = address


class AmbiguousMatchError(JobStoreError):
    """More than one row matched where exactly one was required."""

    def __init__(self, address: str, count: int) -> None:
        super().__init__(
            f"Multiple items at {address}",
            code="AMBIGUOUS_MATCH",
            details={"address": address, "count": count},
        )
        self.address = address
        self.count = count


class StorageError(JobStoreError):
    """The underlying SQLite statement failed."""

    def __init__(self, message: str, operation: str | None = None) -> None:
        super().__init__(message, code="STORAGE_ERROR", details={"operation": operation})
        self.operation = operation


class MigrationError(JobStoreError):
    """Schema migration cannot reach the requested version."""

    def __init__(self, message: str, version: int | None = None) -> None:
        super().__init__(message, code="MIGRATION_ERROR", details={"version": version})
        self.version = version
