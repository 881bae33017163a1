"""
Caller identity and row-visibility scoping for the jobstore server.

This module handles access control for job rows:
- Caller identity and permission model
- Deciding whether a caller must be restricted to its own rows
- Building the SQL predicate that enforces that restriction

Invariants:
    - Same-process, system and trusted helper callers are never restricted
    - A restricted caller only sees rows it owns or co-owns
    - The see-all-external broadening is lost whenever local_path is projected
    - Predicates are parameterized; caller identities are never inlined into SQL

How to change safely:
    - New permissions must be additive
    - Any change to build_predicate widens or narrows every query, update
      and delete; test all three
"""

from __future__ import annotations

import logging
import os
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ..errors import InvalidSelectionError
from ..schema.columns import (
    DESTINATION,
    LOCAL_PATH,
    OWNER_UID,
    SECONDARY_OWNER_UID,
    SQLITE_INT_MAX,
    SQLITE_INT_MIN,
    Destination,
)

logger = logging.getLogger(__name__)

ROOT_UID = 0


class Permission(Enum):
    """Permissions a caller may hold."""

    ACCESS_ADVANCED = "access_advanced"
    SEE_ALL_EXTERNAL = "see_all_external"
    WRITE_EXTERNAL_STORAGE = "write_external_storage"


@dataclass(frozen=True)
class Caller:
    """Verified identity of the process making a request.

    Attributes:
        uid: User identity of the caller
        pid: Process identity of the caller
        permissions: Permissions granted to the caller
    """

    uid: int
    pid: int
    permissions: frozenset[Permission] = field(default_factory=frozenset)

    @classmethod
    def of(cls, uid: int, pid: int, *permissions: Permission) -> Caller:
        return cls(uid=uid, pid=pid, permissions=frozenset(permissions))

    def has(self, permission: Permission) -> bool:
        return permission in self.permissions

    @property
    def is_root(self) -> bool:
        return self.uid == ROOT_UID

    def __str__(self) -> str:
        return f"uid:{self.uid}/pid:{self.pid}"


@dataclass(frozen=True)
class Predicate:
    """A parameterized SQL boolean expression.

    Attributes:
        sql: Expression text with positional '?' placeholders
        args: Values bound to the placeholders, in order
    """

    sql: str
    args: tuple[Any, ...] = ()

    @classmethod
    def of(cls, sql: str | None, args: Sequence[Any] | None = None) -> Predicate | None:
        """Wrap an optional caller fragment; blank fragments yield None."""
        if sql is None or not sql.strip():
            return None
        values = tuple(args or ())
        for value in values:
            if isinstance(value, int) and not isinstance(value, bool):
                if not SQLITE_INT_MIN <= value <= SQLITE_INT_MAX:
                    raise InvalidSelectionError(f"Selection argument out of range: {value}", selection=sql)
        return cls(sql, values)

    @classmethod
    def conjoin(cls, *parts: Predicate | None) -> Predicate | None:
        """AND together the non-None parts, each parenthesized."""
        present = [p for p in parts if p is not None]
        if not present:
            return None
        if len(present) == 1:
            return present[0]
        sql = " AND ".join(f"({p.sql})" for p in present)
        args: tuple[Any, ...] = ()
        for p in present:
            args += p.args
        return cls(sql, args)


class AccessScoper:
    """Decides and builds per-caller row restrictions.

    Thread safety:
        This class is immutable and thread-safe.

    Example:
        >>> scoper = AccessScoper(own_pid=100, system_uid=1000)
        >>> caller = Caller.of(uid=10042, pid=555)
        >>> scoper.needs_restriction(caller)
        True
        >>> scoper.build_predicate(caller, can_see_all_external=False).sql
        'owner_uid = ? OR secondary_owner_uid = ?'
    """

    def __init__(
        self,
        own_pid: int | None = None,
        system_uid: int = 1000,
        trusted_uids: Iterable[int] = (),
    ) -> None:
        """Initialize the scoper.

        Args:
            own_pid: Process id of the provider (defaults to os.getpid())
            system_uid: Identity of the privileged system
            trusted_uids: Identities of trusted helpers
        """
        self.own_pid = os.getpid() if own_pid is None else own_pid
        self.system_uid = system_uid
        self.trusted_uids = frozenset(trusted_uids)

    def is_same_process(self, caller: Caller) -> bool:
        return caller.pid == self.own_pid

    def needs_restriction(self, caller: Caller) -> bool:
        """Check whether results must be limited to the caller's own rows."""
        return not (
            self.is_same_process(caller)
            or caller.uid == self.system_uid
            or caller.uid in self.trusted_uids
        )

    def can_see_all_external(
        self,
        caller: Caller,
        projection: Sequence[str] | None,
    ) -> bool:
        """Check whether a read may include every external-destination row.

        Requires SEE_ALL_EXTERNAL and an explicit projection that leaves out
        local_path. The default projection includes local_path and so never
        qualifies.
        """
        if projection is None:
            return False
        if not caller.has(Permission.SEE_ALL_EXTERNAL):
            return False
        return LOCAL_PATH not in projection

    def build_predicate(self, caller: Caller, can_see_all_external: bool) -> Predicate:
        """Build the ownership restriction for a caller.

        Args:
            caller: Requesting caller
            can_see_all_external: Whether to OR in external-destination rows

        Returns:
            Predicate limiting rows to those visible to the caller
        """
        owned = f"{OWNER_UID} = ? OR {SECONDARY_OWNER_UID} = ?"
        args: tuple[Any, ...] = (caller.uid, caller.uid)
        if can_see_all_external:
            return Predicate(
                f"({owned}) OR {DESTINATION} = ?",
                args + (int(Destination.EXTERNAL),),
            )
        return Predicate(owned, args)

    def restriction_for(
        self,
        caller: Caller,
        projection: Sequence[str] | None = None,
        allow_external: bool = False,
    ) -> Predicate | None:
        """Return the caller's restriction, or None when unrestricted."""
        if not self.needs_restriction(caller):
            return None
        broaden = allow_external and self.can_see_all_external(caller, projection)
        logger.debug(
            "Restricting caller to owned rows",
            extra={"uid": caller.uid, "pid": caller.pid, "see_all_external": broaden},
        )
        return self.build_predicate(caller, broaden)
