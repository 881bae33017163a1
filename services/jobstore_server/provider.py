"""
Download provider - access-controlled CRUD over the job store.

This is the request handler every caller goes through. Each entry point
takes an explicit Caller and:
- classifies the address (collection, item, item headers)
- validates projection, selection and sort order
- filters write fields through the column policy
- scopes reads, updates and deletes to rows the caller may see
- executes against the JobStore
- fires the change notifier and, where needed, the work trigger

Invariants:
    - Owner identity comes from the Caller, never from the payload
    - New jobs always start PENDING with a server timestamp
    - A restricted caller can never read, change or remove rows outside
      its scope, whatever filter or address it supplies
    - Unauthorized privileged fields are dropped, not rejected
    - The change notifier fires after every successful insert, update and delete
    - The work trigger fires after every insert and every update writing control

How to change safely:
    - Every new write path must go through a column filter
    - Every new read or write path must conjoin restriction_for()
    - Test new behaviour with a cross-process caller, a same-process caller
      and a system caller
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterator, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import PurePath
from typing import Any, BinaryIO

from .access.collaborators import (
    PackageNotFoundError,
    PackageResolver,
    PathValidator,
    StaticPackageResolver,
)
from .access.scoper import AccessScoper, Caller, Permission, Predicate
from .errors import (
    AmbiguousMatchError,
    InvalidHeaderError,
    InvalidModeError,
    InvalidPathError,
    MissingPermissionError,
    NotFoundError,
    StorageError,
    UnauthorizedDestinationError,
    UnknownAddressError,
    UnsupportedOperationError,
)
from .notify.base import ChangeNotifier, ChangeObserver, WorkTrigger
from .routing import ResourceRouter, Route, RouteKind
from .schema import columns as cols
from .schema.selection import validate_selection, validate_sort_order
from .store.job_store import JobStore

logger = logging.getLogger(__name__)

HEADER_QUERY_COLUMNS = (cols.HEADER_NAME, cols.HEADER_VALUE)


def current_time_millis() -> int:
    return int(time.time() * 1000)


@dataclass
class JobCursor:
    """Result of a query.

    Attributes:
        columns: Column names, in row order
        rows: Row tuples
        notification_address: Address whose changes concern this result
    """

    columns: tuple[str, ...]
    rows: list[tuple[Any, ...]]
    notification_address: str
    _notifier: ChangeNotifier | None = field(default=None, repr=False, compare=False)

    def __len__(self) -> int:
        return len(self.rows)

    def __iter__(self) -> Iterator[tuple[Any, ...]]:
        return iter(self.rows)

    def as_dicts(self) -> list[dict[str, Any]]:
        return [dict(zip(self.columns, row)) for row in self.rows]

    def register_observer(
        self,
        observer: ChangeObserver,
        notify_for_descendants: bool = True,
    ) -> None:
        """Be told about later writes to this result's address."""
        if self._notifier is None:
            raise UnsupportedOperationError("Cursor has no change notifier")
        self._notifier.register_observer(
            self.notification_address, observer, notify_for_descendants
        )

    def unregister_observer(self, observer: ChangeObserver) -> None:
        if self._notifier is not None:
            self._notifier.unregister_observer(observer)


def parse_request_headers(values: Mapping[str, Any]) -> list[tuple[str, str]]:
    """Extract request headers from reserved-prefix payload fields.

    Each field's value is one "Name: Value" line, split on the first colon
    with both sides trimmed.

    Raises:
        InvalidHeaderError: If a line has no colon
    """
    headers = []
    for key, value in values.items():
        if not key.startswith(cols.HEADER_KEY_PREFIX):
            continue
        line = "" if value is None else str(value)
        if ":" not in line:
            raise InvalidHeaderError(line)
        name, header_value = line.split(":", 1)
        headers.append((name.strip(), header_value.strip()))
    return headers


class DownloadProvider:
    """Access-controlled CRUD handler over download jobs.

    Stateless between calls; construct once per process and share.

    Example:
        >>> provider = build_provider(ProviderConfig.from_env())
        >>> caller = Caller.of(uid=10042, pid=555)
        >>> address = provider.insert(
        ...     provider.router.collection_address,
        ...     {"uri": "https://example.com/file.bin", "destination": 0},
        ...     caller,
        ... )
        >>> provider.query(address, caller, projection=["status"]).as_dicts()
        [{'status': 190}]
    """

    def __init__(
        self,
        store: JobStore,
        router: ResourceRouter,
        scoper: AccessScoper,
        notifier: ChangeNotifier,
        work_trigger: WorkTrigger,
        path_validator: PathValidator,
        package_resolver: PackageResolver | None = None,
        clock: Callable[[], int] = current_time_millis,
    ) -> None:
        """Initialize the provider.

        Args:
            store: Job store
            router: Address router
            scoper: Caller restriction policy
            notifier: Change notifier fired after mutations
            work_trigger: Worker signal
            path_validator: Checks stored paths before open_file()
            package_resolver: Resolves notification target ownership
            clock: Millisecond clock for server timestamps
        """
        self.store = store
        self.router = router
        self.scoper = scoper
        self.notifier = notifier
        self.work_trigger = work_trigger
        self.path_validator = path_validator
        self.package_resolver = package_resolver or StaticPackageResolver()
        self._clock = clock

    def close(self) -> None:
        """Stop change delivery. The provider must not be used afterwards."""
        logger.info("Closing provider")
        self.notifier.close()

    def __enter__(self) -> DownloadProvider:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def get_type(self, address: str) -> str:
        """Return the MIME type of the resource at `address`."""
        return self.router.get_type(address)

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    def insert(self, address: str, values: Mapping[str, Any], caller: Caller) -> str | None:
        """Create a job.

        Args:
            address: Collection address
            values: Field set, optionally with reserved-prefix header fields
            caller: Requesting caller

        Returns:
            Address of the new job, or None if the store rejected the insert

        Raises:
            UnknownAddressError: If address is not the collection
            InvalidHeaderError: If a header line is malformed
            InvalidFieldError: If a value cannot be coerced
            AuthorizationError: If the destination is not permitted
        """
        if self.router.match(address).kind is not RouteKind.COLLECTION:
            logger.debug("Insert on invalid address", extra={"address": address})
            raise UnknownAddressError(address, "insert into")

        headers = parse_request_headers(values)
        filtered = self._filter_insert_values(values, caller)

        logger.debug(
            "Initiating download",
            extra={
                "owner_uid": filtered[cols.OWNER_UID],
                "secondary_owner_uid": filtered.get(cols.SECONDARY_OWNER_UID),
            },
        )

        try:
            job_id = self.store.insert_job(filtered, headers)
        except StorageError:
            logger.error(
                "Couldn't insert into downloads database",
                extra={"uid": caller.uid},
                exc_info=True,
            )
            return None

        self.work_trigger.start_work()
        self.notifier.notify_change(address)
        return self.router.item_address(job_id)

    def _filter_insert_values(self, values: Mapping[str, Any], caller: Caller) -> dict[str, Any]:
        filtered: dict[str, Any] = {}

        for key in cols.CREATE_COPY_STRINGS:
            cols.copy_string(key, values, filtered)
        for key in cols.CREATE_COPY_BOOLEANS:
            cols.copy_boolean(key, values, filtered)
        for key in cols.CREATE_COPY_INTEGERS:
            cols.copy_integer(key, values, filtered)

        advanced = caller.has(Permission.ACCESS_ADVANCED)

        dest = cols.as_int(cols.DESTINATION, values.get(cols.DESTINATION))
        if dest is not None:
            if not advanced and dest not in cols.UNPRIVILEGED_DESTINATIONS:
                raise UnauthorizedDestinationError(dest, uid=caller.uid)
            if dest == cols.Destination.FILE_URI and not caller.has(
                Permission.WRITE_EXTERNAL_STORAGE
            ):
                raise MissingPermissionError(
                    "need WRITE_EXTERNAL_STORAGE permission to use DESTINATION_FILE_URI",
                    uid=caller.uid,
                    permission=Permission.WRITE_EXTERNAL_STORAGE.value,
                )
            filtered[cols.DESTINATION] = dest

        vis = cols.as_int(cols.VISIBILITY, values.get(cols.VISIBILITY))
        if vis is None:
            if dest == cols.Destination.EXTERNAL:
                vis = cols.Visibility.VISIBLE_NOTIFY_COMPLETED
            else:
                vis = cols.Visibility.HIDDEN
        filtered[cols.VISIBILITY] = int(vis)

        filtered[cols.STATUS] = int(cols.Status.PENDING)
        filtered[cols.LAST_MODIFICATION] = self._clock()

        package = cols.as_str(cols.NOTIFICATION_PACKAGE, values.get(cols.NOTIFICATION_PACKAGE))
        clazz = cols.as_str(cols.NOTIFICATION_CLASS, values.get(cols.NOTIFICATION_CLASS))
        if package is not None and clazz is not None:
            if self._caller_owns_package(caller, package):
                filtered[cols.NOTIFICATION_PACKAGE] = package
                filtered[cols.NOTIFICATION_CLASS] = clazz
            else:
                logger.debug(
                    "Dropping notification target not owned by caller",
                    extra={"uid": caller.uid, "package": package},
                )

        if advanced:
            cols.copy_integer(cols.SECONDARY_OWNER_UID, values, filtered)
        elif values.get(cols.SECONDARY_OWNER_UID) is not None:
            logger.debug("Dropping secondary owner from unprivileged insert", extra={"uid": caller.uid})

        filtered[cols.OWNER_UID] = caller.uid
        return filtered

    def _caller_owns_package(self, caller: Caller, package: str) -> bool:
        if caller.is_root:
            return True
        try:
            return self.package_resolver.get_package_uid(package) == caller.uid
        except PackageNotFoundError:
            return False

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    def query(
        self,
        address: str,
        caller: Caller,
        projection: Sequence[str] | None = None,
        selection: str | None = None,
        selection_args: Sequence[Any] | None = None,
        sort_order: str | None = None,
    ) -> JobCursor:
        """Read jobs, or the request headers of one job.

        Args:
            address: Collection, item or item-headers address
            caller: Requesting caller
            projection: Columns to return (None for the default)
            selection: Optional WHERE fragment with '?' placeholders
            selection_args: Values for the placeholders
            sort_order: Optional ORDER BY fragment

        Returns:
            JobCursor over the matching rows

        Raises:
            UnknownAddressError: If the address is not recognized
            UnsupportedOperationError: If a header query carries overrides
            InvalidProjectionError: If a column may not be read
            InvalidSelectionError: If selection or sort order is invalid
        """
        route = self.router.match(address)
        if route.kind is RouteKind.NO_MATCH:
            logger.debug("Querying unknown address", extra={"address": address})
            raise UnknownAddressError(address, "query")

        if route.kind is RouteKind.ITEM_HEADERS:
            if projection is not None or selection is not None or sort_order is not None:
                raise UnsupportedOperationError(
                    "Request header queries do not support projections, selections or sorting"
                )
            return self._query_headers(route, address, caller)

        validate_selection(selection, cols.READABLE_COLUMNS_SET)

        if projection is not None:
            projection = tuple(projection) or None

        if self.scoper.needs_restriction(caller):
            columns = cols.validate_projection(projection)
            validate_sort_order(sort_order, cols.READABLE_COLUMNS)
            scope = self.scoper.restriction_for(caller, projection, allow_external=True)
        else:
            columns = cols.validate_table_projection(projection)
            validate_sort_order(sort_order, cols.ALL_COLUMNS)
            scope = None

        where = Predicate.conjoin(
            self._id_predicate(route),
            Predicate.of(selection, selection_args),
            scope,
        )
        rows = self.store.query_jobs(columns, where, sort_order)

        logger.debug(
            "Query completed",
            extra={"address": address, "uid": caller.uid, "rows": len(rows)},
        )
        return JobCursor(columns, rows, address, self.notifier)

    def _query_headers(self, route: Route, address: str, caller: Caller) -> JobCursor:
        scope = self.scoper.restriction_for(caller)
        rows = self.store.query_headers(route.job_id, scope)
        return JobCursor(HEADER_QUERY_COLUMNS, list(rows), address, self.notifier)

    # ------------------------------------------------------------------
    # Update
    # ------------------------------------------------------------------

    def update(
        self,
        address: str,
        values: Mapping[str, Any],
        caller: Caller,
        selection: str | None = None,
        selection_args: Sequence[Any] | None = None,
    ) -> int:
        """Update jobs.

        Cross-process callers may only write the caller-safe columns;
        same-process callers may write every column except store-only ones.

        Returns:
            Number of rows changed

        Raises:
            UnknownAddressError: If the address is not recognized
            UnsupportedOperationError: If the address is a header sub-resource
            InvalidSelectionError: If selection is invalid
            InvalidFieldError: If a same-process caller names an unknown column
        """
        route = self._require_job_route(address, "update")
        validate_selection(selection, cols.READABLE_COLUMNS_SET)

        if self.scoper.is_same_process(caller):
            filtered = self._filter_internal_update(address, values, caller, selection, selection_args)
        else:
            filtered = {}
            for key in cols.SAFE_UPDATE_COLUMNS:
                value = cols.coerce_column(key, values.get(key))
                if value is not None:
                    filtered[key] = value

        dropped = sorted(set(values) - set(filtered))
        if dropped:
            logger.debug(
                "Dropping fields the caller may not update",
                extra={"uid": caller.uid, "fields": dropped},
            )
        start_work = cols.CONTROL in filtered

        where = Predicate.conjoin(
            Predicate.of(selection, selection_args),
            self._id_predicate(route),
            self.scoper.restriction_for(caller),
        )
        count = self.store.update_jobs(filtered, where)

        self.notifier.notify_change(address)
        if start_work:
            self.work_trigger.start_work()
        return count

    def _filter_internal_update(
        self,
        address: str,
        values: Mapping[str, Any],
        caller: Caller,
        selection: str | None,
        selection_args: Sequence[Any] | None,
    ) -> dict[str, Any]:
        filtered = {
            key: cols.coerce_column(key, value)
            for key, value in values.items()
            if key not in cols.STORE_ONLY_COLUMNS
        }

        path = filtered.get(cols.LOCAL_PATH)
        if path is not None and cols.TITLE not in filtered:
            cursor = self.query(address, caller, [cols.TITLE], selection, selection_args)
            if not cursor.rows or cursor.rows[0][0] is None:
                filtered[cols.TITLE] = PurePath(path).name
        return filtered

    # ------------------------------------------------------------------
    # Delete
    # ------------------------------------------------------------------

    def delete(
        self,
        address: str,
        caller: Caller,
        selection: str | None = None,
        selection_args: Sequence[Any] | None = None,
    ) -> int:
        """Delete jobs and their request headers.

        Returns:
            Number of job rows deleted
        """
        route = self._require_job_route(address, "delete")
        validate_selection(selection, cols.READABLE_COLUMNS_SET)

        where = Predicate.conjoin(
            Predicate.of(selection, selection_args),
            self._id_predicate(route),
            self.scoper.restriction_for(caller),
        )
        count = self.store.delete_jobs(where)

        self.notifier.notify_change(address)
        return count

    # ------------------------------------------------------------------
    # Content
    # ------------------------------------------------------------------

    def open_file(self, address: str, caller: Caller, mode: str = "r") -> BinaryIO:
        """Open the downloaded file of exactly one job, read-only.

        A successful open stamps last_modification through update().

        Raises:
            NotFoundError: If no row, no filename, or no readable file exists
            AmbiguousMatchError: If more than one row matches
            InvalidPathError: If the stored path is unsafe
            InvalidModeError: If mode is not "r"
        """
        self._require_job_route(address, "open")
        cursor = self.query(address, caller, [cols.LOCAL_PATH])
        count = len(cursor)
        if count == 0:
            raise NotFoundError(f"No entry for {address}", address)
        if count > 1:
            raise AmbiguousMatchError(address, count)

        path = cursor.rows[0][0]
        if path is None:
            raise NotFoundError("No filename found.", address)
        if not self.path_validator.is_valid(path):
            raise InvalidPathError(path)
        if mode != "r":
            raise InvalidModeError(address, mode)

        try:
            stream = open(path, "rb")
        except OSError as e:
            logger.debug("Couldn't open file", extra={"address": address})
            raise NotFoundError("couldn't open file", address) from e

        try:
            self.update(address, {cols.LAST_MODIFICATION: self._clock()}, caller)
        except Exception:
            stream.close()
            raise
        return stream

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _require_job_route(self, address: str, operation: str) -> Route:
        route = self.router.match(address)
        if route.kind is RouteKind.NO_MATCH:
            logger.debug(f"{operation} on unknown address", extra={"address": address})
            raise UnknownAddressError(address, operation)
        if route.kind is RouteKind.ITEM_HEADERS:
            raise UnsupportedOperationError(f"Cannot {operation} URI: {address}")
        return route

    @staticmethod
    def _id_predicate(route: Route) -> Predicate | None:
        if route.kind is RouteKind.ITEM:
            return Predicate(f"{cols.ID} = ?", (route.job_id,))
        return None
