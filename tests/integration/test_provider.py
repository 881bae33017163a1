"""
Integration tests for DownloadProvider against a real SQLite database.

Tests cover:
- Create filtering, defaults and request headers
- Read scoping per caller class, projections, selections and sorting
- Update filtering for cross-process and same-process callers
- Delete cascades
- Content open and its failure modes
- Change notification and work trigger signalling
"""

import os
import tempfile
from concurrent.futures import ThreadPoolExecutor

import pytest

from services.jobstore_server import provider as provider_module
from services.jobstore_server.access import (
    AccessScoper,
    Caller,
    Permission,
    RootedPathValidator,
    StaticPackageResolver,
)
from services.jobstore_server.errors import (
    AmbiguousMatchError,
    AuthorizationError,
    InvalidFieldError,
    InvalidHeaderError,
    InvalidModeError,
    InvalidPathError,
    InvalidProjectionError,
    InvalidSelectionError,
    MissingPermissionError,
    NotFoundError,
    StorageError,
    UnauthorizedDestinationError,
    UnknownAddressError,
    UnsupportedOperationError,
)
from services.jobstore_server.notify import InMemoryChangeNotifier, InMemoryWorkTrigger
from services.jobstore_server.provider import DownloadProvider
from services.jobstore_server.routing import ResourceRouter
from services.jobstore_server.schema.columns import (
    ALL_COLUMNS,
    READABLE_COLUMNS,
    Destination,
    Status,
    Visibility,
)
from services.jobstore_server.store import JobStore, SchemaManager

COLLECTION = "content://downloads/download"
NOW = 1_700_000_000_000

OWN_PID = 4242
SYSTEM_UID = 1000
TRUSTED_UID = 2000
APP_UID = 10001
OTHER_UID = 10002

APP = Caller.of(APP_UID, 501)
OTHER = Caller.of(OTHER_UID, 502)
ADVANCED = Caller.of(10003, 503, Permission.ACCESS_ADVANCED)
SEE_ALL = Caller.of(10004, 504, Permission.SEE_ALL_EXTERNAL)
SYSTEM = Caller.of(SYSTEM_UID, 505)
TRUSTED = Caller.of(TRUSTED_UID, 506)
ROOT = Caller.of(0, 507)
INTERNAL = Caller.of(SYSTEM_UID, OWN_PID)


@pytest.fixture
def data_dir():
    """Create temporary data directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield os.path.realpath(tmpdir)


@pytest.fixture
def notifier():
    return InMemoryChangeNotifier()


@pytest.fixture
def trigger():
    return InMemoryWorkTrigger()


@pytest.fixture
def clock():
    """Mutable millisecond clock."""
    return [NOW]


@pytest.fixture
def provider(data_dir, notifier, trigger, clock):
    """Provider over a fresh database."""
    store = JobStore(SchemaManager(os.path.join(data_dir, "downloads.db"), wal_mode=False))
    store.initialize()
    return DownloadProvider(
        store=store,
        router=ResourceRouter(),
        scoper=AccessScoper(own_pid=OWN_PID, system_uid=SYSTEM_UID, trusted_uids=[TRUSTED_UID]),
        notifier=notifier,
        work_trigger=trigger,
        path_validator=RootedPathValidator([data_dir]),
        package_resolver=StaticPackageResolver({"com.app": APP_UID, "com.other": OTHER_UID}),
        clock=lambda: clock[0],
    )


def create(provider, caller, **values):
    """Insert a job with a default uri."""
    values.setdefault("uri", "https://example.com/file.bin")
    return provider.insert(COLLECTION, values, caller)


def row(provider, address, *columns):
    """Read one row as the system identity."""
    rows = provider.query(address, SYSTEM, projection=list(columns) or None).as_dicts()
    assert len(rows) == 1
    return rows[0]


def job_id(address):
    return int(address.rsplit("/", 1)[1])


class TestInsert:
    """Tests for DownloadProvider.insert."""

    def test_returns_item_address(self, provider):
        """Create returns the new job's item address."""
        address = create(provider, APP)
        assert address == f"{COLLECTION}/{job_id(address)}"

    def test_owner_is_caller(self, provider):
        """Owner comes from the caller, never the payload."""
        address = create(provider, APP, owner_uid=1)
        assert row(provider, address, "owner_uid")["owner_uid"] == APP_UID

    def test_server_fields(self, provider):
        """New jobs start pending with a server timestamp."""
        address = create(provider, APP, status=200, last_modification=5)
        data = row(provider, address, "status", "last_modification")
        assert data == {"status": Status.PENDING, "last_modification": NOW}

    def test_ids_never_reused(self, provider):
        """Ids increase even after the highest job is deleted."""
        first = create(provider, APP)
        second = create(provider, APP)
        provider.delete(second, APP)
        third = create(provider, APP)
        assert job_id(first) < job_id(second) < job_id(third)

    def test_copied_fields(self, provider):
        """Permitted fields are copied with coercion."""
        address = create(provider, APP, title="Report", no_integrity="true", control=1)
        data = row(provider, address, "title", "no_integrity", "control")
        assert data == {"title": "Report", "no_integrity": 1, "control": 1}

    def test_unpermitted_fields_dropped(self, provider):
        """Fields outside the create policy are ignored."""
        address = create(provider, APP, local_path="/etc/passwd", etag="x")
        assert row(provider, address, "local_path", "etag") == {"local_path": None, "etag": None}

    def test_bad_value_type(self, provider):
        """Values that cannot be coerced are client errors."""
        with pytest.raises(InvalidFieldError):
            create(provider, APP, control="fast")

    def test_out_of_range_value(self, provider):
        """Integers beyond 64 bits are field errors, not storage failures."""
        with pytest.raises(InvalidFieldError):
            create(provider, APP, control=2**64)
        assert provider.query(COLLECTION, SYSTEM).rows == []

    @pytest.mark.parametrize(
        "destination,expected",
        [
            (Destination.EXTERNAL, Visibility.VISIBLE_NOTIFY_COMPLETED),
            (Destination.CACHE_PARTITION_PURGEABLE, Visibility.HIDDEN),
            (None, Visibility.HIDDEN),
        ],
    )
    def test_visibility_default(self, provider, destination, expected):
        """Visibility defaults by destination."""
        values = {} if destination is None else {"destination": int(destination)}
        address = create(provider, APP, **values)
        assert row(provider, address, "visibility")["visibility"] == expected

    def test_explicit_visibility_kept(self, provider):
        """An explicit visibility is stored as given."""
        address = create(provider, APP, destination=0, visibility=int(Visibility.HIDDEN))
        assert row(provider, address, "visibility")["visibility"] == Visibility.HIDDEN

    def test_privileged_destination_rejected(self, provider):
        """Cache partition needs ACCESS_ADVANCED."""
        with pytest.raises(UnauthorizedDestinationError) as exc_info:
            create(provider, APP, destination=int(Destination.CACHE_PARTITION))
        assert exc_info.value.destination == Destination.CACHE_PARTITION
        assert provider.query(COLLECTION, SYSTEM).rows == []

    def test_privileged_destination_allowed(self, provider):
        """ACCESS_ADVANCED callers may use any destination."""
        address = create(provider, ADVANCED, destination=int(Destination.CACHE_PARTITION))
        assert row(provider, address, "destination")["destination"] == Destination.CACHE_PARTITION

    def test_file_uri_needs_permission(self, provider):
        """FILE_URI needs WRITE_EXTERNAL_STORAGE."""
        with pytest.raises(MissingPermissionError):
            create(provider, APP, destination=int(Destination.FILE_URI))

        writer = Caller.of(APP_UID, 501, Permission.WRITE_EXTERNAL_STORAGE)
        assert create(provider, writer, destination=int(Destination.FILE_URI)) is not None

    def test_authorization_errors_share_base(self, provider):
        """Destination failures are authorization errors."""
        with pytest.raises(AuthorizationError):
            create(provider, APP, destination=int(Destination.CACHE_PARTITION_NOROAMING))

    def test_headers_parsed(self, provider):
        """Header lines are split on the first colon and trimmed."""
        address = create(
            provider,
            APP,
            http_header_0="X-Foo: bar ",
            http_header_1="Authorization:Basic a:b",
        )
        headers = provider.query(f"{address}/headers", APP).rows
        assert sorted(headers) == [("Authorization", "Basic a:b"), ("X-Foo", "bar")]

    def test_malformed_header_rejects_create(self, provider, trigger):
        """A header without a colon inserts nothing."""
        with pytest.raises(InvalidHeaderError):
            create(provider, APP, http_header_0="no colon here")
        assert provider.query(COLLECTION, SYSTEM).rows == []
        assert trigger.count == 0

    def test_notification_target_owned(self, provider):
        """Owned notification targets are kept."""
        address = create(provider, APP, notification_package="com.app", notification_class="Recv")
        data = row(provider, address, "notification_package", "notification_class")
        assert data == {"notification_package": "com.app", "notification_class": "Recv"}

    @pytest.mark.parametrize("package", ["com.other", "com.unknown"])
    def test_notification_target_not_owned(self, provider, package):
        """Foreign and unknown packages are dropped silently."""
        address = create(provider, APP, notification_package=package, notification_class="Recv")
        data = row(provider, address, "notification_package", "notification_class")
        assert data == {"notification_package": None, "notification_class": None}

    def test_notification_target_root(self, provider):
        """Root may target any package."""
        address = create(provider, ROOT, notification_package="com.other", notification_class="R")
        assert row(provider, address, "notification_package")["notification_package"] == "com.other"

    def test_secondary_owner_requires_advanced(self, provider):
        """Secondary owner is only kept for ACCESS_ADVANCED callers."""
        plain = create(provider, APP, secondary_owner_uid=OTHER_UID)
        advanced = create(provider, ADVANCED, secondary_owner_uid=OTHER_UID)
        assert row(provider, plain, "secondary_owner_uid")["secondary_owner_uid"] is None
        assert row(provider, advanced, "secondary_owner_uid")["secondary_owner_uid"] == OTHER_UID

    @pytest.mark.parametrize(
        "address", [f"{COLLECTION}/1", f"{COLLECTION}/1/headers", "content://downloads/x"]
    )
    def test_only_collection(self, provider, address):
        """Create is only valid on the collection."""
        with pytest.raises(UnknownAddressError):
            provider.insert(address, {"uri": "https://example.com"}, APP)

    def test_signals(self, provider, notifier, trigger):
        """Create fires the work trigger and notifies the collection."""
        create(provider, APP)
        assert trigger.count == 1
        assert list(notifier.history) == [COLLECTION]

    def test_storage_failure_returns_none(self, provider, trigger, monkeypatch):
        """A failing insert returns None without signalling."""

        def failing(values, headers):
            raise StorageError("insert failed: disk I/O error", operation="insert")

        monkeypatch.setattr(provider.store, "insert_job", failing)
        assert create(provider, APP) is None
        assert trigger.count == 0


class TestQuery:
    """Tests for DownloadProvider.query."""

    def test_restricted_to_own_rows(self, provider):
        """An app sees only its own jobs."""
        mine = create(provider, APP)
        create(provider, OTHER)
        rows = provider.query(COLLECTION, APP, projection=["id"]).rows
        assert rows == [(job_id(mine),)]

    def test_item_of_other_is_empty(self, provider):
        """Another app's item address returns nothing."""
        address = create(provider, APP)
        assert len(provider.query(address, OTHER)) == 0

    def test_secondary_owner_sees_row(self, provider):
        """The secondary owner can read the job."""
        address = create(provider, ADVANCED, secondary_owner_uid=OTHER_UID)
        assert len(provider.query(address, OTHER)) == 1

    @pytest.mark.parametrize("caller", [SYSTEM, TRUSTED, INTERNAL])
    def test_privileged_see_everything(self, provider, caller):
        """System, trusted and same-process callers are unrestricted."""
        create(provider, APP)
        create(provider, OTHER)
        assert len(provider.query(COLLECTION, caller)) == 2

    def test_root_is_restricted(self, provider):
        """Root reads are scoped like any app."""
        create(provider, APP)
        assert len(provider.query(COLLECTION, ROOT)) == 0

    def test_see_all_external(self, provider):
        """SEE_ALL_EXTERNAL exposes external jobs when local_path is not projected."""
        external = create(provider, APP, destination=int(Destination.EXTERNAL))
        create(provider, APP, destination=int(Destination.CACHE_PARTITION_PURGEABLE))

        rows = provider.query(COLLECTION, SEE_ALL, projection=["id", "title"]).rows
        assert [r[0] for r in rows] == [job_id(external)]

    def test_see_all_external_blocked_by_local_path(self, provider):
        """Projecting local_path removes the broadening."""
        create(provider, APP, destination=int(Destination.EXTERNAL))
        assert len(provider.query(COLLECTION, SEE_ALL, projection=["id", "local_path"])) == 0

    @pytest.mark.parametrize("projection", [None, []])
    def test_see_all_external_blocked_by_default_projection(self, provider, projection):
        """A defaulted projection never broadens."""
        create(provider, APP, destination=int(Destination.EXTERNAL))
        assert len(provider.query(COLLECTION, SEE_ALL, projection=projection)) == 0

    def test_default_projection(self, provider):
        """Restricted callers default to the allow-list, others to all columns."""
        create(provider, APP)
        assert provider.query(COLLECTION, APP).columns == READABLE_COLUMNS
        assert provider.query(COLLECTION, SYSTEM).columns == ALL_COLUMNS

    def test_projection_outside_allow_list(self, provider):
        """Restricted callers cannot read owner identity."""
        with pytest.raises(InvalidProjectionError):
            provider.query(COLLECTION, APP, projection=["owner_uid"])

    def test_unrestricted_projection(self, provider):
        """Unrestricted callers may read any column."""
        create(provider, APP)
        assert provider.query(COLLECTION, SYSTEM, projection=["owner_uid"]).rows == [(APP_UID,)]

    def test_selection(self, provider):
        """Selections filter with bound arguments."""
        create(provider, APP, title="a")
        b = create(provider, APP, title="b")
        rows = provider.query(COLLECTION, APP, ["id"], "title = ?", ["b"]).rows
        assert rows == [(job_id(b),)]

    def test_selection_cannot_escape_scope(self, provider):
        """An OR in the selection stays inside the caller's scope."""
        mine = create(provider, APP)
        theirs = create(provider, OTHER)
        rows = provider.query(
            COLLECTION, APP, ["id"], "id = ? OR id = ?", [job_id(mine), job_id(theirs)]
        ).rows
        assert rows == [(job_id(mine),)]

    @pytest.mark.parametrize(
        "selection",
        ["owner_uid = 10002", "id = 1 OR 1 = 1", "id = 1) OR (1", "id IN (SELECT id FROM downloads)"],
    )
    def test_invalid_selection(self, provider, selection):
        """Selections outside the grammar or allow-list are rejected."""
        with pytest.raises(InvalidSelectionError):
            provider.query(COLLECTION, APP, selection=selection)

    def test_sort_order(self, provider):
        """Sort order is applied."""
        create(provider, APP, title="a")
        create(provider, APP, title="b")
        rows = provider.query(COLLECTION, APP, ["title"], sort_order="title DESC").rows
        assert rows == [("b",), ("a",)]

    def test_sort_order_restricted(self, provider):
        """Restricted callers cannot sort by hidden columns."""
        with pytest.raises(InvalidSelectionError):
            provider.query(COLLECTION, APP, sort_order="owner_uid")

    def test_out_of_range_selection_arg(self, provider):
        """Oversized integer arguments are selection errors."""
        create(provider, APP)
        with pytest.raises(InvalidSelectionError):
            provider.query(COLLECTION, APP, ["id"], "id = ?", [2**64])

    def test_header_query_rejects_overrides(self, provider):
        """Header reads take no projection, selection or sort order."""
        address = create(provider, APP, http_header_0="A: b")
        with pytest.raises(UnsupportedOperationError):
            provider.query(f"{address}/headers", APP, projection=["header"])

    def test_header_query_scoped(self, provider):
        """Headers of another app's job are not readable."""
        address = create(provider, APP, http_header_0="A: b")
        assert provider.query(f"{address}/headers", OTHER).rows == []
        assert provider.query(f"{address}/headers", SYSTEM).rows == [("A", "b")]

    def test_unknown_address(self, provider):
        """Unknown addresses are client errors."""
        with pytest.raises(UnknownAddressError):
            provider.query("content://downloads/nothing", APP)

    def test_cursor_observer(self, provider):
        """A cursor's observer hears about later changes."""
        address = create(provider, APP)
        cursor = provider.query(address, APP)
        assert cursor.notification_address == address

        seen = []
        cursor.register_observer(seen.append)
        provider.update(address, {"title": "new"}, APP)
        assert seen == [address]


class TestUpdate:
    """Tests for DownloadProvider.update."""

    def test_safe_fields(self, provider):
        """Cross-process callers write the caller-safe columns."""
        address = create(provider, APP)
        count = provider.update(
            address,
            {"title": "T", "description": "D", "app_data": "x", "visibility": 0, "control": 1},
            APP,
        )
        assert count == 1
        data = row(provider, address, "title", "description", "app_data", "visibility", "control")
        assert data == {"title": "T", "description": "D", "app_data": "x", "visibility": 0, "control": 1}

    def test_unsafe_fields_ignored(self, provider):
        """Secondary owner and local path are not writable cross-process."""
        address = create(provider, APP)
        before = row(provider, address)
        count = provider.update(
            address, {"secondary_owner_uid": OTHER_UID, "local_path": "/tmp/x"}, APP
        )
        assert count == 0
        assert row(provider, address) == before

    def test_other_callers_row(self, provider):
        """An app cannot update another app's job."""
        address = create(provider, APP, title="mine")
        assert provider.update(address, {"title": "stolen"}, OTHER) == 0
        assert row(provider, address, "title")["title"] == "mine"

    def test_collection_update_scoped(self, provider):
        """Collection updates only touch the caller's rows."""
        mine = create(provider, APP)
        theirs = create(provider, OTHER)
        assert provider.update(COLLECTION, {"control": 1}, APP) == 1
        assert row(provider, mine, "control")["control"] == 1
        assert row(provider, theirs, "control")["control"] is None

    def test_internal_writes_all_fields(self, provider):
        """Same-process callers may write worker columns."""
        address = create(provider, APP)
        provider.update(address, {"status": int(Status.SUCCESS), "current_bytes": 10}, INTERNAL)
        assert row(provider, address, "status", "current_bytes") == {
            "status": Status.SUCCESS,
            "current_bytes": 10,
        }

    def test_internal_store_only_stripped(self, provider):
        """Owner and id are never updated."""
        address = create(provider, APP)
        provider.update(address, {"owner_uid": OTHER_UID, "id": 999}, INTERNAL)
        data = row(provider, address, "id", "owner_uid")
        assert data == {"id": job_id(address), "owner_uid": APP_UID}

    def test_internal_unknown_column(self, provider):
        """Unknown columns are rejected for same-process callers."""
        address = create(provider, APP)
        with pytest.raises(InvalidFieldError):
            provider.update(address, {"bogus": 1}, INTERNAL)

    def test_out_of_range_value(self, provider):
        """Oversized integers in a cross-process update are field errors."""
        address = create(provider, APP)
        with pytest.raises(InvalidFieldError):
            provider.update(address, {"visibility": 2**64}, APP)

    def test_title_derived_from_path(self, provider, data_dir):
        """Setting local_path fills a missing title from the file name."""
        address = create(provider, APP)
        provider.update(address, {"local_path": os.path.join(data_dir, "report.pdf")}, INTERNAL)
        assert row(provider, address, "title")["title"] == "report.pdf"

    def test_existing_title_kept(self, provider, data_dir):
        """An existing title is not replaced."""
        address = create(provider, APP, title="Quarterly")
        provider.update(address, {"local_path": os.path.join(data_dir, "report.pdf")}, INTERNAL)
        assert row(provider, address, "title")["title"] == "Quarterly"

    def test_control_fires_trigger_once(self, provider, trigger):
        """Writing control signals the worker exactly once."""
        address = create(provider, APP)
        before = trigger.count
        provider.update(address, {"control": 1}, APP)
        assert trigger.count == before + 1

    def test_title_does_not_fire_trigger(self, provider, trigger):
        """Title and description changes do not signal the worker."""
        address = create(provider, APP)
        before = trigger.count
        provider.update(address, {"title": "x", "description": "y"}, APP)
        assert trigger.count == before

    def test_notifies_address(self, provider, notifier):
        """Update notifies the updated address."""
        address = create(provider, APP)
        provider.update(address, {"title": "x"}, APP)
        assert notifier.history[-1] == address

    def test_headers_address_unsupported(self, provider):
        """Header sub-resources cannot be updated."""
        address = create(provider, APP)
        with pytest.raises(UnsupportedOperationError):
            provider.update(f"{address}/headers", {"title": "x"}, APP)

    def test_unknown_address(self, provider):
        """Unknown addresses are client errors."""
        with pytest.raises(UnknownAddressError):
            provider.update("content://downloads/nothing", {"title": "x"}, APP)


class TestDelete:
    """Tests for DownloadProvider.delete."""

    def test_cascade(self, provider):
        """Deleting a job removes all its headers."""
        address = create(provider, APP, http_header_0="A: 1", http_header_1="B: 2")
        assert provider.delete(address, APP) == 1
        assert provider.query(f"{address}/headers", SYSTEM).rows == []
        assert provider.query(address, SYSTEM).rows == []

    def test_other_callers_row(self, provider):
        """An app cannot delete another app's job or its headers."""
        address = create(provider, APP, http_header_0="A: 1")
        assert provider.delete(address, OTHER) == 0
        assert len(provider.query(address, SYSTEM)) == 1
        assert provider.query(f"{address}/headers", SYSTEM).rows == [("A", "1")]

    def test_collection_delete_scoped(self, provider):
        """Collection delete only removes the caller's jobs."""
        create(provider, APP)
        create(provider, APP)
        theirs = create(provider, OTHER)
        assert provider.delete(COLLECTION, APP) == 2
        assert [r[0] for r in provider.query(COLLECTION, SYSTEM, ["id"]).rows] == [job_id(theirs)]

    def test_selection(self, provider):
        """Selections narrow the delete."""
        create(provider, APP, title="keep")
        create(provider, APP, title="drop")
        assert provider.delete(COLLECTION, APP, "title = ?", ["drop"]) == 1
        assert provider.query(COLLECTION, APP, ["title"]).rows == [("keep",)]

    def test_notifies(self, provider, notifier):
        """Delete notifies the deleted address."""
        address = create(provider, APP)
        provider.delete(address, APP)
        assert notifier.history[-1] == address


class TestOpenFile:
    """Tests for DownloadProvider.open_file."""

    @pytest.fixture
    def downloaded(self, provider, data_dir):
        """A job owned by APP whose file exists on disk."""
        path = os.path.join(data_dir, "payload.bin")
        with open(path, "wb") as f:
            f.write(b"payload")
        address = create(provider, APP)
        provider.update(address, {"local_path": path}, INTERNAL)
        return address

    def test_reads_content(self, provider, downloaded):
        """The owner can read the file."""
        with provider.open_file(downloaded, APP) as stream:
            assert stream.read() == b"payload"

    def test_internal_stamps_last_modification(self, provider, downloaded, clock):
        """A same-process open stamps last_modification."""
        clock[0] = NOW + 5
        provider.open_file(downloaded, INTERNAL).close()
        assert row(provider, downloaded, "last_modification")["last_modification"] == NOW + 5

    def test_cross_process_stamp_filtered(self, provider, downloaded, clock, notifier):
        """A cross-process open cannot write the timestamp but still notifies."""
        clock[0] = NOW + 5
        before = len(notifier.history)
        provider.open_file(downloaded, APP).close()
        assert row(provider, downloaded, "last_modification")["last_modification"] == NOW
        assert len(notifier.history) == before + 1

    def test_zero_rows(self, provider, downloaded):
        """No visible row is NotFoundError."""
        with pytest.raises(NotFoundError):
            provider.open_file(downloaded, OTHER)

    def test_two_rows(self, provider, downloaded):
        """More than one row is AmbiguousMatchError."""
        create(provider, APP)
        with pytest.raises(AmbiguousMatchError) as exc_info:
            provider.open_file(COLLECTION, APP)
        assert exc_info.value.count == 2

    def test_no_filename(self, provider):
        """A job without a path has no content."""
        address = create(provider, APP)
        with pytest.raises(NotFoundError):
            provider.open_file(address, APP)

    def test_unsafe_path(self, provider):
        """Paths outside the allowed roots are refused."""
        address = create(provider, APP)
        provider.update(address, {"local_path": "/etc/passwd"}, INTERNAL)
        with pytest.raises(InvalidPathError):
            provider.open_file(address, APP)

    def test_write_mode(self, provider, downloaded):
        """Only read mode is accepted."""
        with pytest.raises(InvalidModeError):
            provider.open_file(downloaded, APP, mode="w")

    def test_missing_file(self, provider, data_dir):
        """A valid path with no file is NotFoundError."""
        address = create(provider, APP)
        provider.update(address, {"local_path": os.path.join(data_dir, "gone.bin")}, INTERNAL)
        with pytest.raises(NotFoundError):
            provider.open_file(address, APP)

    def test_headers_address(self, provider, downloaded):
        """Header sub-resources have no content."""
        with pytest.raises(UnsupportedOperationError):
            provider.open_file(f"{downloaded}/headers", APP)

    def test_stamp_failure_closes_file(self, provider, downloaded, monkeypatch):
        """If stamping fails, the opened file is closed."""
        opened = []
        real_open = open

        def tracking_open(path, mode):
            stream = real_open(path, mode)
            opened.append(stream)
            return stream

        def failing_update(*args, **kwargs):
            raise StorageError("update failed", operation="update")

        monkeypatch.setattr(provider_module, "open", tracking_open, raising=False)
        monkeypatch.setattr(provider, "update", failing_update)

        with pytest.raises(StorageError):
            provider.open_file(downloaded, APP)
        assert len(opened) == 1
        assert opened[0].closed


class TestGetType:
    """Tests for DownloadProvider.get_type."""

    def test_types(self, provider):
        """Collection and item have distinct types."""
        assert provider.get_type(COLLECTION) != provider.get_type(f"{COLLECTION}/1")

    def test_unknown(self, provider):
        """Unknown addresses raise."""
        with pytest.raises(UnknownAddressError):
            provider.get_type(f"{COLLECTION}/1/headers")


class TestClose:
    """Tests for DownloadProvider.close."""

    def test_context_manager_stops_delivery(self, provider):
        """Leaving the with-block shuts down the notifier's executor."""
        received = []
        executor = ThreadPoolExecutor(max_workers=1)
        provider.notifier = InMemoryChangeNotifier(executor=executor)
        provider.notifier.register_observer(COLLECTION, received.append)

        with provider:
            create(provider, APP)

        assert received == [COLLECTION]
        with pytest.raises(RuntimeError):
            executor.submit(print)
