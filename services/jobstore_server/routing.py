"""
Resource addressing for the jobstore server.

Addresses have the shape:

    content://<authority>/<collection>               collection
    content://<authority>/<collection>/<id>          single job
    content://<authority>/<collection>/<id>/headers  job request headers

Invariants:
    - Matching is purely structural; no address ever hits the store here
    - A malformed address is NO_MATCH, never an item that is "not found"
    - The router is immutable after construction
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from urllib.parse import urlsplit

from .errors import UnknownAddressError

SCHEME = "content"
HEADERS_SEGMENT = "headers"

COLLECTION_MIME_TYPE = "vnd.jobstore.dir/download"
ITEM_MIME_TYPE = "vnd.jobstore.item/download"

_MAX_ID = 2**63 - 1


class RouteKind(Enum):
    """Resource shapes an address can resolve to."""

    COLLECTION = "collection"
    ITEM = "item"
    ITEM_HEADERS = "item_headers"
    NO_MATCH = "no_match"


@dataclass(frozen=True)
class Route:
    """Result of matching an address.

    Attributes:
        kind: Matched resource shape
        job_id: Job identifier for ITEM and ITEM_HEADERS, else None
    """

    kind: RouteKind
    job_id: int | None = None

    @property
    def is_match(self) -> bool:
        return self.kind is not RouteKind.NO_MATCH


_NO_MATCH = Route(RouteKind.NO_MATCH)


class ResourceRouter:
    """Classifies addresses and builds them.

    Example:
        >>> router = ResourceRouter()
        >>> router.match("content://downloads/download/7")
        Route(kind=<RouteKind.ITEM: 'item'>, job_id=7)
    """

    def __init__(self, authority: str = "downloads", collection: str = "download") -> None:
        self.authority = authority
        self.collection = collection

    @property
    def collection_address(self) -> str:
        return f"{SCHEME}://{self.authority}/{self.collection}"

    def item_address(self, job_id: int) -> str:
        return f"{self.collection_address}/{job_id}"

    def headers_address(self, job_id: int) -> str:
        return f"{self.item_address(job_id)}/{HEADERS_SEGMENT}"

    def match(self, address: str) -> Route:
        """Match an address against the three known shapes.

        Args:
            address: Resource address

        Returns:
            The matched Route, with kind NO_MATCH for anything else
        """
        try:
            parts = urlsplit(address)
        except ValueError:
            return _NO_MATCH
        if parts.scheme != SCHEME or parts.netloc != self.authority:
            return _NO_MATCH
        if parts.query or parts.fragment:
            return _NO_MATCH

        segments = parts.path.split("/")
        if not segments or segments[0] != "":
            return _NO_MATCH
        segments = segments[1:]
        if not segments or segments[0] != self.collection:
            return _NO_MATCH

        if len(segments) == 1:
            return Route(RouteKind.COLLECTION)

        job_id = _parse_id(segments[1])
        if job_id is None:
            return _NO_MATCH
        if len(segments) == 2:
            return Route(RouteKind.ITEM, job_id)
        if len(segments) == 3 and segments[2] == HEADERS_SEGMENT:
            return Route(RouteKind.ITEM_HEADERS, job_id)
        return _NO_MATCH

    def get_type(self, address: str) -> str:
        """Return the MIME type of a collection or item address.

        Raises:
            UnknownAddressError: For header sub-resources and unmatched addresses
        """
        route = self.match(address)
        if route.kind is RouteKind.COLLECTION:
            return COLLECTION_MIME_TYPE
        if route.kind is RouteKind.ITEM:
            return ITEM_MIME_TYPE
        raise UnknownAddressError(address)


def _parse_id(segment: str) -> int | None:
    if not segment or not segment.isascii() or not segment.isdigit():
        return None
    value = int(segment)
    if value > _MAX_ID:
        return None
    return value
