"""
Change notification and work trigger protocols.

The provider signals two external collaborators:
- ChangeNotifier: observers interested in an address are told it changed
- WorkTrigger: the download worker is asked to look for work

Invariants:
    - notify_change() has dispatched by the time it returns; delivery to
      individual observers is best effort
    - A failing observer never fails the mutation that triggered it

How to change safely:
    - Keep the protocols minimal; transports live behind them
    - New implementations must honour the matching rules in addresses_related()
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Protocol, runtime_checkable

ChangeObserver = Callable[[str], None]


@runtime_checkable
class ChangeNotifier(Protocol):
    """Publishes address change events to registered observers."""

    def notify_change(self, address: str) -> None:
        """Announce that data at `address` changed."""
        ...

    def register_observer(
        self,
        address: str,
        observer: ChangeObserver,
        notify_for_descendants: bool = True,
    ) -> None:
        """Register `observer` for changes at or below `address`."""
        ...

    def unregister_observer(self, observer: ChangeObserver) -> None:
        """Remove every registration of `observer`."""
        ...

    def close(self) -> None:
        """Release delivery resources; no notifications follow."""
        ...


@runtime_checkable
class WorkTrigger(Protocol):
    """Out-of-band signal asking the worker to examine pending jobs."""

    def start_work(self) -> None:
        ...


def addresses_related(
    registered: str,
    changed: str,
    notify_for_descendants: bool,
) -> bool:
    """Decide whether a change at `changed` concerns an observer at `registered`.

    A change is delivered when the addresses are equal, when the change is
    below the registration and the observer asked for descendants, or when
    the change is above the registration (a collection change can affect
    any item in it).
    """
    registered = registered.rstrip("/")
    changed = changed.rstrip("/")
    if registered == changed:
        return True
    if changed.startswith(registered + "/"):
        return notify_for_descendants
    return registered.startswith(changed + "/")
