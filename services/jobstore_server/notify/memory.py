"""
In-process change notifier and work trigger.

These are the default collaborators wired by main.build_provider(), and
the ones tests use to observe provider side effects.

Invariants:
    - Observer registration is thread-safe
    - Observer exceptions are logged and contained
    - history keeps at most history_size addresses, newest last
    - With an executor, delivery happens on the executor; without one,
      delivery is inline before notify_change() returns

How to change safely:
    - Keep the public surface compatible with the protocols in base.py
    - Don't hold the registry lock while calling observers
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from concurrent.futures import Executor
from dataclasses import dataclass

from .base import ChangeObserver, addresses_related

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class _Registration:
    address: str
    observer: ChangeObserver
    notify_for_descendants: bool


class InMemoryChangeNotifier:
    """Observer registry keyed by resource address.

    Attributes:
        history: The most recent addresses passed to notify_change(), oldest first

    Example:
        >>> notifier = InMemoryChangeNotifier()
        >>> notifier.register_observer("content://downloads/download", print)
        >>> notifier.notify_change("content://downloads/download/3")
        content://downloads/download/3
    """

    def __init__(self, executor: Executor | None = None, history_size: int = 100) -> None:
        """Initialize the notifier.

        Args:
            executor: Optional executor for asynchronous delivery; owned by
                the notifier and shut down by close()
            history_size: Number of recent addresses kept in history
        """
        self._executor = executor
        self._lock = threading.Lock()
        self._registrations: list[_Registration] = []
        self.history: deque[str] = deque(maxlen=history_size)

    def register_observer(
        self,
        address: str,
        observer: ChangeObserver,
        notify_for_descendants: bool = True,
    ) -> None:
        with self._lock:
            self._registrations.append(_Registration(address, observer, notify_for_descendants))

    def unregister_observer(self, observer: ChangeObserver) -> None:
        with self._lock:
            self._registrations = [r for r in self._registrations if r.observer is not observer]

    @property
    def observer_count(self) -> int:
        with self._lock:
            return len(self._registrations)

    def notify_change(self, address: str) -> None:
        """Dispatch a change at `address` to every related observer."""
        with self._lock:
            self.history.append(address)
            targets = [
                r.observer
                for r in self._registrations
                if addresses_related(r.address, address, r.notify_for_descendants)
            ]

        logger.debug(
            "Dispatching change notification",
            extra={"address": address, "observers": len(targets)},
        )
        for observer in targets:
            if self._executor is not None:
                self._executor.submit(self._deliver, observer, address)
            else:
                self._deliver(observer, address)

    def close(self) -> None:
        """Shut down the delivery executor, waiting for queued deliveries."""
        if self._executor is not None:
            logger.debug("Shutting down notification executor")
            self._executor.shutdown(wait=True)

    def _deliver(self, observer: ChangeObserver, address: str) -> None:
        try:
            observer(address)
        except Exception:
            logger.warning(
                "Change observer failed",
                extra={"address": address},
                exc_info=True,
            )


class InMemoryWorkTrigger:
    """Counts start-work signals and wakes a waiting worker.

    Example:
        >>> trigger = InMemoryWorkTrigger()
        >>> trigger.start_work()
        >>> trigger.count
        1
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._event = threading.Event()
        self._count = 0

    @property
    def count(self) -> int:
        with self._lock:
            return self._count

    def start_work(self) -> None:
        with self._lock:
            self._count += 1
        self._event.set()
        logger.debug("Work trigger signalled")

    def wait(self, timeout: float | None = None) -> bool:
        """Block until a signal arrives; clears the signal when it does.

        Returns:
            True if a signal was received before the timeout
        """
        signalled = self._event.wait(timeout)
        if signalled:
            self._event.clear()
        return signalled
