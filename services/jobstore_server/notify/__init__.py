"""
Notify module for the jobstore server - observers and the worker signal.

This module handles:
- Change notification keyed by resource address
- The out-of-band "start work" signal to the download worker
"""

from .base import ChangeNotifier, ChangeObserver, WorkTrigger, addresses_related
from .memory import InMemoryChangeNotifier, InMemoryWorkTrigger

__all__ = [
    "ChangeNotifier",
    "ChangeObserver",
    "InMemoryChangeNotifier",
    "InMemoryWorkTrigger",
    "WorkTrigger",
    "addresses_related",
]
