"""
Store module for the jobstore server - SQLite persistence and schema versioning.

This module handles:
- Opening, creating and migrating the SQLite database
- Statement execution for job rows and request headers

Invariants:
    - Migration steps are idempotent drop-then-create
    - Multi-statement writes are transactional
"""

from .job_store import JobStore
from .migrations import CURRENT_VERSION, OLDEST_VERSION, SchemaManager

__all__ = [
    "CURRENT_VERSION",
    "OLDEST_VERSION",
    "JobStore",
    "SchemaManager",
]
