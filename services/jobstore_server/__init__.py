"""
Jobstore Server - access-controlled persistent store for download jobs.

This package implements the persistence and access layer of a download
manager:
- Job records and per-job request headers in a versioned SQLite database
- Hierarchical resource addresses (collection, item, item headers)
- Per-caller row scoping and field-level write filtering
- Change notifications and a start-work signal for the download worker

Architecture:
    ┌─────────────┐     ┌──────────────────┐     ┌──────────────┐
    │   Caller    │────▶│ DownloadProvider │────▶│   JobStore   │
    │ (uid, pid)  │     │  route / filter  │     │   (SQLite)   │
    └─────────────┘     │  scope / notify  │     └──────────────┘
                        └────────┬─────────┘
                                 │
                    ┌────────────┴────────────┐
                    ▼                         ▼
             ┌──────────────┐         ┌──────────────┐
             │ChangeNotifier│         │ WorkTrigger  │
             └──────────────┘         └──────────────┘

Invariants:
    - Every operation takes an explicit Caller
    - Restricted callers only ever see rows they own or co-own
    - Owner identity is assigned from the Caller, never from payloads

How to change safely:
    - Column policy changes belong in schema/columns.py only
    - Schema changes need a new migration step and version bump
"""

from ._version import __version__

__all__ = ["__version__"]
