"""
CLI tools for jobstore administration.

This module provides command-line tools for:
- migrate: Create or upgrade the configured database
- columns: Print the column access policy
- dump: Print every job row

Invariants:
    - Tools work offline (no running worker required)
    - migrate is idempotent at the current version
"""

from .store_cli import StoreCLI

__all__ = ["StoreCLI"]
