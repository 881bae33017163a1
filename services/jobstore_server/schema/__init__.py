"""
Schema module for the jobstore server - column policy and SQL fragment validation.

This module handles:
- Column names, SQL types and enumerated values of the downloads table
- Read/write allow-lists used by query projection and write filtering
- Validation of caller-supplied selections and sort orders

Invariants:
    - Policy tables are immutable after import
    - Every caller-supplied SQL fragment is validated before execution
"""

from .columns import (
    ALL_COLUMNS,
    HEADER_KEY_PREFIX,
    READABLE_COLUMNS,
    SAFE_UPDATE_COLUMNS,
    Control,
    Destination,
    Status,
    Visibility,
    validate_projection,
)
from .selection import validate_selection, validate_sort_order

__all__ = [
    "ALL_COLUMNS",
    "HEADER_KEY_PREFIX",
    "READABLE_COLUMNS",
    "SAFE_UPDATE_COLUMNS",
    "Control",
    "Destination",
    "Status",
    "Visibility",
    "validate_projection",
    "validate_selection",
    "validate_sort_order",
]
