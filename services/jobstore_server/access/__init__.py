"""
Access module for the jobstore server - caller identity and row scoping.

This module handles:
- Caller identity and permissions
- Restriction of reads, updates and deletes to rows a caller may see
- Package ownership and path safety collaborators

Invariants:
    - Every operation receives an explicit Caller
    - Restrictions are expressed as parameterized predicates
"""

from .collaborators import (
    PackageNotFoundError,
    PackageResolver,
    PathValidator,
    RootedPathValidator,
    StaticPackageResolver,
)
from .scoper import AccessScoper, Caller, Permission, Predicate

__all__ = [
    "AccessScoper",
    "Caller",
    "PackageNotFoundError",
    "PackageResolver",
    "PathValidator",
    "Permission",
    "Predicate",
    "RootedPathValidator",
    "StaticPackageResolver",
]
