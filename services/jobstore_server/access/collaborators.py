"""
Boundary collaborators used by access checks.

- PackageResolver: maps a notification target package to its owning uid
- PathValidator: decides whether a stored local path is safe to open

Both are injected into the provider; the implementations here are the
defaults wired by main.build_provider().
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import Protocol, runtime_checkable


class PackageNotFoundError(Exception):
    """Package name is not known to the resolver."""


@runtime_checkable
class PackageResolver(Protocol):
    """Resolves package ownership."""

    def get_package_uid(self, package: str) -> int:
        """Return the uid owning `package`.

        Raises:
            PackageNotFoundError: If the package is unknown
        """
        ...


class StaticPackageResolver:
    """PackageResolver backed by a fixed package -> uid mapping."""

    def __init__(self, owners: Mapping[str, int] | None = None) -> None:
        self._owners = dict(owners or {})

    def get_package_uid(self, package: str) -> int:
        try:
            return self._owners[package]
        except KeyError:
            raise PackageNotFoundError(package) from None


@runtime_checkable
class PathValidator(Protocol):
    def is_valid(self, path: str) -> bool: ...


class RootedPathValidator:
    """Accepts absolute paths that stay inside one of the allowed roots.

    A path is rejected when it is relative, contains a '..' component or
    resolves outside every root.
    """

    def __init__(self, roots: Iterable[str | Path]) -> None:
        self.roots = tuple(Path(root).resolve() for root in roots)

    def is_valid(self, path: str) -> bool:
        if not path or "\x00" in path:
            return False
        candidate = Path(path)
        if not candidate.is_absolute() or ".." in candidate.parts:
            return False
        try:
            resolved = candidate.resolve()
        except (OSError, RuntimeError):
            return False
        for root in self.roots:
            try:
                resolved.relative_to(root)
                return True
            except ValueError:
                continue
        return False
