"""Key to watched-path dependency tracking."""

from __future__ import annotations

import os
from collections.abc import Hashable, Iterable


def normalize_path(path: str | os.PathLike[str]) -> str:
    """Canonical string form used for every path-keyed lookup."""
    return os.path.normpath(os.fspath(path))


class DependencyGraph:
    """Bidirectional map between cache keys and the files they were built from.

    Per-file entries depend on exactly their own path; aggregate entries on
    an arbitrary set. ``dependents(path)`` answers "what must be dropped when
    this file changes" without scanning every entry.
    """

    def __init__(self) -> None:
        self._paths: dict[Hashable, frozenset[str]] = {}
        self._dependents: dict[str, set[Hashable]] = {}

    def __len__(self) -> int:
        return len(self._paths)

    def __contains__(self, key: Hashable) -> bool:
        return key in self._paths

    def add(self, key: Hashable, paths: Iterable[str | os.PathLike[str]]) -> None:
        """Record (or replace) the dependency set of ``key``."""
        self.remove(key)
        normalized = frozenset(normalize_path(p) for p in paths)
        self._paths[key] = normalized
        for path in normalized:
            self._dependents.setdefault(path, set()).add(key)

    def remove(self, key: Hashable) -> None:
        for path in self._paths.pop(key, frozenset()):
            keys = self._dependents.get(path)
            if keys is None:
                continue
            keys.discard(key)
            if not keys:
                del self._dependents[path]

    def paths_for(self, key: Hashable) -> frozenset[str]:
        return self._paths.get(key, frozenset())

    def dependents(self, path: str | os.PathLike[str]) -> set[Hashable]:
        """Keys whose dependency set contains ``path``."""
        return set(self._dependents.get(normalize_path(path), ()))

    def clear(self) -> None:
        self._paths.clear()
        self._dependents.clear()
