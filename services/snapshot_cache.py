"""
In-memory snapshot caches with explicit invalidation.

A SnapshotCache holds the last value produced by its loader. The snapshot is
loaded lazily on first read and replaced only when reload() is called, e.g.
by an external change-notification collaborator or an admin command. There is
no background file watcher.
"""

from __future__ import annotations

import logging
from typing import Callable, FrozenSet, Generic, Iterable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SnapshotCache(Generic[T]):
    def __init__(self, loader: Callable[[], T]):
        self._loader = loader
        self._snapshot: Optional[T] = None
        self._loaded = False

    def get(self) -> T:
        if not self._loaded:
            self.reload()
        return self._snapshot  # type: ignore[return-value]

    def reload(self) -> T:
        """Replace the snapshot with a fresh load. A failing loader keeps the previous snapshot."""

        snapshot = self._loader()
        self._snapshot = snapshot
        self._loaded = True
        return snapshot

    def invalidate(self) -> None:
        """Drop the snapshot; the next get() reloads."""

        self._snapshot = None
        self._loaded = False


class AllowList:
    """Set of user ids allowed to use member commands."""

    def __init__(self, loader: Callable[[], Iterable[str]]):
        self._cache: SnapshotCache[FrozenSet[str]] = SnapshotCache(
            lambda: frozenset(str(user_id) for user_id in loader())
        )

    def contains(self, user_id: str) -> bool:
        return str(user_id) in self._cache.get()

    def reload(self) -> int:
        ids = self._cache.reload()
        logger.info("Allow-list reloaded (%d ids)", len(ids))
        return len(ids)
