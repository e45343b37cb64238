"""TTL cache for per-machine reservation snapshots.

Availability answers are advisory, so reads may be served from here for up to
``availability_cache_ttl`` seconds. Every successful write drops the entries of
the machines it touched.
"""
from __future__ import annotations

import threading
from typing import Generic, Hashable, Iterable, Optional, TypeVar

from cachetools import TTLCache

from .config import get_settings

T = TypeVar("T")


class SnapshotCache(Generic[T]):
    def __init__(self, ttl: int, maxsize: int = 1024) -> None:
        self.enabled = ttl > 0
        self._cache: TTLCache[Hashable, T] = TTLCache(maxsize=maxsize, ttl=max(ttl, 1))
        self._lock = threading.Lock()

    def get(self, key: Hashable) -> Optional[T]:
        if not self.enabled:
            return None
        with self._lock:
            return self._cache.get(key)

    def set(self, key: Hashable, value: T) -> None:
        if not self.enabled:
            return
        with self._lock:
            self._cache[key] = value

    def invalidate(self, keys: Iterable[Hashable]) -> None:
        with self._lock:
            for key in keys:
                self._cache.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()


snapshot_cache: SnapshotCache[tuple] = SnapshotCache(ttl=get_settings().availability_cache_ttl)
