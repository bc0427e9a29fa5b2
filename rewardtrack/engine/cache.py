"""
rewardtrack.engine.cache — Per-Tracker Snapshot Cache
======================================================

Each tracker instance owns one :class:`SnapshotCache`.  An entry is
``{data, timestamp}``; a read is served from the cache iff data is present,
``now - timestamp < ttl`` and the caller did not ask to skip the cache.

Push handlers that patch tracker state call :meth:`SnapshotCache.invalidate`
so the next explicit refresh always reaches the source of truth.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

Clock = Callable[[], float]


@dataclass(slots=True)
class CacheEntry(Generic[T]):
    data: T | None = None
    timestamp: float = 0.0


class SnapshotCache(Generic[T]):
    """Single-entry TTL cache.

    Usage::

        cache = SnapshotCache(ttl=60.0)
        hit = cache.get()            # None on miss / expiry
        cache.store(snapshot)
        cache.invalidate()           # data=None, timestamp=0
    """

    def __init__(self, ttl: float, clock: Clock = time.monotonic) -> None:
        if ttl < 0:
            raise ValueError(f"Cache TTL must be non-negative, got {ttl}")
        self.ttl = ttl
        self._clock = clock
        self._entry: CacheEntry[T] = CacheEntry()

    @property
    def entry(self) -> CacheEntry[T]:
        return self._entry

    def age(self) -> float | None:
        """Seconds since the entry was stored, or None when empty."""
        if self._entry.data is None:
            return None
        return self._clock() - self._entry.timestamp

    def is_valid(self, *, skip_cache: bool = False) -> bool:
        if skip_cache or self._entry.data is None:
            return False
        return (self._clock() - self._entry.timestamp) < self.ttl

    def get(self, *, skip_cache: bool = False) -> T | None:
        """Return the cached data if still valid, else None."""
        if self.is_valid(skip_cache=skip_cache):
            return self._entry.data
        return None

    def store(self, data: T) -> None:
        self._entry = CacheEntry(data=data, timestamp=self._clock())

    def invalidate(self) -> None:
        self._entry = CacheEntry()
