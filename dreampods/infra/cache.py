"""In-memory TTL cache for remote reads.

One ``TtlCache`` per kind of read (pod status, pod listing, consumer
status...). A value older than the cache's TTL is never returned; it is
evicted on the read that finds it stale.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Hashable
from dataclasses import dataclass

from loguru import logger


@dataclass(frozen=True, slots=True)
class CacheEntry[T]:
    value: T
    stored_at: float


class TtlCache[T]:
    """Bounded-staleness cache keyed by any hashable."""

    def __init__(
        self,
        name: str,
        ttl: float,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.ttl = ttl
        self._clock = clock
        self._entries: dict[Hashable, CacheEntry[T]] = {}
        self._log = logger.bind(component="cache", cache=name)

    def get(self, key: Hashable) -> T | None:
        """Return the cached value, or None on a miss or a stale entry."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() - entry.stored_at > self.ttl:
            self._entries.pop(key, None)
            self._log.trace("Stale entry evicted key={key}", key=key)
            return None
        return entry.value

    def put(self, key: Hashable, value: T) -> None:
        self._entries[key] = CacheEntry(value=value, stored_at=self._clock())

    def invalidate(self, key: Hashable) -> None:
        if self._entries.pop(key, None) is not None:
            self._log.debug("Invalidated key={key}", key=key)

    def clear(self) -> None:
        self._entries.clear()

    def stored_at(self, key: Hashable) -> float | None:
        entry = self._entries.get(key)
        return entry.stored_at if entry else None

    def __contains__(self, key: Hashable) -> bool:
        return self.get(key) is not None

    def __len__(self) -> int:
        return len(self._entries)


def cache_lookup[T](cache: TtlCache[T], key: Hashable) -> T | None:
    """``cache.get`` that treats a cache fault as a miss."""
    try:
        return cache.get(key)
    except Exception as e:
        logger.bind(component="cache", cache=cache.name).warning("Cache read failed: {err}", err=e)
        return None


def cache_store[T](cache: TtlCache[T], key: Hashable, value: T) -> None:
    """``cache.put`` that logs and drops a cache fault."""
    try:
        cache.put(key, value)
    except Exception as e:
        logger.bind(component="cache", cache=cache.name).warning("Cache write failed: {err}", err=e)
