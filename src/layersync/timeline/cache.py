"""ResultCache — bounded FIFO cache of temporal slices.

Eviction is by insertion order only: reads never refresh an entry's age.
This is deliberately not LRU, so eviction is predictable from the sequence
of fetches alone.
"""

from __future__ import annotations

import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, NamedTuple

from loguru import logger

from layersync.layers.layer import FeatureCollection


@dataclass(frozen=True)
class CacheEntry:
    key: str
    value: FeatureCollection
    inserted_at: float


class CacheLookup(NamedTuple):
    """Result of a lookup; ``hit`` is authoritative, ``value`` may be empty."""

    hit: bool
    value: FeatureCollection | None


class ResultCache:
    """Fixed-capacity cache keyed by normalized temporal key."""

    def __init__(self, capacity: int = 10, clock: Callable[[], float] = time.time) -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self._capacity = capacity
        self._clock = clock
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()

    @property
    def capacity(self) -> int:
        return self._capacity

    def lookup(self, key: str) -> CacheLookup:
        entry = self._entries.get(key)
        if entry is None:
            return CacheLookup(False, None)
        return CacheLookup(True, entry.value)

    def get(self, key: str) -> FeatureCollection | None:
        """Cached value or None. Use ``lookup``/``in`` to tell a hit apart."""
        return self.lookup(key).value

    def entry(self, key: str) -> CacheEntry | None:
        return self._entries.get(key)

    def put(self, key: str, value: FeatureCollection) -> None:
        """Insert ``value``; evicts the oldest-inserted entry when full.

        Re-putting an existing key replaces its entry but keeps its position
        in the eviction order.
        """
        entry = CacheEntry(key=key, value=value, inserted_at=self._clock())
        if key in self._entries:
            self._entries[key] = entry
            return
        if len(self._entries) >= self._capacity:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug(f"Cache: evicted {evicted}")
        self._entries[key] = entry
        logger.debug(f"Cache: added {key}, total: {len(self._entries)}")

    def clear(self) -> None:
        self._entries.clear()
        logger.debug("Cache cleared")

    def keys(self) -> list[str]:
        """Keys in eviction order (oldest first)."""
        return list(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)
