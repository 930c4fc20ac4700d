"""UniqueValuesCache — TTL cache for distinct-value queries.

Distinct values of a field (the list of available fortnights, typically)
change rarely, so they are cached per ``layer:field`` for a few minutes. When
a refresh fails and an expired entry exists, the stale values are served.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Awaitable, Callable

from loguru import logger

from layersync.wfs.errors import Cancelled


@dataclass
class _Entry:
    values: list[str]
    fetched_at: float


class UniqueValuesCache:
    def __init__(self, ttl: float = 300.0, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl = ttl
        self._clock = clock
        self._entries: dict[str, _Entry] = {}

    @staticmethod
    def _key(layer_name: str, field_name: str) -> str:
        return f"{layer_name}:{field_name}"

    def peek(self, layer_name: str, field_name: str) -> list[str] | None:
        """Fresh cached values, or None when missing or expired."""
        entry = self._entries.get(self._key(layer_name, field_name))
        if entry is None or self._clock() - entry.fetched_at >= self.ttl:
            return None
        return list(entry.values)

    async def get_or_fetch(
        self,
        layer_name: str,
        field_name: str,
        fetch: Callable[[], Awaitable[list[str]]],
    ) -> list[str]:
        """Return cached values, fetching when missing or expired.

        Raises whatever ``fetch`` raises when there is nothing cached to fall
        back on. ``Cancelled`` always propagates.
        """
        cached = self.peek(layer_name, field_name)
        if cached is not None:
            return cached

        key = self._key(layer_name, field_name)
        stale = self._entries.get(key)
        try:
            values = await fetch()
        except Cancelled:
            raise
        except Exception as e:
            if stale is not None:
                logger.warning(f"Unique values refresh failed for {key} ({e}); serving expired cache")
                return list(stale.values)
            raise

        self._entries[key] = _Entry(values=list(values), fetched_at=self._clock())
        return list(values)

    def clear(self, layer_name: str | None = None, field_name: str | None = None) -> None:
        """Drop one ``layer:field`` entry, all entries of a layer, or everything."""
        if layer_name and field_name:
            self._entries.pop(self._key(layer_name, field_name), None)
        elif layer_name:
            prefix = f"{layer_name}:"
            for key in [k for k in self._entries if k.startswith(prefix)]:
                del self._entries[key]
        else:
            self._entries.clear()
