"""TemporalKeyIndex — the ordered list of available temporal slices.

Loaded from the distinct values of the temporal field, cached through a
UniqueValuesCache and sorted ascending. The latest key is selected by
default, which is what the time slider shows when the layer is first turned
on.
"""

from __future__ import annotations

from typing import Optional

from loguru import logger

from layersync.timeline.keys import key_index, normalize_temporal_key, sort_keys
from layersync.wfs.unique_values import UniqueValuesCache


class TemporalKeyIndex:
    def __init__(
        self,
        client,
        layer_name: str,
        field_name: str,
        unique_values: Optional[UniqueValuesCache] = None,
        limit: int = 10000,
    ) -> None:
        self.client = client
        self.layer_name = layer_name
        self.field_name = field_name
        self.unique_values = unique_values or UniqueValuesCache()
        self.limit = limit
        self.keys: list[str] = []
        self.selected: str | None = None

    @property
    def loaded(self) -> bool:
        return bool(self.keys)

    async def load(self) -> list[str]:
        """Load the available keys (served from the TTL cache when fresh).

        Keeps the current selection when it is still available, otherwise
        selects the latest key.
        """
        values = await self.unique_values.get_or_fetch(
            self.layer_name,
            self.field_name,
            lambda: self.client.fetch_unique_values(self.layer_name, self.field_name, limit=self.limit),
        )
        self.keys = sort_keys(values)
        if self.selected is None or self.selected not in self.keys:
            self.selected = self.keys[-1] if self.keys else None
        logger.info(f"Temporal index for {self.layer_name}: {len(self.keys)} keys, selected {self.selected}")
        return list(self.keys)

    async def refresh(self) -> list[str]:
        """Drop the cached values and reload."""
        self.unique_values.clear(self.layer_name, self.field_name)
        return await self.load()

    def is_valid(self, key: object) -> bool:
        return key_index(key, self.keys) != -1

    def select(self, key: object) -> str:
        """Select ``key``; raises KeyError when it is not an available slice."""
        normalized = normalize_temporal_key(key)
        if normalized is None or normalized not in self.keys:
            raise KeyError(f"Temporal key not available: {key!r}")
        self.selected = normalized
        return normalized

    def previous(self, key: object = None) -> str | None:
        idx = key_index(self.selected if key is None else key, self.keys)
        return self.keys[idx - 1] if idx > 0 else None

    def next(self, key: object = None) -> str | None:
        idx = key_index(self.selected if key is None else key, self.keys)
        return self.keys[idx + 1] if 0 <= idx < len(self.keys) - 1 else None

    def to_dict(self) -> dict:
        return {
            "layer_name": self.layer_name,
            "field_name": self.field_name,
            "keys": list(self.keys),
            "selected": self.selected,
        }
