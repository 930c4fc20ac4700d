"""ActiveLayerSet — the rendering surface of the engine.

Holds what is currently displayed: one FeatureCollection per active layer,
plus per-layer loading flag, last error and active CQL filter. Every change
bumps the layer's ``version`` so renderers can key their caches on
``(name, version)`` instead of a global refresh counter, and is published on
the EventBus when one is attached.

All mutations are synchronous; callers never await between reading and
writing the set.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable

from loguru import logger

from layersync.comms.event_bus import EventBus
from layersync.layers.exporters.geojson import export_geojson
from layersync.layers.layer import FeatureCollection


@dataclass
class LayerView:
    """Snapshot of one layer as seen by a renderer."""

    name: str
    collection: FeatureCollection | None = None
    loading: bool = False
    error: str | None = None
    cql_filter: str | None = None
    version: int = 0

    @property
    def active(self) -> bool:
        return self.collection is not None

    @property
    def feature_count(self) -> int:
        return self.collection.feature_count if self.collection is not None else 0

    def to_dict(self, include_features: bool = True) -> dict:
        out = {
            "name": self.name,
            "active": self.active,
            "loading": self.loading,
            "error": self.error,
            "filter": self.cql_filter,
            "version": self.version,
            "feature_count": self.feature_count,
        }
        if include_features and self.collection is not None:
            out["geojson"] = export_geojson(self.collection)
        return out


class ActiveLayerSet:
    """Registry of the layers currently on the map."""

    def __init__(self, bus: EventBus | None = None) -> None:
        self._bus = bus
        self._collections: dict[str, FeatureCollection] = {}
        self._loading: set[str] = set()
        self._errors: dict[str, str] = {}
        self._filters: dict[str, str] = {}
        self._versions: dict[str, int] = {}

    def _bump(self, name: str) -> int:
        self._versions[name] = self._versions.get(name, 0) + 1
        return self._versions[name]

    def _publish(self, event_type: str, data: dict) -> None:
        if self._bus is not None:
            self._bus.publish(event_type, data)

    # -- collections -----------------------------------------------------

    def set_collection(self, name: str, collection: FeatureCollection) -> None:
        """Replace the features displayed for ``name`` and clear its error."""
        self._collections[name] = collection
        self._errors.pop(name, None)
        version = self._bump(name)
        logger.debug(f"Layer {name} updated: {collection.feature_count} features (v{version})")
        self._publish("layer_loaded", {
            "name": name,
            "version": version,
            "feature_count": collection.feature_count,
            "temporal_key": collection.metadata.get("temporal_key"),
            "from_cache": bool(collection.metadata.get("from_cache")),
        })

    def remove(self, name: str) -> bool:
        """Drop a layer's collection, filter, error and loading flag.

        Returns:
            True if the layer was active.
        """
        was_active = name in self._collections
        self._collections.pop(name, None)
        self._filters.pop(name, None)
        self._errors.pop(name, None)
        self._loading.discard(name)
        if was_active:
            version = self._bump(name)
            self._publish("layer_removed", {"name": name, "version": version})
        return was_active

    def get(self, name: str) -> FeatureCollection | None:
        return self._collections.get(name)

    def is_active(self, name: str) -> bool:
        return name in self._collections

    def active_names(self) -> list[str]:
        return list(self._collections)

    # -- loading / errors / filters -------------------------------------

    def mark_loading(self, names: str | Iterable[str]) -> None:
        self._set_loading(names, True)

    def clear_loading(self, names: str | Iterable[str]) -> None:
        self._set_loading(names, False)

    def _set_loading(self, names: str | Iterable[str], loading: bool) -> None:
        if isinstance(names, str):
            names = [names]
        changed = []
        for name in names:
            if loading and name not in self._loading:
                self._loading.add(name)
                changed.append(name)
            elif not loading and name in self._loading:
                self._loading.discard(name)
                changed.append(name)
        if changed:
            self._publish("loading_changed", {"names": changed, "loading": loading})

    def is_loading(self, name: str) -> bool:
        return name in self._loading

    @property
    def loading(self) -> frozenset[str]:
        return frozenset(self._loading)

    def set_error(self, name: str, message: str | None) -> None:
        if message is None:
            self._errors.pop(name, None)
            return
        self._errors[name] = message
        self._publish("layer_error", {"name": name, "error": message})

    def error(self, name: str) -> str | None:
        return self._errors.get(name)

    def set_filter(self, name: str, cql_filter: str | None) -> None:
        if cql_filter:
            self._filters[name] = cql_filter
        else:
            self._filters.pop(name, None)

    def filter(self, name: str) -> str | None:
        return self._filters.get(name)

    def version(self, name: str) -> int:
        return self._versions.get(name, 0)

    # -- views -----------------------------------------------------------

    def view(self, name: str) -> LayerView:
        return LayerView(
            name=name,
            collection=self._collections.get(name),
            loading=name in self._loading,
            error=self._errors.get(name),
            cql_filter=self._filters.get(name),
            version=self._versions.get(name, 0),
        )

    def views(self) -> list[LayerView]:
        """Views of every layer that is active, loading or failed."""
        names = list(self._collections)
        for name in list(self._loading) + list(self._errors):
            if name not in names:
                names.append(name)
        return [self.view(name) for name in names]

    def to_dict(self, include_features: bool = True) -> dict:
        return {view.name: view.to_dict(include_features) for view in self.views()}

    def __contains__(self, name: object) -> bool:
        return name in self._collections

    def __len__(self) -> int:
        return len(self._collections)
