"""ClickQueryAggregator — "what is here?" across every active layer.

A map click becomes one spatial query per active layer, run concurrently.
Points and lines are matched with a small bounding box around the click,
polygons with an exact intersection test. Results are grouped per layer;
a layer that fails is reported as such without hiding the others.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Optional

from loguru import logger

from layersync.layers.catalog import LayerCatalog
from layersync.layers.exporters.geojson import export_geojson
from layersync.layers.layer import Feature, FeatureCollection
from layersync.layers.state import ActiveLayerSet
from layersync.query.display import format_properties, layer_display_name
from layersync.timeline.keys import temporal_filter
from layersync.wfs.predicates import LatLng, build_predicate, combine_filters

DEFAULT_GEOMETRY_KIND = "polygon"
FAILED_MESSAGE = "Could not retrieve information"


class ClickStatus(str, Enum):
    NO_ACTIVE_LAYERS = "no_active_layers"
    NO_FEATURES = "no_features"
    FOUND = "found"
    FAILED = "failed"


@dataclass
class LayerQueryResult:
    """Features found in one layer.

    ``features`` is capped for display; ``total`` counts every feature the
    query returned.
    """

    layer_name: str
    display_name: str
    features: list[Feature] = field(default_factory=list)
    total: int = 0
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict:
        return {
            "layer_name": self.layer_name,
            "display_name": self.display_name,
            "total": self.total,
            "error": self.error,
            "features": [
                {"id": f.feature_id, "attributes": format_properties(f.properties)}
                for f in self.features
            ],
        }


@dataclass
class AggregateResult:
    point: LatLng
    status: ClickStatus
    layers: list[LayerQueryResult] = field(default_factory=list)
    message: str | None = None

    @property
    def total_features(self) -> int:
        return sum(r.total for r in self.layers if r.ok)

    def per_layer_counts(self) -> dict[str, int]:
        """Feature count of every layer that answered."""
        return {r.layer_name: r.total for r in self.layers if r.ok}

    def errors(self) -> dict[str, str]:
        return {r.layer_name: r.error for r in self.layers if not r.ok}

    def highlight_features(self) -> list[dict]:
        """Displayed features tagged with their layer, for highlighting."""
        return [
            {"layer_name": r.layer_name, "feature": f}
            for r in self.layers
            for f in r.features
        ]

    def to_dict(self) -> dict:
        highlight = FeatureCollection([h["feature"] for h in self.highlight_features()])
        return {
            "lat": self.point.lat,
            "lng": self.point.lng,
            "status": self.status.value,
            "message": self.message,
            "total_features": self.total_features,
            "counts": self.per_layer_counts(),
            "layers": [r.to_dict() for r in self.layers if r.ok and r.total > 0],
            "errors": self.errors(),
            "highlight": export_geojson(highlight),
        }


class ClickQueryAggregator:
    def __init__(
        self,
        client,
        catalog: LayerCatalog,
        layers: ActiveLayerSet,
        temporal=None,
        *,
        tolerance: float = 0.015,
        query_limit: int = 50,
        display_limit: int = 15,
    ) -> None:
        self.client = client
        self.catalog = catalog
        self.layers = layers
        self.temporal = temporal
        self.tolerance = tolerance
        self.query_limit = query_limit
        self.display_limit = display_limit

    def _extra_filter(self, layer_name: str) -> str | None:
        if self.temporal is not None and layer_name == self.temporal.layer_name:
            active = self.layers.filter(layer_name)
            if active:
                return active
            return temporal_filter(self.temporal.current_key, self.temporal.field_name)
        return None

    def build_filter(self, layer_name: str, point: LatLng) -> str:
        descriptor = self.catalog.get(layer_name)
        geometry_kind = descriptor.geometry_kind if descriptor else DEFAULT_GEOMETRY_KIND
        predicate = build_predicate(geometry_kind, point, self.tolerance)
        return combine_filters(predicate, self._extra_filter(layer_name))

    async def _query_layer(self, layer_name: str, point: LatLng) -> FeatureCollection:
        cql_filter = self.build_filter(layer_name, point)
        return await self.client.fetch_layer(layer_name, cql_filter=cql_filter, limit=self.query_limit)

    async def query_at_point(
        self,
        point: LatLng | tuple[float, float],
        active_layers: Optional[Iterable[str]] = None,
    ) -> AggregateResult:
        """Query every active layer at ``point`` and aggregate the results."""
        point = LatLng(*point)
        names = list(active_layers) if active_layers is not None else self.layers.active_names()
        if not names:
            return AggregateResult(point, ClickStatus.NO_ACTIVE_LAYERS)

        logger.debug(f"Click query at {point.lat:.5f},{point.lng:.5f} on {len(names)} layers")
        outcomes = await asyncio.gather(
            *(self._query_layer(name, point) for name in names),
            return_exceptions=True,
        )

        results = []
        for name, outcome in zip(names, outcomes):
            display_name = layer_display_name(name, self.catalog.get(name))
            if isinstance(outcome, BaseException):
                logger.error(f"Click query on {name} failed: {outcome}")
                results.append(LayerQueryResult(name, display_name, error=str(outcome) or type(outcome).__name__))
                continue
            results.append(LayerQueryResult(
                name,
                display_name,
                features=outcome.features[: self.display_limit],
                total=outcome.feature_count,
            ))

        if not any(r.ok for r in results):
            return AggregateResult(point, ClickStatus.FAILED, results, message=FAILED_MESSAGE)
        if sum(r.total for r in results if r.ok) == 0:
            return AggregateResult(point, ClickStatus.NO_FEATURES, results)
        return AggregateResult(point, ClickStatus.FOUND, results)
