"""Feature and FeatureCollection dataclasses for query results.

All coordinates are kept in GeoJSON convention: [lng, lat] or [lng, lat, alt].
Geometry dicts are passed through untouched; the engine never inspects them
beyond their ``type``.
"""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class Feature:
    """A single feature (point, line, polygon) returned by the feature service.

    Attributes:
        feature_id: Server-side id (``layer.123``) or None.
        geometry: GeoJSON geometry dict, or None for attribute-only results.
        properties: Attribute map, insertion-ordered as received.
    """

    feature_id: str | None
    geometry: dict | None
    properties: dict

    @property
    def geometry_type(self) -> str:
        return (self.geometry or {}).get("type", "")


@dataclass
class FeatureCollection:
    """An ordered set of features returned by one query.

    Attributes:
        features: Features in server order.
        total_features: Total match count reported by the server (paginated
            responses), or None when absent.
        metadata: Engine bookkeeping (temporal key, filter, from_cache...).
        warnings: Diagnostics raised while decoding the response.
    """

    features: list[Feature] = field(default_factory=list)
    total_features: int | None = None
    metadata: dict = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.features)

    @property
    def feature_count(self) -> int:
        return len(self.features)

    def with_metadata(self, **extra) -> "FeatureCollection":
        """Return a copy sharing the features, with merged metadata."""
        return FeatureCollection(
            features=self.features,
            total_features=self.total_features,
            metadata={**self.metadata, **extra},
            warnings=list(self.warnings),
        )
