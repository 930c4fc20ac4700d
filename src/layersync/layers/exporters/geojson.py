"""Export FeatureCollection to a GeoJSON dict (RFC 7946) for renderers."""

from __future__ import annotations

from layersync.layers.layer import Feature, FeatureCollection


def export_geojson(collection: FeatureCollection, include_metadata: bool = False) -> dict:
    """Export a FeatureCollection to a GeoJSON FeatureCollection dict.

    Args:
        collection: The collection to export.
        include_metadata: Add the engine metadata under ``_metadata``.

    Returns:
        Dict representing a valid GeoJSON FeatureCollection.
    """
    out = {
        "type": "FeatureCollection",
        "features": [_feature_to_geojson(f) for f in collection.features],
    }
    if collection.total_features is not None:
        out["totalFeatures"] = collection.total_features
    if include_metadata and collection.metadata:
        out["_metadata"] = dict(collection.metadata)
    return out


def _feature_to_geojson(feature: Feature) -> dict:
    """Convert a Feature to a GeoJSON Feature dict."""
    out = {
        "type": "Feature",
        "geometry": feature.geometry,
        "properties": dict(feature.properties),
    }
    if feature.feature_id is not None:
        out["id"] = feature.feature_id
    return out
