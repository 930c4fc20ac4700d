"""Decode WFS GeoJSON responses into FeatureCollection.

A response whose ``features`` array is absent or malformed decodes to an
empty collection carrying a warning; individual malformed features are
skipped with a warning. Only a non-object payload is rejected.
"""

from __future__ import annotations

from layersync.layers.layer import Feature, FeatureCollection


class GeoJSONDecodeError(ValueError):
    """The payload is not a GeoJSON object at all."""


def parse_feature_collection(data: object) -> FeatureCollection:
    """Parse a decoded GeoJSON payload into a FeatureCollection.

    Args:
        data: Result of ``json.loads`` on the response body.

    Returns:
        FeatureCollection; ``warnings`` lists anything that was dropped.

    Raises:
        GeoJSONDecodeError: If ``data`` is not a dict.
    """
    if not isinstance(data, dict):
        raise GeoJSONDecodeError(f"Expected a JSON object, got {type(data).__name__}")

    warnings: list[str] = []
    raw_features = data.get("features")

    if data.get("type") == "Feature":
        raw_features = [data]
    elif raw_features is None:
        warnings.append("Response has no 'features' array; treated as empty")
        raw_features = []
    elif not isinstance(raw_features, list):
        warnings.append(
            f"Response 'features' is {type(raw_features).__name__}, not a list; treated as empty"
        )
        raw_features = []

    features: list[Feature] = []
    skipped = 0
    for raw in raw_features:
        feature = _parse_feature(raw)
        if feature is None:
            skipped += 1
            continue
        features.append(feature)
    if skipped:
        warnings.append(f"Skipped {skipped} malformed feature(s)")

    return FeatureCollection(
        features=features,
        total_features=_total_features(data),
        warnings=warnings,
    )


def _parse_feature(raw: object) -> Feature | None:
    """Parse a single GeoJSON Feature dict into a Feature."""
    if not isinstance(raw, dict):
        return None

    geometry = raw.get("geometry")
    if geometry is not None and not isinstance(geometry, dict):
        return None

    properties = raw.get("properties") or {}
    if not isinstance(properties, dict):
        return None

    feature_id = raw.get("id")
    if feature_id is not None and not isinstance(feature_id, str):
        feature_id = str(feature_id)

    return Feature(feature_id=feature_id, geometry=geometry, properties=dict(properties))


def _total_features(data: dict) -> int | None:
    # WFS 1.x reports totalFeatures, WFS 2.0 numberMatched ("unknown" when not counted)
    for key in ("totalFeatures", "numberMatched"):
        value = data.get(key)
        if isinstance(value, bool):
            continue
        if isinstance(value, int):
            return value
        if isinstance(value, str) and value.isdigit():
            return int(value)
    return None
