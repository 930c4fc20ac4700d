"""Map layer data — feature model, GeoJSON codec, catalog and active set.

Features are kept as GeoJSON-shaped dataclasses; the engine never inspects
geometries beyond their type.
"""

from layersync.layers.layer import Feature, FeatureCollection
from layersync.layers.state import ActiveLayerSet, LayerView

__all__ = ["Feature", "FeatureCollection", "ActiveLayerSet", "LayerView"]
