"""layersync — layer synchronization engine for WFS-backed map clients.

Turns map interactions (layer toggles, a temporal slider, map clicks) into
CQL-filtered WFS queries, runs them concurrently with per-layer failure
isolation, and keeps a bounded cache of temporal slices.
"""

__version__ = "0.1.0"
