"""SyncEngine — wires the layer synchronization components together.

One engine per map session: it owns the query client, the Active Layer Set
and the temporal machinery, and exposes the three entry points a map client
needs (toggle a group, move the time cursor, query a click).
"""

from __future__ import annotations

from typing import Iterable, Optional

from loguru import logger

from layersync.comms.event_bus import EventBus
from layersync.config import Settings, get_settings
from layersync.layers.activation import ActivationReport, LayerActivationOrchestrator
from layersync.layers.catalog import LayerCatalog
from layersync.layers.state import ActiveLayerSet
from layersync.query.click import AggregateResult, ClickQueryAggregator
from layersync.timeline.cache import ResultCache
from layersync.timeline.controller import TemporalController
from layersync.timeline.index import TemporalKeyIndex
from layersync.wfs.client import WfsClient
from layersync.wfs.predicates import LatLng
from layersync.wfs.unique_values import UniqueValuesCache


class SyncEngine:
    """Facade over the engine components.

    Args:
        settings: Engine settings (defaults to ``get_settings()``).
        client: Query client; built from settings when omitted.
        catalog: Layer catalog; loaded from ``settings.catalog_path`` or the
            bundled default when omitted.
        bus: EventBus receiving every state change.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        client=None,
        catalog: Optional[LayerCatalog] = None,
        bus: Optional[EventBus] = None,
    ) -> None:
        self.settings = settings or get_settings()
        s = self.settings

        self._owns_client = client is None
        self.client = client or WfsClient.from_settings(s)
        if catalog is None:
            catalog = LayerCatalog.from_file(s.catalog_path) if s.catalog_path else LayerCatalog.default()
        self.catalog = catalog
        self.bus = bus or EventBus()

        self.layers = ActiveLayerSet(bus=self.bus)
        self.cache = ResultCache(capacity=s.cache_capacity)
        self.unique_values = UniqueValuesCache(ttl=s.unique_values_ttl)

        self.temporal = TemporalController(
            self.client,
            self.cache,
            self.layers,
            s.temporal_layer_name,
            s.temporal_field,
            debounce=s.debounce_seconds,
            rapid_threshold=s.rapid_threshold_seconds,
            max_features=s.max_features,
            bus=self.bus,
        )
        self.index = TemporalKeyIndex(
            self.client,
            s.temporal_layer_name,
            s.temporal_field,
            unique_values=self.unique_values,
            limit=s.unique_values_limit,
        )
        self.orchestrator = LayerActivationOrchestrator(
            self.client,
            self.catalog,
            self.layers,
            temporal=self.temporal,
            index=self.index,
            max_features=s.max_features,
            bus=self.bus,
        )
        self.click = ClickQueryAggregator(
            self.client,
            self.catalog,
            self.layers,
            temporal=self.temporal,
            tolerance=s.click_tolerance_degrees,
            query_limit=s.click_query_limit,
            display_limit=s.click_display_limit,
        )

    async def __aenter__(self) -> "SyncEngine":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self.temporal.aclose()
        if self._owns_client:
            await self.client.aclose()
        logger.info("Sync engine closed")

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def load_timeline(self) -> list[str]:
        """Load the available temporal keys; selects the latest by default."""
        return await self.index.load()

    async def toggle(
        self,
        group,
        active: bool,
        temporal_key: object = None,
    ) -> ActivationReport:
        return await self.orchestrator.toggle(group, active, temporal_key)

    def set_temporal_key(self, key: object) -> None:
        """Move the time cursor (debounced). Selects the key in the index."""
        if self.index.is_valid(key):
            self.index.select(key)
        self.temporal.request(key)

    async def query_at_point(
        self,
        lat: float,
        lng: float,
        layers: Optional[Iterable[str]] = None,
    ) -> AggregateResult:
        return await self.click.query_at_point(LatLng(lat, lng), layers)

    def download_url(self, layer_name: str, output_format: str = "shape-zip") -> str:
        """Export URL for a layer, with its active filter applied."""
        return self.client.download_url(
            layer_name,
            output_format=output_format,
            cql_filter=self.layers.filter(layer_name),
        )
