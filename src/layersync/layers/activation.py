"""LayerActivationOrchestrator — turn layer groups on and off.

A group is one or more layers toggled together (e.g. surface and
groundwater monitoring sites). Activating a group queries every member
concurrently; one member failing never prevents the others from being
displayed. The temporal layer is resolved through the TemporalController so
its slices share the result cache with the time slider.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Iterable, Optional

from loguru import logger

from layersync.comms.event_bus import EventBus
from layersync.layers.catalog import LayerCatalog, LayerGroup
from layersync.layers.layer import FeatureCollection
from layersync.layers.state import ActiveLayerSet
from layersync.timeline.keys import normalize_temporal_key
from layersync.wfs.cancellation import CancelToken
from layersync.wfs.errors import Cancelled, MissingPrecondition


@dataclass
class ActivationReport:
    """Outcome of one toggle.

    Attributes:
        group_id: Group that was toggled.
        active: Requested state (True = activate).
        loaded: Layer name -> feature count for every member merged.
        failed: Layer name -> error message for every member that failed.
        removed: Layers removed by a deactivation.
        skipped: Nothing to do (already active / already inactive).
        cancelled: The activation was superseded by a deactivation.
    """

    group_id: str
    active: bool
    loaded: dict[str, int] = field(default_factory=dict)
    failed: dict[str, str] = field(default_factory=dict)
    removed: list[str] = field(default_factory=list)
    skipped: bool = False
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return not self.failed and not self.cancelled

    def to_dict(self) -> dict:
        return {
            "group_id": self.group_id,
            "active": self.active,
            "loaded": dict(self.loaded),
            "failed": dict(self.failed),
            "removed": list(self.removed),
            "skipped": self.skipped,
            "cancelled": self.cancelled,
        }


class LayerActivationOrchestrator:
    """Activates and deactivates catalog groups against an ActiveLayerSet."""

    def __init__(
        self,
        client,
        catalog: LayerCatalog,
        layers: ActiveLayerSet,
        temporal=None,
        index=None,
        *,
        max_features: int = 5000,
        bus: Optional[EventBus] = None,
    ) -> None:
        self.client = client
        self.catalog = catalog
        self.layers = layers
        self.temporal = temporal
        self.index = index
        self.max_features = max_features
        self._bus = bus
        self._inflight: dict[str, asyncio.Task] = {}
        self._tokens: dict[str, CancelToken] = {}

    def is_temporal(self, name: str) -> bool:
        return self.temporal is not None and name == self.temporal.layer_name

    def in_flight(self) -> list[str]:
        return list(self._inflight)

    async def toggle(
        self,
        group: LayerGroup | str | Iterable[str],
        activate: bool,
        temporal_key: object = None,
        max_features: int | None = None,
    ) -> ActivationReport:
        """Activate or deactivate every layer of ``group``.

        Activating a group that is already displayed is skipped, unless
        ``temporal_key`` names another slice of its temporal layer; the
        cursor then moves to that key immediately.

        Raises:
            KeyError: ``group`` is neither a group id nor a catalog layer.
        """
        resolved = self.catalog.resolve_group(group)
        if activate:
            report = await self._activate(resolved, temporal_key, max_features)
        else:
            report = self._deactivate(resolved)
        if self._bus is not None and not report.skipped:
            self._bus.publish("activation_complete", report.to_dict())
        return report

    async def activate_all(self, max_features: int = 500) -> list[ActivationReport]:
        """Load every catalog group concurrently."""
        groups = self.catalog.groups()
        logger.info(f"Loading {len(groups)} layer groups")
        reports = await asyncio.gather(
            *(self.toggle(g, True, max_features=max_features) for g in groups)
        )
        failed = sum(len(r.failed) for r in reports)
        if failed:
            logger.warning(f"{failed} layers could not be loaded")
        return list(reports)

    # ------------------------------------------------------------------
    # Activation
    # ------------------------------------------------------------------

    async def _activate(
        self,
        group: LayerGroup,
        temporal_key: object,
        max_features: int | None,
    ) -> ActivationReport:
        inflight = self._inflight.get(group.group_id)
        if inflight is not None:
            logger.debug(f"Activation of {group.group_id} already in flight, waiting for it")
            return await asyncio.shield(inflight)

        if all(self.layers.is_active(n) and not self.layers.is_loading(n) for n in group.names):
            if self._moves_temporal_cursor(group, temporal_key):
                return await self._move_temporal_cursor(group, temporal_key)
            logger.debug(f"Group {group.group_id} already active")
            return ActivationReport(group.group_id, True, skipped=True)

        token = CancelToken(label=group.group_id)
        self._tokens[group.group_id] = token
        task = asyncio.ensure_future(self._load_group(group, temporal_key, max_features, token))
        self._inflight[group.group_id] = task
        try:
            return await asyncio.shield(task)
        finally:
            if self._inflight.get(group.group_id) is task:
                del self._inflight[group.group_id]
            if self._tokens.get(group.group_id) is token:
                del self._tokens[group.group_id]

    def _temporal_busy(self, name: str) -> bool:
        # The controller owns the loading flag while a newer cursor move is pending
        return self.is_temporal(name) and self.temporal.is_updating

    def _moves_temporal_cursor(self, group: LayerGroup, temporal_key: object) -> bool:
        if temporal_key is None or not any(self.is_temporal(n) for n in group.names):
            return False
        return normalize_temporal_key(temporal_key) != self.temporal.current_key

    async def _move_temporal_cursor(self, group: LayerGroup, temporal_key: object) -> ActivationReport:
        """Group already displayed, but for another slice: switch it without debounce."""
        name = self.temporal.layer_name
        report = ActivationReport(group.group_id, True)
        if normalize_temporal_key(temporal_key) is None:
            report.failed[name] = f"Invalid temporal key: {temporal_key!r}"
            return report

        if await self.temporal.force_update(temporal_key):
            report.loaded[name] = self.layers.get(name).feature_count
        elif self.temporal.last_error:
            report.failed[name] = self.temporal.last_error
        else:
            report.cancelled = True
        logger.info(f"Group {group.group_id} moved to {self.temporal.current_key}")
        return report

    async def _load_group(
        self,
        group: LayerGroup,
        temporal_key: object,
        max_features: int | None,
        token: CancelToken,
    ) -> ActivationReport:
        names = list(group.names)
        report = ActivationReport(group.group_id, True)
        limit = max_features or self.max_features

        self.layers.mark_loading(names)
        try:
            outcomes = await asyncio.gather(
                *(self._load_layer(name, temporal_key, limit, token) for name in names),
                return_exceptions=True,
            )
        finally:
            self.layers.clear_loading([n for n in names if not self._temporal_busy(n)])

        for name, outcome in zip(names, outcomes):
            if isinstance(outcome, (Cancelled, asyncio.CancelledError)) or token.cancelled:
                report.cancelled = True
                continue
            if isinstance(outcome, BaseException):
                logger.error(f"Error loading layer {name}: {outcome}")
                report.failed[name] = str(outcome) or type(outcome).__name__
                self.layers.set_error(name, report.failed[name])
                continue
            self.layers.set_collection(name, outcome)
            report.loaded[name] = outcome.feature_count

        if report.cancelled:
            logger.debug(f"Activation of {group.group_id} cancelled")
        else:
            logger.info(
                f"Group {group.group_id}: {len(report.loaded)} loaded, {len(report.failed)} failed"
            )
        return report

    async def _load_layer(
        self,
        name: str,
        temporal_key: object,
        limit: int,
        token: CancelToken,
    ) -> FeatureCollection:
        if self.is_temporal(name):
            key = temporal_key or self.temporal.current_key
            if key is None and self.index is not None:
                key = self.index.selected
            if key is None:
                raise MissingPrecondition(f"No temporal key selected for {name}")
            return await token.run(self.temporal.activate(key))

        self.layers.set_filter(name, None)
        return await self.client.fetch_layer(name, limit=limit, cancel_token=token)

    # ------------------------------------------------------------------
    # Deactivation
    # ------------------------------------------------------------------

    def _deactivate(self, group: LayerGroup) -> ActivationReport:
        token = self._tokens.get(group.group_id)
        if token is not None:
            token.cancel()

        if any(self.is_temporal(n) for n in group.names):
            self.temporal.suspend()

        removed = [name for name in group.names if self.layers.remove(name)]
        report = ActivationReport(group.group_id, False, removed=removed)
        if not removed and token is None:
            report.skipped = True
        else:
            logger.info(f"Group {group.group_id} deactivated")
        return report
