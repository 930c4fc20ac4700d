"""Shared fixtures for layersync tests."""

from __future__ import annotations

import pytest

from layersync.comms.event_bus import EventBus
from layersync.layers.catalog import LayerCatalog
from layersync.layers.state import ActiveLayerSet
from layersync.timeline.cache import ResultCache
from tests.layersync.fakes import TEMPORAL_LAYER, FakeWfsClient


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def fake_client():
    return FakeWfsClient()


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def layer_set(bus):
    return ActiveLayerSet(bus=bus)


@pytest.fixture
def result_cache():
    return ResultCache(capacity=10)


@pytest.fixture
def catalog():
    return LayerCatalog.from_dict({
        "layers": [
            {"name": "Hidalgo:00_Municipios", "geometry_kind": "polygon", "display_name": "Municipios"},
            {"name": "Hidalgo:00_Localidades", "geometry_kind": "point", "display_name": "Localidades"},
            {"name": "Hidalgo:01_spsitios", "geometry_kind": "point", "group": "sitios"},
            {"name": "Hidalgo:01_sbsitios", "geometry_kind": "point", "group": "sitios"},
            {"name": "Hidalgo:02_rios", "geometry_kind": "line", "display_name": "Ríos"},
            {"name": TEMPORAL_LAYER, "geometry_kind": "polygon", "display_name": "Sequías"},
        ],
        "groups": [
            {
                "group_id": "sitios",
                "display_name": "Sitios de monitoreo",
                "names": ["Hidalgo:01_spsitios", "Hidalgo:01_sbsitios"],
            },
        ],
    })
