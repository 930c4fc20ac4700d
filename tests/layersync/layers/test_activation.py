"""Unit tests for LayerActivationOrchestrator."""

from __future__ import annotations

import asyncio

import pytest

from layersync.layers.activation import LayerActivationOrchestrator
from layersync.layers.state import ActiveLayerSet
from layersync.timeline.cache import ResultCache
from layersync.timeline.controller import TemporalController
from layersync.timeline.index import TemporalKeyIndex
from layersync.timeline.keys import temporal_filter
from layersync.wfs.errors import NetworkFailure
from tests.layersync.fakes import TEMPORAL_LAYER, FakeWfsClient, drain_queue, make_collection

pytestmark = pytest.mark.unit

SP, SB = "Hidalgo:01_spsitios", "Hidalgo:01_sbsitios"
MUN = "Hidalgo:00_Municipios"


def _orchestrator(client, catalog, layers=None, with_temporal=True, index=None, bus=None):
    layers = layers or ActiveLayerSet()
    temporal = None
    if with_temporal:
        temporal = TemporalController(
            client, ResultCache(), layers, TEMPORAL_LAYER, "Quincena", debounce=0.01
        )
    return LayerActivationOrchestrator(client, catalog, layers, temporal, index, bus=bus)


async def _wait_for_calls(client, n):
    for _ in range(400):
        if len(client.calls) >= n:
            return
        await asyncio.sleep(0.005)
    raise AssertionError(f"expected {n} fetches, saw {len(client.calls)}")


class TestActivate:
    @pytest.mark.anyio
    async def test_group_members_load_together(self, catalog):
        client = FakeWfsClient(responses={SP: make_collection(3), SB: make_collection(4)})
        orch = _orchestrator(client, catalog)

        report = await orch.toggle("sitios", True)

        assert report.ok
        assert report.loaded == {SP: 3, SB: 4}
        assert orch.layers.active_names() == [SP, SB]
        assert orch.layers.loading == frozenset()
        assert sorted(c["layer_name"] for c in client.calls) == [SB, SP]

    @pytest.mark.anyio
    async def test_partial_failure_is_isolated(self, catalog):
        client = FakeWfsClient(responses={
            SP: NetworkFailure("connection refused"),
            SB: make_collection(4),
        })
        orch = _orchestrator(client, catalog)

        report = await orch.toggle(SB, True)

        assert report.group_id == "sitios"
        assert report.loaded == {SB: 4}
        assert report.failed == {SP: "connection refused"}
        assert not report.ok
        assert orch.layers.is_active(SB)
        assert not orch.layers.is_active(SP)
        assert orch.layers.error(SP) == "connection refused"
        assert orch.layers.loading == frozenset()

    @pytest.mark.anyio
    async def test_middle_layer_failure_in_three_layer_group(self, catalog):
        loc, rios = "Hidalgo:00_Localidades", "Hidalgo:02_rios"
        client = FakeWfsClient(responses={
            MUN: make_collection(2),
            loc: NetworkFailure("connection reset"),
            rios: make_collection(5),
        })
        orch = _orchestrator(client, catalog)

        report = await orch.toggle([MUN, loc, rios], True)

        assert report.group_id == f"{MUN}+{loc}+{rios}"
        assert report.loaded == {MUN: 2, rios: 5}
        assert report.failed == {loc: "connection reset"}
        assert orch.layers.active_names() == [MUN, rios]
        assert orch.layers.error(loc) == "connection reset"
        assert orch.layers.loading == frozenset()

    @pytest.mark.anyio
    async def test_max_features_is_passed_through(self, catalog):
        client = FakeWfsClient(responses={MUN: make_collection(1)})
        orch = _orchestrator(client, catalog)
        await orch.toggle(MUN, True, max_features=25)
        assert client.calls[0]["limit"] == 25
        assert client.calls[0]["cql_filter"] is None

    @pytest.mark.anyio
    async def test_unknown_group(self, catalog):
        orch = _orchestrator(FakeWfsClient(), catalog)
        with pytest.raises(KeyError):
            await orch.toggle("Hidalgo:nope", True)


class TestIdempotence:
    @pytest.mark.anyio
    async def test_concurrent_activation_shares_the_fetch(self, catalog):
        client = FakeWfsClient(responses={MUN: make_collection(2)}, delays={MUN: 0.05})
        orch = _orchestrator(client, catalog)

        first, second = await asyncio.gather(orch.toggle(MUN, True), orch.toggle(MUN, True))

        assert len(client.calls) == 1
        assert first is second
        assert orch.in_flight() == []

    @pytest.mark.anyio
    async def test_active_group_is_skipped(self, catalog):
        client = FakeWfsClient(responses={MUN: make_collection(2)})
        orch = _orchestrator(client, catalog)
        await orch.toggle(MUN, True)

        report = await orch.toggle(MUN, True)

        assert report.skipped
        assert len(client.calls) == 1

    @pytest.mark.anyio
    async def test_deactivating_inactive_group_is_a_no_op(self, catalog, bus):
        orch = _orchestrator(FakeWfsClient(), catalog, bus=bus)
        q = bus.subscribe()

        report = await orch.toggle(MUN, False)

        assert report.skipped
        assert report.removed == []
        assert drain_queue(q) == []


class TestDeactivate:
    @pytest.mark.anyio
    async def test_deactivate_removes_members(self, catalog):
        client = FakeWfsClient(responses={SP: make_collection(1), SB: make_collection(1)})
        orch = _orchestrator(client, catalog)
        await orch.toggle("sitios", True)

        report = await orch.toggle("sitios", False)

        assert report.removed == [SP, SB]
        assert len(orch.layers) == 0

    @pytest.mark.anyio
    async def test_deactivate_cancels_in_flight_activation(self, catalog):
        client = FakeWfsClient(responses={MUN: make_collection(2)}, delays={MUN: 5})
        orch = _orchestrator(client, catalog)

        pending = asyncio.ensure_future(orch.toggle(MUN, True))
        await _wait_for_calls(client, 1)
        off = await orch.toggle(MUN, False)
        report = await asyncio.wait_for(pending, timeout=2)

        assert not off.skipped
        assert report.cancelled
        assert report.loaded == {}
        assert not orch.layers.is_active(MUN)
        assert not orch.layers.is_loading(MUN)


class TestTemporalLayer:
    @pytest.mark.anyio
    async def test_slice_is_fetched_once_and_cached(self, catalog):
        key_filter = temporal_filter("2024-03-15")
        client = FakeWfsClient(responses={(TEMPORAL_LAYER, key_filter): make_collection(6)})
        orch = _orchestrator(client, catalog)

        first = await orch.toggle(TEMPORAL_LAYER, True, temporal_key="2024-03-15")
        assert first.loaded == {TEMPORAL_LAYER: 6}
        assert orch.layers.filter(TEMPORAL_LAYER) == "Quincena='2024-03-15'"
        assert orch.layers.get(TEMPORAL_LAYER).metadata["from_cache"] is False

        await orch.toggle(TEMPORAL_LAYER, False)
        assert not orch.layers.is_active(TEMPORAL_LAYER)

        second = await orch.toggle(TEMPORAL_LAYER, True)
        assert second.loaded == {TEMPORAL_LAYER: 6}
        assert orch.layers.get(TEMPORAL_LAYER).metadata["from_cache"] is True
        assert client.filters_for(TEMPORAL_LAYER) == ["Quincena='2024-03-15'"]

    @pytest.mark.anyio
    async def test_cursor_move_during_activation_keeps_loading(self, catalog):
        first, newer = "2024-03-15", "2024-03-31"
        client = FakeWfsClient(
            responses={
                (TEMPORAL_LAYER, temporal_filter(first)): make_collection(6),
                (TEMPORAL_LAYER, temporal_filter(newer)): make_collection(3),
            },
            delays={TEMPORAL_LAYER: 0.05},
        )
        orch = _orchestrator(client, catalog)

        pending = asyncio.ensure_future(orch.toggle(TEMPORAL_LAYER, True, temporal_key=first))
        await _wait_for_calls(client, 1)
        orch.temporal.request(newer)
        report = await asyncio.wait_for(pending, timeout=2)

        assert report.cancelled
        assert orch.temporal.is_updating
        assert orch.layers.is_loading(TEMPORAL_LAYER)

        await orch.temporal.drain()
        assert not orch.layers.is_loading(TEMPORAL_LAYER)
        assert orch.layers.get(TEMPORAL_LAYER).metadata["temporal_key"] == newer

    @pytest.mark.anyio
    async def test_new_key_on_active_group_moves_cursor(self, catalog):
        client = FakeWfsClient(responses={
            (TEMPORAL_LAYER, temporal_filter("2024-03-15")): make_collection(6),
            (TEMPORAL_LAYER, temporal_filter("2024-03-31")): make_collection(3),
        })
        orch = _orchestrator(client, catalog)
        await orch.toggle(TEMPORAL_LAYER, True, temporal_key="2024-03-15")

        same = await orch.toggle(TEMPORAL_LAYER, True, temporal_key="2024-03-15T00:00:00Z")
        moved = await orch.toggle(TEMPORAL_LAYER, True, temporal_key="2024-03-31")

        assert same.skipped
        assert not moved.skipped
        assert moved.loaded == {TEMPORAL_LAYER: 3}
        assert orch.temporal.current_key == "2024-03-31"
        assert orch.layers.filter(TEMPORAL_LAYER) == "Quincena='2024-03-31'"
        assert client.filters_for(TEMPORAL_LAYER) == ["Quincena='2024-03-15'", "Quincena='2024-03-31'"]

    @pytest.mark.anyio
    async def test_invalid_key_on_active_group_is_reported(self, catalog):
        client = FakeWfsClient(responses={TEMPORAL_LAYER: make_collection(2)})
        orch = _orchestrator(client, catalog)
        await orch.toggle(TEMPORAL_LAYER, True, temporal_key="2024-03-15")

        report = await orch.toggle(TEMPORAL_LAYER, True, temporal_key="   ")

        assert TEMPORAL_LAYER in report.failed
        assert orch.temporal.current_key == "2024-03-15"
        assert len(client.calls) == 1

    @pytest.mark.anyio
    async def test_index_selection_is_used(self, catalog):
        client = FakeWfsClient(
            responses={TEMPORAL_LAYER: make_collection(2)},
            unique_values=["2024-01-15", "2024-02-15"],
        )
        index = TemporalKeyIndex(client, TEMPORAL_LAYER, "Quincena")
        await index.load()
        orch = _orchestrator(client, catalog, index=index)

        await orch.toggle(TEMPORAL_LAYER, True)

        assert client.filters_for(TEMPORAL_LAYER) == ["Quincena='2024-02-15'"]

    @pytest.mark.anyio
    async def test_missing_key_fails_only_the_temporal_layer(self, catalog):
        client = FakeWfsClient(responses={MUN: make_collection(3)})
        orch = _orchestrator(client, catalog)

        report = await orch.toggle([MUN, TEMPORAL_LAYER], True)

        assert report.loaded == {MUN: 3}
        assert TEMPORAL_LAYER in report.failed
        assert client.filters_for(TEMPORAL_LAYER) == []
        assert orch.layers.error(TEMPORAL_LAYER) == report.failed[TEMPORAL_LAYER]

    @pytest.mark.anyio
    async def test_non_temporal_layers_need_no_key(self, catalog):
        client = FakeWfsClient(responses={MUN: make_collection(3)})
        orch = _orchestrator(client, catalog, with_temporal=False)
        report = await orch.toggle(MUN, True)
        assert report.ok


class TestActivateAll:
    @pytest.mark.anyio
    async def test_all_groups_load_with_small_limit(self, catalog, bus):
        client = FakeWfsClient(responses={"Hidalgo:02_rios": NetworkFailure("down")})
        orch = _orchestrator(client, catalog, with_temporal=False, bus=bus)
        q = bus.subscribe()

        reports = await orch.activate_all()

        assert len(reports) == len(catalog.groups())
        assert {c["limit"] for c in client.calls} == {500}
        assert not orch.layers.is_active("Hidalgo:02_rios")
        assert orch.layers.is_active(MUN)
        completed = [e for e in drain_queue(q) if e["type"] == "activation_complete"]
        assert len(completed) == len(reports)
