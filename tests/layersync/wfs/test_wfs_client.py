"""Unit tests for WfsClient against an httpx.MockTransport feature service."""

from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from layersync.config import Settings
from layersync.wfs.cancellation import CancelToken
from layersync.wfs.client import WfsClient
from layersync.wfs.errors import (
    Cancelled,
    NetworkFailure,
    NetworkTimeout,
    QueryError,
    ServiceError,
)
from layersync.wfs.retry import RetryPolicy

pytestmark = pytest.mark.unit

BASE_URL = "http://geo.test/geoserver/Hidalgo/wfs"
LAYER = "Hidalgo:00_Municipios"


def _feature_collection(n: int, **extra) -> dict:
    return {
        "type": "FeatureCollection",
        "features": [
            {
                "type": "Feature",
                "id": f"municipios.{i}",
                "geometry": {"type": "Point", "coordinates": [-98.7, 20.1]},
                "properties": {"nombre": f"m{i}"},
            }
            for i in range(n)
        ],
        **extra,
    }


def _json_response(payload, status: int = 200) -> httpx.Response:
    return httpx.Response(
        status,
        content=json.dumps(payload).encode(),
        headers={"content-type": "application/json;charset=UTF-8"},
    )


def _client(handler, **kwargs) -> WfsClient:
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return WfsClient(BASE_URL, http_client=http, **kwargs)


class TestRequestParameters:
    def test_base_envelope(self):
        params = WfsClient(BASE_URL).build_params(LAYER)
        assert params == {
            "service": "WFS",
            "version": "1.0.0",
            "request": "GetFeature",
            "typeName": LAYER,
            "outputFormat": "application/json",
            "srsName": "EPSG:4326",
            "maxFeatures": "5000",
        }

    def test_limit_is_capped(self):
        params = WfsClient(BASE_URL).build_params(LAYER, limit=50_000)
        assert params["maxFeatures"] == "10000"

    def test_start_index_only_for_positive_offset(self):
        client = WfsClient(BASE_URL)
        assert "startIndex" not in client.build_params(LAYER, offset=0)
        assert client.build_params(LAYER, offset=200)["startIndex"] == "200"

    def test_cql_filter_only_when_given(self):
        client = WfsClient(BASE_URL)
        assert "cql_filter" not in client.build_params(LAYER)
        assert "cql_filter" not in client.build_params(LAYER, cql_filter="  ")
        assert client.build_params(LAYER, cql_filter="a=1")["cql_filter"] == "a=1"

    def test_download_url(self):
        url = httpx.URL(WfsClient(BASE_URL).download_url(LAYER, cql_filter="Quincena='2024-03-15'"))
        assert url.params["outputFormat"] == "shape-zip"
        assert url.params["typeName"] == LAYER
        assert url.params["request"] == "GetFeature"
        assert url.params["cql_filter"] == "Quincena='2024-03-15'"

    def test_download_url_requires_layer_name(self):
        with pytest.raises(ValueError):
            WfsClient(BASE_URL).download_url("")

    def test_from_settings(self):
        settings = Settings(geoserver_url="http://geo.test/", geoserver_workspace="Hidalgo", wfs_timeout=12)
        client = WfsClient.from_settings(settings)
        assert client.base_url == BASE_URL
        assert client.timeout == 12
        assert client.retry.max_attempts == settings.retry_max_attempts


class TestFetchLayer:
    @pytest.mark.anyio
    async def test_fetch_parses_features(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return _json_response(_feature_collection(3, totalFeatures=3))

        async with _client(handler) as client:
            fc = await client.fetch_layer(LAYER, cql_filter="Quincena='2024-03-15'", limit=50)

        assert fc.feature_count == 3
        assert fc.total_features == 3
        assert fc.features[0].feature_id == "municipios.0"
        assert fc.metadata["layer_name"] == LAYER
        assert fc.metadata["filter"] == "Quincena='2024-03-15'"
        params = seen[0].url.params
        assert params["typeName"] == LAYER
        assert params["maxFeatures"] == "50"
        assert params["cql_filter"] == "Quincena='2024-03-15'"

    @pytest.mark.anyio
    async def test_missing_features_is_empty_with_warning(self):
        async with _client(lambda r: _json_response({"type": "FeatureCollection"})) as client:
            fc = await client.fetch_layer(LAYER)
        assert fc.feature_count == 0
        assert fc.warnings

    @pytest.mark.anyio
    async def test_http_error_status_is_service_error(self):
        async with _client(lambda r: httpx.Response(404, text="not found")) as client:
            with pytest.raises(ServiceError) as exc_info:
                await client.fetch_layer(LAYER)
        assert exc_info.value.status == 404
        assert exc_info.value.layer_name == LAYER
        assert "typeName" in exc_info.value.url

    @pytest.mark.anyio
    async def test_non_json_body_is_service_error(self):
        def handler(request):
            return httpx.Response(200, text="<ServiceExceptionReport/>", headers={"content-type": "text/xml"})

        async with _client(handler) as client:
            with pytest.raises(ServiceError):
                await client.fetch_layer(LAYER)

    @pytest.mark.anyio
    async def test_invalid_json_is_service_error(self):
        def handler(request):
            return httpx.Response(200, content=b"{not json", headers={"content-type": "application/json"})

        async with _client(handler) as client:
            with pytest.raises(ServiceError):
                await client.fetch_layer(LAYER)

    @pytest.mark.anyio
    async def test_exception_report_with_200_is_service_error(self):
        payload = {"exceptions": [{"code": "InvalidParameterValue", "text": "Unknown type"}]}
        async with _client(lambda r: _json_response(payload)) as client:
            with pytest.raises(ServiceError, match="Unknown type"):
                await client.fetch_layer(LAYER)

    @pytest.mark.anyio
    async def test_transport_error_is_network_failure(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        async with _client(handler) as client:
            with pytest.raises(NetworkFailure):
                await client.fetch_layer(LAYER)

    @pytest.mark.anyio
    async def test_timeout_is_network_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        async with _client(handler) as client:
            with pytest.raises(NetworkTimeout):
                await client.fetch_layer(LAYER)

    @pytest.mark.anyio
    async def test_slow_server_times_out(self):
        async def handler(request):
            await asyncio.sleep(1)
            return _json_response(_feature_collection(1))

        async with _client(handler, timeout=0.05) as client:
            with pytest.raises(NetworkTimeout):
                await client.fetch_layer(LAYER)

    @pytest.mark.anyio
    async def test_failures_share_query_error_base(self):
        async with _client(lambda r: httpx.Response(500)) as client:
            with pytest.raises(QueryError):
                await client.fetch_layer(LAYER)

    @pytest.mark.anyio
    async def test_empty_layer_name_rejected(self):
        async with _client(lambda r: _json_response(_feature_collection(0))) as client:
            with pytest.raises(ValueError):
                await client.fetch_layer("")


class TestCancellation:
    @pytest.mark.anyio
    async def test_cancel_in_flight_raises_cancelled(self):
        started = asyncio.Event()

        async def handler(request):
            started.set()
            await asyncio.sleep(5)
            return _json_response(_feature_collection(1))

        token = CancelToken("test")
        async with _client(handler) as client:
            task = asyncio.ensure_future(client.fetch_layer(LAYER, cancel_token=token))
            await started.wait()
            token.cancel()
            with pytest.raises(Cancelled):
                await task

    @pytest.mark.anyio
    async def test_already_cancelled_token_sends_nothing(self):
        calls = []

        def handler(request):
            calls.append(request)
            return _json_response(_feature_collection(1))

        token = CancelToken()
        token.cancel()
        async with _client(handler) as client:
            with pytest.raises(Cancelled):
                await client.fetch_layer(LAYER, cancel_token=token)
        assert calls == []

    @pytest.mark.anyio
    async def test_cancelled_is_never_retried(self):
        calls = []

        def handler(request):
            calls.append(request)
            return _json_response(_feature_collection(1))

        token = CancelToken()
        token.cancel()
        retry = RetryPolicy(max_attempts=3, backoff_base=0, backoff_max=0)
        async with _client(handler, retry=retry) as client:
            with pytest.raises(Cancelled):
                await client.fetch_layer(LAYER, cancel_token=token)
        assert calls == []


class TestRetry:
    @pytest.mark.anyio
    async def test_server_error_is_retried(self):
        responses = [httpx.Response(503), _json_response(_feature_collection(2))]

        def handler(request):
            return responses.pop(0)

        retry = RetryPolicy(max_attempts=3, backoff_base=0, backoff_max=0)
        async with _client(handler, retry=retry) as client:
            fc = await client.fetch_layer(LAYER)
        assert fc.feature_count == 2
        assert responses == []

    @pytest.mark.anyio
    async def test_cancel_during_backoff_settles_at_once(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(503)

        token = CancelToken("backoff")
        retry = RetryPolicy(max_attempts=3, backoff_base=1.0, backoff_max=8.0)
        loop = asyncio.get_running_loop()
        async with _client(handler, retry=retry) as client:
            task = asyncio.ensure_future(client.fetch_layer(LAYER, cancel_token=token))
            await asyncio.sleep(0.05)
            cancelled_at = loop.time()
            token.cancel()
            with pytest.raises(Cancelled):
                await asyncio.wait_for(task, timeout=2)
            assert loop.time() - cancelled_at < 0.2
        assert len(calls) == 1

    @pytest.mark.anyio
    async def test_client_error_is_not_retried(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(400)

        retry = RetryPolicy(max_attempts=3, backoff_base=0, backoff_max=0)
        async with _client(handler, retry=retry) as client:
            with pytest.raises(ServiceError):
                await client.fetch_layer(LAYER)
        assert len(calls) == 1


class TestUniqueValues:
    @pytest.mark.anyio
    async def test_distinct_normalized_sorted(self):
        seen = []
        payload = {
            "type": "FeatureCollection",
            "features": [
                {"type": "Feature", "geometry": None, "properties": {"Quincena": v}}
                for v in [
                    "2024-03-15Z",
                    "2024-01-15T00:00:00.000Z",
                    "2024-03-15",
                    None,
                    "",
                    "2024-02-29T00:00:00",
                ]
            ],
        }

        def handler(request):
            seen.append(request)
            return _json_response(payload)

        async with _client(handler) as client:
            values = await client.fetch_unique_values("Hidalgo:04_sequias", "Quincena")

        assert values == ["2024-01-15", "2024-02-29", "2024-03-15"]
        assert seen[0].url.params["propertyName"] == "Quincena"

    @pytest.mark.anyio
    async def test_errors_propagate(self):
        async with _client(lambda r: httpx.Response(500)) as client:
            with pytest.raises(ServiceError):
                await client.fetch_unique_values("Hidalgo:04_sequias", "Quincena")


class TestAvailability:
    @pytest.mark.anyio
    async def test_available(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, text="<WFS_Capabilities/>")

        async with _client(handler) as client:
            assert await client.check_availability() is True
        assert seen[0].url.params["request"] == "GetCapabilities"

    @pytest.mark.anyio
    async def test_unavailable_on_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        async with _client(handler) as client:
            assert await client.check_availability() is False

    @pytest.mark.anyio
    async def test_unavailable_on_bad_status(self):
        async with _client(lambda r: httpx.Response(503)) as client:
            assert await client.check_availability() is False
