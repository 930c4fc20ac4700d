"""WfsClient — async query client for a GeoServer WFS endpoint.

Every request shares the same envelope (service/version/output format/CRS)
and goes through one RetryPolicy. Failures are classified into
NetworkTimeout, NetworkFailure and ServiceError; a request aborted through
its CancelToken raises Cancelled instead.

Usage:
    async with WfsClient.from_settings(settings) as client:
        fc = await client.fetch_layer("Hidalgo:00_Municipios")
"""

from __future__ import annotations

import asyncio
from typing import Optional

import httpx
from loguru import logger

from layersync import __version__
from layersync.layers.layer import FeatureCollection
from layersync.layers.parsers.geojson import parse_feature_collection
from layersync.timeline.keys import normalize_temporal_key, sort_keys
from layersync.wfs.cancellation import CancelToken
from layersync.wfs.errors import (
    Cancelled,
    NetworkFailure,
    NetworkTimeout,
    ServiceError,
)
from layersync.wfs.retry import RetryPolicy

_USER_AGENT = f"layersync/{__version__}"

WFS_VERSION = "1.0.0"
OUTPUT_FORMAT = "application/json"
OUTPUT_SRS = "EPSG:4326"
DEFAULT_DOWNLOAD_FORMAT = "shape-zip"


def _validate_layer_name(layer_name: object, operation: str) -> None:
    if not layer_name or not isinstance(layer_name, str):
        raise ValueError(f"{operation}: layer name must be a non-empty string")
    if ":" not in layer_name:
        logger.warning(f"{operation}: layer name {layer_name!r} has no workspace prefix (workspace:layer)")


class WfsClient:
    """Client for WFS GetFeature queries.

    Args:
        base_url: WFS endpoint, e.g. ``http://host/geoserver/ws/wfs``.
        timeout: Per-request timeout in seconds.
        max_features_cap: Hard cap applied to every ``maxFeatures``.
        retry: Retry policy for every query site (default: no retry).
        availability_timeout: Timeout for the GetCapabilities check.
        http_client: Pre-built ``httpx.AsyncClient`` (tests inject one with
            an ``httpx.MockTransport``). The client is closed by ``aclose``
            only when it was created here.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 30.0,
        max_features_cap: int = 10000,
        retry: Optional[RetryPolicy] = None,
        availability_timeout: float = 5.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url
        self.timeout = timeout
        self.max_features_cap = max_features_cap
        self.retry = retry or RetryPolicy.none()
        self.availability_timeout = availability_timeout
        self._owns_http = http_client is None
        self._http = http_client or httpx.AsyncClient(headers={"User-Agent": _USER_AGENT})

    @classmethod
    def from_settings(cls, settings, **kwargs) -> "WfsClient":
        kwargs.setdefault(
            "retry",
            RetryPolicy(
                max_attempts=settings.retry_max_attempts,
                backoff_base=settings.retry_backoff_base,
                backoff_max=settings.retry_backoff_max,
            ),
        )
        return cls(
            settings.wfs_url,
            timeout=settings.wfs_timeout,
            max_features_cap=settings.max_features_cap,
            availability_timeout=settings.availability_timeout,
            **kwargs,
        )

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    async def __aenter__(self) -> "WfsClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    # ------------------------------------------------------------------
    # Request building
    # ------------------------------------------------------------------

    def _base_params(self, layer_name: str, output_format: str = OUTPUT_FORMAT) -> dict[str, str]:
        return {
            "service": "WFS",
            "version": WFS_VERSION,
            "request": "GetFeature",
            "typeName": layer_name,
            "outputFormat": output_format,
            "srsName": OUTPUT_SRS,
        }

    def build_params(
        self,
        layer_name: str,
        cql_filter: object = None,
        limit: int = 5000,
        offset: int = 0,
    ) -> dict[str, str]:
        """Query parameters for a GetFeature request.

        ``startIndex`` is only sent for a non-zero offset and ``cql_filter``
        only when a filter is given.
        """
        params = self._base_params(layer_name)
        params["maxFeatures"] = str(max(0, min(int(limit), self.max_features_cap)))
        if offset > 0:
            params["startIndex"] = str(int(offset))
        if cql_filter is not None and str(cql_filter).strip():
            params["cql_filter"] = str(cql_filter)
        return params

    def download_url(
        self,
        layer_name: str,
        output_format: str = DEFAULT_DOWNLOAD_FORMAT,
        cql_filter: object = None,
    ) -> str:
        """URL for a bulk export of ``layer_name`` (nothing is fetched)."""
        _validate_layer_name(layer_name, "download_url")
        params = self._base_params(layer_name, output_format=output_format)
        if cql_filter is not None and str(cql_filter).strip():
            params["cql_filter"] = str(cql_filter)
        return str(httpx.URL(self.base_url, params=params))

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def fetch_layer(
        self,
        layer_name: str,
        cql_filter: object = None,
        limit: int = 5000,
        offset: int = 0,
        cancel_token: Optional[CancelToken] = None,
    ) -> FeatureCollection:
        """Fetch features of ``layer_name``, optionally filtered.

        Returns:
            FeatureCollection. A missing or malformed ``features`` array yields
            an empty collection with a warning instead of an error.

        Raises:
            NetworkTimeout, NetworkFailure, ServiceError, Cancelled.
        """
        _validate_layer_name(layer_name, "fetch_layer")
        params = self.build_params(layer_name, cql_filter, limit, offset)

        data = await self.retry.run(
            lambda: self._get_json(params, layer_name, cancel_token),
            label=f"fetch_layer {layer_name}",
            cancel_token=cancel_token,
        )

        collection = parse_feature_collection(data)
        for warning in collection.warnings:
            logger.warning(f"fetch_layer {layer_name}: {warning}")
        collection.metadata.update({
            "layer_name": layer_name,
            "filter": params.get("cql_filter"),
        })
        logger.debug(f"fetch_layer {layer_name}: {collection.feature_count} features")
        return collection

    async def fetch_unique_values(
        self,
        layer_name: str,
        field_name: str,
        limit: int = 1000,
        cancel_token: Optional[CancelToken] = None,
    ) -> list[str]:
        """Distinct non-empty values of ``field_name``, normalized and sorted."""
        _validate_layer_name(layer_name, "fetch_unique_values")
        params = self.build_params(layer_name, limit=limit)
        params["propertyName"] = field_name

        data = await self.retry.run(
            lambda: self._get_json(params, layer_name, cancel_token),
            label=f"fetch_unique_values {layer_name}.{field_name}",
            cancel_token=cancel_token,
        )

        collection = parse_feature_collection(data)
        if not collection.features:
            logger.warning(f"No features to extract unique values of {field_name} from {layer_name}")
            return []

        raw = (f.properties.get(field_name) for f in collection.features)
        return sort_keys(v for v in raw if v not in (None, "") and normalize_temporal_key(v))

    async def check_availability(self) -> bool:
        """True when GetCapabilities answers with a 2xx status."""
        params = {"service": "WFS", "version": WFS_VERSION, "request": "GetCapabilities"}
        try:
            response = await asyncio.wait_for(
                self._http.get(self.base_url, params=params, timeout=self.availability_timeout),
                self.availability_timeout,
            )
        except (httpx.HTTPError, asyncio.TimeoutError) as e:
            logger.warning(f"GeoServer unavailable at {self.base_url}: {e}")
            return False
        return response.is_success

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _send(
        self,
        params: dict[str, str],
        layer_name: str,
        cancel_token: Optional[CancelToken],
    ) -> httpx.Response:
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()
        request = asyncio.wait_for(
            self._http.get(self.base_url, params=params, timeout=self.timeout),
            self.timeout,
        )
        try:
            if cancel_token is not None:
                return await cancel_token.run(request)
            return await request
        except Cancelled:
            logger.debug(f"Request for {layer_name} cancelled")
            raise
        except (httpx.TimeoutException, asyncio.TimeoutError) as e:
            raise NetworkTimeout(
                f"Request for {layer_name} timed out after {self.timeout:.0f}s",
                layer_name=layer_name,
                url=self.base_url,
            ) from e
        except httpx.HTTPError as e:
            raise NetworkFailure(
                f"Network error: {e}", layer_name=layer_name, url=self.base_url
            ) from e

    async def _get_json(
        self,
        params: dict[str, str],
        layer_name: str,
        cancel_token: Optional[CancelToken],
    ) -> dict:
        response = await self._send(params, layer_name, cancel_token)
        url = str(response.request.url)

        if not response.is_success:
            raise ServiceError(
                f"Error {response.status_code}: {response.reason_phrase}",
                status=response.status_code,
                layer_name=layer_name,
                url=url,
            )

        content_type = response.headers.get("content-type", "")
        if "json" not in content_type.lower():
            logger.warning(
                f"Non-JSON response for {layer_name} ({content_type or 'no content type'}): "
                f"{response.text[:200]!r}"
            )
            raise ServiceError(
                "Unexpected response from server (not JSON)",
                status=response.status_code,
                layer_name=layer_name,
                url=url,
            )

        try:
            data = response.json()
        except ValueError as e:
            raise ServiceError(
                f"Invalid JSON response: {e}",
                status=response.status_code,
                layer_name=layer_name,
                url=url,
            ) from e

        if not isinstance(data, dict):
            raise ServiceError(
                "Invalid JSON response (not an object)",
                status=response.status_code,
                layer_name=layer_name,
                url=url,
            )

        if "exceptions" in data:
            details = "; ".join(
                str(exc.get("text", exc)) if isinstance(exc, dict) else str(exc)
                for exc in (data.get("exceptions") or [])
            )
            raise ServiceError(
                f"Service exception: {details or 'unknown'}",
                status=response.status_code,
                layer_name=layer_name,
                url=url,
            )

        return data
