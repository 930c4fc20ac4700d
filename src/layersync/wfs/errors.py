"""Failure taxonomy for feature-service queries.

``Cancelled`` is an expected outcome of supersession, not a real error:
callers swallow it and never surface it to users.
"""

from __future__ import annotations


class LayerSyncError(Exception):
    """Base class for engine errors."""


class UnsupportedGeometryKind(LayerSyncError, ValueError):
    """Geometry kind is not point/line/polygon (or a multi-part variant)."""

    def __init__(self, geometry_kind: object, layer_name: str = "") -> None:
        self.geometry_kind = geometry_kind
        self.layer_name = layer_name
        where = f" for layer {layer_name}" if layer_name else ""
        super().__init__(f"Unsupported geometry kind {geometry_kind!r}{where}")


class MissingPrecondition(LayerSyncError):
    """An operation was attempted without required state (e.g. no temporal key)."""


class Cancelled(LayerSyncError):
    """The request was cancelled through its CancelToken."""


class QueryError(LayerSyncError):
    """A feature-service query failed."""

    def __init__(self, message: str, layer_name: str = "", url: str = "") -> None:
        super().__init__(message)
        self.layer_name = layer_name
        self.url = url


class NetworkTimeout(QueryError):
    """The request did not complete within its timeout."""


class NetworkFailure(QueryError):
    """Transport-level failure (DNS, connection refused, reset...)."""


class ServiceError(QueryError):
    """The server answered, but not with a usable feature collection.

    Covers non-2xx statuses and HTTP 200 responses whose body is not the
    expected JSON (GeoServer reports some errors that way).
    """

    def __init__(self, message: str, status: int = 0, layer_name: str = "", url: str = "") -> None:
        super().__init__(message, layer_name=layer_name, url=url)
        self.status = status

    @property
    def retryable(self) -> bool:
        return self.status >= 500
