"""Spatial predicate builder — CQL filters for map-click queries.

Point and line geometries have (near) zero area, so an exact intersection at
the clicked coordinate would almost never match; they get a small bounding
box around the click. Polygons are tested with an exact intersection so that
neighbouring parcels do not leak in.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import NamedTuple

from layersync.wfs.errors import UnsupportedGeometryKind

DEFAULT_TOLERANCE_DEGREES = 0.015
DEFAULT_GEOMETRY_FIELD = "geom"

_BBOX_KINDS = frozenset({"point", "multipoint", "line", "linestring", "multilinestring"})
_INTERSECTS_KINDS = frozenset({"polygon", "multipolygon"})


class LatLng(NamedTuple):
    """A clicked map coordinate in EPSG:4326 degrees."""

    lat: float
    lng: float


class PredicateKind(str, Enum):
    bbox = "bbox"
    intersects = "intersects"


@dataclass(frozen=True)
class FilterExpression:
    """A CQL filter string plus the kind of spatial test it performs."""

    kind: PredicateKind
    cql: str

    def __str__(self) -> str:
        return self.cql


def normalize_geometry_kind(geometry_kind: object) -> str:
    """Lower-case a geometry kind and check it is one we can query.

    Raises:
        UnsupportedGeometryKind: for anything outside point/line/polygon
            and their multi-part variants.
    """
    if not isinstance(geometry_kind, str):
        raise UnsupportedGeometryKind(geometry_kind)
    kind = geometry_kind.strip().lower()
    if kind not in _BBOX_KINDS and kind not in _INTERSECTS_KINDS:
        raise UnsupportedGeometryKind(geometry_kind)
    return kind


def build_predicate(
    geometry_kind: str,
    point: LatLng,
    tolerance: float | None = None,
    geometry_field: str = DEFAULT_GEOMETRY_FIELD,
) -> FilterExpression:
    """Build the spatial filter for a click at ``point``.

    Args:
        geometry_kind: Layer geometry kind (``point``, ``line``, ``polygon``...).
        point: Clicked coordinate.
        tolerance: Half-width of the bounding box in degrees (point/line only).
        geometry_field: Name of the geometry column on the server.

    Returns:
        FilterExpression with a ``BBOX`` or ``INTERSECTS`` CQL predicate.

    Raises:
        UnsupportedGeometryKind: if ``geometry_kind`` is not recognized.
    """
    kind = normalize_geometry_kind(geometry_kind)
    lat, lng = float(point[0]), float(point[1])

    if kind in _INTERSECTS_KINDS:
        return FilterExpression(
            PredicateKind.intersects,
            f"INTERSECTS({geometry_field}, SRID=4326;POINT({lng} {lat}))",
        )

    tol = DEFAULT_TOLERANCE_DEGREES if tolerance is None else float(tolerance)
    if tol < 0:
        raise ValueError("tolerance must be >= 0")
    bbox = f"{lng - tol},{lat - tol},{lng + tol},{lat + tol}"
    return FilterExpression(
        PredicateKind.bbox,
        f"BBOX({geometry_field}, {bbox}, 'EPSG:4326')",
    )


def attribute_equals(field_name: str, value: object) -> str:
    """``field='value'`` with single quotes escaped the CQL way."""
    escaped = str(value).replace("'", "''")
    return f"{field_name}='{escaped}'"


def combine_filters(*parts: object) -> str | None:
    """AND-compose the non-empty filters, or None when there are none."""
    clauses = [str(p) for p in parts if p is not None and str(p).strip()]
    if not clauses:
        return None
    return " AND ".join(clauses)
