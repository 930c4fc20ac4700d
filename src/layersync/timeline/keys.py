"""Temporal keys — normalized identifiers for fortnight slices.

GeoServer serializes the ``Quincena`` date column in several shapes
(``2024-03-15``, ``2024-03-15Z``, ``2024-03-15T00:00:00.000Z``...). Every key
entering the engine goes through ``normalize_temporal_key`` so that
equivalent values compare equal as plain strings.

Contract of ``normalize_temporal_key``:
    - None, non-scalar values and blank strings -> None
    - surrounding whitespace is stripped
    - a trailing zone marker (``Z``, ``z``, ``+00:00``, ``+0000``) is removed
    - a midnight time-of-day suffix (``T00:00``, ``T00:00:00``, ``T00:00:00.000``,
      any all-zero fraction, ``T`` or space separated) is removed
    - any other content is returned as-is (a non-midnight time is kept)
    - idempotent: normalize(normalize(x)) == normalize(x)
"""

from __future__ import annotations

import re
from datetime import date, datetime

from layersync.wfs.predicates import attribute_equals

DEFAULT_TEMPORAL_FIELD = "Quincena"

_ZONE_SUFFIX = re.compile(r"(?:[Zz]|[+-]00:?00)$")
_MIDNIGHT_SUFFIX = re.compile(r"[T ]00:00(?::00(?:\.0+)?)?$")
_ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def normalize_temporal_key(value: object) -> str | None:
    """Normalize a raw temporal value to its canonical string form."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        value = value.isoformat()
    elif isinstance(value, date):
        value = value.isoformat()
    elif not isinstance(value, (str, int, float)):
        return None

    text = str(value).strip()
    # Zone and midnight suffixes can appear in either order once; loop until stable
    while True:
        stripped = _ZONE_SUFFIX.sub("", text).strip()
        stripped = _MIDNIGHT_SUFFIX.sub("", stripped).strip()
        if stripped == text:
            break
        text = stripped
    return text or None


def keys_equal(a: object, b: object) -> bool:
    na, nb = normalize_temporal_key(a), normalize_temporal_key(b)
    return na is not None and na == nb


def temporal_filter(key: object, field_name: str = DEFAULT_TEMPORAL_FIELD) -> str | None:
    """CQL filter selecting one slice, e.g. ``Quincena='2024-03-15'``."""
    normalized = normalize_temporal_key(key)
    if normalized is None:
        return None
    return attribute_equals(field_name, normalized)


def _sort_value(key: str) -> tuple:
    if _ISO_DATE.match(key):
        try:
            return (0, date.fromisoformat(key).toordinal(), key)
        except ValueError:
            pass
    try:
        return (0, datetime.fromisoformat(key).toordinal(), key)
    except ValueError:
        return (1, 0, key)


def sort_keys(keys, ascending: bool = True) -> list[str]:
    """Normalize, de-duplicate and sort keys chronologically.

    Keys that do not parse as dates sort after the dated ones (lexically).
    """
    unique = {k for k in (normalize_temporal_key(v) for v in keys) if k is not None}
    ordered = sorted(unique, key=_sort_value)
    if not ascending:
        ordered.reverse()
    return ordered


def key_index(key: object, keys: list[str]) -> int:
    """Position of ``key`` in ``keys`` (compared normalized), or -1."""
    normalized = normalize_temporal_key(key)
    if normalized is None:
        return -1
    for i, candidate in enumerate(keys):
        if normalize_temporal_key(candidate) == normalized:
            return i
    return -1


def neighbors(key: object, keys: list[str]) -> tuple[str | None, str | None]:
    """(previous, next) keys around ``key`` in an ordered list."""
    idx = key_index(key, keys)
    if idx == -1:
        return None, None
    prev_key = keys[idx - 1] if idx > 0 else None
    next_key = keys[idx + 1] if idx < len(keys) - 1 else None
    return prev_key, next_key
