"""Attribute formatting for feature info popups and click-query results."""

from __future__ import annotations

import math
import re

from layersync.timeline.keys import normalize_temporal_key

EXCLUDED_PROPERTIES = frozenset({"geom", "geometry"})

# Matched as substrings of the lower-cased field name
EXCLUDE_FROM_NUMBER_FORMAT = (
    "clave de la cuenca",
    "clave_cuenca",
    "clave cuenca",
    "clave",
    "codigo",
    "código",
    "id",
    "cve",
    "cve_mun",
    "cve_ent",
    "cve_loc",
    "año",
    "ano",
    "year",
)

_ISO_DATE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})$")
_ISO_DATETIME = re.compile(r"^(\d{4})-(\d{2})-(\d{2})T\d{2}:\d{2}")


def should_display(key: str, value: object) -> bool:
    """Geometry columns and null/blank values are hidden."""
    if key.lower() in EXCLUDED_PROPERTIES:
        return False
    return value is not None and str(value).strip() != ""


def format_date(value: object) -> str | None:
    """``dd/mm/yyyy`` for an ISO date or datetime, else None."""
    text = str(value).strip()
    normalized = normalize_temporal_key(text) or ""
    match = _ISO_DATE.match(normalized) or _ISO_DATETIME.match(text)
    if match is None:
        return None
    year, month, day = match.groups()
    return f"{day}/{month}/{year}"


def _as_number(value: object) -> float | int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = value
    else:
        try:
            number = float(str(value).strip())
        except ValueError:
            return None
    if isinstance(number, float):
        if not math.isfinite(number):
            return None
        if number.is_integer():
            return int(number)
    return number


def format_number(number: float | int) -> str:
    if isinstance(number, int):
        return f"{number:,}"
    return f"{round(number, 3):,}"


def format_value(value: object, property_name: str = "") -> str:
    """Format one attribute value for display.

    Dates become ``dd/mm/yyyy``; numbers get thousands separators unless the
    field looks like an identifier or a year; text gets its first letter
    upper-cased.
    """
    if value is None:
        return ""
    text = str(value).strip()
    if not text:
        return ""

    formatted_date = format_date(text)
    if formatted_date is not None:
        return formatted_date

    lower_name = property_name.lower()
    if not any(excluded in lower_name for excluded in EXCLUDE_FROM_NUMBER_FORMAT):
        number = _as_number(value)
        if number is not None:
            return format_number(number)

    return text[0].upper() + text[1:]


def format_properties(properties: dict) -> dict[str, str]:
    """Displayable attributes, formatted, in their original order."""
    return {
        key: format_value(value, key)
        for key, value in properties.items()
        if should_display(key, value)
    }


def layer_display_name(layer_name: str, descriptor=None) -> str:
    if descriptor is not None and getattr(descriptor, "display_name", ""):
        return descriptor.display_name
    _, _, short = layer_name.partition(":")
    return short or layer_name
