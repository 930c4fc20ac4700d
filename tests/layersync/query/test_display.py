"""Unit tests for attribute display formatting."""

import pytest

from layersync.layers.catalog import LayerDescriptor
from layersync.query.display import (
    format_date,
    format_properties,
    format_value,
    layer_display_name,
    should_display,
)

pytestmark = pytest.mark.unit


class TestFormatValue:
    def test_dates(self):
        assert format_value("2024-03-15", "fecha") == "15/03/2024"
        assert format_value("2024-03-15T00:00:00.000Z", "Quincena") == "15/03/2024"

    def test_integers_get_thousands_separators(self):
        assert format_value(1234567, "poblacion") == "1,234,567"
        assert format_value("2500", "habitantes") == "2,500"

    def test_floats_are_rounded(self):
        assert format_value(1234.56789, "area_km2") == "1,234.568"
        assert format_value("3.0", "nivel") == "3"

    def test_identifier_fields_are_left_alone(self):
        assert format_value("13048", "CVE_MUN") == "13048"
        assert format_value(2024, "Año") == "2024"
        assert format_value(1500, "clave_cuenca") == "1500"

    def test_text_is_capitalized(self):
        assert format_value("pachuca de soto", "nombre") == "Pachuca de soto"

    def test_empty_values(self):
        assert format_value(None, "nombre") == ""
        assert format_value("   ", "nombre") == ""

    def test_booleans_are_text(self):
        assert format_value(True, "vigente") == "True"


class TestHelpers:
    def test_format_date_rejects_plain_text(self):
        assert format_date("sequía moderada") is None

    def test_should_display(self):
        assert not should_display("geom", {"type": "Point"})
        assert not should_display("nombre", None)
        assert not should_display("nombre", "  ")
        assert should_display("nombre", "Tula")
        assert should_display("valor", 0)

    def test_format_properties_keeps_order_and_drops_hidden(self):
        props = {"nombre": "tula", "geom": None, "poblacion": 1000, "vacio": ""}
        assert format_properties(props) == {"nombre": "Tula", "poblacion": "1,000"}

    def test_layer_display_name(self):
        assert layer_display_name("Hidalgo:00_Estado") == "00_Estado"
        assert layer_display_name("plain") == "plain"
        descriptor = LayerDescriptor("Hidalgo:04_sequias", "polygon", display_name="Monitor de Sequía")
        assert layer_display_name("Hidalgo:04_sequias", descriptor) == "Monitor de Sequía"
