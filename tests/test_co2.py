"""
Unit tests for the CO2-equivalent calculator.

Tests cover:
- Unit conversion (kg, lb, g, oz, ton; case-insensitive)
- Rounding to two decimal places
- Quantity always multiplying the per-container volume
- Unknown units / missing GWP (lenient vs strict)
"""
from decimal import Decimal

import pytest

from app.licensing.errors import ValidationError
from app.licensing.modules.refrigerants.co2 import (
    LineItemInput,
    import_total_co2,
    line_item_co2,
    to_kg,
)


class TestLineItemCo2:
    def test_kilograms(self):
        assert line_item_co2(Decimal("50"), "kg", Decimal("1430")) == Decimal("71500.00")

    def test_pounds_rounded_to_cents(self):
        # 2 lb = 0.907184 kg; * 2088 = 1894.200192
        assert line_item_co2(Decimal("2"), "lb", Decimal("2088")) == Decimal("1894.20")

    def test_unit_is_case_insensitive(self):
        assert line_item_co2("2", "LB", "2088") == line_item_co2("2", "lb", "2088")
        assert line_item_co2("1", " Kg ", "1430") == Decimal("1430.00")

    def test_grams_ounces_tons(self):
        assert to_kg("500", "g") == Decimal("0.500")
        assert to_kg("1", "ton") == Decimal("1000")
        assert line_item_co2("10", "oz", "1430") == Decimal("405.40")

    def test_quantity_multiplies(self):
        single = line_item_co2("13.6", "kg", "2088", 1)
        assert line_item_co2("13.6", "kg", "2088", 10) == single * 10
        assert line_item_co2("13.6", "kg", "2088", 10) == Decimal("283968.00")

    def test_zero_volume(self):
        assert line_item_co2("0", "kg", "1430") == Decimal("0.00")


class TestLenientVsStrict:
    def test_unknown_unit_contributes_zero(self):
        assert line_item_co2("10", "barrel", "1430") == Decimal("0")

    def test_unknown_unit_strict_raises(self):
        with pytest.raises(ValidationError):
            line_item_co2("10", "barrel", "1430", strict=True)

    def test_missing_gwp_contributes_zero(self):
        assert line_item_co2("10", "kg", None) == Decimal("0")

    def test_missing_gwp_strict_raises(self):
        with pytest.raises(ValidationError):
            line_item_co2("10", "kg", None, strict=True)

    def test_non_numeric_volume_raises(self):
        with pytest.raises(ValidationError):
            line_item_co2("ten", "kg", "1430")


def test_import_total_sums_lines():
    items = [
        LineItemInput(refrigerant_code="R-134a", volume=Decimal("50"), unit="kg", gwp=Decimal("1430")),
        LineItemInput(refrigerant_code="R-410A", volume=Decimal("2"), unit="lb", gwp=Decimal("2088")),
        LineItemInput(refrigerant_code="R-XYZ", volume=Decimal("5"), unit="kg", gwp=None),
    ]
    assert import_total_co2(items) == Decimal("73394.20")


def test_import_total_empty_is_zero():
    assert import_total_co2([]) == Decimal("0.00")
