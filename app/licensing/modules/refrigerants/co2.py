"""
CO2-equivalent calculator.

Pure functions, no database access. A line item describes `quantity` containers
each holding `volume` of refrigerant in `unit`; its CO2 equivalent is

    volume_in_kg * gwp * quantity

rounded to two decimal places. `quantity` always multiplies.

Unknown units and missing GWP values contribute 0 unless `strict=True`, in which
case they raise ValidationError.
"""
from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from app.licensing.errors import ValidationError
from app.licensing.utils import to_decimal

CO2_PRECISION = Decimal("0.01")

UNIT_TO_KG: dict[str, Decimal] = {
    "g": Decimal("0.001"),
    "kg": Decimal("1"),
    "lb": Decimal("0.453592"),
    "oz": Decimal("0.0283495"),
    "ton": Decimal("1000"),
}

ZERO = Decimal("0")


@dataclass(frozen=True)
class LineItemInput:
    refrigerant_code: str
    volume: Decimal
    unit: str
    quantity: int = 1
    gwp: Decimal | None = None


def quantize_co2(value: Decimal) -> Decimal:
    return value.quantize(CO2_PRECISION, rounding=ROUND_HALF_UP)


def normalize_unit(unit: str | None) -> str:
    return (unit or "").strip().lower()


def to_kg(volume: Any, unit: str | None, *, strict: bool = False) -> Decimal:
    factor = UNIT_TO_KG.get(normalize_unit(unit))
    if factor is None:
        if strict:
            raise ValidationError(
                f"Unknown unit '{unit}'. Expected one of: {', '.join(UNIT_TO_KG)}",
                details={"unit": unit},
            )
        return ZERO
    return to_decimal(volume, "volume") * factor


def line_item_co2(
    volume: Any,
    unit: str | None,
    gwp: Any,
    quantity: int = 1,
    *,
    strict: bool = False,
) -> Decimal:
    """CO2 equivalent (kg CO2e) of one line item."""
    if gwp is None:
        if strict:
            raise ValidationError("GWP value is missing for refrigerant.")
        return ZERO
    kg = to_kg(volume, unit, strict=strict)
    return quantize_co2(kg * to_decimal(gwp, "gwp_value") * int(quantity))


def import_total_co2(items: Iterable[LineItemInput], *, strict: bool = False) -> Decimal:
    total = ZERO
    for item in items:
        total += line_item_co2(item.volume, item.unit, item.gwp, item.quantity, strict=strict)
    return quantize_co2(total)
