"""
Sieger Billing - Money helpers

All money is Decimal. Invoice amounts are rounded to cents with
ROUND_HALF_UP; costs and unit prices keep six places.
"""

from decimal import Decimal, ROUND_HALF_UP
from typing import Any

from app.config import settings


ZERO = Decimal("0")
CENT = Decimal(1).scaleb(-settings.money_decimal_places)
UNIT = Decimal(1).scaleb(-settings.unit_price_decimal_places)


def to_decimal(value: Any) -> Decimal:
    """Convert a stored or JSON value to Decimal without going through float."""
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(repr(value))
    return Decimal(str(value))


def quantize_money(value: Decimal) -> Decimal:
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def quantize_unit(value: Decimal) -> Decimal:
    return to_decimal(value).quantize(UNIT, rounding=ROUND_HALF_UP)


def money_str(value: Decimal) -> str:
    """Fixed-point string for JSON metadata."""
    return format(quantize_money(value), "f")


def unit_str(value: Decimal) -> str:
    return format(quantize_unit(value), "f")
