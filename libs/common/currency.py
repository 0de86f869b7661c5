"""Money helpers shared by pricing, shipping and payments.

Internal storage unit: major units as ``Decimal`` with 2 places (12.50 = €12.50).
Gateway unit: minor units as ``int`` (1250 cents = €12.50).

All rounding is ROUND_HALF_UP, matching how the gateway rounds charges.
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
from typing import Union

Number = Union[Decimal, int, float, str]

# ─── constants ───────────────────────────────────────────────────────────────

MINOR_UNITS_PER_MAJOR: int = 100
CENT = Decimal("0.01")
ZERO = Decimal("0")


# ─── conversion helpers ──────────────────────────────────────────────────────


def to_decimal(value: Number) -> Decimal:
    """Coerce to Decimal without inheriting binary float noise."""
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def quantize(value: Number, decimals: int = 2) -> Decimal:
    """Round to ``decimals`` places (half-up)."""
    exponent = Decimal(1).scaleb(-decimals)
    return to_decimal(value).quantize(exponent, rounding=ROUND_HALF_UP)


def to_minor_units(amount: Number) -> int:
    """Convert major units to gateway minor units. 12.345 -> 1235."""
    return int(quantize(amount) * MINOR_UNITS_PER_MAJOR)


def from_minor_units(minor: int) -> Decimal:
    """Convert gateway minor units back to major units. 1250 -> 12.50."""
    return quantize(Decimal(minor) / MINOR_UNITS_PER_MAJOR)
