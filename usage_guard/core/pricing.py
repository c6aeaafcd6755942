"""
Pricing calculations.

Converts metered units into cost using exact decimal arithmetic.
"""

from decimal import Decimal, InvalidOperation
from typing import Union

UNITS_PER_PRICE_BLOCK = Decimal("1000")

DecimalLike = Union[str, int, float, Decimal]


def to_decimal(value: DecimalLike) -> Decimal:
    """Convert a configured monetary value to Decimal.

    Floats go through their shortest string form so that 0.01 becomes
    Decimal("0.01") rather than its binary approximation.

    Raises:
        ValueError: If the value is not a finite number
    """
    if isinstance(value, bool):
        raise ValueError(f"Not a monetary amount: {value!r}")
    if isinstance(value, Decimal):
        result = value
    else:
        try:
            result = Decimal(str(value).strip())
        except InvalidOperation:
            raise ValueError(f"Not a monetary amount: {value!r}")
    if not result.is_finite():
        raise ValueError(f"Not a monetary amount: {value!r}")
    return result


def cost_of(units: int, unit_price: Decimal) -> Decimal:
    """Calculate the cost of ``units`` at ``unit_price`` per 1000 units.

    No rounding is applied, so repeated increments sum exactly.

    Args:
        units: Number of metered units (e.g. tokens)
        unit_price: Price per 1000 units

    Returns:
        Exact cost as Decimal
    """
    return Decimal(units) / UNITS_PER_PRICE_BLOCK * unit_price
