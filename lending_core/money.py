"""
Money helpers

All amounts are plain Decimal values in a single currency. Rounding to cents
uses ROUND_HALF_UP.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Union

from .errors import ValidationError


ZERO = Decimal('0')
CENT = Decimal('0.01')


def to_decimal(value: Union[str, int, float, Decimal]) -> Decimal:
    """Convert a value to Decimal (floats go through str to avoid binary noise)"""
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        value = str(value)
    try:
        result = Decimal(value)
    except (InvalidOperation, TypeError):
        raise ValueError(f"Invalid monetary amount: {value!r}")
    if not result.is_finite():
        raise ValueError(f"Invalid monetary amount: {value!r}")
    return result


def quantize_money(amount: Decimal) -> Decimal:
    """Round to cents using ROUND_HALF_UP"""
    return to_decimal(amount).quantize(CENT, rounding=ROUND_HALF_UP)


def money_str(amount: Decimal) -> str:
    """Format a Decimal as a two-place string for storage and JSON"""
    return str(quantize_money(amount))


def require_whole_cents(amount: Decimal, what: str = "Amount") -> Decimal:
    """Reject amounts carrying fractions of a cent"""
    if amount != quantize_money(amount):
        raise ValidationError(f"{what} must be a whole number of cents, got {amount}")
    return amount
