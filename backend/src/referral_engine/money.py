"""Decimal helpers for monetary amounts."""

from decimal import ROUND_HALF_UP, Decimal

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def to_money(value: Decimal | float | int | str | None) -> Decimal:
    """Convert a numeric value to a Decimal rounded to cents.

    Floats go through ``str`` so 29.99 stays 29.99 instead of its binary
    approximation.
    """
    if value is None:
        return ZERO
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENT, rounding=ROUND_HALF_UP)
