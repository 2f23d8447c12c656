"""Currency helpers. All amounts are Decimal with two places, rounded half-up."""

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def to_money(value: Any) -> Decimal:
    """
    Coerce a number (float, int, str or Decimal) to a 2-place Decimal.

    Floats go through str() so 10.1 becomes 10.10, not 10.0999...

    Raises:
        ValueError: If value is not numeric
    """
    if isinstance(value, Decimal):
        amount = value
    elif isinstance(value, bool) or value is None:
        raise ValueError(f"Not a monetary amount: {value!r}")
    else:
        try:
            amount = Decimal(str(value))
        except InvalidOperation:
            raise ValueError(f"Not a monetary amount: {value!r}")

    if not amount.is_finite():
        raise ValueError(f"Not a monetary amount: {value!r}")

    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def to_wire(amount: Decimal) -> float:
    """Decimal -> JSON number for PostgREST numeric columns."""
    return float(amount.quantize(CENT, rounding=ROUND_HALF_UP))
