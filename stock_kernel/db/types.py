"""
Decimal coercion and rounding shared by the stock services.

Quantity columns are ``Numeric(20, 4)`` and cost columns ``Numeric(38, 9)``.
Caller input goes through ``to_quantity`` or ``to_decimal`` before it reaches
a service, and unit costs that are written back are rounded with
``round_cost``.
"""

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

from stock_kernel.exceptions import ValidationError

QTY_DECIMAL_PLACES = 4
COST_DECIMAL_PLACES = 9

ZERO = Decimal("0")


def to_decimal(value: Any, field: str = "value") -> Decimal:
    """
    Coerce a caller-supplied number to Decimal.

    Floats go through ``str`` first, so ``0.1`` stays ``0.1``.

    Raises:
        ValidationError: value is None, a bool, non-numeric, NaN or infinite.
    """
    if value is None or isinstance(value, bool):
        raise ValidationError(f"{field} is required and must be numeric", field=field)
    try:
        result = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        raise ValidationError(f"{field} is not a number: {value!r}", field=field)
    if not result.is_finite():
        raise ValidationError(f"{field} must be finite, got {value!r}", field=field)
    return result


def to_quantity(value: Any, field: str = "quantity") -> Decimal:
    """
    Coerce a quantity, refusing more precision than the columns store.

    Trailing zeros do not count: ``Decimal("1.500000")`` is accepted.

    Raises:
        ValidationError: as ``to_decimal``, or more than four decimal places.
    """
    result = to_decimal(value, field)
    if result.normalize().as_tuple().exponent < -QTY_DECIMAL_PLACES:
        raise ValidationError(
            f"{field} has more than {QTY_DECIMAL_PLACES} decimal places: {value!r}",
            field=field,
        )
    return result


def round_cost(value: Decimal, decimal_places: int = COST_DECIMAL_PLACES) -> Decimal:
    """Round a unit cost or extended value half-up to ``decimal_places``."""
    return value.quantize(Decimal(1).scaleb(-decimal_places), rounding=ROUND_HALF_UP)
