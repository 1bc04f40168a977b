"""
Domain values for the stock kernel.

Enumerations shared by models, services and engines, plus the sign rules
that tie each movement type to the direction of its delta.  Pure values,
zero I/O.
"""

import re
from enum import Enum


class MovementType(str, Enum):
    """Kind of event behind a stock movement."""

    PURCHASE = "purchase"
    PURCHASE_RETURN = "purchase_return"
    SALE = "sale"
    SALE_VOID = "sale_void"
    TRANSFER_OUT = "transfer_out"
    TRANSFER_IN = "transfer_in"
    CUSTOMER_RETURN = "customer_return"
    SUPPLIER_RETURN = "supplier_return"
    ADJUSTMENT = "adjustment"
    OPENING_STOCK = "opening_stock"


class DeltaSign(str, Enum):
    POSITIVE = "positive"
    NEGATIVE = "negative"
    NON_NEGATIVE = "non_negative"
    ANY = "any"


# Direction each movement type is allowed to move a balance.
MOVEMENT_SIGNS: dict[MovementType, DeltaSign] = {
    MovementType.PURCHASE: DeltaSign.POSITIVE,
    MovementType.PURCHASE_RETURN: DeltaSign.NEGATIVE,
    MovementType.SALE: DeltaSign.NEGATIVE,
    MovementType.SALE_VOID: DeltaSign.POSITIVE,
    MovementType.TRANSFER_OUT: DeltaSign.NEGATIVE,
    MovementType.TRANSFER_IN: DeltaSign.POSITIVE,
    MovementType.CUSTOMER_RETURN: DeltaSign.NON_NEGATIVE,
    MovementType.SUPPLIER_RETURN: DeltaSign.NEGATIVE,
    MovementType.ADJUSTMENT: DeltaSign.ANY,
    MovementType.OPENING_STOCK: DeltaSign.POSITIVE,
}

# Zero-delta rows are audit records: a non-resellable customer return, or a
# balance reset approved from a reconciliation finding.
ZERO_DELTA_TYPES: frozenset[MovementType] = frozenset(
    {MovementType.CUSTOMER_RETURN, MovementType.ADJUSTMENT}
)

INBOUND_TYPES: frozenset[MovementType] = frozenset(
    {
        MovementType.PURCHASE,
        MovementType.SALE_VOID,
        MovementType.TRANSFER_IN,
        MovementType.CUSTOMER_RETURN,
        MovementType.OPENING_STOCK,
    }
)


class SerialStatus(str, Enum):
    IN_STOCK = "in_stock"
    IN_TRANSIT = "in_transit"
    SOLD = "sold"
    RETURNED = "returned"
    DAMAGED = "damaged"
    DEFECTIVE = "defective"
    WARRANTY_RETURN = "warranty_return"


class ItemCondition(str, Enum):
    """Condition of a returned item as recorded at the counter."""

    RESELLABLE = "resellable"
    DAMAGED = "damaged"
    DEFECTIVE = "defective"
    WARRANTY_CLAIM = "warranty_claim"


SERIAL_NUMBER_PATTERN = re.compile(r"^[a-zA-Z0-9\-_]+$")
SERIAL_NUMBER_MIN_LENGTH = 3
SERIAL_NUMBER_MAX_LENGTH = 191


def coerce_enum(enum_cls, value, field: str):
    """Return ``enum_cls(value)`` or raise ValidationError naming the field."""
    from stock_kernel.exceptions import ValidationError

    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise ValidationError(
            f"Invalid {field} {value!r}; expected one of: {allowed}",
            field=field,
        )
