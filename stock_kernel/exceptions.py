"""
Typed Exception Hierarchy for the Stock Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Stock movements are money in another form.  Callers (sales, purchasing,
transfers, the HTTP layer) must react to failures precisely, and parsing
message strings is fragile.  Every error therefore:

  1. Has a TYPED exception class (catch by type, not message)
  2. Has a CODE attribute (machine-readable, API-safe)
  3. Carries structured DATA (variation_id, location_id, quantities)

Example - WRONG way to handle errors:
    try:
        store.apply_delta(...)
    except Exception as e:
        if "Insufficient" in str(e):  # FRAGILE - message might change
            ...

Example - RIGHT way (what this module enables):
    try:
        store.apply_delta(...)
    except InsufficientStockError as e:
        api_response(code=e.code, shortage=e.shortage)

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    StockKernelError (base)
    |
    +-- ValidationError
    |   +-- DuplicateSerialError
    |
    +-- InsufficientStockError
    |
    +-- ConsistencyError
    |   +-- ConcurrencyConflict
    |
    +-- NotFoundError
    |   +-- VariationNotFoundError
    |   +-- LocationNotFoundError
    |   +-- SerialUnitNotFoundError
    |   +-- TransferNotFoundError
    |   +-- ReturnNotFoundError
    |   +-- CorrectionNotFoundError
    |   +-- FindingNotFoundError
    |
    +-- InvalidTransitionError
    |
    +-- ImmutabilityViolationError
    |
    +-- RetryExhaustedError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Code                    | When Raised
------------------------|------------------------------------------------------
VALIDATION_ERROR        | Malformed input (delta, reason, quantities, payload)
DUPLICATE_SERIAL        | Serial number already registered for the product
INSUFFICIENT_STOCK      | Delta would drive a balance below zero
CONSISTENCY_ERROR       | Balance disagrees with the movement ledger
CONCURRENCY_CONFLICT    | Lost update detected (expected balance / version)
NOT_FOUND               | Referenced entity does not exist
INVALID_TRANSITION      | State machine transition not allowed
IMMUTABILITY_VIOLATION  | Attempt to modify or delete an append-only row
RETRY_EXHAUSTED         | Transaction runner gave up after max attempts

All of these abort the enclosing atomic operation.  ConcurrencyConflict is
the only one the TransactionRunner retries.
"""

from decimal import Decimal


class StockKernelError(Exception):
    """
    Base exception for all stock kernel errors.

    All subclasses must define a `code` class attribute with a stable,
    machine-readable identifier.
    """

    code: str = "STOCK_KERNEL_ERROR"


# =============================================================================
# Validation
# =============================================================================


class ValidationError(StockKernelError):
    """Input rejected before any state was touched."""

    code: str = "VALIDATION_ERROR"

    def __init__(self, message: str, field: str | None = None):
        self.field = field
        super().__init__(message)


class DuplicateSerialError(ValidationError):
    """Serial number already registered for this product."""

    code: str = "DUPLICATE_SERIAL"

    def __init__(self, serial_number: str, product_id: int):
        self.serial_number = serial_number
        self.product_id = product_id
        super().__init__(
            f"Serial number {serial_number!r} already exists for product {product_id}",
            field="serial_number",
        )


# =============================================================================
# Stock level
# =============================================================================


class InsufficientStockError(StockKernelError):
    """
    A delta would take a balance below zero.

    The message states current, requested and shortage so the operator
    does not need a second lookup.
    """

    code: str = "INSUFFICIENT_STOCK"

    def __init__(
        self,
        variation_id: int,
        location_id: int,
        current: Decimal,
        requested: Decimal,
    ):
        self.variation_id = variation_id
        self.location_id = location_id
        self.current = current
        self.requested = requested
        self.shortage = requested - current
        super().__init__(
            f"Insufficient stock for variation {variation_id} at location "
            f"{location_id}: current {current}, requested {requested}, "
            f"shortage {self.shortage}"
        )


# =============================================================================
# Consistency
# =============================================================================


class ConsistencyError(StockKernelError):
    """Balance and movement ledger disagree for a (variation, location)."""

    code: str = "CONSISTENCY_ERROR"

    def __init__(
        self,
        variation_id: int,
        location_id: int,
        balance: Decimal | None = None,
        ledger_sum: Decimal | None = None,
        message: str | None = None,
    ):
        self.variation_id = variation_id
        self.location_id = location_id
        self.balance = balance
        self.ledger_sum = ledger_sum
        super().__init__(
            message
            or (
                f"Balance {balance} does not match ledger sum {ledger_sum} "
                f"for variation {variation_id} at location {location_id}"
            )
        )


class ConcurrencyConflict(ConsistencyError):
    """
    A concurrent writer changed the balance underneath this operation.

    Raised when an expected balance does not match, or when the optimistic
    version counter detects a lost update at flush.  Safe to retry.
    """

    code: str = "CONCURRENCY_CONFLICT"

    def __init__(
        self,
        variation_id: int,
        location_id: int,
        expected: Decimal | None = None,
        actual: Decimal | None = None,
    ):
        self.expected = expected
        self.actual = actual
        if expected is not None:
            message = (
                f"Concurrent modification of variation {variation_id} at "
                f"location {location_id}: expected balance {expected}, found {actual}"
            )
        else:
            message = (
                f"Concurrent modification of variation {variation_id} at "
                f"location {location_id}"
            )
        super().__init__(
            variation_id,
            location_id,
            balance=actual,
            message=message,
        )


# =============================================================================
# Not found
# =============================================================================


class NotFoundError(StockKernelError):
    """Referenced entity does not exist."""

    code: str = "NOT_FOUND"
    entity_type: str = "entity"

    def __init__(self, entity_id: int | str):
        self.entity_id = entity_id
        super().__init__(f"{self.entity_type} {entity_id} not found")


class VariationNotFoundError(NotFoundError):
    entity_type = "ProductVariation"

    def __init__(self, variation_id: int):
        self.variation_id = variation_id
        super().__init__(variation_id)


class LocationNotFoundError(NotFoundError):
    entity_type = "Location"

    def __init__(self, location_id: int):
        self.location_id = location_id
        super().__init__(location_id)


class SerialUnitNotFoundError(NotFoundError):
    entity_type = "SerialUnit"


class TransferNotFoundError(NotFoundError):
    entity_type = "Transfer"


class ReturnNotFoundError(NotFoundError):
    entity_type = "Return"


class CorrectionNotFoundError(NotFoundError):
    entity_type = "InventoryCorrection"


class FindingNotFoundError(NotFoundError):
    entity_type = "ReconciliationFinding"


# =============================================================================
# State machines
# =============================================================================


class InvalidTransitionError(StockKernelError):
    """State machine transition not allowed from the current state."""

    code: str = "INVALID_TRANSITION"

    def __init__(
        self,
        entity_type: str,
        entity_id: int | str,
        from_state: str,
        to_state: str,
        reason: str | None = None,
    ):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.from_state = from_state
        self.to_state = to_state
        self.reason = reason
        message = (
            f"{entity_type} {entity_id} cannot move from {from_state!r} "
            f"to {to_state!r}"
        )
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


# =============================================================================
# Immutability
# =============================================================================


class ImmutabilityViolationError(StockKernelError):
    """Attempt to update or delete an append-only record."""

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: int | str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Cannot modify {entity_type} {entity_id}: {reason}"
        )


# =============================================================================
# Transaction runner
# =============================================================================


class RetryExhaustedError(StockKernelError):
    """The unit of work kept conflicting and ran out of attempts."""

    code: str = "RETRY_EXHAUSTED"

    def __init__(self, operation: str, attempts: int, last_error: Exception):
        self.operation = operation
        self.attempts = attempts
        self.last_error_code = getattr(last_error, "code", type(last_error).__name__)
        super().__init__(
            f"{operation} failed after {attempts} attempts: {last_error}"
        )
