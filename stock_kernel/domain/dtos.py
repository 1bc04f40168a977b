"""
Kernel DTOs.

Frozen value objects returned across the kernel boundary.  Services and
selectors build these from ORM rows so that callers never hold live
session-bound objects after the transaction closes.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from enum import Enum

from stock_kernel.exceptions import ConsistencyError


@dataclass(frozen=True)
class ApplyResult:
    """Outcome of a single BalanceStore.apply_delta call.

    ``replayed=True`` means the idempotency key already existed and nothing
    was applied; ``balance`` and ``movement_id`` describe the original write.
    """

    variation_id: int
    location_id: int
    balance: Decimal
    previous_balance: Decimal
    delta: Decimal
    movement_id: int
    replayed: bool = False


@dataclass(frozen=True)
class MovementView:
    id: int
    product_id: int
    variation_id: int
    location_id: int
    movement_type: str
    delta: Decimal
    balance_after: Decimal
    unit_cost: Decimal | None
    reference_type: str
    reference_id: str
    actor_id: int | None
    created_at: datetime
    notes: str | None
    is_corrective: bool


@dataclass(frozen=True)
class BalanceView:
    variation_id: int
    location_id: int
    qty_available: Decimal
    version: int


class VarianceType(str, Enum):
    OVERAGE = "overage"
    SHORTAGE = "shortage"
    MATCH = "match"


@dataclass(frozen=True)
class ChainBreak:
    """A movement whose balance_after does not follow from its predecessor."""

    movement_id: int
    expected_balance_after: Decimal
    actual_balance_after: Decimal


@dataclass(frozen=True)
class ConsistencyReport:
    """
    Result of reconciling one (variation, location) pair.

    variance = balance - ledger_sum.  A positive variance (overage) means the
    balance row claims more stock than the ledger can account for.
    """

    variation_id: int
    location_id: int
    balance: Decimal
    ledger_sum: Decimal
    last_balance_after: Decimal | None
    movement_count: int
    chain_breaks: tuple[ChainBreak, ...] = ()
    checked_at: datetime | None = None

    @property
    def variance(self) -> Decimal:
        return self.balance - self.ledger_sum

    @property
    def variance_type(self) -> VarianceType:
        if self.variance > 0:
            return VarianceType.OVERAGE
        if self.variance < 0:
            return VarianceType.SHORTAGE
        return VarianceType.MATCH

    @property
    def is_consistent(self) -> bool:
        return (
            self.variance == 0
            and not self.chain_breaks
            and (self.last_balance_after is None or self.last_balance_after == self.balance)
        )

    @property
    def error(self) -> ConsistencyError | None:
        """The ConsistencyError describing this mismatch, or None if clean."""
        if self.is_consistent:
            return None
        if self.variance != 0:
            return ConsistencyError(
                self.variation_id,
                self.location_id,
                balance=self.balance,
                ledger_sum=self.ledger_sum,
            )
        return ConsistencyError(
            self.variation_id,
            self.location_id,
            balance=self.balance,
            ledger_sum=self.ledger_sum,
            message=(
                f"Running balance chain broken at {len(self.chain_breaks)} "
                f"movement(s) for variation {self.variation_id} at location "
                f"{self.location_id}"
            ),
        )

    def raise_for_inconsistency(self) -> None:
        err = self.error
        if err is not None:
            raise err


@dataclass(frozen=True)
class SerialView:
    id: int
    serial_number: str
    product_id: int
    variation_id: int
    status: str
    current_location_id: int | None
    supplier_id: int | None
    purchase_cost: Decimal | None
    warranty_start: date | None
    warranty_end: date | None


@dataclass(frozen=True)
class SerialMovementView:
    id: int
    serial_number_id: int
    movement_type: str
    from_location_id: int | None
    to_location_id: int | None
    from_status: str | None
    to_status: str
    reference_type: str
    reference_id: str
    actor_id: int | None
    moved_at: datetime


@dataclass(frozen=True)
class SerialRegistrationFailure:
    serial_number: str
    code: str
    message: str


@dataclass(frozen=True)
class BulkRegistrationResult:
    """Outcome of registering a receipt's serials one by one."""

    registered: tuple[SerialView, ...] = ()
    failures: tuple[SerialRegistrationFailure, ...] = ()

    @property
    def registered_count(self) -> int:
        return len(self.registered)

    @property
    def failure_count(self) -> int:
        return len(self.failures)


@dataclass(frozen=True)
class ValuationLine:
    """One row of a valuation report."""

    variation_id: int
    location_id: int | None
    method: str
    qty: Decimal
    unit_cost: Decimal
    total_value: Decimal
    unvalued_quantity: Decimal = Decimal("0")
    layer_count: int = 0
