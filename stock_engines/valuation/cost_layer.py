"""
stock_engines.valuation.cost_layer -- Cost layer arithmetic for FIFO, LIFO and
weighted-average valuation.

Responsibility:
    Pure functions over immutable CostLayer tuples: receive an inbound
    quantity, consume an outbound quantity in method order, and value what
    remains.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    The stateful projection over the movement ledger lives in
    stock_services.valuation_service.

Invariants enforced:
    - Layers never go negative.  An outbound quantity larger than what the
      layers hold consumes them all and reports the excess as
      ``unvalued_quantity``.
    - FIFO consumes the lowest sequence (oldest acquisition) first; LIFO the
      highest.  Sequence is the acquisition order.
    - Weighted average keeps exactly one synthetic layer.  Inbound recomputes
      its cost as (old_qty * old_cost + in_qty * in_cost) / (old_qty + in_qty);
      outbound lowers its quantity and leaves the cost unchanged.
    - Decimal only, never float.

Failure modes:
    - ValueError on a non-positive receive/consume quantity or a negative
      unit cost.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, replace
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum

from stock_engines.tracer import traced_engine
from stock_kernel.logging_config import get_logger

logger = get_logger("engines.valuation.cost_layer")

ZERO = Decimal("0")
COST_QUANTUM = Decimal("0.000000001")


class CostMethod(str, Enum):
    """Inventory costing methods."""

    FIFO = "fifo"
    LIFO = "lifo"
    WEIGHTED_AVG = "weighted_avg"


def _round_cost(value: Decimal) -> Decimal:
    return value.quantize(COST_QUANTUM, rounding=ROUND_HALF_UP)


@dataclass(frozen=True, slots=True)
class CostLayer:
    """
    A batch of units still on hand at one unit cost.

    ``quantity`` is what remains of the batch; ``original_quantity`` is what
    was received.
    """

    sequence: int
    quantity: Decimal
    unit_cost: Decimal
    acquired_at: datetime | None = None
    original_quantity: Decimal | None = None
    source_movement_id: int | None = None

    def __post_init__(self) -> None:
        if self.quantity < 0:
            raise ValueError(f"Layer quantity cannot be negative, got {self.quantity}")
        if self.unit_cost < 0:
            raise ValueError(f"Layer unit cost cannot be negative, got {self.unit_cost}")

    @property
    def value(self) -> Decimal:
        return self.quantity * self.unit_cost

    @property
    def is_depleted(self) -> bool:
        return self.quantity == 0


@dataclass(frozen=True, slots=True)
class LayerConsumption:
    """How much one outbound movement took from one layer."""

    sequence: int
    quantity: Decimal
    unit_cost: Decimal

    @property
    def cost(self) -> Decimal:
        return self.quantity * self.unit_cost


@dataclass(frozen=True, slots=True)
class ConsumptionResult:
    """
    Result of consuming an outbound quantity.

    ``layers`` are the layers left afterwards (depleted ones dropped).
    ``unvalued_quantity`` is the part of the request no layer could cover.
    """

    method: CostMethod
    requested_quantity: Decimal
    layers: tuple[CostLayer, ...]
    consumptions: tuple[LayerConsumption, ...]
    unvalued_quantity: Decimal = ZERO

    @property
    def consumed_quantity(self) -> Decimal:
        return sum((c.quantity for c in self.consumptions), ZERO)

    @property
    def consumed_cost(self) -> Decimal:
        return sum((c.cost for c in self.consumptions), ZERO)

    @property
    def average_unit_cost(self) -> Decimal:
        qty = self.consumed_quantity
        if qty == 0:
            return ZERO
        return _round_cost(self.consumed_cost / qty)


def total_quantity(layers: Iterable[CostLayer]) -> Decimal:
    return sum((layer.quantity for layer in layers), ZERO)


def total_value(layers: Iterable[CostLayer]) -> Decimal:
    """Sum of quantity * unit_cost over the layers."""
    return sum((layer.value for layer in layers), ZERO)


def average_unit_cost(layers: Iterable[CostLayer]) -> Decimal:
    """Value-weighted unit cost of what remains; zero when nothing remains."""
    layers = tuple(layers)
    qty = total_quantity(layers)
    if qty == 0:
        return ZERO
    return _round_cost(total_value(layers) / qty)


@traced_engine("cost_layer.receive", "1.0", fingerprint_fields=("quantity", "unit_cost", "method"))
def receive(
    layers: Iterable[CostLayer],
    quantity: Decimal,
    unit_cost: Decimal,
    method: CostMethod,
    *,
    acquired_at: datetime | None = None,
    sequence: int | None = None,
    source_movement_id: int | None = None,
) -> tuple[CostLayer, ...]:
    """
    Add an inbound quantity to a stream's layers.

    FIFO and LIFO append a new layer.  Weighted average folds the receipt
    into the single synthetic layer.

    Returns:
        The new tuple of layers, ordered by sequence.
    """
    method = CostMethod(method)
    if quantity <= 0:
        raise ValueError(f"Receive quantity must be positive, got {quantity}")
    if unit_cost < 0:
        raise ValueError(f"Unit cost cannot be negative, got {unit_cost}")

    layers = tuple(sorted(layers, key=lambda l: l.sequence))
    if sequence is None:
        sequence = (layers[-1].sequence + 1) if layers else 1

    if method is CostMethod.WEIGHTED_AVG:
        old_qty = total_quantity(layers)
        if old_qty == 0:
            new_cost = unit_cost
        else:
            new_cost = _round_cost(
                (total_value(layers) + quantity * unit_cost) / (old_qty + quantity)
            )
        return (
            CostLayer(
                sequence=sequence,
                quantity=old_qty + quantity,
                unit_cost=new_cost,
                acquired_at=acquired_at,
                original_quantity=old_qty + quantity,
                source_movement_id=source_movement_id,
            ),
        )

    return layers + (
        CostLayer(
            sequence=sequence,
            quantity=quantity,
            unit_cost=unit_cost,
            acquired_at=acquired_at,
            original_quantity=quantity,
            source_movement_id=source_movement_id,
        ),
    )


@traced_engine("cost_layer.consume", "1.0", fingerprint_fields=("quantity", "method"))
def consume(
    layers: Iterable[CostLayer],
    quantity: Decimal,
    method: CostMethod,
) -> ConsumptionResult:
    """
    Take an outbound quantity from the layers in method order.

    Example (FIFO): layers [10 @ 5, 5 @ 8], consume 12 leaves [3 @ 8] with a
    consumed cost of 10*5 + 2*8 = 66.
    """
    method = CostMethod(method)
    if quantity <= 0:
        raise ValueError(f"Consume quantity must be positive, got {quantity}")

    ordered = sorted(layers, key=lambda l: l.sequence)
    if method is CostMethod.LIFO:
        ordered.reverse()

    remaining = quantity
    consumptions: list[LayerConsumption] = []
    left: list[CostLayer] = []
    for layer in ordered:
        if remaining == 0 or layer.quantity == 0:
            if layer.quantity > 0:
                left.append(layer)
            continue
        take = min(layer.quantity, remaining)
        consumptions.append(
            LayerConsumption(sequence=layer.sequence, quantity=take, unit_cost=layer.unit_cost)
        )
        remaining -= take
        if layer.quantity > take:
            left.append(replace(layer, quantity=layer.quantity - take))

    if remaining > 0:
        logger.warning(
            "cost_layer_shortfall",
            extra={
                "method": method.value,
                "requested": quantity,
                "unvalued_quantity": remaining,
            },
        )

    return ConsumptionResult(
        method=method,
        requested_quantity=quantity,
        layers=tuple(sorted(left, key=lambda l: l.sequence)),
        consumptions=tuple(consumptions),
        unvalued_quantity=remaining,
    )
