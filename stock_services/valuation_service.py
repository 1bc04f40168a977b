"""
stock_services.valuation_service -- Cost layer projection over the movement
ledger.

Responsibility:
    Maintain FIFO, LIFO and weighted-average cost layers per
    (variation, location) by folding stock movements into the pure cost
    layer engine, and answer valuation queries from those layers.

Architecture position:
    Services -- stateful orchestration over engines + kernel.
    Reads movements through MovementSelector; persists CostLayerModel and
    ValuationState rows.  Pure arithmetic lives in
    stock_engines.valuation.cost_layer.

Invariants enforced:
    - Read-side projection: nothing here writes a balance or a movement.
    - Each stream has a watermark (ValuationState.last_movement_id); a
      movement is folded in exactly once, in id order.
    - Layers never go negative.  Outbound quantity with no layer to consume
      accumulates as unvalued_quantity, and later inbound quantity fills
      that hole before opening a new layer, so
      sum(layer qty) - unvalued_quantity == sum(movement deltas).
    - Inbound movements without a unit cost are valued at the current
      average of the remaining layers, else the last known cost, else zero.

Failure modes:
    - ValidationError for an unknown or unmaintained cost method.

Audit relevance:
    Logs ``valuation_synced`` and ``valuation_rebuilt`` with the number of
    movements folded in.
"""

from __future__ import annotations

from collections.abc import Iterable
from decimal import Decimal

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from stock_engines.valuation.cost_layer import (
    CostLayer,
    CostMethod,
    average_unit_cost,
    consume,
    receive,
    total_quantity,
    total_value,
)
from stock_kernel.db.types import ZERO, round_cost
from stock_kernel.domain.clock import Clock
from stock_kernel.domain.dtos import ValuationLine
from stock_kernel.domain.values import coerce_enum
from stock_kernel.exceptions import ValidationError
from stock_kernel.logging_config import get_logger
from stock_kernel.models.valuation import CostLayerModel, ValuationState
from stock_kernel.selectors.movement_selector import MovementSelector
from stock_kernel.services.base import BaseService

logger = get_logger("services.valuation")


class ValuationService(BaseService):
    """
    Inventory valuation projection.

    Contract:
        Every read first syncs the stream, so answers always reflect every
        committed movement visible to the session.

    Guarantees:
        - ``rebuild`` followed by ``sync`` yields the same layers as an
          incremental sync over the same movements.

    Non-goals:
        - Deciding what the balance is.  The layer quantity is reported next
          to, never instead of, the BalanceStore quantity.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        *,
        methods: Iterable[str] = ("fifo", "lifo", "weighted_avg"),
        default_method: str = "fifo",
    ):
        super().__init__(session, clock)
        self._movements = MovementSelector(session)
        self.methods = tuple(CostMethod(m) for m in methods)
        self.default_method = CostMethod(default_method)

    # ------------------------------------------------------------------
    # Projection
    # ------------------------------------------------------------------

    def sync(
        self,
        variation_id: int,
        location_id: int,
        method: str | None = None,
    ) -> tuple[CostLayer, ...]:
        """Fold every movement past the watermark into the stream's layers."""
        method = self._method(method)
        state = self._state(variation_id, location_id, method)
        rows = self._layer_rows(variation_id, location_id, method)
        layers = tuple(self._to_layer(row) for row in rows)

        movements = self._movements.history(
            variation_id, location_id, after_id=state.last_movement_id
        )
        if not movements:
            return layers

        unvalued = state.unvalued_quantity
        last_cost = state.last_unit_cost
        for m in movements:
            if m.delta > 0:
                cost = self._inbound_cost(m.unit_cost, layers, last_cost)
                qty = m.delta
                if unvalued > 0:
                    filled = min(unvalued, qty)
                    unvalued -= filled
                    qty -= filled
                if qty > 0:
                    layers = receive(
                        layers,
                        qty,
                        cost,
                        method,
                        acquired_at=m.created_at,
                        sequence=m.id,
                        source_movement_id=m.id,
                    )
                last_cost = cost
            elif m.delta < 0:
                result = consume(layers, -m.delta, method)
                layers = result.layers
                unvalued += result.unvalued_quantity
            state.last_movement_id = m.id

        self._store_layers(variation_id, location_id, method, rows, layers)
        state.unvalued_quantity = unvalued
        state.last_unit_cost = last_cost
        self.session.flush()

        logger.debug(
            "valuation_synced",
            extra={
                "variation_id": variation_id,
                "location_id": location_id,
                "method": method.value,
                "movements_applied": len(movements),
                "watermark": state.last_movement_id,
                "unvalued_quantity": unvalued,
            },
        )
        return layers

    def rebuild(
        self,
        variation_id: int,
        location_id: int,
        method: str | None = None,
    ) -> None:
        """Drop a stream's projection (all maintained methods by default) and replay it."""
        methods = (self._method(method),) if method is not None else self.methods
        for m in methods:
            self.session.execute(
                delete(CostLayerModel).where(
                    CostLayerModel.variation_id == variation_id,
                    CostLayerModel.location_id == location_id,
                    CostLayerModel.method == m.value,
                )
            )
            self.session.execute(
                delete(ValuationState).where(
                    ValuationState.variation_id == variation_id,
                    ValuationState.location_id == location_id,
                    ValuationState.method == m.value,
                )
            )
            self.sync(variation_id, location_id, m)
            logger.info(
                "valuation_rebuilt",
                extra={
                    "variation_id": variation_id,
                    "location_id": location_id,
                    "method": m.value,
                },
            )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def layers(
        self,
        variation_id: int,
        location_id: int,
        method: str | None = None,
    ) -> tuple[CostLayer, ...]:
        return self.sync(variation_id, location_id, method)

    def total_value(
        self,
        variation_id: int,
        location_id: int,
        method: str | None = None,
    ) -> Decimal:
        return total_value(self.sync(variation_id, location_id, method))

    def unvalued_quantity(
        self,
        variation_id: int,
        location_id: int,
        method: str | None = None,
    ) -> Decimal:
        method = self._method(method)
        self.sync(variation_id, location_id, method)
        return self._state(variation_id, location_id, method).unvalued_quantity

    def current_unit_cost(
        self,
        variation_id: int,
        location_id: int,
        method: str | None = None,
    ) -> Decimal | None:
        """Average cost of what is on hand, else the last cost seen, else None."""
        method = self._method(method)
        layers = self.sync(variation_id, location_id, method)
        if total_quantity(layers) > 0:
            return average_unit_cost(layers)
        return self._state(variation_id, location_id, method).last_unit_cost

    def query(
        self,
        location_id: int | None = None,
        method: str | None = None,
        business_id: int | None = None,
    ) -> list[ValuationLine]:
        """
        One line per (variation, location), or per variation when no
        location is given.
        """
        method = self._method(method)
        per_pair: list[ValuationLine] = []
        for variation_id, loc_id in self._movements.pairs(
            business_id=business_id, location_id=location_id
        ):
            layers = self.sync(variation_id, loc_id, method)
            state = self._state(variation_id, loc_id, method)
            qty = total_quantity(layers)
            value = total_value(layers)
            per_pair.append(
                ValuationLine(
                    variation_id=variation_id,
                    location_id=loc_id,
                    method=method.value,
                    qty=qty,
                    unit_cost=average_unit_cost(layers),
                    total_value=value,
                    unvalued_quantity=state.unvalued_quantity,
                    layer_count=len(layers),
                )
            )

        if location_id is not None:
            return sorted(per_pair, key=lambda l: (l.variation_id, l.location_id))
        return self._aggregate(per_pair, method)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _method(self, method) -> CostMethod:
        if method is None:
            return self.default_method
        resolved = coerce_enum(CostMethod, method, "method")
        if resolved not in self.methods:
            raise ValidationError(
                f"Cost method {resolved.value!r} is not maintained", field="method"
            )
        return resolved

    @staticmethod
    def _inbound_cost(
        unit_cost: Decimal | None,
        layers: tuple[CostLayer, ...],
        last_cost: Decimal | None,
    ) -> Decimal:
        if unit_cost is not None:
            return unit_cost
        if total_quantity(layers) > 0:
            return average_unit_cost(layers)
        return last_cost if last_cost is not None else ZERO

    def _state(self, variation_id: int, location_id: int, method: CostMethod) -> ValuationState:
        stmt = select(ValuationState).where(
            ValuationState.variation_id == variation_id,
            ValuationState.location_id == location_id,
            ValuationState.method == method.value,
        )
        state = self.session.scalars(stmt).first()
        if state is not None:
            return state
        try:
            with self.session.begin_nested():
                state = ValuationState(
                    variation_id=variation_id,
                    location_id=location_id,
                    method=method.value,
                    last_movement_id=0,
                    unvalued_quantity=ZERO,
                )
                self.session.add(state)
                self.session.flush()
            return state
        except IntegrityError:
            return self.session.scalars(stmt).one()

    def _layer_rows(
        self,
        variation_id: int,
        location_id: int,
        method: CostMethod,
    ) -> list[CostLayerModel]:
        return list(
            self.session.scalars(
                select(CostLayerModel)
                .where(
                    CostLayerModel.variation_id == variation_id,
                    CostLayerModel.location_id == location_id,
                    CostLayerModel.method == method.value,
                )
                .order_by(CostLayerModel.sequence)
            )
        )

    @staticmethod
    def _to_layer(row: CostLayerModel) -> CostLayer:
        return CostLayer(
            sequence=row.sequence,
            quantity=row.qty_remaining,
            unit_cost=row.unit_cost,
            acquired_at=row.acquired_at,
            original_quantity=row.original_quantity,
            source_movement_id=row.source_movement_id,
        )

    def _store_layers(
        self,
        variation_id: int,
        location_id: int,
        method: CostMethod,
        rows: list[CostLayerModel],
        layers: tuple[CostLayer, ...],
    ) -> None:
        existing = {row.sequence: row for row in rows}
        for layer in layers:
            row = existing.pop(layer.sequence, None)
            if row is None:
                self.session.add(
                    CostLayerModel(
                        variation_id=variation_id,
                        location_id=location_id,
                        method=method.value,
                        sequence=layer.sequence,
                        acquired_at=layer.acquired_at or self.clock.now(),
                        unit_cost=round_cost(layer.unit_cost),
                        original_quantity=layer.original_quantity or layer.quantity,
                        qty_remaining=layer.quantity,
                        source_movement_id=layer.source_movement_id,
                    )
                )
            else:
                row.qty_remaining = layer.quantity
                row.unit_cost = round_cost(layer.unit_cost)
        # Depleted layers leave the projection
        for row in existing.values():
            self.session.delete(row)

    @staticmethod
    def _aggregate(lines: list[ValuationLine], method: CostMethod) -> list[ValuationLine]:
        by_variation: dict[int, list[ValuationLine]] = {}
        for line in lines:
            by_variation.setdefault(line.variation_id, []).append(line)

        result = []
        for variation_id in sorted(by_variation):
            group = by_variation[variation_id]
            qty = sum((l.qty for l in group), ZERO)
            value = sum((l.total_value for l in group), ZERO)
            result.append(
                ValuationLine(
                    variation_id=variation_id,
                    location_id=None,
                    method=method.value,
                    qty=qty,
                    unit_cost=round_cost(value / qty) if qty else ZERO,
                    total_value=value,
                    unvalued_quantity=sum((l.unvalued_quantity for l in group), ZERO),
                    layer_count=sum(l.layer_count for l in group),
                )
            )
        return result
