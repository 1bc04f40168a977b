"""
MovementLedger -- the append-only history of stock changes.

Responsibility:
    Owns the single write path into ``stock_movements`` (``_append``) and the
    reconciliation of a balance against its history (``reconcile``).

Architecture position:
    Kernel > Services.  ``_append`` is private: the only caller is
    BalanceStore, which always writes the balance row in the same savepoint.
    Everyone else reads through ``history`` / ``sum_deltas`` or the
    MovementSelector.

Invariants enforced:
    - There is exactly one movement ledger.  Any other history view is a
      read-only projection of this table.
    - reconcile() never writes.  A mismatch becomes a ConsistencyReport,
      and fixing it requires an explicit, approved corrective movement.

Failure modes:
    - IntegrityError from _append on an idempotency key collision.

Audit relevance:
    reconcile() logs ``ledger_reconciled`` (clean) or
    ``ledger_inconsistency_detected`` (warning) with the variance.
"""

from decimal import Decimal

from sqlalchemy.orm import Session

from stock_kernel.domain.clock import Clock
from stock_kernel.domain.dtos import ChainBreak, ConsistencyReport, MovementView
from stock_kernel.logging_config import get_logger
from stock_kernel.models.movement import StockMovement
from stock_kernel.selectors.movement_selector import MovementSelector
from stock_kernel.services.base import BaseService

logger = get_logger("services.movement_ledger")


class MovementLedger(BaseService):
    """
    Append-only movement ledger.

    Contract:
        Rows are written only by BalanceStore through ``_append``.  Reads
        return frozen MovementView DTOs.

    Guarantees:
        - Movements are returned in write (id) order.
        - reconcile() is side-effect free.

    Non-goals:
        - Deciding how to repair a mismatch.  See ReconciliationService.
    """

    def __init__(self, session: Session, clock: Clock | None = None):
        super().__init__(session, clock)
        self._selector = MovementSelector(session)

    # ------------------------------------------------------------------
    # Write path (BalanceStore only)
    # ------------------------------------------------------------------

    def _append(
        self,
        *,
        product_id: int,
        variation_id: int,
        location_id: int,
        movement_type: str,
        delta: Decimal,
        balance_after: Decimal,
        reference_type: str,
        reference_id: str,
        actor_id: int | None,
        unit_cost: Decimal | None = None,
        notes: str | None = None,
        is_corrective: bool = False,
    ) -> StockMovement:
        movement = StockMovement(
            product_id=product_id,
            variation_id=variation_id,
            location_id=location_id,
            movement_type=str(getattr(movement_type, "value", movement_type)),
            delta=delta,
            balance_after=balance_after,
            unit_cost=unit_cost,
            reference_type=reference_type,
            reference_id=str(reference_id),
            actor_id=actor_id,
            created_at=self.clock.now(),
            notes=notes,
            is_corrective=is_corrective,
        )
        self.session.add(movement)
        self.session.flush()
        return movement

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def history(
        self,
        variation_id: int,
        location_id: int,
        *,
        after_id: int = 0,
        limit: int | None = None,
    ) -> list[MovementView]:
        return self._selector.history(
            variation_id, location_id, after_id=after_id, limit=limit
        )

    def sum_deltas(self, variation_id: int, location_id: int) -> Decimal:
        return self._selector.sum_deltas(variation_id, location_id)

    def find_movement(
        self,
        reference_type: str,
        reference_id: str,
        movement_type: str,
        variation_id: int,
        location_id: int,
    ) -> MovementView | None:
        return self._selector.find_by_key(
            reference_type,
            str(reference_id),
            str(getattr(movement_type, "value", movement_type)),
            variation_id,
            location_id,
        )

    def for_reference(self, reference_type: str, reference_id: str) -> list[MovementView]:
        return self._selector.for_reference(reference_type, str(reference_id))

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    def reconcile(self, variation_id: int, location_id: int) -> ConsistencyReport:
        """
        Compare the balance row with the ledger for one pair.

        Walks the movements in write order checking that each balance_after
        equals the previous balance_after plus its delta.  A corrective
        movement re-anchors the chain: breaks before it were acknowledged by
        the operator who approved it and are not reported again.

        Returns:
            ConsistencyReport.  ``report.error`` is a ConsistencyError when
            the pair is inconsistent; call ``raise_for_inconsistency()`` to
            raise it.
        """
        balance_view = self._selector.balance(variation_id, location_id)
        balance = balance_view.qty_available if balance_view else Decimal("0")

        ledger_sum = Decimal("0")
        previous_after: Decimal | None = None
        breaks: list[ChainBreak] = []
        count = 0

        for m in self._selector.history(variation_id, location_id):
            count += 1
            ledger_sum += m.delta
            if m.is_corrective:
                breaks = []
            else:
                expected = (previous_after or Decimal("0")) + m.delta
                if m.balance_after != expected:
                    breaks.append(
                        ChainBreak(
                            movement_id=m.id,
                            expected_balance_after=expected,
                            actual_balance_after=m.balance_after,
                        )
                    )
            previous_after = m.balance_after

        report = ConsistencyReport(
            variation_id=variation_id,
            location_id=location_id,
            balance=balance,
            ledger_sum=ledger_sum,
            last_balance_after=previous_after,
            movement_count=count,
            chain_breaks=tuple(breaks),
            checked_at=self.clock.now(),
        )

        if report.is_consistent:
            logger.debug(
                "ledger_reconciled",
                extra={
                    "variation_id": variation_id,
                    "location_id": location_id,
                    "balance": balance,
                    "movement_count": count,
                },
            )
        else:
            logger.warning(
                "ledger_inconsistency_detected",
                extra={
                    "variation_id": variation_id,
                    "location_id": location_id,
                    "balance": balance,
                    "ledger_sum": ledger_sum,
                    "variance": report.variance,
                    "last_balance_after": previous_after,
                    "chain_breaks": len(breaks),
                },
            )
        return report
