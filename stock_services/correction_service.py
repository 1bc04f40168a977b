"""
stock_services.correction_service -- Manual adjustments and physical counts.

Responsibility:
    Two ways to correct stock by hand:

    * ``adjust`` -- an immediate signed adjustment with a mandatory reason.
    * ``record_count`` / ``approve`` -- a physical count snapshotted against
      the system count and applied only after approval.

Architecture position:
    Services -- writes through BalanceStore only.

Invariants enforced:
    - Every adjustment has a non-blank reason and writes exactly one
      ``adjustment`` movement.
    - A count stores ``difference = physical - system`` at count time.
      Approval applies that difference, not ``physical - current``, so
      movements between count and approval are preserved.
    - ``bulk_approve`` is all-or-nothing.
    - Negative results only with an explicit ``allow_negative=True``.

Failure modes:
    - ValidationError: blank reason, zero delta, negative count.
    - InsufficientStockError: adjustment would go negative.
    - InvalidTransitionError: settling a settled correction.
    - CorrectionNotFoundError.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum

from sqlalchemy import select
from sqlalchemy.orm import Session

from stock_kernel.db.types import to_quantity
from stock_kernel.domain.clock import Clock
from stock_kernel.domain.dtos import ApplyResult
from stock_kernel.domain.values import MovementType
from stock_kernel.exceptions import (
    CorrectionNotFoundError,
    InvalidTransitionError,
    LocationNotFoundError,
    ValidationError,
    VariationNotFoundError,
)
from stock_kernel.logging_config import LogContext, get_logger
from stock_kernel.models.catalog import Location, ProductVariation
from stock_kernel.models.correction import InventoryCorrection
from stock_kernel.services.balance_store import BalanceStore
from stock_kernel.services.base import BaseService

logger = get_logger("services.correction")

ADJUSTMENT_REFERENCE = "manual_adjustment"
CORRECTION_REFERENCE = "inventory_correction"


class CorrectionStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


@dataclass(frozen=True)
class CorrectionView:
    id: int
    variation_id: int
    location_id: int
    system_count: Decimal
    physical_count: Decimal
    difference: Decimal
    reason: str
    status: str
    movement_id: int | None
    approved_by: int | None


def correction_to_view(c: InventoryCorrection) -> CorrectionView:
    return CorrectionView(
        id=c.id,
        variation_id=c.variation_id,
        location_id=c.location_id,
        system_count=c.system_count,
        physical_count=c.physical_count,
        difference=c.difference,
        reason=c.reason,
        status=c.status,
        movement_id=c.movement_id,
        approved_by=c.approved_by,
    )


def _require_reason(reason) -> str:
    if reason is None or not str(reason).strip():
        raise ValidationError("A reason is required for stock corrections", field="reason")
    return str(reason).strip()


class CorrectionService(BaseService):
    """
    Stock adjustments and count corrections.

    Contract:
        Callers commit.  ``approve`` and ``bulk_approve`` run inside one
        savepoint each.

    Non-goals:
        - Fixing ledger/balance mismatches.  Those are reconciliation
          findings, not stock corrections.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        *,
        balance_store: BalanceStore | None = None,
    ):
        super().__init__(session, clock)
        self.balances = balance_store or BalanceStore(session, self.clock)

    def adjust(
        self,
        variation_id: int,
        location_id: int,
        delta,
        reason: str,
        actor_id: int | None,
        reference_id,
        allow_negative: bool = False,
    ) -> ApplyResult:
        """Apply a signed manual adjustment."""
        reason = _require_reason(reason)
        delta = to_quantity(delta, "delta")
        if delta == 0:
            raise ValidationError("Adjustment delta cannot be zero", field="delta")

        result = self.balances.apply_delta(
            variation_id,
            location_id,
            delta,
            MovementType.ADJUSTMENT,
            ADJUSTMENT_REFERENCE,
            reference_id,
            actor_id,
            allow_negative=allow_negative,
            notes=reason,
        )
        logger.info(
            "stock_adjusted",
            extra={
                "variation_id": variation_id,
                "location_id": location_id,
                "delta": delta,
                "balance": result.balance,
                "replayed": result.replayed,
                "actor_id": actor_id,
            },
        )
        return result

    # ------------------------------------------------------------------
    # Physical counts
    # ------------------------------------------------------------------

    def record_count(
        self,
        variation_id: int,
        location_id: int,
        physical_count,
        reason: str,
        actor_id: int | None = None,
    ) -> InventoryCorrection:
        reason = _require_reason(reason)
        physical = to_quantity(physical_count, "physical_count")
        if physical < 0:
            raise ValidationError("Physical count cannot be negative", field="physical_count")
        variation = self.session.get(ProductVariation, variation_id)
        if variation is None:
            raise VariationNotFoundError(variation_id)
        if self.session.get(Location, location_id) is None:
            raise LocationNotFoundError(location_id)

        system = self.balances.get_balance(variation_id, location_id)
        correction = InventoryCorrection(
            product_id=variation.product_id,
            variation_id=variation_id,
            location_id=location_id,
            system_count=system,
            physical_count=physical,
            difference=physical - system,
            reason=reason,
            status=CorrectionStatus.PENDING.value,
            created_by=actor_id,
        )
        self.session.add(correction)
        self.session.flush()
        logger.info(
            "count_recorded",
            extra={
                "correction_id": correction.id,
                "variation_id": variation_id,
                "location_id": location_id,
                "system_count": system,
                "physical_count": physical,
                "difference": correction.difference,
            },
        )
        return correction

    def approve(self, correction_id: int, actor_id: int | None = None) -> InventoryCorrection:
        with self.session.begin_nested():
            return self._approve(correction_id, actor_id)

    def bulk_approve(
        self,
        correction_ids: Iterable[int],
        actor_id: int | None = None,
    ) -> list[InventoryCorrection]:
        """Approve every correction or none of them."""
        ids = list(dict.fromkeys(correction_ids))
        if not ids:
            raise ValidationError("No corrections to approve", field="correction_ids")
        with self.session.begin_nested():
            approved = [self._approve(cid, actor_id) for cid in ids]
        logger.info("corrections_bulk_approved", extra={"count": len(approved), "actor_id": actor_id})
        return approved

    def reject(self, correction_id: int, actor_id: int | None, reason: str) -> InventoryCorrection:
        reason = _require_reason(reason)
        correction = self._lock_pending(correction_id, CorrectionStatus.REJECTED)
        correction.status = CorrectionStatus.REJECTED.value
        correction.rejection_reason = reason
        correction.approved_by = actor_id
        correction.approved_at = self.clock.now()
        self.session.flush()
        logger.info("correction_rejected", extra={"correction_id": correction_id, "actor_id": actor_id})
        return correction

    def get(self, correction_id: int) -> InventoryCorrection:
        correction = self.session.get(InventoryCorrection, correction_id)
        if correction is None:
            raise CorrectionNotFoundError(correction_id)
        return correction

    def pending(self, location_id: int | None = None) -> list[InventoryCorrection]:
        stmt = select(InventoryCorrection).where(
            InventoryCorrection.status == CorrectionStatus.PENDING.value
        )
        if location_id is not None:
            stmt = stmt.where(InventoryCorrection.location_id == location_id)
        return list(self.session.scalars(stmt.order_by(InventoryCorrection.id)))

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _approve(self, correction_id: int, actor_id: int | None) -> InventoryCorrection:
        with LogContext.bind(reference=f"{CORRECTION_REFERENCE}:{correction_id}"):
            correction = self._lock_pending(correction_id, CorrectionStatus.APPROVED)
            if correction.difference != Decimal("0"):
                result = self.balances.apply_delta(
                    correction.variation_id,
                    correction.location_id,
                    correction.difference,
                    MovementType.ADJUSTMENT,
                    CORRECTION_REFERENCE,
                    correction.id,
                    actor_id,
                    notes=(
                        f"Count correction: system {correction.system_count}, "
                        f"physical {correction.physical_count}. {correction.reason}"
                    ),
                )
                correction.movement_id = result.movement_id
            correction.status = CorrectionStatus.APPROVED.value
            correction.approved_by = actor_id
            correction.approved_at = self.clock.now()
            self.session.flush()
            logger.info(
                "correction_approved",
                extra={
                    "correction_id": correction_id,
                    "difference": correction.difference,
                    "movement_id": correction.movement_id,
                    "actor_id": actor_id,
                },
            )
            return correction

    def _lock_pending(self, correction_id: int, target: CorrectionStatus) -> InventoryCorrection:
        correction = self.session.execute(
            select(InventoryCorrection)
            .where(InventoryCorrection.id == correction_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if correction is None:
            raise CorrectionNotFoundError(correction_id)
        if correction.status != CorrectionStatus.PENDING.value:
            raise InvalidTransitionError(
                "InventoryCorrection", correction_id, correction.status, target.value
            )
        return correction
