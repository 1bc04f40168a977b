"""
BalanceStore -- the sole mutation point for stock quantities.

Responsibility:
    Applies a quantity delta to one (variation, location) balance and records
    the matching movement, atomically.  Every quantity-changing call site
    (sales, voids, purchases, transfers, returns, corrections, backfill)
    funnels through ``apply_delta``.

Architecture position:
    Kernel > Services -- imperative shell.  Uses MovementLedger._append for
    the movement row; nothing else writes either table.

Invariants enforced:
    - balance == sum(movement.delta) for every pair, after every call.  The
      balance update and the movement insert share one savepoint.
    - Writers to the same pair are serialized: the balance row is read with
      SELECT ... FOR UPDATE, and the version counter turns any lost update
      that slips through (dialects without row locks) into
      ConcurrencyConflict.
    - Idempotency: a second call with the same (reference_type,
      reference_id, movement_type, variation_id, location_id) returns the
      first call's result and changes nothing.
    - Negative balances are opt-in: per call (``allow_negative``) or per
      movement type (``negative_allowed_types``).

Failure modes:
    - ValidationError: bad delta, sign contradicting the movement type,
      missing reference, unknown movement type.
    - VariationNotFoundError / LocationNotFoundError.
    - InsufficientStockError: result below zero without an override.
    - ConcurrencyConflict: expected_balance mismatch or stale version.
    - ConsistencyError: post-write verification found a mismatch.

Audit relevance:
    Logs ``stock_delta_applied`` for every write and ``stock_delta_replayed``
    for every idempotent replay.  Rejections log at WARNING.
"""

from collections.abc import Iterable
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from stock_kernel.db.types import ZERO, to_decimal, to_quantity
from stock_kernel.domain.clock import Clock
from stock_kernel.domain.dtos import ApplyResult
from stock_kernel.domain.values import (
    MOVEMENT_SIGNS,
    ZERO_DELTA_TYPES,
    DeltaSign,
    MovementType,
    coerce_enum,
)
from stock_kernel.exceptions import (
    ConcurrencyConflict,
    ConsistencyError,
    InsufficientStockError,
    LocationNotFoundError,
    ValidationError,
    VariationNotFoundError,
)
from stock_kernel.logging_config import LogContext, get_logger
from stock_kernel.models.balance import StockBalance
from stock_kernel.models.catalog import Location, ProductVariation
from stock_kernel.services.base import BaseService
from stock_kernel.services.movement_ledger import MovementLedger

logger = get_logger("services.balance_store")

# Reference type used by movements that repair a reconciliation finding
FINDING_REFERENCE_TYPE = "reconciliation_finding"


class BalanceStore(BaseService):
    """
    Per (variation, location) stock balances.

    Contract:
        ``apply_delta`` is the only public way to change a quantity.  The
        caller owns the transaction; this service flushes inside a savepoint
        and leaves commit to the caller.

    Guarantees:
        - Exactly one StockMovement per applied delta, with balance_after
          equal to the new balance.
        - A failed call leaves neither the balance nor the ledger changed.

    Non-goals:
        - Valuation.  unit_cost is recorded on the movement for the
          valuation projection but never affects the quantity.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        *,
        negative_allowed_types: Iterable[str] = (),
        verify_after_write: bool = False,
    ):
        super().__init__(session, clock)
        self.ledger = MovementLedger(session, self.clock)
        self._negative_allowed_types = frozenset(
            coerce_enum(MovementType, t, "negative_allowed_types")
            for t in negative_allowed_types
        )
        self._verify_after_write = verify_after_write

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_balance(self, variation_id: int, location_id: int) -> Decimal:
        """Current balance; a pair that was never referenced is zero."""
        qty = self.session.execute(
            select(StockBalance.qty_available).where(
                StockBalance.variation_id == variation_id,
                StockBalance.location_id == location_id,
            )
        ).scalar_one_or_none()
        return qty if qty is not None else ZERO

    # ------------------------------------------------------------------
    # The write path
    # ------------------------------------------------------------------

    def apply_delta(
        self,
        variation_id: int,
        location_id: int,
        delta,
        movement_type: str,
        reference_type: str,
        reference_id,
        actor_id: int | None = None,
        *,
        allow_negative: bool = False,
        expected_balance=None,
        unit_cost=None,
        notes: str | None = None,
        is_corrective: bool = False,
    ) -> ApplyResult:
        """
        Atomically apply ``delta`` to one balance and record the movement.

        Args:
            variation_id: Product variation.
            location_id: Location holding the stock.
            delta: Signed quantity.  Must agree with the movement type's
                direction; zero only for audit-only types.
            movement_type: One of MovementType.
            reference_type: Kind of originating business event ("sale",
                "transfer", "purchase", ...).
            reference_id: Id of the originating event.
            actor_id: User performing the operation.
            allow_negative: Permit a negative result for this call.
            expected_balance: Optimistic check; ConcurrencyConflict if the
                locked balance differs.
            unit_cost: Cost per unit, recorded for valuation.
            notes: Free text stored on the movement.
            is_corrective: Marks backfill / reconciliation movements.

        Returns:
            ApplyResult.  ``replayed`` is True when the idempotency key
            already existed.
        """
        delta = to_quantity(delta, "delta")
        mtype = coerce_enum(MovementType, movement_type, "movement_type")
        reference_type, reference_id = self._validate_reference(reference_type, reference_id)
        self._validate_sign(mtype, delta)
        if unit_cost is not None:
            unit_cost = to_decimal(unit_cost, "unit_cost")
            if unit_cost < 0:
                raise ValidationError("unit_cost cannot be negative", field="unit_cost")
        if expected_balance is not None:
            expected_balance = to_quantity(expected_balance, "expected_balance")

        variation = self._require_variation(variation_id)
        self._require_location(location_id)

        with LogContext.bind(reference=f"{reference_type}:{reference_id}"):
            try:
                with self.session.begin_nested():
                    balance = self._lock_balance(variation_id, location_id)

                    existing = self.ledger.find_movement(
                        reference_type, reference_id, mtype.value, variation_id, location_id
                    )
                    if existing is not None:
                        logger.info(
                            "stock_delta_replayed",
                            extra={
                                "variation_id": variation_id,
                                "location_id": location_id,
                                "movement_type": mtype.value,
                                "movement_id": existing.id,
                            },
                        )
                        return self._replay_result(existing, variation_id, location_id)

                    current = balance.qty_available
                    if expected_balance is not None and current != expected_balance:
                        logger.warning(
                            "stock_delta_conflict",
                            extra={
                                "variation_id": variation_id,
                                "location_id": location_id,
                                "expected_balance": expected_balance,
                                "actual_balance": current,
                            },
                        )
                        raise ConcurrencyConflict(
                            variation_id, location_id, expected=expected_balance, actual=current
                        )

                    new_balance = current + delta
                    if new_balance < 0 and not (
                        allow_negative or mtype in self._negative_allowed_types
                    ):
                        logger.warning(
                            "insufficient_stock_rejected",
                            extra={
                                "variation_id": variation_id,
                                "location_id": location_id,
                                "current": current,
                                "requested": -delta,
                                "movement_type": mtype.value,
                            },
                        )
                        raise InsufficientStockError(
                            variation_id, location_id, current=current, requested=-delta
                        )

                    balance.qty_available = new_balance
                    balance.updated_at = self.clock.now()
                    movement = self.ledger._append(
                        product_id=variation.product_id,
                        variation_id=variation_id,
                        location_id=location_id,
                        movement_type=mtype.value,
                        delta=delta,
                        balance_after=new_balance,
                        reference_type=reference_type,
                        reference_id=reference_id,
                        actor_id=actor_id,
                        unit_cost=unit_cost,
                        notes=notes,
                        is_corrective=is_corrective,
                    )

                    if self._verify_after_write:
                        self._verify(variation_id, location_id, new_balance)
            except StaleDataError:
                logger.warning(
                    "stock_delta_stale_version",
                    extra={"variation_id": variation_id, "location_id": location_id},
                )
                raise ConcurrencyConflict(variation_id, location_id)
            except IntegrityError:
                # Lost an idempotency-key race to a concurrent replay.
                raise ConcurrencyConflict(variation_id, location_id)

        logger.info(
            "stock_delta_applied",
            extra={
                "variation_id": variation_id,
                "location_id": location_id,
                "movement_type": mtype.value,
                "delta": delta,
                "previous_balance": current,
                "balance": new_balance,
                "movement_id": movement.id,
                "is_corrective": is_corrective,
            },
        )
        return ApplyResult(
            variation_id=variation_id,
            location_id=location_id,
            balance=new_balance,
            previous_balance=current,
            delta=delta,
            movement_id=movement.id,
        )

    # ------------------------------------------------------------------
    # Reconciliation repairs (approved findings only)
    # ------------------------------------------------------------------

    def align_ledger_to_balance(
        self,
        variation_id: int,
        location_id: int,
        finding_id: int,
        actor_id: int | None = None,
        notes: str | None = None,
    ) -> ApplyResult:
        """
        Append a corrective movement so the ledger sums to the balance.

        The balance is trusted (e.g. a movement was lost); the catch-up
        movement carries delta = balance - sum(deltas) and leaves the
        balance unchanged.
        """
        variation = self._require_variation(variation_id)
        with self.session.begin_nested():
            balance = self._lock_balance(variation_id, location_id)
            existing = self.ledger.find_movement(
                FINDING_REFERENCE_TYPE, str(finding_id), MovementType.ADJUSTMENT.value,
                variation_id, location_id,
            )
            if existing is not None:
                return self._replay_result(existing, variation_id, location_id)

            current = balance.qty_available
            delta = current - self.ledger.sum_deltas(variation_id, location_id)
            movement = self.ledger._append(
                product_id=variation.product_id,
                variation_id=variation_id,
                location_id=location_id,
                movement_type=MovementType.ADJUSTMENT.value,
                delta=delta,
                balance_after=current,
                reference_type=FINDING_REFERENCE_TYPE,
                reference_id=str(finding_id),
                actor_id=actor_id,
                notes=notes or "Ledger catch-up approved from reconciliation finding",
                is_corrective=True,
            )

        logger.warning(
            "ledger_aligned_to_balance",
            extra={
                "variation_id": variation_id,
                "location_id": location_id,
                "finding_id": finding_id,
                "delta": delta,
                "balance": current,
                "movement_id": movement.id,
            },
        )
        return ApplyResult(
            variation_id=variation_id,
            location_id=location_id,
            balance=current,
            previous_balance=current,
            delta=delta,
            movement_id=movement.id,
        )

    def reset_balance_to_ledger(
        self,
        variation_id: int,
        location_id: int,
        finding_id: int,
        actor_id: int | None = None,
        notes: str | None = None,
    ) -> ApplyResult:
        """
        Set the balance to sum(deltas), recording a zero-delta audit movement.

        The ledger is trusted (e.g. the balance row was edited out of band).
        """
        variation = self._require_variation(variation_id)
        try:
            with self.session.begin_nested():
                balance = self._lock_balance(variation_id, location_id)
                existing = self.ledger.find_movement(
                    FINDING_REFERENCE_TYPE, str(finding_id), MovementType.ADJUSTMENT.value,
                    variation_id, location_id,
                )
                if existing is not None:
                    return self._replay_result(existing, variation_id, location_id)

                previous = balance.qty_available
                ledger_sum = self.ledger.sum_deltas(variation_id, location_id)
                balance.qty_available = ledger_sum
                balance.updated_at = self.clock.now()
                movement = self.ledger._append(
                    product_id=variation.product_id,
                    variation_id=variation_id,
                    location_id=location_id,
                    movement_type=MovementType.ADJUSTMENT.value,
                    delta=ZERO,
                    balance_after=ledger_sum,
                    reference_type=FINDING_REFERENCE_TYPE,
                    reference_id=str(finding_id),
                    actor_id=actor_id,
                    notes=notes or f"Balance reset from {previous} to ledger sum {ledger_sum}",
                    is_corrective=True,
                )
        except StaleDataError:
            raise ConcurrencyConflict(variation_id, location_id)

        logger.warning(
            "balance_reset_to_ledger",
            extra={
                "variation_id": variation_id,
                "location_id": location_id,
                "finding_id": finding_id,
                "previous_balance": previous,
                "balance": ledger_sum,
                "movement_id": movement.id,
            },
        )
        return ApplyResult(
            variation_id=variation_id,
            location_id=location_id,
            balance=ledger_sum,
            previous_balance=previous,
            delta=ZERO,
            movement_id=movement.id,
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _lock_balance(self, variation_id: int, location_id: int) -> StockBalance:
        """Lock the pair's balance row, creating it at zero on first use."""
        stmt = (
            select(StockBalance)
            .where(
                StockBalance.variation_id == variation_id,
                StockBalance.location_id == location_id,
            )
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        balance = self.session.execute(stmt).scalar_one_or_none()
        if balance is not None:
            return balance

        savepoint = self.session.begin_nested()
        try:
            balance = StockBalance(
                variation_id=variation_id,
                location_id=location_id,
                qty_available=ZERO,
                updated_at=self.clock.now(),
            )
            self.session.add(balance)
            self.session.flush()
            savepoint.commit()
            logger.debug(
                "stock_balance_created",
                extra={"variation_id": variation_id, "location_id": location_id},
            )
            return balance
        except IntegrityError:
            # Another writer created the row first; lock theirs.
            savepoint.rollback()
            logger.debug(
                "stock_balance_create_race",
                extra={"variation_id": variation_id, "location_id": location_id},
            )
            return self.session.execute(stmt).scalar_one()

    def _verify(self, variation_id: int, location_id: int, new_balance: Decimal) -> None:
        ledger_sum = self.ledger.sum_deltas(variation_id, location_id)
        if ledger_sum != new_balance:
            logger.error(
                "post_write_verification_failed",
                extra={
                    "variation_id": variation_id,
                    "location_id": location_id,
                    "balance": new_balance,
                    "ledger_sum": ledger_sum,
                },
            )
            raise ConsistencyError(
                variation_id, location_id, balance=new_balance, ledger_sum=ledger_sum
            )

    def _replay_result(self, existing, variation_id: int, location_id: int) -> ApplyResult:
        return ApplyResult(
            variation_id=variation_id,
            location_id=location_id,
            balance=existing.balance_after,
            previous_balance=existing.balance_after - existing.delta,
            delta=existing.delta,
            movement_id=existing.id,
            replayed=True,
        )

    def _require_variation(self, variation_id: int) -> ProductVariation:
        variation = self.session.get(ProductVariation, variation_id)
        if variation is None:
            raise VariationNotFoundError(variation_id)
        return variation

    def _require_location(self, location_id: int) -> Location:
        location = self.session.get(Location, location_id)
        if location is None:
            raise LocationNotFoundError(location_id)
        return location

    @staticmethod
    def _validate_reference(reference_type, reference_id) -> tuple[str, str]:
        if not reference_type or not str(reference_type).strip():
            raise ValidationError("reference_type is required", field="reference_type")
        if reference_id is None or not str(reference_id).strip():
            raise ValidationError("reference_id is required", field="reference_id")
        return str(reference_type).strip(), str(reference_id).strip()

    @staticmethod
    def _validate_sign(mtype: MovementType, delta: Decimal) -> None:
        if delta == 0:
            if mtype not in ZERO_DELTA_TYPES:
                raise ValidationError(
                    f"Zero delta is not allowed for {mtype.value} movements",
                    field="delta",
                )
            return
        sign = MOVEMENT_SIGNS[mtype]
        if sign is DeltaSign.POSITIVE and delta < 0:
            raise ValidationError(
                f"{mtype.value} movements must increase stock, got {delta}",
                field="delta",
            )
        if sign is DeltaSign.NON_NEGATIVE and delta < 0:
            raise ValidationError(
                f"{mtype.value} movements cannot decrease stock, got {delta}",
                field="delta",
            )
        if sign is DeltaSign.NEGATIVE and delta > 0:
            raise ValidationError(
                f"{mtype.value} movements must decrease stock, got {delta}",
                field="delta",
            )
