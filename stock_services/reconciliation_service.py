"""
stock_services.reconciliation_service -- Operator-facing ledger audit and
transfer backfill.

Responsibility:
    * ``run_audit`` reconciles every pair in scope and persists a report of
      findings, each with the corrective movement that would fix it.
    * ``approve_finding`` / ``reject_finding`` let an operator act on them.
    * ``find_incomplete_transfers`` / ``backfill_transfer`` repair transfers
      whose status says stock moved but whose movements are missing.

Architecture position:
    Services -- orchestration over MovementLedger.reconcile (detection),
    stock_engines.reconciliation.variance (classification) and BalanceStore
    (repairs).

Invariants enforced:
    - Detection never corrects.  An audit only writes the run and its
      findings; stock changes only after an explicit approval.
    - Both resolutions leave ``balance == sum(deltas)`` for the pair.
    - Backfill applies each missing movement exactly once: movements carry
      the transfer's own idempotency key, so a second backfill finds
      nothing to do.
    - ReconciliationRun rows are immutable once written.

Failure modes:
    - FindingNotFoundError / TransferNotFoundError.
    - InvalidTransitionError when a finding was already settled.
    - ValidationError for an unknown resolution.

Audit relevance:
    Logs ``reconciliation_audit_completed``, ``reconciliation_finding_approved``,
    ``reconciliation_finding_rejected`` and ``transfer_backfilled``.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum

from sqlalchemy import select
from sqlalchemy.orm import Session

from stock_engines.reconciliation.variance import VarianceThresholds, classify_variance
from stock_kernel.db.types import ZERO
from stock_kernel.domain.clock import Clock
from stock_kernel.domain.dtos import ConsistencyReport, VarianceType
from stock_kernel.domain.values import MovementType, coerce_enum
from stock_kernel.exceptions import (
    FindingNotFoundError,
    InvalidTransitionError,
    TransferNotFoundError,
    ValidationError,
)
from stock_kernel.logging_config import LogContext, get_logger
from stock_kernel.models.reconciliation import ReconciliationFinding, ReconciliationRun
from stock_kernel.models.transfer import Transfer
from stock_kernel.selectors.movement_selector import MovementSelector
from stock_kernel.services.balance_store import BalanceStore
from stock_kernel.services.base import BaseService
from stock_services.transfer_service import TRANSFER_REFERENCE
from stock_services.transfer_workflow import DEDUCTED_STATES, TransferStatus

logger = get_logger("services.reconciliation")


class FindingStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    APPLIED = "applied"


class FindingResolution(str, Enum):
    LEDGER = "ledger"      # trust the balance, append a catch-up movement
    BALANCE = "balance"    # trust the ledger, reset the balance
    BACKFILL = "backfill"  # missing transfer movement applied


class RunKind(str, Enum):
    AUDIT = "audit"
    TRANSFER_BACKFILL = "transfer_backfill"


@dataclass(frozen=True)
class MissingMovement:
    item_id: int
    variation_id: int
    location_id: int
    movement_type: MovementType
    delta: Decimal


@dataclass(frozen=True)
class IncompleteTransfer:
    transfer_id: int
    transfer_number: str | None
    status: str
    missing: tuple[MissingMovement, ...]


@dataclass(frozen=True)
class FindingView:
    id: int
    run_id: int
    variation_id: int
    location_id: int
    balance: Decimal
    ledger_sum: Decimal
    variance: Decimal
    variance_type: str
    variance_value: Decimal | None
    requires_investigation: bool
    auto_fixable: bool
    suspicious: bool
    proposed_movement_type: str
    proposed_delta: Decimal
    status: str
    resolution: str | None
    movement_id: int | None
    description: str | None


@dataclass(frozen=True)
class RunView:
    id: int
    kind: str
    pairs_checked: int
    finding_count: int
    run_at: datetime
    findings: tuple[FindingView, ...] = ()


def finding_to_view(f: ReconciliationFinding) -> FindingView:
    return FindingView(
        id=f.id,
        run_id=f.run_id,
        variation_id=f.variation_id,
        location_id=f.location_id,
        balance=f.balance,
        ledger_sum=f.ledger_sum,
        variance=f.variance,
        variance_type=f.variance_type,
        variance_value=f.variance_value,
        requires_investigation=f.requires_investigation,
        auto_fixable=f.auto_fixable,
        suspicious=f.suspicious,
        proposed_movement_type=f.proposed_movement_type,
        proposed_delta=f.proposed_delta,
        status=f.status,
        resolution=f.resolution,
        movement_id=f.movement_id,
        description=f.description,
    )


def run_to_view(run: ReconciliationRun, findings: list[ReconciliationFinding]) -> RunView:
    return RunView(
        id=run.id,
        kind=run.kind,
        pairs_checked=run.pairs_checked,
        finding_count=run.finding_count,
        run_at=run.run_at,
        findings=tuple(finding_to_view(f) for f in findings),
    )


class ReconciliationService(BaseService):
    """
    Ledger audit and repair.

    Contract:
        Callers commit.  Each public write runs in one savepoint.

    Non-goals:
        - Applying auto-fixable findings on its own.  ``auto_fixable`` is a
          hint to the operator, nothing more.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        *,
        balance_store: BalanceStore | None = None,
        thresholds: VarianceThresholds | None = None,
        activity_window_days: int = 30,
    ):
        super().__init__(session, clock)
        self.balances = balance_store or BalanceStore(session, self.clock)
        self.ledger = self.balances.ledger
        self.thresholds = thresholds or VarianceThresholds()
        self.activity_window = timedelta(days=activity_window_days)
        self._movements = MovementSelector(session)

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    def run_audit(
        self,
        business_id: int | None = None,
        location_id: int | None = None,
        actor_id: int | None = None,
    ) -> ReconciliationRun:
        """Reconcile every pair in scope and record one finding per mismatch."""
        pairs = self._movements.pairs(business_id=business_id, location_id=location_id)
        reports = [self.ledger.reconcile(v, l) for v, l in pairs]
        mismatches = [r for r in reports if not r.is_consistent]

        with self.session.begin_nested():
            run = ReconciliationRun(
                kind=RunKind.AUDIT.value,
                business_id=business_id,
                location_id=location_id,
                pairs_checked=len(pairs),
                finding_count=len(mismatches),
                actor_id=actor_id,
                run_at=self.clock.now(),
            )
            self.session.add(run)
            self.session.flush()
            for report in mismatches:
                self.session.add(self._finding_for(run, report))
            self.session.flush()

        logger.info(
            "reconciliation_audit_completed",
            extra={
                "run_id": run.id,
                "business_id": business_id,
                "location_id": location_id,
                "pairs_checked": len(pairs),
                "finding_count": len(mismatches),
            },
        )
        return run

    def approve_finding(
        self,
        finding_id: int,
        actor_id: int | None,
        resolution: str = FindingResolution.LEDGER.value,
    ) -> ReconciliationFinding:
        """
        Apply the approved fix for a pending finding.

        ``ledger`` appends a corrective movement of balance - sum(deltas);
        ``balance`` resets the balance to sum(deltas).  Values are taken at
        approval time, so activity since the audit is accounted for.
        """
        resolution = coerce_enum(FindingResolution, resolution, "resolution")
        if resolution is FindingResolution.BACKFILL:
            raise ValidationError("Backfill is not an audit resolution", field="resolution")

        with LogContext.bind(reference=f"reconciliation_finding:{finding_id}"):
            with self.session.begin_nested():
                finding = self._lock_pending(finding_id, FindingStatus.APPROVED)
                note = f"Approved reconciliation finding {finding_id} ({resolution.value})"
                if resolution is FindingResolution.LEDGER:
                    result = self.balances.align_ledger_to_balance(
                        finding.variation_id, finding.location_id, finding.id, actor_id, note
                    )
                else:
                    result = self.balances.reset_balance_to_ledger(
                        finding.variation_id, finding.location_id, finding.id, actor_id, note
                    )
                finding.status = FindingStatus.APPROVED.value
                finding.resolution = resolution.value
                finding.resolved_by = actor_id
                finding.resolved_at = self.clock.now()
                finding.movement_id = result.movement_id
                self.session.flush()

            logger.info(
                "reconciliation_finding_approved",
                extra={
                    "finding_id": finding_id,
                    "variation_id": finding.variation_id,
                    "location_id": finding.location_id,
                    "resolution": resolution.value,
                    "movement_id": result.movement_id,
                    "actor_id": actor_id,
                },
            )
            return finding

    def reject_finding(
        self,
        finding_id: int,
        actor_id: int | None,
        reason: str,
    ) -> ReconciliationFinding:
        if not reason or not str(reason).strip():
            raise ValidationError("A rejection reason is required", field="reason")
        finding = self._lock_pending(finding_id, FindingStatus.REJECTED)
        finding.status = FindingStatus.REJECTED.value
        finding.resolved_by = actor_id
        finding.resolved_at = self.clock.now()
        finding.description = f"{finding.description or ''}\nRejected: {str(reason).strip()}".strip()
        self.session.flush()
        logger.info(
            "reconciliation_finding_rejected",
            extra={"finding_id": finding_id, "actor_id": actor_id},
        )
        return finding

    def pending_findings(self, location_id: int | None = None) -> list[ReconciliationFinding]:
        stmt = select(ReconciliationFinding).where(
            ReconciliationFinding.status == FindingStatus.PENDING.value
        )
        if location_id is not None:
            stmt = stmt.where(ReconciliationFinding.location_id == location_id)
        return list(self.session.scalars(stmt.order_by(ReconciliationFinding.id)))

    # ------------------------------------------------------------------
    # Transfer backfill
    # ------------------------------------------------------------------

    def find_incomplete_transfers(self, business_id: int | None = None) -> list[IncompleteTransfer]:
        """Transfers past ``sent`` that are missing a movement their status implies."""
        stmt = select(Transfer).where(
            Transfer.status.in_([s.value for s in DEDUCTED_STATES])
        )
        if business_id is not None:
            stmt = stmt.where(Transfer.business_id == business_id)

        result = []
        for transfer in self.session.scalars(stmt.order_by(Transfer.id)):
            missing = self._missing_movements(transfer)
            if missing:
                result.append(
                    IncompleteTransfer(
                        transfer_id=transfer.id,
                        transfer_number=transfer.transfer_number,
                        status=transfer.status,
                        missing=missing,
                    )
                )
        return result

    def backfill_transfer(
        self,
        transfer_id: int,
        actor_id: int | None = None,
    ) -> ReconciliationRun | None:
        """
        Apply every movement the transfer is missing, as corrective rows.

        Returns the ``transfer_backfill`` run, or None when nothing was
        missing.  Goods that already left are recorded even if that takes
        the source negative.
        """
        transfer = self.session.get(Transfer, transfer_id)
        if transfer is None:
            raise TransferNotFoundError(transfer_id)

        with LogContext.bind(transfer_id=transfer_id):
            missing = self._missing_movements(transfer)
            if not missing:
                logger.info("transfer_backfill_not_needed", extra={"status": transfer.status})
                return None

            label = transfer.transfer_number or transfer.id
            with self.session.begin_nested():
                applied = []
                for m in missing:
                    ledger_sum = self.ledger.sum_deltas(m.variation_id, m.location_id)
                    result = self.balances.apply_delta(
                        m.variation_id,
                        m.location_id,
                        m.delta,
                        m.movement_type,
                        TRANSFER_REFERENCE,
                        transfer.id,
                        actor_id,
                        allow_negative=True,
                        notes=f"Backfilled {m.movement_type.value} for transfer {label}",
                        is_corrective=True,
                    )
                    applied.append((m, ledger_sum, result))

                transfer.stock_deducted = True
                if transfer.status == TransferStatus.COMPLETED.value:
                    transfer.stock_received = True

                run = ReconciliationRun(
                    kind=RunKind.TRANSFER_BACKFILL.value,
                    business_id=transfer.business_id,
                    reference=f"transfer:{transfer.id}",
                    pairs_checked=len(transfer.items),
                    finding_count=len(applied),
                    actor_id=actor_id,
                    run_at=self.clock.now(),
                )
                self.session.add(run)
                self.session.flush()
                now = self.clock.now()
                for m, ledger_sum, result in applied:
                    variance = result.previous_balance - ledger_sum
                    self.session.add(
                        ReconciliationFinding(
                            run_id=run.id,
                            variation_id=m.variation_id,
                            location_id=m.location_id,
                            balance=result.previous_balance,
                            ledger_sum=ledger_sum,
                            variance=variance,
                            variance_type=_variance_type(variance).value,
                            chain_break_count=0,
                            proposed_movement_type=m.movement_type.value,
                            proposed_delta=m.delta,
                            description=(
                                f"Transfer {label} is {transfer.status} but item {m.item_id} "
                                f"had no {m.movement_type.value} movement"
                            ),
                            status=FindingStatus.APPLIED.value,
                            resolution=FindingResolution.BACKFILL.value,
                            resolved_by=actor_id,
                            resolved_at=now,
                            movement_id=result.movement_id,
                        )
                    )
                self.session.flush()

            logger.warning(
                "transfer_backfilled",
                extra={
                    "run_id": run.id,
                    "status": transfer.status,
                    "movements_applied": len(applied),
                },
            )
            return run

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _finding_for(self, run: ReconciliationRun, report: ConsistencyReport) -> ReconciliationFinding:
        v, l = report.variation_id, report.location_id
        since = self.clock.now() - self.activity_window
        classification = classify_variance(
            report.balance,
            report.ledger_sum,
            unit_cost=self._movements.last_unit_cost(v, l),
            movement_count=report.movement_count,
            recent_movement_count=self._movements.count_since(v, l, since),
            chain_break_count=len(report.chain_breaks),
            thresholds=self.thresholds,
        )
        reasons = "; ".join(classification.reasons)
        description = (
            f"Balance {report.balance} vs ledger sum {report.ledger_sum} "
            f"({classification.variance_type.value})"
        )
        if reasons:
            description = f"{description}: {reasons}"
        return ReconciliationFinding(
            run_id=run.id,
            variation_id=v,
            location_id=l,
            balance=report.balance,
            ledger_sum=report.ledger_sum,
            variance=report.variance,
            variance_type=classification.variance_type.value,
            variance_value=classification.variance_value,
            chain_break_count=len(report.chain_breaks),
            requires_investigation=classification.requires_investigation,
            auto_fixable=classification.auto_fixable,
            suspicious=classification.suspicious,
            proposed_movement_type=MovementType.ADJUSTMENT.value,
            proposed_delta=report.variance,
            description=description[:2000],
            status=FindingStatus.PENDING.value,
        )

    def _missing_movements(self, transfer: Transfer) -> tuple[MissingMovement, ...]:
        status = TransferStatus(transfer.status)
        if status not in DEDUCTED_STATES:
            return ()
        missing = []
        for item in transfer.items:
            out = self.ledger.find_movement(
                TRANSFER_REFERENCE, str(transfer.id), MovementType.TRANSFER_OUT,
                item.variation_id, transfer.from_location_id,
            )
            if out is None:
                missing.append(
                    MissingMovement(
                        item_id=item.id,
                        variation_id=item.variation_id,
                        location_id=transfer.from_location_id,
                        movement_type=MovementType.TRANSFER_OUT,
                        delta=-item.quantity,
                    )
                )
            if status is TransferStatus.COMPLETED:
                inbound = self.ledger.find_movement(
                    TRANSFER_REFERENCE, str(transfer.id), MovementType.TRANSFER_IN,
                    item.variation_id, transfer.to_location_id,
                )
                if inbound is None:
                    received = item.received_quantity
                    missing.append(
                        MissingMovement(
                            item_id=item.id,
                            variation_id=item.variation_id,
                            location_id=transfer.to_location_id,
                            movement_type=MovementType.TRANSFER_IN,
                            delta=received if received else item.quantity,
                        )
                    )
        return tuple(missing)

    def _lock_pending(self, finding_id: int, target: FindingStatus) -> ReconciliationFinding:
        finding = self.session.execute(
            select(ReconciliationFinding)
            .where(ReconciliationFinding.id == finding_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if finding is None:
            raise FindingNotFoundError(finding_id)
        if finding.status != FindingStatus.PENDING.value:
            raise InvalidTransitionError(
                "ReconciliationFinding", finding_id, finding.status, target.value
            )
        return finding


def _variance_type(variance: Decimal) -> VarianceType:
    if variance > ZERO:
        return VarianceType.OVERAGE
    if variance < ZERO:
        return VarianceType.SHORTAGE
    return VarianceType.MATCH
