"""
stock_services.stock_ledger -- Public entry point for the inventory ledger.

Responsibility:
    ``StockServices`` wires every service for one session, exactly once.
    ``StockLedger`` is the outward-facing API: each operation runs as one
    unit of work through the TransactionRunner (fresh session, commit,
    retry on conflict) and returns frozen DTOs.

Architecture position:
    Services -- top of the service layer.  The only module that reads
    StockLedgerConfig and turns it into constructor arguments for kernel
    services.

Invariants enforced:
    - No module-level database or session.  A StockLedger is built from an
      explicit Database, config and clock.
    - One service instance per kind per unit of work; all share the
      session and the clock.
    - Nothing session-bound escapes a unit of work.

Failure modes:
    - Any StockKernelError from the underlying services, unchanged.
    - RetryExhaustedError when a unit of work keeps conflicting.

Usage:
    from stock_config import get_active_config
    from stock_services import StockLedger

    ledger = StockLedger.from_config(get_active_config())
    ledger.apply_delta(variation_id, location_id, 5, "purchase", "grn", 17)
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from typing import Any, TypeVar

from sqlalchemy.orm import Session

from stock_config import StockLedgerConfig, get_active_config
from stock_engines.reconciliation.variance import VarianceThresholds
from stock_kernel.db.engine import Database
from stock_kernel.db.immutability import register_immutability_listeners
from stock_kernel.domain.clock import Clock, SystemClock
from stock_kernel.domain.dtos import (
    ApplyResult,
    BulkRegistrationResult,
    ConsistencyReport,
    MovementView,
    SerialView,
    ValuationLine,
)
from stock_kernel.logging_config import get_logger
from stock_kernel.selectors.serial_selector import serial_to_view
from stock_kernel.services.balance_store import BalanceStore
from stock_kernel.services.serial_registry import SerialRegistry
from stock_kernel.services.transaction_runner import TransactionRunner
from stock_services.correction_service import CorrectionService, CorrectionView, correction_to_view
from stock_services.reconciliation_service import (
    FindingView,
    IncompleteTransfer,
    ReconciliationService,
    RunView,
    finding_to_view,
    run_to_view,
)
from stock_services.return_service import (
    CustomerReturnProcessor,
    ReturnView,
    SupplierReturnProcessor,
    return_to_view,
)
from stock_services.transfer_service import TransferService, TransferView, transfer_to_view
from stock_services.valuation_service import ValuationService

logger = get_logger("services.stock_ledger")

T = TypeVar("T")


class StockServices:
    """
    Every service for one session, built once in dependency order.

    Contract:
        Receives a session, the config and a clock.  Does not commit.
    """

    def __init__(self, session: Session, config: StockLedgerConfig, clock: Clock):
        self.session = session
        self.clock = clock

        self.balances = BalanceStore(
            session,
            clock,
            negative_allowed_types=config.ledger.negative_allowed_types,
            verify_after_write=config.ledger.verify_after_write,
        )
        self.ledger = self.balances.ledger
        self.serials = SerialRegistry(session, clock)
        self.valuation = ValuationService(
            session,
            clock,
            methods=config.valuation.methods,
            default_method=config.valuation.default_method,
        )
        self.transfers = TransferService(
            session,
            clock,
            balance_store=self.balances,
            serial_registry=self.serials,
            valuation=self.valuation,
            receipt_fallback=config.transfers.receipt_fallback,
        )
        self.customer_returns = CustomerReturnProcessor(
            session, clock, balance_store=self.balances, serial_registry=self.serials
        )
        self.supplier_returns = SupplierReturnProcessor(
            session, clock, balance_store=self.balances, serial_registry=self.serials
        )
        self.corrections = CorrectionService(session, clock, balance_store=self.balances)
        settings = config.reconciliation
        self.reconciliation = ReconciliationService(
            session,
            clock,
            balance_store=self.balances,
            thresholds=VarianceThresholds(
                percent=settings.variance_percent_threshold,
                quantity=settings.variance_quantity_threshold,
                value=settings.variance_value_threshold,
                high_activity_count=settings.high_activity_count,
            ),
            activity_window_days=settings.activity_window_days,
        )


class StockLedger:
    """
    The inventory ledger's public API.

    Contract:
        Every method is one committed unit of work.  Retrying a method
        after a RetryExhaustedError is safe: stock effects are keyed by
        their business reference.

    Guarantees:
        - Return values are frozen DTOs, usable after the session closes.
    """

    def __init__(
        self,
        database: Database,
        config: StockLedgerConfig | None = None,
        clock: Clock | None = None,
    ):
        self.database = database
        self.config = config or get_active_config()
        self.clock = clock or SystemClock()
        register_immutability_listeners()
        transfers = self.config.transfers
        self.runner = TransactionRunner(
            database,
            max_attempts=transfers.max_attempts,
            backoff_seconds=transfers.retry_backoff_seconds,
            statement_timeout_seconds=transfers.transaction_timeout_seconds,
        )

    @classmethod
    def from_config(
        cls,
        config: StockLedgerConfig | None = None,
        clock: Clock | None = None,
    ) -> StockLedger:
        """Build the Database from ``config.database`` as well."""
        config = config or get_active_config()
        db = config.database
        database = Database(
            db.url,
            echo=db.echo,
            pool_size=db.pool_size,
            max_overflow=db.max_overflow,
            pool_timeout=db.pool_timeout,
        )
        return cls(database, config, clock)

    def _run(self, operation: str, work: Callable[[StockServices], T]) -> T:
        return self.runner.run(
            operation, lambda session: work(StockServices(session, self.config, self.clock))
        )

    # ------------------------------------------------------------------
    # Balances and movements
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
    ) -> ApplyResult:
        """Apply one ordinary movement.  Corrective movements are written by reconciliation only."""
        return self._run(
            "apply_delta",
            lambda s: s.balances.apply_delta(
                variation_id, location_id, delta, movement_type,
                reference_type, reference_id, actor_id,
                allow_negative=allow_negative,
                expected_balance=expected_balance,
                unit_cost=unit_cost,
                notes=notes,
            ),
        )

    def get_balance(self, variation_id: int, location_id: int):
        return self._run("get_balance", lambda s: s.balances.get_balance(variation_id, location_id))

    def history(self, variation_id: int, location_id: int) -> list[MovementView]:
        return self._run("history", lambda s: s.ledger.history(variation_id, location_id))

    def reconcile(self, variation_id: int, location_id: int) -> ConsistencyReport:
        return self._run("reconcile", lambda s: s.ledger.reconcile(variation_id, location_id))

    # ------------------------------------------------------------------
    # Transfers
    # ------------------------------------------------------------------

    def create_transfer(
        self,
        business_id: int,
        from_location_id: int,
        to_location_id: int,
        items: Iterable[Any],
        actor_id: int | None = None,
        notes: str | None = None,
        transfer_number: str | None = None,
    ) -> TransferView:
        items = list(items)
        return self._run(
            "create_transfer",
            lambda s: transfer_to_view(
                s.transfers.create_transfer(
                    business_id, from_location_id, to_location_id, items,
                    actor_id, notes, transfer_number,
                )
            ),
        )

    def transition_transfer(
        self,
        transfer_id: int,
        target_state: str,
        payload: dict | None = None,
        actor_id: int | None = None,
    ) -> TransferView:
        return self._run(
            f"transition_transfer:{target_state}",
            lambda s: transfer_to_view(
                s.transfers.transition(transfer_id, target_state, payload, actor_id)
            ),
        )

    def record_transfer_receipt(
        self,
        transfer_id: int,
        item_id: int,
        received_quantity,
        serial_ids: Iterable[int] | None = None,
        actor_id: int | None = None,
    ) -> TransferView:
        serial_ids = list(serial_ids) if serial_ids is not None else None

        def work(s: StockServices) -> TransferView:
            s.transfers.record_receipt(transfer_id, item_id, received_quantity, serial_ids, actor_id)
            return transfer_to_view(s.transfers.get(transfer_id))

        return self._run("record_transfer_receipt", work)

    def get_transfer(self, transfer_id: int) -> TransferView:
        return self._run("get_transfer", lambda s: transfer_to_view(s.transfers.get(transfer_id)))

    # ------------------------------------------------------------------
    # Serials
    # ------------------------------------------------------------------

    def register_serial(
        self,
        serial_number: str,
        variation_id: int,
        location_id: int,
        actor_id: int | None = None,
        **opts: Any,
    ) -> SerialView:
        return self._run(
            "register_serial",
            lambda s: serial_to_view(
                s.serials.register(serial_number, variation_id, location_id, actor_id, **opts)
            ),
        )

    def register_serials(
        self,
        serial_numbers: Iterable[str],
        variation_id: int,
        location_id: int,
        actor_id: int | None = None,
        **opts: Any,
    ) -> BulkRegistrationResult:
        numbers = tuple(serial_numbers)
        return self._run(
            "register_serials",
            lambda s: s.serials.register_many(numbers, variation_id, location_id, actor_id, **opts),
        )

    def transition_serial(
        self,
        serial_id: int,
        new_status: str,
        reference_type: str,
        reference_id,
        actor_id: int | None = None,
        to_location_id: int | None = None,
    ) -> SerialView:
        return self._run(
            "transition_serial",
            lambda s: serial_to_view(
                s.serials.transition(
                    serial_id, new_status, reference_type, reference_id, actor_id,
                    to_location_id=to_location_id,
                )
            ),
        )

    # ------------------------------------------------------------------
    # Valuation
    # ------------------------------------------------------------------

    def valuation_query(
        self,
        location_id: int | None = None,
        method: str | None = None,
        business_id: int | None = None,
    ) -> list[ValuationLine]:
        return self._run(
            "valuation_query",
            lambda s: s.valuation.query(location_id=location_id, method=method, business_id=business_id),
        )

    # ------------------------------------------------------------------
    # Returns
    # ------------------------------------------------------------------

    def create_customer_return(
        self,
        business_id: int,
        location_id: int,
        items: Iterable[Any],
        actor_id: int | None = None,
        sale_reference: str | None = None,
    ) -> ReturnView:
        items = list(items)
        return self._run(
            "create_customer_return",
            lambda s: return_to_view(
                s.customer_returns.create(business_id, location_id, items, actor_id, sale_reference)
            ),
        )

    def approve_customer_return(self, return_id: int, actor_id: int | None = None) -> ReturnView:
        return self._run(
            "approve_customer_return",
            lambda s: return_to_view(s.customer_returns.approve(return_id, actor_id)),
        )

    def reject_customer_return(self, return_id: int, actor_id: int | None, reason: str) -> ReturnView:
        return self._run(
            "reject_customer_return",
            lambda s: return_to_view(s.customer_returns.reject(return_id, actor_id, reason)),
        )

    def create_supplier_return(
        self,
        business_id: int,
        location_id: int,
        supplier_id: int,
        items: Iterable[Any],
        actor_id: int | None = None,
        warranty_claim_reference: str | None = None,
    ) -> ReturnView:
        items = list(items)
        return self._run(
            "create_supplier_return",
            lambda s: return_to_view(
                s.supplier_returns.create(
                    business_id, location_id, supplier_id, items, actor_id, warranty_claim_reference
                )
            ),
        )

    def approve_supplier_return(self, return_id: int, actor_id: int | None = None) -> ReturnView:
        return self._run(
            "approve_supplier_return",
            lambda s: return_to_view(s.supplier_returns.approve(return_id, actor_id)),
        )

    def reject_supplier_return(self, return_id: int, actor_id: int | None, reason: str) -> ReturnView:
        return self._run(
            "reject_supplier_return",
            lambda s: return_to_view(s.supplier_returns.reject(return_id, actor_id, reason)),
        )

    # ------------------------------------------------------------------
    # Corrections
    # ------------------------------------------------------------------

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
        return self._run(
            "adjust",
            lambda s: s.corrections.adjust(
                variation_id, location_id, delta, reason, actor_id, reference_id, allow_negative
            ),
        )

    def record_count(
        self,
        variation_id: int,
        location_id: int,
        physical_count,
        reason: str,
        actor_id: int | None = None,
    ) -> CorrectionView:
        return self._run(
            "record_count",
            lambda s: correction_to_view(
                s.corrections.record_count(variation_id, location_id, physical_count, reason, actor_id)
            ),
        )

    def approve_correction(self, correction_id: int, actor_id: int | None = None) -> CorrectionView:
        return self._run(
            "approve_correction",
            lambda s: correction_to_view(s.corrections.approve(correction_id, actor_id)),
        )

    def bulk_approve_corrections(
        self,
        correction_ids: Iterable[int],
        actor_id: int | None = None,
    ) -> list[CorrectionView]:
        ids = list(correction_ids)
        return self._run(
            "bulk_approve_corrections",
            lambda s: [correction_to_view(c) for c in s.corrections.bulk_approve(ids, actor_id)],
        )

    def reject_correction(self, correction_id: int, actor_id: int | None, reason: str) -> CorrectionView:
        return self._run(
            "reject_correction",
            lambda s: correction_to_view(s.corrections.reject(correction_id, actor_id, reason)),
        )

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    def run_audit(
        self,
        business_id: int | None = None,
        location_id: int | None = None,
        actor_id: int | None = None,
    ) -> RunView:
        def work(s: StockServices) -> RunView:
            run = s.reconciliation.run_audit(business_id, location_id, actor_id)
            return run_to_view(run, list(run.findings))

        return self._run("run_audit", work)

    def approve_finding(
        self,
        finding_id: int,
        actor_id: int | None,
        resolution: str = "ledger",
    ) -> FindingView:
        return self._run(
            "approve_finding",
            lambda s: finding_to_view(s.reconciliation.approve_finding(finding_id, actor_id, resolution)),
        )

    def reject_finding(self, finding_id: int, actor_id: int | None, reason: str) -> FindingView:
        return self._run(
            "reject_finding",
            lambda s: finding_to_view(s.reconciliation.reject_finding(finding_id, actor_id, reason)),
        )

    def find_incomplete_transfers(self, business_id: int | None = None) -> list[IncompleteTransfer]:
        return self._run(
            "find_incomplete_transfers",
            lambda s: s.reconciliation.find_incomplete_transfers(business_id),
        )

    def backfill_transfer(self, transfer_id: int, actor_id: int | None = None) -> RunView | None:
        def work(s: StockServices) -> RunView | None:
            run = s.reconciliation.backfill_transfer(transfer_id, actor_id)
            if run is None:
                return None
            return run_to_view(run, list(run.findings))

        return self._run("backfill_transfer", work)
