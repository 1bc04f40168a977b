"""
End-to-end tests through the StockLedger facade.

Every call is its own committed unit of work against a real database file
(or PostgreSQL when DATABASE_URL says so), so these tests see exactly what
a caller sees: committed state and frozen views.

Covers:
- Receipts, sales and idempotent replay across units of work
- A full transfer lifecycle, including serialized units
- Returns and count corrections
- Audit, finding approval and transfer backfill
- Valuation queries
- Retry exhaustion surfaced as RetryExhaustedError
- Construction from configuration
"""

from __future__ import annotations

import dataclasses
from decimal import Decimal

import pytest

from stock_kernel.exceptions import (
    InsufficientStockError,
    InvalidTransitionError,
    RetryExhaustedError,
)
from stock_services import StockLedger
from stock_services.transfer_workflow import TRANSFER_SEQUENCE
from tests.conftest import TEST_ACTOR_ID, build_catalog


@pytest.fixture
def cat(database):
    with database.session_scope() as session:
        return build_catalog(session)


@pytest.fixture
def ledger(database, test_config, deterministic_clock) -> StockLedger:
    return StockLedger(database, test_config, deterministic_clock)


def _receive(ledger, cat, qty, ref, *, location_id=None, variation_id=None, unit_cost=None):
    return ledger.apply_delta(
        variation_id or cat.variation_id,
        location_id or cat.warehouse_id,
        qty,
        "purchase",
        "grn",
        ref,
        TEST_ACTOR_ID,
        unit_cost=unit_cost,
    )


class TestBalances:

    def test_receive_and_sell(self, ledger, cat):
        _receive(ledger, cat, 10, "GRN-1")
        result = ledger.apply_delta(cat.variation_id, cat.warehouse_id, -4, "sale", "sale", "S-1")

        assert result.balance == Decimal("6")
        assert result.previous_balance == Decimal("10")
        assert ledger.get_balance(cat.variation_id, cat.warehouse_id) == Decimal("6")
        assert [m.delta for m in ledger.history(cat.variation_id, cat.warehouse_id)] == [
            Decimal("10"),
            Decimal("-4"),
        ]
        assert ledger.reconcile(cat.variation_id, cat.warehouse_id).is_consistent

    def test_replay_across_units_of_work(self, ledger, cat):
        first = _receive(ledger, cat, 10, "GRN-1")
        second = _receive(ledger, cat, 10, "GRN-1")

        assert second.replayed is True
        assert second.movement_id == first.movement_id
        assert ledger.get_balance(cat.variation_id, cat.warehouse_id) == Decimal("10")

    def test_failed_unit_commits_nothing(self, ledger, cat):
        _receive(ledger, cat, 2, "GRN-1")
        with pytest.raises(InsufficientStockError):
            ledger.apply_delta(cat.variation_id, cat.warehouse_id, -5, "sale", "sale", "S-1")

        assert ledger.get_balance(cat.variation_id, cat.warehouse_id) == Decimal("2")
        assert len(ledger.history(cat.variation_id, cat.warehouse_id)) == 1

    def test_persistent_conflict_exhausts_retries(self, ledger, cat, captured_logs):
        _receive(ledger, cat, 5, "GRN-1")

        with pytest.raises(RetryExhaustedError) as exc_info:
            ledger.apply_delta(
                cat.variation_id, cat.warehouse_id, -1, "sale", "sale", "S-1",
                expected_balance=Decimal("4"),
            )

        assert exc_info.value.attempts == 3
        assert exc_info.value.last_error_code == "CONCURRENCY_CONFLICT"
        assert ledger.get_balance(cat.variation_id, cat.warehouse_id) == Decimal("5")
        assert len([r for r in captured_logs() if r["message"] == "transaction_retry"]) == 2

    def test_corrective_flag_not_accepted(self, ledger, cat):
        with pytest.raises(TypeError):
            ledger.apply_delta(
                cat.variation_id, cat.warehouse_id, 3, "adjustment", "adj", "A-1",
                is_corrective=True,
            )
        assert ledger.history(cat.variation_id, cat.warehouse_id) == []

    def test_views_are_frozen(self, ledger, cat):
        result = _receive(ledger, cat, 1, "GRN-1")
        with pytest.raises(dataclasses.FrozenInstanceError):
            result.balance = Decimal("100")


class TestTransferLifecycle:

    def test_full_lifecycle(self, ledger, cat):
        _receive(ledger, cat, 10, "GRN-1", unit_cost="2.50")
        transfer = ledger.create_transfer(
            cat.business_id, cat.warehouse_id, cat.store_id,
            [{"variation_id": cat.variation_id, "quantity": 4}],
            TEST_ACTOR_ID,
        )
        assert transfer.status == "draft"
        assert transfer.transfer_number == f"TR-{transfer.id:06d}"

        for status in TRANSFER_SEQUENCE[1:6]:
            transfer = ledger.transition_transfer(transfer.id, status.value, actor_id=TEST_ACTOR_ID)
        assert transfer.status == "arrived"
        assert transfer.stock_deducted is True
        assert ledger.get_balance(cat.variation_id, cat.warehouse_id) == Decimal("6")
        assert ledger.get_balance(cat.variation_id, cat.store_id) == Decimal("0")

        transfer = ledger.record_transfer_receipt(transfer.id, transfer.items[0].id, 3)
        assert transfer.items[0].received_quantity == Decimal("3")
        assert transfer.items[0].has_discrepancy is True

        for status in ("verifying", "verified", "completed"):
            transfer = ledger.transition_transfer(transfer.id, status)

        assert transfer.status == "completed"
        assert transfer.stock_received is True
        assert ledger.get_balance(cat.variation_id, cat.store_id) == Decimal("3")
        assert ledger.find_incomplete_transfers(cat.business_id) == []
        assert ledger.reconcile(cat.variation_id, cat.store_id).is_consistent

        [store_line] = ledger.valuation_query(location_id=cat.store_id)
        assert store_line.qty == Decimal("3")
        assert store_line.unit_cost == Decimal("2.50")

    def test_refused_step_leaves_state(self, ledger, cat):
        transfer = ledger.create_transfer(
            cat.business_id, cat.warehouse_id, cat.store_id,
            [{"variation_id": cat.variation_id, "quantity": 1}],
        )
        with pytest.raises(InvalidTransitionError):
            ledger.transition_transfer(transfer.id, "approved")
        assert ledger.get_transfer(transfer.id).status == "draft"

    def test_cancel_with_compensation(self, ledger, cat):
        _receive(ledger, cat, 5, "GRN-1")
        transfer = ledger.create_transfer(
            cat.business_id, cat.warehouse_id, cat.store_id,
            [{"variation_id": cat.variation_id, "quantity": 5}],
        )
        for status in ("submitted", "checked", "approved", "sent"):
            ledger.transition_transfer(transfer.id, status)
        assert ledger.get_balance(cat.variation_id, cat.warehouse_id) == Decimal("0")

        cancelled = ledger.transition_transfer(transfer.id, "cancelled", {"compensate": True})

        assert cancelled.status == "cancelled"
        assert ledger.get_balance(cat.variation_id, cat.warehouse_id) == Decimal("5")

    def test_serialized_units(self, ledger, cat):
        _receive(ledger, cat, 1, "GRN-P", variation_id=cat.serialized_variation_id)
        unit = ledger.register_serial("SN-E2E-1", cat.serialized_variation_id, cat.warehouse_id)
        transfer = ledger.create_transfer(
            cat.business_id, cat.warehouse_id, cat.store_id,
            [{"variation_id": cat.serialized_variation_id, "quantity": 1, "serial_ids": [unit.id]}],
        )
        for status in TRANSFER_SEQUENCE[1:]:
            transfer = ledger.transition_transfer(transfer.id, status.value)

        assert transfer.items[0].serial_ids == (unit.id,)
        assert ledger.get_balance(cat.serialized_variation_id, cat.store_id) == Decimal("1")
        sold = ledger.transition_serial(unit.id, "sold", "sale", "S-9")
        assert sold.status == "sold"
        assert sold.current_location_id == cat.store_id

    def test_receipt_serials_registered_in_bulk(self, ledger, cat):
        ledger.register_serial("SN-BULK-2", cat.serialized_variation_id, cat.warehouse_id)
        result = ledger.register_serials(
            (n for n in ["SN-BULK-1", "SN-BULK-2", "SN-BULK-3"]),
            cat.serialized_variation_id, cat.warehouse_id, TEST_ACTOR_ID,
            reference_type="grn", reference_id="GRN-9",
        )

        assert [v.serial_number for v in result.registered] == ["SN-BULK-1", "SN-BULK-3"]
        [failure] = result.failures
        assert failure.serial_number == "SN-BULK-2"
        assert failure.code == "DUPLICATE_SERIAL"


class TestReturnsAndCorrections:

    def test_customer_return(self, ledger, cat):
        _receive(ledger, cat, 3, "GRN-1")
        ret = ledger.create_customer_return(
            cat.business_id, cat.warehouse_id,
            [{"variation_id": cat.variation_id, "quantity": 2, "condition": "resellable"}],
            TEST_ACTOR_ID,
        )
        approved = ledger.approve_customer_return(ret.id, TEST_ACTOR_ID)

        assert approved.status == "approved"
        assert ledger.get_balance(cat.variation_id, cat.warehouse_id) == Decimal("5")

    def test_supplier_return_rejected(self, ledger, cat):
        _receive(ledger, cat, 3, "GRN-1")
        ret = ledger.create_supplier_return(
            cat.business_id, cat.warehouse_id, 501,
            [{"variation_id": cat.variation_id, "quantity": 2, "condition": "defective"}],
        )
        rejected = ledger.reject_supplier_return(ret.id, TEST_ACTOR_ID, "wrong supplier")

        assert rejected.status == "rejected"
        assert rejected.rejection_reason == "wrong supplier"
        assert ledger.get_balance(cat.variation_id, cat.warehouse_id) == Decimal("3")

    def test_count_correction(self, ledger, cat):
        _receive(ledger, cat, 10, "GRN-1")
        pending = ledger.record_count(cat.variation_id, cat.warehouse_id, 8, "cycle count", TEST_ACTOR_ID)
        assert pending.difference == Decimal("-2")

        [approved] = ledger.bulk_approve_corrections([pending.id], TEST_ACTOR_ID)

        assert approved.status == "approved"
        assert approved.movement_id is not None
        assert ledger.get_balance(cat.variation_id, cat.warehouse_id) == Decimal("8")

    def test_manual_adjustment(self, ledger, cat):
        result = ledger.adjust(cat.variation_id, cat.warehouse_id, 4, "found in back room", TEST_ACTOR_ID, "ADJ-1")
        assert result.balance == Decimal("4")


class TestReconciliation:

    def test_clean_audit(self, ledger, cat):
        _receive(ledger, cat, 10, "GRN-1")
        run = ledger.run_audit(cat.business_id)

        assert run.kind == "audit"
        assert run.pairs_checked == 1
        assert run.findings == ()

    def test_drift_found_and_resolved(self, ledger, database, cat):
        from sqlalchemy import text

        _receive(ledger, cat, 10, "GRN-1")
        with database.session_scope() as session:
            session.execute(
                text("UPDATE stock_balances SET qty_available = 7 WHERE variation_id = :v AND location_id = :l"),
                {"v": cat.variation_id, "l": cat.warehouse_id},
            )

        [finding] = ledger.run_audit(cat.business_id).findings
        assert finding.variance == Decimal("-3")

        resolved = ledger.approve_finding(finding.id, TEST_ACTOR_ID, "balance")

        assert resolved.status == "approved"
        assert ledger.get_balance(cat.variation_id, cat.warehouse_id) == Decimal("10")
        assert ledger.run_audit(cat.business_id).finding_count == 0

    def test_backfill_nothing_missing(self, ledger, cat):
        transfer = ledger.create_transfer(
            cat.business_id, cat.warehouse_id, cat.store_id,
            [{"variation_id": cat.variation_id, "quantity": 1}],
        )
        assert ledger.backfill_transfer(transfer.id) is None


class TestConstruction:

    def test_from_config(self, tmp_path, test_config, deterministic_clock):
        config = dataclasses.replace(
            test_config,
            database=dataclasses.replace(test_config.database, url=f"sqlite:///{tmp_path / 'cfg.db'}"),
        )
        ledger = StockLedger.from_config(config, deterministic_clock)
        try:
            ledger.database.create_tables()
            assert ledger.runner.max_attempts == config.transfers.max_attempts
            with ledger.database.session_scope() as session:
                built = build_catalog(session)
            _receive(ledger, built, 2, "GRN-1")
            assert ledger.get_balance(built.variation_id, built.warehouse_id) == Decimal("2")
        finally:
            ledger.database.dispose()
