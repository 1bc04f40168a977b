"""
ReconciliationService: ledger audits, finding approval and transfer backfill.

Balances are tampered with raw SQL to simulate drift; transfer statuses are
forced directly to simulate a transition whose movements were lost.

Test classes:
- TestRunAudit
- TestApproveFinding: ledger and balance resolutions
- TestRejectFinding
- TestIncompleteTransfers
- TestBackfillTransfer: applied once, second call finds nothing
"""

from decimal import Decimal

import pytest
from sqlalchemy import text

from stock_engines.reconciliation.variance import VarianceThresholds
from stock_kernel.exceptions import (
    FindingNotFoundError,
    InvalidTransitionError,
    TransferNotFoundError,
    ValidationError,
)
from stock_services.reconciliation_service import ReconciliationService
from stock_services.transfer_service import TransferService


@pytest.fixture
def recon(session, deterministic_clock, balances) -> ReconciliationService:
    return ReconciliationService(session, deterministic_clock, balance_store=balances)


@pytest.fixture
def tamper(session):
    def _tamper(variation_id, location_id, qty):
        session.execute(
            text(
                "UPDATE stock_balances SET qty_available = :qty "
                "WHERE variation_id = :v AND location_id = :l"
            ),
            {"qty": qty, "v": variation_id, "l": location_id},
        )

    return _tamper


@pytest.fixture
def drifted(recon, catalog, stock_in, tamper):
    """Warehouse widget: ledger says 10, balance row says 12."""
    stock_in(10, unit_cost="2.00")
    tamper(catalog.variation_id, catalog.warehouse_id, 12)
    run = recon.run_audit(catalog.business_id)
    [finding] = run.findings
    return finding


class TestRunAudit:

    def test_clean_ledger_has_no_findings(self, recon, catalog, stock_in, test_actor_id):
        stock_in(10)
        stock_in(3, location_id=catalog.store_id)
        run = recon.run_audit(catalog.business_id, actor_id=test_actor_id)

        assert run.kind == "audit"
        assert run.pairs_checked == 2
        assert run.finding_count == 0
        assert run.findings == []

    def test_drift_becomes_pending_finding(self, recon, balances, catalog, drifted):
        assert drifted.status == "pending"
        assert drifted.balance == Decimal("12")
        assert drifted.ledger_sum == Decimal("10")
        assert drifted.variance == Decimal("2")
        assert drifted.variance_type == "overage"
        assert drifted.proposed_movement_type == "adjustment"
        assert drifted.proposed_delta == Decimal("2")
        assert drifted.variance_value == Decimal("4")
        # 20% is over the default 5% threshold
        assert drifted.requires_investigation is True
        assert drifted.auto_fixable is False
        # detection alone changes nothing
        assert balances.get_balance(catalog.variation_id, catalog.warehouse_id) == Decimal("12")
        assert len(balances.ledger.history(catalog.variation_id, catalog.warehouse_id)) == 1

    def test_small_drift_is_auto_fixable(self, recon, catalog, stock_in, tamper):
        stock_in(100)
        tamper(catalog.variation_id, catalog.warehouse_id, 99)
        [finding] = recon.run_audit(catalog.business_id).findings

        assert finding.variance_type == "shortage"
        assert finding.auto_fixable is True
        assert finding.requires_investigation is False

    def test_custom_thresholds(self, session, deterministic_clock, balances, catalog, stock_in, tamper):
        strict = ReconciliationService(
            session, deterministic_clock, balance_store=balances,
            thresholds=VarianceThresholds(percent=Decimal("0.5")),
        )
        stock_in(100)
        tamper(catalog.variation_id, catalog.warehouse_id, 99)
        [finding] = strict.run_audit(catalog.business_id).findings
        assert finding.requires_investigation is True

    def test_scoped_to_location(self, recon, catalog, stock_in, tamper):
        stock_in(10)
        stock_in(10, location_id=catalog.store_id)
        tamper(catalog.variation_id, catalog.store_id, 1)

        run = recon.run_audit(location_id=catalog.warehouse_id)
        assert run.pairs_checked == 1
        assert run.findings == []
        assert recon.run_audit(location_id=catalog.store_id).finding_count == 1

    def test_audit_is_logged(self, recon, catalog, stock_in, captured_logs):
        stock_in(1)
        run = recon.run_audit(catalog.business_id)
        [record] = [r for r in captured_logs() if r["message"] == "reconciliation_audit_completed"]
        assert record["run_id"] == run.id
        assert record["pairs_checked"] == 1


class TestApproveFinding:

    def test_ledger_resolution_keeps_balance(self, recon, balances, catalog, drifted, test_actor_id):
        approved = recon.approve_finding(drifted.id, test_actor_id, "ledger")

        assert approved.status == "approved"
        assert approved.resolution == "ledger"
        assert approved.resolved_by == test_actor_id
        assert balances.get_balance(catalog.variation_id, catalog.warehouse_id) == Decimal("12")
        [movement] = balances.ledger.for_reference("reconciliation_finding", drifted.id)
        assert approved.movement_id == movement.id
        assert movement.delta == Decimal("2")
        assert movement.is_corrective is True
        assert balances.ledger.reconcile(catalog.variation_id, catalog.warehouse_id).is_consistent

    def test_balance_resolution_resets_to_ledger(self, recon, balances, catalog, drifted):
        approved = recon.approve_finding(drifted.id, None, "balance")

        assert approved.resolution == "balance"
        assert balances.get_balance(catalog.variation_id, catalog.warehouse_id) == Decimal("10")
        assert balances.ledger.sum_deltas(catalog.variation_id, catalog.warehouse_id) == Decimal("10")
        assert balances.ledger.reconcile(catalog.variation_id, catalog.warehouse_id).is_consistent

    def test_uses_values_at_approval_time(self, recon, balances, catalog, drifted):
        balances.apply_delta(catalog.variation_id, catalog.warehouse_id, -5, "sale", "sale", "S-1")
        recon.approve_finding(drifted.id, None, "balance")

        assert balances.get_balance(catalog.variation_id, catalog.warehouse_id) == Decimal("5")
        assert balances.ledger.reconcile(catalog.variation_id, catalog.warehouse_id).is_consistent

    def test_follow_up_audit_is_clean(self, recon, catalog, drifted):
        recon.approve_finding(drifted.id, None)
        assert recon.run_audit(catalog.business_id).finding_count == 0

    def test_settled_finding(self, recon, drifted):
        recon.approve_finding(drifted.id, None)
        with pytest.raises(InvalidTransitionError):
            recon.approve_finding(drifted.id, None, "balance")

    @pytest.mark.parametrize("resolution", ["backfill", "guess"])
    def test_bad_resolution(self, recon, drifted, resolution):
        with pytest.raises(ValidationError):
            recon.approve_finding(drifted.id, None, resolution)

    def test_unknown_finding(self, recon):
        with pytest.raises(FindingNotFoundError):
            recon.approve_finding(999_999, None)


class TestRejectFinding:

    def test_reject(self, recon, balances, catalog, drifted, test_actor_id):
        rejected = recon.reject_finding(drifted.id, test_actor_id, "known miscount, recounting")

        assert rejected.status == "rejected"
        assert "Rejected: known miscount" in rejected.description
        assert balances.get_balance(catalog.variation_id, catalog.warehouse_id) == Decimal("12")
        assert recon.pending_findings() == []

    def test_reason_required(self, recon, drifted):
        with pytest.raises(ValidationError):
            recon.reject_finding(drifted.id, None, "  ")

    def test_pending_by_location(self, recon, catalog, drifted):
        assert [f.id for f in recon.pending_findings(catalog.warehouse_id)] == [drifted.id]
        assert recon.pending_findings(catalog.store_id) == []


@pytest.fixture
def transfers(session, deterministic_clock, balances, serials):
    return TransferService(session, deterministic_clock, balance_store=balances, serial_registry=serials)


@pytest.fixture
def lost_transfer(session, transfers, catalog, stock_in):
    """An approved transfer forced to ``sent`` without its movements."""
    stock_in(10)
    transfer = transfers.create_transfer(
        catalog.business_id, catalog.warehouse_id, catalog.store_id,
        [{"variation_id": catalog.variation_id, "quantity": 4}],
    )
    for state in ["submitted", "checked", "approved"]:
        transfers.transition(transfer.id, state)
    transfer.status = "sent"
    session.flush()
    return transfer


class TestIncompleteTransfers:

    def test_sent_without_movement(self, recon, catalog, lost_transfer):
        [incomplete] = recon.find_incomplete_transfers(catalog.business_id)

        assert incomplete.transfer_id == lost_transfer.id
        assert incomplete.status == "sent"
        [missing] = incomplete.missing
        assert missing.movement_type.value == "transfer_out"
        assert missing.location_id == catalog.warehouse_id
        assert missing.delta == Decimal("-4")

    def test_completed_misses_both_sides(self, session, recon, catalog, lost_transfer):
        lost_transfer.status = "completed"
        session.flush()

        [incomplete] = recon.find_incomplete_transfers()
        assert sorted(m.movement_type.value for m in incomplete.missing) == ["transfer_in", "transfer_out"]

    def test_properly_sent_transfer_is_complete(self, recon, transfers, catalog, stock_in):
        stock_in(10)
        transfer = transfers.create_transfer(
            catalog.business_id, catalog.warehouse_id, catalog.store_id,
            [{"variation_id": catalog.variation_id, "quantity": 4}],
        )
        for state in ["submitted", "checked", "approved", "sent"]:
            transfers.transition(transfer.id, state)

        assert recon.find_incomplete_transfers(catalog.business_id) == []

    def test_other_business_excluded(self, recon, catalog, lost_transfer):
        assert recon.find_incomplete_transfers(catalog.other_business_id) == []


class TestBackfillTransfer:

    def test_backfill_applies_missing_deduction(self, recon, balances, catalog, lost_transfer, test_actor_id):
        run = recon.backfill_transfer(lost_transfer.id, test_actor_id)

        assert run.kind == "transfer_backfill"
        assert run.reference == f"transfer:{lost_transfer.id}"
        [finding] = run.findings
        assert finding.status == "applied"
        assert finding.resolution == "backfill"
        assert finding.proposed_delta == Decimal("-4")
        assert balances.get_balance(catalog.variation_id, catalog.warehouse_id) == Decimal("6")
        [movement] = balances.ledger.for_reference("transfer", lost_transfer.id)
        assert movement.is_corrective is True
        assert finding.movement_id == movement.id
        assert lost_transfer.stock_deducted is True
        assert balances.ledger.reconcile(catalog.variation_id, catalog.warehouse_id).is_consistent

    def test_backfill_runs_once(self, recon, balances, catalog, lost_transfer):
        recon.backfill_transfer(lost_transfer.id)

        assert recon.backfill_transfer(lost_transfer.id) is None
        assert recon.find_incomplete_transfers() == []
        assert balances.get_balance(catalog.variation_id, catalog.warehouse_id) == Decimal("6")

    def test_completed_transfer_backfills_both_sides(self, session, recon, balances, catalog, lost_transfer):
        lost_transfer.status = "completed"
        session.flush()

        run = recon.backfill_transfer(lost_transfer.id)

        assert run.finding_count == 2
        assert lost_transfer.stock_received is True
        assert balances.get_balance(catalog.variation_id, catalog.warehouse_id) == Decimal("6")
        assert balances.get_balance(catalog.variation_id, catalog.store_id) == Decimal("4")

    def test_backfill_may_go_negative(self, recon, balances, catalog, lost_transfer):
        balances.apply_delta(catalog.variation_id, catalog.warehouse_id, -10, "sale", "sale", "S-1")
        recon.backfill_transfer(lost_transfer.id)
        assert balances.get_balance(catalog.variation_id, catalog.warehouse_id) == Decimal("-4")

    def test_draft_transfer_needs_nothing(self, recon, transfers, catalog):
        transfer = transfers.create_transfer(
            catalog.business_id, catalog.warehouse_id, catalog.store_id,
            [{"variation_id": catalog.variation_id, "quantity": 1}],
        )
        assert recon.backfill_transfer(transfer.id) is None

    def test_unknown_transfer(self, recon):
        with pytest.raises(TransferNotFoundError):
            recon.backfill_transfer(999_999)
