"""
Module: stock_kernel.models.reconciliation
Responsibility: ORM persistence for operator-facing reconciliation reports.
Architecture position: Kernel > Models.  May import from db/ only.

A ReconciliationRun is written once per audit or backfill and never changed.
Each ReconciliationFinding records one mismatch (or one corrective movement
applied by a backfill) and the movement that would fix it.  Findings from an
audit wait in ``pending`` until an operator approves or rejects them; nothing
is corrected without that approval.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from stock_kernel.db.base import Base


class ReconciliationRun(Base):
    __tablename__ = "reconciliation_runs"

    # audit | transfer_backfill
    kind: Mapped[str] = mapped_column(String(30), nullable=False)

    business_id: Mapped[int | None] = mapped_column(ForeignKey("businesses.id"), nullable=True)

    location_id: Mapped[int | None] = mapped_column(ForeignKey("locations.id"), nullable=True)

    reference: Mapped[str | None] = mapped_column(String(100), nullable=True)

    pairs_checked: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    finding_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    actor_id: Mapped[int | None] = mapped_column(nullable=True)

    run_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    findings: Mapped[list["ReconciliationFinding"]] = relationship(
        viewonly=True,
        order_by="ReconciliationFinding.id",
        lazy="selectin",
    )


class ReconciliationFinding(Base):
    __tablename__ = "reconciliation_findings"

    __table_args__ = (
        Index("idx_reconciliation_finding_status", "status"),
        Index("idx_reconciliation_finding_pair", "variation_id", "location_id"),
    )

    run_id: Mapped[int] = mapped_column(ForeignKey("reconciliation_runs.id"), nullable=False)

    variation_id: Mapped[int] = mapped_column(
        ForeignKey("product_variations.id"),
        nullable=False,
    )

    location_id: Mapped[int] = mapped_column(ForeignKey("locations.id"), nullable=False)

    balance: Mapped[Decimal] = mapped_column(Numeric(20, 4), nullable=False)

    ledger_sum: Mapped[Decimal] = mapped_column(Numeric(20, 4), nullable=False)

    variance: Mapped[Decimal] = mapped_column(Numeric(20, 4), nullable=False)

    # overage | shortage | match
    variance_type: Mapped[str] = mapped_column(String(20), nullable=False)

    variance_value: Mapped[Decimal | None] = mapped_column(Numeric(38, 9), nullable=True)

    chain_break_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    requires_investigation: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    auto_fixable: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    suspicious: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Movement that would restore balance == sum(deltas)
    proposed_movement_type: Mapped[str] = mapped_column(String(30), nullable=False)

    proposed_delta: Mapped[Decimal] = mapped_column(Numeric(20, 4), nullable=False)

    description: Mapped[str | None] = mapped_column(String(2000), nullable=True)

    # pending | approved | rejected | applied
    status: Mapped[str] = mapped_column(String(20), nullable=False)

    resolution: Mapped[str | None] = mapped_column(String(20), nullable=True)

    resolved_by: Mapped[int | None] = mapped_column(nullable=True)

    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    movement_id: Mapped[int | None] = mapped_column(
        ForeignKey("stock_movements.id"),
        nullable=True,
    )

    run: Mapped[ReconciliationRun] = relationship(viewonly=True)
