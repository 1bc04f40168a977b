"""
Module: stock_kernel.models.correction
Responsibility: ORM persistence for physical-count inventory corrections.
Architecture position: Kernel > Models.  May import from db/ only.

A correction snapshots the system count at the moment the physical count was
taken.  On approval the snapshot difference (physical - system) is applied as
one adjustment movement, so sales that happened between count and approval
are preserved rather than overwritten.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import DateTime, ForeignKey, Index, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from stock_kernel.db.base import TrackedBase


class InventoryCorrection(TrackedBase):
    __tablename__ = "inventory_corrections"

    __table_args__ = (
        Index("idx_inventory_correction_status", "status"),
        Index("idx_inventory_correction_pair", "variation_id", "location_id"),
    )

    product_id: Mapped[int] = mapped_column(ForeignKey("products.id"), nullable=False)

    variation_id: Mapped[int] = mapped_column(
        ForeignKey("product_variations.id"),
        nullable=False,
    )

    location_id: Mapped[int] = mapped_column(ForeignKey("locations.id"), nullable=False)

    system_count: Mapped[Decimal] = mapped_column(Numeric(20, 4), nullable=False)

    physical_count: Mapped[Decimal] = mapped_column(Numeric(20, 4), nullable=False)

    difference: Mapped[Decimal] = mapped_column(Numeric(20, 4), nullable=False)

    reason: Mapped[str] = mapped_column(String(2000), nullable=False)

    # pending | approved | rejected
    status: Mapped[str] = mapped_column(String(20), nullable=False)

    created_by: Mapped[int | None] = mapped_column(nullable=True)

    approved_by: Mapped[int | None] = mapped_column(nullable=True)

    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    movement_id: Mapped[int | None] = mapped_column(
        ForeignKey("stock_movements.id"),
        nullable=True,
    )

    rejection_reason: Mapped[str | None] = mapped_column(String(2000), nullable=True)
