"""
Module: stock_kernel.models.valuation
Responsibility: ORM persistence for the valuation projection: open cost
    layers and the per-stream watermark.
Architecture position: Kernel > Models.  May import from db/ only.

Invariants enforced:
    - qty_remaining >= 0 (CHECK).  Layers are never driven negative; any
      outbound quantity that finds no layer is tracked on ValuationState as
      unvalued_quantity.
    - One ValuationState per (variation, location, method).
    - Everything here is derived from stock_movements and can be dropped and
      rebuilt by replay.  It never decides what the balance is.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Numeric,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from stock_kernel.db.base import Base


class CostLayerModel(Base):
    """One open cost layer of a valuation stream."""

    __tablename__ = "cost_layers"

    __table_args__ = (
        CheckConstraint("qty_remaining >= 0", name="ck_cost_layer_remaining"),
        Index("idx_cost_layer_stream", "variation_id", "location_id", "method", "sequence"),
    )

    variation_id: Mapped[int] = mapped_column(
        ForeignKey("product_variations.id"),
        nullable=False,
    )

    location_id: Mapped[int] = mapped_column(ForeignKey("locations.id"), nullable=False)

    method: Mapped[str] = mapped_column(String(20), nullable=False)

    # Ordering key within the stream (source movement id)
    sequence: Mapped[int] = mapped_column(nullable=False)

    acquired_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    unit_cost: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)

    original_quantity: Mapped[Decimal] = mapped_column(Numeric(20, 4), nullable=False)

    qty_remaining: Mapped[Decimal] = mapped_column(Numeric(20, 4), nullable=False)

    source_movement_id: Mapped[int | None] = mapped_column(
        ForeignKey("stock_movements.id"),
        nullable=True,
    )


class ValuationState(Base):
    """Projection watermark for one (variation, location, method) stream."""

    __tablename__ = "valuation_states"

    __table_args__ = (
        UniqueConstraint("variation_id", "location_id", "method", name="uq_valuation_state_stream"),
    )

    variation_id: Mapped[int] = mapped_column(
        ForeignKey("product_variations.id"),
        nullable=False,
    )

    location_id: Mapped[int] = mapped_column(ForeignKey("locations.id"), nullable=False)

    method: Mapped[str] = mapped_column(String(20), nullable=False)

    last_movement_id: Mapped[int] = mapped_column(nullable=False, default=0)

    last_unit_cost: Mapped[Decimal | None] = mapped_column(Numeric(38, 9), nullable=True)

    unvalued_quantity: Mapped[Decimal] = mapped_column(
        Numeric(20, 4),
        nullable=False,
        default=Decimal("0"),
    )
