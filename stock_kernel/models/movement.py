"""
Module: stock_kernel.models.movement
Responsibility: ORM persistence for the movement ledger -- the single
    authoritative history of every stock quantity change.
Architecture position: Kernel > Models.  May import from db/ only.

Invariants enforced:
    - Append-only.  ORM listeners (db/immutability.py) and PostgreSQL
      triggers (db/triggers.py) reject UPDATE and DELETE.
    - Idempotency key: (reference_type, reference_id, movement_type,
      variation_id, location_id) is unique.  A retried request finds the
      original row instead of writing a second one.
    - balance_after is the pair's balance immediately after this movement.
      For consecutive movements m1, m2 of a pair:
      m2.balance_after == m1.balance_after + m2.delta.

Failure modes:
    - IntegrityError on idempotency key collision (a concurrent replay
      that slipped past the pre-check; the transaction aborts and the
      retry finds the winner's row).

Audit relevance:
    Corrective rows written by reconciliation and backfill carry
    is_corrective=True and a reference to the finding or transfer that
    produced them.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Numeric,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from stock_kernel.db.base import Base


class StockMovement(Base):
    """
    One immutable quantity change for a (variation, location).

    Contract:
        Written only by MovementLedger._append, which is called only by
        BalanceStore.  Nothing else inserts into this table.
    """

    __tablename__ = "stock_movements"

    __table_args__ = (
        UniqueConstraint(
            "reference_type",
            "reference_id",
            "movement_type",
            "variation_id",
            "location_id",
            name="uq_stock_movement_idempotency",
        ),
        # Ledger walk for one pair, in write order
        Index("idx_stock_movement_pair", "variation_id", "location_id", "id"),
        Index("idx_stock_movement_reference", "reference_type", "reference_id"),
        Index("idx_stock_movement_type", "movement_type"),
    )

    product_id: Mapped[int] = mapped_column(
        ForeignKey("products.id"),
        nullable=False,
    )

    variation_id: Mapped[int] = mapped_column(
        ForeignKey("product_variations.id"),
        nullable=False,
    )

    location_id: Mapped[int] = mapped_column(
        ForeignKey("locations.id"),
        nullable=False,
    )

    movement_type: Mapped[str] = mapped_column(String(30), nullable=False)

    delta: Mapped[Decimal] = mapped_column(Numeric(20, 4), nullable=False)

    balance_after: Mapped[Decimal] = mapped_column(Numeric(20, 4), nullable=False)

    # Cost per unit when known (purchases, transfers); used by valuation
    unit_cost: Mapped[Decimal | None] = mapped_column(Numeric(38, 9), nullable=True)

    reference_type: Mapped[str] = mapped_column(String(50), nullable=False)

    reference_id: Mapped[str] = mapped_column(String(100), nullable=False)

    actor_id: Mapped[int | None] = mapped_column(nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    notes: Mapped[str | None] = mapped_column(String(2000), nullable=True)

    is_corrective: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    def __repr__(self) -> str:
        return (
            f"<StockMovement {self.id} {self.movement_type} "
            f"delta={self.delta} after={self.balance_after}>"
        )
