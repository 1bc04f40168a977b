"""
Module: stock_kernel.models.balance
Responsibility: ORM persistence for the current stock level of one
    (variation, location) pair.
Architecture position: Kernel > Models.  May import from db/ only.

Invariants enforced:
    - One row per (variation_id, location_id) (unique constraint).
    - qty_available == sum(StockMovement.delta) for the pair.  Only
      BalanceStore writes this column, always together with a movement.
    - version is the optimistic version counter: every UPDATE is issued
      with ``WHERE version = :loaded``, so a lost update raises StaleDataError
      at flush on every dialect, including those without row locks.
    - Rows are created lazily at zero and never deleted.

Failure modes:
    - IntegrityError when two writers create the same pair concurrently
      (BalanceStore retries inside a savepoint).
    - StaleDataError on a lost update (translated to ConcurrencyConflict).
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import DateTime, ForeignKey, Integer, Numeric, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from stock_kernel.db.base import Base


class StockBalance(Base):
    """
    Current quantity on hand for one (variation, location).

    Contract:
        Mutated only by BalanceStore.apply_delta and the two reconciliation
        repair paths on BalanceStore.  Every change is paired with exactly
        one StockMovement in the same transaction.

    Non-goals:
        - Reserved / committed quantities.  Only on-hand stock is tracked.
    """

    __tablename__ = "stock_balances"

    __table_args__ = (
        UniqueConstraint("variation_id", "location_id", name="uq_stock_balance_pair"),
    )

    variation_id: Mapped[int] = mapped_column(
        ForeignKey("product_variations.id"),
        nullable=False,
    )

    location_id: Mapped[int] = mapped_column(
        ForeignKey("locations.id"),
        nullable=False,
    )

    qty_available: Mapped[Decimal] = mapped_column(
        Numeric(20, 4),
        nullable=False,
        default=Decimal("0"),
    )

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self) -> str:
        return (
            f"<StockBalance v={self.variation_id} l={self.location_id} "
            f"qty={self.qty_available} version={self.version}>"
        )
