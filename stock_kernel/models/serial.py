"""
Module: stock_kernel.models.serial
Responsibility: ORM persistence for individually tracked units and their
    movement trail.
Architecture position: Kernel > Models.  May import from db/ only.

Invariants enforced:
    - Exactly one SerialUnit per physical unit, for the life of the system.
      Units are transitioned, never deleted.
    - serial_number is unique per product.
    - Every SerialMovement references an existing unit: serial_number_id is a
      NOT NULL foreign key with a CHECK (serial_number_id > 0).
    - SerialMovement is append-only.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import (
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Numeric,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from stock_kernel.db.base import TrackedBase, Base


class SerialUnit(TrackedBase):
    """One physical, individually identified unit."""

    __tablename__ = "serial_units"

    __table_args__ = (
        UniqueConstraint("product_id", "serial_number", name="uq_serial_unit_product_number"),
        Index("idx_serial_unit_stock", "variation_id", "current_location_id", "status"),
    )

    serial_number: Mapped[str] = mapped_column(String(191), nullable=False)

    product_id: Mapped[int] = mapped_column(ForeignKey("products.id"), nullable=False)

    variation_id: Mapped[int] = mapped_column(
        ForeignKey("product_variations.id"),
        nullable=False,
    )

    status: Mapped[str] = mapped_column(String(30), nullable=False)

    current_location_id: Mapped[int | None] = mapped_column(
        ForeignKey("locations.id"),
        nullable=True,
    )

    supplier_id: Mapped[int | None] = mapped_column(nullable=True)

    purchase_cost: Mapped[Decimal | None] = mapped_column(Numeric(38, 9), nullable=True)

    warranty_start: Mapped[date | None] = mapped_column(Date, nullable=True)

    warranty_end: Mapped[date | None] = mapped_column(Date, nullable=True)

    condition: Mapped[str | None] = mapped_column(String(30), nullable=True)

    def __repr__(self) -> str:
        return f"<SerialUnit {self.id} {self.serial_number!r} {self.status}>"


class SerialMovement(Base):
    """One status/location change of a SerialUnit."""

    __tablename__ = "serial_movements"

    __table_args__ = (
        CheckConstraint("serial_number_id > 0", name="ck_serial_movement_unit_id"),
        Index("idx_serial_movement_unit", "serial_number_id", "id"),
        Index("idx_serial_movement_reference", "reference_type", "reference_id"),
    )

    serial_number_id: Mapped[int] = mapped_column(
        ForeignKey("serial_units.id"),
        nullable=False,
    )

    movement_type: Mapped[str] = mapped_column(String(30), nullable=False)

    from_location_id: Mapped[int | None] = mapped_column(
        ForeignKey("locations.id"),
        nullable=True,
    )

    to_location_id: Mapped[int | None] = mapped_column(
        ForeignKey("locations.id"),
        nullable=True,
    )

    from_status: Mapped[str | None] = mapped_column(String(30), nullable=True)

    to_status: Mapped[str] = mapped_column(String(30), nullable=False)

    reference_type: Mapped[str] = mapped_column(String(50), nullable=False)

    reference_id: Mapped[str] = mapped_column(String(100), nullable=False)

    actor_id: Mapped[int | None] = mapped_column(nullable=True)

    moved_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    def __repr__(self) -> str:
        return (
            f"<SerialMovement {self.id} unit={self.serial_number_id} "
            f"{self.from_status}->{self.to_status}>"
        )
