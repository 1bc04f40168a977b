"""
Module: stock_kernel.models.transfer
Responsibility: ORM persistence for inter-location transfers, their line
    items, the serial units attached to each item, and the append-only
    transition history.
Architecture position: Kernel > Models.  May import from db/ only.

Invariants enforced:
    - One item per variation per transfer (unique constraint).
    - quantity > 0 (CHECK).
    - stock_deducted is True iff every item's transfer_out movement exists;
      stock_received is True iff every item's transfer_in movement exists.
      The transfer service sets both inside the same transaction as the
      movements.
    - TransferEvent rows are append-only.
    - version is the optimistic version counter for the header row.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from stock_kernel.db.base import Base, TrackedBase


class Transfer(TrackedBase):
    """Header of an inter-location stock transfer."""

    __tablename__ = "transfers"

    __table_args__ = (
        UniqueConstraint("business_id", "transfer_number", name="uq_transfer_number"),
        Index("idx_transfer_status", "status"),
        Index("idx_transfer_from_location", "from_location_id"),
        Index("idx_transfer_to_location", "to_location_id"),
    )

    business_id: Mapped[int] = mapped_column(ForeignKey("businesses.id"), nullable=False)

    transfer_number: Mapped[str | None] = mapped_column(String(50), nullable=True)

    from_location_id: Mapped[int] = mapped_column(ForeignKey("locations.id"), nullable=False)

    to_location_id: Mapped[int] = mapped_column(ForeignKey("locations.id"), nullable=False)

    status: Mapped[str] = mapped_column(String(20), nullable=False)

    stock_deducted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    stock_received: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    notes: Mapped[str | None] = mapped_column(String(2000), nullable=True)

    created_by: Mapped[int | None] = mapped_column(nullable=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    items: Mapped[list["TransferItem"]] = relationship(
        back_populates="transfer",
        cascade="all, delete-orphan",
        order_by="TransferItem.id",
        lazy="selectin",
    )

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self) -> str:
        return f"<Transfer {self.id} {self.status}>"


class TransferItem(Base):
    """One variation being moved by a transfer."""

    __tablename__ = "transfer_items"

    __table_args__ = (
        UniqueConstraint("transfer_id", "variation_id", name="uq_transfer_item_variation"),
        CheckConstraint("quantity > 0", name="ck_transfer_item_quantity"),
    )

    transfer_id: Mapped[int] = mapped_column(ForeignKey("transfers.id"), nullable=False)

    product_id: Mapped[int] = mapped_column(ForeignKey("products.id"), nullable=False)

    variation_id: Mapped[int] = mapped_column(
        ForeignKey("product_variations.id"),
        nullable=False,
    )

    quantity: Mapped[Decimal] = mapped_column(Numeric(20, 4), nullable=False)

    received_quantity: Mapped[Decimal | None] = mapped_column(Numeric(20, 4), nullable=True)

    # Set when completion fell back to the sent quantity
    received_quantity_defaulted: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
    )

    has_discrepancy: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    unit_cost: Mapped[Decimal | None] = mapped_column(Numeric(38, 9), nullable=True)

    transfer: Mapped[Transfer] = relationship(back_populates="items")

    serials: Mapped[list["TransferItemSerial"]] = relationship(
        back_populates="item",
        cascade="all, delete-orphan",
        order_by="TransferItemSerial.id",
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return f"<TransferItem {self.id} v={self.variation_id} qty={self.quantity}>"


class TransferItemSerial(Base):
    """A serial unit travelling with a transfer item."""

    __tablename__ = "transfer_item_serials"

    __table_args__ = (
        UniqueConstraint("transfer_item_id", "serial_unit_id", name="uq_transfer_item_serial"),
    )

    transfer_item_id: Mapped[int] = mapped_column(
        ForeignKey("transfer_items.id"),
        nullable=False,
    )

    serial_unit_id: Mapped[int] = mapped_column(ForeignKey("serial_units.id"), nullable=False)

    received: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    item: Mapped[TransferItem] = relationship(back_populates="serials")


class TransferEvent(Base):
    """One transition in a transfer's history."""

    __tablename__ = "transfer_events"

    __table_args__ = (
        Index("idx_transfer_event_transfer", "transfer_id", "id"),
    )

    transfer_id: Mapped[int] = mapped_column(ForeignKey("transfers.id"), nullable=False)

    from_status: Mapped[str | None] = mapped_column(String(20), nullable=True)

    to_status: Mapped[str] = mapped_column(String(20), nullable=False)

    action: Mapped[str] = mapped_column(String(50), nullable=False)

    actor_id: Mapped[int | None] = mapped_column(nullable=True)

    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    notes: Mapped[str | None] = mapped_column(String(2000), nullable=True)
