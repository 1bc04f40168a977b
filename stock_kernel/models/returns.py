"""
Module: stock_kernel.models.returns
Responsibility: ORM persistence for customer returns (goods coming back from
    a buyer) and supplier returns (goods going back to a vendor).
Architecture position: Kernel > Models.  May import from db/ only.

Invariants enforced:
    - Item quantity > 0 (CHECK).
    - Status moves pending -> approved | rejected exactly once (enforced by
      the return processors).
    - Approved item stock effects are referenced by item id
      (reference_type "customer_return_item" / "supplier_return_item"),
      so two lines of the same variation never collide on the idempotency key.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import JSON, CheckConstraint, DateTime, ForeignKey, Index, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from stock_kernel.db.base import Base, TrackedBase


class CustomerReturn(TrackedBase):
    __tablename__ = "customer_returns"

    __table_args__ = (
        Index("idx_customer_return_status", "status"),
    )

    business_id: Mapped[int] = mapped_column(ForeignKey("businesses.id"), nullable=False)

    location_id: Mapped[int] = mapped_column(ForeignKey("locations.id"), nullable=False)

    sale_reference: Mapped[str | None] = mapped_column(String(100), nullable=True)

    status: Mapped[str] = mapped_column(String(20), nullable=False)

    created_by: Mapped[int | None] = mapped_column(nullable=True)

    approved_by: Mapped[int | None] = mapped_column(nullable=True)

    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    rejection_reason: Mapped[str | None] = mapped_column(String(2000), nullable=True)

    items: Mapped[list["CustomerReturnItem"]] = relationship(
        back_populates="customer_return",
        cascade="all, delete-orphan",
        order_by="CustomerReturnItem.id",
        lazy="selectin",
    )


class CustomerReturnItem(Base):
    __tablename__ = "customer_return_items"

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_customer_return_item_quantity"),
    )

    customer_return_id: Mapped[int] = mapped_column(
        ForeignKey("customer_returns.id"),
        nullable=False,
    )

    product_id: Mapped[int] = mapped_column(ForeignKey("products.id"), nullable=False)

    variation_id: Mapped[int] = mapped_column(
        ForeignKey("product_variations.id"),
        nullable=False,
    )

    quantity: Mapped[Decimal] = mapped_column(Numeric(20, 4), nullable=False)

    # resellable | damaged | defective
    condition: Mapped[str] = mapped_column(String(30), nullable=False)

    unit_cost: Mapped[Decimal | None] = mapped_column(Numeric(38, 9), nullable=True)

    serial_ids: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    customer_return: Mapped[CustomerReturn] = relationship(back_populates="items")


class SupplierReturn(TrackedBase):
    __tablename__ = "supplier_returns"

    __table_args__ = (
        Index("idx_supplier_return_status", "status"),
        Index("idx_supplier_return_supplier", "supplier_id"),
    )

    business_id: Mapped[int] = mapped_column(ForeignKey("businesses.id"), nullable=False)

    location_id: Mapped[int] = mapped_column(ForeignKey("locations.id"), nullable=False)

    supplier_id: Mapped[int] = mapped_column(nullable=False)

    warranty_claim_reference: Mapped[str | None] = mapped_column(String(100), nullable=True)

    status: Mapped[str] = mapped_column(String(20), nullable=False)

    created_by: Mapped[int | None] = mapped_column(nullable=True)

    approved_by: Mapped[int | None] = mapped_column(nullable=True)

    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    rejection_reason: Mapped[str | None] = mapped_column(String(2000), nullable=True)

    items: Mapped[list["SupplierReturnItem"]] = relationship(
        back_populates="supplier_return",
        cascade="all, delete-orphan",
        order_by="SupplierReturnItem.id",
        lazy="selectin",
    )


class SupplierReturnItem(Base):
    __tablename__ = "supplier_return_items"

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_supplier_return_item_quantity"),
    )

    supplier_return_id: Mapped[int] = mapped_column(
        ForeignKey("supplier_returns.id"),
        nullable=False,
    )

    product_id: Mapped[int] = mapped_column(ForeignKey("products.id"), nullable=False)

    variation_id: Mapped[int] = mapped_column(
        ForeignKey("product_variations.id"),
        nullable=False,
    )

    quantity: Mapped[Decimal] = mapped_column(Numeric(20, 4), nullable=False)

    # damaged | defective | warranty_claim
    condition: Mapped[str] = mapped_column(String(30), nullable=False)

    unit_cost: Mapped[Decimal | None] = mapped_column(Numeric(38, 9), nullable=True)

    serial_ids: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    supplier_return: Mapped[SupplierReturn] = relationship(back_populates="items")
