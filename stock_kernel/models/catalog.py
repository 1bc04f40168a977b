"""
Module: stock_kernel.models.catalog
Responsibility: Minimal catalog rows the ledger depends on: businesses
    (tenants), locations, products and product variations.
Architecture position: Kernel > Models.  May import from db/ only.

The full product catalog (pricing, images, categories, barcodes) lives in
other subsystems.  Only the columns needed for existence checks, tenancy
and serial tracking are modelled here.
"""

from __future__ import annotations

from sqlalchemy import Boolean, ForeignKey, Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from stock_kernel.db.base import Base


class Business(Base):
    """A tenant.  Every location and product belongs to exactly one."""

    __tablename__ = "businesses"

    name: Mapped[str] = mapped_column(String(200), nullable=False)

    def __repr__(self) -> str:
        return f"<Business {self.id} {self.name!r}>"


class Location(Base):
    """A physical site (warehouse, store) holding independent stock balances."""

    __tablename__ = "locations"

    __table_args__ = (
        Index("idx_location_business", "business_id"),
    )

    business_id: Mapped[int] = mapped_column(
        ForeignKey("businesses.id"),
        nullable=False,
    )

    name: Mapped[str] = mapped_column(String(200), nullable=False)

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    def __repr__(self) -> str:
        return f"<Location {self.id} {self.name!r}>"


class Product(Base):
    """A sellable product.  Serialized products track each unit individually."""

    __tablename__ = "products"

    __table_args__ = (
        UniqueConstraint("business_id", "sku", name="uq_product_business_sku"),
    )

    business_id: Mapped[int] = mapped_column(
        ForeignKey("businesses.id"),
        nullable=False,
    )

    name: Mapped[str] = mapped_column(String(200), nullable=False)

    sku: Mapped[str] = mapped_column(String(100), nullable=False)

    is_serialized: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    variations: Mapped[list["ProductVariation"]] = relationship(
        back_populates="product",
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return f"<Product {self.id} {self.sku!r}>"


class ProductVariation(Base):
    """A specific sellable configuration of a product; the unit of stock tracking."""

    __tablename__ = "product_variations"

    __table_args__ = (
        Index("idx_variation_product", "product_id"),
    )

    product_id: Mapped[int] = mapped_column(
        ForeignKey("products.id"),
        nullable=False,
    )

    name: Mapped[str] = mapped_column(String(200), nullable=False)

    sku: Mapped[str] = mapped_column(String(100), nullable=False)

    product: Mapped[Product] = relationship(back_populates="variations", lazy="joined")

    def __repr__(self) -> str:
        return f"<ProductVariation {self.id} {self.sku!r}>"
