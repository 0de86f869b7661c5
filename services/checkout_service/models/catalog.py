"""Catalog reference models: products, variants and the customer row.

Products and users are owned by other parts of the platform. This service
reads them (weights, prices, gateway customer id) and only ever writes
``ProductVariant.reserved_quantity`` (through the inventory ledger) and
``CustomerRef.gateway_customer_id``.
"""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

from libs.common.datetime_utils import utc_now
from libs.db.base import Base
from sqlalchemy import Boolean, CheckConstraint, DateTime, ForeignKey, Integer
from sqlalchemy import Numeric, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship


class CustomerRef(Base):
    """Reference to the shared users table."""

    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    first_name: Mapped[str] = mapped_column(String(100), nullable=False)
    last_name: Mapped[str] = mapped_column(String(100), nullable=False)
    phone: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    # Set lazily the first time the user starts a payment
    gateway_customer_id: Mapped[Optional[str]] = mapped_column(
        String(100), index=True, nullable=True
    )

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"

    def __repr__(self):
        return f"<CustomerRef {self.email}>"


class Product(Base):
    __tablename__ = "products"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    base_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    weight_grams: Mapped[int] = mapped_column(
        Integer, default=0, server_default="0", nullable=False
    )
    is_active: Mapped[bool] = mapped_column(
        Boolean, default=True, server_default="true"
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now
    )

    variants = relationship("ProductVariant", back_populates="product")

    def __repr__(self):
        return f"<Product {self.name}>"


class ProductVariant(Base):
    __tablename__ = "product_variants"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    product_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("products.id", ondelete="CASCADE"), nullable=False
    )
    sku: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    price_adjustment: Mapped[Decimal] = mapped_column(
        Numeric(10, 2), default=0, server_default="0"
    )
    # Falls back to the product weight when unset
    weight_grams: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    stock_quantity: Mapped[int] = mapped_column(
        Integer, default=0, server_default="0", nullable=False
    )
    reserved_quantity: Mapped[int] = mapped_column(
        Integer, default=0, server_default="0", nullable=False
    )
    is_active: Mapped[bool] = mapped_column(
        Boolean, default=True, server_default="true"
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now
    )

    __table_args__ = (
        CheckConstraint("reserved_quantity >= 0", name="non_negative_reserved"),
    )

    product = relationship("Product", back_populates="variants")

    @property
    def available_quantity(self) -> int:
        return self.stock_quantity - self.reserved_quantity

    def __repr__(self):
        return f"<ProductVariant {self.sku} reserved={self.reserved_quantity}>"
