"""Shipping zones (read-only from this service)."""

import uuid
from decimal import Decimal
from typing import Optional

from libs.db.base import Base, JSONVariant
from sqlalchemy import Boolean, Integer, Numeric, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column


class ShippingZone(Base):
    __tablename__ = "shipping_zones"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    countries: Mapped[list] = mapped_column(JSONVariant, nullable=False)  # ["DE", "FR"]

    base_rate: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    per_kg_rate: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    free_shipping_threshold: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(10, 2), nullable=True
    )

    estimated_days_min: Mapped[int] = mapped_column(Integer, nullable=False)
    estimated_days_max: Mapped[int] = mapped_column(Integer, nullable=False)
    is_active: Mapped[bool] = mapped_column(
        Boolean, default=True, server_default="true"
    )

    def covers(self, country_code: str) -> bool:
        return country_code.upper() in {c.upper() for c in (self.countries or [])}

    def __repr__(self):
        return f"<ShippingZone {self.name}>"
