"""Inventory movement log (append-only)."""

import uuid
from datetime import datetime
from typing import Optional

from libs.common.datetime_utils import utc_now
from libs.db.base import Base
from services.checkout_service.models.enums import InventoryMovementType, enum_values
from sqlalchemy import CheckConstraint, DateTime
from sqlalchemy import Enum as SAEnum
from sqlalchemy import ForeignKey, Integer, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship


class InventoryMovement(Base):
    """One reserve/release/fulfill step for a variant against an order.

    Rows are never updated or deleted. ``quantity`` is always positive; the
    movement type carries the direction.
    """

    __tablename__ = "inventory_movements"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    variant_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("product_variants.id"), index=True, nullable=False
    )
    movement_type: Mapped[InventoryMovementType] = mapped_column(
        "type",
        SAEnum(
            InventoryMovementType,
            values_callable=enum_values,
            name="inventory_movement_type_enum",
            validate_strings=True,
        ),
        nullable=False,
    )
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    reference_id: Mapped[uuid.UUID] = mapped_column(Uuid, index=True, nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now
    )

    __table_args__ = (
        CheckConstraint("quantity > 0", name="positive_movement"),
        UniqueConstraint(
            "reference_id",
            "variant_id",
            "type",
            name="uq_inventory_movements_reference_variant_type",
        ),
    )

    variant = relationship("ProductVariant")

    def __repr__(self):
        return f"<InventoryMovement {self.movement_type} qty={self.quantity}>"
