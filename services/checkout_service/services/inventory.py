"""Inventory ledger: reserve / release / fulfill against an append-only log.

This is the only code allowed to touch ``ProductVariant.reserved_quantity``.
It works inside the caller's transaction: nothing here commits, so the
movement rows and the counter update land (or roll back) together with the
order change that caused them.

Invariant per variant::

    reserved_quantity == sum(reserve) - sum(release) - sum(fulfill)

Before delivery no fulfill rows exist, so this is reserve minus release.
"""

import uuid
from collections import defaultdict
from typing import Dict, Optional

from libs.common.errors import ReservationError
from libs.common.logging import get_logger
from services.checkout_service.models import (
    InventoryMovement,
    InventoryMovementType,
    ProductVariant,
)
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)


async def _lock_variant(db: AsyncSession, variant_id: uuid.UUID) -> Optional[ProductVariant]:
    result = await db.execute(
        select(ProductVariant).where(ProductVariant.id == variant_id).with_for_update()
    )
    return result.scalar_one_or_none()


async def _movement_exists(
    db: AsyncSession,
    variant_id: uuid.UUID,
    reference_id: uuid.UUID,
    movement_type: InventoryMovementType,
) -> bool:
    result = await db.execute(
        select(InventoryMovement.id).where(
            InventoryMovement.reference_id == reference_id,
            InventoryMovement.variant_id == variant_id,
            InventoryMovement.movement_type == movement_type,
        )
    )
    return result.first() is not None


class InventoryLedger:
    """Stateless facade over the movement log; pass the caller's session."""

    async def reserve(
        self,
        db: AsyncSession,
        *,
        variant_id: uuid.UUID,
        quantity: int,
        reference_id: uuid.UUID,
        notes: Optional[str] = None,
    ) -> bool:
        """Hold ``quantity`` units of a variant for an order.

        Returns False (and writes nothing) if this order already holds a
        reservation for the variant. Stock on hand is not checked; an
        over-commit is only logged.

        Raises:
            ReservationError: quantity <= 0, or variant missing/inactive.
        """
        if quantity <= 0:
            raise ReservationError(
                f"Reservation quantity must be positive (got {quantity})",
                variant_id=str(variant_id),
            )

        variant = await _lock_variant(db, variant_id)
        if variant is None:
            raise ReservationError(
                f"Variant {variant_id} not found", variant_id=str(variant_id)
            )
        if not variant.is_active:
            raise ReservationError(
                f"Variant {variant.sku} is not active", variant_id=str(variant_id)
            )

        if await _movement_exists(
            db, variant_id, reference_id, InventoryMovementType.RESERVE
        ):
            logger.info(
                "Reservation for %s on %s already recorded", variant.sku, reference_id
            )
            return False

        variant.reserved_quantity += quantity
        db.add(
            InventoryMovement(
                variant_id=variant_id,
                movement_type=InventoryMovementType.RESERVE,
                quantity=quantity,
                reference_id=reference_id,
                notes=notes or f"Reserved for order {reference_id}",
            )
        )
        await db.flush()

        if variant.reserved_quantity > variant.stock_quantity:
            logger.warning(
                "Variant %s over-committed: reserved %d of %d in stock",
                variant.sku,
                variant.reserved_quantity,
                variant.stock_quantity,
                extra={
                    "extra_fields": {
                        "variant_id": str(variant_id),
                        "reference_id": str(reference_id),
                    }
                },
            )
        return True

    async def release(
        self,
        db: AsyncSession,
        *,
        variant_id: uuid.UUID,
        quantity: int,
        reference_id: uuid.UUID,
        notes: Optional[str] = None,
    ) -> bool:
        """Give back exactly ``quantity`` units held for an order.

        Idempotent per (variant, reference): a second call returns False.
        """
        if quantity <= 0:
            return False

        variant = await _lock_variant(db, variant_id)
        if variant is None:
            raise ReservationError(
                f"Variant {variant_id} not found", variant_id=str(variant_id)
            )

        if await _movement_exists(
            db, variant_id, reference_id, InventoryMovementType.RELEASE
        ):
            return False

        variant.reserved_quantity -= quantity
        db.add(
            InventoryMovement(
                variant_id=variant_id,
                movement_type=InventoryMovementType.RELEASE,
                quantity=quantity,
                reference_id=reference_id,
                notes=notes or f"Released from order {reference_id}",
            )
        )
        await db.flush()
        return True

    async def fulfill(
        self,
        db: AsyncSession,
        *,
        variant_id: uuid.UUID,
        quantity: int,
        reference_id: uuid.UUID,
        notes: Optional[str] = None,
    ) -> bool:
        """Turn a reservation into a stock decrement once goods are delivered."""
        if quantity <= 0:
            return False

        variant = await _lock_variant(db, variant_id)
        if variant is None:
            raise ReservationError(
                f"Variant {variant_id} not found", variant_id=str(variant_id)
            )

        if await _movement_exists(
            db, variant_id, reference_id, InventoryMovementType.FULFILL
        ):
            return False

        variant.reserved_quantity -= quantity
        variant.stock_quantity -= quantity
        db.add(
            InventoryMovement(
                variant_id=variant_id,
                movement_type=InventoryMovementType.FULFILL,
                quantity=quantity,
                reference_id=reference_id,
                notes=notes or f"Fulfilled order {reference_id}",
            )
        )
        await db.flush()
        return True

    @staticmethod
    async def reserved_for(
        db: AsyncSession, reference_id: uuid.UUID
    ) -> Dict[uuid.UUID, int]:
        """Units still held for an order, per variant (zero entries dropped)."""
        result = await db.execute(
            select(
                InventoryMovement.variant_id,
                InventoryMovement.movement_type,
                func.sum(InventoryMovement.quantity),
            )
            .where(InventoryMovement.reference_id == reference_id)
            .group_by(InventoryMovement.variant_id, InventoryMovement.movement_type)
        )
        held: Dict[uuid.UUID, int] = defaultdict(int)
        for variant_id, movement_type, total in result.all():
            if movement_type == InventoryMovementType.RESERVE:
                held[variant_id] += int(total)
            else:
                held[variant_id] -= int(total)
        return {variant_id: qty for variant_id, qty in held.items() if qty > 0}

    @staticmethod
    async def movement_balance(db: AsyncSession, variant_id: uuid.UUID) -> int:
        """Reserve minus release minus fulfill over the whole log."""
        result = await db.execute(
            select(InventoryMovement.movement_type, func.sum(InventoryMovement.quantity))
            .where(InventoryMovement.variant_id == variant_id)
            .group_by(InventoryMovement.movement_type)
        )
        balance = 0
        for movement_type, total in result.all():
            if movement_type == InventoryMovementType.RESERVE:
                balance += int(total)
            else:
                balance -= int(total)
        return balance


ledger = InventoryLedger()
