"""
Test helpers for seeding orders and building signed gateway webhooks.

Usage:
    seeded = await seed_order(db_session, customer.id, quantities=(2, 1))
    body = intent_event("payment_intent.succeeded", "pi_1", seeded.order_id, customer.id)
    header = sign_payload(body)
"""

import json
import time
import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional

from services.checkout_service.clients.gateway import compute_signature
from services.checkout_service.models import OrderStatus, PaymentStatus
from tests.factories import (
    OrderFactory,
    OrderItemFactory,
    ProductFactory,
    VariantFactory,
)

WEBHOOK_SECRET = "whsec_test"
ITEM_PRICE = Decimal("80.00")


# ---------------------------------------------------------------------------
# Seed data
# ---------------------------------------------------------------------------


@dataclass
class SeededOrder:
    """Ids only: ORM instances expire on rollback and cannot lazy-load."""

    order_id: uuid.UUID
    order_number: str
    user_id: uuid.UUID
    product_id: uuid.UUID
    variant_ids: List[uuid.UUID]
    quantities: List[int]


async def seed_order(
    db,
    user_id: uuid.UUID,
    quantities=(2,),
    stock: int = 10,
    variant_active: bool = True,
    status: OrderStatus = OrderStatus.PENDING,
    payment_status: PaymentStatus = PaymentStatus.UNPAID,
    **order_overrides,
) -> SeededOrder:
    """Insert a product, one variant per line, an order and its items.

    Every line costs ``ITEM_PRICE``; the order total is the sum of its lines
    unless ``total`` is overridden.
    """
    product = ProductFactory.create()
    db.add(product)
    await db.flush()

    subtotal = sum((ITEM_PRICE * quantity for quantity in quantities), Decimal("0"))
    order_overrides.setdefault("subtotal", subtotal)
    order_overrides.setdefault("total", order_overrides["subtotal"])
    order = OrderFactory.create(
        user_id, status=status, payment_status=payment_status, **order_overrides
    )
    db.add(order)
    await db.flush()

    variant_ids = []
    for quantity in quantities:
        variant = VariantFactory.create(
            product.id, stock_quantity=stock, is_active=variant_active
        )
        db.add(variant)
        await db.flush()
        db.add(
            OrderItemFactory.create(
                order.id, product.id, variant.id, quantity=quantity, unit_price=ITEM_PRICE
            )
        )
        variant_ids.append(variant.id)

    await db.commit()
    return SeededOrder(
        order_id=order.id,
        order_number=order.order_number,
        user_id=user_id,
        product_id=product.id,
        variant_ids=variant_ids,
        quantities=list(quantities),
    )


# ---------------------------------------------------------------------------
# Gateway webhooks
# ---------------------------------------------------------------------------


def sign_payload(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp=None) -> str:
    timestamp = int(time.time()) if timestamp is None else timestamp
    return f"t={timestamp},v1={compute_signature(secret, timestamp, payload)}"


def intent_event(
    event_type: str,
    intent_id: str,
    order_id: Optional[uuid.UUID],
    user_id: uuid.UUID,
    event_id: Optional[str] = None,
    status: str = "succeeded",
    amount: int = 16000,
    error: Optional[str] = None,
) -> bytes:
    body = {
        "id": event_id or f"evt_{uuid.uuid4().hex[:16]}",
        "type": event_type,
        "created": int(time.time()),
        "data": {
            "object": {
                "id": intent_id,
                "object": "payment_intent",
                "status": status,
                "amount": amount,
                "currency": "eur",
                "metadata": {
                    "userId": str(user_id),
                    "orderId": str(order_id) if order_id else None,
                },
                "last_payment_error": {"message": error} if error else None,
            }
        },
    }
    return json.dumps(body).encode("utf-8")
