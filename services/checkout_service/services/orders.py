"""Order lifecycle transitions.

Every transition loads the order with ``SELECT ... FOR UPDATE`` and relies on
the ``version`` column for optimistic protection on top of the row lock.
Carrier calls happen before the locked transaction is opened, never inside it.

Payment-side helpers (``apply_payment_success`` / ``apply_payment_failure``)
do not commit: the payment orchestrator bundles them with its own writes.
"""

import uuid
from typing import Optional, Tuple

from libs.auth.models import AuthUser
from libs.common.currency import to_minor_units
from libs.common.datetime_utils import utc_now
from libs.common.errors import (
    ConflictError,
    NotFoundError,
    PaymentMismatchError,
    ValidationError,
)
from libs.common.logging import get_logger
from services.checkout_service.clients.carrier import (
    Address,
    CarrierAdapter,
    Package,
    TrackingInfo,
    default_sender,
)
from services.checkout_service.models import (
    Order,
    OrderStatus,
    PaymentStatus,
    ShipmentStatus,
)
from services.checkout_service.services.inventory import ledger
from services.checkout_service.services.shipping import ShippingPlanner
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

logger = get_logger(__name__)

CANCELLABLE_STATUSES = {
    OrderStatus.PENDING,
    OrderStatus.CONFIRMED,
    OrderStatus.SHIPPED,
}


def _append_note(order: Order, note: str) -> None:
    stamp = utc_now().strftime("%Y-%m-%d %H:%M")
    line = f"[{stamp}] {note}"
    order.notes = f"{order.notes}\n{line}" if order.notes else line


def _owns(order: Order, user: AuthUser) -> bool:
    return str(order.user_id) == str(user.user_id)


async def get_order(
    db: AsyncSession, order_id: uuid.UUID, user: Optional[AuthUser] = None
) -> Order:
    """Load an order with items. Non-admins only see their own orders."""
    result = await db.execute(
        select(Order).options(selectinload(Order.items)).where(Order.id == order_id)
    )
    order = result.scalar_one_or_none()
    if order is None or (user is not None and not user.is_admin and not _owns(order, user)):
        raise NotFoundError("Order not found")
    return order


async def lock_order(db: AsyncSession, order_id: uuid.UUID) -> Order:
    result = await db.execute(
        select(Order)
        .options(selectinload(Order.items))
        .where(Order.id == order_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    order = result.scalar_one_or_none()
    if order is None:
        raise NotFoundError("Order not found")
    return order


async def _find_order_id(db: AsyncSession, **criteria) -> Optional[uuid.UUID]:
    query = select(Order.id)
    for column, value in criteria.items():
        query = query.where(getattr(Order, column) == value)
    result = await db.execute(query.limit(1))
    return result.scalar_one_or_none()


# ---------------------------------------------------------------------------
# Payment outcomes (no commit)
# ---------------------------------------------------------------------------


def check_settles(order: Order, amount_minor: int, currency: str) -> None:
    """Raise PaymentMismatchError unless the charge covers exactly this order."""
    expected = to_minor_units(order.total)
    if amount_minor != expected or (currency or "").upper() != order.currency:
        raise PaymentMismatchError(
            f"Payment of {amount_minor} {currency} does not settle order "
            f"{order.order_number} ({expected} {order.currency})",
            order_id=str(order.id),
        )


async def apply_payment_success(
    db: AsyncSession,
    order_id: uuid.UUID,
    payment_intent_id: str,
    amount_minor: Optional[int] = None,
    currency: Optional[str] = None,
) -> bool:
    """Mark the order paid/confirmed and reserve its items.

    Returns True when the order transitioned, False if it was already paid.
    Reservations are idempotent, so a replay never double-reserves. When the
    charged ``amount_minor``/``currency`` are given they must match the order.

    Raises:
        PaymentMismatchError: the charge does not match the order total.
        ReservationError: any item could not be reserved. The caller must
            roll back the whole transaction.
    """
    order = await lock_order(db, order_id)
    if amount_minor is not None:
        check_settles(order, amount_minor, currency)

    if order.status == OrderStatus.CANCELLED or order.payment_status == PaymentStatus.REFUNDED:
        logger.warning(
            "Payment %s succeeded for order %s in state %s/%s; not applying",
            payment_intent_id,
            order.order_number,
            order.status.value,
            order.payment_status.value,
        )
        return False

    transitioned = order.payment_status != PaymentStatus.PAID
    if transitioned:
        order.payment_status = PaymentStatus.PAID
        order.paid_at = utc_now()
        order.payment_failure_reason = None
        if order.status == OrderStatus.PENDING:
            order.status = OrderStatus.CONFIRMED
    order.payment_intent_id = payment_intent_id

    for item in order.items:
        await ledger.reserve(
            db,
            variant_id=item.variant_id,
            quantity=item.quantity,
            reference_id=order.id,
        )

    await db.flush()
    return transitioned


async def apply_payment_failure(
    db: AsyncSession, order_id: uuid.UUID, reason: Optional[str]
) -> bool:
    """unpaid -> failed. Inventory is not touched."""
    order = await lock_order(db, order_id)
    if order.payment_status != PaymentStatus.UNPAID:
        logger.info(
            "Ignoring payment failure for order %s (payment_status=%s)",
            order.order_number,
            order.payment_status.value,
        )
        return False

    order.payment_status = PaymentStatus.FAILED
    order.payment_failure_reason = reason or "Payment failed"
    await db.flush()
    return True


# ---------------------------------------------------------------------------
# Fulfilment
# ---------------------------------------------------------------------------


def _recipient_from(order: Order) -> Address:
    address = order.shipping_address or {}
    if not address.get("country_code"):
        raise ValidationError("Order has no shipping address")
    contact = " ".join(
        part for part in (address.get("first_name"), address.get("last_name")) if part
    )
    return Address(
        country_code=address["country_code"],
        city=address.get("city", ""),
        postal_code=address.get("postal_code", ""),
        address_line1=address.get("address_line1", ""),
        address_line2=address.get("address_line2"),
        company_name=address.get("company_name"),
        contact_name=contact or None,
        email=address.get("email"),
        phone=address.get("phone"),
    )


async def ship_order(
    db: AsyncSession,
    carrier: CarrierAdapter,
    order_id: uuid.UUID,
    service_type: str = "EXPRESS",
    sender: Optional[Address] = None,
) -> Order:
    """confirmed -> shipped via the carrier."""
    order = await get_order(db, order_id)
    if order.status != OrderStatus.CONFIRMED or order.payment_status != PaymentStatus.PAID:
        raise ConflictError(
            f"Order {order.order_number} cannot ship from "
            f"{order.status.value}/{order.payment_status.value}"
        )

    recipient = _recipient_from(order)
    weight, value = await ShippingPlanner.measure(db, order.items)
    order_number = order.order_number
    currency = order.currency
    # End the read transaction before talking to the carrier
    await db.commit()

    created = await carrier.create_shipment(
        order_ref=order_number,
        sender=sender or default_sender(),
        recipient=recipient,
        packages=[Package(weight_kg=weight, declared_value=value, currency=currency)],
        service_type=service_type,
    )
    if not created.ok:
        logger.error(
            "Carrier shipment failed for %s: %s", order_number, created.error.message
        )
        raise created.error
    shipment = created.value

    try:
        order = await lock_order(db, order_id)
        if order.status != OrderStatus.CONFIRMED:
            raise ConflictError(
                f"Order {order.order_number} changed to {order.status.value} while shipping"
            )
        order.status = OrderStatus.SHIPPED
        order.tracking_number = shipment.tracking_number
        order.carrier_shipment_id = shipment.shipment_id
        order.estimated_delivery = shipment.estimated_delivery
        order.shipped_at = utc_now()
        await db.commit()
    except Exception:
        await db.rollback()
        logger.error(
            "Shipment %s created for %s but order update failed; cancelling it",
            shipment.shipment_id,
            order_number,
        )
        voided = await carrier.cancel_shipment(
            shipment.shipment_id, f"Order {order_number} could not be updated"
        )
        if not voided.ok:
            logger.error(
                "Could not cancel orphaned shipment %s: %s",
                shipment.shipment_id,
                voided.error.message,
                extra={"extra_fields": {"alert": "orphaned_shipment"}},
            )
        raise

    logger.info(
        "Order %s shipped (tracking %s)", order_number, shipment.tracking_number
    )
    return order


async def sync_tracking(
    db: AsyncSession, carrier: CarrierAdapter, tracking_number: str
) -> Tuple[TrackingInfo, Optional[Order]]:
    """Fetch tracking; a ``delivered`` report moves shipped orders to delivered."""
    tracked = await carrier.track_shipment(tracking_number)
    if not tracked.ok:
        if tracked.error.status_code == 404:
            raise NotFoundError("Shipment not found")
        raise tracked.error
    info = tracked.value

    if info.status != ShipmentStatus.DELIVERED:
        return info, None

    order_id = await _find_order_id(db, tracking_number=tracking_number)
    if order_id is None:
        return info, None

    try:
        order = await lock_order(db, order_id)
        if order.status != OrderStatus.SHIPPED:
            await db.commit()
            return info, order

        order.status = OrderStatus.DELIVERED
        order.delivered_at = utc_now()
        for item in order.items:
            await ledger.fulfill(
                db,
                variant_id=item.variant_id,
                quantity=item.quantity,
                reference_id=order.id,
            )
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info("Order %s delivered", order.order_number)
    return info, order


async def cancel_order(
    db: AsyncSession,
    order_id: uuid.UUID,
    user: AuthUser,
    reason: Optional[str] = None,
) -> Order:
    """Cancel and release every unit still held for the order."""
    try:
        order = await lock_order(db, order_id)
        if not user.is_admin and not _owns(order, user):
            raise NotFoundError("Order not found")
        if order.status not in CANCELLABLE_STATUSES:
            raise ConflictError(
                f"Order {order.order_number} cannot be cancelled "
                f"(status={order.status.value})"
            )

        held = await ledger.reserved_for(db, order.id)
        for variant_id, quantity in held.items():
            await ledger.release(
                db,
                variant_id=variant_id,
                quantity=quantity,
                reference_id=order.id,
                notes=f"Order {order.order_number} cancelled",
            )

        order.status = OrderStatus.CANCELLED
        order.cancelled_at = utc_now()
        _append_note(order, f"Cancelled: {reason or 'no reason given'}")
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info(
        "Order %s cancelled; released %d variant reservation(s)",
        order.order_number,
        len(held),
    )
    return order


async def cancel_shipment(
    db: AsyncSession,
    carrier: CarrierAdapter,
    shipment_id: str,
    reason: str = "Customer request",
) -> Order:
    """Void a carrier shipment and move the order back to confirmed."""
    order_id = await _find_order_id(db, carrier_shipment_id=shipment_id)
    if order_id is None:
        raise NotFoundError("Shipment not found")
    await db.commit()

    cancelled = await carrier.cancel_shipment(shipment_id, reason)
    if not cancelled.ok:
        raise cancelled.error

    try:
        order = await lock_order(db, order_id)
        if order.status == OrderStatus.SHIPPED:
            order.status = OrderStatus.CONFIRMED
        order.tracking_number = None
        order.carrier_shipment_id = None
        order.estimated_delivery = None
        order.shipped_at = None
        _append_note(order, f"Shipment {shipment_id} cancelled: {reason}")
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info("Shipment %s cancelled for order %s", shipment_id, order.order_number)
    return order


async def refund_order(db: AsyncSession, order_id: uuid.UUID) -> Order:
    """paid -> refunded."""
    try:
        order = await lock_order(db, order_id)
        if order.payment_status != PaymentStatus.PAID:
            raise ConflictError(
                f"Order {order.order_number} is not refundable "
                f"(payment_status={order.payment_status.value})"
            )
        order.payment_status = PaymentStatus.REFUNDED
        _append_note(order, "Payment refunded")
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info("Order %s refunded", order.order_number)
    return order
