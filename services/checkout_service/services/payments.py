"""Payment orchestration: intents, confirmation and webhook reconciliation.

Gateway calls never run inside an open database transaction. Webhook
handling is idempotent through the ``processed_webhook_events`` table, whose
row is written in the same transaction as the state change it guards.
"""

import uuid
from decimal import Decimal
from typing import List, Optional

from libs.auth.models import AuthUser
from libs.common.config import get_settings
from libs.common.currency import quantize, to_minor_units
from libs.common.datetime_utils import utc_now
from libs.common.errors import (
    AuthorizationError,
    NotFoundError,
    PaymentMismatchError,
    ReservationError,
    ValidationError,
)
from libs.common.logging import get_logger
from services.checkout_service.clients.gateway import (
    GatewayIntent,
    GatewayPaymentMethod,
    PaymentGatewayClient,
    get_gateway_client,
)
from services.checkout_service.models import (
    SUPPORTED_CURRENCIES,
    CustomerRef,
    IntentStatus,
    Order,
    PaymentIntentRecord,
    ProcessedWebhookEvent,
)
from services.checkout_service.services import orders as order_store
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)

MINIMUM_CHARGE = Decimal("0.50")

EVENT_SUCCEEDED = "payment_intent.succeeded"
EVENT_FAILED = "payment_intent.payment_failed"


def _parse_uuid(value) -> Optional[uuid.UUID]:
    if value is None:
        return None
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


async def _get_record(
    db: AsyncSession, external_id: str
) -> Optional[PaymentIntentRecord]:
    result = await db.execute(
        select(PaymentIntentRecord).where(PaymentIntentRecord.external_id == external_id)
    )
    return result.scalar_one_or_none()


class PaymentOrchestrator:
    def __init__(self, gateway: Optional[PaymentGatewayClient] = None):
        self.gateway = gateway or get_gateway_client()

    # =========================================================================
    # Intents
    # =========================================================================

    async def _load_customer(self, db: AsyncSession, user: AuthUser) -> CustomerRef:
        user_id = _parse_uuid(user.user_id)
        customer = await db.get(CustomerRef, user_id) if user_id else None
        if customer is None:
            raise NotFoundError("User not found")
        return customer

    async def create_intent(
        self,
        db: AsyncSession,
        *,
        amount,
        currency: str,
        user: AuthUser,
        order_id: Optional[uuid.UUID] = None,
    ) -> dict:
        amount = quantize(amount)
        currency = (currency or "").upper()
        if amount < MINIMUM_CHARGE:
            raise ValidationError(f"Amount must be at least {MINIMUM_CHARGE}")
        if currency not in SUPPORTED_CURRENCIES:
            raise ValidationError(f"Unsupported currency: {currency}")

        customer = await self._load_customer(db, user)
        if order_id is not None:
            order = await order_store.get_order(db, order_id, user)
            if (
                to_minor_units(order.total) != to_minor_units(amount)
                or order.currency != currency
            ):
                raise ValidationError(
                    f"Amount must equal the order total of {order.total} {order.currency}"
                )

        customer_id = customer.gateway_customer_id
        email, full_name = customer.email, customer.full_name
        # No transaction may be open across gateway calls
        await db.commit()

        if not customer_id:
            gateway_customer = await self.gateway.create_customer(
                email=email, name=full_name, metadata={"userId": str(customer.id)}
            )
            customer_id = gateway_customer.id
            # Stored before the intent call so a failed intent does not orphan it
            try:
                stored = await db.get(CustomerRef, customer.id)
                stored.gateway_customer_id = customer_id
                await db.commit()
            except Exception:
                await db.rollback()
                raise

        intent = await self.gateway.create_payment_intent(
            amount_minor=to_minor_units(amount),
            currency=currency,
            customer_id=customer_id,
            metadata={
                "userId": str(customer.id),
                "orderId": str(order_id) if order_id else None,
            },
        )

        try:
            db.add(
                PaymentIntentRecord(
                    external_id=intent.id,
                    order_id=order_id,
                    user_id=customer.id,
                    amount=amount,
                    currency=currency,
                    status=IntentStatus.from_gateway(intent.status),
                )
            )
            if order_id is not None:
                order = await order_store.lock_order(db, order_id)
                order.payment_intent_id = intent.id
            await db.commit()
        except Exception:
            await db.rollback()
            logger.exception("Failed to persist payment intent %s", intent.id)
            raise

        logger.info(
            "Created payment intent %s for user %s (%s %s)",
            intent.id,
            customer.id,
            amount,
            currency,
        )
        return {
            "client_secret": intent.client_secret,
            "payment_intent_id": intent.id,
            "customer_id": customer_id,
        }

    @staticmethod
    def _assert_owner(intent: GatewayIntent, user: AuthUser) -> None:
        if str(intent.metadata.get("userId")) != str(user.user_id):
            raise AuthorizationError("Payment intent belongs to another user")

    async def confirm(
        self,
        db: AsyncSession,
        *,
        payment_intent_id: str,
        user: AuthUser,
        payment_method_id: Optional[str] = None,
        order_id: Optional[uuid.UUID] = None,
    ) -> dict:
        intent = await self.gateway.retrieve_payment_intent(payment_intent_id)
        self._assert_owner(intent, user)

        if order_id is not None:
            intended = _parse_uuid(intent.metadata.get("orderId"))
            if intended is not None and intended != order_id:
                raise PaymentMismatchError(
                    f"Payment intent {payment_intent_id} was created for another order"
                )
            await order_store.get_order(db, order_id, user)
            await db.commit()

        if payment_method_id:
            return_url = f"{get_settings().FRONTEND_URL}/payment/complete"
            intent = await self.gateway.confirm_payment_intent(
                payment_intent_id, payment_method_id, return_url
            )

        order_id = order_id or _parse_uuid(intent.metadata.get("orderId"))
        status = IntentStatus.from_gateway(intent.status)

        if status == IntentStatus.SUCCEEDED and order_id is not None:
            await self._apply_success(db, intent, order_id)
        else:
            try:
                record = await _get_record(db, intent.id)
                if record is not None:
                    record.status = status
                await db.commit()
            except Exception:
                await db.rollback()
                raise

        return {
            "payment_intent_id": intent.id,
            "status": intent.status,
            "order_id": str(order_id) if order_id else None,
            "requires_action": status == IntentStatus.REQUIRES_ACTION,
        }

    async def get_status(self, payment_intent_id: str, user: AuthUser) -> dict:
        intent = await self.gateway.retrieve_payment_intent(payment_intent_id)
        self._assert_owner(intent, user)
        return {
            "payment_intent_id": intent.id,
            "status": intent.status,
            "amount": intent.amount,
            "currency": intent.currency,
            "last_payment_error": intent.last_payment_error,
        }

    # =========================================================================
    # Saved payment methods
    # =========================================================================

    async def list_payment_methods(
        self, db: AsyncSession, user: AuthUser
    ) -> List[GatewayPaymentMethod]:
        customer = await self._load_customer(db, user)
        customer_id = customer.gateway_customer_id
        await db.commit()
        if not customer_id:
            return []
        return await self.gateway.list_payment_methods(customer_id)

    async def detach_payment_method(
        self, db: AsyncSession, method_id: str, user: AuthUser
    ) -> None:
        customer = await self._load_customer(db, user)
        customer_id = customer.gateway_customer_id
        await db.commit()

        method = await self.gateway.retrieve_payment_method(method_id)
        if not customer_id or method.customer != customer_id:
            raise AuthorizationError("Payment method belongs to another customer")
        await self.gateway.detach_payment_method(method_id)
        logger.info("Detached payment method %s for user %s", method_id, user.user_id)

    # =========================================================================
    # Success / failure application
    # =========================================================================

    async def _upsert_record(
        self,
        db: AsyncSession,
        intent: GatewayIntent,
        order_id: Optional[uuid.UUID],
        status: IntentStatus,
    ) -> Optional[PaymentIntentRecord]:
        record = await _get_record(db, intent.id)
        if record is None:
            user_id = _parse_uuid(intent.metadata.get("userId"))
            if user_id is None:
                return None
            record = PaymentIntentRecord(
                external_id=intent.id,
                order_id=order_id,
                user_id=user_id,
                amount=quantize(Decimal(intent.amount) / 100),
                currency=intent.currency,
            )
            db.add(record)
        record.status = status
        if order_id is not None and record.order_id is None:
            record.order_id = order_id
        return record

    async def _record_fulfillment_error(
        self,
        db: AsyncSession,
        intent: GatewayIntent,
        order_id: Optional[uuid.UUID],
        error: Exception,
        event: Optional[ProcessedWebhookEvent] = None,
    ) -> None:
        """Flag the intent for reconciliation in its own transaction."""
        try:
            record = await self._upsert_record(
                db, intent, order_id, IntentStatus.SUCCEEDED
            )
            if record is not None:
                record.fulfillment_error = str(error)
                record.fulfillment_attempts = (record.fulfillment_attempts or 0) + 1
            if event is not None:
                db.add(event)
            await db.commit()
        except Exception:
            await db.rollback()
            logger.exception(
                "Could not record fulfillment error for intent %s", intent.id
            )

    async def _apply_success(
        self,
        db: AsyncSession,
        intent: GatewayIntent,
        order_id: Optional[uuid.UUID],
        event: Optional[ProcessedWebhookEvent] = None,
    ) -> bool:
        """One transaction: order paid + reservations + intent record (+ dedup row).

        A reservation failure rolls all of it back, flags the intent with
        ``fulfillment_error`` and re-raises. So does a charge whose amount or
        currency differs from the order total; its dedup row is kept because
        redelivery cannot fix it.
        """
        try:
            transitioned = False
            if order_id is not None:
                try:
                    transitioned = await order_store.apply_payment_success(
                        db,
                        order_id,
                        intent.id,
                        amount_minor=intent.amount,
                        currency=intent.currency,
                    )
                except NotFoundError:
                    logger.warning(
                        "Payment %s references unknown order %s", intent.id, order_id
                    )
                    order_id = None
            record = await self._upsert_record(
                db, intent, order_id, IntentStatus.SUCCEEDED
            )
            if record is not None:
                record.fulfillment_error = None
            if event is not None:
                db.add(event)
            await db.commit()
        except ReservationError as exc:
            await db.rollback()
            logger.error(
                "Payment %s succeeded but inventory reservation failed for order %s: %s",
                intent.id,
                order_id,
                exc.message,
                extra={
                    "extra_fields": {
                        "payment_intent_id": intent.id,
                        "order_id": str(order_id),
                        "alert": "payment_received_unfulfilled",
                    }
                },
            )
            await self._record_fulfillment_error(db, intent, order_id, exc)
            raise
        except PaymentMismatchError as exc:
            await db.rollback()
            logger.error(
                "Payment %s not applied to order %s: %s",
                intent.id,
                order_id,
                exc.message,
                extra={
                    "extra_fields": {
                        "payment_intent_id": intent.id,
                        "order_id": str(order_id),
                        "alert": "payment_mismatch",
                    }
                },
            )
            await self._record_fulfillment_error(db, intent, None, exc, event=event)
            raise
        except Exception:
            await db.rollback()
            raise

        if transitioned:
            logger.info("Order %s paid via intent %s", order_id, intent.id)
        return transitioned

    async def _apply_failure(
        self,
        db: AsyncSession,
        intent: GatewayIntent,
        order_id: Optional[uuid.UUID],
        event: Optional[ProcessedWebhookEvent] = None,
        status: IntentStatus = IntentStatus.FAILED,
    ) -> None:
        reason = intent.last_payment_error or "Payment failed"
        try:
            if order_id is not None:
                try:
                    await order_store.apply_payment_failure(db, order_id, reason)
                except NotFoundError:
                    logger.warning(
                        "Payment %s references unknown order %s", intent.id, order_id
                    )
                    order_id = None
            await self._upsert_record(db, intent, order_id, status)
            if event is not None:
                db.add(event)
            await db.commit()
        except Exception:
            await db.rollback()
            raise
        logger.info("Payment %s failed: %s", intent.id, reason)

    # =========================================================================
    # Webhooks
    # =========================================================================

    async def handle_webhook(
        self, db: AsyncSession, raw_body: bytes, signature_header: Optional[str]
    ) -> dict:
        event = self.gateway.construct_event(raw_body, signature_header)

        if await db.get(ProcessedWebhookEvent, event.id) is not None:
            logger.info("Duplicate webhook %s (%s) ignored", event.id, event.type)
            await db.commit()
            return {"received": True, "duplicate": True}

        intent = GatewayIntent.from_payload(event.data_object)
        dedup = ProcessedWebhookEvent(
            event_id=event.id,
            event_type=event.type,
            payment_intent_id=intent.id or None,
            processed_at=utc_now(),
        )

        order_id = _parse_uuid(intent.metadata.get("orderId"))
        if order_id is None and intent.id:
            record = await _get_record(db, intent.id)
            if record is not None:
                order_id = record.order_id

        if event.type == EVENT_SUCCEEDED:
            try:
                await self._apply_success(db, intent, order_id, event=dedup)
            except PaymentMismatchError:
                return {"received": True}
        elif event.type == EVENT_FAILED:
            await self._apply_failure(db, intent, order_id, event=dedup)
        else:
            logger.info("Unhandled webhook event type %s (%s)", event.type, event.id)
            try:
                db.add(dedup)
                await db.commit()
            except Exception:
                await db.rollback()
                raise

        return {"received": True}

    # =========================================================================
    # Admin / reconciliation
    # =========================================================================

    async def refund(self, db: AsyncSession, order_id: uuid.UUID) -> Order:
        return await order_store.refund_order(db, order_id)

    async def retry_fulfillment(
        self, db: AsyncSession, record: PaymentIntentRecord
    ) -> bool:
        """Re-run the succeeded transaction for an intent flagged earlier."""
        intent = GatewayIntent(
            id=record.external_id,
            status=IntentStatus.SUCCEEDED.value,
            amount=to_minor_units(record.amount),
            currency=record.currency,
            metadata={"userId": str(record.user_id)},
        )
        order_id = record.order_id
        await db.commit()
        try:
            await self._apply_success(db, intent, order_id)
        except (ReservationError, PaymentMismatchError):
            return False
        return True

    async def reconcile_intent(
        self, db: AsyncSession, record: PaymentIntentRecord
    ) -> IntentStatus:
        """Ask the gateway about a stale intent and apply what it says."""
        external_id = record.external_id
        order_id = record.order_id
        await db.commit()

        intent = await self.gateway.retrieve_payment_intent(external_id)
        order_id = order_id or _parse_uuid(intent.metadata.get("orderId"))
        status = IntentStatus.from_gateway(intent.status)

        if status == IntentStatus.SUCCEEDED:
            await self._apply_success(db, intent, order_id)
        elif status in (IntentStatus.FAILED, IntentStatus.CANCELED):
            await self._apply_failure(db, intent, order_id, status=status)
        else:
            try:
                record = await _get_record(db, external_id)
                if record is not None:
                    record.status = status
                await db.commit()
            except Exception:
                await db.rollback()
                raise
        return status


def get_payment_orchestrator() -> PaymentOrchestrator:
    return PaymentOrchestrator()
