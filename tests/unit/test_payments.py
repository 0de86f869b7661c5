"""Unit tests for the payment orchestrator.

Webhook bodies are signed locally; gateway REST calls go through
httpx.MockTransport.
"""

import json
import uuid
from decimal import Decimal
from urllib.parse import parse_qs

import httpx
import pytest
from libs.auth.models import AuthUser
from libs.common.errors import (
    AuthorizationError,
    PaymentMismatchError,
    ReservationError,
    ValidationError,
    WebhookSignatureError,
)
from services.checkout_service.clients.gateway import GatewayError
from services.checkout_service.models import (
    CustomerRef,
    IntentStatus,
    InventoryMovement,
    Order,
    OrderStatus,
    PaymentIntentRecord,
    PaymentStatus,
    ProcessedWebhookEvent,
    ProductVariant,
)
from services.checkout_service.services.payments import (
    EVENT_FAILED,
    EVENT_SUCCEEDED,
    PaymentOrchestrator,
)
from sqlalchemy import func, select
from tests.factories import PaymentIntentFactory
from tests.helpers import intent_event, seed_order, sign_payload

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


async def _order(db, order_id) -> Order:
    return await db.get(Order, order_id, populate_existing=True)


async def _reserved(db, variant_id) -> int:
    variant = await db.get(ProductVariant, variant_id, populate_existing=True)
    return variant.reserved_quantity


async def _record(db, external_id) -> PaymentIntentRecord:
    result = await db.execute(
        select(PaymentIntentRecord)
        .where(PaymentIntentRecord.external_id == external_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def _count(db, model) -> int:
    result = await db.execute(select(func.count()).select_from(model))
    return result.scalar_one()


async def _deliver(orchestrator, db, body: bytes):
    return await orchestrator.handle_webhook(db, body, sign_payload(body))


def _intent_json(intent_id, status, user_id, order_id=None, amount=16000):
    return {
        "id": intent_id,
        "status": status,
        "amount": amount,
        "currency": "eur",
        "client_secret": f"{intent_id}_secret",
        "metadata": {
            "userId": str(user_id),
            "orderId": str(order_id) if order_id else None,
        },
    }


# ---------------------------------------------------------------------------
# Webhooks
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.unit
async def test_succeeded_webhook_marks_paid_and_reserves(db_session, customer, make_gateway):
    customer_id = customer.id
    seeded = await seed_order(db_session, customer_id, quantities=(2, 1))
    orchestrator = PaymentOrchestrator(gateway=make_gateway())

    ack = await _deliver(
        orchestrator,
        db_session,
        intent_event(
            EVENT_SUCCEEDED,
            "pi_ok",
            seeded.order_id,
            customer_id,
            event_id="evt_ok",
            amount=24000,
        ),
    )

    order = await _order(db_session, seeded.order_id)
    record = await _record(db_session, "pi_ok")
    assert ack == {"received": True}
    assert order.payment_status == PaymentStatus.PAID
    assert order.status == OrderStatus.CONFIRMED
    assert await _reserved(db_session, seeded.variant_ids[0]) == 2
    assert await _reserved(db_session, seeded.variant_ids[1]) == 1
    assert record.status == IntentStatus.SUCCEEDED
    assert record.amount == Decimal("240.00")
    assert record.order_id == seeded.order_id
    assert await db_session.get(ProcessedWebhookEvent, "evt_ok") is not None


@pytest.mark.asyncio
@pytest.mark.unit
async def test_duplicate_webhook_is_acknowledged_once(db_session, customer, make_gateway):
    customer_id = customer.id
    seeded = await seed_order(db_session, customer_id)
    orchestrator = PaymentOrchestrator(gateway=make_gateway())
    body = intent_event(
        EVENT_SUCCEEDED, "pi_dup", seeded.order_id, customer_id, event_id="evt_dup"
    )

    await _deliver(orchestrator, db_session, body)
    ack = await _deliver(orchestrator, db_session, body)

    assert ack == {"received": True, "duplicate": True}
    assert await _reserved(db_session, seeded.variant_ids[0]) == 2
    assert await _count(db_session, InventoryMovement) == 1
    assert (await _order(db_session, seeded.order_id)).version == 2


@pytest.mark.asyncio
@pytest.mark.unit
async def test_redelivered_success_with_new_event_id_is_harmless(
    db_session, customer, make_gateway
):
    customer_id = customer.id
    seeded = await seed_order(db_session, customer_id)
    orchestrator = PaymentOrchestrator(gateway=make_gateway())

    for event_id in ("evt_a", "evt_b"):
        await _deliver(
            orchestrator,
            db_session,
            intent_event(EVENT_SUCCEEDED, "pi_re", seeded.order_id, customer_id, event_id=event_id),
        )

    assert await _reserved(db_session, seeded.variant_ids[0]) == 2
    assert await _count(db_session, ProcessedWebhookEvent) == 2


@pytest.mark.asyncio
@pytest.mark.unit
async def test_failed_webhook_records_reason(db_session, customer, make_gateway):
    customer_id = customer.id
    seeded = await seed_order(db_session, customer_id)
    orchestrator = PaymentOrchestrator(gateway=make_gateway())

    await _deliver(
        orchestrator,
        db_session,
        intent_event(
            EVENT_FAILED,
            "pi_fail",
            seeded.order_id,
            customer_id,
            status="requires_payment_method",
            error="Your card was declined.",
        ),
    )

    order = await _order(db_session, seeded.order_id)
    record = await _record(db_session, "pi_fail")
    assert order.payment_status == PaymentStatus.FAILED
    assert order.payment_failure_reason == "Your card was declined."
    assert order.status == OrderStatus.PENDING
    assert await _reserved(db_session, seeded.variant_ids[0]) == 0
    assert record.status == IntentStatus.FAILED


@pytest.mark.asyncio
@pytest.mark.unit
async def test_reservation_failure_rolls_back_and_flags_intent(
    db_session, customer, make_gateway
):
    customer_id = customer.id
    seeded = await seed_order(db_session, customer_id, variant_active=False)
    orchestrator = PaymentOrchestrator(gateway=make_gateway())

    with pytest.raises(ReservationError):
        await _deliver(
            orchestrator,
            db_session,
            intent_event(
                EVENT_SUCCEEDED, "pi_short", seeded.order_id, customer_id, event_id="evt_short"
            ),
        )

    order = await _order(db_session, seeded.order_id)
    record = await _record(db_session, "pi_short")
    assert order.payment_status == PaymentStatus.UNPAID
    assert order.status == OrderStatus.PENDING
    assert await _count(db_session, InventoryMovement) == 0
    # No dedup row: the gateway retry must be processed again
    assert await db_session.get(ProcessedWebhookEvent, "evt_short") is None
    assert record.status == IntentStatus.SUCCEEDED
    assert record.fulfillment_error
    assert record.fulfillment_attempts == 1


@pytest.mark.asyncio
@pytest.mark.unit
async def test_bad_signature_writes_nothing(db_session, customer, make_gateway):
    customer_id = customer.id
    seeded = await seed_order(db_session, customer_id)
    orchestrator = PaymentOrchestrator(gateway=make_gateway())
    body = intent_event(EVENT_SUCCEEDED, "pi_bad", seeded.order_id, customer_id)

    with pytest.raises(WebhookSignatureError):
        await orchestrator.handle_webhook(db_session, body, sign_payload(body, secret="nope"))

    assert (await _order(db_session, seeded.order_id)).payment_status == PaymentStatus.UNPAID
    assert await _count(db_session, ProcessedWebhookEvent) == 0


@pytest.mark.asyncio
@pytest.mark.unit
async def test_unknown_event_type_is_acknowledged(db_session, customer, make_gateway):
    orchestrator = PaymentOrchestrator(gateway=make_gateway())
    body = intent_event(
        "charge.refunded", "pi_x", None, customer.id, event_id="evt_other"
    )

    ack = await _deliver(orchestrator, db_session, body)

    assert ack == {"received": True}
    assert await db_session.get(ProcessedWebhookEvent, "evt_other") is not None


@pytest.mark.asyncio
@pytest.mark.unit
async def test_success_for_unknown_order_is_acknowledged(db_session, customer, make_gateway):
    orchestrator = PaymentOrchestrator(gateway=make_gateway())

    ack = await _deliver(
        orchestrator,
        db_session,
        intent_event(EVENT_SUCCEEDED, "pi_orphan", uuid.uuid4(), customer.id),
    )

    record = await _record(db_session, "pi_orphan")
    assert ack == {"received": True}
    assert record.order_id is None


@pytest.mark.asyncio
@pytest.mark.unit
@pytest.mark.parametrize("amount, currency", [(50, "eur"), (16000, "brl")])
async def test_success_not_matching_order_total_is_not_applied(
    db_session, customer, make_gateway, amount, currency
):
    customer_id = customer.id
    seeded = await seed_order(db_session, customer_id)
    orchestrator = PaymentOrchestrator(gateway=make_gateway())
    body = json.loads(
        intent_event(
            EVENT_SUCCEEDED,
            "pi_short_paid",
            seeded.order_id,
            customer_id,
            event_id="evt_short_paid",
            amount=amount,
        )
    )
    body["data"]["object"]["currency"] = currency

    ack = await _deliver(orchestrator, db_session, json.dumps(body).encode())

    order = await _order(db_session, seeded.order_id)
    record = await _record(db_session, "pi_short_paid")
    assert ack == {"received": True}
    assert order.payment_status == PaymentStatus.UNPAID
    assert order.status == OrderStatus.PENDING
    assert await _count(db_session, InventoryMovement) == 0
    assert record.fulfillment_error
    assert await db_session.get(ProcessedWebhookEvent, "evt_short_paid") is not None


# ---------------------------------------------------------------------------
# Intents
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.unit
async def test_create_intent_creates_customer_once(db_session, customer, user_auth, make_gateway):
    customer_id = customer.id
    seeded = await seed_order(db_session, customer_id)
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.path)
        if request.url.path.endswith("/customers"):
            return httpx.Response(200, json={"id": "cus_new", "email": customer.email})
        form = parse_qs(request.content.decode())
        assert form["amount"] == ["16000"]
        assert form["customer"] == ["cus_new"]
        assert form["metadata[orderId]"] == [str(seeded.order_id)]
        return httpx.Response(
            200, json=_intent_json("pi_new", "requires_payment_method", customer_id)
        )

    orchestrator = PaymentOrchestrator(gateway=make_gateway(handler))
    result = await orchestrator.create_intent(
        db_session,
        amount=Decimal("160.00"),
        currency="eur",
        user=user_auth,
        order_id=seeded.order_id,
    )

    stored = await db_session.get(CustomerRef, customer_id, populate_existing=True)
    record = await _record(db_session, "pi_new")
    order = await _order(db_session, seeded.order_id)
    assert result == {
        "client_secret": "pi_new_secret",
        "payment_intent_id": "pi_new",
        "customer_id": "cus_new",
    }
    assert calls == ["/v1/customers", "/v1/payment_intents"]
    assert stored.gateway_customer_id == "cus_new"
    assert record.amount == Decimal("160.00")
    assert record.currency == "EUR"
    assert order.payment_intent_id == "pi_new"


@pytest.mark.asyncio
@pytest.mark.unit
async def test_create_intent_reuses_gateway_customer(db_session, customer, user_auth, make_gateway):
    customer.gateway_customer_id = "cus_existing"
    await db_session.commit()
    calls = []

    def handler(request):
        calls.append(request.url.path)
        return httpx.Response(
            200, json=_intent_json("pi_again", "requires_payment_method", customer.id)
        )

    orchestrator = PaymentOrchestrator(gateway=make_gateway(handler))
    result = await orchestrator.create_intent(
        db_session, amount=Decimal("30"), currency="BRL", user=user_auth
    )

    assert result["customer_id"] == "cus_existing"
    assert calls == ["/v1/payment_intents"]


@pytest.mark.asyncio
@pytest.mark.unit
@pytest.mark.parametrize("amount, currency", [(Decimal("0.49"), "EUR"), (Decimal("10"), "USD")])
async def test_create_intent_validates_input(db_session, user_auth, make_gateway, amount, currency):
    orchestrator = PaymentOrchestrator(gateway=make_gateway())

    with pytest.raises(ValidationError):
        await orchestrator.create_intent(
            db_session, amount=amount, currency=currency, user=user_auth
        )


@pytest.mark.asyncio
@pytest.mark.unit
@pytest.mark.parametrize(
    "amount, currency", [(Decimal("0.50"), "EUR"), (Decimal("160.00"), "BRL")]
)
async def test_create_intent_must_match_order_total(
    db_session, customer, user_auth, make_gateway, amount, currency
):
    seeded = await seed_order(db_session, customer.id)
    orchestrator = PaymentOrchestrator(gateway=make_gateway())

    with pytest.raises(ValidationError):
        await orchestrator.create_intent(
            db_session,
            amount=amount,
            currency=currency,
            user=user_auth,
            order_id=seeded.order_id,
        )

    assert await _count(db_session, PaymentIntentRecord) == 0


@pytest.mark.asyncio
@pytest.mark.unit
async def test_gateway_customer_kept_when_intent_call_fails(
    db_session, customer, user_auth, make_gateway
):
    customer_id = customer.id
    calls = []
    intent_responses = [
        httpx.Response(500, json={"error": {"message": "Internal error"}}),
        httpx.Response(
            200, json=_intent_json("pi_second", "requires_payment_method", customer_id)
        ),
    ]

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.path)
        if request.url.path.endswith("/customers"):
            return httpx.Response(200, json={"id": "cus_once"})
        return intent_responses.pop(0)

    orchestrator = PaymentOrchestrator(gateway=make_gateway(handler))

    with pytest.raises(GatewayError):
        await orchestrator.create_intent(
            db_session, amount=Decimal("20"), currency="EUR", user=user_auth
        )
    stored = await db_session.get(CustomerRef, customer_id, populate_existing=True)
    assert stored.gateway_customer_id == "cus_once"

    result = await orchestrator.create_intent(
        db_session, amount=Decimal("20"), currency="EUR", user=user_auth
    )

    assert result["customer_id"] == "cus_once"
    assert calls == ["/v1/customers", "/v1/payment_intents", "/v1/payment_intents"]


@pytest.mark.asyncio
@pytest.mark.unit
async def test_confirm_rejects_intent_of_another_order(
    db_session, customer, user_auth, make_gateway
):
    customer_id = customer.id
    cheap = await seed_order(db_session, customer_id, quantities=(1,), total=Decimal("0.50"))
    pricey = await seed_order(db_session, customer_id)

    def handler(request):
        return httpx.Response(
            200, json=_intent_json("pi_cheap", "succeeded", customer_id, cheap.order_id, 50)
        )

    orchestrator = PaymentOrchestrator(gateway=make_gateway(handler))

    with pytest.raises(PaymentMismatchError):
        await orchestrator.confirm(
            db_session,
            payment_intent_id="pi_cheap",
            user=user_auth,
            order_id=pricey.order_id,
        )

    order = await _order(db_session, pricey.order_id)
    assert order.payment_status == PaymentStatus.UNPAID
    assert await _reserved(db_session, pricey.variant_ids[0]) == 0


@pytest.mark.asyncio
@pytest.mark.unit
async def test_confirm_with_short_amount_is_not_applied(
    db_session, customer, user_auth, make_gateway
):
    customer_id = customer.id
    seeded = await seed_order(db_session, customer_id)

    def handler(request):
        return httpx.Response(200, json=_intent_json("pi_low", "succeeded", customer_id, amount=50))

    orchestrator = PaymentOrchestrator(gateway=make_gateway(handler))

    with pytest.raises(PaymentMismatchError):
        await orchestrator.confirm(
            db_session,
            payment_intent_id="pi_low",
            user=user_auth,
            order_id=seeded.order_id,
        )

    order = await _order(db_session, seeded.order_id)
    record = await _record(db_session, "pi_low")
    assert order.payment_status == PaymentStatus.UNPAID
    assert record.fulfillment_error
    assert record.order_id is None


@pytest.mark.asyncio
@pytest.mark.unit
async def test_confirm_success_applies_order(db_session, customer, user_auth, make_gateway):
    customer_id = customer.id
    seeded = await seed_order(db_session, customer_id)

    def handler(request):
        if request.url.path.endswith("/confirm"):
            return httpx.Response(
                200, json=_intent_json("pi_c", "succeeded", customer_id, seeded.order_id)
            )
        return httpx.Response(
            200,
            json=_intent_json("pi_c", "requires_confirmation", customer_id, seeded.order_id),
        )

    orchestrator = PaymentOrchestrator(gateway=make_gateway(handler))
    result = await orchestrator.confirm(
        db_session, payment_intent_id="pi_c", user=user_auth, payment_method_id="pm_1"
    )

    assert result["status"] == "succeeded"
    assert result["order_id"] == str(seeded.order_id)
    assert result["requires_action"] is False
    assert (await _order(db_session, seeded.order_id)).payment_status == PaymentStatus.PAID
    assert await _reserved(db_session, seeded.variant_ids[0]) == 2


@pytest.mark.asyncio
@pytest.mark.unit
async def test_confirm_requires_action(db_session, customer, user_auth, make_gateway):
    def handler(request):
        return httpx.Response(200, json=_intent_json("pi_3ds", "requires_action", customer.id))

    orchestrator = PaymentOrchestrator(gateway=make_gateway(handler))
    result = await orchestrator.confirm(
        db_session, payment_intent_id="pi_3ds", user=user_auth, payment_method_id="pm_1"
    )

    assert result["requires_action"] is True


@pytest.mark.asyncio
@pytest.mark.unit
async def test_other_users_intent_is_forbidden(db_session, customer, make_gateway):
    def handler(request):
        return httpx.Response(200, json=_intent_json("pi_theirs", "succeeded", customer.id))

    orchestrator = PaymentOrchestrator(gateway=make_gateway(handler))
    stranger = AuthUser(sub=str(uuid.uuid4()), role="authenticated")

    with pytest.raises(AuthorizationError):
        await orchestrator.get_status("pi_theirs", stranger)


@pytest.mark.asyncio
@pytest.mark.unit
async def test_detach_foreign_payment_method_forbidden(db_session, customer, user_auth, make_gateway):
    customer.gateway_customer_id = "cus_mine"
    await db_session.commit()

    def handler(request):
        assert request.method == "GET"
        return httpx.Response(200, json={"id": "pm_x", "type": "card", "customer": "cus_other"})

    orchestrator = PaymentOrchestrator(gateway=make_gateway(handler))

    with pytest.raises(AuthorizationError):
        await orchestrator.detach_payment_method(db_session, "pm_x", user_auth)


@pytest.mark.asyncio
@pytest.mark.unit
async def test_list_payment_methods_without_customer_is_empty(db_session, user_auth, make_gateway):
    orchestrator = PaymentOrchestrator(gateway=make_gateway())
    assert await orchestrator.list_payment_methods(db_session, user_auth) == []


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.unit
async def test_retry_fulfillment_recovers_after_stock_fix(db_session, customer, make_gateway):
    customer_id = customer.id
    seeded = await seed_order(db_session, customer_id, variant_active=False)
    orchestrator = PaymentOrchestrator(gateway=make_gateway())

    with pytest.raises(ReservationError):
        await _deliver(
            orchestrator,
            db_session,
            intent_event(EVENT_SUCCEEDED, "pi_retry", seeded.order_id, customer_id),
        )

    variant = await db_session.get(ProductVariant, seeded.variant_ids[0], populate_existing=True)
    variant.is_active = True
    await db_session.commit()

    record = await _record(db_session, "pi_retry")
    assert await orchestrator.retry_fulfillment(db_session, record) is True

    record = await _record(db_session, "pi_retry")
    assert record.fulfillment_error is None
    assert (await _order(db_session, seeded.order_id)).payment_status == PaymentStatus.PAID
    assert await _reserved(db_session, seeded.variant_ids[0]) == 2


@pytest.mark.asyncio
@pytest.mark.unit
async def test_reconcile_canceled_intent_fails_order(db_session, customer, make_gateway):
    customer_id = customer.id
    seeded = await seed_order(db_session, customer_id)

    def handler(request):
        return httpx.Response(
            200, json=_intent_json("pi_stale", "canceled", customer_id, seeded.order_id)
        )

    db_session.add(
        PaymentIntentFactory.create(
            customer_id, external_id="pi_stale", order_id=seeded.order_id
        )
    )
    await db_session.commit()
    orchestrator = PaymentOrchestrator(gateway=make_gateway(handler))

    status = await orchestrator.reconcile_intent(db_session, await _record(db_session, "pi_stale"))

    assert status == IntentStatus.CANCELED
    assert (await _record(db_session, "pi_stale")).status == IntentStatus.CANCELED
    assert (await _order(db_session, seeded.order_id)).payment_status == PaymentStatus.FAILED
