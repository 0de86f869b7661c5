"""Payment intents, saved cards and the gateway webhook."""

from typing import List

from fastapi import APIRouter, Depends, Request
from libs.auth.dependencies import get_current_user
from libs.auth.models import AuthUser
from libs.db.session import get_async_db
from services.checkout_service.schemas import (
    ConfirmPaymentRequest,
    ConfirmPaymentResponse,
    CreateIntentRequest,
    CreateIntentResponse,
    PaymentMethodResponse,
    PaymentStatusResponse,
    WebhookAck,
)
from services.checkout_service.services.payments import (
    PaymentOrchestrator,
    get_payment_orchestrator,
)
from sqlalchemy.ext.asyncio import AsyncSession

router = APIRouter(prefix="/payments", tags=["payments"])

SIGNATURE_HEADER = "Stripe-Signature"


@router.post("/create-intent", response_model=CreateIntentResponse)
async def create_payment_intent(
    payload: CreateIntentRequest,
    current_user: AuthUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_db),
    orchestrator: PaymentOrchestrator = Depends(get_payment_orchestrator),
):
    return await orchestrator.create_intent(
        db,
        amount=payload.amount,
        currency=payload.currency,
        user=current_user,
        order_id=payload.order_id,
    )


@router.post("/confirm", response_model=ConfirmPaymentResponse)
async def confirm_payment(
    payload: ConfirmPaymentRequest,
    current_user: AuthUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_db),
    orchestrator: PaymentOrchestrator = Depends(get_payment_orchestrator),
):
    return await orchestrator.confirm(
        db,
        payment_intent_id=payload.payment_intent_id,
        user=current_user,
        payment_method_id=payload.payment_method_id,
        order_id=payload.order_id,
    )


@router.get("/status/{payment_intent_id}", response_model=PaymentStatusResponse)
async def payment_status(
    payment_intent_id: str,
    current_user: AuthUser = Depends(get_current_user),
    orchestrator: PaymentOrchestrator = Depends(get_payment_orchestrator),
):
    return await orchestrator.get_status(payment_intent_id, current_user)


@router.get("/payment-methods", response_model=List[PaymentMethodResponse])
async def list_payment_methods(
    current_user: AuthUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_db),
    orchestrator: PaymentOrchestrator = Depends(get_payment_orchestrator),
):
    methods = await orchestrator.list_payment_methods(db, current_user)
    return [PaymentMethodResponse.model_validate(m) for m in methods]


@router.delete("/payment-methods/{method_id}")
async def detach_payment_method(
    method_id: str,
    current_user: AuthUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_db),
    orchestrator: PaymentOrchestrator = Depends(get_payment_orchestrator),
):
    await orchestrator.detach_payment_method(db, method_id, current_user)
    return {"success": True, "message": "Payment method removed"}


@router.post("/webhook", response_model=WebhookAck)
async def gateway_webhook(
    request: Request,
    db: AsyncSession = Depends(get_async_db),
    orchestrator: PaymentOrchestrator = Depends(get_payment_orchestrator),
):
    """
    Gateway webhook endpoint (no auth; verified by signature header).

    The signature is checked against the raw body before anything is parsed.
    """
    raw = await request.body()
    return await orchestrator.handle_webhook(
        db, raw, request.headers.get(SIGNATURE_HEADER)
    )
