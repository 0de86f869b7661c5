"""Order lookups and customer/admin lifecycle actions."""

import uuid
from typing import Optional

from fastapi import APIRouter, Body, Depends
from libs.auth.dependencies import get_current_user, require_admin
from libs.auth.models import AuthUser
from libs.db.session import get_async_db
from services.checkout_service.schemas import CancelOrderRequest, OrderResponse
from services.checkout_service.services import orders as order_store
from services.checkout_service.services.payments import (
    PaymentOrchestrator,
    get_payment_orchestrator,
)
from sqlalchemy.ext.asyncio import AsyncSession

router = APIRouter(prefix="/orders", tags=["orders"])


@router.get("/{order_id}", response_model=OrderResponse)
async def get_order(
    order_id: uuid.UUID,
    current_user: AuthUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_db),
):
    return await order_store.get_order(db, order_id, current_user)


@router.post("/{order_id}/cancel", response_model=OrderResponse)
async def cancel_order(
    order_id: uuid.UUID,
    payload: Optional[CancelOrderRequest] = Body(default=None),
    current_user: AuthUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_db),
):
    """Cancel an order and release its reserved stock."""
    reason = payload.reason if payload else None
    return await order_store.cancel_order(db, order_id, current_user, reason)


@router.post("/{order_id}/refund", response_model=OrderResponse)
async def refund_order(
    order_id: uuid.UUID,
    _admin: AuthUser = Depends(require_admin),
    db: AsyncSession = Depends(get_async_db),
    orchestrator: PaymentOrchestrator = Depends(get_payment_orchestrator),
):
    return await orchestrator.refund(db, order_id)
