import uuid
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict
from services.checkout_service.models import OrderStatus, PaymentStatus


class OrderItemResponse(BaseModel):
    id: uuid.UUID
    product_id: uuid.UUID
    variant_id: uuid.UUID
    quantity: int
    unit_price: float
    line_total: float

    model_config = ConfigDict(from_attributes=True)


class OrderResponse(BaseModel):
    id: uuid.UUID
    order_number: str
    user_id: uuid.UUID
    status: OrderStatus
    payment_status: PaymentStatus
    currency: str
    subtotal: float
    tax: float
    shipping_cost: float
    total: float
    payment_intent_id: Optional[str] = None
    payment_failure_reason: Optional[str] = None
    shipping_address: Optional[dict] = None
    tracking_number: Optional[str] = None
    carrier_shipment_id: Optional[str] = None
    estimated_delivery: Optional[str] = None
    notes: Optional[str] = None
    version: int
    paid_at: Optional[datetime] = None
    shipped_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    created_at: datetime
    items: List[OrderItemResponse] = []

    model_config = ConfigDict(from_attributes=True)


class CancelOrderRequest(BaseModel):
    reason: Optional[str] = None
