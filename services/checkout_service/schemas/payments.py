import uuid
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class CreateIntentRequest(BaseModel):
    amount: Decimal = Field(..., gt=0, decimal_places=2)
    currency: str = Field(default="EUR", min_length=3, max_length=3)
    order_id: Optional[uuid.UUID] = None


class CreateIntentResponse(BaseModel):
    client_secret: Optional[str] = None
    payment_intent_id: str
    customer_id: str


class ConfirmPaymentRequest(BaseModel):
    payment_intent_id: str
    payment_method_id: Optional[str] = None
    order_id: Optional[uuid.UUID] = None


class ConfirmPaymentResponse(BaseModel):
    payment_intent_id: str
    status: str
    order_id: Optional[str] = None
    requires_action: bool = False


class PaymentStatusResponse(BaseModel):
    payment_intent_id: str
    status: str
    amount: int  # minor units
    currency: str
    last_payment_error: Optional[str] = None


class PaymentMethodResponse(BaseModel):
    id: str
    type: str
    brand: Optional[str] = None
    last4: Optional[str] = None
    exp_month: Optional[int] = None
    exp_year: Optional[int] = None
    created: Optional[int] = None

    model_config = ConfigDict(from_attributes=True)


class WebhookAck(BaseModel):
    received: bool = True
    duplicate: bool = False
