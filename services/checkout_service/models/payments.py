"""Payment intent records and the processed-webhook dedup set."""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

from libs.common.datetime_utils import utc_now
from libs.db.base import Base
from services.checkout_service.models.enums import IntentStatus, enum_values
from sqlalchemy import DateTime
from sqlalchemy import Enum as SAEnum
from sqlalchemy import ForeignKey, Numeric, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column


class PaymentIntentRecord(Base):
    """Local mirror of a gateway payment intent.

    Only the payment orchestrator writes to this table.
    ``fulfillment_error`` is set when the gateway reported success but the
    order/inventory transaction could not be applied; the reconciliation
    worker picks those up.
    """

    __tablename__ = "payment_intents"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    external_id: Mapped[str] = mapped_column(
        String(100), unique=True, index=True, nullable=False
    )
    order_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("orders.id", ondelete="SET NULL"), index=True, nullable=True
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id"), index=True, nullable=False
    )

    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    status: Mapped[IntentStatus] = mapped_column(
        SAEnum(
            IntentStatus,
            values_callable=enum_values,
            name="payment_intent_status_enum",
            validate_strings=True,
        ),
        default=IntentStatus.REQUIRES_PAYMENT_METHOD,
        nullable=False,
    )

    fulfillment_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    fulfillment_attempts: Mapped[int] = mapped_column(default=0, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now
    )

    def __repr__(self):
        return f"<PaymentIntentRecord {self.external_id} {self.status}>"


class ProcessedWebhookEvent(Base):
    """Gateway event ids that have been fully applied."""

    __tablename__ = "processed_webhook_events"

    event_id: Mapped[str] = mapped_column(String(100), primary_key=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    payment_intent_id: Mapped[Optional[str]] = mapped_column(
        String(100), index=True, nullable=True
    )
    processed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now
    )

    def __repr__(self):
        return f"<ProcessedWebhookEvent {self.event_id}>"
