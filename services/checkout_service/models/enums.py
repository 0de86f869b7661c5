"""Enum definitions for checkout service models."""

import enum


def enum_values(enum_cls):
    """Return persistent DB values for SAEnum mappings."""
    return [member.value for member in enum_cls]


class OrderStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class PaymentStatus(str, enum.Enum):
    UNPAID = "unpaid"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


class InventoryMovementType(str, enum.Enum):
    RESERVE = "reserve"
    RELEASE = "release"
    FULFILL = "fulfill"


class IntentStatus(str, enum.Enum):
    """Gateway payment intent statuses we persist."""

    REQUIRES_PAYMENT_METHOD = "requires_payment_method"
    REQUIRES_CONFIRMATION = "requires_confirmation"
    REQUIRES_ACTION = "requires_action"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"

    @classmethod
    def from_gateway(cls, value: str | None) -> "IntentStatus":
        try:
            return cls(value or "")
        except ValueError:
            return cls.REQUIRES_PAYMENT_METHOD


class ShipmentStatus(str, enum.Enum):
    PENDING = "pending"
    IN_TRANSIT = "in_transit"
    DELIVERED = "delivered"
    EXCEPTION = "exception"
    UNKNOWN = "unknown"


class Currency(str, enum.Enum):
    EUR = "EUR"
    BRL = "BRL"
    NAD = "NAD"


SUPPORTED_CURRENCIES = [c.value for c in Currency]
BASE_CURRENCY = Currency.EUR.value
