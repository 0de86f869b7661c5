"""Checkout Service models package."""

from services.checkout_service.models.catalog import (
    CustomerRef,
    Product,
    ProductVariant,
)
from services.checkout_service.models.enums import (
    BASE_CURRENCY,
    SUPPORTED_CURRENCIES,
    Currency,
    IntentStatus,
    InventoryMovementType,
    OrderStatus,
    PaymentStatus,
    ShipmentStatus,
)
from services.checkout_service.models.inventory import InventoryMovement
from services.checkout_service.models.orders import Order, OrderItem
from services.checkout_service.models.payments import (
    PaymentIntentRecord,
    ProcessedWebhookEvent,
)
from services.checkout_service.models.rates import ExchangeRate
from services.checkout_service.models.shipping import ShippingZone

__all__ = [
    "BASE_CURRENCY",
    "Currency",
    "CustomerRef",
    "ExchangeRate",
    "IntentStatus",
    "InventoryMovement",
    "InventoryMovementType",
    "Order",
    "OrderItem",
    "OrderStatus",
    "PaymentIntentRecord",
    "PaymentStatus",
    "ProcessedWebhookEvent",
    "Product",
    "ProductVariant",
    "SUPPORTED_CURRENCIES",
    "ShipmentStatus",
    "ShippingZone",
]
