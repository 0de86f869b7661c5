"""Checkout Service schemas package."""

from services.checkout_service.schemas.currency import (
    ConvertRequest,
    ConvertResponse,
    CurrencyInfoResponse,
    RatesResponse,
    SupportedCurrenciesResponse,
    TaxRequest,
    TaxResponse,
)
from services.checkout_service.schemas.orders import (
    CancelOrderRequest,
    OrderItemResponse,
    OrderResponse,
)
from services.checkout_service.schemas.payments import (
    ConfirmPaymentRequest,
    ConfirmPaymentResponse,
    CreateIntentRequest,
    CreateIntentResponse,
    PaymentMethodResponse,
    PaymentStatusResponse,
    WebhookAck,
)
from services.checkout_service.schemas.shipping import (
    AddressIn,
    AddressValidationResponse,
    CarrierRateResponse,
    CarrierServiceResponse,
    CartItem,
    CreateShipmentRequest,
    EstimatedDays,
    ServicesRequest,
    ShipmentResponse,
    ShippingCalculateRequest,
    ShippingQuoteResponse,
    ShippingZoneResponse,
    TrackingEventResponse,
    TrackingResponse,
    ZoneRef,
)

__all__ = [
    "AddressIn",
    "AddressValidationResponse",
    "CancelOrderRequest",
    "CarrierRateResponse",
    "CarrierServiceResponse",
    "CartItem",
    "ConfirmPaymentRequest",
    "ConfirmPaymentResponse",
    "ConvertRequest",
    "ConvertResponse",
    "CreateIntentRequest",
    "CreateIntentResponse",
    "CreateShipmentRequest",
    "CurrencyInfoResponse",
    "EstimatedDays",
    "OrderItemResponse",
    "OrderResponse",
    "PaymentMethodResponse",
    "PaymentStatusResponse",
    "RatesResponse",
    "ServicesRequest",
    "ShipmentResponse",
    "ShippingCalculateRequest",
    "ShippingQuoteResponse",
    "ShippingZoneResponse",
    "SupportedCurrenciesResponse",
    "TaxRequest",
    "TaxResponse",
    "TrackingEventResponse",
    "TrackingResponse",
    "WebhookAck",
]
