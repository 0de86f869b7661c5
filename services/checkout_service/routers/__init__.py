"""Routers package."""

from services.checkout_service.routers.currency import router as currency_router
from services.checkout_service.routers.orders import router as orders_router
from services.checkout_service.routers.payments import router as payments_router
from services.checkout_service.routers.shipping import router as shipping_router

__all__ = [
    "currency_router",
    "orders_router",
    "payments_router",
    "shipping_router",
]
