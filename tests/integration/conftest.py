"""
Integration fixtures.

Each helper swaps one FastAPI dependency for a test double; the ``app``
fixture clears every override after the test.
"""

import httpx
import pytest
from libs.auth.dependencies import get_current_user
from libs.auth.models import AuthUser
from services.checkout_service.clients.carrier import get_carrier_adapter
from services.checkout_service.clients.rates_api import ExchangeRateClient
from services.checkout_service.services.currency import (
    CurrencyConverter,
    RateCache,
    get_currency_converter,
)
from services.checkout_service.services.payments import (
    PaymentOrchestrator,
    get_payment_orchestrator,
)
from services.checkout_service.services.shipping import (
    ShippingPlanner,
    get_shipping_planner,
)


@pytest.fixture
def login(app):
    """Authenticate every request as ``user``."""

    def _login(user: AuthUser) -> AuthUser:
        app.dependency_overrides[get_current_user] = lambda: user
        return user

    return _login


@pytest.fixture
def use_gateway(app, make_gateway):
    def _use(handler=None) -> PaymentOrchestrator:
        gateway = make_gateway(handler) if handler else make_gateway()
        orchestrator = PaymentOrchestrator(gateway=gateway)
        app.dependency_overrides[get_payment_orchestrator] = lambda: orchestrator
        return orchestrator

    return _use


@pytest.fixture
def use_carrier(app, make_carrier):
    def _use(handler=None, **kwargs):
        carrier = make_carrier(handler, **kwargs) if handler else make_carrier(**kwargs)
        planner = ShippingPlanner(carrier=carrier)
        app.dependency_overrides[get_carrier_adapter] = lambda: carrier
        app.dependency_overrides[get_shipping_planner] = lambda: planner
        return carrier

    return _use


@pytest.fixture
def offline_rates(app, session_factory):
    """Converter whose live API is down, so rates come from the fallback table."""

    def unavailable(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, json={"error": "unavailable"})

    cache = RateCache(
        client=ExchangeRateClient(
            base_url="https://rates.test/latest",
            transport=httpx.MockTransport(unavailable),
        ),
        session_factory=session_factory,
    )
    converter = CurrencyConverter(cache)
    app.dependency_overrides[get_currency_converter] = lambda: converter
    return converter
