"""Shared fixtures: customers, shipping zones, auth users and fake providers."""

import uuid
from decimal import Decimal
from typing import Callable

import httpx
import pytest
import pytest_asyncio
from libs.auth.models import AuthUser
from services.checkout_service.clients.carrier import CarrierAdapter
from services.checkout_service.clients.gateway import PaymentGatewayClient
from tests.factories import CustomerFactory, ShippingZoneFactory
from tests.helpers import WEBHOOK_SECRET


@pytest_asyncio.fixture
async def customer(db_session):
    row = CustomerFactory.create()
    db_session.add(row)
    await db_session.commit()
    return row


@pytest_asyncio.fixture
async def zones(db_session):
    """The three launch zones."""
    rows = [
        ShippingZoneFactory.create(),
        ShippingZoneFactory.create(
            name="Brazil",
            countries=["BR"],
            base_rate=Decimal("25.00"),
            per_kg_rate=Decimal("8.00"),
            free_shipping_threshold=Decimal("150.00"),
            estimated_days_min=10,
            estimated_days_max=20,
        ),
        ShippingZoneFactory.create(
            name="Namibia",
            countries=["NA"],
            base_rate=Decimal("30.00"),
            per_kg_rate=Decimal("10.00"),
            free_shipping_threshold=Decimal("200.00"),
            estimated_days_min=14,
            estimated_days_max=25,
        ),
    ]
    db_session.add_all(rows)
    await db_session.commit()
    return rows


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------


@pytest.fixture
def user_auth(customer) -> AuthUser:
    return AuthUser(sub=str(customer.id), email=customer.email, role="authenticated")


@pytest.fixture
def admin_auth() -> AuthUser:
    return AuthUser(sub=str(uuid.uuid4()), email="admin@test.com", role="admin")


# ---------------------------------------------------------------------------
# Fake providers (httpx.MockTransport)
# ---------------------------------------------------------------------------


def _unexpected(request: httpx.Request) -> httpx.Response:
    raise AssertionError(f"Unexpected provider call: {request.method} {request.url}")


@pytest.fixture
def make_gateway() -> Callable[..., PaymentGatewayClient]:
    def _make(handler=_unexpected) -> PaymentGatewayClient:
        return PaymentGatewayClient(
            secret_key="sk_test",
            webhook_secret=WEBHOOK_SECRET,
            base_url="https://gateway.test/v1",
            transport=httpx.MockTransport(handler),
        )

    return _make


@pytest.fixture
def make_carrier() -> Callable[..., CarrierAdapter]:
    def _make(handler=_unexpected, api_key: str = "carrier-test-key") -> CarrierAdapter:
        return CarrierAdapter(
            api_key=api_key,
            account_number="123456789",
            base_url="https://carrier.test",
            transport=httpx.MockTransport(handler),
        )

    return _make
