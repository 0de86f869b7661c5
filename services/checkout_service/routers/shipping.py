"""Shipping zones, quotes and carrier operations."""

from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from libs.auth.dependencies import get_current_user, require_admin
from libs.auth.models import AuthUser
from libs.common.logging import get_logger
from libs.db.session import get_async_db
from services.checkout_service.clients.carrier import (
    CarrierAdapter,
    get_carrier_adapter,
)
from services.checkout_service.schemas import (
    AddressIn,
    AddressValidationResponse,
    CarrierRateResponse,
    CarrierServiceResponse,
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
from services.checkout_service.services import orders as order_store
from services.checkout_service.services.shipping import (
    ShippingPlanner,
    get_shipping_planner,
)
from sqlalchemy.ext.asyncio import AsyncSession

router = APIRouter(prefix="/shipping", tags=["shipping"])
logger = get_logger(__name__)


def _shipment_response(order) -> ShipmentResponse:
    return ShipmentResponse(
        order_id=order.id,
        order_number=order.order_number,
        status=order.status.value,
        tracking_number=order.tracking_number,
        carrier_shipment_id=order.carrier_shipment_id,
        estimated_delivery=order.estimated_delivery,
    )


@router.get("/zones", response_model=List[ShippingZoneResponse])
async def list_zones(db: AsyncSession = Depends(get_async_db)):
    """Active shipping zones, ordered by name."""
    return await ShippingPlanner.list_zones(db)


@router.post("/calculate", response_model=ShippingQuoteResponse)
async def calculate_shipping(
    payload: ShippingCalculateRequest,
    db: AsyncSession = Depends(get_async_db),
    planner: ShippingPlanner = Depends(get_shipping_planner),
):
    quote = await planner.quote(
        db,
        payload.country_code,
        payload.items,
        sender=payload.sender.to_address() if payload.sender else None,
        destination=payload.destination.to_address() if payload.destination else None,
    )
    return ShippingQuoteResponse(
        zone=ZoneRef(id=quote.zone_id, name=quote.zone_name),
        base_cost=quote.base_cost,
        weight_cost=quote.weight_cost,
        total_cost=quote.total_cost,
        original_cost=quote.original_cost,
        free_shipping_applied=quote.free_shipping_applied,
        free_shipping_threshold=quote.free_shipping_threshold,
        estimated_days=EstimatedDays(
            min=quote.estimated_days_min, max=quote.estimated_days_max
        ),
        total_weight=quote.total_weight,
        total_value=quote.total_value,
        currency=quote.currency,
        carrier_rates=[
            CarrierRateResponse.model_validate(rate) for rate in quote.carrier_rates
        ],
    )


@router.post("/create-shipment", response_model=ShipmentResponse)
async def create_shipment(
    payload: CreateShipmentRequest,
    _admin: AuthUser = Depends(require_admin),
    db: AsyncSession = Depends(get_async_db),
    carrier: CarrierAdapter = Depends(get_carrier_adapter),
):
    """Book a carrier shipment for a paid, confirmed order (admin only)."""
    order = await order_store.ship_order(
        db,
        carrier,
        payload.order_id,
        service_type=payload.service_type,
        sender=payload.sender.to_address() if payload.sender else None,
    )
    return _shipment_response(order)


@router.get("/track/{tracking_number}", response_model=TrackingResponse)
async def track_shipment(
    tracking_number: str,
    _user: AuthUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_db),
    carrier: CarrierAdapter = Depends(get_carrier_adapter),
):
    """Live tracking. A delivered report also closes out the order."""
    info, order = await order_store.sync_tracking(db, carrier, tracking_number)
    return TrackingResponse(
        tracking_number=info.tracking_number,
        status=info.status.value,
        status_description=info.status_description,
        events=[TrackingEventResponse.model_validate(e) for e in info.events],
        origin=info.origin,
        destination=info.destination,
        estimated_delivery=info.estimated_delivery,
        order_status=order.status.value if order else None,
    )


@router.post("/services", response_model=List[CarrierServiceResponse])
async def available_services(
    payload: ServicesRequest,
    carrier: CarrierAdapter = Depends(get_carrier_adapter),
):
    result = await carrier.get_available_services(
        payload.origin.to_address(), payload.destination.to_address()
    )
    services = result.unwrap()
    return [CarrierServiceResponse.model_validate(s) for s in services]


@router.post("/validate-address", response_model=AddressValidationResponse)
async def validate_address(
    payload: AddressIn,
    carrier: CarrierAdapter = Depends(get_carrier_adapter),
):
    result = await carrier.validate_address(payload.to_address())
    return AddressValidationResponse.model_validate(result.unwrap())


@router.delete("/shipments/{shipment_id}", response_model=ShipmentResponse)
async def cancel_shipment(
    shipment_id: str,
    reason: Optional[str] = Query(default="Customer request", max_length=255),
    _admin: AuthUser = Depends(require_admin),
    db: AsyncSession = Depends(get_async_db),
    carrier: CarrierAdapter = Depends(get_carrier_adapter),
):
    """Void a shipment and put the order back to confirmed (admin only)."""
    order = await order_store.cancel_shipment(db, carrier, shipment_id, reason)
    return _shipment_response(order)
