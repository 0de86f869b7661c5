import uuid
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field
from services.checkout_service.clients.carrier import Address


class AddressIn(BaseModel):
    country_code: str = Field(..., min_length=2, max_length=2)
    city: str = ""
    postal_code: str = ""
    address_line1: str = ""
    address_line2: Optional[str] = None
    company_name: Optional[str] = None
    contact_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None

    def to_address(self) -> Address:
        return Address(**self.model_dump())


class CartItem(BaseModel):
    product_id: uuid.UUID
    variant_id: Optional[uuid.UUID] = None
    quantity: int = Field(..., ge=1)


class ShippingCalculateRequest(BaseModel):
    country_code: str = Field(..., min_length=2, max_length=2)
    items: List[CartItem] = Field(..., min_length=1)
    sender: Optional[AddressIn] = None  # enables live carrier quotes
    destination: Optional[AddressIn] = None


class ZoneRef(BaseModel):
    id: str
    name: str


class EstimatedDays(BaseModel):
    min: int
    max: int


class CarrierRateResponse(BaseModel):
    service_type: str
    service_name: Optional[str] = None
    total_price: Optional[float] = None
    currency: Optional[str] = None
    estimated_delivery: Optional[str] = None
    transit_days: Optional[int] = None

    model_config = ConfigDict(from_attributes=True)


class ShippingQuoteResponse(BaseModel):
    zone: ZoneRef
    base_cost: float
    weight_cost: float
    total_cost: float
    original_cost: float
    free_shipping_applied: bool
    free_shipping_threshold: Optional[float] = None
    estimated_days: EstimatedDays
    total_weight: float
    total_value: float
    currency: str
    carrier_rates: List[CarrierRateResponse] = []


class ShippingZoneResponse(BaseModel):
    id: uuid.UUID
    name: str
    countries: List[str]
    base_rate: float
    per_kg_rate: float
    free_shipping_threshold: Optional[float] = None
    estimated_days_min: int
    estimated_days_max: int

    model_config = ConfigDict(from_attributes=True)


class CreateShipmentRequest(BaseModel):
    order_id: uuid.UUID
    service_type: str = "EXPRESS"
    sender: Optional[AddressIn] = None  # defaults to the warehouse


class ShipmentResponse(BaseModel):
    order_id: uuid.UUID
    order_number: str
    status: str
    tracking_number: Optional[str] = None
    carrier_shipment_id: Optional[str] = None
    estimated_delivery: Optional[str] = None


class TrackingEventResponse(BaseModel):
    timestamp: Optional[str] = None
    status: Optional[str] = None
    description: Optional[str] = None
    city: Optional[str] = None
    country: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class TrackingResponse(BaseModel):
    tracking_number: str
    status: str
    status_description: Optional[str] = None
    events: List[TrackingEventResponse] = []
    origin: Optional[dict] = None
    destination: Optional[dict] = None
    estimated_delivery: Optional[str] = None
    order_status: Optional[str] = None


class ServicesRequest(BaseModel):
    origin: AddressIn
    destination: AddressIn


class CarrierServiceResponse(BaseModel):
    code: str
    name: Optional[str] = None
    description: Optional[str] = None
    estimated_days: Optional[int] = None

    model_config = ConfigDict(from_attributes=True)


class AddressValidationResponse(BaseModel):
    is_valid: bool
    suggested_address: Optional[dict] = None
    warnings: List = []

    model_config = ConfigDict(from_attributes=True)
