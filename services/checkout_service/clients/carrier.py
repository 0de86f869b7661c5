"""
Carrier (express courier) API adapter.

Every public coroutine returns a ``Result``: transport failures, timeouts,
HTTP errors and malformed bodies come back as ``Err(ExternalServiceError)``
and never escape as exceptions. Callers decide whether a failure is fatal
(shipment creation) or degradable (rate quotes during checkout).
"""

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import List, Optional

import httpx
from libs.common.config import get_settings
from libs.common.datetime_utils import parse_iso, utc_now
from libs.common.errors import ExternalServiceError
from libs.common.logging import get_logger
from libs.common.result import Err, Ok, Result
from services.checkout_service.models.enums import ShipmentStatus

logger = get_logger(__name__)

PROVIDER = "carrier"

EU_COUNTRIES = frozenset(
    {
        "DE", "FR", "ES", "IT", "PT", "NL", "BE", "AT", "PL", "CZ", "HU", "RO",
        "BG", "HR", "SK", "SI", "LT", "LV", "EE", "CY", "MT", "LU", "IE", "DK",
        "SE", "FI",
    }
)

_STATUS_MAP = {
    "pre-transit": ShipmentStatus.PENDING,
    "transit": ShipmentStatus.IN_TRANSIT,
    "delivered": ShipmentStatus.DELIVERED,
    "exception": ShipmentStatus.EXCEPTION,
}

# Customer packaging, see carrier docs
PACKAGE_TYPE_CODE = "2BP"
DEFAULT_DIMENSIONS_CM = (30, 20, 10)
MIN_PACKAGE_WEIGHT_KG = Decimal("0.1")


@dataclass
class Address:
    country_code: str
    city: str = ""
    postal_code: str = ""
    address_line1: str = ""
    address_line2: Optional[str] = None
    company_name: Optional[str] = None
    contact_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None

    def postal(self) -> dict:
        data = {
            "postalCode": self.postal_code,
            "cityName": self.city,
            "countryCode": self.country_code.upper(),
        }
        if self.address_line1:
            data["addressLine1"] = self.address_line1
        if self.address_line2:
            data["addressLine2"] = self.address_line2
        return data

    def contact(self) -> dict:
        return {
            "email": self.email,
            "phone": self.phone,
            "companyName": self.company_name or self.contact_name,
            "fullName": self.contact_name or self.company_name,
        }


@dataclass
class Package:
    weight_kg: Decimal
    length_cm: int = DEFAULT_DIMENSIONS_CM[0]
    width_cm: int = DEFAULT_DIMENSIONS_CM[1]
    height_cm: int = DEFAULT_DIMENSIONS_CM[2]
    declared_value: Decimal = Decimal("0")
    currency: str = "EUR"

    def payload(self) -> dict:
        return {
            "typeCode": PACKAGE_TYPE_CODE,
            "weight": float(max(Decimal(self.weight_kg), MIN_PACKAGE_WEIGHT_KG)),
            "dimensions": {
                "length": self.length_cm,
                "width": self.width_cm,
                "height": self.height_cm,
            },
        }


@dataclass
class ShipmentCreated:
    shipment_id: str
    tracking_number: str
    label: Optional[dict] = None
    estimated_delivery: Optional[str] = None


@dataclass
class TrackingEvent:
    timestamp: Optional[str]
    status: Optional[str]
    description: Optional[str]
    city: Optional[str] = None
    country: Optional[str] = None


@dataclass
class TrackingInfo:
    tracking_number: str
    status: ShipmentStatus
    status_description: Optional[str] = None
    events: List[TrackingEvent] = field(default_factory=list)
    origin: Optional[dict] = None
    destination: Optional[dict] = None
    estimated_delivery: Optional[str] = None


@dataclass
class CarrierRate:
    service_type: str
    service_name: Optional[str]
    total_price: Optional[Decimal]
    currency: Optional[str]
    estimated_delivery: Optional[str] = None
    transit_days: Optional[int] = None


@dataclass
class CarrierService:
    code: str
    name: Optional[str]
    description: Optional[str] = None
    estimated_days: Optional[int] = None


@dataclass
class AddressValidation:
    is_valid: bool
    suggested_address: Optional[dict] = None
    warnings: List[str] = field(default_factory=list)


def is_customs_declarable(origin_country: str, destination_country: str) -> bool:
    """Customs paperwork is needed unless both ends are EU members."""
    return not (
        origin_country.upper() in EU_COUNTRIES
        and destination_country.upper() in EU_COUNTRIES
    )


def map_status(status_code: Optional[str]) -> ShipmentStatus:
    return _STATUS_MAP.get((status_code or "").lower(), ShipmentStatus.UNKNOWN)


def extract_error_message(body, fallback: str) -> str:
    """Pull the human message out of the carrier's problem-details envelope."""
    if isinstance(body, dict):
        for key in ("detail", "message", "title"):
            if body.get(key):
                return str(body[key])
    return fallback


def _event_sort_key(event: TrackingEvent):
    parsed = parse_iso(event.timestamp)
    return parsed.timestamp() if parsed else float("-inf")


def _to_decimal(value) -> Optional[Decimal]:
    if value is None:
        return None
    return Decimal(str(value))


class CarrierAdapter:
    """Async client for the carrier REST API."""

    def __init__(
        self,
        api_key: str = None,
        account_number: str = None,
        base_url: str = None,
        timeout: float = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        settings = get_settings()
        self.api_key = api_key if api_key is not None else settings.CARRIER_API_KEY
        self.account_number = (
            account_number
            if account_number is not None
            else settings.CARRIER_ACCOUNT_NUMBER
        )
        self.base_url = (base_url or settings.CARRIER_BASE_URL).rstrip("/")
        self.timeout = timeout or settings.EXTERNAL_TIMEOUT_SECONDS
        self._transport = transport
        self._headers = {
            "Content-Type": "application/json",
            "DHL-API-Key": self.api_key,
        }

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    def _accounts(self) -> list:
        return [{"typeCode": "shipper", "number": self.account_number}]

    async def _request(
        self,
        method: str,
        endpoint: str,
        params: dict = None,
        json_body: dict = None,
    ) -> Result[dict]:
        url = f"{self.base_url}{endpoint}"
        params = dict(params or {})
        params.setdefault("accountNumber", self.account_number)

        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport
            ) as client:
                response = await client.request(
                    method=method,
                    url=url,
                    headers=self._headers,
                    params=params,
                    json=json_body,
                )
        except httpx.TimeoutException:
            logger.warning("Carrier request timed out: %s %s", method, endpoint)
            return Err(
                ExternalServiceError(
                    f"Carrier request timed out after {self.timeout}s",
                    provider=PROVIDER,
                )
            )
        except httpx.HTTPError as exc:
            logger.warning("Carrier transport error on %s: %s", endpoint, exc)
            return Err(
                ExternalServiceError(f"Carrier unreachable: {exc}", provider=PROVIDER)
            )

        try:
            data = response.json() if response.content else {}
        except ValueError:
            if response.is_success:
                return Err(
                    ExternalServiceError(
                        "Malformed carrier response", provider=PROVIDER
                    )
                )
            data = {}

        if response.status_code >= 400:
            message = extract_error_message(
                data, f"Carrier error (HTTP {response.status_code})"
            )
            logger.error(
                "Carrier API error: %s - %s",
                response.status_code,
                message,
                extra={"extra_fields": {"endpoint": endpoint}},
            )
            return Err(
                ExternalServiceError(
                    message,
                    provider=PROVIDER,
                    status_code=response.status_code,
                    response_data=data if isinstance(data, dict) else {},
                )
            )

        if not isinstance(data, dict):
            return Err(
                ExternalServiceError("Malformed carrier response", provider=PROVIDER)
            )
        return Ok(data)

    # =========================================================================
    # Shipments
    # =========================================================================

    async def create_shipment(
        self,
        order_ref: str,
        sender: Address,
        recipient: Address,
        packages: List[Package],
        service_type: str = "EXPRESS",
    ) -> Result[ShipmentCreated]:
        declared_value = sum((Decimal(p.declared_value) for p in packages), Decimal("0"))
        package_payloads = []
        for index, package in enumerate(packages, start=1):
            item = package.payload()
            item["customerReferences"] = [
                {"value": f"{order_ref}-{index}", "typeCode": "CU"}
            ]
            package_payloads.append(item)

        payload = {
            "plannedShippingDateAndTime": utc_now().isoformat(),
            "pickup": {"isRequested": False},
            "productCode": service_type,
            "localProductCode": service_type,
            "getRateEstimates": False,
            "accounts": self._accounts(),
            "customerDetails": {
                "shipperDetails": {
                    "postalAddress": sender.postal(),
                    "contactInformation": sender.contact(),
                },
                "receiverDetails": {
                    "postalAddress": recipient.postal(),
                    "contactInformation": recipient.contact(),
                },
            },
            "content": {
                "packages": package_payloads,
                "isCustomsDeclarable": is_customs_declarable(
                    sender.country_code, recipient.country_code
                ),
                "declaredValue": float(declared_value),
                "declaredValueCurrency": packages[0].currency if packages else "EUR",
                "description": "Clothing and Fashion Items",
                "incoterms": "DAP",
                "unitOfMeasurement": "metric",
            },
            "documentImages": [
                {
                    "typeCode": "label",
                    "imageFormat": "PDF",
                    "hideAccountNumber": False,
                    "numberOfCopies": 1,
                }
            ],
        }

        result = await self._request("POST", "/shipments", json_body=payload)
        if not result.ok:
            return result

        data = result.value
        shipment_id = data.get("shipmentTrackingNumber")
        if not shipment_id:
            return Err(
                ExternalServiceError(
                    "Carrier response missing shipment number", provider=PROVIDER
                )
            )
        documents = data.get("documents") or []
        logger.info(
            "Carrier shipment created for %s: %s",
            order_ref,
            shipment_id,
        )
        return Ok(
            ShipmentCreated(
                shipment_id=shipment_id,
                tracking_number=data.get("trackingNumber") or shipment_id,
                label=documents[0] if documents else None,
                estimated_delivery=data.get("estimatedDeliveryDate"),
            )
        )

    async def track_shipment(self, tracking_number: str) -> Result[TrackingInfo]:
        result = await self._request(
            "GET", "/track/shipments", params={"trackingNumber": tracking_number}
        )
        if not result.ok:
            return result

        shipments = result.value.get("shipments") or []
        if not shipments:
            return Err(
                ExternalServiceError(
                    "Shipment not found", provider=PROVIDER, status_code=404
                )
            )

        shipment = shipments[0]
        status = shipment.get("status") or {}
        events = []
        for event in shipment.get("events") or []:
            address = (event.get("location") or {}).get("address") or {}
            events.append(
                TrackingEvent(
                    timestamp=event.get("timestamp"),
                    status=event.get("statusCode"),
                    description=event.get("description"),
                    city=address.get("cityName"),
                    country=address.get("countryCode"),
                )
            )
        events.sort(key=_event_sort_key, reverse=True)

        return Ok(
            TrackingInfo(
                tracking_number=tracking_number,
                status=map_status(status.get("statusCode")),
                status_description=status.get("description"),
                events=events,
                origin=shipment.get("origin"),
                destination=shipment.get("destination"),
                estimated_delivery=shipment.get("estimatedDeliveryDate"),
            )
        )

    async def cancel_shipment(
        self, shipment_id: str, reason: str = "Customer request"
    ) -> Result[None]:
        result = await self._request(
            "DELETE",
            f"/shipments/{shipment_id}",
            params={
                "plannedShippingDateAndTime": utc_now().isoformat(),
                "reason": reason,
            },
        )
        if not result.ok:
            return result
        logger.info("Carrier shipment %s cancelled: %s", shipment_id, reason)
        return Ok(None)

    # =========================================================================
    # Quotes and lookups
    # =========================================================================

    async def get_rates(
        self, origin: Address, destination: Address, packages: List[Package]
    ) -> Result[List[CarrierRate]]:
        payload = {
            "customerDetails": {
                "shipperDetails": {"postalAddress": origin.postal()},
                "receiverDetails": {"postalAddress": destination.postal()},
            },
            "accounts": self._accounts(),
            "plannedShippingDateAndTime": utc_now().isoformat(),
            "unitOfMeasurement": "metric",
            "isCustomsDeclarable": is_customs_declarable(
                origin.country_code, destination.country_code
            ),
            "monetaryAmount": float(
                sum((Decimal(p.declared_value) for p in packages), Decimal("0"))
            ),
            "monetaryAmountCurrency": packages[0].currency if packages else "EUR",
            "requestAllValueAddedServices": False,
            "packages": [p.payload() for p in packages],
        }

        result = await self._request("POST", "/rates", json_body=payload)
        if not result.ok:
            return result

        rates = []
        for product in result.value.get("products") or []:
            prices = product.get("totalPrice") or [{}]
            capabilities = product.get("deliveryCapabilities") or {}
            rates.append(
                CarrierRate(
                    service_type=product.get("productCode", ""),
                    service_name=product.get("productName"),
                    total_price=_to_decimal(prices[0].get("price")),
                    currency=prices[0].get("priceCurrency"),
                    estimated_delivery=capabilities.get(
                        "estimatedDeliveryDateAndTime"
                    ),
                    transit_days=capabilities.get("totalTransitDays"),
                )
            )
        return Ok(rates)

    async def get_available_services(
        self, origin: Address, destination: Address
    ) -> Result[List[CarrierService]]:
        result = await self._request(
            "GET",
            "/products",
            params={
                "originCountryCode": origin.country_code.upper(),
                "originCityName": origin.city,
                "originPostalCode": origin.postal_code,
                "destinationCountryCode": destination.country_code.upper(),
                "destinationCityName": destination.city,
                "destinationPostalCode": destination.postal_code,
                "plannedShippingDate": date.today().isoformat(),
            },
        )
        if not result.ok:
            return result

        return Ok(
            [
                CarrierService(
                    code=product.get("productCode", ""),
                    name=product.get("productName"),
                    description=product.get("localProductName"),
                    estimated_days=product.get("totalTransitDays"),
                )
                for product in result.value.get("products") or []
            ]
        )

    async def validate_address(self, address: Address) -> Result[AddressValidation]:
        result = await self._request(
            "POST",
            "/address-validate",
            json_body={"type": "delivery", "address": address.postal()},
        )
        if not result.ok:
            return result

        body = result.value.get("address") or {}
        return Ok(
            AddressValidation(
                is_valid=bool(body.get("isValid", False)),
                suggested_address=body.get("suggestedAddress"),
                warnings=list(result.value.get("warnings") or []),
            )
        )


def default_sender() -> Address:
    """The warehouse address outbound parcels ship from."""
    settings = get_settings()
    return Address(
        country_code=settings.SENDER_COUNTRY_CODE,
        city=settings.SENDER_CITY,
        postal_code=settings.SENDER_POSTAL_CODE,
        address_line1=settings.SENDER_ADDRESS_LINE1,
        company_name=settings.SENDER_COMPANY_NAME,
        contact_name=settings.SENDER_CONTACT_NAME,
        email=settings.SENDER_EMAIL,
        phone=settings.SENDER_PHONE,
    )


def get_carrier_adapter() -> CarrierAdapter:
    """Get a CarrierAdapter instance."""
    return CarrierAdapter()
