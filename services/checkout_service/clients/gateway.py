"""
Payment gateway API client for card payments.

Provides async methods for:
- Creating customers
- Creating, retrieving and confirming payment intents
- Listing and detaching saved payment methods
- Verifying webhook signatures (local HMAC, no network call)
"""

import hashlib
import hmac
import json
import time
from dataclasses import dataclass, field
from typing import List, Optional

import httpx
from libs.common.config import get_settings
from libs.common.errors import ExternalServiceError, WebhookSignatureError
from libs.common.logging import get_logger

logger = get_logger(__name__)


@dataclass
class GatewayCustomer:
    id: str
    email: Optional[str] = None


@dataclass
class GatewayIntent:
    """A payment intent as reported by the gateway (amount in minor units)."""

    id: str
    status: str
    amount: int
    currency: str
    client_secret: Optional[str] = None
    customer: Optional[str] = None
    metadata: dict = field(default_factory=dict)
    last_payment_error: Optional[str] = None

    @classmethod
    def from_payload(cls, data: dict) -> "GatewayIntent":
        error = data.get("last_payment_error") or {}
        return cls(
            id=data.get("id", ""),
            status=data.get("status", ""),
            amount=int(data.get("amount") or 0),
            currency=(data.get("currency") or "").upper(),
            client_secret=data.get("client_secret"),
            customer=data.get("customer"),
            metadata=data.get("metadata") or {},
            last_payment_error=error.get("message") if error else None,
        )


@dataclass
class GatewayPaymentMethod:
    id: str
    type: str
    customer: Optional[str] = None
    brand: Optional[str] = None
    last4: Optional[str] = None
    exp_month: Optional[int] = None
    exp_year: Optional[int] = None
    created: Optional[int] = None

    @classmethod
    def from_payload(cls, data: dict) -> "GatewayPaymentMethod":
        card = data.get("card") or {}
        return cls(
            id=data.get("id", ""),
            type=data.get("type", "card"),
            customer=data.get("customer"),
            brand=card.get("brand"),
            last4=card.get("last4"),
            exp_month=card.get("exp_month"),
            exp_year=card.get("exp_year"),
            created=data.get("created"),
        )


@dataclass
class WebhookEvent:
    id: str
    type: str
    data_object: dict
    created: Optional[int] = None


class GatewayError(ExternalServiceError):
    """Raised when the gateway rejects a request or cannot be reached."""

    def __init__(
        self, message: str, status_code: int = None, response_data: dict = None
    ):
        super().__init__(
            message,
            provider="payment_gateway",
            status_code=status_code,
            response_data=response_data,
        )


def _flatten_form(data: dict, prefix: str = "") -> dict:
    """Encode nested dicts the way the gateway's form API expects.

    {"metadata": {"orderId": "x"}} -> {"metadata[orderId]": "x"}
    """
    flat = {}
    for key, value in data.items():
        name = f"{prefix}[{key}]" if prefix else key
        if value is None:
            continue
        if isinstance(value, dict):
            flat.update(_flatten_form(value, name))
        elif isinstance(value, bool):
            flat[name] = "true" if value else "false"
        else:
            flat[name] = str(value)
    return flat


def compute_signature(secret: str, timestamp: int, payload: bytes) -> str:
    signed = f"{timestamp}.".encode("utf-8") + payload
    return hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()


def _parse_signature_header(header: str) -> tuple[Optional[int], list[str]]:
    timestamp = None
    signatures = []
    for part in header.split(","):
        key, _, value = part.strip().partition("=")
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError:
                return None, []
        elif key == "v1" and value:
            signatures.append(value)
    return timestamp, signatures


def verify_webhook_signature(
    payload: bytes,
    header: Optional[str],
    secret: str,
    tolerance_seconds: int = 300,
    now: Optional[float] = None,
) -> None:
    """Check ``t=<ts>,v1=<hex>`` against HMAC-SHA256(secret, "<ts>.<body>").

    Raises:
        WebhookSignatureError: missing/garbled header, stale timestamp or
            no matching signature.
    """
    if not secret:
        raise WebhookSignatureError("Webhook secret is not configured")
    if not header:
        raise WebhookSignatureError("Missing signature header")

    timestamp, signatures = _parse_signature_header(header)
    if timestamp is None or not signatures:
        raise WebhookSignatureError("Malformed signature header")

    now = time.time() if now is None else now
    if tolerance_seconds and abs(now - timestamp) > tolerance_seconds:
        raise WebhookSignatureError("Signature timestamp outside tolerance")

    expected = compute_signature(secret, timestamp, payload)
    if not any(hmac.compare_digest(expected, sig) for sig in signatures):
        raise WebhookSignatureError("No matching signature")


class PaymentGatewayClient:
    """Async client for the card gateway REST API."""

    def __init__(
        self,
        secret_key: str = None,
        webhook_secret: str = None,
        base_url: str = None,
        timeout: float = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        settings = get_settings()
        self.secret_key = secret_key if secret_key is not None else settings.GATEWAY_SECRET_KEY
        self.webhook_secret = (
            webhook_secret
            if webhook_secret is not None
            else settings.GATEWAY_WEBHOOK_SECRET
        )
        self.base_url = (base_url or settings.GATEWAY_API_BASE_URL).rstrip("/")
        self.timeout = timeout or settings.EXTERNAL_TIMEOUT_SECONDS
        self.webhook_tolerance = settings.GATEWAY_WEBHOOK_TOLERANCE_SECONDS
        self._transport = transport
        self._headers = {"Authorization": f"Bearer {self.secret_key}"}

    async def _request(
        self,
        method: str,
        endpoint: str,
        params: dict = None,
        form: dict = None,
    ) -> dict:
        """Make an async request to the gateway API."""
        url = f"{self.base_url}{endpoint}"

        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport
            ) as client:
                response = await client.request(
                    method=method,
                    url=url,
                    headers=self._headers,
                    params=params,
                    data=_flatten_form(form) if form else None,
                )
        except httpx.TimeoutException as exc:
            raise GatewayError(f"Gateway timed out: {endpoint}") from exc
        except httpx.HTTPError as exc:
            raise GatewayError(f"Gateway unreachable: {exc}") from exc

        try:
            data = response.json()
        except ValueError:
            data = {}

        if not response.is_success:
            error = data.get("error") or {}
            logger.error(
                "Gateway API error: %s - %s", response.status_code, error or data
            )
            raise GatewayError(
                message=error.get("message", "Unknown gateway error"),
                status_code=response.status_code,
                response_data=data,
            )

        return data

    # =========================================================================
    # Customers
    # =========================================================================

    async def create_customer(
        self, email: str, name: str, metadata: dict = None
    ) -> GatewayCustomer:
        data = await self._request(
            "POST",
            "/customers",
            form={"email": email, "name": name, "metadata": metadata or {}},
        )
        return GatewayCustomer(id=data.get("id", ""), email=data.get("email"))

    # =========================================================================
    # Payment intents
    # =========================================================================

    async def create_payment_intent(
        self,
        amount_minor: int,
        currency: str,
        customer_id: str,
        metadata: dict,
    ) -> GatewayIntent:
        """
        Create a card payment intent.

        Args:
            amount_minor: Amount in minor units (cents)
            currency: ISO currency code
            customer_id: Gateway customer to attach the intent to
            metadata: Free-form tags (we always send userId and orderId)
        """
        data = await self._request(
            "POST",
            "/payment_intents",
            form={
                "amount": amount_minor,
                "currency": currency.lower(),
                "customer": customer_id,
                "automatic_payment_methods": {"enabled": True},
                "setup_future_usage": "on_session",
                "metadata": metadata,
            },
        )
        return GatewayIntent.from_payload(data)

    async def retrieve_payment_intent(self, intent_id: str) -> GatewayIntent:
        data = await self._request("GET", f"/payment_intents/{intent_id}")
        return GatewayIntent.from_payload(data)

    async def confirm_payment_intent(
        self, intent_id: str, payment_method_id: str, return_url: str
    ) -> GatewayIntent:
        data = await self._request(
            "POST",
            f"/payment_intents/{intent_id}/confirm",
            form={"payment_method": payment_method_id, "return_url": return_url},
        )
        return GatewayIntent.from_payload(data)

    # =========================================================================
    # Payment methods
    # =========================================================================

    async def list_payment_methods(
        self, customer_id: str, method_type: str = "card"
    ) -> List[GatewayPaymentMethod]:
        data = await self._request(
            "GET",
            "/payment_methods",
            params={"customer": customer_id, "type": method_type},
        )
        return [GatewayPaymentMethod.from_payload(pm) for pm in data.get("data", [])]

    async def retrieve_payment_method(self, method_id: str) -> GatewayPaymentMethod:
        data = await self._request("GET", f"/payment_methods/{method_id}")
        return GatewayPaymentMethod.from_payload(data)

    async def detach_payment_method(self, method_id: str) -> GatewayPaymentMethod:
        data = await self._request("POST", f"/payment_methods/{method_id}/detach")
        return GatewayPaymentMethod.from_payload(data)

    # =========================================================================
    # Webhooks
    # =========================================================================

    def construct_event(self, payload: bytes, signature_header: str) -> WebhookEvent:
        """Verify the signature over the raw bytes and parse the event."""
        verify_webhook_signature(
            payload,
            signature_header,
            self.webhook_secret,
            tolerance_seconds=self.webhook_tolerance,
        )
        try:
            body = json.loads(payload.decode("utf-8") or "{}")
        except (UnicodeDecodeError, ValueError) as exc:
            raise WebhookSignatureError("Webhook body is not valid JSON") from exc

        event_id = body.get("id")
        event_type = body.get("type")
        if not event_id or not event_type:
            raise WebhookSignatureError("Webhook body is missing id or type")

        return WebhookEvent(
            id=event_id,
            type=event_type,
            data_object=(body.get("data") or {}).get("object") or {},
            created=body.get("created"),
        )


def get_gateway_client() -> PaymentGatewayClient:
    """Get a PaymentGatewayClient instance."""
    return PaymentGatewayClient()
