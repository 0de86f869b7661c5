"""Client for the public exchange-rate API (``GET /latest/{base}``)."""

from decimal import Decimal, InvalidOperation
from typing import Dict, Optional

import httpx
from libs.common.config import get_settings
from libs.common.errors import ExternalServiceError
from libs.common.logging import get_logger

logger = get_logger(__name__)


class ExchangeRateClient:
    def __init__(
        self,
        base_url: str = None,
        api_key: str = None,
        timeout: float = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        settings = get_settings()
        self.base_url = (base_url or settings.EXCHANGE_RATE_API_URL).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.EXCHANGE_RATE_API_KEY
        self.timeout = timeout or settings.EXTERNAL_TIMEOUT_SECONDS
        self._transport = transport

    async def fetch_latest(self, base: str) -> Dict[str, Decimal]:
        """
        Fetch the latest rates for ``base``.

        Returns:
            Mapping of currency code -> rate (1 base = rate units).

        Raises:
            ExternalServiceError: on timeout, HTTP error or a body without rates.
        """
        headers = {}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport
            ) as client:
                response = await client.get(
                    f"{self.base_url}/{base.upper()}", headers=headers
                )
                response.raise_for_status()
                body = response.json()
        except httpx.TimeoutException as exc:
            raise ExternalServiceError(
                f"Exchange rate API timed out for {base}", provider="exchange_rates"
            ) from exc
        except httpx.HTTPStatusError as exc:
            raise ExternalServiceError(
                f"Exchange rate API returned {exc.response.status_code}",
                provider="exchange_rates",
                status_code=exc.response.status_code,
            ) from exc
        except (httpx.HTTPError, ValueError) as exc:
            raise ExternalServiceError(
                f"Exchange rate API request failed: {exc}", provider="exchange_rates"
            ) from exc

        raw_rates = body.get("rates") if isinstance(body, dict) else None
        if not isinstance(raw_rates, dict) or not raw_rates:
            raise ExternalServiceError(
                "Exchange rate API returned no rates", provider="exchange_rates"
            )

        rates = {}
        for code, value in raw_rates.items():
            try:
                rates[code.upper()] = Decimal(str(value))
            except (InvalidOperation, AttributeError):
                logger.debug("Skipping unparseable rate %s=%r", code, value)
        return rates
