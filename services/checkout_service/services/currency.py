"""Exchange rates, conversion, tax and price formatting.

Rates resolve through four tiers, first hit wins:

1. in-process memory (``RATE_MEMORY_TTL_SECONDS``, default 1h)
2. ``exchange_rates`` table (``RATE_STORE_TTL_SECONDS``, default 24h)
3. the live exchange-rate API (persisted and cached on success)
4. a static fallback table

Nothing below tier 4 is allowed to raise out of ``RateCache.get_rates``;
failures are logged and the next tier is tried.
"""

import asyncio
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from functools import lru_cache
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from libs.common.config import get_settings
from libs.common.currency import quantize, to_decimal
from libs.common.datetime_utils import as_utc, is_fresh, utc_now
from libs.common.errors import UnsupportedCurrencyError
from libs.common.logging import get_logger
from libs.db.config import AsyncSessionLocal
from services.checkout_service.clients.rates_api import ExchangeRateClient
from services.checkout_service.models import (
    BASE_CURRENCY,
    SUPPORTED_CURRENCIES,
    ExchangeRate,
)
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)

FALLBACK_RATES: Dict[str, Decimal] = {
    "EUR": Decimal("1.0"),
    "BRL": Decimal("5.50"),
    "NAD": Decimal("20.00"),
}

CURRENCY_INFO = {
    "EUR": {
        "code": "EUR",
        "name": "Euro",
        "symbol": "€",
        "decimals": 2,
        "countries": [
            "Germany",
            "France",
            "Spain",
            "Italy",
            "Portugal",
            "Netherlands",
            "Belgium",
            "Austria",
        ],
    },
    "BRL": {
        "code": "BRL",
        "name": "Brazilian Real",
        "symbol": "R$",
        "decimals": 2,
        "countries": ["Brazil"],
    },
    "NAD": {
        "code": "NAD",
        "name": "Namibian Dollar",
        "symbol": "N$",
        "decimals": 2,
        "countries": ["Namibia"],
    },
}

# Standard VAT / sales tax by destination country.
TAX_RATES: Dict[str, Decimal] = {
    "DE": Decimal("0.19"),
    "FR": Decimal("0.20"),
    "ES": Decimal("0.21"),
    "IT": Decimal("0.22"),
    "PT": Decimal("0.23"),
    "NL": Decimal("0.21"),
    "BE": Decimal("0.21"),
    "AT": Decimal("0.20"),
    "BR": Decimal("0.17"),
    "NA": Decimal("0.15"),
}


def ensure_supported(currency: str) -> str:
    code = (currency or "").upper()
    if code not in SUPPORTED_CURRENCIES:
        raise UnsupportedCurrencyError(currency)
    return code


def fallback_rates(base: str) -> Dict[str, Decimal]:
    """Static table re-based so that ``rates[base] == 1``."""
    base_rate = FALLBACK_RATES[base]
    return {code: rate / base_rate for code, rate in FALLBACK_RATES.items()}


@dataclass
class RateSnapshot:
    base: str
    rates: Dict[str, Decimal]
    source: str  # cache | database | api | fallback
    last_updated: datetime


@dataclass
class Conversion:
    original_amount: Decimal
    converted_amount: Decimal
    rate: Decimal
    from_currency: str
    to_currency: str
    last_updated: Optional[datetime] = None


@dataclass
class TaxQuote:
    tax_rate: Decimal
    tax_amount: Decimal
    total_amount: Decimal
    currency: str
    country_code: str


class RateCache:
    """Layered exchange-rate lookup.

    The memory layer is a plain dict guarded by a lock that is held only for a
    single read or write; concurrent refreshes of the same base are
    last-writer-wins.
    """

    def __init__(
        self,
        client: Optional[ExchangeRateClient] = None,
        session_factory: Callable[[], AsyncSession] = AsyncSessionLocal,
        memory_ttl_seconds: Optional[int] = None,
        store_ttl_seconds: Optional[int] = None,
    ):
        settings = get_settings()
        self.client = client or ExchangeRateClient()
        self.session_factory = session_factory
        self.memory_ttl = timedelta(
            seconds=memory_ttl_seconds
            if memory_ttl_seconds is not None
            else settings.RATE_MEMORY_TTL_SECONDS
        )
        self.store_ttl = timedelta(
            seconds=store_ttl_seconds
            if store_ttl_seconds is not None
            else settings.RATE_STORE_TTL_SECONDS
        )
        # base -> (snapshot, cached_at); ``last_updated`` stays the age of the rates
        self._entries: Dict[str, Tuple[RateSnapshot, datetime]] = {}
        self._lock = threading.Lock()

    # ── memory tier ─────────────────────────────────────────────────────────

    def _memory_get(self, base: str) -> Optional[RateSnapshot]:
        with self._lock:
            entry = self._entries.get(base)
        if entry is None:
            return None
        snapshot, cached_at = entry
        if is_fresh(cached_at, self.memory_ttl) and is_fresh(
            snapshot.last_updated, self.store_ttl
        ):
            return snapshot
        return None

    def _memory_put(self, snapshot: RateSnapshot) -> None:
        with self._lock:
            self._entries[snapshot.base] = (snapshot, utc_now())

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    # ── store tier ──────────────────────────────────────────────────────────

    async def _load_stored(self, base: str) -> Optional[RateSnapshot]:
        try:
            async with self.session_factory() as db:
                result = await db.execute(
                    select(ExchangeRate).where(ExchangeRate.from_currency == base)
                )
                rows = list(result.scalars().all())
        except SQLAlchemyError:
            logger.warning("Could not read stored rates for %s", base, exc_info=True)
            return None

        if not rows:
            return None

        last_updated = max(as_utc(row.updated_at) for row in rows)
        if not is_fresh(last_updated, self.store_ttl):
            return None

        rates = fallback_rates(base)
        rates.update({row.to_currency: Decimal(row.rate) for row in rows})
        rates[base] = Decimal("1")
        return RateSnapshot(
            base=base, rates=rates, source="database", last_updated=last_updated
        )

    async def _store(self, base: str, rates: Dict[str, Decimal]) -> None:
        now = utc_now()
        try:
            async with self.session_factory() as db:
                result = await db.execute(
                    select(ExchangeRate).where(ExchangeRate.from_currency == base)
                )
                existing = {row.to_currency: row for row in result.scalars().all()}
                for code, rate in rates.items():
                    row = existing.get(code)
                    if row is None:
                        db.add(
                            ExchangeRate(
                                from_currency=base,
                                to_currency=code,
                                rate=rate,
                                updated_at=now,
                            )
                        )
                    else:
                        row.rate = rate
                        row.updated_at = now
                await db.commit()
        except SQLAlchemyError:
            logger.warning("Could not persist rates for %s", base, exc_info=True)
            return
        logger.info(
            "Exchange rates stored for %s",
            base,
            extra={"extra_fields": {"rates": {k: str(v) for k, v in rates.items()}}},
        )

    # ── api tier ────────────────────────────────────────────────────────────

    async def _fetch_live(self, base: str) -> Optional[RateSnapshot]:
        try:
            live = await self.client.fetch_latest(base)
        except Exception:
            logger.warning("Exchange rate API fetch failed for %s", base, exc_info=True)
            return None

        defaults = fallback_rates(base)
        rates = {code: live.get(code) or defaults[code] for code in SUPPORTED_CURRENCIES}
        rates[base] = Decimal("1")
        return RateSnapshot(base=base, rates=rates, source="api", last_updated=utc_now())

    # ── public api ──────────────────────────────────────────────────────────

    async def get_rates(self, base: str = BASE_CURRENCY) -> RateSnapshot:
        base = ensure_supported(base)

        cached = self._memory_get(base)
        if cached:
            return RateSnapshot(
                base=base,
                rates=dict(cached.rates),
                source="cache",
                last_updated=cached.last_updated,
            )

        stored = await self._load_stored(base)
        if stored:
            self._memory_put(stored)
            return stored

        live = await self.refresh(base)
        if live:
            return live

        logger.warning("Using fallback exchange rates for %s", base)
        return RateSnapshot(
            base=base,
            rates=fallback_rates(base),
            source="fallback",
            last_updated=utc_now(),
        )

    async def refresh(self, base: str) -> Optional[RateSnapshot]:
        """Force a live fetch; persist and cache on success, None on failure."""
        base = ensure_supported(base)
        live = await self._fetch_live(base)
        if live is None:
            return None
        await self._store(base, live.rates)
        self._memory_put(live)
        return live


class CurrencyConverter:
    def __init__(self, cache: RateCache):
        self.cache = cache

    async def convert(self, amount, from_currency: str, to_currency: str) -> Conversion:
        source = ensure_supported(from_currency)
        target = ensure_supported(to_currency)
        amount = to_decimal(amount)

        if source == target:
            return Conversion(
                original_amount=amount,
                converted_amount=amount,
                rate=Decimal("1"),
                from_currency=source,
                to_currency=target,
            )

        snapshot = await self.cache.get_rates(source)
        rate = snapshot.rates[target]
        return Conversion(
            original_amount=amount,
            converted_amount=quantize(amount * rate),
            rate=rate,
            from_currency=source,
            to_currency=target,
            last_updated=snapshot.last_updated,
        )

    def calculate_tax(self, amount, country_code: str, currency: str) -> TaxQuote:
        currency = ensure_supported(currency)
        country = (country_code or "").upper()
        rate = TAX_RATES.get(country, Decimal("0"))
        amount = to_decimal(amount)
        tax_amount = quantize(amount * rate)
        return TaxQuote(
            tax_rate=rate,
            tax_amount=tax_amount,
            total_amount=quantize(amount + tax_amount),
            currency=currency,
            country_code=country,
        )

    def format_price(self, amount, currency: str) -> str:
        info = CURRENCY_INFO.get((currency or "").upper())
        if info is None:
            return f"{currency} {quantize(amount)}"
        return f"{info['symbol']} {quantize(amount, info['decimals'])}"

    @staticmethod
    def currency_info(code: str) -> Optional[dict]:
        return CURRENCY_INFO.get((code or "").upper())

    @staticmethod
    def supported_currencies() -> List[dict]:
        return [
            {key: CURRENCY_INFO[code][key] for key in ("code", "name", "symbol", "decimals")}
            for code in SUPPORTED_CURRENCIES
        ]

    async def bulk_convert(
        self,
        prices: Iterable,
        target_currency: str,
        source_currency: str = BASE_CURRENCY,
    ) -> List[dict]:
        """Convert many catalog prices with a single rate lookup."""
        source = ensure_supported(source_currency)
        target = ensure_supported(target_currency)
        if source == target:
            rate = Decimal("1")
        else:
            rate = (await self.cache.get_rates(source)).rates[target]

        return [
            {
                "original": to_decimal(price),
                "converted": quantize(to_decimal(price) * rate),
                "currency": target,
                "rate": rate,
            }
            for price in prices
        ]

    @staticmethod
    async def historical_rates(
        db: AsyncSession, from_currency: str, to_currency: str, days: int = 30
    ) -> List[ExchangeRate]:
        source = ensure_supported(from_currency)
        target = ensure_supported(to_currency)
        cutoff = utc_now() - timedelta(days=days)
        result = await db.execute(
            select(ExchangeRate)
            .where(
                ExchangeRate.from_currency == source,
                ExchangeRate.to_currency == target,
            )
            .order_by(ExchangeRate.updated_at.desc())
        )
        return [
            row for row in result.scalars().all() if as_utc(row.updated_at) >= cutoff
        ]


class RateRefresher:
    """Background task that re-fetches every supported base periodically."""

    def __init__(
        self,
        cache: RateCache,
        interval_seconds: Optional[float] = None,
        initial_delay_seconds: Optional[float] = None,
    ):
        settings = get_settings()
        self.cache = cache
        self.interval = (
            interval_seconds
            if interval_seconds is not None
            else settings.RATE_REFRESH_INTERVAL_SECONDS
        )
        self.initial_delay = (
            initial_delay_seconds
            if initial_delay_seconds is not None
            else settings.RATE_REFRESH_INITIAL_DELAY_SECONDS
        )
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="rate-refresher")
        logger.info(
            "Rate refresher started (every %ss, first run in %ss)",
            self.interval,
            self.initial_delay,
        )

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Rate refresher stopped")

    async def refresh_all(self) -> int:
        refreshed = 0
        for base in SUPPORTED_CURRENCIES:
            try:
                if await self.cache.refresh(base):
                    refreshed += 1
            except Exception:
                logger.exception("Exchange rate refresh failed for %s", base)
        logger.info(
            "Exchange rate refresh completed: %d/%d bases",
            refreshed,
            len(SUPPORTED_CURRENCIES),
        )
        return refreshed

    async def _run(self) -> None:
        await asyncio.sleep(self.initial_delay)
        while True:
            await self.refresh_all()
            await asyncio.sleep(self.interval)


@lru_cache
def get_rate_cache() -> RateCache:
    return RateCache()


def get_currency_converter() -> CurrencyConverter:
    """FastAPI dependency for the shared converter."""
    return CurrencyConverter(get_rate_cache())
