"""Unit tests for the layered rate cache and the currency converter."""

from datetime import timedelta
from decimal import Decimal

import httpx
import pytest
from libs.common.datetime_utils import utc_now
from libs.common.errors import UnsupportedCurrencyError
from services.checkout_service.clients.rates_api import ExchangeRateClient
from services.checkout_service.models import ExchangeRate
from services.checkout_service.services.currency import (
    CurrencyConverter,
    RateCache,
    RateRefresher,
    fallback_rates,
)
from sqlalchemy import delete, select
from tests.factories import ExchangeRateFactory

LIVE_EUR = {"EUR": 1, "BRL": 6.0, "NAD": 19.5, "USD": 1.08}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class RatesApi:
    """MockTransport handler that counts calls and can be switched off."""

    def __init__(self, rates=None, fail=False):
        self.rates = rates or LIVE_EUR
        self.fail = fail
        self.calls = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        base = request.url.path.rsplit("/", 1)[-1]
        self.calls.append(base)
        if self.fail:
            return httpx.Response(503, json={"error": "unavailable"})
        pivot = Decimal(str(self.rates[base]))
        rebased = {
            code: float(Decimal(str(value)) / pivot)
            for code, value in self.rates.items()
        }
        return httpx.Response(200, json={"base": base, "rates": rebased})


def _cache(session_factory, api: RatesApi, **kwargs) -> RateCache:
    client = ExchangeRateClient(
        base_url="https://rates.test/latest",
        transport=httpx.MockTransport(api),
    )
    return RateCache(client=client, session_factory=session_factory, **kwargs)


# ---------------------------------------------------------------------------
# RateCache tiers
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.unit
async def test_live_rates_are_cached_in_memory(session_factory):
    api = RatesApi()
    cache = _cache(session_factory, api)

    first = await cache.get_rates("EUR")
    second = await cache.get_rates("EUR")

    assert first.source == "api"
    assert second.source == "cache"
    assert second.rates["BRL"] == Decimal("6.0")
    assert api.calls == ["EUR"]


@pytest.mark.asyncio
@pytest.mark.unit
async def test_fresh_stored_rates_win_over_api(db_session, session_factory):
    db_session.add_all(
        [
            ExchangeRateFactory.create(to_currency="BRL", rate=Decimal("5.9")),
            ExchangeRateFactory.create(to_currency="NAD", rate=Decimal("19.9")),
        ]
    )
    await db_session.commit()
    api = RatesApi()
    cache = _cache(session_factory, api)

    snapshot = await cache.get_rates("EUR")

    assert snapshot.source == "database"
    assert snapshot.rates["BRL"] == Decimal("5.9")
    assert snapshot.rates["EUR"] == Decimal("1")
    assert api.calls == []


@pytest.mark.asyncio
@pytest.mark.unit
async def test_hours_old_stored_rates_are_kept_in_memory(db_session, session_factory):
    stored_at = utc_now() - timedelta(hours=3)
    db_session.add(ExchangeRateFactory.create(rate=Decimal("5.9"), updated_at=stored_at))
    await db_session.commit()
    cache = _cache(session_factory, RatesApi(), memory_ttl_seconds=3600)

    first = await cache.get_rates("EUR")
    await db_session.execute(delete(ExchangeRate))
    await db_session.commit()
    second = await cache.get_rates("EUR")

    assert first.source == "database"
    assert second.source == "cache"
    assert second.rates["BRL"] == Decimal("5.9")
    # The reported age is still that of the stored rates
    assert abs(second.last_updated - stored_at) < timedelta(seconds=1)


@pytest.mark.asyncio
@pytest.mark.unit
async def test_stale_stored_rates_fall_through_to_api(db_session, session_factory):
    db_session.add(
        ExchangeRateFactory.create(
            rate=Decimal("4.0"), updated_at=utc_now() - timedelta(days=2)
        )
    )
    await db_session.commit()
    api = RatesApi()
    cache = _cache(session_factory, api)

    snapshot = await cache.get_rates("EUR")

    assert snapshot.source == "api"
    assert snapshot.rates["BRL"] == Decimal("6.0")


@pytest.mark.asyncio
@pytest.mark.unit
async def test_api_outage_uses_fallback_table(session_factory):
    cache = _cache(session_factory, RatesApi(fail=True))

    snapshot = await cache.get_rates("EUR")

    assert snapshot.source == "fallback"
    assert snapshot.rates == {
        "EUR": Decimal("1"),
        "BRL": Decimal("5.5"),
        "NAD": Decimal("20"),
    }


@pytest.mark.asyncio
@pytest.mark.unit
async def test_api_missing_currency_filled_from_fallback(session_factory):
    api = RatesApi(rates={"EUR": 1, "BRL": 6.0})
    cache = _cache(session_factory, api)

    snapshot = await cache.get_rates("EUR")

    assert snapshot.rates["NAD"] == Decimal("20")
    assert set(snapshot.rates) == {"EUR", "BRL", "NAD"}


@pytest.mark.asyncio
@pytest.mark.unit
async def test_refresh_persists_rates(db_session, session_factory):
    cache = _cache(session_factory, RatesApi())

    snapshot = await cache.refresh("EUR")

    assert snapshot is not None
    result = await db_session.execute(
        select(ExchangeRate).where(ExchangeRate.from_currency == "EUR")
    )
    stored = {row.to_currency: row.rate for row in result.scalars().all()}
    assert set(stored) == {"EUR", "BRL", "NAD"}
    assert stored["NAD"] == Decimal("19.5")


@pytest.mark.asyncio
@pytest.mark.unit
async def test_refresh_failure_returns_none(session_factory):
    cache = _cache(session_factory, RatesApi(fail=True))
    assert await cache.refresh("EUR") is None


@pytest.mark.unit
def test_fallback_rates_rebased():
    rates = fallback_rates("BRL")
    assert rates["BRL"] == Decimal("1")
    assert rates["NAD"] == Decimal("20.00") / Decimal("5.50")


# ---------------------------------------------------------------------------
# CurrencyConverter
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.unit
async def test_convert_uses_fallback_rate(session_factory):
    converter = CurrencyConverter(_cache(session_factory, RatesApi(fail=True)))

    conversion = await converter.convert(Decimal("10.00"), "EUR", "BRL")

    assert conversion.converted_amount == Decimal("55.00")
    assert conversion.rate == Decimal("5.50")


@pytest.mark.asyncio
@pytest.mark.unit
@pytest.mark.parametrize(
    "source, target",
    [
        ("EUR", "BRL"),
        ("BRL", "EUR"),
        ("EUR", "NAD"),
        ("NAD", "EUR"),
        ("BRL", "NAD"),
        ("NAD", "BRL"),
    ],
)
@pytest.mark.parametrize("amount", [Decimal("0.03"), Decimal("49.99"), Decimal("1234.56")])
async def test_convert_round_trip(session_factory, source, target, amount):
    converter = CurrencyConverter(_cache(session_factory, RatesApi()))

    there = await converter.convert(amount, source, target)
    back = await converter.convert(there.converted_amount, target, source)

    # Rounding the intermediate amount to a cent costs up to half a cent of
    # ``target``, which is 0.005 / rate of ``source`` on the way back.
    tolerance = max(Decimal("0.02"), Decimal("0.01") / there.rate)
    assert abs(back.converted_amount - amount) <= tolerance


@pytest.mark.asyncio
@pytest.mark.unit
async def test_convert_same_currency_skips_lookup(session_factory):
    api = RatesApi()
    converter = CurrencyConverter(_cache(session_factory, api))

    conversion = await converter.convert(Decimal("12.34"), "eur", "EUR")

    assert conversion.rate == Decimal("1")
    assert conversion.converted_amount == Decimal("12.34")
    assert api.calls == []


@pytest.mark.asyncio
@pytest.mark.unit
async def test_convert_unsupported_currency(session_factory):
    converter = CurrencyConverter(_cache(session_factory, RatesApi()))

    with pytest.raises(UnsupportedCurrencyError):
        await converter.convert(Decimal("1"), "EUR", "USD")


@pytest.mark.asyncio
@pytest.mark.unit
async def test_bulk_convert_single_lookup(session_factory):
    api = RatesApi()
    converter = CurrencyConverter(_cache(session_factory, api))

    results = await converter.bulk_convert(["10", "20.50"], "BRL")

    assert [r["converted"] for r in results] == [Decimal("60.00"), Decimal("123.00")]
    assert api.calls == ["EUR"]


@pytest.mark.unit
def test_calculate_tax_by_country():
    converter = CurrencyConverter(_cache(None, RatesApi()))

    quote = converter.calculate_tax(Decimal("100.00"), "de", "EUR")
    untaxed = converter.calculate_tax(Decimal("100.00"), "US", "EUR")

    assert quote.tax_rate == Decimal("0.19")
    assert quote.tax_amount == Decimal("19.00")
    assert quote.total_amount == Decimal("119.00")
    assert untaxed.tax_amount == Decimal("0.00")


@pytest.mark.unit
def test_format_price():
    converter = CurrencyConverter(_cache(None, RatesApi()))

    assert converter.format_price(Decimal("12.5"), "EUR") == "€ 12.50"
    assert converter.format_price(Decimal("99"), "brl") == "R$ 99.00"
    assert converter.format_price(Decimal("1"), "XYZ") == "XYZ 1.00"


@pytest.mark.asyncio
@pytest.mark.unit
async def test_historical_rates_window(db_session):
    db_session.add_all(
        [
            ExchangeRateFactory.create(),
            ExchangeRateFactory.create(
                to_currency="NAD", updated_at=utc_now() - timedelta(days=45)
            ),
        ]
    )
    await db_session.commit()

    recent = await CurrencyConverter.historical_rates(db_session, "EUR", "BRL")
    old = await CurrencyConverter.historical_rates(db_session, "EUR", "NAD")

    assert len(recent) == 1
    assert old == []


# ---------------------------------------------------------------------------
# RateRefresher
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.unit
async def test_refresh_all_fetches_every_base(session_factory):
    api = RatesApi()
    refresher = RateRefresher(
        _cache(session_factory, api), interval_seconds=3600, initial_delay_seconds=0
    )

    refreshed = await refresher.refresh_all()

    assert refreshed == 3
    assert sorted(api.calls) == ["BRL", "EUR", "NAD"]


@pytest.mark.asyncio
@pytest.mark.unit
async def test_refresher_start_and_stop(session_factory):
    refresher = RateRefresher(
        _cache(session_factory, RatesApi()),
        interval_seconds=3600,
        initial_delay_seconds=3600,
    )

    refresher.start()
    assert refresher.running

    await refresher.stop()
    assert not refresher.running
