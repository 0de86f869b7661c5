"""Exchange rates, conversion and tax quotes."""

from fastapi import APIRouter, Depends
from services.checkout_service.models import BASE_CURRENCY
from services.checkout_service.schemas import (
    ConvertRequest,
    ConvertResponse,
    RatesResponse,
    SupportedCurrenciesResponse,
    TaxRequest,
    TaxResponse,
)
from services.checkout_service.services.currency import (
    CurrencyConverter,
    get_currency_converter,
)

router = APIRouter(prefix="/currency", tags=["currency"])


@router.get("/rates/{base}", response_model=RatesResponse)
async def get_rates(
    base: str,
    converter: CurrencyConverter = Depends(get_currency_converter),
):
    snapshot = await converter.cache.get_rates(base)
    return RatesResponse(
        base=snapshot.base,
        rates=snapshot.rates,
        source=snapshot.source,
        last_updated=snapshot.last_updated,
    )


@router.post("/convert", response_model=ConvertResponse)
async def convert(
    payload: ConvertRequest,
    converter: CurrencyConverter = Depends(get_currency_converter),
):
    conversion = await converter.convert(
        payload.amount, payload.from_currency, payload.to_currency
    )
    return ConvertResponse(
        original_amount=conversion.original_amount,
        converted_amount=conversion.converted_amount,
        rate=conversion.rate,
        from_currency=conversion.from_currency,
        to_currency=conversion.to_currency,
        formatted=converter.format_price(
            conversion.converted_amount, conversion.to_currency
        ),
        last_updated=conversion.last_updated,
    )


@router.post("/tax", response_model=TaxResponse)
async def calculate_tax(
    payload: TaxRequest,
    converter: CurrencyConverter = Depends(get_currency_converter),
):
    quote = converter.calculate_tax(payload.amount, payload.country_code, payload.currency)
    return TaxResponse(
        tax_rate=quote.tax_rate,
        tax_amount=quote.tax_amount,
        total_amount=quote.total_amount,
        currency=quote.currency,
        country_code=quote.country_code,
    )


@router.get("/supported", response_model=SupportedCurrenciesResponse)
async def supported_currencies(
    converter: CurrencyConverter = Depends(get_currency_converter),
):
    return SupportedCurrenciesResponse(
        base=BASE_CURRENCY, currencies=converter.supported_currencies()
    )
