from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class RatesResponse(BaseModel):
    base: str
    rates: Dict[str, float]
    source: str
    last_updated: datetime


class ConvertRequest(BaseModel):
    amount: Decimal = Field(..., ge=0)
    from_currency: str = Field(..., min_length=3, max_length=3)
    to_currency: str = Field(..., min_length=3, max_length=3)


class ConvertResponse(BaseModel):
    original_amount: float
    converted_amount: float
    rate: float
    from_currency: str
    to_currency: str
    formatted: str
    last_updated: Optional[datetime] = None


class TaxRequest(BaseModel):
    amount: Decimal = Field(..., ge=0)
    country_code: str = Field(..., min_length=2, max_length=2)
    currency: str = Field(default="EUR", min_length=3, max_length=3)


class TaxResponse(BaseModel):
    tax_rate: float
    tax_amount: float
    total_amount: float
    currency: str
    country_code: str


class CurrencyInfoResponse(BaseModel):
    code: str
    name: str
    symbol: str
    decimals: int


class SupportedCurrenciesResponse(BaseModel):
    base: str
    currencies: List[CurrencyInfoResponse]
