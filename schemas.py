import datetime as dt
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from models import EnvelopeType, TransactionType


class EnvelopeIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    budget: Decimal = Field(..., gt=0, max_digits=14, decimal_places=2)
    goal: Decimal = Field(default=Decimal("0"), ge=0, max_digits=14, decimal_places=2)
    type: EnvelopeType = EnvelopeType.normal


class EnvelopeUpdate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    budget: Decimal = Field(..., gt=0, max_digits=14, decimal_places=2)
    goal: Decimal = Field(default=Decimal("0"), ge=0, max_digits=14, decimal_places=2)
    is_recurring: bool = False


class ReorderIn(BaseModel):
    envelope_ids: list[int] = Field(..., min_length=1)


class TransactionIn(BaseModel):
    envelope_id: int
    amount: int = Field(..., gt=0)
    date: dt.date
    type: TransactionType
    note: str = Field(default="", max_length=200)
    is_recurring: bool = False


class RenewalDayIn(BaseModel):
    renewal_day: int = Field(..., ge=0, le=28)


class CurrencyIn(BaseModel):
    code: str = Field(..., min_length=3, max_length=3)


class LanguageIn(BaseModel):
    language: str = Field(..., min_length=2, max_length=16)


class CloudSyncIn(BaseModel):
    enabled: bool


class PurchaseIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    product_id: str = Field(..., min_length=1, max_length=120)


class DayTotalsOut(BaseModel):
    day: int
    income: int
    expense: int


class CalendarMonthOut(BaseModel):
    year: int
    month: int
    income: int
    expense: int
    balance: int
    days: list[DayTotalsOut]


class SubscriptionStatusOut(BaseModel):
    tier: str
    is_subscribed: bool
    product_id: Optional[str] = None
    will_renew: Optional[bool] = None
    renewal_date: Optional[dt.datetime] = None
    pending_product_id: Optional[str] = None
    last_error: Optional[str] = None
