import datetime as dt
from datetime import date
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from models import AccountType, BudgetPeriod, CategoryType, Frequency, TransactionType
from money import AMOUNT_PATTERN


class AccountIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    type: AccountType
    currency: str = Field(default="USD", min_length=3, max_length=3)
    initial_balance: str = Field(default="0", pattern=AMOUNT_PATTERN)
    description: Optional[str] = Field(default=None, max_length=500)
    color: Optional[str] = Field(default=None, max_length=7)


class AccountUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    type: Optional[AccountType] = None
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    initial_balance: Optional[str] = Field(default=None, pattern=AMOUNT_PATTERN)
    description: Optional[str] = Field(default=None, max_length=500)
    color: Optional[str] = Field(default=None, max_length=7)
    is_active: Optional[bool] = None


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    type: CategoryType
    color: Optional[str] = Field(default=None, max_length=7)


class SplitIn(BaseModel):
    category_id: int
    amount: str = Field(..., pattern=AMOUNT_PATTERN)
    description: Optional[str] = Field(default=None, max_length=255)


class TransactionIn(BaseModel):
    account_id: int
    category_id: Optional[int] = None
    type: TransactionType
    amount: str = Field(..., pattern=AMOUNT_PATTERN)
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    date: date
    description: Optional[str] = Field(default=None, max_length=500)
    notes: Optional[str] = None
    payee: Optional[str] = Field(default=None, max_length=255)
    reference: Optional[str] = Field(default=None, max_length=255)
    to_account_id: Optional[int] = None
    splits: Optional[list[SplitIn]] = None


class TransactionUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    account_id: Optional[int] = None
    category_id: Optional[int] = None
    type: Optional[TransactionType] = None
    amount: Optional[str] = Field(default=None, pattern=AMOUNT_PATTERN)
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    date: Optional[dt.date] = None
    description: Optional[str] = Field(default=None, max_length=500)
    notes: Optional[str] = None
    payee: Optional[str] = Field(default=None, max_length=255)
    reference: Optional[str] = Field(default=None, max_length=255)
    to_account_id: Optional[int] = None
    splits: Optional[list[SplitIn]] = None


class RecurringTemplateIn(BaseModel):
    account_id: int
    category_id: Optional[int] = None
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = Field(default=None, max_length=500)
    type: TransactionType = TransactionType.expense
    amount: str = Field(..., pattern=AMOUNT_PATTERN)
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    frequency: Frequency
    start_date: date
    end_date: Optional[date] = None
    day_of_month: Optional[int] = Field(default=None, ge=1, le=31)
    day_of_week: Optional[int] = Field(default=None, ge=0, le=6)
    auto_create: bool = False


class RecurringTemplateUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    account_id: Optional[int] = None
    category_id: Optional[int] = None
    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    description: Optional[str] = Field(default=None, max_length=500)
    type: Optional[TransactionType] = None
    amount: Optional[str] = Field(default=None, pattern=AMOUNT_PATTERN)
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    frequency: Optional[Frequency] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    day_of_month: Optional[int] = Field(default=None, ge=1, le=31)
    day_of_week: Optional[int] = Field(default=None, ge=0, le=6)
    auto_create: Optional[bool] = None


class BudgetIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    category_id: Optional[int] = None
    amount: str = Field(..., pattern=AMOUNT_PATTERN)
    currency: str = Field(default="USD", min_length=3, max_length=3)
    period: BudgetPeriod = BudgetPeriod.monthly
    start_date: date
    end_date: Optional[date] = None
    allow_rollover: bool = False
    alert_enabled: bool = True
    alert_threshold: int = Field(default=80, ge=0, le=1000)


class BudgetUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    category_id: Optional[int] = None
    amount: Optional[str] = Field(default=None, pattern=AMOUNT_PATTERN)
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    period: Optional[BudgetPeriod] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    allow_rollover: Optional[bool] = None
    alert_enabled: Optional[bool] = None
    alert_threshold: Optional[int] = Field(default=None, ge=0, le=1000)
    is_active: Optional[bool] = None


class ExchangeRateIn(BaseModel):
    from_currency: str = Field(..., min_length=3, max_length=3)
    to_currency: str = Field(..., min_length=3, max_length=3)
    rate: str = Field(..., pattern=r"^\d+(\.\d{1,8})?$")
    rate_date: Optional[date] = None
