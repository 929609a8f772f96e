from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from models import CurrencyCode, Frequency


def _as_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    # Storage keeps naive UTC timestamps.
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class AccountIn(BaseModel):
    name: str = Field(..., max_length=100)
    description: Optional[str] = None
    icon: str = Field(default="💳", max_length=40)
    opening_balance: Decimal = Field(
        default=Decimal("0"), max_digits=14, decimal_places=2
    )
    currency: Optional[CurrencyCode] = None


class AccountUpdate(BaseModel):
    name: Optional[str] = Field(default=None, max_length=100)
    description: Optional[str] = None
    icon: Optional[str] = Field(default=None, max_length=40)
    currency: Optional[CurrencyCode] = None
    display_order: Optional[int] = Field(default=None, ge=0)


class CategoryIn(BaseModel):
    name: str = Field(..., max_length=100)
    icon: str = Field(default="other", max_length=40)
    color: Optional[str] = Field(default=None, max_length=9)


class CategoryUpdate(BaseModel):
    name: Optional[str] = Field(default=None, max_length=100)
    icon: Optional[str] = Field(default=None, max_length=40)
    color: Optional[str] = Field(default=None, max_length=9)


class TransactionIn(BaseModel):
    account_id: int
    category_id: Optional[int] = None
    amount: Decimal = Field(..., max_digits=14, decimal_places=2)
    description: Optional[str] = None
    date: Optional[datetime] = None

    @field_validator("date")
    @classmethod
    def naive_date(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _as_naive_utc(value)


class TransactionUpdate(BaseModel):
    account_id: Optional[int] = None
    category_id: Optional[int] = None
    amount: Optional[Decimal] = Field(default=None, max_digits=14, decimal_places=2)
    description: Optional[str] = None
    date: Optional[datetime] = None

    @field_validator("date")
    @classmethod
    def naive_date(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _as_naive_utc(value)


class RecurringIn(BaseModel):
    account_id: int
    category_id: Optional[int] = None
    amount: Decimal = Field(..., max_digits=14, decimal_places=2)
    description: str = Field(..., max_length=200)
    frequency: Frequency
    next_execution_date: datetime
    end_date: Optional[datetime] = None

    @field_validator("next_execution_date", "end_date")
    @classmethod
    def naive_dates(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _as_naive_utc(value)


class RecurringUpdate(BaseModel):
    account_id: Optional[int] = None
    category_id: Optional[int] = None
    amount: Optional[Decimal] = Field(default=None, max_digits=14, decimal_places=2)
    description: Optional[str] = Field(default=None, max_length=200)
    frequency: Optional[Frequency] = None
    next_execution_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    is_active: Optional[bool] = None

    @field_validator("next_execution_date", "end_date")
    @classmethod
    def naive_dates(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _as_naive_utc(value)


class InitializeIn(BaseModel):
    account_name: Optional[str] = Field(default=None, max_length=100)
    account_icon: Optional[str] = Field(default=None, max_length=40)
    opening_balance: Optional[Decimal] = Field(
        default=None, max_digits=14, decimal_places=2
    )


class ResetIn(BaseModel):
    confirmation_phrase: str


class AccountOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    description: Optional[str]
    icon: str
    current_amount: Decimal
    default_value: Decimal
    currency: Optional[CurrencyCode]
    is_default: bool
    display_order: int
    created_at: datetime
    updated_at: datetime


class CategoryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    icon: str
    color: str
    is_default: bool
    created_at: datetime


class TransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    account_id: int
    category_id: Optional[int]
    amount: Decimal
    description: Optional[str]
    date: datetime
    is_recurring: bool
    recurring_transaction_id: Optional[int]
    created_at: datetime
    updated_at: datetime


class RecurringOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    account_id: int
    category_id: Optional[int]
    amount: Decimal
    description: str
    frequency: Frequency
    next_execution_date: datetime
    end_date: Optional[datetime]
    is_active: bool
    created_at: datetime
    updated_at: datetime
