import datetime as dt
from datetime import date, datetime
from typing import Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    EmailStr,
    Field,
    field_validator,
    model_validator,
)

from models import AccountType, BudgetPeriod, TransactionType

# keeps cent values well inside a signed 64-bit column
MAX_CENTS = 10**12


def _coerce_day(value: object) -> object:
    # clients often send full ISO timestamps for date fields
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, str) and "T" in value:
        return datetime.fromisoformat(value.replace("Z", "+00:00")).date()
    return value


def _clean_tags(value: list[str]) -> list[str]:
    cleaned: list[str] = []
    for tag in value:
        tag = tag.strip()
        if not tag or tag in cleaned:
            continue
        if len(tag) > 30:
            raise ValueError("Tags must be at most 30 characters")
        cleaned.append(tag)
    return cleaned


class RegisterIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    email: EmailStr
    password: str = Field(..., min_length=6, max_length=72)


class LoginIn(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=1, max_length=72)


class ProfileIn(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    email: Optional[EmailStr] = None


class PasswordChangeIn(BaseModel):
    current_password: str = Field(..., min_length=1, max_length=72)
    new_password: str = Field(..., min_length=6, max_length=72)


class AccountIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: AccountType
    balance_cents: int = Field(default=0, ge=-MAX_CENTS, le=MAX_CENTS)
    currency: str = Field(default="USD", pattern=r"^[A-Za-z]{3}$")
    description: Optional[str] = Field(default=None, max_length=500)
    is_active: bool = True


class AccountUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    type: Optional[AccountType] = None
    currency: Optional[str] = Field(default=None, pattern=r"^[A-Za-z]{3}$")
    description: Optional[str] = Field(default=None, max_length=500)
    is_active: Optional[bool] = None


class TransactionIn(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    account_id: int
    amount_cents: int = Field(..., gt=0, le=MAX_CENTS)
    type: TransactionType
    category: str = Field(..., min_length=1, max_length=50)
    description: Optional[str] = Field(default=None, max_length=500)
    date: Optional[dt.date] = None
    tags: list[str] = Field(default_factory=list)
    transfer_to_account_id: Optional[int] = None

    @field_validator("date", mode="before")
    @classmethod
    def coerce_date(cls, value: object) -> object:
        return _coerce_day(value)

    @field_validator("tags")
    @classmethod
    def check_tags(cls, value: list[str]) -> list[str]:
        return _clean_tags(value)

    @model_validator(mode="after")
    def check_transfer(self) -> "TransactionIn":
        if self.type == TransactionType.transfer:
            if self.transfer_to_account_id is None:
                raise ValueError("transfer_to_account_id is required for transfers")
            if self.transfer_to_account_id == self.account_id:
                raise ValueError("Cannot transfer to the same account")
        return self


class TransactionUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    account_id: Optional[int] = None
    amount_cents: Optional[int] = Field(default=None, gt=0, le=MAX_CENTS)
    type: Optional[TransactionType] = None
    category: Optional[str] = Field(default=None, min_length=1, max_length=50)
    description: Optional[str] = Field(default=None, max_length=500)
    date: Optional[dt.date] = None
    tags: Optional[list[str]] = None
    transfer_to_account_id: Optional[int] = None

    @field_validator("date", mode="before")
    @classmethod
    def coerce_date(cls, value: object) -> object:
        return _coerce_day(value)

    @field_validator("tags")
    @classmethod
    def check_tags(cls, value: Optional[list[str]]) -> Optional[list[str]]:
        if value is None:
            return None
        return _clean_tags(value)


class BudgetIn(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    category: str = Field(..., min_length=1, max_length=50)
    amount_cents: int = Field(..., ge=0, le=MAX_CENTS)
    period: BudgetPeriod
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    is_active: bool = True

    @field_validator("start_date", "end_date", mode="before")
    @classmethod
    def coerce_dates(cls, value: object) -> object:
        return _coerce_day(value)

    @model_validator(mode="after")
    def check_dates(self) -> "BudgetIn":
        if self.period == BudgetPeriod.custom and self.end_date is None:
            raise ValueError("Custom budgets require an end_date")
        if self.start_date and self.end_date and self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        return self


class BudgetUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    category: Optional[str] = Field(default=None, min_length=1, max_length=50)
    amount_cents: Optional[int] = Field(default=None, ge=0, le=MAX_CENTS)
    period: Optional[BudgetPeriod] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    is_active: Optional[bool] = None

    @field_validator("start_date", "end_date", mode="before")
    @classmethod
    def coerce_dates(cls, value: object) -> object:
        return _coerce_day(value)


class UserOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    email: str
    created_at: datetime


class AccountOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    type: AccountType
    opening_balance_cents: int
    balance_cents: int
    currency: str
    description: Optional[str]
    is_active: bool
    created_at: datetime
    updated_at: datetime


class TransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    account_id: int
    amount_cents: int
    type: TransactionType
    category: str
    description: Optional[str]
    date: dt.date
    tags: list[str]
    transfer_to_account_id: Optional[int]
    created_at: datetime
    updated_at: datetime


class BudgetOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    category: str
    amount_cents: int
    spent_cents: int
    period: BudgetPeriod
    start_date: date
    end_date: Optional[date]
    is_active: bool
    created_at: datetime
    updated_at: datetime
