import re
from datetime import datetime
from decimal import Decimal
from typing import Annotated, Optional

from pydantic import BaseModel, ConfigDict, Field, PlainSerializer, field_validator

from config import get_settings
from models import AccountType, CategoryType, CurrencyCode, TransactionType
from periods import to_local_naive

Money = Annotated[
    Decimal, PlainSerializer(lambda v: float(v), return_type=float, when_used="json")
]

PASSWORD_CLASSES = (
    (re.compile(r"[a-z]"), "one lowercase letter"),
    (re.compile(r"[A-Z]"), "one uppercase letter"),
    (re.compile(r"\d"), "one number"),
    (re.compile(r"[@$!%*?&]"), "one special character (@$!%*?&)"),
)


def _local_date(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    return to_local_naive(value, get_settings().timezone)


class RegisterIn(BaseModel):
    email: str = Field(
        ..., max_length=255, pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$"
    )
    password: str = Field(..., min_length=8, max_length=50)
    first_name: str = Field(..., min_length=1, max_length=50)
    last_name: str = Field(..., min_length=1, max_length=50)

    @field_validator("password")
    @classmethod
    def password_strength(cls, value: str) -> str:
        missing = [label for pattern, label in PASSWORD_CLASSES if not pattern.search(value)]
        if missing:
            raise ValueError("Password must contain at least " + ", ".join(missing))
        if len(value.encode("utf-8")) > 72:
            raise ValueError("Password must not exceed 72 bytes")
        return value


class LoginIn(BaseModel):
    email: str = Field(..., max_length=255)
    password: str = Field(..., min_length=1, max_length=200)


class UserOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    email: str
    first_name: str
    last_name: str
    full_name: str
    is_active: bool
    last_login: Optional[datetime]
    created_at: datetime
    updated_at: datetime


class AuthOut(BaseModel):
    user: UserOut
    access_token: str
    token_type: str = "bearer"


class AccountIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    account_type: AccountType
    currency: CurrencyCode = CurrencyCode.rsd
    balance: Decimal = Field(default=Decimal("0"), ge=0, max_digits=15, decimal_places=2)
    bank_name: Optional[str] = Field(default=None, max_length=100)
    account_number: Optional[str] = Field(default=None, max_length=50)


class AccountUpdateIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    bank_name: Optional[str] = Field(default=None, max_length=100)
    account_number: Optional[str] = Field(default=None, max_length=50)


class BalanceIn(BaseModel):
    balance: Decimal = Field(..., max_digits=15, decimal_places=2)


class AccountOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    account_type: AccountType
    currency: CurrencyCode
    balance: Money
    formatted_balance: str
    bank_name: Optional[str]
    has_account_number: bool
    is_active: bool
    created_at: datetime
    updated_at: datetime


class AccountDetailOut(AccountOut):
    account_number: Optional[str]


class AccountCountOut(BaseModel):
    count: int


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=50)
    type: CategoryType
    icon: Optional[str] = Field(default=None, max_length=10)
    color: Optional[str] = Field(default=None, max_length=7)


class CategoryUpdateIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, min_length=1, max_length=50)
    icon: Optional[str] = Field(default=None, max_length=10)
    color: Optional[str] = Field(default=None, max_length=7)


class CategoryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    type: CategoryType
    icon: Optional[str]
    color: Optional[str]
    is_active: bool
    created_at: datetime
    updated_at: datetime


class TransactionIn(BaseModel):
    account_id: int
    category_id: Optional[int] = None
    type: TransactionType
    amount: Decimal = Field(..., gt=0, max_digits=13, decimal_places=2)
    description: str = Field(..., max_length=500)
    transaction_date: Optional[datetime] = None
    to_account_id: Optional[int] = None

    @field_validator("transaction_date")
    @classmethod
    def local_transaction_date(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _local_date(value)


class TransactionUpdateIn(BaseModel):
    """Only the non-financial fields of a transaction may change."""

    model_config = ConfigDict(extra="forbid")

    category_id: Optional[int] = None
    description: Optional[str] = Field(default=None, max_length=500)
    transaction_date: Optional[datetime] = None

    @field_validator("transaction_date")
    @classmethod
    def local_transaction_date(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _local_date(value)


class TransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    account_id: int
    category_id: Optional[int]
    type: TransactionType
    amount: Money
    description: str
    transaction_date: datetime
    to_account_id: Optional[int]
    from_account_id: Optional[int]
    created_at: datetime
    updated_at: datetime


class MonthlyTotalsOut(BaseModel):
    year: int
    month: int
    income: Money
    expense: Money
    net: Money
