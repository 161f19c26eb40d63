import datetime as dt
from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from models import (
    AccountType,
    BillingCycle,
    ContactType,
    DebtDirection,
    DebtStatus,
    LifecycleStatus,
    ObligationKind,
    ObligationStatus,
    SplitStatus,
    TradeType,
    TransactionType,
)

CURRENCY_PATTERN = r"^[A-Za-z]{3}$"


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: Optional[TransactionType] = None
    color: Optional[str] = Field(default=None, max_length=7)


class AccountIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., min_length=1, max_length=120)
    type: AccountType = AccountType.checking


class CurrencyBalanceIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    currency_code: str = Field(..., pattern=CURRENCY_PATTERN)
    initial_balance_cents: int = 0


class BalanceAdjustIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    new_balance_cents: int
    description: Optional[str] = Field(default=None, max_length=200)


class QuickSplitIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    participant_ids: list[int] = Field(..., min_length=1)
    equal_split: bool = True
    amounts: Optional[list[int]] = None
    include_self: bool = True
    instant_money_back: bool = False
    money_back_balance_id: Optional[int] = None


class TransactionIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    balance_id: int
    type: TransactionType
    amount_cents: int = Field(..., gt=0)
    date: dt.date
    category_id: Optional[int] = None
    description: Optional[str] = Field(default=None, max_length=500)
    to_balance_id: Optional[int] = None
    fee_cents: int = Field(default=0, ge=0)
    exchange_rate: Optional[Decimal] = Field(default=None, gt=0)
    cashback_cents: int = Field(default=0, ge=0)
    exclude_from_monthly_stats: bool = False
    idempotency_key: Optional[str] = Field(default=None, max_length=100)
    split: Optional[QuickSplitIn] = None


class TransactionUpdateIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    balance_id: Optional[int] = None
    to_balance_id: Optional[int] = None
    amount_cents: Optional[int] = Field(default=None, gt=0)
    fee_cents: Optional[int] = Field(default=None, ge=0)
    cashback_cents: Optional[int] = Field(default=None, ge=0)
    exchange_rate: Optional[Decimal] = Field(default=None, gt=0)
    date: Optional[dt.date] = None
    category_id: Optional[int] = None
    description: Optional[str] = Field(default=None, max_length=500)


class DebtIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    person_name: str = Field(..., min_length=1, max_length=120)
    person_contact: Optional[str] = Field(default=None, max_length=200)
    amount_cents: int = Field(..., gt=0)
    direction: DebtDirection
    balance_id: Optional[int] = None
    currency_code: Optional[str] = Field(default=None, pattern=CURRENCY_PATTERN)
    description: Optional[str] = None
    due_date: Optional[dt.date] = None
    date: Optional[dt.date] = None


class DebtUpdateIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    person_name: Optional[str] = Field(default=None, min_length=1, max_length=120)
    amount_cents: Optional[int] = Field(default=None, gt=0)
    description: Optional[str] = None
    due_date: Optional[dt.date] = None


class DistributionIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    balance_id: int
    amount_cents: int = Field(..., gt=0)


class DebtPaymentIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    amount_cents: int = Field(..., gt=0)
    distributions: list[DistributionIn] = Field(..., min_length=1)
    note: Optional[str] = None
    paid_at: Optional[datetime] = None


class DebtPaymentUpdateIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    amount_cents: Optional[int] = Field(default=None, gt=0)
    distributions: Optional[list[DistributionIn]] = None
    note: Optional[str] = None


class ParticipantIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., min_length=1, max_length=100)
    contact_type: Optional[ContactType] = None
    contact_value: Optional[str] = Field(default=None, max_length=255)
    color: Optional[str] = Field(default=None, pattern=r"^#[0-9a-fA-F]{6}$")


class SplitItemIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    participant_id: int
    owed_cents: Optional[int] = Field(default=None, gt=0)
    note: Optional[str] = None


class SplitsIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    transaction_id: int
    splits: list[SplitItemIn] = Field(..., min_length=1)
    equal_split: bool = False
    total_cents: Optional[int] = Field(default=None, gt=0)


class SplitPaymentIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    amount_cents: int = Field(..., gt=0)
    received_to_balance_id: Optional[int] = None
    create_income_transaction: bool = False
    note: Optional[str] = None
    date: Optional[dt.date] = None


class SettleSplitIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    received_to_balance_id: Optional[int] = None
    create_income_transaction: bool = False
    note: Optional[str] = None


class SplitUpdateIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    owed_cents: Optional[int] = Field(default=None, gt=0)
    note: Optional[str] = None


class ObligationIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    account_id: int
    kind: ObligationKind
    name: str = Field(..., min_length=1, max_length=120)
    principal_cents: int = Field(..., gt=0)
    interest_rate: Decimal = Field(..., ge=0, le=100)
    monthly_payment_cents: int = Field(..., gt=0)
    remaining_cents: Optional[int] = Field(default=None, ge=0)
    currency_code: str = Field(..., pattern=CURRENCY_PATTERN)
    start_date: date
    end_date: Optional[date] = None
    term_years: Optional[int] = Field(default=None, gt=0)
    payment_day: Optional[int] = Field(default=None, ge=1, le=31)
    mark_past_months_as_paid: bool = True


class MonthsIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    months: list[str] = Field(..., min_length=1)
    note: Optional[str] = None


class SubscriptionIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., min_length=1, max_length=120)
    amount_cents: int = Field(..., gt=0)
    currency_code: str = Field(..., pattern=CURRENCY_PATTERN)
    billing_cycle: BillingCycle = BillingCycle.monthly
    start_date: date


class SubscriptionPaymentIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    balance_id: int
    due_date: Optional[date] = None
    note: Optional[str] = None


class SecurityIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    ticker: str = Field(..., min_length=1, max_length=20)
    name: str = Field(..., min_length=1, max_length=200)
    currency_code: str = Field(..., pattern=CURRENCY_PATTERN)


class TradeIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    security_id: int
    quantity: Decimal = Field(..., gt=0)
    price: Decimal = Field(..., gt=0)
    currency_code: str = Field(..., pattern=CURRENCY_PATTERN)
    date: Optional[dt.date] = None
    notes: Optional[str] = None


class TradeUpdateIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    date: Optional[dt.date] = None
    quantity: Optional[Decimal] = Field(default=None, gt=0)
    price: Optional[Decimal] = Field(default=None, gt=0)
    notes: Optional[str] = None


class CashMoveIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    currency_code: str = Field(..., pattern=CURRENCY_PATTERN)
    amount: Decimal = Field(..., gt=0)


class BalanceOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    account_id: int
    currency_code: str
    balance_cents: int


class AccountOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    type: AccountType
    balances: list[BalanceOut]


class TransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    currency_balance_id: int
    to_currency_balance_id: Optional[int]
    category_id: Optional[int]
    type: TransactionType
    amount_cents: int
    fee_cents: int
    exchange_rate_micros: int
    to_amount_cents: Optional[int]
    cashback_cents: int
    description: Optional[str]
    date: date
    lifecycle_status: LifecycleStatus
    exclude_from_monthly_stats: bool
    debt_id: Optional[int]
    debt_payment_id: Optional[int]
    parent_transaction_id: Optional[int]


class DebtPaymentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    amount_cents: int
    paid_at: datetime
    note: Optional[str]


class DebtOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    person_name: str
    person_contact: Optional[str]
    description: Optional[str]
    currency_balance_id: Optional[int]
    currency_code: str
    amount_cents: int
    paid_cents: int
    direction: DebtDirection
    status: DebtStatus
    lifecycle_status: LifecycleStatus
    due_date: Optional[date]
    payments: list[DebtPaymentOut]


class ParticipantOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    contact_type: Optional[ContactType]
    contact_value: Optional[str]
    color: str
    is_active: bool


class SplitOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    transaction_id: int
    participant_id: int
    owed_cents: int
    paid_cents: int
    status: SplitStatus
    note: Optional[str]


class ObligationOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    account_id: int
    kind: ObligationKind
    name: str
    principal_cents: int
    interest_rate: Decimal
    monthly_payment_cents: int
    remaining_cents: int
    currency_code: str
    start_date: date
    status: ObligationStatus


class HoldingOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    security_id: int
    quantity: Decimal
    average_cost_basis: Decimal


class TradeOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    security_id: int
    type: TradeType
    date: date
    quantity: Decimal
    price_per_share: Decimal
    total_amount: Decimal
    currency_code: str
    realized_pl: Optional[Decimal]
    cash_flow: Decimal
    cash_balance_after: Decimal
    notes: Optional[str]
