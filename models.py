from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


def utcnow() -> datetime:
    return datetime.utcnow()


class Workspace(str, Enum):
    production = "production"
    test = "test"


class AccountType(str, Enum):
    checking = "checking"
    savings = "savings"
    card = "card"
    cash = "cash"
    investment = "investment"


class TransactionType(str, Enum):
    income = "income"
    expense = "expense"
    transfer = "transfer"


class LifecycleStatus(str, Enum):
    active = "active"
    deleting = "deleting"


class DebtDirection(str, Enum):
    i_owe = "i_owe"
    they_owe = "they_owe"


class DebtStatus(str, Enum):
    pending = "pending"
    partial = "partial"
    paid = "paid"


class SplitStatus(str, Enum):
    pending = "pending"
    partial = "partial"
    settled = "settled"


class ContactType(str, Enum):
    telegram = "telegram"
    whatsapp = "whatsapp"
    phone = "phone"
    email = "email"
    other = "other"


class ObligationKind(str, Enum):
    credit = "credit"
    mortgage = "mortgage"


class ObligationStatus(str, Enum):
    active = "active"
    paid_off = "paid_off"
    defaulted = "defaulted"


class BillingCycle(str, Enum):
    weekly = "weekly"
    monthly = "monthly"
    yearly = "yearly"


class TradeType(str, Enum):
    buy = "buy"
    sell = "sell"


class SystemCategory(str, Enum):
    transfer = "Transfer"
    debt = "Debt"
    debt_repayment = "Debt Repayment"
    split_payment = "Split Payment"
    mortgage = "Mortgage"
    bills = "Bills"
    subscriptions = "Subscriptions"
    adjustment = "Adjustment"
    investment = "Investment"


SYSTEM_CATEGORY_ENUM = SAEnum(
    SystemCategory,
    name="systemcategory",
    values_callable=lambda enum_cls: [member.value for member in enum_cls],
)

# Quantities, prices and investment cash.
INVEST_NUMERIC = Numeric(20, 8)


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )


class Category(Base, TimestampMixin):
    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    # NULL for the shared registry of system categories.
    user_id: Mapped[Optional[int]] = mapped_column(Integer)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    type: Mapped[Optional[TransactionType]] = mapped_column(SAEnum(TransactionType))
    system_key: Mapped[Optional[SystemCategory]] = mapped_column(
        SYSTEM_CATEGORY_ENUM, unique=True
    )
    color: Mapped[Optional[str]] = mapped_column(String(7))

    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction", back_populates="category"
    )

    __table_args__ = (
        UniqueConstraint("user_id", "name", name="uq_category_user_name"),
    )


class Account(Base, TimestampMixin):
    __tablename__ = "accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    workspace: Mapped[Workspace] = mapped_column(
        SAEnum(Workspace), nullable=False, default=Workspace.production
    )
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    type: Mapped[AccountType] = mapped_column(
        SAEnum(AccountType), nullable=False, default=AccountType.checking
    )

    balances: Mapped[list["CurrencyBalance"]] = relationship(
        "CurrencyBalance",
        back_populates="account",
        cascade="all, delete-orphan",
        order_by="CurrencyBalance.currency_code",
    )
    obligations: Mapped[list["Obligation"]] = relationship(
        "Obligation", back_populates="account"
    )

    __table_args__ = (Index("ix_accounts_user_workspace", "user_id", "workspace"),)


class CurrencyBalance(Base, TimestampMixin):
    __tablename__ = "currency_balances"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    account_id: Mapped[int] = mapped_column(
        ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False
    )
    currency_code: Mapped[str] = mapped_column(String(3), nullable=False)
    balance_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    account: Mapped["Account"] = relationship("Account", back_populates="balances")

    __mapper_args__ = {"version_id_col": version}
    __table_args__ = (
        UniqueConstraint(
            "account_id", "currency_code", name="uq_balance_account_currency"
        ),
    )


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    currency_balance_id: Mapped[int] = mapped_column(
        ForeignKey("currency_balances.id"), nullable=False
    )
    to_currency_balance_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("currency_balances.id")
    )
    category_id: Mapped[Optional[int]] = mapped_column(ForeignKey("categories.id"))
    type: Mapped[TransactionType] = mapped_column(
        SAEnum(TransactionType), nullable=False
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    fee_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    exchange_rate_micros: Mapped[int] = mapped_column(
        Integer, nullable=False, default=1_000_000
    )
    # Amount credited to the target balance of a transfer.
    to_amount_cents: Mapped[Optional[int]] = mapped_column(Integer)
    cashback_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    description: Mapped[Optional[str]] = mapped_column(Text)
    date: Mapped[date] = mapped_column(Date, nullable=False)
    lifecycle_status: Mapped[LifecycleStatus] = mapped_column(
        SAEnum(LifecycleStatus), nullable=False, default=LifecycleStatus.active
    )
    exclude_from_monthly_stats: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )
    debt_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("debts.id", ondelete="SET NULL")
    )
    debt_payment_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("debt_payments.id", ondelete="CASCADE")
    )
    parent_transaction_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("transactions.id", ondelete="SET NULL")
    )
    idempotency_key: Mapped[Optional[str]] = mapped_column(String(100))

    balance: Mapped["CurrencyBalance"] = relationship(
        "CurrencyBalance", foreign_keys=[currency_balance_id]
    )
    to_balance: Mapped[Optional["CurrencyBalance"]] = relationship(
        "CurrencyBalance", foreign_keys=[to_currency_balance_id]
    )
    category: Mapped[Optional["Category"]] = relationship(
        "Category", back_populates="transactions"
    )
    splits: Mapped[list["TransactionSplit"]] = relationship(
        "TransactionSplit",
        back_populates="transaction",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        UniqueConstraint("user_id", "idempotency_key", name="uq_txn_idempotency"),
        Index("ix_transactions_balance_date", "currency_balance_id", "date"),
        Index("ix_transactions_to_balance", "to_currency_balance_id"),
        Index("ix_transactions_parent", "parent_transaction_id"),
        Index("ix_transactions_debt", "debt_id"),
        Index("ix_transactions_debt_payment", "debt_payment_id"),
        CheckConstraint("amount_cents > 0", name="ck_transactions_amount_positive"),
        CheckConstraint("fee_cents >= 0", name="ck_transactions_fee"),
        CheckConstraint("cashback_cents >= 0", name="ck_transactions_cashback"),
    )


class Debt(Base, TimestampMixin):
    __tablename__ = "debts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    workspace: Mapped[Workspace] = mapped_column(
        SAEnum(Workspace), nullable=False, default=Workspace.production
    )
    currency_balance_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("currency_balances.id", ondelete="SET NULL")
    )
    currency_code: Mapped[str] = mapped_column(String(3), nullable=False)
    person_name: Mapped[str] = mapped_column(String(120), nullable=False)
    person_contact: Mapped[Optional[str]] = mapped_column(String(200))
    description: Mapped[Optional[str]] = mapped_column(Text)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    paid_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    direction: Mapped[DebtDirection] = mapped_column(
        SAEnum(DebtDirection), nullable=False
    )
    status: Mapped[DebtStatus] = mapped_column(
        SAEnum(DebtStatus), nullable=False, default=DebtStatus.pending
    )
    lifecycle_status: Mapped[LifecycleStatus] = mapped_column(
        SAEnum(LifecycleStatus), nullable=False, default=LifecycleStatus.active
    )
    deleting_since: Mapped[Optional[datetime]] = mapped_column(DateTime)
    due_date: Mapped[Optional[date]] = mapped_column(Date)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    payments: Mapped[list["DebtPayment"]] = relationship(
        "DebtPayment",
        back_populates="debt",
        cascade="all, delete-orphan",
        order_by="DebtPayment.paid_at",
    )

    __mapper_args__ = {"version_id_col": version}
    __table_args__ = (
        Index("ix_debts_user_workspace", "user_id", "workspace", "lifecycle_status"),
        CheckConstraint("amount_cents > 0", name="ck_debts_amount_positive"),
        CheckConstraint("paid_cents >= 0", name="ck_debts_paid"),
    )


class DebtPayment(Base, TimestampMixin):
    __tablename__ = "debt_payments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    debt_id: Mapped[int] = mapped_column(
        ForeignKey("debts.id", ondelete="CASCADE"), nullable=False
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    paid_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    note: Mapped[Optional[str]] = mapped_column(Text)

    debt: Mapped["Debt"] = relationship("Debt", back_populates="payments")
    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction", foreign_keys="Transaction.debt_payment_id"
    )

    __table_args__ = (
        CheckConstraint("amount_cents > 0", name="ck_debt_payments_amount_positive"),
    )


class SplitParticipant(Base, TimestampMixin):
    __tablename__ = "split_participants"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    workspace: Mapped[Workspace] = mapped_column(
        SAEnum(Workspace), nullable=False, default=Workspace.production
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    contact_type: Mapped[Optional[ContactType]] = mapped_column(SAEnum(ContactType))
    contact_value: Mapped[Optional[str]] = mapped_column(String(255))
    color: Mapped[str] = mapped_column(String(7), nullable=False, default="#8b5cf6")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    __table_args__ = (
        Index("ix_split_participants_user", "user_id", "workspace", "is_active"),
    )


class TransactionSplit(Base, TimestampMixin):
    __tablename__ = "transaction_splits"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    transaction_id: Mapped[int] = mapped_column(
        ForeignKey("transactions.id", ondelete="CASCADE"), nullable=False
    )
    participant_id: Mapped[int] = mapped_column(
        ForeignKey("split_participants.id", ondelete="CASCADE"), nullable=False
    )
    owed_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    paid_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[SplitStatus] = mapped_column(
        SAEnum(SplitStatus), nullable=False, default=SplitStatus.pending
    )
    note: Mapped[Optional[str]] = mapped_column(Text)

    transaction: Mapped["Transaction"] = relationship(
        "Transaction", back_populates="splits"
    )
    participant: Mapped["SplitParticipant"] = relationship("SplitParticipant")
    payments: Mapped[list["SplitPayment"]] = relationship(
        "SplitPayment", back_populates="split", cascade="all, delete-orphan"
    )

    __table_args__ = (
        Index("ix_transaction_splits_transaction", "transaction_id"),
        Index("ix_transaction_splits_participant", "participant_id"),
        CheckConstraint("owed_cents > 0", name="ck_splits_owed_positive"),
        CheckConstraint("paid_cents >= 0", name="ck_splits_paid"),
    )


class SplitPayment(Base, TimestampMixin):
    __tablename__ = "split_payments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    split_id: Mapped[int] = mapped_column(
        ForeignKey("transaction_splits.id", ondelete="CASCADE"), nullable=False
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    received_to_balance_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("currency_balances.id", ondelete="SET NULL")
    )
    linked_transaction_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("transactions.id", ondelete="SET NULL")
    )
    paid_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    note: Mapped[Optional[str]] = mapped_column(Text)

    split: Mapped["TransactionSplit"] = relationship(
        "TransactionSplit", back_populates="payments"
    )

    __table_args__ = (
        Index("ix_split_payments_linked_txn", "linked_transaction_id"),
        CheckConstraint("amount_cents > 0", name="ck_split_payments_amount_positive"),
    )


class Obligation(Base, TimestampMixin):
    __tablename__ = "obligations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    account_id: Mapped[int] = mapped_column(
        ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False
    )
    kind: Mapped[ObligationKind] = mapped_column(SAEnum(ObligationKind), nullable=False)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    principal_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    interest_rate: Mapped[Decimal] = mapped_column(Numeric(6, 3), nullable=False)
    monthly_payment_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    remaining_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    currency_code: Mapped[str] = mapped_column(String(3), nullable=False)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[Optional[date]] = mapped_column(Date)
    term_years: Mapped[Optional[int]] = mapped_column(Integer)
    payment_day: Mapped[Optional[int]] = mapped_column(Integer)
    status: Mapped[ObligationStatus] = mapped_column(
        SAEnum(ObligationStatus), nullable=False, default=ObligationStatus.active
    )

    account: Mapped["Account"] = relationship("Account", back_populates="obligations")
    payments: Mapped[list["ObligationPayment"]] = relationship(
        "ObligationPayment",
        back_populates="obligation",
        cascade="all, delete-orphan",
        order_by="ObligationPayment.month_year",
    )

    __table_args__ = (
        Index("ix_obligations_account_kind", "account_id", "kind", "status"),
        CheckConstraint("remaining_cents >= 0", name="ck_obligations_remaining"),
        CheckConstraint(
            "payment_day IS NULL OR (payment_day BETWEEN 1 AND 31)",
            name="ck_obligations_payment_day",
        ),
    )


class ObligationPayment(Base, TimestampMixin):
    __tablename__ = "obligation_payments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    obligation_id: Mapped[int] = mapped_column(
        ForeignKey("obligations.id", ondelete="CASCADE"), nullable=False
    )
    month_year: Mapped[str] = mapped_column(String(7), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    paid_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    note: Mapped[Optional[str]] = mapped_column(Text)
    transaction_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("transactions.id", ondelete="SET NULL")
    )

    obligation: Mapped["Obligation"] = relationship(
        "Obligation", back_populates="payments"
    )

    __table_args__ = (
        UniqueConstraint(
            "obligation_id", "month_year", name="uq_obligation_payment_month"
        ),
    )


class Subscription(Base, TimestampMixin):
    __tablename__ = "subscriptions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    workspace: Mapped[Workspace] = mapped_column(
        SAEnum(Workspace), nullable=False, default=Workspace.production
    )
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    currency_code: Mapped[str] = mapped_column(String(3), nullable=False)
    billing_cycle: Mapped[BillingCycle] = mapped_column(
        SAEnum(BillingCycle), nullable=False, default=BillingCycle.monthly
    )
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    payments: Mapped[list["SubscriptionPayment"]] = relationship(
        "SubscriptionPayment",
        back_populates="subscription",
        cascade="all, delete-orphan",
        order_by="SubscriptionPayment.paid_at",
    )

    __table_args__ = (
        CheckConstraint("amount_cents > 0", name="ck_subscriptions_amount_positive"),
    )


class SubscriptionPayment(Base, TimestampMixin):
    __tablename__ = "subscription_payments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    subscription_id: Mapped[int] = mapped_column(
        ForeignKey("subscriptions.id", ondelete="CASCADE"), nullable=False
    )
    currency_balance_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("currency_balances.id", ondelete="SET NULL")
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    paid_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    due_date: Mapped[date] = mapped_column(Date, nullable=False)
    transaction_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("transactions.id", ondelete="SET NULL")
    )
    note: Mapped[Optional[str]] = mapped_column(Text)

    subscription: Mapped["Subscription"] = relationship(
        "Subscription", back_populates="payments"
    )


class Security(Base, TimestampMixin):
    __tablename__ = "securities"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    ticker: Mapped[str] = mapped_column(String(20), nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    currency_code: Mapped[str] = mapped_column(String(3), nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "ticker", name="uq_security_user_ticker"),
    )


class Holding(Base, TimestampMixin):
    __tablename__ = "holdings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    security_id: Mapped[int] = mapped_column(
        ForeignKey("securities.id", ondelete="CASCADE"), nullable=False
    )
    quantity: Mapped[Decimal] = mapped_column(INVEST_NUMERIC, nullable=False)
    average_cost_basis: Mapped[Decimal] = mapped_column(INVEST_NUMERIC, nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    security: Mapped["Security"] = relationship("Security")

    __mapper_args__ = {"version_id_col": version}
    __table_args__ = (
        UniqueConstraint("user_id", "security_id", name="uq_holding_user_security"),
    )


class InvestmentTransaction(Base, TimestampMixin):
    __tablename__ = "investment_transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    security_id: Mapped[int] = mapped_column(
        ForeignKey("securities.id", ondelete="CASCADE"), nullable=False
    )
    type: Mapped[TradeType] = mapped_column(SAEnum(TradeType), nullable=False)
    date: Mapped[date] = mapped_column(Date, nullable=False)
    quantity: Mapped[Decimal] = mapped_column(INVEST_NUMERIC, nullable=False)
    price_per_share: Mapped[Decimal] = mapped_column(INVEST_NUMERIC, nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(INVEST_NUMERIC, nullable=False)
    currency_code: Mapped[str] = mapped_column(String(3), nullable=False)
    realized_pl: Mapped[Optional[Decimal]] = mapped_column(INVEST_NUMERIC)
    cash_flow: Mapped[Decimal] = mapped_column(INVEST_NUMERIC, nullable=False)
    cash_balance_after: Mapped[Decimal] = mapped_column(INVEST_NUMERIC, nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text)

    security: Mapped["Security"] = relationship("Security")

    __table_args__ = (
        Index(
            "ix_investment_transactions_replay",
            "user_id",
            "security_id",
            "date",
            "created_at",
        ),
        CheckConstraint("quantity > 0", name="ck_investment_txn_quantity_positive"),
    )


class InvestmentCashBalance(Base, TimestampMixin):
    __tablename__ = "investment_cash_balances"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    currency_code: Mapped[str] = mapped_column(String(3), nullable=False)
    available_balance: Mapped[Decimal] = mapped_column(INVEST_NUMERIC, nullable=False)
    settled_balance: Mapped[Decimal] = mapped_column(INVEST_NUMERIC, nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "currency_code", name="uq_invest_cash_currency"),
    )
