from datetime import date

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from database import Base
from ledger import BalanceStore
from models import (
    CurrencyBalance,
    Debt,
    DebtDirection,
    DebtPayment,
    Transaction,
    TransactionType,
)
from schemas import (
    AccountIn,
    CurrencyBalanceIn,
    DebtIn,
    DebtPaymentIn,
    DistributionIn,
    TransactionIn,
)
from services import (
    AccountService,
    DebtService,
    TransactionService,
    seed_system_categories,
)


def make_sessionmaker(path):
    engine = create_engine(
        f"sqlite+pysqlite:///{path}", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    with SessionLocal() as session:
        seed_system_categories(session)
        session.commit()
    return SessionLocal


def open_balance(session, cents: int, name: str = "Checking"):
    accounts = AccountService(session)
    account = accounts.create(AccountIn(name=name))
    return accounts.add_currency(
        account.id, CurrencyBalanceIn(currency_code="USD", initial_balance_cents=cents)
    )


def expense(balance_id: int, cents: int) -> TransactionIn:
    return TransactionIn(
        balance_id=balance_id,
        type=TransactionType.expense,
        amount_cents=cents,
        date=date(2026, 3, 2),
        description="Lunch",
    )


def test_write_against_stale_version_is_rejected(tmp_path) -> None:
    SessionLocal = make_sessionmaker(tmp_path / "ledger.db")
    first = SessionLocal()
    second = SessionLocal()

    balance = open_balance(first, 100_000)
    stale = second.get(CurrencyBalance, balance.id)
    assert stale.balance_cents == 100_000

    TransactionService(first).create(expense(balance.id, 10_000))
    assert balance.balance_cents == 90_000

    with pytest.raises(StaleDataError):
        TransactionService(second).create(expense(balance.id, 5_000))

    with SessionLocal() as check:
        stored = check.get(CurrencyBalance, balance.id)
        assert stored.balance_cents == 90_000
        lunches = check.scalars(
            select(Transaction).where(Transaction.description == "Lunch")
        ).all()
        assert [txn.amount_cents for txn in lunches] == [10_000]
        stored_cents, recomputed = AccountService(check).verify(balance.id)
        assert stored_cents == recomputed == 90_000


def test_failure_mid_payment_persists_nothing(tmp_path, monkeypatch) -> None:
    SessionLocal = make_sessionmaker(tmp_path / "ledger.db")
    session = SessionLocal()
    checking = open_balance(session, 100_000)
    savings = open_balance(session, 100_000, name="Savings")
    debt = DebtService(session).create(
        DebtIn(
            person_name="Alice",
            amount_cents=50_000,
            direction=DebtDirection.they_owe,
            balance_id=checking.id,
        )
    )
    assert checking.balance_cents == 50_000

    original = BalanceStore.apply_delta
    calls = []

    def fail_on_second(self, balance_id, delta_cents):
        calls.append(balance_id)
        if len(calls) == 2:
            raise RuntimeError("connection lost")
        return original(self, balance_id, delta_cents)

    monkeypatch.setattr(BalanceStore, "apply_delta", fail_on_second)

    with pytest.raises(RuntimeError, match="connection lost"):
        DebtService(session).add_payment(
            debt.id,
            DebtPaymentIn(
                amount_cents=30_000,
                distributions=[
                    DistributionIn(balance_id=checking.id, amount_cents=20_000),
                    DistributionIn(balance_id=savings.id, amount_cents=10_000),
                ],
            ),
        )
    assert calls == [checking.id, savings.id]

    monkeypatch.undo()
    with SessionLocal() as check:
        assert check.get(CurrencyBalance, checking.id).balance_cents == 50_000
        assert check.get(CurrencyBalance, savings.id).balance_cents == 100_000
        assert check.get(Debt, debt.id).paid_cents == 0
        assert check.scalars(select(DebtPayment)).all() == []
        repayments = check.scalars(
            select(Transaction).where(Transaction.debt_payment_id.is_not(None))
        ).all()
        assert repayments == []
