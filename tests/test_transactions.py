from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from database import Base
from errors import BadRequest, Forbidden, InsufficientFunds, NotFound
from fx_rates import FxRateService
from models import TransactionType, Workspace
from schemas import (
    AccountIn,
    BalanceAdjustIn,
    CurrencyBalanceIn,
    TransactionIn,
    TransactionUpdateIn,
)
from services import AccountService, TransactionService, seed_system_categories


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    session = SessionLocal()
    seed_system_categories(session)
    session.commit()
    return session


def open_balance(
    session,
    cents: int,
    currency: str = "USD",
    workspace: Workspace = Workspace.production,
    account_id: int | None = None,
):
    accounts = AccountService(session, workspace=workspace)
    if account_id is None:
        account_id = accounts.create(AccountIn(name="Checking")).id
    return accounts.add_currency(
        account_id, CurrencyBalanceIn(currency_code=currency, initial_balance_cents=cents)
    )


def test_expense_with_cashback_and_delete_restores_balance() -> None:
    session = make_session()
    balance = open_balance(session, 100_000)
    txns = TransactionService(session)

    expense = txns.create(
        TransactionIn(
            balance_id=balance.id,
            type=TransactionType.expense,
            amount_cents=20_000,
            cashback_cents=1_000,
            date=date(2026, 3, 1),
            description="Groceries",
        )
    )
    assert balance.balance_cents == 81_000

    txns.delete(expense.id)
    assert balance.balance_cents == 100_000
    with pytest.raises(NotFound):
        txns.get(expense.id)


def test_opening_balance_is_backed_by_a_transaction() -> None:
    session = make_session()
    balance = open_balance(session, 42_000)

    stored, recomputed = AccountService(session).verify(balance.id)
    assert stored == recomputed == 42_000


def test_expense_rejected_when_funds_are_short() -> None:
    session = make_session()
    balance = open_balance(session, 1_000)

    with pytest.raises(InsufficientFunds) as excinfo:
        TransactionService(session).create(
            TransactionIn(
                balance_id=balance.id,
                type=TransactionType.expense,
                amount_cents=2_000,
                date=date(2026, 3, 1),
            )
        )
    assert str(excinfo.value) == (
        "Insufficient funds. You only have 10.00 USD but are trying to spend 20.00 USD."
    )
    assert balance.balance_cents == 1_000


def test_transfer_with_rate_and_fee_moves_both_sides() -> None:
    session = make_session()
    usd = open_balance(session, 100_000)
    eur = open_balance(session, 0, currency="EUR", account_id=usd.account_id)
    txns = TransactionService(session)

    transfer = txns.create(
        TransactionIn(
            balance_id=usd.id,
            to_balance_id=eur.id,
            type=TransactionType.transfer,
            amount_cents=10_000,
            fee_cents=100,
            exchange_rate=Decimal("0.9"),
            date=date(2026, 3, 2),
        )
    )
    assert transfer.to_amount_cents == 9_000
    assert usd.balance_cents == 89_900
    assert eur.balance_cents == 9_000

    txns.delete(transfer.id)
    assert usd.balance_cents == 100_000
    assert eur.balance_cents == 0


def test_transfer_without_rate_uses_fx_source(monkeypatch) -> None:
    session = make_session()
    usd = open_balance(session, 100_000)
    eur = open_balance(session, 0, currency="EUR", account_id=usd.account_id)
    monkeypatch.setattr(
        FxRateService, "rate_micros_for_date", lambda self, base, quote, on_date: 920_000
    )

    transfer = TransactionService(session).create(
        TransactionIn(
            balance_id=usd.id,
            to_balance_id=eur.id,
            type=TransactionType.transfer,
            amount_cents=10_000,
            date=date(2026, 3, 2),
        )
    )
    assert transfer.exchange_rate_micros == 920_000
    assert eur.balance_cents == 9_200


def test_transfer_to_same_balance_rejected() -> None:
    session = make_session()
    usd = open_balance(session, 100_000)

    with pytest.raises(BadRequest):
        TransactionService(session).create(
            TransactionIn(
                balance_id=usd.id,
                to_balance_id=usd.id,
                type=TransactionType.transfer,
                amount_cents=10_000,
                date=date(2026, 3, 2),
            )
        )
    assert usd.balance_cents == 100_000


def test_fee_only_allowed_on_transfers() -> None:
    session = make_session()
    balance = open_balance(session, 100_000)

    with pytest.raises(BadRequest):
        TransactionService(session).create(
            TransactionIn(
                balance_id=balance.id,
                type=TransactionType.expense,
                amount_cents=1_000,
                fee_cents=50,
                date=date(2026, 3, 2),
            )
        )


def test_idempotency_key_applies_once() -> None:
    session = make_session()
    balance = open_balance(session, 100_000)
    txns = TransactionService(session)
    data = TransactionIn(
        balance_id=balance.id,
        type=TransactionType.expense,
        amount_cents=5_000,
        date=date(2026, 3, 3),
        idempotency_key="coffee-2026-03-03",
    )

    first = txns.create(data)
    second = txns.create(data)
    assert first.id == second.id
    assert balance.balance_cents == 95_000


def test_idempotency_key_does_not_cross_workspaces() -> None:
    session = make_session()
    live = open_balance(session, 100_000)
    sandbox = open_balance(session, 100_000, workspace=Workspace.test)
    TransactionService(session).create(
        TransactionIn(
            balance_id=live.id,
            type=TransactionType.expense,
            amount_cents=5_000,
            date=date(2026, 3, 3),
            idempotency_key="rent-2026-03",
        )
    )

    with pytest.raises(BadRequest, match="already used"):
        TransactionService(session, workspace=Workspace.test).create(
            TransactionIn(
                balance_id=sandbox.id,
                type=TransactionType.expense,
                amount_cents=5_000,
                date=date(2026, 3, 3),
                idempotency_key="rent-2026-03",
            )
        )
    assert live.balance_cents == 95_000
    assert sandbox.balance_cents == 100_000


def test_other_workspace_balance_is_forbidden() -> None:
    session = make_session()
    sandbox = open_balance(session, 100_000, workspace=Workspace.test)

    with pytest.raises(Forbidden) as excinfo:
        TransactionService(session).create(
            TransactionIn(
                balance_id=sandbox.id,
                type=TransactionType.expense,
                amount_cents=1_000,
                date=date(2026, 3, 3),
            )
        )
    assert str(excinfo.value) == "Cannot use a test account while in production mode."
    assert sandbox.balance_cents == 100_000


def test_update_moves_expense_to_another_balance() -> None:
    session = make_session()
    first = open_balance(session, 100_000)
    second = open_balance(session, 50_000)
    txns = TransactionService(session)

    expense = txns.create(
        TransactionIn(
            balance_id=first.id,
            type=TransactionType.expense,
            amount_cents=5_000,
            date=date(2026, 3, 4),
        )
    )
    txns.update(
        expense.id, TransactionUpdateIn(balance_id=second.id, amount_cents=7_000)
    )

    assert first.balance_cents == 100_000
    assert second.balance_cents == 43_000
    accounts = AccountService(session)
    for balance in (first, second):
        stored, recomputed = accounts.verify(balance.id)
        assert stored == recomputed


def test_update_rejected_when_new_amount_is_unaffordable() -> None:
    session = make_session()
    balance = open_balance(session, 10_000)
    txns = TransactionService(session)
    expense = txns.create(
        TransactionIn(
            balance_id=balance.id,
            type=TransactionType.expense,
            amount_cents=5_000,
            date=date(2026, 3, 4),
        )
    )

    with pytest.raises(InsufficientFunds):
        txns.update(expense.id, TransactionUpdateIn(amount_cents=20_000))

    session.refresh(balance)
    assert balance.balance_cents == 5_000


def test_adjust_balance_records_difference() -> None:
    session = make_session()
    balance = open_balance(session, 10_000)
    accounts = AccountService(session)

    accounts.adjust_balance(balance.id, BalanceAdjustIn(new_balance_cents=7_500))
    assert balance.balance_cents == 7_500
    assert accounts.verify(balance.id) == (7_500, 7_500)

    txns = TransactionService(session).list(balance_id=balance.id)
    assert txns[0].description == "Balance manual adjustment"
    assert txns[0].exclude_from_monthly_stats


def test_totals_by_currency_respect_workspace() -> None:
    session = make_session()
    open_balance(session, 10_000)
    open_balance(session, 5_000)
    open_balance(session, 1_000, currency="EUR")
    open_balance(session, 99_000, workspace=Workspace.test)

    assert AccountService(session).totals_by_currency() == {"EUR": 1_000, "USD": 15_000}
