from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from database import Base
from errors import BadRequest, InsufficientFunds, NotFound
from investing import InvestingService
from models import TradeType
from schemas import CashMoveIn, SecurityIn, TradeIn, TradeUpdateIn


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def trade(security_id: int, quantity: str, price: str, day: int) -> TradeIn:
    return TradeIn(
        security_id=security_id,
        quantity=Decimal(quantity),
        price=Decimal(price),
        currency_code="USD",
        date=date(2026, 2, day),
    )


def setup_position(session):
    invest = InvestingService(session)
    acme = invest.add_security(SecurityIn(ticker="acme", name="Acme", currency_code="USD"))
    invest.deposit(CashMoveIn(currency_code="USD", amount=Decimal("5000")))
    invest.buy(trade(acme.id, "10", "100", 1))
    invest.buy(trade(acme.id, "10", "120", 2))
    sale = invest.sell(trade(acme.id, "5", "150", 3))
    return invest, acme, sale


def cash(invest: InvestingService) -> Decimal:
    (balance,) = invest.cash_balances()
    return balance.available_balance


def test_average_cost_buy_and_sell() -> None:
    session = make_session()
    invest, acme, sale = setup_position(session)

    assert acme.ticker == "ACME"
    assert sale.type == TradeType.sell
    assert sale.realized_pl == Decimal("200")
    (holding,) = invest.list_holdings()
    assert holding.quantity == Decimal("15")
    assert holding.average_cost_basis == Decimal("110")
    assert cash(invest) == Decimal("3550")
    assert sale.cash_balance_after == Decimal("3550")


def test_recalculate_holding_is_idempotent() -> None:
    session = make_session()
    invest, acme, sale = setup_position(session)

    first = invest.recalculate_holding(acme.id)
    snapshot = (first.quantity, first.average_cost_basis, sale.realized_pl)
    second = invest.recalculate_holding(acme.id)

    assert (second.quantity, second.average_cost_basis, sale.realized_pl) == snapshot
    assert snapshot == (Decimal("15"), Decimal("110"), Decimal("200"))


def test_buy_needs_investment_cash() -> None:
    session = make_session()
    invest = InvestingService(session)
    acme = invest.add_security(SecurityIn(ticker="ACME", name="Acme", currency_code="USD"))
    invest.deposit(CashMoveIn(currency_code="USD", amount=Decimal("500")))

    with pytest.raises(InsufficientFunds) as excinfo:
        invest.buy(trade(acme.id, "10", "100", 1))
    assert "Available: 500" in str(excinfo.value)
    assert invest.list_holdings() == []


def test_sell_checks_holding_and_quantity() -> None:
    session = make_session()
    invest = InvestingService(session)
    acme = invest.add_security(SecurityIn(ticker="ACME", name="Acme", currency_code="USD"))

    with pytest.raises(NotFound, match="You do not own this stock"):
        invest.sell(trade(acme.id, "1", "100", 1))

    invest.deposit(CashMoveIn(currency_code="USD", amount=Decimal("1000")))
    invest.buy(trade(acme.id, "5", "100", 1))
    with pytest.raises(BadRequest, match="Insufficient quantity to sell"):
        invest.sell(trade(acme.id, "6", "100", 2))


def test_selling_everything_closes_the_position() -> None:
    session = make_session()
    invest = InvestingService(session)
    acme = invest.add_security(SecurityIn(ticker="ACME", name="Acme", currency_code="USD"))
    invest.deposit(CashMoveIn(currency_code="USD", amount=Decimal("1000")))
    invest.buy(trade(acme.id, "5", "100", 1))

    invest.sell(trade(acme.id, "5", "90", 2))
    assert invest.list_holdings() == []
    assert cash(invest) == Decimal("950")


def test_delete_trade_replays_history() -> None:
    session = make_session()
    invest, acme, sale = setup_position(session)
    second_buy = [t for t in invest.list_trades(acme.id) if t.date == date(2026, 2, 2)][0]

    invest.delete_trade(second_buy.id)

    (holding,) = invest.list_holdings()
    assert holding.quantity == Decimal("5")
    assert holding.average_cost_basis == Decimal("100")
    assert sale.realized_pl == Decimal("250")
    assert cash(invest) == Decimal("4750")
    first_buy = invest.list_trades(acme.id)[-1]
    assert first_buy.cash_balance_after == Decimal("4000")
    assert sale.cash_balance_after == Decimal("4750")


def test_update_trade_applies_cash_difference() -> None:
    session = make_session()
    invest, acme, sale = setup_position(session)
    first_buy = [t for t in invest.list_trades(acme.id) if t.date == date(2026, 2, 1)][0]

    invest.update_trade(first_buy.id, TradeUpdateIn(price=Decimal("90")))

    (holding,) = invest.list_holdings()
    assert holding.quantity == Decimal("15")
    assert holding.average_cost_basis == Decimal("105")
    assert sale.realized_pl == Decimal("225")
    assert cash(invest) == Decimal("3650")
    snapshots = sorted(
        (t.date, t.cash_balance_after) for t in invest.list_trades(acme.id)
    )
    assert [after for _, after in snapshots] == [
        Decimal("4100"),
        Decimal("2900"),
        Decimal("3650"),
    ]


def test_history_that_oversells_is_rejected() -> None:
    session = make_session()
    invest, acme, sale = setup_position(session)

    with pytest.raises(BadRequest):
        invest.update_trade(sale.id, TradeUpdateIn(quantity=Decimal("25")))

    (holding,) = invest.list_holdings()
    assert holding.quantity == Decimal("15")
    assert cash(invest) == Decimal("3550")


def test_withdraw_and_security_guards() -> None:
    session = make_session()
    invest, acme, _ = setup_position(session)

    with pytest.raises(InsufficientFunds):
        invest.withdraw(CashMoveIn(currency_code="USD", amount=Decimal("10000")))
    invest.withdraw(CashMoveIn(currency_code="USD", amount=Decimal("550")))
    assert cash(invest) == Decimal("3000")

    with pytest.raises(BadRequest, match="active holdings"):
        invest.delete_security(acme.id)
    with pytest.raises(BadRequest, match="already in your portfolio"):
        invest.add_security(SecurityIn(ticker="ACME", name="Acme", currency_code="USD"))


def test_portfolio_summary_tracks_mutations() -> None:
    session = make_session()
    invest, acme, _ = setup_position(session)

    summary = invest.portfolio_summary()
    assert summary["realized_pl"] == Decimal("200")
    assert summary["cost_by_currency"] == {"USD": Decimal("1650")}
    assert invest.portfolio_summary() is summary

    invest.sell(trade(acme.id, "5", "110", 4))
    refreshed = invest.portfolio_summary()
    assert refreshed is not summary
    assert refreshed["realized_pl"] == Decimal("200")
    assert refreshed["positions"][0]["quantity"] == Decimal("10")
