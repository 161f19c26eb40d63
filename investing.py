"""Trades, holdings and investment cash.

Holdings use average-cost accounting: every sale is booked against the blended
cost basis of the position at the time of the sale.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from database import atomic
from errors import BadRequest, InsufficientFunds, NotFound
from models import (
    Holding,
    InvestmentCashBalance,
    InvestmentTransaction,
    Security,
    TradeType,
)
from recurrence import local_today
from schemas import CashMoveIn, SecurityIn, TradeIn, TradeUpdateIn
from services import get_current_user_id

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
QUANTITY_EPSILON = Decimal("0.000001")

_portfolio_cache: dict[str, dict[str, object]] = {}


class InvestingService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def _cache_key(self) -> str:
        return f"invest:portfolio:{self.user_id}"

    def _invalidate_portfolio_cache(self) -> None:
        prefix = self._cache_key()
        for key in [key for key in _portfolio_cache if key.startswith(prefix)]:
            del _portfolio_cache[key]

    # Securities

    def list_securities(self) -> list[Security]:
        stmt = (
            select(Security)
            .where(Security.user_id == self.user_id)
            .order_by(Security.ticker)
        )
        return list(self.session.scalars(stmt))

    def add_security(self, data: SecurityIn) -> Security:
        ticker = data.ticker.strip().upper()
        existing = self.session.scalar(
            select(Security).where(
                Security.user_id == self.user_id, Security.ticker == ticker
            )
        )
        if existing:
            raise BadRequest(f"{ticker} is already in your portfolio")
        security = Security(
            user_id=self.user_id,
            ticker=ticker,
            name=data.name.strip(),
            currency_code=data.currency_code.upper(),
        )
        with atomic(self.session):
            self.session.add(security)
            self.session.flush()
        return security

    def get_security(self, security_id: int) -> Security:
        security = self.session.get(Security, security_id)
        if not security or security.user_id != self.user_id:
            raise NotFound("Stock not found")
        return security

    def delete_security(self, security_id: int) -> None:
        with atomic(self.session):
            security = self.get_security(security_id)
            if self._holding(security.id) is not None:
                raise BadRequest(
                    "Cannot delete stock with active holdings. Sell all shares first."
                )
            history = self.session.scalar(
                select(func.count(InvestmentTransaction.id)).where(
                    InvestmentTransaction.user_id == self.user_id,
                    InvestmentTransaction.security_id == security.id,
                )
            )
            if history:
                raise BadRequest("Cannot delete stock with transaction history.")
            self.session.delete(security)
            self.session.flush()

    # Cash

    def _cash(self, currency_code: str) -> Optional[InvestmentCashBalance]:
        return self.session.scalar(
            select(InvestmentCashBalance)
            .where(
                InvestmentCashBalance.user_id == self.user_id,
                InvestmentCashBalance.currency_code == currency_code.upper(),
            )
            .with_for_update()
        )

    def _cash_or_create(self, currency_code: str) -> InvestmentCashBalance:
        cash = self._cash(currency_code)
        if cash is None:
            cash = InvestmentCashBalance(
                user_id=self.user_id,
                currency_code=currency_code.upper(),
                available_balance=ZERO,
                settled_balance=ZERO,
            )
            self.session.add(cash)
            self.session.flush()
        return cash

    @staticmethod
    def _move_cash(cash: InvestmentCashBalance, amount: Decimal) -> None:
        if cash.available_balance + amount < ZERO:
            raise InsufficientFunds(
                f"Insufficient investment cash balance. "
                f"Available: {cash.available_balance}, Required: {-amount}"
            )
        cash.available_balance = cash.available_balance + amount
        cash.settled_balance = cash.settled_balance + amount

    def cash_balances(self) -> list[InvestmentCashBalance]:
        stmt = (
            select(InvestmentCashBalance)
            .where(InvestmentCashBalance.user_id == self.user_id)
            .order_by(InvestmentCashBalance.currency_code)
        )
        return list(self.session.scalars(stmt))

    def deposit(self, data: CashMoveIn) -> InvestmentCashBalance:
        with atomic(self.session):
            cash = self._cash_or_create(data.currency_code)
            self._move_cash(cash, data.amount)
            self.session.flush()
        self._invalidate_portfolio_cache()
        return cash

    def withdraw(self, data: CashMoveIn) -> InvestmentCashBalance:
        with atomic(self.session):
            cash = self._cash(data.currency_code)
            if cash is None:
                raise InsufficientFunds("Insufficient investment cash balance")
            self._move_cash(cash, -data.amount)
            self.session.flush()
        self._invalidate_portfolio_cache()
        return cash

    # Trades

    def _holding(self, security_id: int) -> Optional[Holding]:
        return self.session.scalar(
            select(Holding)
            .where(Holding.user_id == self.user_id, Holding.security_id == security_id)
            .with_for_update()
        )

    def list_holdings(self) -> list[Holding]:
        stmt = (
            select(Holding)
            .where(Holding.user_id == self.user_id)
            .order_by(Holding.security_id)
        )
        return list(self.session.scalars(stmt))

    def list_trades(self, security_id: Optional[int] = None) -> list[InvestmentTransaction]:
        stmt = select(InvestmentTransaction).where(
            InvestmentTransaction.user_id == self.user_id
        )
        if security_id is not None:
            stmt = stmt.where(InvestmentTransaction.security_id == security_id)
        stmt = stmt.order_by(
            InvestmentTransaction.date.desc(), InvestmentTransaction.id.desc()
        )
        return list(self.session.scalars(stmt))

    def buy(self, data: TradeIn) -> InvestmentTransaction:
        with atomic(self.session):
            security = self.get_security(data.security_id)
            total = data.quantity * data.price
            cash = self._cash(data.currency_code)
            available = cash.available_balance if cash is not None else ZERO
            if cash is None or available < total:
                raise InsufficientFunds(
                    f"Insufficient investment cash balance. "
                    f"Available: {available}, Required: {total}"
                )

            holding = self._holding(security.id)
            if holding is None:
                holding = Holding(
                    user_id=self.user_id,
                    security_id=security.id,
                    quantity=data.quantity,
                    average_cost_basis=data.price,
                )
                self.session.add(holding)
            else:
                new_quantity = holding.quantity + data.quantity
                holding.average_cost_basis = (
                    holding.quantity * holding.average_cost_basis + total
                ) / new_quantity
                holding.quantity = new_quantity

            self._move_cash(cash, -total)
            trade = InvestmentTransaction(
                user_id=self.user_id,
                security_id=security.id,
                type=TradeType.buy,
                date=data.date or local_today(),
                quantity=data.quantity,
                price_per_share=data.price,
                total_amount=total,
                currency_code=data.currency_code.upper(),
                cash_flow=-total,
                cash_balance_after=cash.available_balance,
                notes=data.notes,
            )
            self.session.add(trade)
            self.session.flush()
        self._invalidate_portfolio_cache()
        logger.info(
            f"trade: type=buy security_id={security.id} quantity={data.quantity}"
        )
        return trade

    def sell(self, data: TradeIn) -> InvestmentTransaction:
        with atomic(self.session):
            security = self.get_security(data.security_id)
            holding = self._holding(security.id)
            if holding is None:
                raise NotFound("You do not own this stock")
            if holding.quantity < data.quantity:
                raise BadRequest("Insufficient quantity to sell")

            total = data.quantity * data.price
            realized_pl = data.quantity * (data.price - holding.average_cost_basis)

            cash = self._cash_or_create(data.currency_code)
            self._move_cash(cash, total)

            remaining = holding.quantity - data.quantity
            if remaining < QUANTITY_EPSILON:
                self.session.delete(holding)
            else:
                holding.quantity = remaining

            trade = InvestmentTransaction(
                user_id=self.user_id,
                security_id=security.id,
                type=TradeType.sell,
                date=data.date or local_today(),
                quantity=data.quantity,
                price_per_share=data.price,
                total_amount=total,
                currency_code=data.currency_code.upper(),
                realized_pl=realized_pl,
                cash_flow=total,
                cash_balance_after=cash.available_balance,
                notes=data.notes,
            )
            self.session.add(trade)
            self.session.flush()
        self._invalidate_portfolio_cache()
        logger.info(
            f"trade: type=sell security_id={security.id} quantity={data.quantity} "
            f"realized_pl={realized_pl}"
        )
        return trade

    def _trade(self, trade_id: int) -> InvestmentTransaction:
        trade = self.session.get(InvestmentTransaction, trade_id)
        if not trade or trade.user_id != self.user_id:
            raise NotFound("Transaction not found")
        return trade

    def update_trade(
        self, trade_id: int, data: TradeUpdateIn
    ) -> InvestmentTransaction:
        with atomic(self.session):
            trade = self._trade(trade_id)
            old_flow = trade.cash_flow
            if data.date is not None:
                trade.date = data.date
            if data.quantity is not None:
                trade.quantity = data.quantity
            if data.price is not None:
                trade.price_per_share = data.price
            if data.notes is not None:
                trade.notes = data.notes
            trade.total_amount = trade.quantity * trade.price_per_share
            trade.cash_flow = (
                -trade.total_amount
                if trade.type == TradeType.buy
                else trade.total_amount
            )
            cash = self._cash_or_create(trade.currency_code)
            delta = trade.cash_flow - old_flow
            self._move_cash(cash, delta)
            self.session.flush()
            self._shift_cash_after(trade, delta, inclusive=True)
            self._recalculate(trade.security_id)
        self._invalidate_portfolio_cache()
        return trade

    def delete_trade(self, trade_id: int) -> None:
        with atomic(self.session):
            trade = self._trade(trade_id)
            security_id = trade.security_id
            cash = self._cash_or_create(trade.currency_code)
            self._move_cash(cash, -trade.cash_flow)
            self._shift_cash_after(trade, -trade.cash_flow, inclusive=False)
            self.session.delete(trade)
            self.session.flush()
            self._recalculate(security_id)
        self._invalidate_portfolio_cache()

    @staticmethod
    def _replay_key(trade: InvestmentTransaction):
        return (trade.date, trade.created_at, trade.id)

    def _shift_cash_after(
        self, anchor: InvestmentTransaction, delta: Decimal, *, inclusive: bool
    ) -> None:
        """Move the cash snapshot of every trade at or after ``anchor`` by ``delta``."""
        if not delta:
            return
        anchor_key = self._replay_key(anchor)
        trades = self.session.scalars(
            select(InvestmentTransaction).where(
                InvestmentTransaction.user_id == self.user_id,
                InvestmentTransaction.currency_code == anchor.currency_code,
            )
        ).all()
        for trade in trades:
            key = self._replay_key(trade)
            if key > anchor_key or (inclusive and key == anchor_key):
                trade.cash_balance_after = trade.cash_balance_after + delta
        self.session.flush()

    def recalculate_holding(self, security_id: int) -> Optional[Holding]:
        with atomic(self.session):
            self.get_security(security_id)
            holding = self._recalculate(security_id)
        self._invalidate_portfolio_cache()
        return holding

    def _recalculate(self, security_id: int) -> Optional[Holding]:
        trades = self.session.scalars(
            select(InvestmentTransaction)
            .where(
                InvestmentTransaction.user_id == self.user_id,
                InvestmentTransaction.security_id == security_id,
            )
            .order_by(
                InvestmentTransaction.date,
                InvestmentTransaction.created_at,
                InvestmentTransaction.id,
            )
        ).all()

        quantity = ZERO
        total_cost = ZERO
        for trade in trades:
            if trade.type == TradeType.buy:
                quantity += trade.quantity
                total_cost += trade.quantity * trade.price_per_share
            else:
                if trade.quantity > quantity + QUANTITY_EPSILON:
                    raise BadRequest(
                        f"Trade history sells more shares than were held on {trade.date}"
                    )
                average = total_cost / quantity if quantity > 0 else ZERO
                trade.realized_pl = trade.quantity * (trade.price_per_share - average)
                total_cost -= trade.quantity * average
                quantity -= trade.quantity
            if quantity < QUANTITY_EPSILON:
                quantity = ZERO
                total_cost = ZERO

        holding = self._holding(security_id)
        if quantity == ZERO:
            if holding is not None:
                self.session.delete(holding)
            self.session.flush()
            return None

        basis = total_cost / quantity
        if holding is None:
            holding = Holding(
                user_id=self.user_id,
                security_id=security_id,
                quantity=quantity,
                average_cost_basis=basis,
            )
            self.session.add(holding)
        else:
            holding.quantity = quantity
            holding.average_cost_basis = basis
        self.session.flush()
        return holding

    def portfolio_summary(self) -> dict[str, object]:
        key = self._cache_key()
        cached = _portfolio_cache.get(key)
        if cached is not None:
            return cached

        positions = []
        cost_by_currency: dict[str, Decimal] = {}
        for holding in self.list_holdings():
            security = holding.security
            cost = holding.quantity * holding.average_cost_basis
            positions.append(
                {
                    "security_id": security.id,
                    "ticker": security.ticker,
                    "quantity": holding.quantity,
                    "average_cost_basis": holding.average_cost_basis,
                    "cost_value": cost,
                    "currency": security.currency_code,
                }
            )
            cost_by_currency[security.currency_code] = (
                cost_by_currency.get(security.currency_code, ZERO) + cost
            )
        realized = self.session.scalar(
            select(func.coalesce(func.sum(InvestmentTransaction.realized_pl), 0)).where(
                InvestmentTransaction.user_id == self.user_id,
                InvestmentTransaction.type == TradeType.sell,
            )
        )
        summary = {
            "positions": positions,
            "cost_by_currency": cost_by_currency,
            "realized_pl": Decimal(str(realized or 0)),
            "cash": {
                cash.currency_code: cash.available_balance
                for cash in self.cash_balances()
            },
        }
        _portfolio_cache[key] = summary
        return summary
