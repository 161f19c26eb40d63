"""Balance store and reconciliation primitives.

Every place that moves money goes through :class:`BalanceStore`. A transaction's
effect on balances is derived from its stored columns by
:func:`transaction_deltas`, so applying and reverting are the same computation
with opposite signs.
"""

from __future__ import annotations

from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from errors import Forbidden, InsufficientFunds, NotFound
from models import (
    Account,
    CurrencyBalance,
    LifecycleStatus,
    Transaction,
    TransactionType,
    Workspace,
)

RATE_SCALE = 1_000_000


def convert_cents(amount_cents: int, rate_micros: int) -> int:
    converted = (Decimal(amount_cents) * Decimal(rate_micros) / RATE_SCALE).quantize(
        Decimal("1"), rounding=ROUND_HALF_UP
    )
    return int(converted)


def format_cents(cents: int, currency_code: str) -> str:
    return f"{cents / 100:.2f} {currency_code}"


def transaction_deltas(txn: Transaction) -> list[tuple[int, int]]:
    """Signed (balance id, cents) effects of a transaction when it is active."""
    if txn.type == TransactionType.income:
        return [(txn.currency_balance_id, txn.amount_cents)]
    if txn.type == TransactionType.expense:
        return [(txn.currency_balance_id, -txn.amount_cents + txn.cashback_cents)]
    deltas = [(txn.currency_balance_id, -(txn.amount_cents + txn.fee_cents))]
    if txn.to_currency_balance_id is not None:
        deltas.append((txn.to_currency_balance_id, txn.to_amount_cents or 0))
    return deltas


def required_funds(txn: Transaction) -> int:
    if txn.type == TransactionType.income:
        return 0
    if txn.type == TransactionType.expense:
        return txn.amount_cents
    return txn.amount_cents + txn.fee_cents


class BalanceStore:
    def __init__(self, session: Session, user_id: int, workspace: Workspace) -> None:
        self.session = session
        self.user_id = user_id
        self.workspace = workspace

    def get(self, balance_id: int, *, for_update: bool = True) -> CurrencyBalance:
        stmt = select(CurrencyBalance).where(CurrencyBalance.id == balance_id)
        if for_update:
            stmt = stmt.with_for_update()
        balance = self.session.scalar(stmt)
        if not balance:
            raise NotFound("Balance not found")
        self._check_access(balance.account)
        return balance

    def _check_access(self, account: Account) -> None:
        if account.user_id != self.user_id:
            raise Forbidden("Balance does not belong to you")
        if account.workspace != self.workspace:
            raise Forbidden(
                f"Cannot use a {account.workspace.value} account while in "
                f"{self.workspace.value} mode."
            )

    def find_in_account(
        self, account_id: int, currency_code: str
    ) -> Optional[CurrencyBalance]:
        return self.session.scalar(
            select(CurrencyBalance)
            .where(
                CurrencyBalance.account_id == account_id,
                CurrencyBalance.currency_code == currency_code.upper(),
            )
            .with_for_update()
        )

    def ensure_funds(
        self, balance: CurrencyBalance, required_cents: int, action: str = "spend"
    ) -> None:
        if required_cents > balance.balance_cents:
            raise InsufficientFunds(
                f"Insufficient funds. You only have "
                f"{format_cents(balance.balance_cents, balance.currency_code)} "
                f"but are trying to {action} "
                f"{format_cents(required_cents, balance.currency_code)}."
            )

    def apply_delta(self, balance_id: int, delta_cents: int) -> None:
        if not delta_cents:
            return
        balance = self.session.get(CurrencyBalance, balance_id)
        if balance is None:
            raise NotFound("Balance not found")
        balance.balance_cents = balance.balance_cents + delta_cents
        # Flush per delta so the version check covers every write.
        self.session.flush()

    def apply(self, txn: Transaction) -> None:
        for balance_id, delta in transaction_deltas(txn):
            self.apply_delta(balance_id, delta)

    def revert(self, txn: Transaction) -> None:
        for balance_id, delta in transaction_deltas(txn):
            self.apply_delta(balance_id, -delta)

    def post(self, txn: Transaction) -> Transaction:
        self.session.add(txn)
        self.session.flush()
        if txn.lifecycle_status == LifecycleStatus.active:
            self.apply(txn)
        return txn

    def discard(self, txn: Transaction) -> None:
        if txn.lifecycle_status == LifecycleStatus.active:
            self.revert(txn)
        self.session.delete(txn)
        self.session.flush()

    def recompute(self, balance_id: int) -> int:
        """Sum of the signed deltas of every active transaction touching the balance."""
        txns = self.session.scalars(
            select(Transaction).where(
                Transaction.lifecycle_status == LifecycleStatus.active,
                or_(
                    Transaction.currency_balance_id == balance_id,
                    Transaction.to_currency_balance_id == balance_id,
                ),
            )
        ).all()
        total = 0
        for txn in txns:
            for target_id, delta in transaction_deltas(txn):
                if target_id == balance_id:
                    total += delta
        return total
