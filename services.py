from __future__ import annotations

import logging
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session, joinedload

from config import get_settings
from database import atomic
from errors import BadRequest, Forbidden, NotFound
from fx_rates import FxRateService
from ledger import RATE_SCALE, BalanceStore, convert_cents, format_cents
from models import (
    Account,
    Category,
    CurrencyBalance,
    Debt,
    DebtDirection,
    DebtPayment,
    DebtStatus,
    LifecycleStatus,
    ObligationPayment,
    ObligationStatus,
    SplitParticipant,
    SplitPayment,
    SplitStatus,
    SubscriptionPayment,
    SystemCategory,
    Transaction,
    TransactionSplit,
    TransactionType,
    Workspace,
    utcnow,
)
from recurrence import local_today
from schemas import (
    AccountIn,
    BalanceAdjustIn,
    CategoryIn,
    CurrencyBalanceIn,
    DebtIn,
    DebtPaymentIn,
    DebtPaymentUpdateIn,
    DebtUpdateIn,
    DistributionIn,
    ParticipantIn,
    QuickSplitIn,
    SettleSplitIn,
    SplitPaymentIn,
    SplitsIn,
    SplitUpdateIn,
    TransactionIn,
    TransactionUpdateIn,
)

logger = logging.getLogger(__name__)

# Amounts within one cent of each other are treated as equal.
EPSILON_CENTS = 1

SYSTEM_CATEGORY_TYPES: dict[SystemCategory, Optional[TransactionType]] = {
    SystemCategory.transfer: TransactionType.transfer,
    SystemCategory.debt: None,
    SystemCategory.debt_repayment: None,
    SystemCategory.split_payment: TransactionType.income,
    SystemCategory.mortgage: TransactionType.expense,
    SystemCategory.bills: TransactionType.expense,
    SystemCategory.subscriptions: TransactionType.expense,
    SystemCategory.adjustment: None,
    SystemCategory.investment: None,
}


def get_current_user_id() -> int:
    return 1


def seed_system_categories(session: Session) -> int:
    existing = set(
        session.scalars(
            select(Category.system_key).where(Category.system_key.is_not(None))
        ).all()
    )
    created = 0
    for key in SystemCategory:
        if key in existing:
            continue
        session.add(
            Category(
                user_id=None,
                name=key.value,
                type=SYSTEM_CATEGORY_TYPES[key],
                system_key=key,
            )
        )
        created += 1
    session.flush()
    if created:
        logger.info(f"category_registry_seeded: created={created}")
    return created


def equal_shares(total_cents: int, parts: int) -> list[int]:
    """Split a total into ``parts`` cent amounts; the first ones absorb the remainder."""
    if parts <= 0:
        raise BadRequest("At least one participant is required")
    base, extra = divmod(total_cents, parts)
    return [base + (1 if index < extra else 0) for index in range(parts)]


def _same_month(first: datetime, second: datetime) -> bool:
    return first.year == second.year and first.month == second.month


class CategoryRegistry:
    def __init__(self, session: Session) -> None:
        self.session = session
        self._ids: dict[SystemCategory, int] = {}

    def id_for(self, key: SystemCategory) -> int:
        if key not in self._ids:
            category_id = self.session.scalar(
                select(Category.id).where(Category.system_key == key)
            )
            if category_id is None:
                raise RuntimeError(f"System category '{key.value}' is not registered")
            self._ids[key] = category_id
        return self._ids[key]


class CategoryService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def list_all(self) -> list[Category]:
        stmt = (
            select(Category)
            .where(
                (Category.user_id == self.user_id) | (Category.user_id.is_(None))
            )
            .order_by(Category.system_key.is_not(None), Category.name)
        )
        return list(self.session.scalars(stmt))

    def create(self, data: CategoryIn) -> Category:
        name = data.name.strip()
        existing = self.session.scalar(
            select(Category).where(
                (Category.user_id == self.user_id) | (Category.user_id.is_(None)),
                func.lower(Category.name) == name.lower(),
            )
        )
        if existing:
            raise BadRequest("Category already exists")
        category = Category(
            user_id=self.user_id, name=name, type=data.type, color=data.color
        )
        with atomic(self.session):
            self.session.add(category)
            self.session.flush()
        return category

    def resolve(self, category_id: int, txn_type: TransactionType) -> Category:
        category = self.session.get(Category, category_id)
        if not category or category.user_id not in (None, self.user_id):
            raise NotFound("Category not found")
        if category.type is not None and category.type != txn_type:
            raise BadRequest("Category type mismatch")
        return category


class AccountService:
    def __init__(
        self,
        session: Session,
        user_id: Optional[int] = None,
        workspace: Workspace = Workspace.production,
    ) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()
        self.workspace = workspace
        self.store = BalanceStore(session, self.user_id, workspace)
        self.categories = CategoryRegistry(session)

    def create(self, data: AccountIn) -> Account:
        account = Account(
            user_id=self.user_id,
            workspace=self.workspace,
            name=data.name.strip(),
            type=data.type,
        )
        with atomic(self.session):
            self.session.add(account)
            self.session.flush()
        return account

    def get(self, account_id: int) -> Account:
        account = self.session.scalar(
            select(Account)
            .options(joinedload(Account.balances))
            .where(Account.id == account_id)
        )
        if not account or account.user_id != self.user_id:
            raise NotFound("Account not found")
        if account.workspace != self.workspace:
            raise Forbidden(
                f"Cannot use a {account.workspace.value} account while in "
                f"{self.workspace.value} mode."
            )
        return account

    def list_all(self) -> list[Account]:
        stmt = (
            select(Account)
            .options(joinedload(Account.balances))
            .where(Account.user_id == self.user_id, Account.workspace == self.workspace)
            .order_by(Account.name)
        )
        return list(self.session.scalars(stmt).unique())

    def add_currency(self, account_id: int, data: CurrencyBalanceIn) -> CurrencyBalance:
        account = self.get(account_id)
        currency = data.currency_code.upper()
        if self.store.find_in_account(account.id, currency):
            raise BadRequest(f"Currency {currency} already exists in this account")
        with atomic(self.session):
            balance = CurrencyBalance(
                account_id=account.id, currency_code=currency, balance_cents=0
            )
            self.session.add(balance)
            self.session.flush()
            if data.initial_balance_cents:
                self._post_adjustment(
                    balance, data.initial_balance_cents, "Opening balance"
                )
        return balance

    def adjust_balance(self, balance_id: int, data: BalanceAdjustIn) -> CurrencyBalance:
        with atomic(self.session):
            balance = self.store.get(balance_id)
            diff = data.new_balance_cents - balance.balance_cents
            if abs(diff) < EPSILON_CENTS:
                return balance
            self._post_adjustment(
                balance, diff, data.description or "Balance manual adjustment"
            )
        return balance

    def _post_adjustment(
        self, balance: CurrencyBalance, diff_cents: int, description: str
    ) -> Transaction:
        txn = Transaction(
            user_id=self.user_id,
            currency_balance_id=balance.id,
            category_id=self.categories.id_for(SystemCategory.adjustment),
            type=TransactionType.income if diff_cents > 0 else TransactionType.expense,
            amount_cents=abs(diff_cents),
            fee_cents=0,
            cashback_cents=0,
            description=description,
            date=local_today(),
            lifecycle_status=LifecycleStatus.active,
            exclude_from_monthly_stats=True,
        )
        return self.store.post(txn)

    def totals_by_currency(self) -> dict[str, int]:
        rows = self.session.execute(
            select(
                CurrencyBalance.currency_code,
                func.coalesce(func.sum(CurrencyBalance.balance_cents), 0),
            )
            .join(Account, CurrencyBalance.account_id == Account.id)
            .where(Account.user_id == self.user_id, Account.workspace == self.workspace)
            .group_by(CurrencyBalance.currency_code)
            .order_by(CurrencyBalance.currency_code)
        ).all()
        return {currency: int(total) for currency, total in rows}

    def verify(self, balance_id: int) -> tuple[int, int]:
        balance = self.store.get(balance_id, for_update=False)
        return balance.balance_cents, self.store.recompute(balance.id)


class TransactionService:
    def __init__(
        self,
        session: Session,
        user_id: Optional[int] = None,
        workspace: Workspace = Workspace.production,
    ) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()
        self.workspace = workspace
        self.store = BalanceStore(session, self.user_id, workspace)
        self.categories = CategoryRegistry(session)

    def create(self, data: TransactionIn) -> Transaction:
        if data.idempotency_key:
            existing = self.session.scalar(
                select(Transaction).where(
                    Transaction.user_id == self.user_id,
                    Transaction.idempotency_key == data.idempotency_key,
                )
            )
            if existing:
                # Keys are unique per user, so a match elsewhere is a conflict.
                owner = existing.balance.account
                if (
                    owner.workspace != self.workspace
                    or existing.lifecycle_status != LifecycleStatus.active
                ):
                    raise BadRequest(
                        "Idempotency key was already used for another transaction"
                    )
                return existing

        with atomic(self.session):
            txn = self._create(data)
        return txn

    def _create(self, data: TransactionIn) -> Transaction:
        self._validate_shape(
            data.type,
            data.amount_cents,
            data.to_balance_id,
            data.fee_cents,
            data.cashback_cents,
        )
        balance = self.store.get(data.balance_id)
        category_id = self._category_id(data.category_id, data.type)

        to_amount_cents = None
        rate_micros = RATE_SCALE
        if data.type == TransactionType.transfer:
            target = self.store.get(data.to_balance_id)
            rate_micros = self._rate_micros(balance, target, data.exchange_rate, data.date)
            to_amount_cents = convert_cents(data.amount_cents, rate_micros)

        if data.type != TransactionType.income:
            self.store.ensure_funds(balance, data.amount_cents + data.fee_cents)

        txn = Transaction(
            user_id=self.user_id,
            currency_balance_id=balance.id,
            to_currency_balance_id=data.to_balance_id,
            category_id=category_id,
            type=data.type,
            amount_cents=data.amount_cents,
            fee_cents=data.fee_cents,
            exchange_rate_micros=rate_micros,
            to_amount_cents=to_amount_cents,
            cashback_cents=data.cashback_cents,
            description=data.description,
            date=data.date,
            lifecycle_status=LifecycleStatus.active,
            exclude_from_monthly_stats=data.exclude_from_monthly_stats,
            idempotency_key=data.idempotency_key,
        )
        self.store.post(txn)

        if data.split:
            if data.type != TransactionType.expense:
                raise BadRequest("Only expenses can be split")
            SplitBillService(self.session, self.user_id, self.workspace).quick_split(
                txn, data.split
            )

        if data.type == TransactionType.expense:
            from obligations import RecurringPaymentLinker

            RecurringPaymentLinker(self.session).link(txn)
        return txn

    @staticmethod
    def _validate_shape(
        txn_type: TransactionType,
        amount_cents: int,
        to_balance_id: Optional[int],
        fee_cents: int,
        cashback_cents: int,
    ) -> None:
        if txn_type == TransactionType.transfer:
            if to_balance_id is None:
                raise BadRequest("Transfers require a target balance")
        elif to_balance_id is not None:
            raise BadRequest("Only transfers can have a target balance")
        if fee_cents and txn_type != TransactionType.transfer:
            raise BadRequest("Fees only apply to transfers")
        if cashback_cents and txn_type != TransactionType.expense:
            raise BadRequest("Cashback only applies to expenses")
        if cashback_cents > amount_cents:
            raise BadRequest("Cashback cannot exceed the amount")

    def _category_id(
        self, category_id: Optional[int], txn_type: TransactionType
    ) -> Optional[int]:
        if category_id is not None:
            return CategoryService(self.session, self.user_id).resolve(
                category_id, txn_type
            ).id
        if txn_type == TransactionType.transfer:
            return self.categories.id_for(SystemCategory.transfer)
        return None

    def _rate_micros(
        self,
        source: CurrencyBalance,
        target: CurrencyBalance,
        exchange_rate: Optional[Decimal],
        on_date: date,
    ) -> int:
        if source.id == target.id:
            raise BadRequest("Cannot transfer to the same balance")
        if exchange_rate is not None:
            return FxRateService.rate_to_micros(exchange_rate)
        if source.currency_code == target.currency_code:
            return RATE_SCALE
        try:
            return FxRateService().rate_micros_for_date(
                source.currency_code, target.currency_code, on_date
            )
        except RuntimeError as exc:
            logger.warning(f"fx_lookup_failed: {exc}")
            raise BadRequest(
                f"No exchange rate available for {source.currency_code}->"
                f"{target.currency_code}; provide exchange_rate"
            ) from exc

    def get(self, transaction_id: int) -> Transaction:
        txn = self.session.get(Transaction, transaction_id)
        if (
            not txn
            or txn.user_id != self.user_id
            or txn.lifecycle_status != LifecycleStatus.active
        ):
            raise NotFound("Transaction not found")
        self.store.get(txn.currency_balance_id, for_update=False)
        return txn

    def list(
        self,
        *,
        balance_id: Optional[int] = None,
        txn_type: Optional[TransactionType] = None,
        start: Optional[date] = None,
        end: Optional[date] = None,
        limit: int = 100,
    ) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .join(CurrencyBalance, Transaction.currency_balance_id == CurrencyBalance.id)
            .join(Account, CurrencyBalance.account_id == Account.id)
            .where(
                Account.user_id == self.user_id,
                Account.workspace == self.workspace,
                Transaction.lifecycle_status == LifecycleStatus.active,
            )
        )
        if balance_id is not None:
            stmt = stmt.where(
                (Transaction.currency_balance_id == balance_id)
                | (Transaction.to_currency_balance_id == balance_id)
            )
        if txn_type is not None:
            stmt = stmt.where(Transaction.type == txn_type)
        if start is not None:
            stmt = stmt.where(Transaction.date >= start)
        if end is not None:
            stmt = stmt.where(Transaction.date <= end)
        stmt = stmt.order_by(Transaction.date.desc(), Transaction.id.desc()).limit(limit)
        return list(self.session.scalars(stmt))

    def update(self, transaction_id: int, data: TransactionUpdateIn) -> Transaction:
        with atomic(self.session):
            txn = self.get(transaction_id)
            if txn.debt_id is not None or txn.debt_payment_id is not None:
                raise BadRequest(
                    "Debt transactions are managed through their debt and payments"
                )

            balance_id = (
                data.balance_id if data.balance_id is not None else txn.currency_balance_id
            )
            to_balance_id = (
                data.to_balance_id
                if data.to_balance_id is not None
                else txn.to_currency_balance_id
            )
            amount_cents = (
                data.amount_cents if data.amount_cents is not None else txn.amount_cents
            )
            fee_cents = data.fee_cents if data.fee_cents is not None else txn.fee_cents
            cashback_cents = (
                data.cashback_cents
                if data.cashback_cents is not None
                else txn.cashback_cents
            )
            txn_date = data.date or txn.date
            self._validate_shape(
                txn.type, amount_cents, to_balance_id, fee_cents, cashback_cents
            )
            self._sync_split_paybacks(txn, amount_cents, balance_id)

            self.store.revert(txn)

            balance = self.store.get(balance_id)
            rate_micros = txn.exchange_rate_micros
            to_amount_cents = None
            if txn.type == TransactionType.transfer:
                target = self.store.get(to_balance_id)
                if (
                    data.exchange_rate is not None
                    or balance.id != txn.currency_balance_id
                    or target.id != txn.to_currency_balance_id
                ):
                    rate_micros = self._rate_micros(
                        balance, target, data.exchange_rate, txn_date
                    )
                elif balance.id == target.id:
                    raise BadRequest("Cannot transfer to the same balance")
                to_amount_cents = convert_cents(amount_cents, rate_micros)

            if txn.type != TransactionType.income:
                self.store.ensure_funds(balance, amount_cents + fee_cents)

            if data.category_id is not None:
                txn.category_id = self._category_id(data.category_id, txn.type)
            if data.description is not None:
                txn.description = data.description
            txn.currency_balance_id = balance.id
            txn.to_currency_balance_id = to_balance_id
            txn.amount_cents = amount_cents
            txn.fee_cents = fee_cents
            txn.cashback_cents = cashback_cents
            txn.exchange_rate_micros = rate_micros
            txn.to_amount_cents = to_amount_cents
            txn.date = txn_date
            self.session.flush()

            self.store.apply(txn)
        return txn

    def _sync_split_paybacks(
        self, txn: Transaction, amount_cents: int, balance_id: int
    ) -> None:
        paybacks = self.session.scalars(
            select(SplitPayment).where(SplitPayment.linked_transaction_id == txn.id)
        ).all()
        for payment in paybacks:
            split = payment.split
            paid_elsewhere = split.paid_cents - payment.amount_cents
            if paid_elsewhere + amount_cents > split.owed_cents:
                currency = split.transaction.balance.currency_code
                raise BadRequest(
                    "Payment amount exceeds remaining balance. "
                    f"Owed: {format_cents(split.owed_cents, currency)}, "
                    f"Already paid: {format_cents(paid_elsewhere, currency)}"
                )
            split.paid_cents = paid_elsewhere + amount_cents
            split.status = SplitBillService.status_for(split)
            payment.amount_cents = amount_cents
            payment.received_to_balance_id = balance_id

    def delete(self, transaction_id: int) -> None:
        with atomic(self.session):
            txn = self.get(transaction_id)
            if txn.debt_id is not None or txn.debt_payment_id is not None:
                raise BadRequest(
                    "Debt transactions are managed through their debt and payments"
                )

            # A payback for a split reopens the split it settled.
            paybacks = self.session.scalars(
                select(SplitPayment).where(SplitPayment.linked_transaction_id == txn.id)
            ).all()
            for payment in paybacks:
                split = payment.split
                split.paid_cents = max(0, split.paid_cents - payment.amount_cents)
                split.status = SplitBillService.status_for(split)
                split.payments.remove(payment)
            self.session.flush()

            self.session.execute(
                update(Transaction)
                .where(Transaction.parent_transaction_id == txn.id)
                .values(parent_transaction_id=None)
            )
            # Months paid by this expense become unpaid again.
            obligation_payments = self.session.scalars(
                select(ObligationPayment).where(
                    ObligationPayment.transaction_id == txn.id
                )
            ).all()
            for payment in obligation_payments:
                obligation = payment.obligation
                obligation.remaining_cents += payment.amount_cents
                if obligation.status == ObligationStatus.paid_off:
                    obligation.status = ObligationStatus.active
                obligation.payments.remove(payment)
            self.session.flush()

            self.session.execute(
                update(SubscriptionPayment)
                .where(SubscriptionPayment.transaction_id == txn.id)
                .values(transaction_id=None)
            )
            self.store.discard(txn)

    def children(self, transaction_id: int) -> list[Transaction]:
        parent = self.get(transaction_id)
        stmt = (
            select(Transaction)
            .where(
                Transaction.parent_transaction_id == parent.id,
                Transaction.lifecycle_status == LifecycleStatus.active,
            )
            .order_by(Transaction.date, Transaction.id)
        )
        return list(self.session.scalars(stmt))

    def net_amount(self, transaction_id: int) -> int:
        txn = self.get(transaction_id)
        paid_back = sum(
            child.amount_cents
            for child in self.children(transaction_id)
            if child.type == TransactionType.income
        )
        return txn.amount_cents - paid_back


class DebtService:
    def __init__(
        self,
        session: Session,
        user_id: Optional[int] = None,
        workspace: Workspace = Workspace.production,
    ) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()
        self.workspace = workspace
        self.store = BalanceStore(session, self.user_id, workspace)
        self.categories = CategoryRegistry(session)

    def get(self, debt_id: int, *, include_deleting: bool = False) -> Debt:
        debt = self.session.scalar(
            select(Debt).where(Debt.id == debt_id).with_for_update()
        )
        if (
            not debt
            or debt.user_id != self.user_id
            or debt.workspace != self.workspace
        ):
            raise NotFound("Debt not found")
        if not include_deleting and debt.lifecycle_status != LifecycleStatus.active:
            raise NotFound("Debt not found")
        return debt

    def list(self) -> list[Debt]:
        self.purge_expired()
        stmt = (
            select(Debt)
            .options(joinedload(Debt.payments))
            .where(
                Debt.user_id == self.user_id,
                Debt.workspace == self.workspace,
                Debt.lifecycle_status == LifecycleStatus.active,
            )
            .order_by(Debt.created_at.desc(), Debt.id.desc())
        )
        return list(self.session.scalars(stmt).unique())

    @staticmethod
    def status_for(debt: Debt) -> DebtStatus:
        if debt.amount_cents - debt.paid_cents <= EPSILON_CENTS:
            return DebtStatus.paid
        if debt.paid_cents > 0:
            return DebtStatus.partial
        return DebtStatus.pending

    def create(self, data: DebtIn) -> Debt:
        with atomic(self.session):
            balance = None
            if data.balance_id is not None:
                balance = self.store.get(data.balance_id)
                currency = balance.currency_code
                if data.currency_code and data.currency_code.upper() != currency:
                    raise BadRequest(
                        f"Account currency ({currency}) does not match debt currency "
                        f"({data.currency_code.upper()})"
                    )
            elif data.currency_code:
                currency = data.currency_code.upper()
            else:
                raise BadRequest("Either an account or a currency must be selected.")

            if balance is not None and data.direction == DebtDirection.they_owe:
                self.store.ensure_funds(balance, data.amount_cents, action="lend")

            debt = Debt(
                user_id=self.user_id,
                workspace=self.workspace,
                currency_balance_id=balance.id if balance else None,
                currency_code=currency,
                person_name=data.person_name.strip(),
                person_contact=data.person_contact,
                description=data.description,
                amount_cents=data.amount_cents,
                paid_cents=0,
                direction=data.direction,
                status=DebtStatus.pending,
                lifecycle_status=LifecycleStatus.active,
                due_date=data.due_date,
            )
            self.session.add(debt)
            self.session.flush()

            if balance is not None:
                verb = (
                    "Borrowed from"
                    if data.direction == DebtDirection.i_owe
                    else "Lent to"
                )
                description = f"Debt: {verb} {debt.person_name}"
                if data.description:
                    description += f" - {data.description}"
                self.store.post(
                    Transaction(
                        user_id=self.user_id,
                        currency_balance_id=balance.id,
                        category_id=self.categories.id_for(SystemCategory.debt),
                        type=(
                            TransactionType.income
                            if data.direction == DebtDirection.i_owe
                            else TransactionType.expense
                        ),
                        amount_cents=data.amount_cents,
                        fee_cents=0,
                        cashback_cents=0,
                        description=description,
                        date=data.date or local_today(),
                        lifecycle_status=LifecycleStatus.active,
                        debt_id=debt.id,
                    )
                )
        return debt

    def update(self, debt_id: int, data: DebtUpdateIn) -> Debt:
        with atomic(self.session):
            debt = self.get(debt_id)
            if data.amount_cents is not None and data.amount_cents != debt.amount_cents:
                if data.amount_cents < debt.paid_cents:
                    raise BadRequest(
                        "Debt amount cannot be less than the amount already paid"
                    )
                loan = self._loan_transaction(debt)
                if loan is not None:
                    self.store.revert(loan)
                    if debt.direction == DebtDirection.they_owe:
                        balance = self.store.get(loan.currency_balance_id)
                        self.store.ensure_funds(
                            balance, data.amount_cents, action="lend"
                        )
                    loan.amount_cents = data.amount_cents
                    self.session.flush()
                    self.store.apply(loan)
                debt.amount_cents = data.amount_cents
            if data.person_name is not None:
                debt.person_name = data.person_name.strip()
            if data.description is not None:
                debt.description = data.description
            if data.due_date is not None:
                debt.due_date = data.due_date
            debt.status = self.status_for(debt)
            self.session.flush()
        return debt

    def add_payment(self, debt_id: int, data: DebtPaymentIn) -> DebtPayment:
        with atomic(self.session):
            debt = self.get(debt_id)
            self._check_distribution_total(data.amount_cents, data.distributions)
            if debt.paid_cents + data.amount_cents > debt.amount_cents + EPSILON_CENTS:
                raise BadRequest("Payment amount exceeds remaining debt")
            targets = self._resolve_targets(debt, data.distributions)

            payment = DebtPayment(
                amount_cents=data.amount_cents,
                paid_at=data.paid_at or utcnow(),
                note=data.note,
            )
            debt.payments.append(payment)
            debt.paid_cents += data.amount_cents
            debt.status = self.status_for(debt)
            self.session.flush()

            self._post_distributions(debt, payment, targets)
        return payment

    def update_payment(
        self, payment_id: int, data: DebtPaymentUpdateIn
    ) -> DebtPayment:
        with atomic(self.session):
            payment, debt = self._get_payment(payment_id)
            old_txns = self._payment_transactions(payment)
            new_amount = (
                data.amount_cents
                if data.amount_cents is not None
                else payment.amount_cents
            )

            if data.distributions is not None:
                distributions = data.distributions
            elif len(old_txns) == 1:
                distributions = [
                    DistributionIn(
                        balance_id=old_txns[0].currency_balance_id,
                        amount_cents=new_amount,
                    )
                ]
            elif new_amount == payment.amount_cents:
                distributions = [
                    DistributionIn(
                        balance_id=txn.currency_balance_id,
                        amount_cents=txn.amount_cents,
                    )
                    for txn in old_txns
                ]
            else:
                raise BadRequest(
                    "Distributions are required when a payment spans several balances"
                )

            self._check_distribution_total(new_amount, distributions)
            diff = new_amount - payment.amount_cents
            if debt.paid_cents + diff > debt.amount_cents + EPSILON_CENTS:
                raise BadRequest("Payment amount exceeds remaining debt")

            for txn in old_txns:
                self.store.discard(txn)
            targets = self._resolve_targets(debt, distributions)

            debt.paid_cents += diff
            debt.status = self.status_for(debt)
            payment.amount_cents = new_amount
            if data.note is not None:
                payment.note = data.note
            self.session.flush()

            self._post_distributions(debt, payment, targets)
        return payment

    def delete_payment(self, payment_id: int) -> Debt:
        with atomic(self.session):
            payment, debt = self._get_payment(payment_id)
            for txn in self._payment_transactions(payment):
                self.store.discard(txn)
            debt.paid_cents = max(0, debt.paid_cents - payment.amount_cents)
            debt.status = self.status_for(debt)
            debt.payments.remove(payment)
            self.session.flush()
        return debt

    def delete(self, debt_id: int) -> None:
        with atomic(self.session):
            debt = self.get(debt_id, include_deleting=True)
            self._purge(debt)

    def soft_delete(self, debt_id: int) -> Debt:
        with atomic(self.session):
            debt = self.get(debt_id, include_deleting=True)
            if debt.lifecycle_status != LifecycleStatus.active:
                return debt
            for txn in self._debt_transactions(debt):
                if txn.lifecycle_status == LifecycleStatus.active:
                    self.store.revert(txn)
                    txn.lifecycle_status = LifecycleStatus.deleting
            debt.lifecycle_status = LifecycleStatus.deleting
            debt.deleting_since = utcnow()
            self.session.flush()
        return debt

    def undo_delete(self, debt_id: int) -> Debt:
        with atomic(self.session):
            debt = self.get(debt_id, include_deleting=True)
            if debt.lifecycle_status != LifecycleStatus.deleting:
                return debt
            for txn in self._debt_transactions(debt):
                if txn.lifecycle_status == LifecycleStatus.deleting:
                    txn.lifecycle_status = LifecycleStatus.active
                    self.store.apply(txn)
            debt.lifecycle_status = LifecycleStatus.active
            debt.deleting_since = None
            self.session.flush()
        return debt

    def purge_expired(self, now: Optional[datetime] = None) -> int:
        cutoff = (now or utcnow()) - timedelta(
            seconds=get_settings().purge_after_secs
        )
        with atomic(self.session):
            expired = self.session.scalars(
                select(Debt).where(
                    Debt.lifecycle_status == LifecycleStatus.deleting,
                    Debt.deleting_since < cutoff,
                )
            ).all()
            for debt in expired:
                self._purge(debt)
        if expired:
            logger.info(f"debt_purge: purged={len(expired)}")
        return len(expired)

    def _purge(self, debt: Debt) -> None:
        for txn in self._debt_transactions(debt):
            self.store.discard(txn)
        self.session.delete(debt)
        self.session.flush()

    def _debt_transactions(self, debt: Debt) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .where(Transaction.debt_id == debt.id)
            .order_by(Transaction.id)
        )
        return list(self.session.scalars(stmt))

    def _loan_transaction(self, debt: Debt) -> Optional[Transaction]:
        return self.session.scalar(
            select(Transaction).where(
                Transaction.debt_id == debt.id,
                Transaction.debt_payment_id.is_(None),
            )
        )

    def _payment_transactions(self, payment: DebtPayment) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .where(Transaction.debt_payment_id == payment.id)
            .order_by(Transaction.id)
        )
        return list(self.session.scalars(stmt))

    def _get_payment(self, payment_id: int) -> tuple[DebtPayment, Debt]:
        payment = self.session.get(DebtPayment, payment_id)
        if not payment:
            raise NotFound("Payment not found")
        try:
            debt = self.get(payment.debt_id)
        except NotFound as exc:
            raise NotFound("Payment not found") from exc
        return payment, debt

    @staticmethod
    def _check_distribution_total(
        amount_cents: int, distributions: list[DistributionIn]
    ) -> None:
        total = sum(item.amount_cents for item in distributions)
        if abs(total - amount_cents) > EPSILON_CENTS:
            raise BadRequest(
                f"Distribution total ({total / 100:.2f}) does not match payment "
                f"amount ({amount_cents / 100:.2f})"
            )

    def _resolve_targets(
        self, debt: Debt, distributions: list[DistributionIn]
    ) -> list[tuple[CurrencyBalance, int]]:
        targets: list[tuple[CurrencyBalance, int]] = []
        outgoing: dict[int, int] = {}
        for item in distributions:
            balance = self.store.get(item.balance_id)
            if balance.currency_code != debt.currency_code:
                raise BadRequest(
                    f"Target account currency ({balance.currency_code}) does not "
                    f"match debt currency ({debt.currency_code})"
                )
            targets.append((balance, item.amount_cents))
            outgoing[balance.id] = outgoing.get(balance.id, 0) + item.amount_cents
        if debt.direction == DebtDirection.i_owe:
            for balance, _ in targets:
                self.store.ensure_funds(balance, outgoing[balance.id], action="repay")
        return targets

    def _post_distributions(
        self,
        debt: Debt,
        payment: DebtPayment,
        targets: list[tuple[CurrencyBalance, int]],
    ) -> None:
        they_owe = debt.direction == DebtDirection.they_owe
        description = (
            f"Repayment from {debt.person_name}"
            if they_owe
            else f"Repayment to {debt.person_name}"
        )
        if payment.note:
            description += f" - {payment.note}"
        exclude = _same_month(debt.created_at, payment.paid_at)
        for balance, amount_cents in targets:
            self.store.post(
                Transaction(
                    user_id=self.user_id,
                    currency_balance_id=balance.id,
                    category_id=self.categories.id_for(SystemCategory.debt_repayment),
                    type=TransactionType.income if they_owe else TransactionType.expense,
                    amount_cents=amount_cents,
                    fee_cents=0,
                    cashback_cents=0,
                    description=description,
                    date=payment.paid_at.date(),
                    lifecycle_status=LifecycleStatus.active,
                    exclude_from_monthly_stats=exclude,
                    debt_id=debt.id,
                    debt_payment_id=payment.id,
                )
            )


class SplitBillService:
    def __init__(
        self,
        session: Session,
        user_id: Optional[int] = None,
        workspace: Workspace = Workspace.production,
    ) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()
        self.workspace = workspace
        self.store = BalanceStore(session, self.user_id, workspace)
        self.categories = CategoryRegistry(session)

    @staticmethod
    def status_for(split: TransactionSplit) -> SplitStatus:
        if split.paid_cents >= split.owed_cents:
            return SplitStatus.settled
        if split.paid_cents > 0:
            return SplitStatus.partial
        return SplitStatus.pending

    def list_participants(self) -> list[SplitParticipant]:
        stmt = (
            select(SplitParticipant)
            .where(
                SplitParticipant.user_id == self.user_id,
                SplitParticipant.workspace == self.workspace,
                SplitParticipant.is_active.is_(True),
            )
            .order_by(SplitParticipant.name)
        )
        return list(self.session.scalars(stmt))

    def create_participant(self, data: ParticipantIn) -> SplitParticipant:
        participant = SplitParticipant(
            user_id=self.user_id,
            workspace=self.workspace,
            name=data.name.strip(),
            contact_type=data.contact_type,
            contact_value=data.contact_value,
            color=data.color or "#8b5cf6",
            is_active=True,
        )
        with atomic(self.session):
            self.session.add(participant)
            self.session.flush()
        return participant

    def update_participant(
        self, participant_id: int, data: ParticipantIn
    ) -> SplitParticipant:
        with atomic(self.session):
            participant = self._participant(participant_id)
            participant.name = data.name.strip()
            participant.contact_type = data.contact_type
            participant.contact_value = data.contact_value
            if data.color:
                participant.color = data.color
            self.session.flush()
        return participant

    def deactivate_participant(self, participant_id: int) -> None:
        with atomic(self.session):
            participant = self._participant(participant_id)
            participant.is_active = False
            self.session.flush()

    def _participant(self, participant_id: int) -> SplitParticipant:
        participant = self.session.get(SplitParticipant, participant_id)
        if (
            not participant
            or participant.user_id != self.user_id
            or participant.workspace != self.workspace
            or not participant.is_active
        ):
            raise NotFound("Participant not found")
        return participant

    def _split(self, split_id: int) -> TransactionSplit:
        split = self.session.get(TransactionSplit, split_id)
        if not split:
            raise NotFound("Split not found")
        participant = split.participant
        if (
            split.transaction.user_id != self.user_id
            or participant.user_id != self.user_id
            or participant.workspace != self.workspace
        ):
            raise NotFound("Split not found")
        return split

    def create_splits(self, data: SplitsIn) -> list[TransactionSplit]:
        with atomic(self.session):
            txn = TransactionService(self.session, self.user_id, self.workspace).get(
                data.transaction_id
            )
            participant_ids = [item.participant_id for item in data.splits]
            if len(set(participant_ids)) != len(participant_ids):
                raise BadRequest("Each participant can only appear once")
            participants = [self._participant(pid) for pid in participant_ids]

            if data.equal_split:
                total = data.total_cents or txn.amount_cents
                amounts = equal_shares(total, len(participants))
            else:
                if any(item.owed_cents is None for item in data.splits):
                    raise BadRequest("Custom splits need an amount for every participant")
                amounts = [item.owed_cents for item in data.splits]
                if sum(amounts) > txn.amount_cents:
                    raise BadRequest("Split amounts exceed the transaction amount")
            if any(amount <= 0 for amount in amounts):
                raise BadRequest("Split amount is too small")

            for existing in list(txn.splits):
                if existing.paid_cents > 0 or existing.payments:
                    raise BadRequest("Splits with recorded payments cannot be replaced")
                txn.splits.remove(existing)
            self.session.flush()

            splits = []
            for participant, amount, item in zip(participants, amounts, data.splits):
                split = TransactionSplit(
                    participant_id=participant.id,
                    owed_cents=amount,
                    paid_cents=0,
                    status=SplitStatus.pending,
                    note=item.note,
                )
                txn.splits.append(split)
                splits.append(split)
            self.session.flush()
        return splits

    def quick_split(self, txn: Transaction, data: QuickSplitIn) -> list[TransactionSplit]:
        """Attach splits while the expense is being created; does not commit."""
        if len(set(data.participant_ids)) != len(data.participant_ids):
            raise BadRequest("Each participant can only appear once")
        participants = [self._participant(pid) for pid in data.participant_ids]
        if data.equal_split:
            parts = len(participants) + (1 if data.include_self else 0)
            amounts = equal_shares(txn.amount_cents, parts)[: len(participants)]
        else:
            if not data.amounts or len(data.amounts) != len(participants):
                raise BadRequest("Provide one amount per participant")
            amounts = list(data.amounts)
            if sum(amounts) > txn.amount_cents:
                raise BadRequest("Split amounts exceed the transaction amount")
        if any(amount <= 0 for amount in amounts):
            raise BadRequest("Split amount is too small")

        splits = []
        for participant, amount in zip(participants, amounts):
            split = TransactionSplit(
                participant_id=participant.id,
                owed_cents=amount,
                paid_cents=0,
                status=SplitStatus.pending,
            )
            txn.splits.append(split)
            splits.append(split)
        self.session.flush()

        if data.instant_money_back:
            balance_id = data.money_back_balance_id or txn.currency_balance_id
            for split in splits:
                self._record_payment(
                    split,
                    split.owed_cents,
                    received_to_balance_id=balance_id,
                    create_income_transaction=True,
                    note="Instant money back",
                    on_date=txn.date,
                )
        return splits

    def transaction_splits(self, transaction_id: int) -> list[TransactionSplit]:
        txn = TransactionService(self.session, self.user_id, self.workspace).get(
            transaction_id
        )
        return sorted(txn.splits, key=lambda split: split.id)

    def pending_splits(self) -> list[TransactionSplit]:
        stmt = (
            select(TransactionSplit)
            .join(Transaction, TransactionSplit.transaction_id == Transaction.id)
            .join(
                SplitParticipant,
                TransactionSplit.participant_id == SplitParticipant.id,
            )
            .where(
                SplitParticipant.user_id == self.user_id,
                SplitParticipant.workspace == self.workspace,
                Transaction.lifecycle_status == LifecycleStatus.active,
                TransactionSplit.status != SplitStatus.settled,
            )
            .order_by(Transaction.date.desc(), TransactionSplit.id)
        )
        return list(self.session.scalars(stmt))

    def owed_summary(self) -> list[dict[str, object]]:
        stmt = (
            select(
                SplitParticipant.id,
                SplitParticipant.name,
                func.coalesce(func.sum(TransactionSplit.owed_cents), 0),
                func.coalesce(func.sum(TransactionSplit.paid_cents), 0),
            )
            .join(
                TransactionSplit,
                TransactionSplit.participant_id == SplitParticipant.id,
            )
            .join(Transaction, TransactionSplit.transaction_id == Transaction.id)
            .where(
                SplitParticipant.user_id == self.user_id,
                SplitParticipant.workspace == self.workspace,
                Transaction.lifecycle_status == LifecycleStatus.active,
                TransactionSplit.status != SplitStatus.settled,
            )
            .group_by(SplitParticipant.id, SplitParticipant.name)
            .order_by(SplitParticipant.name)
        )
        summary = []
        for participant_id, name, owed, paid in self.session.execute(stmt):
            summary.append(
                {
                    "participant_id": participant_id,
                    "name": name,
                    "owed_cents": int(owed),
                    "paid_cents": int(paid),
                    "remaining_cents": int(owed) - int(paid),
                }
            )
        return summary

    def record_payment(self, split_id: int, data: SplitPaymentIn) -> TransactionSplit:
        with atomic(self.session):
            split = self._split(split_id)
            self._record_payment(
                split,
                data.amount_cents,
                received_to_balance_id=data.received_to_balance_id,
                create_income_transaction=data.create_income_transaction,
                note=data.note,
                on_date=data.date,
            )
        return split

    def settle_split(self, split_id: int, data: SettleSplitIn) -> TransactionSplit:
        with atomic(self.session):
            split = self._split(split_id)
            remaining = split.owed_cents - split.paid_cents
            if remaining <= 0:
                raise BadRequest("Split is already settled")
            self._record_payment(
                split,
                remaining,
                received_to_balance_id=data.received_to_balance_id,
                create_income_transaction=data.create_income_transaction,
                note=data.note or "Settled",
                description=f"Split payment from {split.participant.name} (settled)",
            )
        return split

    def update_split(self, split_id: int, data: SplitUpdateIn) -> TransactionSplit:
        with atomic(self.session):
            split = self._split(split_id)
            if data.owed_cents is not None:
                if data.owed_cents < split.paid_cents:
                    raise BadRequest(
                        "Owed amount cannot be less than the amount already paid"
                    )
                split.owed_cents = data.owed_cents
            if data.note is not None:
                split.note = data.note
            split.status = self.status_for(split)
            self.session.flush()
        return split

    def delete_split(self, split_id: int) -> None:
        with atomic(self.session):
            split = self._split(split_id)
            split.transaction.splits.remove(split)
            self.session.flush()

    def _record_payment(
        self,
        split: TransactionSplit,
        amount_cents: int,
        *,
        received_to_balance_id: Optional[int],
        create_income_transaction: bool,
        note: Optional[str],
        on_date: Optional[date] = None,
        description: Optional[str] = None,
    ) -> SplitPayment:
        if split.paid_cents + amount_cents > split.owed_cents:
            currency = split.transaction.balance.currency_code
            raise BadRequest(
                "Payment amount exceeds remaining balance. "
                f"Owed: {format_cents(split.owed_cents, currency)}, "
                f"Already paid: {format_cents(split.paid_cents, currency)}"
            )

        balance = None
        if received_to_balance_id is not None:
            balance = self.store.get(received_to_balance_id)

        linked = None
        if create_income_transaction:
            if balance is None:
                raise BadRequest("A receiving balance is required to record income")
            linked = self.store.post(
                Transaction(
                    user_id=self.user_id,
                    currency_balance_id=balance.id,
                    category_id=self.categories.id_for(SystemCategory.split_payment),
                    type=TransactionType.income,
                    amount_cents=amount_cents,
                    fee_cents=0,
                    cashback_cents=0,
                    description=description
                    or f"Split payment from {split.participant.name}",
                    date=on_date or local_today(),
                    lifecycle_status=LifecycleStatus.active,
                    parent_transaction_id=split.transaction_id,
                )
            )

        split.paid_cents += amount_cents
        split.status = self.status_for(split)
        payment = SplitPayment(
            amount_cents=amount_cents,
            received_to_balance_id=balance.id if balance else None,
            linked_transaction_id=linked.id if linked else None,
            paid_at=utcnow(),
            note=note,
        )
        split.payments.append(payment)
        self.session.flush()
        return payment
