import logging
import re
from datetime import date
from decimal import Decimal
from typing import Optional

from rapidfuzz.distance import Levenshtein
from sqlalchemy import select
from sqlalchemy.orm import Session

from database import atomic
from errors import BadRequest, Forbidden, InsufficientFunds, NotFound
from ledger import BalanceStore, format_cents
from models import (
    Account,
    CurrencyBalance,
    LifecycleStatus,
    Obligation,
    ObligationKind,
    ObligationPayment,
    ObligationStatus,
    Subscription,
    SubscriptionPayment,
    SystemCategory,
    Transaction,
    TransactionType,
    Workspace,
    utcnow,
)
from recurrence import (
    add_months,
    local_today,
    month_key,
    months_after_until,
    next_due_date,
    parse_month_key,
)
from schemas import MonthsIn, ObligationIn, SubscriptionIn, SubscriptionPaymentIn
from services import CategoryRegistry, get_current_user_id

logger = logging.getLogger(__name__)

LINK_KEYWORDS: dict[ObligationKind, tuple[str, ...]] = {
    ObligationKind.mortgage: ("mortgage",),
    ObligationKind.credit: ("loan",),
}

# Minimum word length for fuzzy keyword matching.
FUZZY_MIN_LENGTH = 5


def mentions_keyword(text: Optional[str], keywords: tuple[str, ...]) -> bool:
    lowered = (text or "").lower()
    if not lowered:
        return False
    if any(keyword in lowered for keyword in keywords):
        return True
    fuzzy = [keyword for keyword in keywords if len(keyword) >= FUZZY_MIN_LENGTH]
    for word in re.findall(r"[a-z]+", lowered):
        if len(word) < FUZZY_MIN_LENGTH:
            continue
        if any(int(Levenshtein.distance(word, keyword)) <= 1 for keyword in fuzzy):
            return True
    return False


def reduce_remaining(obligation: Obligation, amount_cents: int) -> None:
    obligation.remaining_cents = max(0, obligation.remaining_cents - amount_cents)
    if obligation.remaining_cents == 0:
        obligation.status = ObligationStatus.paid_off


def amortization_schedule(
    balance_cents: int,
    annual_rate: Decimal,
    payment_cents: int,
    start: date,
    *,
    max_months: int = 600,
) -> list[dict[str, object]]:
    monthly_rate = Decimal(annual_rate) / Decimal(100) / Decimal(12)
    rows: list[dict[str, object]] = []
    balance = balance_cents
    month = 0
    while balance > 0 and month < max_months:
        interest = int(
            (Decimal(balance) * monthly_rate).quantize(Decimal("1"))
        )
        principal = min(payment_cents - interest, balance)
        if principal <= 0:
            raise BadRequest("Monthly payment does not cover the interest")
        balance -= principal
        month += 1
        rows.append(
            {
                "month": month_key(add_months(start, month)),
                "payment_cents": principal + interest,
                "principal_cents": principal,
                "interest_cents": interest,
                "balance_cents": balance,
            }
        )
    return rows


class RecurringPaymentLinker:
    """Links plain expenses to an active credit or mortgage on the same account."""

    def __init__(self, session: Session) -> None:
        self.session = session

    def link(self, txn: Transaction) -> Optional[ObligationPayment]:
        if txn.type != TransactionType.expense:
            return None
        try:
            with self.session.begin_nested():
                return self._link(txn)
        except Exception:
            logger.exception(f"recurring_link_failed: transaction_id={txn.id}")
            return None

    def _link(self, txn: Transaction) -> Optional[ObligationPayment]:
        category_name = txn.category.name if txn.category else ""
        balance = self.session.get(CurrencyBalance, txn.currency_balance_id)
        for kind, keywords in LINK_KEYWORDS.items():
            if not (
                mentions_keyword(category_name, keywords)
                or mentions_keyword(txn.description, keywords)
            ):
                continue
            obligation = self.session.scalar(
                select(Obligation)
                .where(
                    Obligation.account_id == balance.account_id,
                    Obligation.kind == kind,
                    Obligation.status == ObligationStatus.active,
                    Obligation.currency_code == balance.currency_code,
                )
                .order_by(Obligation.id)
                .limit(1)
            )
            if obligation is None:
                continue

            key = month_key(txn.date)
            already_paid = self.session.scalar(
                select(ObligationPayment.id).where(
                    ObligationPayment.obligation_id == obligation.id,
                    ObligationPayment.month_year == key,
                )
            )
            if already_paid:
                logger.info(
                    f"recurring_link_skipped: obligation_id={obligation.id} month={key}"
                )
                return None

            payment = ObligationPayment(
                obligation_id=obligation.id,
                month_year=key,
                amount_cents=txn.amount_cents,
                paid_at=utcnow(),
                note=f"Auto-linked from transaction: {txn.description or txn.id}",
                transaction_id=txn.id,
            )
            obligation.payments.append(payment)
            reduce_remaining(obligation, txn.amount_cents)
            self.session.flush()
            logger.info(
                f"recurring_link: obligation_id={obligation.id} month={key} "
                f"transaction_id={txn.id}"
            )
            return payment
        return None


class ObligationService:
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

    def _account(self, account_id: int) -> Account:
        account = self.session.get(Account, account_id)
        if not account or account.user_id != self.user_id:
            raise NotFound("Account not found")
        if account.workspace != self.workspace:
            raise Forbidden(
                f"Cannot use a {account.workspace.value} account while in "
                f"{self.workspace.value} mode."
            )
        return account

    def get(self, obligation_id: int) -> Obligation:
        obligation = self.session.scalar(
            select(Obligation).where(Obligation.id == obligation_id).with_for_update()
        )
        if not obligation:
            raise NotFound("Obligation not found")
        account = obligation.account
        if account.user_id != self.user_id or account.workspace != self.workspace:
            raise NotFound("Obligation not found")
        return obligation

    def list_all(self, kind: Optional[ObligationKind] = None) -> list[Obligation]:
        stmt = (
            select(Obligation)
            .join(Account, Obligation.account_id == Account.id)
            .where(Account.user_id == self.user_id, Account.workspace == self.workspace)
            .order_by(Obligation.start_date, Obligation.id)
        )
        if kind is not None:
            stmt = stmt.where(Obligation.kind == kind)
        return list(self.session.scalars(stmt))

    def create(self, data: ObligationIn, today: Optional[date] = None) -> Obligation:
        with atomic(self.session):
            account = self._account(data.account_id)
            end_date = data.end_date
            if end_date is None and data.term_years:
                end_date = add_months(data.start_date, 12 * data.term_years)
            obligation = Obligation(
                account_id=account.id,
                kind=data.kind,
                name=data.name.strip(),
                principal_cents=data.principal_cents,
                interest_rate=data.interest_rate,
                monthly_payment_cents=data.monthly_payment_cents,
                remaining_cents=(
                    data.remaining_cents
                    if data.remaining_cents is not None
                    else data.principal_cents
                ),
                currency_code=data.currency_code.upper(),
                start_date=data.start_date,
                end_date=end_date,
                term_years=data.term_years,
                payment_day=data.payment_day,
                status=ObligationStatus.active,
            )
            self.session.add(obligation)
            self.session.flush()

            if data.mark_past_months_as_paid:
                # Months before tracking started; the supplied remaining balance
                # already reflects them.
                for key in months_after_until(data.start_date, today or local_today()):
                    obligation.payments.append(
                        ObligationPayment(
                            month_year=key,
                            amount_cents=data.monthly_payment_cents,
                            paid_at=utcnow(),
                        )
                    )
                self.session.flush()
        return obligation

    def paid_months(self, obligation_id: int) -> list[str]:
        obligation = self.get(obligation_id)
        return [payment.month_year for payment in obligation.payments]

    def _unpaid_months(self, obligation: Obligation, months: list[str]) -> list[str]:
        for key in months:
            try:
                parse_month_key(key)
            except ValueError as exc:
                raise BadRequest(str(exc)) from exc
        paid = {payment.month_year for payment in obligation.payments}
        pending = sorted({key for key in months if key not in paid})
        if not pending:
            raise BadRequest("All selected months are already paid")
        return pending

    def mark_as_paid(self, obligation_id: int, data: MonthsIn) -> Obligation:
        """Record months as paid without moving any money."""
        with atomic(self.session):
            obligation = self.get(obligation_id)
            months = self._unpaid_months(obligation, data.months)
            for key in months:
                obligation.payments.append(
                    ObligationPayment(
                        month_year=key,
                        amount_cents=obligation.monthly_payment_cents,
                        paid_at=utcnow(),
                        note=data.note,
                    )
                )
            reduce_remaining(obligation, obligation.monthly_payment_cents * len(months))
            self.session.flush()
        return obligation

    def make_monthly_payment(self, obligation_id: int, data: MonthsIn) -> Transaction:
        with atomic(self.session):
            obligation = self.get(obligation_id)
            months = self._unpaid_months(obligation, data.months)
            total = obligation.monthly_payment_cents * len(months)

            balance = self.store.find_in_account(
                obligation.account_id, obligation.currency_code
            )
            if balance is None:
                raise BadRequest(
                    f"No {obligation.currency_code} balance found in the linked account"
                )
            if balance.balance_cents < total:
                raise InsufficientFunds(
                    f"Insufficient balance. Need "
                    f"{format_cents(total, obligation.currency_code)}, have "
                    f"{format_cents(balance.balance_cents, obligation.currency_code)}"
                )

            if obligation.kind == ObligationKind.mortgage:
                category = SystemCategory.mortgage
                description = f"{obligation.name} mortgage payment ({', '.join(months)})"
            else:
                category = SystemCategory.bills
                description = f"{obligation.name} payment ({', '.join(months)})"

            txn = self.store.post(
                Transaction(
                    user_id=self.user_id,
                    currency_balance_id=balance.id,
                    category_id=self.categories.id_for(category),
                    type=TransactionType.expense,
                    amount_cents=total,
                    fee_cents=0,
                    cashback_cents=0,
                    description=description,
                    date=local_today(),
                    lifecycle_status=LifecycleStatus.active,
                    exclude_from_monthly_stats=True,
                )
            )
            for key in months:
                obligation.payments.append(
                    ObligationPayment(
                        month_year=key,
                        amount_cents=obligation.monthly_payment_cents,
                        paid_at=utcnow(),
                        note=data.note,
                        transaction_id=txn.id,
                    )
                )
            reduce_remaining(obligation, total)
            self.session.flush()
        return txn

    def amortization(self, obligation_id: int) -> list[dict[str, object]]:
        obligation = self.get(obligation_id)
        return amortization_schedule(
            obligation.remaining_cents,
            obligation.interest_rate,
            obligation.monthly_payment_cents,
            local_today(),
        )


class SubscriptionService:
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

    def get(self, subscription_id: int) -> Subscription:
        subscription = self.session.get(Subscription, subscription_id)
        if (
            not subscription
            or subscription.user_id != self.user_id
            or subscription.workspace != self.workspace
        ):
            raise NotFound("Subscription not found")
        return subscription

    def list_all(self) -> list[Subscription]:
        stmt = (
            select(Subscription)
            .where(
                Subscription.user_id == self.user_id,
                Subscription.workspace == self.workspace,
                Subscription.is_active.is_(True),
            )
            .order_by(Subscription.name)
        )
        return list(self.session.scalars(stmt))

    def create(self, data: SubscriptionIn) -> Subscription:
        subscription = Subscription(
            user_id=self.user_id,
            workspace=self.workspace,
            name=data.name.strip(),
            amount_cents=data.amount_cents,
            currency_code=data.currency_code.upper(),
            billing_cycle=data.billing_cycle,
            start_date=data.start_date,
            is_active=True,
        )
        with atomic(self.session):
            self.session.add(subscription)
            self.session.flush()
        return subscription

    def next_due(self, subscription_id: int) -> date:
        subscription = self.get(subscription_id)
        if subscription.payments:
            last_due = subscription.payments[-1].due_date
            return next_due_date(
                subscription.billing_cycle, subscription.start_date, last_due
            )
        return subscription.start_date

    def make_payment(
        self, subscription_id: int, data: SubscriptionPaymentIn
    ) -> SubscriptionPayment:
        with atomic(self.session):
            subscription = self.get(subscription_id)
            due_date = data.due_date or self.next_due(subscription_id)
            balance = self.store.get(data.balance_id)
            if balance.currency_code != subscription.currency_code:
                raise BadRequest(
                    f"Balance currency ({balance.currency_code}) does not match "
                    f"subscription currency ({subscription.currency_code})"
                )
            self.store.ensure_funds(balance, subscription.amount_cents, action="pay")

            txn = self.store.post(
                Transaction(
                    user_id=self.user_id,
                    currency_balance_id=balance.id,
                    category_id=self.categories.id_for(SystemCategory.subscriptions),
                    type=TransactionType.expense,
                    amount_cents=subscription.amount_cents,
                    fee_cents=0,
                    cashback_cents=0,
                    description=f"{subscription.name} - Subscription payment",
                    date=local_today(),
                    lifecycle_status=LifecycleStatus.active,
                )
            )
            payment = SubscriptionPayment(
                currency_balance_id=balance.id,
                amount_cents=subscription.amount_cents,
                paid_at=utcnow(),
                due_date=due_date,
                transaction_id=txn.id,
                note=data.note,
            )
            subscription.payments.append(payment)
            self.session.flush()
        return payment
