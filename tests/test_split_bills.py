from datetime import date

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import sessionmaker

from database import Base
from errors import BadRequest, NotFound
from models import SplitStatus, Transaction, TransactionType
from schemas import (
    AccountIn,
    CurrencyBalanceIn,
    ParticipantIn,
    QuickSplitIn,
    SettleSplitIn,
    SplitItemIn,
    SplitPaymentIn,
    SplitsIn,
    SplitUpdateIn,
    TransactionIn,
    TransactionUpdateIn,
)
from services import (
    AccountService,
    SplitBillService,
    TransactionService,
    equal_shares,
    seed_system_categories,
)


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


def setup_expense(session, amount_cents: int = 10_000):
    accounts = AccountService(session)
    account = accounts.create(AccountIn(name="Checking"))
    balance = accounts.add_currency(
        account.id, CurrencyBalanceIn(currency_code="USD", initial_balance_cents=100_000)
    )
    expense = TransactionService(session).create(
        TransactionIn(
            balance_id=balance.id,
            type=TransactionType.expense,
            amount_cents=amount_cents,
            date=date(2026, 4, 2),
            description="Dinner",
        )
    )
    return balance, expense


def add_people(splits: SplitBillService, *names: str):
    return [splits.create_participant(ParticipantIn(name=name)) for name in names]


def test_equal_shares_give_remainder_to_first_participants() -> None:
    assert equal_shares(10_000, 3) == [3_334, 3_333, 3_333]
    assert equal_shares(10_001, 3) == [3_334, 3_334, 3_333]
    assert equal_shares(9_000, 3) == [3_000, 3_000, 3_000]


def test_equal_split_across_participants() -> None:
    session = make_session()
    _, expense = setup_expense(session)
    splits = SplitBillService(session)
    people = add_people(splits, "Ann", "Ben", "Cid")

    created = splits.create_splits(
        SplitsIn(
            transaction_id=expense.id,
            splits=[SplitItemIn(participant_id=person.id) for person in people],
            equal_split=True,
        )
    )
    assert [split.owed_cents for split in created] == [3_334, 3_333, 3_333]
    assert all(split.status == SplitStatus.pending for split in created)
    assert people[0].color == "#8b5cf6"


def test_custom_split_cannot_exceed_expense() -> None:
    session = make_session()
    _, expense = setup_expense(session)
    splits = SplitBillService(session)
    ann, ben = add_people(splits, "Ann", "Ben")

    with pytest.raises(BadRequest):
        splits.create_splits(
            SplitsIn(
                transaction_id=expense.id,
                splits=[
                    SplitItemIn(participant_id=ann.id, owed_cents=6_000),
                    SplitItemIn(participant_id=ben.id, owed_cents=6_000),
                ],
            )
        )


def test_recorded_payback_becomes_child_income() -> None:
    session = make_session()
    balance, expense = setup_expense(session)
    splits = SplitBillService(session)
    (ann,) = add_people(splits, "Ann")
    (split,) = splits.create_splits(
        SplitsIn(
            transaction_id=expense.id,
            splits=[SplitItemIn(participant_id=ann.id, owed_cents=5_000)],
        )
    )

    splits.record_payment(
        split.id,
        SplitPaymentIn(
            amount_cents=2_000,
            received_to_balance_id=balance.id,
            create_income_transaction=True,
        ),
    )
    assert split.paid_cents == 2_000
    assert split.status == SplitStatus.partial
    assert balance.balance_cents == 92_000

    txns = TransactionService(session)
    (child,) = txns.children(expense.id)
    assert child.type == TransactionType.income
    assert child.description == "Split payment from Ann"
    assert child.category.name == "Split Payment"
    assert txns.net_amount(expense.id) == 8_000


def test_payment_over_remaining_share_is_rejected() -> None:
    session = make_session()
    balance, expense = setup_expense(session)
    splits = SplitBillService(session)
    (ann,) = add_people(splits, "Ann")
    (split,) = splits.create_splits(
        SplitsIn(
            transaction_id=expense.id,
            splits=[SplitItemIn(participant_id=ann.id, owed_cents=5_000)],
        )
    )
    splits.record_payment(split.id, SplitPaymentIn(amount_cents=2_000))

    with pytest.raises(BadRequest) as excinfo:
        splits.record_payment(
            split.id,
            SplitPaymentIn(
                amount_cents=3_500,
                received_to_balance_id=balance.id,
                create_income_transaction=True,
            ),
        )
    assert str(excinfo.value) == (
        "Payment amount exceeds remaining balance. "
        "Owed: 50.00 USD, Already paid: 20.00 USD"
    )
    session.refresh(balance)
    assert balance.balance_cents == 90_000


def test_settle_pays_the_remaining_share() -> None:
    session = make_session()
    balance, expense = setup_expense(session)
    splits = SplitBillService(session)
    (ann,) = add_people(splits, "Ann")
    (split,) = splits.create_splits(
        SplitsIn(
            transaction_id=expense.id,
            splits=[SplitItemIn(participant_id=ann.id, owed_cents=5_000)],
        )
    )
    splits.record_payment(split.id, SplitPaymentIn(amount_cents=1_000))

    splits.settle_split(
        split.id,
        SettleSplitIn(received_to_balance_id=balance.id, create_income_transaction=True),
    )
    assert split.status == SplitStatus.settled
    assert split.paid_cents == 5_000
    assert balance.balance_cents == 94_000
    assert split.payments[-1].note == "Settled"

    with pytest.raises(BadRequest, match="already settled"):
        splits.settle_split(split.id, SettleSplitIn())


def test_quick_split_with_instant_money_back() -> None:
    session = make_session()
    accounts = AccountService(session)
    account = accounts.create(AccountIn(name="Checking"))
    balance = accounts.add_currency(
        account.id, CurrencyBalanceIn(currency_code="USD", initial_balance_cents=100_000)
    )
    splits = SplitBillService(session)
    ann, ben = add_people(splits, "Ann", "Ben")

    expense = TransactionService(session).create(
        TransactionIn(
            balance_id=balance.id,
            type=TransactionType.expense,
            amount_cents=9_000,
            date=date(2026, 4, 3),
            split=QuickSplitIn(
                participant_ids=[ann.id, ben.id], instant_money_back=True
            ),
        )
    )

    created = splits.transaction_splits(expense.id)
    assert [split.owed_cents for split in created] == [3_000, 3_000]
    assert all(split.status == SplitStatus.settled for split in created)
    assert balance.balance_cents == 97_000
    assert TransactionService(session).net_amount(expense.id) == 3_000


def test_failed_quick_split_rolls_back_expense() -> None:
    session = make_session()
    accounts = AccountService(session)
    account = accounts.create(AccountIn(name="Checking"))
    balance = accounts.add_currency(
        account.id, CurrencyBalanceIn(currency_code="USD", initial_balance_cents=100_000)
    )

    with pytest.raises(NotFound):
        TransactionService(session).create(
            TransactionIn(
                balance_id=balance.id,
                type=TransactionType.expense,
                amount_cents=9_000,
                date=date(2026, 4, 3),
                split=QuickSplitIn(participant_ids=[12345]),
            )
        )
    session.refresh(balance)
    assert balance.balance_cents == 100_000
    count = session.scalar(
        select(func.count(Transaction.id)).where(Transaction.amount_cents == 9_000)
    )
    assert count == 0


def test_deleting_payback_reopens_split() -> None:
    session = make_session()
    balance, expense = setup_expense(session)
    splits = SplitBillService(session)
    (ann,) = add_people(splits, "Ann")
    (split,) = splits.create_splits(
        SplitsIn(
            transaction_id=expense.id,
            splits=[SplitItemIn(participant_id=ann.id, owed_cents=4_000)],
        )
    )
    splits.settle_split(
        split.id,
        SettleSplitIn(received_to_balance_id=balance.id, create_income_transaction=True),
    )
    txns = TransactionService(session)
    (payback,) = txns.children(expense.id)

    txns.delete(payback.id)
    assert split.paid_cents == 0
    assert split.status == SplitStatus.pending
    assert split.payments == []
    assert balance.balance_cents == 90_000


def test_editing_payback_updates_its_split() -> None:
    session = make_session()
    balance, expense = setup_expense(session)
    splits = SplitBillService(session)
    (ann,) = add_people(splits, "Ann")
    (split,) = splits.create_splits(
        SplitsIn(
            transaction_id=expense.id,
            splits=[SplitItemIn(participant_id=ann.id, owed_cents=5_000)],
        )
    )
    splits.record_payment(
        split.id,
        SplitPaymentIn(
            amount_cents=3_000,
            received_to_balance_id=balance.id,
            create_income_transaction=True,
        ),
    )
    txns = TransactionService(session)
    (payback,) = txns.children(expense.id)

    txns.update(payback.id, TransactionUpdateIn(amount_cents=1_000))
    assert split.paid_cents == 1_000
    assert split.status == SplitStatus.partial
    assert split.payments[0].amount_cents == 1_000
    assert balance.balance_cents == 91_000

    with pytest.raises(BadRequest, match="exceeds remaining balance"):
        txns.update(payback.id, TransactionUpdateIn(amount_cents=6_000))
    session.refresh(balance)
    session.refresh(split)
    assert balance.balance_cents == 91_000
    assert split.paid_cents == 1_000


def test_deleting_expense_detaches_paybacks() -> None:
    session = make_session()
    balance, expense = setup_expense(session)
    splits = SplitBillService(session)
    (ann,) = add_people(splits, "Ann")
    (split,) = splits.create_splits(
        SplitsIn(
            transaction_id=expense.id,
            splits=[SplitItemIn(participant_id=ann.id, owed_cents=4_000)],
        )
    )
    splits.settle_split(
        split.id,
        SettleSplitIn(received_to_balance_id=balance.id, create_income_transaction=True),
    )
    txns = TransactionService(session)
    (payback,) = txns.children(expense.id)

    txns.delete(expense.id)
    session.refresh(payback)
    assert payback.parent_transaction_id is None
    assert balance.balance_cents == 104_000


def test_replacing_paid_splits_is_rejected() -> None:
    session = make_session()
    _, expense = setup_expense(session)
    splits = SplitBillService(session)
    ann, ben = add_people(splits, "Ann", "Ben")
    (split,) = splits.create_splits(
        SplitsIn(
            transaction_id=expense.id,
            splits=[SplitItemIn(participant_id=ann.id, owed_cents=4_000)],
        )
    )
    splits.record_payment(split.id, SplitPaymentIn(amount_cents=1_000))

    with pytest.raises(BadRequest, match="cannot be replaced"):
        splits.create_splits(
            SplitsIn(
                transaction_id=expense.id,
                splits=[SplitItemIn(participant_id=ben.id, owed_cents=4_000)],
            )
        )


def test_update_split_keeps_owed_above_paid() -> None:
    session = make_session()
    _, expense = setup_expense(session)
    splits = SplitBillService(session)
    (ann,) = add_people(splits, "Ann")
    (split,) = splits.create_splits(
        SplitsIn(
            transaction_id=expense.id,
            splits=[SplitItemIn(participant_id=ann.id, owed_cents=4_000)],
        )
    )
    splits.record_payment(split.id, SplitPaymentIn(amount_cents=3_000))

    with pytest.raises(BadRequest):
        splits.update_split(split.id, SplitUpdateIn(owed_cents=2_000))

    splits.update_split(split.id, SplitUpdateIn(owed_cents=3_000))
    assert split.status == SplitStatus.settled


def test_pending_splits_and_owed_summary() -> None:
    session = make_session()
    _, expense = setup_expense(session)
    splits = SplitBillService(session)
    ann, ben = add_people(splits, "Ann", "Ben")
    created = splits.create_splits(
        SplitsIn(
            transaction_id=expense.id,
            splits=[
                SplitItemIn(participant_id=ann.id, owed_cents=3_000),
                SplitItemIn(participant_id=ben.id, owed_cents=2_000),
            ],
        )
    )
    splits.record_payment(created[0].id, SplitPaymentIn(amount_cents=1_000))
    splits.record_payment(created[1].id, SplitPaymentIn(amount_cents=2_000))

    pending = splits.pending_splits()
    assert [split.participant_id for split in pending] == [ann.id]
    assert splits.owed_summary() == [
        {
            "participant_id": ann.id,
            "name": "Ann",
            "owed_cents": 3_000,
            "paid_cents": 1_000,
            "remaining_cents": 2_000,
        }
    ]


def test_deactivated_participant_cannot_be_split_with() -> None:
    session = make_session()
    _, expense = setup_expense(session)
    splits = SplitBillService(session)
    (ann,) = add_people(splits, "Ann")
    splits.deactivate_participant(ann.id)

    assert splits.list_participants() == []
    with pytest.raises(NotFound):
        splits.create_splits(
            SplitsIn(
                transaction_id=expense.id,
                splits=[SplitItemIn(participant_id=ann.id)],
                equal_split=True,
            )
        )
