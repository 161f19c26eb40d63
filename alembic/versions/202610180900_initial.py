"""initial ledger schema

Revision ID: 202610180900
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202610180900"
down_revision = None
branch_labels = None
depends_on = None


WORKSPACE = sa.Enum("production", "test", name="workspace")
TRANSACTION_TYPE = sa.Enum("income", "expense", "transfer", name="transactiontype")
LIFECYCLE_STATUS = sa.Enum("active", "deleting", name="lifecyclestatus")
INVEST_NUMERIC = sa.Numeric(20, 8)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer()),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("type", TRANSACTION_TYPE),
        sa.Column(
            "system_key",
            sa.Enum(
                "Transfer",
                "Debt",
                "Debt Repayment",
                "Split Payment",
                "Mortgage",
                "Bills",
                "Subscriptions",
                "Adjustment",
                "Investment",
                name="systemcategory",
            ),
            unique=True,
        ),
        sa.Column("color", sa.String(length=7)),
        *_timestamps(),
        sa.UniqueConstraint("user_id", "name", name="uq_category_user_name"),
    )

    op.create_table(
        "accounts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("workspace", WORKSPACE, nullable=False),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column(
            "type",
            sa.Enum(
                "checking", "savings", "card", "cash", "investment", name="accounttype"
            ),
            nullable=False,
        ),
        *_timestamps(),
    )
    op.create_index("ix_accounts_user_workspace", "accounts", ["user_id", "workspace"])

    op.create_table(
        "currency_balances",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "account_id",
            sa.Integer(),
            sa.ForeignKey("accounts.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("currency_code", sa.String(length=3), nullable=False),
        sa.Column(
            "balance_cents", sa.Integer(), nullable=False, server_default=sa.text("0")
        ),
        sa.Column("version", sa.Integer(), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint(
            "account_id", "currency_code", name="uq_balance_account_currency"
        ),
    )

    op.create_table(
        "debts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("workspace", WORKSPACE, nullable=False),
        sa.Column(
            "currency_balance_id",
            sa.Integer(),
            sa.ForeignKey("currency_balances.id", ondelete="SET NULL"),
        ),
        sa.Column("currency_code", sa.String(length=3), nullable=False),
        sa.Column("person_name", sa.String(length=120), nullable=False),
        sa.Column("person_contact", sa.String(length=200)),
        sa.Column("description", sa.Text()),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column(
            "paid_cents", sa.Integer(), nullable=False, server_default=sa.text("0")
        ),
        sa.Column(
            "direction", sa.Enum("i_owe", "they_owe", name="debtdirection"), nullable=False
        ),
        sa.Column(
            "status",
            sa.Enum("pending", "partial", "paid", name="debtstatus"),
            nullable=False,
        ),
        sa.Column("lifecycle_status", LIFECYCLE_STATUS, nullable=False),
        sa.Column("deleting_since", sa.DateTime()),
        sa.Column("due_date", sa.Date()),
        sa.Column("version", sa.Integer(), nullable=False),
        *_timestamps(),
        sa.CheckConstraint("amount_cents > 0", name="ck_debts_amount_positive"),
        sa.CheckConstraint("paid_cents >= 0", name="ck_debts_paid"),
    )
    op.create_index(
        "ix_debts_user_workspace",
        "debts",
        ["user_id", "workspace", "lifecycle_status"],
    )

    op.create_table(
        "debt_payments",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "debt_id",
            sa.Integer(),
            sa.ForeignKey("debts.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("paid_at", sa.DateTime(), nullable=False),
        sa.Column("note", sa.Text()),
        *_timestamps(),
        sa.CheckConstraint("amount_cents > 0", name="ck_debt_payments_amount_positive"),
    )

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column(
            "currency_balance_id",
            sa.Integer(),
            sa.ForeignKey("currency_balances.id"),
            nullable=False,
        ),
        sa.Column(
            "to_currency_balance_id",
            sa.Integer(),
            sa.ForeignKey("currency_balances.id"),
        ),
        sa.Column("category_id", sa.Integer(), sa.ForeignKey("categories.id")),
        sa.Column("type", TRANSACTION_TYPE, nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("fee_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column(
            "exchange_rate_micros",
            sa.Integer(),
            nullable=False,
            server_default=sa.text("1000000"),
        ),
        sa.Column("to_amount_cents", sa.Integer()),
        sa.Column(
            "cashback_cents", sa.Integer(), nullable=False, server_default=sa.text("0")
        ),
        sa.Column("description", sa.Text()),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("lifecycle_status", LIFECYCLE_STATUS, nullable=False),
        sa.Column(
            "exclude_from_monthly_stats",
            sa.Boolean(),
            nullable=False,
            server_default=sa.text("0"),
        ),
        sa.Column(
            "debt_id", sa.Integer(), sa.ForeignKey("debts.id", ondelete="SET NULL")
        ),
        sa.Column(
            "debt_payment_id",
            sa.Integer(),
            sa.ForeignKey("debt_payments.id", ondelete="CASCADE"),
        ),
        sa.Column(
            "parent_transaction_id",
            sa.Integer(),
            sa.ForeignKey("transactions.id", ondelete="SET NULL"),
        ),
        sa.Column("idempotency_key", sa.String(length=100)),
        *_timestamps(),
        sa.UniqueConstraint("user_id", "idempotency_key", name="uq_txn_idempotency"),
        sa.CheckConstraint("amount_cents > 0", name="ck_transactions_amount_positive"),
        sa.CheckConstraint("fee_cents >= 0", name="ck_transactions_fee"),
        sa.CheckConstraint("cashback_cents >= 0", name="ck_transactions_cashback"),
    )
    op.create_index(
        "ix_transactions_balance_date",
        "transactions",
        ["currency_balance_id", "date"],
    )
    op.create_index(
        "ix_transactions_to_balance", "transactions", ["to_currency_balance_id"]
    )
    op.create_index("ix_transactions_parent", "transactions", ["parent_transaction_id"])
    op.create_index("ix_transactions_debt", "transactions", ["debt_id"])
    op.create_index("ix_transactions_debt_payment", "transactions", ["debt_payment_id"])

    op.create_table(
        "split_participants",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("workspace", WORKSPACE, nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column(
            "contact_type",
            sa.Enum(
                "telegram", "whatsapp", "phone", "email", "other", name="contacttype"
            ),
        ),
        sa.Column("contact_value", sa.String(length=255)),
        sa.Column(
            "color",
            sa.String(length=7),
            nullable=False,
            server_default="#8b5cf6",
        ),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("1")),
        *_timestamps(),
    )
    op.create_index(
        "ix_split_participants_user",
        "split_participants",
        ["user_id", "workspace", "is_active"],
    )

    op.create_table(
        "transaction_splits",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "transaction_id",
            sa.Integer(),
            sa.ForeignKey("transactions.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "participant_id",
            sa.Integer(),
            sa.ForeignKey("split_participants.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("owed_cents", sa.Integer(), nullable=False),
        sa.Column(
            "paid_cents", sa.Integer(), nullable=False, server_default=sa.text("0")
        ),
        sa.Column(
            "status",
            sa.Enum("pending", "partial", "settled", name="splitstatus"),
            nullable=False,
        ),
        sa.Column("note", sa.Text()),
        *_timestamps(),
        sa.CheckConstraint("owed_cents > 0", name="ck_splits_owed_positive"),
        sa.CheckConstraint("paid_cents >= 0", name="ck_splits_paid"),
    )
    op.create_index(
        "ix_transaction_splits_transaction", "transaction_splits", ["transaction_id"]
    )
    op.create_index(
        "ix_transaction_splits_participant", "transaction_splits", ["participant_id"]
    )

    op.create_table(
        "split_payments",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "split_id",
            sa.Integer(),
            sa.ForeignKey("transaction_splits.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column(
            "received_to_balance_id",
            sa.Integer(),
            sa.ForeignKey("currency_balances.id", ondelete="SET NULL"),
        ),
        sa.Column(
            "linked_transaction_id",
            sa.Integer(),
            sa.ForeignKey("transactions.id", ondelete="SET NULL"),
        ),
        sa.Column("paid_at", sa.DateTime(), nullable=False),
        sa.Column("note", sa.Text()),
        *_timestamps(),
        sa.CheckConstraint("amount_cents > 0", name="ck_split_payments_amount_positive"),
    )
    op.create_index(
        "ix_split_payments_linked_txn", "split_payments", ["linked_transaction_id"]
    )

    op.create_table(
        "obligations",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "account_id",
            sa.Integer(),
            sa.ForeignKey("accounts.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "kind", sa.Enum("credit", "mortgage", name="obligationkind"), nullable=False
        ),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("principal_cents", sa.Integer(), nullable=False),
        sa.Column("interest_rate", sa.Numeric(6, 3), nullable=False),
        sa.Column("monthly_payment_cents", sa.Integer(), nullable=False),
        sa.Column("remaining_cents", sa.Integer(), nullable=False),
        sa.Column("currency_code", sa.String(length=3), nullable=False),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date()),
        sa.Column("term_years", sa.Integer()),
        sa.Column("payment_day", sa.Integer()),
        sa.Column(
            "status",
            sa.Enum("active", "paid_off", "defaulted", name="obligationstatus"),
            nullable=False,
        ),
        *_timestamps(),
        sa.CheckConstraint("remaining_cents >= 0", name="ck_obligations_remaining"),
        sa.CheckConstraint(
            "payment_day IS NULL OR (payment_day BETWEEN 1 AND 31)",
            name="ck_obligations_payment_day",
        ),
    )
    op.create_index(
        "ix_obligations_account_kind", "obligations", ["account_id", "kind", "status"]
    )

    op.create_table(
        "obligation_payments",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "obligation_id",
            sa.Integer(),
            sa.ForeignKey("obligations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("month_year", sa.String(length=7), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("paid_at", sa.DateTime(), nullable=False),
        sa.Column("note", sa.Text()),
        sa.Column(
            "transaction_id",
            sa.Integer(),
            sa.ForeignKey("transactions.id", ondelete="SET NULL"),
        ),
        *_timestamps(),
        sa.UniqueConstraint(
            "obligation_id", "month_year", name="uq_obligation_payment_month"
        ),
    )

    op.create_table(
        "subscriptions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("workspace", WORKSPACE, nullable=False),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("currency_code", sa.String(length=3), nullable=False),
        sa.Column(
            "billing_cycle",
            sa.Enum("weekly", "monthly", "yearly", name="billingcycle"),
            nullable=False,
        ),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("1")),
        *_timestamps(),
        sa.CheckConstraint("amount_cents > 0", name="ck_subscriptions_amount_positive"),
    )

    op.create_table(
        "subscription_payments",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "subscription_id",
            sa.Integer(),
            sa.ForeignKey("subscriptions.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "currency_balance_id",
            sa.Integer(),
            sa.ForeignKey("currency_balances.id", ondelete="SET NULL"),
        ),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("paid_at", sa.DateTime(), nullable=False),
        sa.Column("due_date", sa.Date(), nullable=False),
        sa.Column(
            "transaction_id",
            sa.Integer(),
            sa.ForeignKey("transactions.id", ondelete="SET NULL"),
        ),
        sa.Column("note", sa.Text()),
        *_timestamps(),
    )

    op.create_table(
        "securities",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("ticker", sa.String(length=20), nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("currency_code", sa.String(length=3), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("user_id", "ticker", name="uq_security_user_ticker"),
    )

    op.create_table(
        "holdings",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column(
            "security_id",
            sa.Integer(),
            sa.ForeignKey("securities.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("quantity", INVEST_NUMERIC, nullable=False),
        sa.Column("average_cost_basis", INVEST_NUMERIC, nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("user_id", "security_id", name="uq_holding_user_security"),
    )

    op.create_table(
        "investment_transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column(
            "security_id",
            sa.Integer(),
            sa.ForeignKey("securities.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("type", sa.Enum("buy", "sell", name="tradetype"), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("quantity", INVEST_NUMERIC, nullable=False),
        sa.Column("price_per_share", INVEST_NUMERIC, nullable=False),
        sa.Column("total_amount", INVEST_NUMERIC, nullable=False),
        sa.Column("currency_code", sa.String(length=3), nullable=False),
        sa.Column("realized_pl", INVEST_NUMERIC),
        sa.Column("cash_flow", INVEST_NUMERIC, nullable=False),
        sa.Column("cash_balance_after", INVEST_NUMERIC, nullable=False),
        sa.Column("notes", sa.Text()),
        *_timestamps(),
        sa.CheckConstraint("quantity > 0", name="ck_investment_txn_quantity_positive"),
    )
    op.create_index(
        "ix_investment_transactions_replay",
        "investment_transactions",
        ["user_id", "security_id", "date", "created_at"],
    )

    op.create_table(
        "investment_cash_balances",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("currency_code", sa.String(length=3), nullable=False),
        sa.Column("available_balance", INVEST_NUMERIC, nullable=False),
        sa.Column("settled_balance", INVEST_NUMERIC, nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("user_id", "currency_code", name="uq_invest_cash_currency"),
    )


def downgrade() -> None:
    op.drop_table("investment_cash_balances")
    op.drop_index(
        "ix_investment_transactions_replay", table_name="investment_transactions"
    )
    op.drop_table("investment_transactions")
    op.drop_table("holdings")
    op.drop_table("securities")
    op.drop_table("subscription_payments")
    op.drop_table("subscriptions")
    op.drop_table("obligation_payments")
    op.drop_index("ix_obligations_account_kind", table_name="obligations")
    op.drop_table("obligations")
    op.drop_index("ix_split_payments_linked_txn", table_name="split_payments")
    op.drop_table("split_payments")
    op.drop_index("ix_transaction_splits_participant", table_name="transaction_splits")
    op.drop_index("ix_transaction_splits_transaction", table_name="transaction_splits")
    op.drop_table("transaction_splits")
    op.drop_index("ix_split_participants_user", table_name="split_participants")
    op.drop_table("split_participants")
    for index in (
        "ix_transactions_debt_payment",
        "ix_transactions_debt",
        "ix_transactions_parent",
        "ix_transactions_to_balance",
        "ix_transactions_balance_date",
    ):
        op.drop_index(index, table_name="transactions")
    op.drop_table("transactions")
    op.drop_table("debt_payments")
    op.drop_index("ix_debts_user_workspace", table_name="debts")
    op.drop_table("debts")
    op.drop_table("currency_balances")
    op.drop_index("ix_accounts_user_workspace", table_name="accounts")
    op.drop_table("accounts")
    op.drop_table("categories")
