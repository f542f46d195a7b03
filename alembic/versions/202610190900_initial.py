"""initial schema

Revision ID: 202610190900
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202610190900"
down_revision = None
branch_labels = None
depends_on = None


TRANSACTION_TYPE = sa.Enum("income", "expense", "transfer", name="transactiontype")


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "accounts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column(
            "currency_code", sa.String(length=3), nullable=False, server_default="EUR"
        ),
        sa.Column("is_default", sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps(),
        sa.UniqueConstraint("name", name="uq_account_name"),
    )

    op.create_table(
        "categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("icon", sa.String(length=50), nullable=False, server_default="category"),
        sa.Column("color", sa.String(length=9)),
        sa.Column("type", TRANSACTION_TYPE, nullable=False),
        sa.Column("is_default", sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps(),
        sa.UniqueConstraint("type", "name", name="uq_category_type_name"),
    )

    op.create_table(
        "recurring_transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=120), nullable=False, server_default=""),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("type", TRANSACTION_TYPE, nullable=False),
        sa.Column("category_id", sa.Integer(), sa.ForeignKey("categories.id")),
        sa.Column(
            "account_id", sa.Integer(), sa.ForeignKey("accounts.id"), nullable=False
        ),
        sa.Column("note", sa.Text(), nullable=False, server_default=""),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column(
            "frequency",
            sa.Enum("daily", "weekly", "monthly", "yearly", name="frequency"),
            nullable=False,
        ),
        sa.Column("interval", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("end_date", sa.Date()),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.CheckConstraint("interval > 0", name="ck_recurring_interval_positive"),
        sa.CheckConstraint("amount_cents >= 0", name="ck_recurring_amount_positive"),
    )
    op.create_index(
        "ix_recurring_account_active",
        "recurring_transactions",
        ["account_id", "is_active"],
    )

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=120), nullable=False, server_default=""),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("type", TRANSACTION_TYPE, nullable=False),
        sa.Column("category_id", sa.Integer(), sa.ForeignKey("categories.id")),
        sa.Column(
            "account_id", sa.Integer(), sa.ForeignKey("accounts.id"), nullable=False
        ),
        sa.Column("transfer_account_id", sa.Integer(), sa.ForeignKey("accounts.id")),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("note", sa.Text(), nullable=False, server_default=""),
        sa.Column("is_validated", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("deleted_at", sa.DateTime()),
        sa.Column(
            "recurring_id", sa.Integer(), sa.ForeignKey("recurring_transactions.id")
        ),
        sa.Column("occurrence_date", sa.Date()),
        sa.Column("is_modified", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column(
            "recurrence",
            sa.Enum(
                "none",
                "weekly",
                "monthly",
                "quarterly",
                "four_monthly",
                "semi_annual",
                "annual",
                name="legacyrecurrence",
            ),
            nullable=False,
            server_default="none",
        ),
        sa.Column("recurrence_end_date", sa.Date()),
        sa.Column("recurrence_group_id", sa.Integer()),
        *_timestamps(),
        sa.UniqueConstraint(
            "recurring_id", "occurrence_date", name="uq_txn_recurring_occurrence"
        ),
        sa.CheckConstraint("amount_cents >= 0", name="ck_transactions_amount_positive"),
    )
    op.create_index("ix_transactions_account_date", "transactions", ["account_id", "date"])
    op.create_index(
        "ix_transactions_category_date", "transactions", ["category_id", "date"]
    )
    op.create_index("ix_transactions_type_date", "transactions", ["type", "date"])

    op.create_table(
        "budgets",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("year_month", sa.String(length=7), nullable=False),
        sa.Column("category_id", sa.Integer(), sa.ForeignKey("categories.id")),
        sa.Column("is_global", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.CheckConstraint("amount_cents >= 0", name="ck_budget_amount_positive"),
        sa.CheckConstraint(
            "(is_global = 1 AND category_id IS NULL) "
            "OR (is_global = 0 AND category_id IS NOT NULL)",
            name="ck_budget_scope_exclusive",
        ),
        sa.UniqueConstraint("year_month", "category_id", name="uq_budget_month_category"),
    )
    op.create_index("ix_budget_year_month", "budgets", ["year_month"])

    # One global budget per month: NULL category ids never collide in a plain unique.
    op.execute(
        "CREATE UNIQUE INDEX uq_budget_month_category_coalesce "
        "ON budgets(year_month, IFNULL(category_id, -1))"
    )

    op.create_table(
        "budget_alert_records",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "budget_id", sa.Integer(), sa.ForeignKey("budgets.id"), nullable=False
        ),
        sa.Column("year_month", sa.String(length=7), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("budget_id", "year_month", name="uq_alert_budget_month"),
    )

    op.create_table(
        "savings_goals",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("target_cents", sa.Integer(), nullable=False),
        sa.Column("current_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("icon", sa.String(length=50), nullable=False, server_default="savings"),
        sa.Column("color", sa.String(length=9)),
        sa.Column("created_date", sa.Date(), nullable=False),
        sa.Column("target_date", sa.Date()),
        *_timestamps(),
        sa.CheckConstraint("target_cents > 0", name="ck_goal_target_positive"),
        sa.CheckConstraint("current_cents >= 0", name="ck_goal_current_positive"),
    )


def downgrade() -> None:
    op.drop_table("savings_goals")
    op.drop_table("budget_alert_records")
    op.execute("DROP INDEX IF EXISTS uq_budget_month_category_coalesce")
    op.drop_index("ix_budget_year_month", table_name="budgets")
    op.drop_table("budgets")
    op.drop_index("ix_transactions_type_date", table_name="transactions")
    op.drop_index("ix_transactions_category_date", table_name="transactions")
    op.drop_index("ix_transactions_account_date", table_name="transactions")
    op.drop_table("transactions")
    op.drop_index("ix_recurring_account_active", table_name="recurring_transactions")
    op.drop_table("recurring_transactions")
    op.drop_table("categories")
    op.drop_table("accounts")
