"""recurring templates, expenses and monthly budgets

Revision ID: 202610190900
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "202610190900"
down_revision = None
branch_labels = None
depends_on = None


FREQUENCY = sa.Enum("daily", "weekly", "monthly", "yearly", name="frequency")
TEMPLATE_STATUS = sa.Enum("active", "paused", "cancelled", name="templatestatus")
RECURRENCE_STATUS = sa.Enum(
    "generated", "manual", "skipped", name="recurrencestatus"
)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "currencies",
        sa.Column("code", sa.String(length=3), primary_key=True),
        sa.Column("name", sa.String(length=60), nullable=True),
        sa.Column("symbol", sa.String(length=8), nullable=True),
        sa.Column(
            "is_default", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        *_timestamps(),
    )

    op.create_table(
        "exchange_rates",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("base", sa.String(length=3), nullable=False),
        sa.Column("quote", sa.String(length=3), nullable=False),
        sa.Column("rate_micros", sa.Integer(), nullable=False),
        sa.Column("rate_date", sa.Date(), nullable=False),
        sa.Column("requested_date", sa.Date(), nullable=False),
        sa.Column("provider", sa.String(length=40), nullable=False),
        sa.Column("fetched_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint(
            "base", "quote", "requested_date", name="uq_exchange_rate_pair_day"
        ),
        sa.CheckConstraint("rate_micros > 0", name="ck_exchange_rate_positive"),
    )

    op.create_table(
        "categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=100), nullable=False, unique=True),
        sa.Column("color", sa.String(length=7), nullable=True),
        sa.Column("archived_at", sa.DateTime(), nullable=True),
        *_timestamps(),
    )

    op.create_table(
        "tags",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=50), nullable=False, unique=True),
        *_timestamps(),
    )

    op.create_table(
        "recurring_templates",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column(
            "currency_code",
            sa.String(length=3),
            sa.ForeignKey("currencies.code"),
            nullable=False,
        ),
        sa.Column("converted_amount_cents", sa.Integer(), nullable=True),
        sa.Column("frequency", FREQUENCY, nullable=False),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("next_due_date", sa.Date(), nullable=False),
        sa.Column("last_generated_date", sa.Date(), nullable=True),
        sa.Column("status", TEMPLATE_STATUS, nullable=False),
        sa.Column(
            "category_id", sa.Integer(), sa.ForeignKey("categories.id"), nullable=False
        ),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column(
            "notification_enabled",
            sa.Boolean(),
            nullable=False,
            server_default=sa.true(),
        ),
        *_timestamps(),
        sa.CheckConstraint("amount_cents > 0", name="ck_template_amount_positive"),
    )
    op.create_index(
        "ix_templates_status_due", "recurring_templates", ["status", "next_due_date"]
    )

    op.create_table(
        "expenses",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("occurred_at", sa.DateTime(), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("converted_amount_cents", sa.Integer(), nullable=False),
        sa.Column("conversion_rate_micros", sa.Integer(), nullable=False),
        sa.Column(
            "currency_code",
            sa.String(length=3),
            sa.ForeignKey("currencies.code"),
            nullable=False,
        ),
        sa.Column(
            "category_id", sa.Integer(), sa.ForeignKey("categories.id"), nullable=False
        ),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column(
            "is_recurring", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("recurrence_status", RECURRENCE_STATUS, nullable=False),
        sa.Column(
            "recurring_template_id",
            sa.Integer(),
            sa.ForeignKey("recurring_templates.id", ondelete="SET NULL"),
            nullable=True,
        ),
        *_timestamps(),
        sa.UniqueConstraint(
            "recurring_template_id", "date", name="uq_expense_template_day"
        ),
        sa.CheckConstraint("amount_cents >= 0", name="ck_expenses_amount_positive"),
    )
    op.create_index("ix_expenses_date", "expenses", ["date"])
    op.create_index("ix_expenses_category_date", "expenses", ["category_id", "date"])

    op.create_table(
        "expense_tags",
        sa.Column(
            "expense_id",
            sa.Integer(),
            sa.ForeignKey("expenses.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column(
            "tag_id", sa.Integer(), sa.ForeignKey("tags.id"), primary_key=True
        ),
    )

    op.create_table(
        "budgets",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("start_date", sa.Date(), nullable=False, unique=True),
        sa.Column("amount_cents", sa.Integer(), nullable=True),
        sa.Column("alert_threshold_cents", sa.Integer(), nullable=True),
        sa.Column(
            "currency_code",
            sa.String(length=3),
            sa.ForeignKey("currencies.code"),
            nullable=False,
        ),
        *_timestamps(),
        sa.CheckConstraint(
            "amount_cents IS NULL OR amount_cents > 0",
            name="ck_budget_amount_positive",
        ),
        sa.CheckConstraint(
            "alert_threshold_cents IS NULL OR (amount_cents IS NOT NULL"
            " AND alert_threshold_cents > 0"
            " AND alert_threshold_cents <= amount_cents)",
            name="ck_budget_threshold_within_amount",
        ),
    )

    op.create_table(
        "category_budgets",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "budget_id",
            sa.Integer(),
            sa.ForeignKey("budgets.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "category_id", sa.Integer(), sa.ForeignKey("categories.id"), nullable=False
        ),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column(
            "currency_code",
            sa.String(length=3),
            sa.ForeignKey("currencies.code"),
            nullable=False,
        ),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("month", sa.Integer(), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint(
            "budget_id", "category_id", name="uq_category_budget_scope"
        ),
        sa.CheckConstraint(
            "amount_cents >= 0", name="ck_category_budget_amount_positive"
        ),
    )
    op.create_index(
        "ix_category_budget_month", "category_budgets", ["year", "month"]
    )


def downgrade() -> None:
    op.drop_index("ix_category_budget_month", table_name="category_budgets")
    op.drop_table("category_budgets")
    op.drop_table("budgets")
    op.drop_table("expense_tags")
    op.drop_index("ix_expenses_category_date", table_name="expenses")
    op.drop_index("ix_expenses_date", table_name="expenses")
    op.drop_table("expenses")
    op.drop_index("ix_templates_status_due", table_name="recurring_templates")
    op.drop_table("recurring_templates")
    op.drop_table("tags")
    op.drop_table("categories")
    op.drop_table("exchange_rates")
    op.drop_table("currencies")
    RECURRENCE_STATUS.drop(op.get_bind(), checkfirst=True)
    TEMPLATE_STATUS.drop(op.get_bind(), checkfirst=True)
    FREQUENCY.drop(op.get_bind(), checkfirst=True)
