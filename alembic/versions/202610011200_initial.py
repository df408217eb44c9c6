"""initial schema

Revision ID: 202610011200
Revises:
Create Date: 2026-10-01 12:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202610011200"
down_revision = None
branch_labels = None
depends_on = None


def _currency_code():
    return sa.Enum("ARS", "USD", "EUR", name="currencycode")


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def upgrade():
    op.create_table(
        "households",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=100), nullable=False),
        *_timestamps(),
    )

    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("household_id", sa.Integer(), sa.ForeignKey("households.id")),
        *_timestamps(),
    )

    op.create_table(
        "categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("household_id", sa.Integer(), sa.ForeignKey("households.id")),
        sa.Column("archived_at", sa.DateTime()),
        *_timestamps(),
        sa.UniqueConstraint(
            "household_id", "name", name="uq_category_household_name"
        ),
    )

    # Money columns hold hundredths; rate columns hold millionths.
    op.create_table(
        "expense_templates",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("description", sa.String(length=200), nullable=False),
        sa.Column(
            "category_id",
            sa.Integer(),
            sa.ForeignKey("categories.id"),
            nullable=False,
        ),
        sa.Column("amount_original", sa.BigInteger(), nullable=False),
        sa.Column("amount_ars", sa.BigInteger(), nullable=False),
        sa.Column("currency_code", _currency_code(), nullable=False),
        sa.Column("fx_rate", sa.BigInteger(), nullable=False),
        sa.Column(
            "paid_by_user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False
        ),
        sa.Column("household_id", sa.Integer(), sa.ForeignKey("households.id")),
        sa.Column("day_of_month", sa.Integer(), nullable=False),
        sa.Column("start_month", sa.String(length=7), nullable=False),
        sa.Column(
            "is_active", sa.Boolean(), nullable=False, server_default=sa.true()
        ),
        *_timestamps(),
        sa.CheckConstraint(
            "day_of_month >= 1 AND day_of_month <= 31",
            name="ck_template_day_of_month",
        ),
    )
    op.create_index(
        "ix_expense_templates_active", "expense_templates", ["is_active"]
    )

    op.create_table(
        "recurring_skip_months",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "template_id",
            sa.Integer(),
            sa.ForeignKey("expense_templates.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("month", sa.String(length=7), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("template_id", "month", name="uq_skip_template_month"),
    )

    op.create_table(
        "installment_skip_months",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("series_id", sa.String(length=40), nullable=False),
        sa.Column("month", sa.String(length=7), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("series_id", "month", name="uq_skip_series_month"),
    )

    op.create_table(
        "expenses",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("month", sa.String(length=7), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("description", sa.String(length=200), nullable=False),
        sa.Column(
            "category_id",
            sa.Integer(),
            sa.ForeignKey("categories.id"),
            nullable=False,
        ),
        sa.Column("amount_original", sa.BigInteger(), nullable=False),
        sa.Column("amount_ars", sa.BigInteger(), nullable=False),
        sa.Column("currency_code", _currency_code(), nullable=False),
        sa.Column("fx_rate_used", sa.BigInteger(), nullable=False),
        sa.Column("household_id", sa.Integer(), sa.ForeignKey("households.id")),
        sa.Column(
            "paid_by_user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False
        ),
        sa.Column(
            "template_id",
            sa.Integer(),
            sa.ForeignKey("expense_templates.id", ondelete="SET NULL"),
        ),
        sa.Column(
            "is_installment", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("installment_series_id", sa.String(length=40)),
        sa.Column("installment_number", sa.Integer()),
        sa.Column("installment_total", sa.Integer()),
        sa.Column("installment_amount", sa.BigInteger()),
        sa.Column("installment_source", sa.String(length=20)),
        sa.Column("original_total_amount", sa.BigInteger()),
        sa.Column(
            "created_from_series",
            sa.Boolean(),
            nullable=False,
            server_default=sa.false(),
        ),
        *_timestamps(),
        sa.UniqueConstraint("template_id", "month", name="uq_expense_template_month"),
        sa.UniqueConstraint(
            "installment_series_id", "month", name="uq_expense_series_month"
        ),
        sa.CheckConstraint(
            "NOT (is_installment AND template_id IS NOT NULL)",
            name="ck_expense_fixed_xor_installment",
        ),
        sa.CheckConstraint(
            "installment_number IS NULL OR "
            "(installment_number >= 1 AND installment_number <= installment_total)",
            name="ck_expense_installment_number_range",
        ),
    )
    op.create_index("ix_expenses_month", "expenses", ["month"])
    op.create_index(
        "ix_expenses_series_number",
        "expenses",
        ["installment_series_id", "installment_number"],
    )

    op.create_table(
        "monthly_incomes",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("month", sa.String(length=7), nullable=False),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("description", sa.String(length=200), nullable=False),
        sa.Column("amount_original", sa.BigInteger(), nullable=False),
        sa.Column("amount_ars", sa.BigInteger(), nullable=False),
        sa.Column("currency_code", _currency_code(), nullable=False),
        sa.Column("fx_rate_used", sa.BigInteger(), nullable=False),
        *_timestamps(),
    )
    op.create_index(
        "ix_monthly_incomes_month_user", "monthly_incomes", ["month", "user_id"]
    )

    op.create_table(
        "monthly_exchange_rates",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("month", sa.String(length=7), nullable=False),
        sa.Column("currency_code", _currency_code(), nullable=False),
        sa.Column("rate_to_ars", sa.BigInteger(), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("month", "currency_code", name="uq_fx_month_currency"),
        sa.CheckConstraint("rate_to_ars > 0", name="ck_fx_rate_positive"),
    )


def downgrade():
    op.drop_table("monthly_exchange_rates")
    op.drop_index("ix_monthly_incomes_month_user", table_name="monthly_incomes")
    op.drop_table("monthly_incomes")
    op.drop_index("ix_expenses_series_number", table_name="expenses")
    op.drop_index("ix_expenses_month", table_name="expenses")
    op.drop_table("expenses")
    op.drop_table("installment_skip_months")
    op.drop_table("recurring_skip_months")
    op.drop_index("ix_expense_templates_active", table_name="expense_templates")
    op.drop_table("expense_templates")
    op.drop_table("categories")
    op.drop_table("users")
    op.drop_table("households")
    sa.Enum(name="currencycode").drop(op.get_bind(), checkfirst=True)
