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

CATEGORY_GROUPS = ("income", "giving", "savings", "expense", "debt", "misc")
DEBT_TYPES = ("credit_card", "loan", "mortgage", "student_loan", "other")
PLANNED_ITEM_TYPES = ("income", "expense", "debt")


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def upgrade():
    op.create_table(
        "categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column(
            "group_name",
            sa.Enum(*CATEGORY_GROUPS, name="categorygroup"),
            nullable=False,
        ),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("parent_id", sa.Integer(), sa.ForeignKey("categories.id")),
        sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("archived_at", sa.DateTime()),
        sa.Column(
            "is_credit_card_bucket",
            sa.Boolean(),
            nullable=False,
            server_default=sa.false(),
        ),
        sa.Column(
            "is_protected", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        *_timestamps(),
    )
    op.create_index(
        "ix_categories_user_group_parent",
        "categories",
        ["user_id", "group_name", "parent_id"],
    )

    op.create_table(
        "credit_cards",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("apr_bps", sa.Integer()),
        sa.Column(
            "current_balance_cents", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column("min_payment_cents", sa.Integer()),
        *_timestamps(),
        sa.CheckConstraint(
            "min_payment_cents IS NULL OR min_payment_cents >= 0",
            name="ck_credit_card_min_payment_positive",
        ),
    )

    op.create_table(
        "debt_accounts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column(
            "debt_type",
            sa.Enum(*DEBT_TYPES, name="debttype"),
            nullable=False,
            server_default="credit_card",
        ),
        sa.Column("balance_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("apr_bps", sa.Integer()),
        sa.Column("min_payment_cents", sa.Integer()),
        sa.Column("due_date", sa.Date()),
        *_timestamps(),
        sa.CheckConstraint(
            "min_payment_cents IS NULL OR min_payment_cents >= 0",
            name="ck_debt_account_min_payment_positive",
        ),
    )

    op.create_table(
        "planned_items",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("month", sa.Date(), nullable=False),
        sa.Column(
            "type",
            sa.Enum(*PLANNED_ITEM_TYPES, name="planneditemtype"),
            nullable=False,
        ),
        sa.Column(
            "category_id", sa.Integer(), sa.ForeignKey("categories.id"), nullable=False
        ),
        sa.Column(
            "credit_card_id",
            sa.Integer(),
            sa.ForeignKey("credit_cards.id", ondelete="SET NULL"),
        ),
        sa.Column(
            "debt_account_id",
            sa.Integer(),
            sa.ForeignKey("debt_accounts.id", ondelete="SET NULL"),
        ),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        *_timestamps(),
        sa.CheckConstraint("amount_cents >= 0", name="ck_planned_items_amount_positive"),
    )
    op.create_index(
        "ix_planned_items_user_month", "planned_items", ["user_id", "month"]
    )

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("category_id", sa.Integer(), sa.ForeignKey("categories.id")),
        sa.Column(
            "credit_card_id",
            sa.Integer(),
            sa.ForeignKey("credit_cards.id", ondelete="SET NULL"),
        ),
        sa.Column(
            "debt_account_id",
            sa.Integer(),
            sa.ForeignKey("debt_accounts.id", ondelete="SET NULL"),
        ),
        *_timestamps(),
    )
    op.create_index("ix_transactions_user_date", "transactions", ["user_id", "date"])
    op.create_index(
        "ix_transactions_user_card", "transactions", ["user_id", "credit_card_id"]
    )
    op.create_index(
        "ix_transactions_user_debt", "transactions", ["user_id", "debt_account_id"]
    )

    op.create_table(
        "budget_months",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("month", sa.Date(), nullable=False),
        sa.Column(
            "available_start_cents", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column(
            "available_end_cents", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column(
            "start_overridden", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        *_timestamps(),
        sa.UniqueConstraint("user_id", "month", name="uq_budget_month_user_month"),
    )


def downgrade():
    op.drop_table("budget_months")
    op.drop_index("ix_transactions_user_debt", table_name="transactions")
    op.drop_index("ix_transactions_user_card", table_name="transactions")
    op.drop_index("ix_transactions_user_date", table_name="transactions")
    op.drop_table("transactions")
    op.drop_index("ix_planned_items_user_month", table_name="planned_items")
    op.drop_table("planned_items")
    op.drop_table("debt_accounts")
    op.drop_table("credit_cards")
    op.drop_index("ix_categories_user_group_parent", table_name="categories")
    op.drop_table("categories")
