"""initial schema

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


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def _category_type():
    return sa.Enum("expense", "income", name="categorytype")


def upgrade():
    op.create_table(
        "groups",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("owner_id", sa.Integer(), nullable=False),
        *_timestamps(),
    )

    op.create_table(
        "group_roles",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("group_id", sa.Integer(), sa.ForeignKey("groups.id"), nullable=False),
        sa.Column("name", sa.String(length=60), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column("can_view_transactions", sa.Boolean(), nullable=False),
        sa.Column("can_manage_transactions", sa.Boolean(), nullable=False),
        sa.Column("can_view_categories", sa.Boolean(), nullable=False),
        sa.Column("can_manage_categories", sa.Boolean(), nullable=False),
        sa.Column("can_view_subcategories", sa.Boolean(), nullable=False),
        sa.Column("can_manage_subcategories", sa.Boolean(), nullable=False),
        sa.Column("can_view_budgets", sa.Boolean(), nullable=False),
        sa.Column("can_manage_budgets", sa.Boolean(), nullable=False),
        sa.Column("can_manage_group", sa.Boolean(), nullable=False),
        sa.Column("can_manage_group_accounts", sa.Boolean(), nullable=False),
        sa.Column("can_manage_own_accounts", sa.Boolean(), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("group_id", "name", name="uq_group_role_name"),
    )

    op.create_table(
        "group_members",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("group_id", sa.Integer(), sa.ForeignKey("groups.id"), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column(
            "role_id", sa.Integer(), sa.ForeignKey("group_roles.id"), nullable=False
        ),
        sa.Column("joined_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("group_id", "user_id", name="uq_group_member_user"),
    )

    op.create_table(
        "categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("group_id", sa.Integer(), sa.ForeignKey("groups.id")),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column("type", _category_type(), nullable=False),
        sa.Column("hidden", sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps(),
    )
    op.create_index("ix_categories_user_group", "categories", ["user_id", "group_id"])
    op.create_index("ix_categories_hidden", "categories", ["hidden"])

    op.create_table(
        "subcategories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("group_id", sa.Integer(), sa.ForeignKey("groups.id")),
        sa.Column(
            "category_id", sa.Integer(), sa.ForeignKey("categories.id"), nullable=False
        ),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column("type", _category_type(), nullable=False),
        sa.Column("hidden", sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps(),
    )
    op.create_index("ix_subcategories_category", "subcategories", ["category_id"])
    op.create_index("ix_subcategories_hidden", "subcategories", ["hidden"])

    op.create_table(
        "accounts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("group_id", sa.Integer(), sa.ForeignKey("groups.id")),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column(
            "type",
            sa.Enum("credit", "cash", "prepaid", name="accounttype"),
            nullable=False,
        ),
        sa.Column("subcategory_id", sa.Integer(), sa.ForeignKey("subcategories.id")),
        sa.Column(
            "debit_method", sa.Enum("per_purchase", "invoice", name="debitmethod")
        ),
        sa.Column(
            "budget_month_basis",
            sa.Enum("transaction_date", "due_date", name="budgetmonthbasis"),
        ),
        sa.Column("credit_closing_day", sa.Integer()),
        sa.Column("credit_due_day", sa.Integer()),
        *_timestamps(),
        sa.CheckConstraint(
            "credit_closing_day IS NULL OR credit_closing_day BETWEEN 1 AND 31",
            name="ck_accounts_closing_day",
        ),
        sa.CheckConstraint(
            "credit_due_day IS NULL OR credit_due_day BETWEEN 1 AND 31",
            name="ck_accounts_due_day",
        ),
    )
    op.create_index("ix_accounts_user_group", "accounts", ["user_id", "group_id"])

    op.create_table(
        "account_balances",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "account_id", sa.Integer(), sa.ForeignKey("accounts.id"), nullable=False
        ),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("as_of_at", sa.DateTime(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index(
        "ix_account_balances_account_at",
        "account_balances",
        ["account_id", "as_of_at"],
    )

    op.create_table(
        "budgets",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("group_id", sa.Integer(), sa.ForeignKey("groups.id")),
        sa.Column(
            "subcategory_id",
            sa.Integer(),
            sa.ForeignKey("subcategories.id"),
            nullable=False,
        ),
        sa.Column("name", sa.String(length=120)),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("month", sa.Integer()),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("type", _category_type(), nullable=False),
        *_timestamps(),
        sa.CheckConstraint("amount_cents >= 0", name="ck_budgets_amount_positive"),
        sa.CheckConstraint(
            "month IS NULL OR month BETWEEN 1 AND 12", name="ck_budgets_month_range"
        ),
    )
    op.create_index(
        "ix_budgets_owner_sub_year",
        "budgets",
        ["user_id", "group_id", "subcategory_id", "year"],
    )

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("group_id", sa.Integer(), sa.ForeignKey("groups.id")),
        sa.Column("subcategory_id", sa.Integer(), sa.ForeignKey("subcategories.id")),
        sa.Column("account_id", sa.Integer(), sa.ForeignKey("accounts.id")),
        sa.Column("to_account_id", sa.Integer(), sa.ForeignKey("accounts.id")),
        sa.Column("title", sa.String(length=200), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column("occurred_at", sa.DateTime(), nullable=False),
        sa.Column(
            "type",
            sa.Enum("expense", "income", "transfer", name="transactiontype"),
            nullable=False,
        ),
        *_timestamps(),
        sa.CheckConstraint("amount_cents > 0", name="ck_transactions_amount_positive"),
        sa.CheckConstraint(
            "(type = 'transfer' AND subcategory_id IS NULL AND to_account_id IS NOT NULL)"
            " OR (type != 'transfer' AND to_account_id IS NULL)",
            name="ck_transactions_transfer_shape",
        ),
    )
    op.create_index(
        "ix_transactions_user_group_at",
        "transactions",
        ["user_id", "group_id", "occurred_at"],
    )
    op.create_index(
        "ix_transactions_group_at", "transactions", ["group_id", "occurred_at"]
    )
    op.create_index(
        "ix_transactions_account_at", "transactions", ["account_id", "occurred_at"]
    )
    op.create_index(
        "ix_transactions_to_account_at",
        "transactions",
        ["to_account_id", "occurred_at"],
    )
    op.create_index("ix_transactions_subcategory", "transactions", ["subcategory_id"])


def downgrade():
    op.drop_table("transactions")
    op.drop_table("budgets")
    op.drop_table("account_balances")
    op.drop_table("accounts")
    op.drop_table("subcategories")
    op.drop_table("categories")
    op.drop_table("group_members")
    op.drop_table("group_roles")
    op.drop_table("groups")
