from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


class CategoryType(str, Enum):
    expense = "EXPENSE"
    income = "INCOME"


class TransactionType(str, Enum):
    expense = "EXPENSE"
    income = "INCOME"
    transfer = "TRANSFER"


class AccountType(str, Enum):
    credit = "CREDIT"
    cash = "CASH"
    prepaid = "PREPAID"


class DebitMethod(str, Enum):
    per_purchase = "PER_PURCHASE"
    invoice = "INVOICE"


class BudgetMonthBasis(str, Enum):
    transaction_date = "TRANSACTION_DATE"
    due_date = "DUE_DATE"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class Group(Base, TimestampMixin):
    __tablename__ = "groups"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    owner_id: Mapped[int] = mapped_column(Integer, nullable=False)

    roles: Mapped[list["GroupRole"]] = relationship(
        "GroupRole", back_populates="group", cascade="all, delete-orphan"
    )
    members: Mapped[list["GroupMember"]] = relationship(
        "GroupMember", back_populates="group", cascade="all, delete-orphan"
    )


class GroupRole(Base, TimestampMixin):
    __tablename__ = "group_roles"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    group_id: Mapped[int] = mapped_column(ForeignKey("groups.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(60), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    can_view_transactions: Mapped[bool] = mapped_column(
        Boolean, default=True, nullable=False
    )
    can_manage_transactions: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    can_view_categories: Mapped[bool] = mapped_column(
        Boolean, default=True, nullable=False
    )
    can_manage_categories: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    can_view_subcategories: Mapped[bool] = mapped_column(
        Boolean, default=True, nullable=False
    )
    can_manage_subcategories: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    can_view_budgets: Mapped[bool] = mapped_column(
        Boolean, default=True, nullable=False
    )
    can_manage_budgets: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    can_manage_group: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    can_manage_group_accounts: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    can_manage_own_accounts: Mapped[bool] = mapped_column(
        Boolean, default=True, nullable=False
    )

    group: Mapped["Group"] = relationship("Group", back_populates="roles")

    __table_args__ = (
        UniqueConstraint("group_id", "name", name="uq_group_role_name"),
    )


class GroupMember(Base):
    __tablename__ = "group_members"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    group_id: Mapped[int] = mapped_column(ForeignKey("groups.id"), nullable=False)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    role_id: Mapped[int] = mapped_column(ForeignKey("group_roles.id"), nullable=False)
    joined_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    group: Mapped["Group"] = relationship("Group", back_populates="members")
    role: Mapped["GroupRole"] = relationship("GroupRole")

    __table_args__ = (
        UniqueConstraint("group_id", "user_id", name="uq_group_member_user"),
    )


class Category(Base, TimestampMixin):
    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    group_id: Mapped[Optional[int]] = mapped_column(ForeignKey("groups.id"))
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    type: Mapped[CategoryType] = mapped_column(
        SAEnum(CategoryType), nullable=False, default=CategoryType.expense
    )
    hidden: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    subcategories: Mapped[list["Subcategory"]] = relationship(
        "Subcategory", back_populates="category", cascade="all, delete-orphan"
    )

    __table_args__ = (
        Index("ix_categories_user_group", "user_id", "group_id"),
        Index("ix_categories_hidden", "hidden"),
    )


class Subcategory(Base, TimestampMixin):
    __tablename__ = "subcategories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    group_id: Mapped[Optional[int]] = mapped_column(ForeignKey("groups.id"))
    category_id: Mapped[int] = mapped_column(
        ForeignKey("categories.id"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    type: Mapped[CategoryType] = mapped_column(
        SAEnum(CategoryType), nullable=False, default=CategoryType.expense
    )
    hidden: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    category: Mapped["Category"] = relationship(
        "Category", back_populates="subcategories"
    )

    __table_args__ = (
        Index("ix_subcategories_category", "category_id"),
        Index("ix_subcategories_hidden", "hidden"),
    )


class Account(Base, TimestampMixin):
    __tablename__ = "accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    group_id: Mapped[Optional[int]] = mapped_column(ForeignKey("groups.id"))
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    type: Mapped[AccountType] = mapped_column(SAEnum(AccountType), nullable=False)
    subcategory_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("subcategories.id")
    )
    debit_method: Mapped[Optional[DebitMethod]] = mapped_column(SAEnum(DebitMethod))
    budget_month_basis: Mapped[Optional[BudgetMonthBasis]] = mapped_column(
        SAEnum(BudgetMonthBasis)
    )
    credit_closing_day: Mapped[Optional[int]] = mapped_column(Integer)
    credit_due_day: Mapped[Optional[int]] = mapped_column(Integer)

    subcategory: Mapped[Optional["Subcategory"]] = relationship("Subcategory")
    balances: Mapped[list["AccountBalance"]] = relationship(
        "AccountBalance", back_populates="account", cascade="all, delete-orphan"
    )

    __table_args__ = (
        Index("ix_accounts_user_group", "user_id", "group_id"),
        CheckConstraint(
            "credit_closing_day IS NULL OR credit_closing_day BETWEEN 1 AND 31",
            name="ck_accounts_closing_day",
        ),
        CheckConstraint(
            "credit_due_day IS NULL OR credit_due_day BETWEEN 1 AND 31",
            name="ck_accounts_due_day",
        ),
    )


class AccountBalance(Base):
    __tablename__ = "account_balances"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    account_id: Mapped[int] = mapped_column(ForeignKey("accounts.id"), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    as_of_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    account: Mapped["Account"] = relationship("Account", back_populates="balances")

    __table_args__ = (
        Index("ix_account_balances_account_at", "account_id", "as_of_at"),
    )


class Budget(Base, TimestampMixin):
    __tablename__ = "budgets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    group_id: Mapped[Optional[int]] = mapped_column(ForeignKey("groups.id"))
    subcategory_id: Mapped[int] = mapped_column(
        ForeignKey("subcategories.id"), nullable=False
    )
    name: Mapped[Optional[str]] = mapped_column(String(120))
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    # NULL month marks the annual budget
    month: Mapped[Optional[int]] = mapped_column(Integer)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    type: Mapped[CategoryType] = mapped_column(SAEnum(CategoryType), nullable=False)

    subcategory: Mapped["Subcategory"] = relationship("Subcategory")

    @property
    def is_annual(self) -> bool:
        return self.month is None

    __table_args__ = (
        CheckConstraint("amount_cents >= 0", name="ck_budgets_amount_positive"),
        CheckConstraint(
            "month IS NULL OR month BETWEEN 1 AND 12", name="ck_budgets_month_range"
        ),
        Index(
            "ix_budgets_owner_sub_year", "user_id", "group_id", "subcategory_id", "year"
        ),
    )


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    group_id: Mapped[Optional[int]] = mapped_column(ForeignKey("groups.id"))
    subcategory_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("subcategories.id")
    )
    account_id: Mapped[Optional[int]] = mapped_column(ForeignKey("accounts.id"))
    to_account_id: Mapped[Optional[int]] = mapped_column(ForeignKey("accounts.id"))
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    occurred_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    type: Mapped[TransactionType] = mapped_column(
        SAEnum(TransactionType), nullable=False
    )

    subcategory: Mapped[Optional["Subcategory"]] = relationship("Subcategory")
    account: Mapped[Optional["Account"]] = relationship(
        "Account", foreign_keys=[account_id]
    )
    to_account: Mapped[Optional["Account"]] = relationship(
        "Account", foreign_keys=[to_account_id]
    )

    __table_args__ = (
        Index("ix_transactions_user_group_at", "user_id", "group_id", "occurred_at"),
        Index("ix_transactions_group_at", "group_id", "occurred_at"),
        Index("ix_transactions_account_at", "account_id", "occurred_at"),
        Index("ix_transactions_to_account_at", "to_account_id", "occurred_at"),
        Index("ix_transactions_subcategory", "subcategory_id"),
        CheckConstraint("amount_cents > 0", name="ck_transactions_amount_positive"),
        CheckConstraint(
            "(type = 'transfer' AND subcategory_id IS NULL AND to_account_id IS NOT NULL)"
            " OR (type != 'transfer' AND to_account_id IS NULL)",
            name="ck_transactions_transfer_shape",
        ),
    )
