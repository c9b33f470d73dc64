import datetime as dt
from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from models import (
    AccountType,
    BudgetMonthBasis,
    CategoryType,
    DebitMethod,
    TransactionType,
)

AMOUNT_DIGITS = 14
AMOUNT_PLACES = 2


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    type: CategoryType = CategoryType.expense
    group_id: Optional[int] = None


class CategoryUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    type: Optional[CategoryType] = None


class CategoryBulkIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: CategoryType = CategoryType.expense
    subcategories: list[str] = Field(default_factory=list)


class SubcategoryIn(BaseModel):
    category_id: int
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)


class SubcategoryUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    category_id: Optional[int] = None


class AccountIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: AccountType
    group_id: Optional[int] = None
    subcategory_id: Optional[int] = None
    initial_balance: Optional[Decimal] = Field(
        default=None, max_digits=AMOUNT_DIGITS, decimal_places=AMOUNT_PLACES
    )
    debit_method: Optional[DebitMethod] = None
    budget_month_basis: Optional[BudgetMonthBasis] = None
    credit_closing_day: Optional[int] = Field(default=None, ge=1, le=31)
    credit_due_day: Optional[int] = Field(default=None, ge=1, le=31)


class AccountUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    type: Optional[AccountType] = None
    group_id: Optional[int] = None
    subcategory_id: Optional[int] = None
    debit_method: Optional[DebitMethod] = None
    budget_month_basis: Optional[BudgetMonthBasis] = None
    credit_closing_day: Optional[int] = Field(default=None, ge=1, le=31)
    credit_due_day: Optional[int] = Field(default=None, ge=1, le=31)


class AccountBalanceIn(BaseModel):
    account_id: int
    amount: Decimal = Field(
        ..., max_digits=AMOUNT_DIGITS, decimal_places=AMOUNT_PLACES
    )
    as_of_at: Optional[datetime] = None


class AccountBalanceUpdate(BaseModel):
    amount: Optional[Decimal] = Field(
        default=None, max_digits=AMOUNT_DIGITS, decimal_places=AMOUNT_PLACES
    )
    as_of_at: Optional[datetime] = None


class TransactionIn(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    amount: Decimal = Field(
        ..., gt=0, max_digits=AMOUNT_DIGITS, decimal_places=AMOUNT_PLACES
    )
    date: dt.date
    time: Optional[dt.time] = None
    type: TransactionType = TransactionType.expense
    description: Optional[str] = Field(default=None, max_length=1000)
    subcategory_id: Optional[int] = None
    account_id: Optional[int] = None
    to_account_id: Optional[int] = None
    group_id: Optional[int] = None
    # Group transactions may be recorded on behalf of another member
    user_id: Optional[int] = None


class TransactionUpdate(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=200)
    amount: Optional[Decimal] = Field(
        default=None, gt=0, max_digits=AMOUNT_DIGITS, decimal_places=AMOUNT_PLACES
    )
    date: Optional[dt.date] = None
    time: Optional[dt.time] = None
    type: Optional[TransactionType] = None
    description: Optional[str] = Field(default=None, max_length=1000)
    subcategory_id: Optional[int] = None
    account_id: Optional[int] = None
    to_account_id: Optional[int] = None


class BudgetIn(BaseModel):
    subcategory_id: int
    year: int = Field(..., ge=1970, le=3000)
    month: Optional[int] = Field(default=None, ge=1, le=12)
    amount: Decimal = Field(
        ..., ge=0, max_digits=AMOUNT_DIGITS, decimal_places=AMOUNT_PLACES
    )
    type: Optional[CategoryType] = None
    name: Optional[str] = Field(default=None, max_length=120)
    group_id: Optional[int] = None


class BudgetUpdate(BaseModel):
    subcategory_id: Optional[int] = None
    year: Optional[int] = Field(default=None, ge=1970, le=3000)
    month: Optional[int] = Field(default=None, ge=1, le=12)
    # Turns a monthly budget into the annual one when true
    annual: bool = False
    amount: Optional[Decimal] = Field(
        default=None, ge=0, max_digits=AMOUNT_DIGITS, decimal_places=AMOUNT_PLACES
    )
    type: Optional[CategoryType] = None
    name: Optional[str] = Field(default=None, max_length=120)


class GroupIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)


class GroupRoleIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=60)
    description: Optional[str] = Field(default=None, max_length=500)
    can_view_transactions: bool = True
    can_manage_transactions: bool = False
    can_view_categories: bool = True
    can_manage_categories: bool = False
    can_view_subcategories: bool = True
    can_manage_subcategories: bool = False
    can_view_budgets: bool = True
    can_manage_budgets: bool = False
    can_manage_group: bool = False
    can_manage_group_accounts: bool = False
    can_manage_own_accounts: bool = True


class GroupMemberIn(BaseModel):
    user_id: int
    role_id: int


class GroupMemberRoleUpdate(BaseModel):
    role_id: int


class DeleteOptions(BaseModel):
    delete_transactions: bool = False
    move_to_subcategory_id: Optional[int] = None
