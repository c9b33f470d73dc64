from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.orm import Session, joinedload

from billing import BillingMonth, budget_month_for
from database import atomic
from errors import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    RuleViolationError,
)
from models import (
    Account,
    AccountBalance,
    AccountType,
    Budget,
    Category,
    CategoryType,
    DebitMethod,
    Group,
    GroupMember,
    GroupRole,
    Subcategory,
    Transaction,
    TransactionType,
)
from money import from_cents, to_cents
from ownership import Owner, Personal, Shared, owned_by, owner_columns, owner_for, owner_of
from periods import aggregation_period, comparison_period, resolve_period
from schemas import (
    AccountBalanceIn,
    AccountBalanceUpdate,
    AccountIn,
    AccountUpdate,
    BudgetIn,
    BudgetUpdate,
    CategoryBulkIn,
    CategoryIn,
    CategoryUpdate,
    DeleteOptions,
    GroupIn,
    GroupMemberIn,
    GroupMemberRoleUpdate,
    GroupRoleIn,
    SubcategoryIn,
    SubcategoryUpdate,
    TransactionIn,
    TransactionUpdate,
)


logger = logging.getLogger(__name__)

EPOCH = datetime(1970, 1, 1)
SYNC_TOLERANCE = Decimal("0.01")


class GroupAction(str, Enum):
    view_transactions = "can_view_transactions"
    manage_transactions = "can_manage_transactions"
    view_categories = "can_view_categories"
    manage_categories = "can_manage_categories"
    view_subcategories = "can_view_subcategories"
    manage_subcategories = "can_manage_subcategories"
    view_budgets = "can_view_budgets"
    manage_budgets = "can_manage_budgets"
    manage_group = "can_manage_group"
    manage_group_accounts = "can_manage_group_accounts"
    manage_own_accounts = "can_manage_own_accounts"


ALL_CAPABILITIES = {action.value: True for action in GroupAction}


@dataclass(frozen=True)
class CurrentBalance:
    account_id: int
    amount: Decimal
    as_of: datetime
    snapshot_id: Optional[int]


@dataclass(frozen=True)
class AggregatedTotal:
    subcategory_id: int
    month: int
    year: int
    type: TransactionType
    total: Decimal
    count: int


@dataclass(frozen=True)
class SubcategoryTotal:
    subcategory_id: int
    total: Decimal


@dataclass(frozen=True)
class BudgetComparison:
    budgeted: Decimal
    actual: Decimal
    difference: Decimal


@dataclass(frozen=True)
class DependentCounts:
    transactions: int
    budgets: int
    accounts: int

    @property
    def any(self) -> bool:
        return bool(self.transactions or self.budgets or self.accounts)


@dataclass(frozen=True)
class LedgerEntry:
    """Row of the unified feed: a real transaction or a balance snapshot."""

    kind: str  # "transaction" | "balance_update"
    id: int
    user_id: int
    account_id: Optional[int]
    to_account_id: Optional[int]
    subcategory_id: Optional[int]
    type: Optional[TransactionType]
    title: str
    amount: Decimal
    description: Optional[str]
    occurred_at: datetime
    created_at: datetime


@dataclass
class TransactionFilters:
    group_id: Optional[int] = None
    category_id: Optional[int] = None
    subcategory_id: Optional[int] = None
    account_id: Optional[int] = None
    start: Optional[date] = None
    end: Optional[date] = None
    type: Optional[TransactionType] = None


def _as_stored(value: datetime) -> datetime:
    """Naive UTC, the form every timestamp column holds."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _combine(day: date, at: Optional[time]) -> datetime:
    return _as_stored(datetime.combine(day, at or time.min))


def _counted_at_funding(account: Optional[Account]) -> bool:
    """Expenses from these accounts are counted when the account is funded."""
    if account is None:
        return False
    if account.type == AccountType.prepaid:
        return True
    return (
        account.type == AccountType.credit
        and account.debit_method == DebitMethod.invoice
    )


class AuthorizationService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def membership(
        self, group_id: int, user_id: Optional[int] = None
    ) -> Optional[GroupMember]:
        stmt = (
            select(GroupMember)
            .options(joinedload(GroupMember.role))
            .where(
                GroupMember.group_id == group_id,
                GroupMember.user_id == (user_id or self.user_id),
            )
        )
        return self.session.scalar(stmt)

    def is_member(self, group_id: int, user_id: Optional[int] = None) -> bool:
        return self.membership(group_id, user_id) is not None

    def allowed(self, group_id: int, action: GroupAction) -> bool:
        member = self.membership(group_id)
        if member is None:
            return False
        return bool(getattr(member.role, action.value))

    def require_member(self, group_id: int) -> GroupMember:
        if self.session.get(Group, group_id) is None:
            raise NotFoundError("Group not found")
        member = self.membership(group_id)
        if member is None:
            raise ForbiddenError("You are not a member of this group")
        return member

    def require(self, group_id: int, action: GroupAction) -> None:
        member = self.require_member(group_id)
        if not getattr(member.role, action.value):
            raise ForbiddenError(
                f"Your group role does not allow this action ({action.name})"
            )

    def can_manage_account(self, account: Account) -> bool:
        if account.group_id is None:
            return account.user_id == self.user_id
        member = self.membership(account.group_id)
        if member is None:
            return False
        return member.role.can_manage_group_accounts or (
            member.role.can_manage_own_accounts and account.user_id == self.user_id
        )


class ScopedService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id
        self.auth = AuthorizationService(session, user_id)

    def _owner(
        self, group_id: Optional[int], action: Optional[GroupAction] = None
    ) -> Owner:
        if group_id is not None:
            if action is None:
                self.auth.require_member(group_id)
            else:
                self.auth.require(group_id, action)
        return owner_for(self.user_id, group_id)

    def _visible(self, model, row_id: Optional[int], label: str):
        row = self.session.get(model, row_id) if row_id is not None else None
        if row is None:
            raise NotFoundError(f"{label} not found")
        if row.group_id is None:
            if row.user_id != self.user_id:
                raise NotFoundError(f"{label} not found")
        elif not self.auth.is_member(row.group_id):
            raise NotFoundError(f"{label} not found")
        return row

    def _authorize_row(self, row, action: GroupAction) -> Owner:
        if row.group_id is not None:
            self.auth.require(row.group_id, action)
        return owner_of(row)

    def _subcategory_in(self, subcategory_id: int, owner: Owner) -> Subcategory:
        subcategory = self.session.get(Subcategory, subcategory_id)
        if subcategory is None:
            raise NotFoundError("Subcategory not found")
        if owner_of(subcategory) != owner:
            if isinstance(owner, Shared):
                raise RuleViolationError("Subcategory does not belong to this group")
            raise RuleViolationError("Subcategory does not belong to this user")
        return subcategory


class GroupService(ScopedService):
    def list_for_user(self) -> list[Group]:
        stmt = (
            select(Group)
            .join(GroupMember, GroupMember.group_id == Group.id)
            .where(GroupMember.user_id == self.user_id)
            .order_by(Group.name, Group.id)
        )
        return self.session.scalars(stmt).all()

    def get(self, group_id: int) -> Group:
        group = self.session.get(Group, group_id)
        if group is None or not self.auth.is_member(group_id):
            raise NotFoundError("Group not found")
        return group

    def create(self, data: GroupIn) -> Group:
        with atomic(self.session):
            group = Group(name=data.name.strip(), owner_id=self.user_id)
            self.session.add(group)
            self.session.flush()
            owner_role = GroupRole(
                group_id=group.id,
                name="Owner",
                description="Full access to all features",
                **ALL_CAPABILITIES,
            )
            self.session.add(owner_role)
            self.session.flush()
            self.session.add(
                GroupMember(group_id=group.id, user_id=self.user_id, role_id=owner_role.id)
            )
        logger.info(f"group_created: group={group.id} owner={self.user_id}")
        return group

    def list_roles(self, group_id: int) -> list[GroupRole]:
        self.auth.require_member(group_id)
        stmt = (
            select(GroupRole)
            .where(GroupRole.group_id == group_id)
            .order_by(GroupRole.name)
        )
        return self.session.scalars(stmt).all()

    def create_role(self, group_id: int, data: GroupRoleIn) -> GroupRole:
        self.auth.require(group_id, GroupAction.manage_group)
        existing = self.session.scalar(
            select(GroupRole).where(
                GroupRole.group_id == group_id,
                func.lower(GroupRole.name) == data.name.strip().lower(),
            )
        )
        if existing:
            raise ConflictError("Role with this name already exists")
        with atomic(self.session):
            role = GroupRole(group_id=group_id, **data.model_dump())
            role.name = data.name.strip()
            self.session.add(role)
        return role


class GroupMemberService(ScopedService):
    def _member(self, group_id: int, member_id: int) -> GroupMember:
        member = self.session.scalar(
            select(GroupMember).where(
                GroupMember.id == member_id, GroupMember.group_id == group_id
            )
        )
        if member is None:
            raise NotFoundError("Member not found in this group")
        return member

    def _role(self, group_id: int, role_id: int) -> GroupRole:
        role = self.session.scalar(
            select(GroupRole).where(
                GroupRole.id == role_id, GroupRole.group_id == group_id
            )
        )
        if role is None:
            raise RuleViolationError("Role not found or does not belong to this group")
        return role

    def _is_owner(self, group_id: int, user_id: int) -> bool:
        group = self.session.get(Group, group_id)
        return group is not None and group.owner_id == user_id

    def list(self, group_id: int) -> list[GroupMember]:
        self.auth.require_member(group_id)
        stmt = (
            select(GroupMember)
            .options(joinedload(GroupMember.role))
            .where(GroupMember.group_id == group_id)
            .order_by(GroupMember.joined_at.asc(), GroupMember.id.asc())
        )
        return self.session.scalars(stmt).all()

    def add(self, group_id: int, data: GroupMemberIn) -> GroupMember:
        self.auth.require(group_id, GroupAction.manage_group)
        if self.auth.is_member(group_id, data.user_id):
            raise ConflictError("User is already a member of this group")
        role = self._role(group_id, data.role_id)
        with atomic(self.session):
            member = GroupMember(group_id=group_id, user_id=data.user_id, role_id=role.id)
            self.session.add(member)
        logger.info(f"group_member_added: group={group_id} user={data.user_id}")
        return member

    def update_role(
        self, group_id: int, member_id: int, data: GroupMemberRoleUpdate
    ) -> GroupMember:
        self.auth.require(group_id, GroupAction.manage_group)
        member = self._member(group_id, member_id)
        role = self._role(group_id, data.role_id)
        if self._is_owner(group_id, member.user_id):
            raise ForbiddenError("Cannot change the role of the group owner")
        with atomic(self.session):
            member.role_id = role.id
        self.session.refresh(member)
        return member

    def remove(self, group_id: int, member_id: int) -> None:
        self.auth.require(group_id, GroupAction.manage_group)
        member = self._member(group_id, member_id)
        if self._is_owner(group_id, member.user_id):
            raise ForbiddenError("Cannot remove the group owner from the group")
        with atomic(self.session):
            self.session.delete(member)

    def leave(self, group_id: int) -> None:
        member = self.auth.membership(group_id)
        if member is None:
            raise NotFoundError("You are not a member of this group")
        if self._is_owner(group_id, self.user_id):
            raise ForbiddenError(
                "Group owner cannot leave the group. Transfer ownership or delete the group instead."
            )
        with atomic(self.session):
            self.session.delete(member)


def _count_dependents(session: Session, subcategory_ids: list[int]) -> DependentCounts:
    if not subcategory_ids:
        return DependentCounts(transactions=0, budgets=0, accounts=0)

    def count(model) -> int:
        return int(
            session.execute(
                select(func.count(model.id)).where(
                    model.subcategory_id.in_(subcategory_ids)
                )
            ).scalar_one()
            or 0
        )

    return DependentCounts(
        transactions=count(Transaction),
        budgets=count(Budget),
        accounts=count(Account),
    )


def sync_annual_budget(
    session: Session, owner: Owner, year: int, subcategory_id: int
) -> Optional[Budget]:
    """
    Pull the annual budget of (owner, year, subcategory) to the sum of its
    monthly budgets. Monthly entries are the source of truth once any
    exist; the annual amount is never spread back over months, and no
    budget is created or deleted here. Returns the annual budget when it
    was adjusted.
    """
    key = (
        owned_by(Budget, owner),
        Budget.year == year,
        Budget.subcategory_id == subcategory_id,
    )
    monthly_total, monthly_count = session.execute(
        select(
            func.coalesce(func.sum(Budget.amount_cents), 0),
            func.count(Budget.id),
        ).where(*key, Budget.month.isnot(None))
    ).one()
    if not monthly_count:
        return None
    annual = session.scalar(
        select(Budget)
        .where(*key, Budget.month.is_(None))
        .order_by(Budget.id)
        .limit(1)
    )
    if annual is None:
        return None

    monthly_total = int(monthly_total)
    drift = abs(from_cents(annual.amount_cents) - from_cents(monthly_total))
    if drift <= SYNC_TOLERANCE:
        return None

    logger.info(
        f"budget_sync: owner={owner} year={year} subcategory={subcategory_id} "
        f"annual_id={annual.id} old={from_cents(annual.amount_cents)} "
        f"new={from_cents(monthly_total)}"
    )
    annual.amount_cents = monthly_total
    session.flush()
    return annual


class _SubcategoryRemoval:
    """
    Disposes of everything that references a set of subcategories before they
    are deleted: either cascades the delete or moves it onto a target.
    Callers run it inside their own atomic block.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    def check(
        self,
        owner: Owner,
        subcategory_ids: list[int],
        options: DeleteOptions,
        kind: str,
    ) -> Optional[Subcategory]:
        dependents = _count_dependents(self.session, subcategory_ids)
        target: Optional[Subcategory] = None
        if options.move_to_subcategory_id is not None and not options.delete_transactions:
            target = self.session.get(Subcategory, options.move_to_subcategory_id)
            if target is None or owner_of(target) != owner:
                raise NotFoundError("Target subcategory not found")
            if target.id in subcategory_ids:
                raise RuleViolationError(
                    "Target subcategory is one of the subcategories being deleted"
                )
        if dependents.any and not options.delete_transactions and target is None:
            raise ConflictError(
                f"{kind} has dependent records. Please specify "
                "delete_transactions=true or provide move_to_subcategory_id"
            )
        if target is not None:
            source_types = set(
                self.session.scalars(
                    select(Subcategory.type).where(Subcategory.id.in_(subcategory_ids))
                ).all()
            )
            if dependents.any and source_types - {target.type}:
                raise RuleViolationError("Target subcategory has a different type")
        return target

    def apply(
        self,
        subcategory_ids: list[int],
        options: DeleteOptions,
        target: Optional[Subcategory],
    ) -> None:
        if not subcategory_ids:
            return
        if options.delete_transactions:
            self.session.execute(
                delete(Transaction).where(Transaction.subcategory_id.in_(subcategory_ids))
            )
            self.session.execute(
                delete(Budget).where(Budget.subcategory_id.in_(subcategory_ids))
            )
            self.session.execute(
                update(Account)
                .where(Account.subcategory_id.in_(subcategory_ids))
                .values(subcategory_id=None)
            )
            logger.info(f"subcategory_cascade: ids={subcategory_ids} mode=delete")
            return
        if target is None:
            return

        self.session.execute(
            update(Transaction)
            .where(Transaction.subcategory_id.in_(subcategory_ids))
            .values(subcategory_id=target.id)
        )
        self.session.execute(
            update(Account)
            .where(Account.subcategory_id.in_(subcategory_ids))
            .values(subcategory_id=target.id)
        )

        touched: set[tuple[Owner, int]] = set()
        budgets = self.session.scalars(
            select(Budget)
            .where(Budget.subcategory_id.in_(subcategory_ids))
            .order_by(Budget.id)
        ).all()
        for budget in budgets:
            owner = owner_of(budget)
            slot = self.session.scalar(
                select(Budget).where(
                    owned_by(Budget, owner),
                    Budget.subcategory_id == target.id,
                    Budget.year == budget.year,
                    Budget.month.is_(None)
                    if budget.month is None
                    else Budget.month == budget.month,
                )
            )
            if slot is not None:
                slot.amount_cents += budget.amount_cents
                self.session.delete(budget)
            else:
                budget.subcategory_id = target.id
            self.session.flush()
            touched.add((owner, budget.year))

        for owner, year in sorted(touched, key=lambda item: (str(item[0]), item[1])):
            sync_annual_budget(self.session, owner, year, target.id)
        logger.info(
            f"subcategory_cascade: ids={subcategory_ids} mode=move target={target.id} "
            f"budgets_moved={len(budgets)}"
        )


class CategoryService(ScopedService):
    def list_all(
        self, group_id: Optional[int] = None, include_hidden: bool = False
    ) -> list[Category]:
        owner = self._owner(group_id, GroupAction.view_categories)
        stmt = (
            select(Category)
            .where(owned_by(Category, owner))
            .order_by(Category.name, Category.id)
        )
        if not include_hidden:
            stmt = stmt.where(Category.hidden.is_(False))
        return self.session.scalars(stmt).all()

    def get(self, category_id: int) -> Category:
        category = self._visible(Category, category_id, "Category")
        self._authorize_row(category, GroupAction.view_categories)
        return category

    def create(self, data: CategoryIn) -> Category:
        owner = self._owner(data.group_id, GroupAction.manage_categories)
        with atomic(self.session):
            category = Category(
                **owner_columns(owner, self.user_id),
                name=data.name.strip(),
                description=data.description,
                type=data.type,
            )
            self.session.add(category)
        return category

    def update(self, category_id: int, data: CategoryUpdate) -> Category:
        category = self._visible(Category, category_id, "Category")
        self._authorize_row(category, GroupAction.manage_categories)
        with atomic(self.session):
            if data.name is not None:
                category.name = data.name.strip()
            if "description" in data.model_fields_set:
                category.description = data.description
            if data.type is not None and data.type != category.type:
                category.type = data.type
                self.session.execute(
                    update(Subcategory)
                    .where(Subcategory.category_id == category.id)
                    .values(type=data.type)
                )
        self.session.refresh(category)
        return category

    def _set_hidden(self, category_id: int, hidden: bool) -> Category:
        category = self._visible(Category, category_id, "Category")
        self._authorize_row(category, GroupAction.manage_categories)
        with atomic(self.session):
            self.session.execute(
                update(Category).where(Category.id == category.id).values(hidden=hidden)
            )
            self.session.execute(
                update(Subcategory)
                .where(Subcategory.category_id == category.id)
                .values(hidden=hidden)
            )
        self.session.refresh(category)
        logger.info(f"category_visibility: category={category.id} hidden={hidden}")
        return category

    def hide(self, category_id: int) -> Category:
        return self._set_hidden(category_id, True)

    def unhide(self, category_id: int) -> Category:
        return self._set_hidden(category_id, False)

    def _subcategory_ids(self, category_id: int) -> list[int]:
        return list(
            self.session.scalars(
                select(Subcategory.id).where(Subcategory.category_id == category_id)
            ).all()
        )

    def check_dependents(self, category_id: int) -> DependentCounts:
        category = self.get(category_id)
        return _count_dependents(self.session, self._subcategory_ids(category.id))

    def delete(
        self, category_id: int, options: Optional[DeleteOptions] = None
    ) -> None:
        options = options or DeleteOptions()
        category = self._visible(Category, category_id, "Category")
        owner = self._authorize_row(category, GroupAction.manage_categories)
        subcategory_ids = self._subcategory_ids(category.id)
        removal = _SubcategoryRemoval(self.session)
        target = removal.check(owner, subcategory_ids, options, "Category")

        with atomic(self.session):
            removal.apply(subcategory_ids, options, target)
            self.session.delete(category)
        logger.info(
            f"category_deleted: category={category_id} subcategories={len(subcategory_ids)}"
        )

    def bulk_create(
        self, items: list[CategoryBulkIn], group_id: Optional[int] = None
    ) -> list[Category]:
        owner = self._owner(group_id, GroupAction.manage_categories)
        columns = owner_columns(owner, self.user_id)
        created: list[Category] = []
        with atomic(self.session):
            for item in items:
                category = Category(**columns, name=item.name.strip(), type=item.type)
                category.subcategories = [
                    Subcategory(**columns, name=name.strip(), type=item.type)
                    for name in item.subcategories
                    if name.strip()
                ]
                self.session.add(category)
                created.append(category)
        return created


class SubcategoryService(ScopedService):
    def list_all(
        self,
        group_id: Optional[int] = None,
        category_id: Optional[int] = None,
        include_hidden: bool = False,
    ) -> list[Subcategory]:
        owner = self._owner(group_id, GroupAction.view_subcategories)
        stmt = (
            select(Subcategory)
            .where(owned_by(Subcategory, owner))
            .order_by(Subcategory.name, Subcategory.id)
        )
        if category_id is not None:
            stmt = stmt.where(Subcategory.category_id == category_id)
        if not include_hidden:
            stmt = stmt.where(Subcategory.hidden.is_(False))
        return self.session.scalars(stmt).all()

    def get(self, subcategory_id: int) -> Subcategory:
        subcategory = self._visible(Subcategory, subcategory_id, "Subcategory")
        self._authorize_row(subcategory, GroupAction.view_subcategories)
        return subcategory

    def _parent(self, category_id: int, owner: Owner) -> Category:
        category = self.session.get(Category, category_id)
        if category is None or owner_of(category) != owner:
            raise NotFoundError("Category not found")
        return category

    def create(self, data: SubcategoryIn) -> Subcategory:
        category = self._visible(Category, data.category_id, "Category")
        owner = self._authorize_row(category, GroupAction.manage_subcategories)
        with atomic(self.session):
            subcategory = Subcategory(
                **owner_columns(owner, self.user_id),
                category_id=category.id,
                name=data.name.strip(),
                description=data.description,
                type=category.type,
                hidden=category.hidden,
            )
            self.session.add(subcategory)
        return subcategory

    def update(self, subcategory_id: int, data: SubcategoryUpdate) -> Subcategory:
        subcategory = self._visible(Subcategory, subcategory_id, "Subcategory")
        owner = self._authorize_row(subcategory, GroupAction.manage_subcategories)
        parent = None
        if data.category_id is not None and data.category_id != subcategory.category_id:
            parent = self._parent(data.category_id, owner)
            if parent.type != subcategory.type and _count_dependents(
                self.session, [subcategory.id]
            ).any:
                raise RuleViolationError(
                    "Cannot move a subcategory with dependent records to a category of another type"
                )
        with atomic(self.session):
            if data.name is not None:
                subcategory.name = data.name.strip()
            if "description" in data.model_fields_set:
                subcategory.description = data.description
            if parent is not None:
                subcategory.category_id = parent.id
                subcategory.type = parent.type
                if parent.hidden:
                    subcategory.hidden = True
        self.session.refresh(subcategory)
        return subcategory

    def hide(self, subcategory_id: int) -> Subcategory:
        subcategory = self._visible(Subcategory, subcategory_id, "Subcategory")
        self._authorize_row(subcategory, GroupAction.manage_subcategories)
        with atomic(self.session):
            subcategory.hidden = True
        return subcategory

    def unhide(self, subcategory_id: int) -> Subcategory:
        subcategory = self._visible(Subcategory, subcategory_id, "Subcategory")
        self._authorize_row(subcategory, GroupAction.manage_subcategories)
        if subcategory.category.hidden:
            raise ConflictError("Cannot unhide a subcategory while its category is hidden")
        with atomic(self.session):
            subcategory.hidden = False
        return subcategory

    def check_dependents(self, subcategory_id: int) -> DependentCounts:
        subcategory = self.get(subcategory_id)
        return _count_dependents(self.session, [subcategory.id])

    def delete(
        self, subcategory_id: int, options: Optional[DeleteOptions] = None
    ) -> None:
        options = options or DeleteOptions()
        subcategory = self._visible(Subcategory, subcategory_id, "Subcategory")
        owner = self._authorize_row(subcategory, GroupAction.manage_subcategories)
        removal = _SubcategoryRemoval(self.session)
        target = removal.check(owner, [subcategory.id], options, "Subcategory")
        with atomic(self.session):
            removal.apply([subcategory.id], options, target)
            self.session.delete(subcategory)


class AccountService(ScopedService):
    def list_all(self, group_id: Optional[int] = None) -> list[Account]:
        owner = self._owner(group_id)
        stmt = (
            select(Account)
            .where(owned_by(Account, owner))
            .order_by(Account.created_at.desc(), Account.id.desc())
        )
        return self.session.scalars(stmt).all()

    def get(self, account_id: int) -> Account:
        return self._visible(Account, account_id, "Account")

    def _manageable(self, account_id: int) -> Account:
        account = self.get(account_id)
        if not self.auth.can_manage_account(account):
            raise ForbiddenError("You do not have permission to manage this account")
        return account

    @staticmethod
    def _apply_credit_fields(account: Account, values: dict[str, object]) -> None:
        for field in (
            "debit_method",
            "budget_month_basis",
            "credit_closing_day",
            "credit_due_day",
        ):
            if field in values:
                setattr(account, field, values[field])
        if account.type != AccountType.credit:
            account.debit_method = None
            account.budget_month_basis = None
            account.credit_closing_day = None
            account.credit_due_day = None

    def create(self, data: AccountIn) -> Account:
        if data.group_id is not None and not self.auth.is_member(data.group_id):
            raise ForbiddenError("You are not a member of this group")
        owner = owner_for(self.user_id, data.group_id)
        if data.subcategory_id is not None:
            self._subcategory_in(data.subcategory_id, owner)

        with atomic(self.session):
            account = Account(
                **owner_columns(owner, self.user_id),
                name=data.name.strip(),
                type=data.type,
                subcategory_id=data.subcategory_id,
            )
            self._apply_credit_fields(account, data.model_dump())
            self.session.add(account)
            self.session.flush()
            if data.initial_balance is not None:
                self.session.add(
                    AccountBalance(
                        account_id=account.id,
                        amount_cents=to_cents(data.initial_balance),
                        as_of_at=datetime.utcnow(),
                    )
                )
        return account

    def update(self, account_id: int, data: AccountUpdate) -> Account:
        account = self._manageable(account_id)
        provided = data.model_dump(exclude_unset=True)

        group_id = provided.get("group_id", account.group_id)
        if "group_id" in provided and group_id != account.group_id:
            if group_id is not None and not self.auth.is_member(group_id):
                raise ForbiddenError("You are not a member of this group")
        owner = owner_for(account.user_id, group_id)
        subcategory_id = provided.get("subcategory_id", account.subcategory_id)
        if subcategory_id is not None:
            self._subcategory_in(subcategory_id, owner)

        with atomic(self.session):
            if data.name is not None:
                account.name = data.name.strip()
            if data.type is not None:
                account.type = data.type
            account.group_id = group_id
            account.subcategory_id = subcategory_id
            self._apply_credit_fields(account, provided)
        self.session.refresh(account)
        return account

    def delete(self, account_id: int) -> None:
        account = self._manageable(account_id)
        transfers = int(
            self.session.execute(
                select(func.count(Transaction.id)).where(
                    Transaction.type == TransactionType.transfer,
                    or_(
                        Transaction.account_id == account.id,
                        Transaction.to_account_id == account.id,
                    ),
                )
            ).scalar_one()
            or 0
        )
        if transfers:
            raise ConflictError(
                "Account is referenced by transfers; delete or re-point them first"
            )
        with atomic(self.session):
            self.session.execute(
                update(Transaction)
                .where(Transaction.account_id == account.id)
                .values(account_id=None)
            )
            self.session.delete(account)

    def current_balance(self, account_id: int) -> CurrentBalance:
        account = self.get(account_id)
        snapshot = self.session.scalar(
            select(AccountBalance)
            .where(AccountBalance.account_id == account.id)
            .order_by(AccountBalance.as_of_at.desc(), AccountBalance.id.desc())
            .limit(1)
        )
        if snapshot is not None:
            baseline = snapshot.amount_cents
            baseline_at = snapshot.as_of_at
        else:
            baseline = 0
            baseline_at = EPOCH

        movements = self.session.scalars(
            select(Transaction)
            .where(
                owned_by(Transaction, owner_of(account)),
                or_(
                    Transaction.account_id == account.id,
                    Transaction.to_account_id == account.id,
                ),
                Transaction.occurred_at > baseline_at,
            )
            .order_by(Transaction.occurred_at.asc(), Transaction.id.asc())
        ).all()

        net = 0
        latest: Optional[datetime] = None
        for txn in movements:
            if txn.type == TransactionType.income and txn.account_id == account.id:
                net += txn.amount_cents
            elif txn.type == TransactionType.expense and txn.account_id == account.id:
                net -= txn.amount_cents
            elif txn.type == TransactionType.transfer:
                if txn.account_id == account.id:
                    net -= txn.amount_cents
                if txn.to_account_id == account.id:
                    net += txn.amount_cents
            latest = txn.occurred_at

        if latest is not None:
            as_of = latest
        elif snapshot is not None:
            as_of = baseline_at
        else:
            as_of = datetime.utcnow()
        return CurrentBalance(
            account_id=account.id,
            amount=from_cents(baseline + net),
            as_of=as_of,
            snapshot_id=snapshot.id if snapshot is not None else None,
        )

    def balance_history(self, account_id: int) -> list[AccountBalance]:
        account = self.get(account_id)
        stmt = (
            select(AccountBalance)
            .where(AccountBalance.account_id == account.id)
            .order_by(AccountBalance.as_of_at.desc(), AccountBalance.id.desc())
        )
        return self.session.scalars(stmt).all()

    def add_balance(self, data: AccountBalanceIn) -> AccountBalance:
        account = self._manageable(data.account_id)
        with atomic(self.session):
            snapshot = AccountBalance(
                account_id=account.id,
                amount_cents=to_cents(data.amount),
                as_of_at=_as_stored(data.as_of_at or datetime.utcnow()),
            )
            self.session.add(snapshot)
        return snapshot

    def _snapshot(self, balance_id: int) -> AccountBalance:
        snapshot = self.session.get(AccountBalance, balance_id)
        if snapshot is None:
            raise NotFoundError("Balance not found")
        self._manageable(snapshot.account_id)
        return snapshot

    def update_balance(
        self, balance_id: int, data: AccountBalanceUpdate
    ) -> AccountBalance:
        snapshot = self._snapshot(balance_id)
        with atomic(self.session):
            if data.amount is not None:
                snapshot.amount_cents = to_cents(data.amount)
            if data.as_of_at is not None:
                snapshot.as_of_at = _as_stored(data.as_of_at)
        return snapshot

    def delete_balance(self, balance_id: int) -> None:
        snapshot = self._snapshot(balance_id)
        with atomic(self.session):
            self.session.delete(snapshot)


class TransactionService(ScopedService):
    def get(self, transaction_id: int) -> Transaction:
        txn = self._visible(Transaction, transaction_id, "Transaction")
        self._authorize_row(txn, GroupAction.view_transactions)
        return txn

    def _account_in(self, account_id: int, owner: Owner) -> Account:
        account = self._visible(Account, account_id, "Account")
        if owner_of(account) != owner:
            raise RuleViolationError("Account does not belong to this scope")
        return account

    def _acting_user(self, owner: Owner, requested: Optional[int]) -> int:
        if requested is None or requested == self.user_id:
            return self.user_id
        if isinstance(owner, Personal):
            raise ForbiddenError("Cannot record personal transactions for another user")
        if not self.auth.is_member(owner.group_id, requested):
            raise RuleViolationError("User is not a member of this group")
        return requested

    def _check_shape(
        self,
        owner: Owner,
        txn_type: TransactionType,
        subcategory_id: Optional[int],
        account_id: Optional[int],
        to_account_id: Optional[int],
    ) -> tuple[Optional[int], Optional[int]]:
        """Validate references; returns the (subcategory_id, to_account_id) to store."""
        if account_id is not None:
            self._account_in(account_id, owner)
        if txn_type == TransactionType.transfer:
            if to_account_id is None:
                raise RuleViolationError(
                    "to_account_id is required for transfer transactions"
                )
            if account_id is None:
                raise RuleViolationError(
                    "account_id is required for transfer transactions"
                )
            if account_id == to_account_id:
                raise RuleViolationError("Cannot transfer to the same account")
            self._account_in(to_account_id, owner)
            return None, to_account_id

        if subcategory_id is not None:
            subcategory = self._subcategory_in(subcategory_id, owner)
            if subcategory.type.value != txn_type.value:
                raise RuleViolationError("Subcategory type mismatch")
        return subcategory_id, None

    def create(self, data: TransactionIn) -> Transaction:
        owner = self._owner(data.group_id, GroupAction.manage_transactions)
        acting_user = self._acting_user(owner, data.user_id)
        subcategory_id, to_account_id = self._check_shape(
            owner,
            data.type,
            data.subcategory_id,
            data.account_id,
            data.to_account_id or None,
        )
        with atomic(self.session):
            txn = Transaction(
                **owner_columns(owner, acting_user),
                subcategory_id=subcategory_id,
                account_id=data.account_id,
                to_account_id=to_account_id,
                title=data.title.strip(),
                amount_cents=to_cents(data.amount),
                description=data.description,
                occurred_at=_combine(data.date, data.time),
                type=data.type,
            )
            self.session.add(txn)
        return txn

    def update(self, transaction_id: int, data: TransactionUpdate) -> Transaction:
        txn = self._visible(Transaction, transaction_id, "Transaction")
        owner = self._authorize_row(txn, GroupAction.manage_transactions)
        provided = data.model_fields_set

        txn_type = data.type or txn.type
        subcategory_id = (
            data.subcategory_id if "subcategory_id" in provided else txn.subcategory_id
        )
        account_id = data.account_id if "account_id" in provided else txn.account_id
        to_account_id = (
            (data.to_account_id or None)
            if "to_account_id" in provided
            else txn.to_account_id
        )
        subcategory_id, to_account_id = self._check_shape(
            owner, txn_type, subcategory_id, account_id, to_account_id
        )

        if data.date is not None:
            occurred_at = _combine(data.date, data.time)
        elif data.time is not None:
            occurred_at = _combine(txn.occurred_at.date(), data.time)
        else:
            occurred_at = txn.occurred_at

        with atomic(self.session):
            txn.type = txn_type
            txn.subcategory_id = subcategory_id
            txn.account_id = account_id
            txn.to_account_id = to_account_id
            txn.occurred_at = occurred_at
            if data.title is not None:
                txn.title = data.title.strip()
            if data.amount is not None:
                txn.amount_cents = to_cents(data.amount)
            if "description" in provided:
                txn.description = data.description
        self.session.refresh(txn)
        return txn

    def delete(self, transaction_id: int) -> None:
        txn = self._visible(Transaction, transaction_id, "Transaction")
        self._authorize_row(txn, GroupAction.manage_transactions)
        with atomic(self.session):
            self.session.delete(txn)

    def list(self, filters: Optional[TransactionFilters] = None) -> list[LedgerEntry]:
        filters = filters or TransactionFilters()
        owner = self._owner(filters.group_id, GroupAction.view_transactions)
        period = (
            resolve_period(filters.start, filters.end)
            if filters.start or filters.end
            else None
        )

        stmt = select(Transaction).where(owned_by(Transaction, owner))
        if filters.category_id is not None:
            stmt = stmt.where(
                Transaction.subcategory_id.in_(
                    select(Subcategory.id).where(
                        Subcategory.category_id == filters.category_id
                    )
                )
            )
        if filters.subcategory_id is not None:
            stmt = stmt.where(Transaction.subcategory_id == filters.subcategory_id)
        if filters.account_id is not None:
            stmt = stmt.where(
                or_(
                    Transaction.account_id == filters.account_id,
                    Transaction.to_account_id == filters.account_id,
                )
            )
        if period is not None:
            stmt = stmt.where(
                Transaction.occurred_at >= period.start,
                Transaction.occurred_at < period.end,
            )
        if filters.type is not None:
            stmt = stmt.where(Transaction.type == filters.type)

        entries = [
            LedgerEntry(
                kind="transaction",
                id=txn.id,
                user_id=txn.user_id,
                account_id=txn.account_id,
                to_account_id=txn.to_account_id,
                subcategory_id=txn.subcategory_id,
                type=txn.type,
                title=txn.title,
                amount=from_cents(txn.amount_cents),
                description=txn.description,
                occurred_at=txn.occurred_at,
                created_at=txn.created_at,
            )
            for txn in self.session.scalars(stmt).all()
        ]

        # Snapshots carry no category or type, so those filters exclude them.
        if (
            filters.category_id is None
            and filters.subcategory_id is None
            and filters.type is None
        ):
            snap_stmt = (
                select(AccountBalance)
                .join(Account, Account.id == AccountBalance.account_id)
                .options(joinedload(AccountBalance.account))
                .where(owned_by(Account, owner))
            )
            if filters.account_id is not None:
                snap_stmt = snap_stmt.where(
                    AccountBalance.account_id == filters.account_id
                )
            if period is not None:
                snap_stmt = snap_stmt.where(
                    AccountBalance.as_of_at >= period.start,
                    AccountBalance.as_of_at < period.end,
                )
            for snapshot in self.session.scalars(snap_stmt).all():
                entries.append(
                    LedgerEntry(
                        kind="balance_update",
                        id=snapshot.id,
                        user_id=snapshot.account.user_id,
                        account_id=snapshot.account_id,
                        to_account_id=None,
                        subcategory_id=None,
                        type=None,
                        title="Balance update",
                        amount=from_cents(snapshot.amount_cents),
                        description=None,
                        occurred_at=snapshot.as_of_at,
                        created_at=snapshot.created_at,
                    )
                )

        entries.sort(key=lambda e: (e.occurred_at, e.created_at), reverse=True)
        return entries

    def aggregate_by_year(
        self, year: int, group_id: Optional[int] = None
    ) -> list[AggregatedTotal]:
        """
        Per subcategory/month/type totals for ``year``.

        Expenses paid from prepaid accounts or invoice-billed cards are skipped;
        the transfer that funds such an account is counted instead, as an
        expense of the account's linked subcategory. Card purchases billed by
        due date land in the month the statement is due, which is why the
        window reaches back into the prior year.
        """
        owner = self._owner(group_id, GroupAction.view_transactions)
        window = aggregation_period(year)
        transactions = self.session.scalars(
            select(Transaction)
            .where(
                owned_by(Transaction, owner),
                Transaction.occurred_at >= window.start,
                Transaction.occurred_at < window.end,
            )
            .order_by(Transaction.occurred_at.asc(), Transaction.id.asc())
        ).all()
        accounts = {
            account.id: account
            for account in self.session.scalars(
                select(Account).where(owned_by(Account, owner))
            ).all()
        }

        buckets: dict[tuple[int, int, int, TransactionType], list[int]] = {}

        def add(subcategory_id: int, target: BillingMonth, txn_type, cents: int):
            key = (subcategory_id, target.month, target.year, txn_type)
            bucket = buckets.setdefault(key, [0, 0])
            bucket[0] += cents
            bucket[1] += 1

        for txn in transactions:
            calendar = BillingMonth(month=txn.occurred_at.month, year=txn.occurred_at.year)
            if txn.type == TransactionType.transfer:
                dest = accounts.get(txn.to_account_id)
                if (
                    dest is not None
                    and dest.subcategory_id is not None
                    and dest.type in (AccountType.prepaid, AccountType.credit)
                ):
                    add(dest.subcategory_id, calendar, TransactionType.expense, txn.amount_cents)
                continue

            source = accounts.get(txn.account_id)
            if txn.type == TransactionType.expense and _counted_at_funding(source):
                continue
            if txn.subcategory_id is None:
                continue
            target = calendar
            if txn.type == TransactionType.expense:
                target = budget_month_for(source, txn.occurred_at)
            add(txn.subcategory_id, target, txn.type, txn.amount_cents)

        rows = [
            AggregatedTotal(
                subcategory_id=subcategory_id,
                month=month,
                year=bucket_year,
                type=txn_type,
                total=from_cents(total),
                count=count,
            )
            for (subcategory_id, month, bucket_year, txn_type), (total, count) in buckets.items()
            if bucket_year == year
        ]
        rows.sort(key=lambda row: (row.month, row.subcategory_id, row.type.value))
        logger.info(
            f"aggregate_by_year: owner={owner} year={year} "
            f"transactions={len(transactions)} buckets={len(rows)}"
        )
        return rows

    def aggregated_spending(
        self,
        start: date,
        end: date,
        group_id: Optional[int] = None,
        txn_type: Optional[TransactionType] = None,
    ) -> list[SubcategoryTotal]:
        owner = self._owner(group_id, GroupAction.view_transactions)
        period = resolve_period(start, end)
        stmt = (
            select(
                Transaction.subcategory_id,
                func.coalesce(func.sum(Transaction.amount_cents), 0).label("total"),
            )
            .where(
                owned_by(Transaction, owner),
                Transaction.type != TransactionType.transfer,
                Transaction.subcategory_id.isnot(None),
                Transaction.occurred_at >= period.start,
                Transaction.occurred_at < period.end,
            )
            .group_by(Transaction.subcategory_id)
            .order_by(Transaction.subcategory_id)
        )
        if txn_type is not None:
            stmt = stmt.where(Transaction.type == txn_type)
        return [
            SubcategoryTotal(subcategory_id=row.subcategory_id, total=from_cents(int(row.total)))
            for row in self.session.execute(stmt)
        ]


class BudgetService(ScopedService):
    def list_all(
        self,
        group_id: Optional[int] = None,
        *,
        year: Optional[int] = None,
        month: Optional[int] = None,
        budget_type: Optional[CategoryType] = None,
        subcategory_id: Optional[int] = None,
        annual: Optional[bool] = None,
    ) -> list[Budget]:
        owner = self._owner(group_id, GroupAction.view_budgets)
        stmt = (
            select(Budget)
            .where(owned_by(Budget, owner))
            .order_by(
                Budget.year.desc(),
                Budget.month.is_(None).desc(),
                Budget.month.asc(),
                Budget.id.asc(),
            )
        )
        if year is not None:
            stmt = stmt.where(Budget.year == year)
        if month is not None:
            stmt = stmt.where(Budget.month == month)
        if budget_type is not None:
            stmt = stmt.where(Budget.type == budget_type)
        if subcategory_id is not None:
            stmt = stmt.where(Budget.subcategory_id == subcategory_id)
        if annual is True:
            stmt = stmt.where(Budget.month.is_(None))
        elif annual is False:
            stmt = stmt.where(Budget.month.isnot(None))
        return self.session.scalars(stmt).all()

    def get(self, budget_id: int) -> Budget:
        budget = self._visible(Budget, budget_id, "Budget")
        self._authorize_row(budget, GroupAction.view_budgets)
        return budget

    def _ensure_free_slot(
        self,
        owner: Owner,
        subcategory_id: int,
        year: int,
        month: Optional[int],
        exclude_id: Optional[int] = None,
    ) -> None:
        stmt = select(Budget.id).where(
            owned_by(Budget, owner),
            Budget.subcategory_id == subcategory_id,
            Budget.year == year,
            Budget.month.is_(None) if month is None else Budget.month == month,
        )
        if exclude_id is not None:
            stmt = stmt.where(Budget.id != exclude_id)
        if self.session.scalar(stmt.limit(1)) is not None:
            label = "An annual budget" if month is None else f"A budget for month {month}"
            raise ConflictError(f"{label} already exists for this subcategory and year")

    def create(self, data: BudgetIn) -> Budget:
        owner = self._owner(data.group_id, GroupAction.manage_budgets)
        subcategory = self._subcategory_in(data.subcategory_id, owner)
        self._ensure_free_slot(owner, subcategory.id, data.year, data.month)

        with atomic(self.session):
            budget = Budget(
                **owner_columns(owner, self.user_id),
                subcategory_id=subcategory.id,
                name=data.name,
                year=data.year,
                month=data.month,
                amount_cents=to_cents(data.amount),
                type=data.type or subcategory.type,
            )
            self.session.add(budget)
            self.session.flush()
            sync_annual_budget(self.session, owner, budget.year, budget.subcategory_id)
        return budget

    def update(self, budget_id: int, data: BudgetUpdate) -> Budget:
        budget = self._visible(Budget, budget_id, "Budget")
        owner = self._authorize_row(budget, GroupAction.manage_budgets)
        provided = data.model_fields_set

        subcategory_id = data.subcategory_id or budget.subcategory_id
        if subcategory_id != budget.subcategory_id:
            self._subcategory_in(subcategory_id, owner)
        year = data.year or budget.year
        if data.annual:
            month = None
        elif "month" in provided and data.month is not None:
            month = data.month
        else:
            month = budget.month
        self._ensure_free_slot(owner, subcategory_id, year, month, exclude_id=budget.id)

        keys = {(budget.year, budget.subcategory_id), (year, subcategory_id)}
        with atomic(self.session):
            budget.subcategory_id = subcategory_id
            budget.year = year
            budget.month = month
            if data.amount is not None:
                budget.amount_cents = to_cents(data.amount)
            if data.type is not None:
                budget.type = data.type
            if "name" in provided:
                budget.name = data.name
            self.session.flush()
            for key_year, key_subcategory in sorted(keys):
                sync_annual_budget(self.session, owner, key_year, key_subcategory)
        self.session.refresh(budget)
        return budget

    def delete(self, budget_id: int) -> None:
        budget = self._visible(Budget, budget_id, "Budget")
        owner = self._authorize_row(budget, GroupAction.manage_budgets)
        year, subcategory_id = budget.year, budget.subcategory_id
        with atomic(self.session):
            self.session.delete(budget)
            self.session.flush()
            sync_annual_budget(self.session, owner, year, subcategory_id)

    def sync(
        self, year: int, subcategory_id: int, group_id: Optional[int] = None
    ) -> Optional[Budget]:
        owner = self._owner(group_id, GroupAction.manage_budgets)
        with atomic(self.session):
            return sync_annual_budget(self.session, owner, year, subcategory_id)

    def compare(
        self,
        year: int,
        month: Optional[int] = None,
        subcategory_id: Optional[int] = None,
        budget_type: Optional[CategoryType] = None,
        group_id: Optional[int] = None,
    ) -> BudgetComparison:
        owner = self._owner(group_id, GroupAction.view_budgets)
        period = comparison_period(year, month)

        budget_stmt = select(func.coalesce(func.sum(Budget.amount_cents), 0)).where(
            owned_by(Budget, owner),
            Budget.year == year,
            Budget.month.is_(None) if month is None else Budget.month == month,
        )
        txn_stmt = select(func.coalesce(func.sum(Transaction.amount_cents), 0)).where(
            owned_by(Transaction, owner),
            Transaction.type != TransactionType.transfer,
            Transaction.occurred_at >= period.start,
            Transaction.occurred_at < period.end,
        )
        if subcategory_id is not None:
            budget_stmt = budget_stmt.where(Budget.subcategory_id == subcategory_id)
            txn_stmt = txn_stmt.where(Transaction.subcategory_id == subcategory_id)
        if budget_type is not None:
            budget_stmt = budget_stmt.where(Budget.type == budget_type)
            txn_stmt = txn_stmt.where(
                Transaction.type == TransactionType(budget_type.value)
            )

        budgeted = from_cents(int(self.session.execute(budget_stmt).scalar_one() or 0))
        actual = from_cents(int(self.session.execute(txn_stmt).scalar_one() or 0))
        return BudgetComparison(
            budgeted=budgeted, actual=actual, difference=budgeted - actual
        )


def reconcile_all_budgets(session: Session) -> int:
    """
    Re-run the annual/monthly synchronization for every key that has an
    annual budget. Returns the number of annual budgets adjusted.
    """
    rows = session.execute(
        select(Budget.user_id, Budget.group_id, Budget.year, Budget.subcategory_id)
        .where(Budget.month.is_(None))
        .distinct()
    ).all()
    keys = {
        (owner_for(row.user_id, row.group_id), row.year, row.subcategory_id)
        for row in rows
    }
    adjusted = 0
    with atomic(session):
        for owner, year, subcategory_id in sorted(
            keys, key=lambda key: (str(key[0]), key[1], key[2])
        ):
            if sync_annual_budget(session, owner, year, subcategory_id):
                adjusted += 1
    return adjusted
