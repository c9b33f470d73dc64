import logging
from datetime import date
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse, Response
from sqlalchemy.orm import Session

from config import get_settings
from database import SessionLocal
from errors import DomainError
from models import (
    Account,
    AccountBalance,
    Budget,
    Category,
    CategoryType,
    Group,
    GroupMember,
    GroupRole,
    Subcategory,
    Transaction,
    TransactionType,
)
from money import from_cents
from scheduler import SchedulerManager
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
from services import (
    AccountService,
    BudgetService,
    CategoryService,
    DependentCounts,
    GroupAction,
    GroupMemberService,
    GroupService,
    LedgerEntry,
    SubcategoryService,
    TransactionFilters,
    TransactionService,
)

settings = get_settings()
logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

app = FastAPI(title="Shared Finance")


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def current_user(x_user_id: Optional[str] = Header(default=None)) -> int:
    try:
        user_id = int(x_user_id)
    except (TypeError, ValueError):
        raise HTTPException(status_code=401, detail="Missing or invalid X-User-Id header")
    if user_id <= 0:
        raise HTTPException(status_code=401, detail="Missing or invalid X-User-Id header")
    return user_id


scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    if settings.scheduler_enabled:
        scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


@app.exception_handler(DomainError)
async def domain_error_handler(request: Request, exc: DomainError):
    if exc.status_code >= 500:
        logger.error(f"request_failed: path={request.url.path} error={exc}")
    return JSONResponse(status_code=exc.status_code, content={"detail": str(exc)})


def _money(cents: int) -> str:
    return str(from_cents(cents))


def _iso(value) -> Optional[str]:
    return value.isoformat() if value is not None else None


def group_out(group: Group) -> dict:
    return {"id": group.id, "name": group.name, "owner_id": group.owner_id}


def role_out(role: GroupRole) -> dict:
    data = {
        "id": role.id,
        "group_id": role.group_id,
        "name": role.name,
        "description": role.description,
    }
    for action in GroupAction:
        data[action.value] = getattr(role, action.value)
    return data


def member_out(member: GroupMember) -> dict:
    return {
        "id": member.id,
        "group_id": member.group_id,
        "user_id": member.user_id,
        "role_id": member.role_id,
        "role": member.role.name if member.role else None,
        "joined_at": _iso(member.joined_at),
    }


def category_out(category: Category) -> dict:
    return {
        "id": category.id,
        "user_id": category.user_id,
        "group_id": category.group_id,
        "name": category.name,
        "description": category.description,
        "type": category.type.value,
        "hidden": category.hidden,
    }


def subcategory_out(subcategory: Subcategory) -> dict:
    return {
        "id": subcategory.id,
        "user_id": subcategory.user_id,
        "group_id": subcategory.group_id,
        "category_id": subcategory.category_id,
        "name": subcategory.name,
        "description": subcategory.description,
        "type": subcategory.type.value,
        "hidden": subcategory.hidden,
    }


def dependents_out(counts: DependentCounts) -> dict:
    return {
        "transactions": counts.transactions,
        "budgets": counts.budgets,
        "accounts": counts.accounts,
        "has_dependents": counts.any,
    }


def account_out(account: Account) -> dict:
    return {
        "id": account.id,
        "user_id": account.user_id,
        "group_id": account.group_id,
        "name": account.name,
        "type": account.type.value,
        "subcategory_id": account.subcategory_id,
        "debit_method": account.debit_method.value if account.debit_method else None,
        "budget_month_basis": (
            account.budget_month_basis.value if account.budget_month_basis else None
        ),
        "credit_closing_day": account.credit_closing_day,
        "credit_due_day": account.credit_due_day,
    }


def balance_out(snapshot: AccountBalance) -> dict:
    return {
        "id": snapshot.id,
        "account_id": snapshot.account_id,
        "amount": _money(snapshot.amount_cents),
        "as_of_at": _iso(snapshot.as_of_at),
    }


def transaction_out(txn: Transaction) -> dict:
    return {
        "id": txn.id,
        "user_id": txn.user_id,
        "group_id": txn.group_id,
        "title": txn.title,
        "amount": _money(txn.amount_cents),
        "type": txn.type.value,
        "occurred_at": _iso(txn.occurred_at),
        "description": txn.description,
        "subcategory_id": txn.subcategory_id,
        "account_id": txn.account_id,
        "to_account_id": txn.to_account_id,
    }


def entry_out(entry: LedgerEntry) -> dict:
    return {
        "kind": entry.kind,
        "id": entry.id,
        "user_id": entry.user_id,
        "title": entry.title,
        "amount": str(entry.amount),
        "type": entry.type.value if entry.type else None,
        "occurred_at": _iso(entry.occurred_at),
        "description": entry.description,
        "subcategory_id": entry.subcategory_id,
        "account_id": entry.account_id,
        "to_account_id": entry.to_account_id,
    }


def budget_out(budget: Budget) -> dict:
    return {
        "id": budget.id,
        "user_id": budget.user_id,
        "group_id": budget.group_id,
        "subcategory_id": budget.subcategory_id,
        "name": budget.name,
        "year": budget.year,
        "month": budget.month,
        "annual": budget.is_annual,
        "amount": _money(budget.amount_cents),
        "type": budget.type.value,
    }


def _no_content() -> Response:
    return Response(status_code=204)


# Groups


@app.get("/api/groups")
def api_groups(db: Session = Depends(get_db), user_id: int = Depends(current_user)):
    return [group_out(g) for g in GroupService(db, user_id).list_for_user()]


@app.post("/api/groups", status_code=201)
def api_create_group(
    data: GroupIn, db: Session = Depends(get_db), user_id: int = Depends(current_user)
):
    return group_out(GroupService(db, user_id).create(data))


@app.get("/api/groups/{group_id}")
def api_group(
    group_id: int, db: Session = Depends(get_db), user_id: int = Depends(current_user)
):
    return group_out(GroupService(db, user_id).get(group_id))


@app.get("/api/groups/{group_id}/roles")
def api_group_roles(
    group_id: int, db: Session = Depends(get_db), user_id: int = Depends(current_user)
):
    return [role_out(r) for r in GroupService(db, user_id).list_roles(group_id)]


@app.post("/api/groups/{group_id}/roles", status_code=201)
def api_create_group_role(
    group_id: int,
    data: GroupRoleIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user),
):
    return role_out(GroupService(db, user_id).create_role(group_id, data))


@app.get("/api/groups/{group_id}/members")
def api_group_members(
    group_id: int, db: Session = Depends(get_db), user_id: int = Depends(current_user)
):
    return [member_out(m) for m in GroupMemberService(db, user_id).list(group_id)]


@app.post("/api/groups/{group_id}/members", status_code=201)
def api_add_group_member(
    group_id: int,
    data: GroupMemberIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user),
):
    return member_out(GroupMemberService(db, user_id).add(group_id, data))


@app.put("/api/groups/{group_id}/members/{member_id}")
def api_update_group_member(
    group_id: int,
    member_id: int,
    data: GroupMemberRoleUpdate,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user),
):
    return member_out(
        GroupMemberService(db, user_id).update_role(group_id, member_id, data)
    )


@app.delete("/api/groups/{group_id}/members/{member_id}", status_code=204)
def api_remove_group_member(
    group_id: int,
    member_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user),
):
    GroupMemberService(db, user_id).remove(group_id, member_id)
    return _no_content()


@app.post("/api/groups/{group_id}/leave", status_code=204)
def api_leave_group(
    group_id: int, db: Session = Depends(get_db), user_id: int = Depends(current_user)
):
    GroupMemberService(db, user_id).leave(group_id)
    return _no_content()


# Categories


@app.get("/api/categories")
def api_categories(
    group_id: Optional[int] = None,
    include_hidden: bool = False,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user),
):
    service = CategoryService(db, user_id)
    return [category_out(c) for c in service.list_all(group_id, include_hidden)]


@app.post("/api/categories", status_code=201)
def api_create_category(
    data: CategoryIn, db: Session = Depends(get_db), user_id: int = Depends(current_user)
):
    return category_out(CategoryService(db, user_id).create(data))


@app.post("/api/categories/bulk", status_code=201)
def api_bulk_create_categories(
    items: list[CategoryBulkIn],
    group_id: Optional[int] = None,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user),
):
    created = CategoryService(db, user_id).bulk_create(items, group_id)
    return [
        {**category_out(c), "subcategories": [subcategory_out(s) for s in c.subcategories]}
        for c in created
    ]


@app.get("/api/categories/{category_id}")
def api_category(
    category_id: int, db: Session = Depends(get_db), user_id: int = Depends(current_user)
):
    return category_out(CategoryService(db, user_id).get(category_id))


@app.put("/api/categories/{category_id}")
def api_update_category(
    category_id: int,
    data: CategoryUpdate,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user),
):
    return category_out(CategoryService(db, user_id).update(category_id, data))


@app.delete("/api/categories/{category_id}", status_code=204)
def api_delete_category(
    category_id: int,
    delete_transactions: bool = False,
    move_to_subcategory_id: Optional[int] = None,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user),
):
    options = DeleteOptions(
        delete_transactions=delete_transactions,
        move_to_subcategory_id=move_to_subcategory_id,
    )
    CategoryService(db, user_id).delete(category_id, options)
    return _no_content()


@app.post("/api/categories/{category_id}/hide")
def api_hide_category(
    category_id: int, db: Session = Depends(get_db), user_id: int = Depends(current_user)
):
    return category_out(CategoryService(db, user_id).hide(category_id))


@app.post("/api/categories/{category_id}/unhide")
def api_unhide_category(
    category_id: int, db: Session = Depends(get_db), user_id: int = Depends(current_user)
):
    return category_out(CategoryService(db, user_id).unhide(category_id))


@app.get("/api/categories/{category_id}/dependents")
def api_category_dependents(
    category_id: int, db: Session = Depends(get_db), user_id: int = Depends(current_user)
):
    return dependents_out(CategoryService(db, user_id).check_dependents(category_id))


# Subcategories


@app.get("/api/subcategories")
def api_subcategories(
    group_id: Optional[int] = None,
    category_id: Optional[int] = None,
    include_hidden: bool = False,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user),
):
    service = SubcategoryService(db, user_id)
    return [
        subcategory_out(s)
        for s in service.list_all(group_id, category_id, include_hidden)
    ]


@app.post("/api/subcategories", status_code=201)
def api_create_subcategory(
    data: SubcategoryIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user),
):
    return subcategory_out(SubcategoryService(db, user_id).create(data))


@app.get("/api/subcategories/{subcategory_id}")
def api_subcategory(
    subcategory_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user),
):
    return subcategory_out(SubcategoryService(db, user_id).get(subcategory_id))


@app.put("/api/subcategories/{subcategory_id}")
def api_update_subcategory(
    subcategory_id: int,
    data: SubcategoryUpdate,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user),
):
    return subcategory_out(SubcategoryService(db, user_id).update(subcategory_id, data))


@app.delete("/api/subcategories/{subcategory_id}", status_code=204)
def api_delete_subcategory(
    subcategory_id: int,
    delete_transactions: bool = False,
    move_to_subcategory_id: Optional[int] = None,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user),
):
    options = DeleteOptions(
        delete_transactions=delete_transactions,
        move_to_subcategory_id=move_to_subcategory_id,
    )
    SubcategoryService(db, user_id).delete(subcategory_id, options)
    return _no_content()


@app.post("/api/subcategories/{subcategory_id}/hide")
def api_hide_subcategory(
    subcategory_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user),
):
    return subcategory_out(SubcategoryService(db, user_id).hide(subcategory_id))


@app.post("/api/subcategories/{subcategory_id}/unhide")
def api_unhide_subcategory(
    subcategory_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user),
):
    return subcategory_out(SubcategoryService(db, user_id).unhide(subcategory_id))


@app.get("/api/subcategories/{subcategory_id}/dependents")
def api_subcategory_dependents(
    subcategory_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user),
):
    counts = SubcategoryService(db, user_id).check_dependents(subcategory_id)
    return dependents_out(counts)


# Accounts


@app.get("/api/accounts")
def api_accounts(
    group_id: Optional[int] = None,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user),
):
    return [account_out(a) for a in AccountService(db, user_id).list_all(group_id)]


@app.post("/api/accounts", status_code=201)
def api_create_account(
    data: AccountIn, db: Session = Depends(get_db), user_id: int = Depends(current_user)
):
    return account_out(AccountService(db, user_id).create(data))


@app.post("/api/accounts/balances", status_code=201)
def api_add_balance(
    data: AccountBalanceIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user),
):
    return balance_out(AccountService(db, user_id).add_balance(data))


@app.put("/api/accounts/balances/{balance_id}")
def api_update_balance(
    balance_id: int,
    data: AccountBalanceUpdate,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user),
):
    return balance_out(AccountService(db, user_id).update_balance(balance_id, data))


@app.delete("/api/accounts/balances/{balance_id}", status_code=204)
def api_delete_balance(
    balance_id: int, db: Session = Depends(get_db), user_id: int = Depends(current_user)
):
    AccountService(db, user_id).delete_balance(balance_id)
    return _no_content()


@app.get("/api/accounts/{account_id}")
def api_account(
    account_id: int, db: Session = Depends(get_db), user_id: int = Depends(current_user)
):
    return account_out(AccountService(db, user_id).get(account_id))


@app.put("/api/accounts/{account_id}")
def api_update_account(
    account_id: int,
    data: AccountUpdate,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user),
):
    return account_out(AccountService(db, user_id).update(account_id, data))


@app.delete("/api/accounts/{account_id}", status_code=204)
def api_delete_account(
    account_id: int, db: Session = Depends(get_db), user_id: int = Depends(current_user)
):
    AccountService(db, user_id).delete(account_id)
    return _no_content()


@app.get("/api/accounts/{account_id}/balance")
def api_account_balance(
    account_id: int, db: Session = Depends(get_db), user_id: int = Depends(current_user)
):
    balance = AccountService(db, user_id).current_balance(account_id)
    return {
        "account_id": balance.account_id,
        "balance": str(balance.amount),
        "as_of": _iso(balance.as_of),
        "snapshot_id": balance.snapshot_id,
    }


@app.get("/api/accounts/{account_id}/balance/history")
def api_account_balance_history(
    account_id: int, db: Session = Depends(get_db), user_id: int = Depends(current_user)
):
    history = AccountService(db, user_id).balance_history(account_id)
    return [balance_out(b) for b in history]


# Transactions


@app.get("/api/transactions")
def api_transactions(
    group_id: Optional[int] = None,
    category_id: Optional[int] = None,
    subcategory_id: Optional[int] = None,
    account_id: Optional[int] = None,
    start: Optional[date] = None,
    end: Optional[date] = None,
    type: Optional[TransactionType] = None,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user),
):
    filters = TransactionFilters(
        group_id=group_id,
        category_id=category_id,
        subcategory_id=subcategory_id,
        account_id=account_id,
        start=start,
        end=end,
        type=type,
    )
    try:
        entries = TransactionService(db, user_id).list(filters)
    except DomainError:
        raise
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return [entry_out(e) for e in entries]


@app.post("/api/transactions", status_code=201)
def api_create_transaction(
    data: TransactionIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user),
):
    return transaction_out(TransactionService(db, user_id).create(data))


@app.get("/api/transactions/aggregated")
def api_transactions_aggregated(
    year: int = Query(..., ge=1970, le=3000),
    group_id: Optional[int] = None,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user),
):
    rows = TransactionService(db, user_id).aggregate_by_year(year, group_id)
    return [
        {
            "subcategory_id": row.subcategory_id,
            "month": row.month,
            "year": row.year,
            "type": row.type.value,
            "total": str(row.total),
            "count": row.count,
        }
        for row in rows
    ]


@app.get("/api/transactions/aggregated-spending")
def api_transactions_aggregated_spending(
    start: date,
    end: date,
    group_id: Optional[int] = None,
    type: Optional[TransactionType] = None,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user),
):
    try:
        rows = TransactionService(db, user_id).aggregated_spending(
            start, end, group_id, type
        )
    except DomainError:
        raise
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return [
        {"subcategory_id": row.subcategory_id, "total": str(row.total)} for row in rows
    ]


@app.get("/api/transactions/{transaction_id}")
def api_transaction(
    transaction_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user),
):
    return transaction_out(TransactionService(db, user_id).get(transaction_id))


@app.put("/api/transactions/{transaction_id}")
def api_update_transaction(
    transaction_id: int,
    data: TransactionUpdate,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user),
):
    return transaction_out(TransactionService(db, user_id).update(transaction_id, data))


@app.delete("/api/transactions/{transaction_id}", status_code=204)
def api_delete_transaction(
    transaction_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user),
):
    TransactionService(db, user_id).delete(transaction_id)
    return _no_content()


# Budgets


@app.get("/api/budgets")
def api_budgets(
    group_id: Optional[int] = None,
    year: Optional[int] = None,
    month: Optional[int] = None,
    type: Optional[CategoryType] = None,
    subcategory_id: Optional[int] = None,
    annual: Optional[bool] = None,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user),
):
    budgets = BudgetService(db, user_id).list_all(
        group_id,
        year=year,
        month=month,
        budget_type=type,
        subcategory_id=subcategory_id,
        annual=annual,
    )
    return [budget_out(b) for b in budgets]


@app.post("/api/budgets", status_code=201)
def api_create_budget(
    data: BudgetIn, db: Session = Depends(get_db), user_id: int = Depends(current_user)
):
    return budget_out(BudgetService(db, user_id).create(data))


@app.get("/api/budgets/comparison")
def api_budget_comparison(
    year: int = Query(..., ge=1970, le=3000),
    month: Optional[int] = Query(None, ge=1, le=12),
    subcategory_id: Optional[int] = None,
    type: Optional[CategoryType] = None,
    group_id: Optional[int] = None,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user),
):
    result = BudgetService(db, user_id).compare(
        year, month, subcategory_id, type, group_id
    )
    return {
        "budgeted": str(result.budgeted),
        "actual": str(result.actual),
        "difference": str(result.difference),
    }


@app.post("/api/budgets/sync")
def api_budget_sync(
    subcategory_id: int,
    year: int = Query(..., ge=1970, le=3000),
    group_id: Optional[int] = None,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user),
):
    adjusted = BudgetService(db, user_id).sync(year, subcategory_id, group_id)
    return {"adjusted": budget_out(adjusted) if adjusted else None}


@app.get("/api/budgets/{budget_id}")
def api_budget(
    budget_id: int, db: Session = Depends(get_db), user_id: int = Depends(current_user)
):
    return budget_out(BudgetService(db, user_id).get(budget_id))


@app.put("/api/budgets/{budget_id}")
def api_update_budget(
    budget_id: int,
    data: BudgetUpdate,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user),
):
    return budget_out(BudgetService(db, user_id).update(budget_id, data))


@app.delete("/api/budgets/{budget_id}", status_code=204)
def api_delete_budget(
    budget_id: int, db: Session = Depends(get_db), user_id: int = Depends(current_user)
):
    BudgetService(db, user_id).delete(budget_id)
    return _no_content()
