from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from database import Base
from errors import ConflictError, RuleViolationError
from models import AccountType, CategoryType, TransactionType
from schemas import (
    AccountIn,
    BudgetIn,
    BudgetUpdate,
    CategoryIn,
    SubcategoryIn,
    TransactionIn,
)
from services import (
    AccountService,
    BudgetService,
    CategoryService,
    SubcategoryService,
    TransactionService,
    reconcile_all_budgets,
)


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def make_subcategory(session, user_id=1, type=CategoryType.expense, name="Groceries"):
    category = CategoryService(session, user_id).create(CategoryIn(name=name, type=type))
    return SubcategoryService(session, user_id).create(
        SubcategoryIn(category_id=category.id, name=name)
    )


def annual_amount(budgets, year, subcategory_id):
    (annual,) = budgets.list_all(year=year, subcategory_id=subcategory_id, annual=True)
    return annual.amount_cents


def test_monthly_budgets_drive_the_annual_amount() -> None:
    session = make_session()
    sub = make_subcategory(session)
    budgets = BudgetService(session, 1)

    budgets.create(BudgetIn(subcategory_id=sub.id, year=2025, amount=Decimal("0")))
    budgets.create(BudgetIn(subcategory_id=sub.id, year=2025, month=1, amount=Decimal("500")))
    budgets.create(BudgetIn(subcategory_id=sub.id, year=2025, month=2, amount=Decimal("600")))

    assert annual_amount(budgets, 2025, sub.id) == 110_000
    assert budgets.sync(2025, sub.id) is None
    assert annual_amount(budgets, 2025, sub.id) == 110_000


def test_update_and_delete_resync_the_annual_budget() -> None:
    session = make_session()
    sub = make_subcategory(session)
    budgets = BudgetService(session, 1)
    budgets.create(BudgetIn(subcategory_id=sub.id, year=2025, amount=Decimal("1000")))
    jan = budgets.create(BudgetIn(subcategory_id=sub.id, year=2025, month=1, amount=Decimal("100")))
    feb = budgets.create(BudgetIn(subcategory_id=sub.id, year=2025, month=2, amount=Decimal("200")))
    assert annual_amount(budgets, 2025, sub.id) == 30_000

    budgets.update(jan.id, BudgetUpdate(amount=Decimal("150.25")))
    assert annual_amount(budgets, 2025, sub.id) == 35_025

    budgets.delete(feb.id)
    assert annual_amount(budgets, 2025, sub.id) == 15_025

    # With no monthly entries left the annual amount stands on its own
    budgets.delete(jan.id)
    assert annual_amount(budgets, 2025, sub.id) == 15_025


def test_moving_a_monthly_budget_resyncs_both_years() -> None:
    session = make_session()
    sub = make_subcategory(session)
    budgets = BudgetService(session, 1)
    budgets.create(BudgetIn(subcategory_id=sub.id, year=2025, amount=Decimal("0")))
    budgets.create(BudgetIn(subcategory_id=sub.id, year=2026, amount=Decimal("0")))
    budgets.create(BudgetIn(subcategory_id=sub.id, year=2025, month=1, amount=Decimal("40")))
    moving = budgets.create(
        BudgetIn(subcategory_id=sub.id, year=2025, month=3, amount=Decimal("60"))
    )
    assert annual_amount(budgets, 2025, sub.id) == 10_000

    budgets.update(moving.id, BudgetUpdate(year=2026))
    assert annual_amount(budgets, 2025, sub.id) == 4_000
    assert annual_amount(budgets, 2026, sub.id) == 6_000


def test_sync_never_creates_an_annual_budget() -> None:
    session = make_session()
    sub = make_subcategory(session)
    budgets = BudgetService(session, 1)
    budgets.create(BudgetIn(subcategory_id=sub.id, year=2025, month=5, amount=Decimal("80")))

    assert budgets.sync(2025, sub.id) is None
    assert budgets.list_all(year=2025, annual=True) == []
    assert len(budgets.list_all(year=2025)) == 1


def test_one_cent_drift_is_tolerated() -> None:
    session = make_session()
    sub = make_subcategory(session)
    other = make_subcategory(session, name="Fuel")
    budgets = BudgetService(session, 1)

    budgets.create(BudgetIn(subcategory_id=sub.id, year=2025, month=1, amount=Decimal("1100")))
    budgets.create(BudgetIn(subcategory_id=sub.id, year=2025, amount=Decimal("1100.01")))
    assert annual_amount(budgets, 2025, sub.id) == 110_001

    budgets.create(BudgetIn(subcategory_id=other.id, year=2025, month=1, amount=Decimal("1100")))
    budgets.create(BudgetIn(subcategory_id=other.id, year=2025, amount=Decimal("1100.02")))
    assert annual_amount(budgets, 2025, other.id) == 110_000


def test_one_annual_and_one_budget_per_month() -> None:
    session = make_session()
    sub = make_subcategory(session)
    budgets = BudgetService(session, 1)
    budgets.create(BudgetIn(subcategory_id=sub.id, year=2025, amount=Decimal("10")))
    march = budgets.create(BudgetIn(subcategory_id=sub.id, year=2025, month=3, amount=Decimal("10")))
    april = budgets.create(BudgetIn(subcategory_id=sub.id, year=2025, month=4, amount=Decimal("10")))

    with pytest.raises(ConflictError):
        budgets.create(BudgetIn(subcategory_id=sub.id, year=2025, amount=Decimal("5")))
    with pytest.raises(ConflictError):
        budgets.create(BudgetIn(subcategory_id=sub.id, year=2025, month=3, amount=Decimal("5")))
    with pytest.raises(ConflictError):
        budgets.update(april.id, BudgetUpdate(month=3))
    with pytest.raises(ConflictError):
        budgets.update(march.id, BudgetUpdate(annual=True))


def test_budget_type_defaults_to_subcategory_type() -> None:
    session = make_session()
    salary = make_subcategory(session, type=CategoryType.income, name="Salary")
    budget = BudgetService(session, 1).create(
        BudgetIn(subcategory_id=salary.id, year=2025, month=1, amount=Decimal("3000"))
    )
    assert budget.type == CategoryType.income


def test_budget_needs_a_subcategory_in_scope() -> None:
    session = make_session()
    foreign = make_subcategory(session, user_id=2)
    with pytest.raises(RuleViolationError):
        BudgetService(session, 1).create(
            BudgetIn(subcategory_id=foreign.id, year=2025, amount=Decimal("10"))
        )


def test_compare_budgeted_against_actual() -> None:
    session = make_session()
    groceries = make_subcategory(session)
    salary = make_subcategory(session, type=CategoryType.income, name="Salary")
    accounts = AccountService(session, 1)
    checking = accounts.create(AccountIn(name="Checking", type=AccountType.cash))
    savings = accounts.create(AccountIn(name="Savings", type=AccountType.cash))
    budgets = BudgetService(session, 1)
    txns = TransactionService(session, 1)

    budgets.create(BudgetIn(subcategory_id=groceries.id, year=2025, amount=Decimal("1200")))
    budgets.create(BudgetIn(subcategory_id=groceries.id, year=2025, month=3, amount=Decimal("300")))
    for amount, day in (("120", 5), ("30", 28)):
        txns.create(
            TransactionIn(
                title="Shop",
                amount=Decimal(amount),
                date=date(2025, 3, day),
                subcategory_id=groceries.id,
            )
        )
    txns.create(
        TransactionIn(
            title="Pay",
            amount=Decimal("2000"),
            date=date(2025, 3, 1),
            type=TransactionType.income,
            subcategory_id=salary.id,
        )
    )
    txns.create(
        TransactionIn(
            title="Save",
            amount=Decimal("400"),
            date=date(2025, 3, 2),
            type=TransactionType.transfer,
            account_id=checking.id,
            to_account_id=savings.id,
        )
    )
    txns.create(
        TransactionIn(
            title="Shop",
            amount=Decimal("10"),
            date=date(2025, 4, 1),
            subcategory_id=groceries.id,
        )
    )

    march = budgets.compare(2025, 3, budget_type=CategoryType.expense)
    assert march.budgeted == Decimal("300.00")
    assert march.actual == Decimal("150.00")
    assert march.difference == Decimal("150.00")

    # Annual budget (synced to the single monthly) against the whole year
    year = budgets.compare(2025, subcategory_id=groceries.id)
    assert year.budgeted == Decimal("300.00")
    assert year.actual == Decimal("160.00")
    assert year.difference == Decimal("140.00")


def test_reconcile_repairs_drifted_annual_budgets() -> None:
    session = make_session()
    sub = make_subcategory(session)
    budgets = BudgetService(session, 1)
    annual = budgets.create(BudgetIn(subcategory_id=sub.id, year=2025, amount=Decimal("0")))
    budgets.create(BudgetIn(subcategory_id=sub.id, year=2025, month=6, amount=Decimal("75")))

    annual.amount_cents = 1
    session.commit()

    assert reconcile_all_budgets(session) == 1
    assert annual_amount(budgets, 2025, sub.id) == 7_500
    assert reconcile_all_budgets(session) == 0
