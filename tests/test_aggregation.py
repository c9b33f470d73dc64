from datetime import date
from decimal import Decimal

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from database import Base
from models import AccountType, BudgetMonthBasis, CategoryType, DebitMethod, TransactionType
from schemas import AccountIn, CategoryIn, GroupIn, SubcategoryIn, TransactionIn
from services import (
    AccountService,
    CategoryService,
    GroupService,
    SubcategoryService,
    TransactionService,
)


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def make_subcategory(session, user_id=1, type=CategoryType.expense, name="Groceries", group_id=None):
    category = CategoryService(session, user_id).create(
        CategoryIn(name=name, type=type, group_id=group_id)
    )
    return SubcategoryService(session, user_id).create(
        SubcategoryIn(category_id=category.id, name=name)
    )


def spend(txns, amount, day, **kwargs):
    kwargs.setdefault("type", TransactionType.expense)
    return txns.create(
        TransactionIn(title="t", amount=Decimal(amount), date=day, **kwargs)
    )


def totals(rows):
    return {(r.subcategory_id, r.month, r.type): (r.total, r.count) for r in rows}


def test_plain_transactions_are_bucketed_by_calendar_month() -> None:
    session = make_session()
    groceries = make_subcategory(session)
    salary = make_subcategory(session, type=CategoryType.income, name="Salary")
    txns = TransactionService(session, 1)

    spend(txns, "10", date(2025, 3, 5), subcategory_id=groceries.id)
    spend(txns, "15.25", date(2025, 3, 20), subcategory_id=groceries.id)
    spend(txns, "7", date(2025, 4, 1), subcategory_id=groceries.id)
    spend(txns, "100", date(2025, 3, 1), subcategory_id=salary.id, type=TransactionType.income)
    # No subcategory: nothing to attribute it to
    spend(txns, "99", date(2025, 3, 9))

    rows = txns.aggregate_by_year(2025)
    assert totals(rows) == {
        (groceries.id, 3, TransactionType.expense): (Decimal("25.25"), 2),
        (groceries.id, 4, TransactionType.expense): (Decimal("7.00"), 1),
        (salary.id, 3, TransactionType.income): (Decimal("100.00"), 1),
    }
    assert [(r.month, r.subcategory_id) for r in rows] == sorted(
        (r.month, r.subcategory_id) for r in rows
    )
    assert all(r.year == 2025 for r in rows)


def test_due_date_card_purchases_land_in_due_month() -> None:
    session = make_session()
    groceries = make_subcategory(session)
    card = AccountService(session, 1).create(
        AccountIn(
            name="Card",
            type=AccountType.credit,
            debit_method=DebitMethod.per_purchase,
            budget_month_basis=BudgetMonthBasis.due_date,
            credit_closing_day=15,
            credit_due_day=5,
        )
    )
    txns = TransactionService(session, 1)

    spend(txns, "20", date(2025, 1, 20), subcategory_id=groceries.id, account_id=card.id)
    # Bought in December, due in February of the next year
    spend(txns, "30", date(2024, 12, 20), subcategory_id=groceries.id, account_id=card.id)
    # Due in February 2026, outside the 2025 results
    spend(txns, "40", date(2025, 12, 20), subcategory_id=groceries.id, account_id=card.id)

    rows = txns.aggregate_by_year(2025)
    assert totals(rows) == {
        (groceries.id, 2, TransactionType.expense): (Decimal("30.00"), 1),
        (groceries.id, 3, TransactionType.expense): (Decimal("20.00"), 1),
    }
    assert totals(txns.aggregate_by_year(2026)) == {
        (groceries.id, 2, TransactionType.expense): (Decimal("40.00"), 1),
    }


def test_closing_day_20_due_day_10_card() -> None:
    session = make_session()
    groceries = make_subcategory(session)
    card = AccountService(session, 1).create(
        AccountIn(
            name="Card",
            type=AccountType.credit,
            debit_method=DebitMethod.per_purchase,
            budget_month_basis=BudgetMonthBasis.due_date,
            credit_closing_day=20,
            credit_due_day=10,
        )
    )
    txns = TransactionService(session, 1)

    spend(txns, "25", date(2025, 4, 25), subcategory_id=groceries.id, account_id=card.id)
    spend(txns, "15", date(2025, 4, 15), subcategory_id=groceries.id, account_id=card.id)

    assert totals(txns.aggregate_by_year(2025)) == {
        (groceries.id, 5, TransactionType.expense): (Decimal("15.00"), 1),
        (groceries.id, 6, TransactionType.expense): (Decimal("25.00"), 1),
    }


def test_prepaid_spending_is_counted_once_at_funding() -> None:
    session = make_session()
    groceries = make_subcategory(session)
    travel = make_subcategory(session, name="Travel")
    accounts = AccountService(session, 1)
    checking = accounts.create(AccountIn(name="Checking", type=AccountType.cash))
    travel_card = accounts.create(
        AccountIn(name="Travel card", type=AccountType.prepaid, subcategory_id=travel.id)
    )
    txns = TransactionService(session, 1)

    spend(
        txns,
        "200",
        date(2025, 4, 2),
        type=TransactionType.transfer,
        account_id=checking.id,
        to_account_id=travel_card.id,
    )
    spend(txns, "50", date(2025, 4, 10), subcategory_id=groceries.id, account_id=travel_card.id)
    spend(txns, "80", date(2025, 5, 3), subcategory_id=travel.id, account_id=travel_card.id)

    assert totals(txns.aggregate_by_year(2025)) == {
        (travel.id, 4, TransactionType.expense): (Decimal("200.00"), 1),
    }


def test_invoice_card_counts_the_payment_not_the_purchases() -> None:
    session = make_session()
    cards = make_subcategory(session, name="Credit card bill")
    groceries = make_subcategory(session)
    accounts = AccountService(session, 1)
    checking = accounts.create(AccountIn(name="Checking", type=AccountType.cash))
    card = accounts.create(
        AccountIn(
            name="Invoice card",
            type=AccountType.credit,
            debit_method=DebitMethod.invoice,
            subcategory_id=cards.id,
        )
    )
    txns = TransactionService(session, 1)

    spend(txns, "60", date(2025, 6, 3), subcategory_id=groceries.id, account_id=card.id)
    spend(
        txns,
        "60",
        date(2025, 7, 10),
        type=TransactionType.transfer,
        account_id=checking.id,
        to_account_id=card.id,
    )

    assert totals(txns.aggregate_by_year(2025)) == {
        (cards.id, 7, TransactionType.expense): (Decimal("60.00"), 1),
    }


def test_transfers_into_plain_accounts_are_not_spending() -> None:
    session = make_session()
    make_subcategory(session)
    accounts = AccountService(session, 1)
    checking = accounts.create(AccountIn(name="Checking", type=AccountType.cash))
    savings = accounts.create(AccountIn(name="Savings", type=AccountType.cash))
    txns = TransactionService(session, 1)

    spend(
        txns,
        "500",
        date(2025, 2, 1),
        type=TransactionType.transfer,
        account_id=checking.id,
        to_account_id=savings.id,
    )
    assert txns.aggregate_by_year(2025) == []


def test_aggregation_is_scoped_to_owner() -> None:
    session = make_session()
    group = GroupService(session, 1).create(GroupIn(name="Household"))
    personal = make_subcategory(session)
    shared = make_subcategory(session, name="Shared groceries", group_id=group.id)
    txns = TransactionService(session, 1)

    spend(txns, "10", date(2025, 8, 1), subcategory_id=personal.id)
    spend(txns, "25", date(2025, 8, 2), subcategory_id=shared.id, group_id=group.id)
    spend_other = TransactionService(session, 2)
    other_sub = make_subcategory(session, user_id=2, name="Other")
    spend(spend_other, "99", date(2025, 8, 3), subcategory_id=other_sub.id)

    assert totals(txns.aggregate_by_year(2025)) == {
        (personal.id, 8, TransactionType.expense): (Decimal("10.00"), 1),
    }
    assert totals(txns.aggregate_by_year(2025, group_id=group.id)) == {
        (shared.id, 8, TransactionType.expense): (Decimal("25.00"), 1),
    }


def test_aggregated_spending_sums_non_transfers_in_range() -> None:
    session = make_session()
    groceries = make_subcategory(session)
    accounts = AccountService(session, 1)
    checking = accounts.create(AccountIn(name="Checking", type=AccountType.cash))
    savings = accounts.create(AccountIn(name="Savings", type=AccountType.cash))
    txns = TransactionService(session, 1)

    spend(txns, "10", date(2025, 9, 1), subcategory_id=groceries.id)
    spend(txns, "5.50", date(2025, 9, 30), subcategory_id=groceries.id)
    spend(txns, "3", date(2025, 10, 1), subcategory_id=groceries.id)
    spend(
        txns,
        "100",
        date(2025, 9, 15),
        type=TransactionType.transfer,
        account_id=checking.id,
        to_account_id=savings.id,
    )

    rows = txns.aggregated_spending(date(2025, 9, 1), date(2025, 9, 30))
    assert [(r.subcategory_id, r.total) for r in rows] == [
        (groceries.id, Decimal("15.50"))
    ]
