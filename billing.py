from datetime import date, datetime
from typing import NamedTuple, Optional, Union

from models import Account, AccountType, BudgetMonthBasis, DebitMethod


class BillingMonth(NamedTuple):
    month: int
    year: int


def _next_month(year: int, month: int) -> tuple[int, int]:
    if month == 12:
        return year + 1, 1
    return year, month + 1


def due_date_month(
    transaction_date: Union[date, datetime], closing_day: int, due_day: int
) -> BillingMonth:
    """
    Month/year in which a card purchase is paid.

    A purchase on or before ``closing_day`` belongs to the statement closing in
    its own month, later purchases to the next one. The statement is due in
    the closing month when ``due_day >= closing_day``, else the month after.

    Day numbers are compared as-is: a closing day of 31 in a 30-day month
    puts every purchase of that month on that month's statement.
    """
    for label, value in (("closing_day", closing_day), ("due_day", due_day)):
        if not 1 <= value <= 31:
            raise ValueError(f"{label} must be between 1 and 31")

    year, month = transaction_date.year, transaction_date.month
    if transaction_date.day > closing_day:
        year, month = _next_month(year, month)
    if due_day < closing_day:
        year, month = _next_month(year, month)
    return BillingMonth(month=month, year=year)


def bills_by_due_date(account: Optional[Account]) -> bool:
    return bool(
        account is not None
        and account.type == AccountType.credit
        and account.debit_method == DebitMethod.per_purchase
        and account.budget_month_basis == BudgetMonthBasis.due_date
        and account.credit_closing_day
        and account.credit_due_day
    )


def budget_month_for(
    account: Optional[Account], occurred_at: Union[date, datetime]
) -> BillingMonth:
    """Budget month of a purchase made from ``account``."""
    if bills_by_due_date(account):
        return due_date_month(
            occurred_at, account.credit_closing_day, account.credit_due_day
        )
    return BillingMonth(month=occurred_at.month, year=occurred_at.year)
