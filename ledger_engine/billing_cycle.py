"""
Billing Cycle Module

Statement-date and due-date arithmetic for credit cards configured by day of
month. A statement day beyond the end of a short month resolves to that
month's last day.
"""

from datetime import date, timedelta
from dataclasses import dataclass
from enum import Enum
from typing import Optional
import calendar

from .config import get_config


class DueStatus(Enum):
    """Payment urgency relative to the due date"""
    OVERDUE = "overdue"
    DUE_SOON = "due_soon"
    NOT_DUE = "not_due"


@dataclass(frozen=True)
class StatementPeriod:
    """
    Statement dates around a reference date.

    cycle_start/cycle_end bound the open billing cycle: [last, current)
    before the statement date and [current, next) on or after it.
    """
    last_statement_date: date
    current_statement_date: date
    next_statement_date: date
    is_after_statement_date: bool
    cycle_start: date
    cycle_end: date


@dataclass(frozen=True)
class BillingCycle:
    """Inclusive cycle: day after the previous statement through the statement date"""
    cycle_start: date
    cycle_end: date
    statement_date: date


@dataclass(frozen=True)
class StatementInfo:
    """Which statement a transaction lands on and when it is due"""
    statement_date: date
    due_date: date


def safe_day_in_month(year: int, month: int, day: int) -> date:
    """Build a date, clamping day to the month's last valid day"""
    return date(year, month, min(day, calendar.monthrange(year, month)[1]))


def shift_month(year: int, month: int, offset: int):
    """(year, month) moved by offset months"""
    index = year * 12 + (month - 1) + offset
    return index // 12, index % 12 + 1


def statement_date_for(year: int, month: int, statement_day: int, offset: int = 0) -> date:
    """Nominal statement date offset months away from (year, month)"""
    y, m = shift_month(year, month, offset)
    return safe_day_in_month(y, m, statement_day)


def statement_period(statement_day: int, reference_date: Optional[date] = None) -> StatementPeriod:
    """
    Resolve the statement dates around reference_date.

    The reference is on or after the statement date once it reaches this
    month's (clamped) statement date.
    """
    reference_date = reference_date or date.today()
    year, month = reference_date.year, reference_date.month

    current = statement_date_for(year, month, statement_day)
    last = statement_date_for(year, month, statement_day, -1)
    following = statement_date_for(year, month, statement_day, 1)
    is_after = reference_date >= current

    if is_after:
        cycle_start, cycle_end = current, following
    else:
        cycle_start, cycle_end = last, current

    return StatementPeriod(
        last_statement_date=last,
        current_statement_date=current,
        next_statement_date=following,
        is_after_statement_date=is_after,
        cycle_start=cycle_start,
        cycle_end=cycle_end
    )


def billed_period(statement_day: int, reference_date: Optional[date] = None):
    """
    Window [start, end) of the most recently generated statement, the one
    currently due for payment.
    """
    period = statement_period(statement_day, reference_date)
    if period.is_after_statement_date:
        return period.last_statement_date, period.current_statement_date
    before_last = statement_date_for(
        period.last_statement_date.year, period.last_statement_date.month, statement_day, -1
    )
    return before_last, period.last_statement_date


def _due_after_statement(statement: date, statement_day: int, due_day: int) -> date:
    if due_day >= statement_day:
        return safe_day_in_month(statement.year, statement.month, due_day)
    y, m = shift_month(statement.year, statement.month, 1)
    return safe_day_in_month(y, m, due_day)


def due_date(statement_day: int, due_day: int, reference_date: Optional[date] = None) -> date:
    """
    Due date of the most recently generated statement: same month as the
    statement when due_day >= statement_day, otherwise the following month.
    """
    period = statement_period(statement_day, reference_date)
    statement = period.current_statement_date if period.is_after_statement_date else period.last_statement_date
    return _due_after_statement(statement, statement_day, due_day)


def should_display_due(statement_day: int, due_day: Optional[int] = None,
                       reference_date: Optional[date] = None) -> bool:
    """Due amounts are shown only once this month's statement has been generated"""
    return statement_period(statement_day, reference_date).is_after_statement_date


def current_billing_cycle(statement_day: int, reference_date: Optional[date] = None) -> BillingCycle:
    """
    The cycle that reference_date belongs to, running from the day after the
    previous statement through the next statement date inclusive.
    """
    reference_date = reference_date or date.today()
    year, month = reference_date.year, reference_date.month
    this_statement = statement_date_for(year, month, statement_day)

    if reference_date <= this_statement:
        statement = this_statement
        previous = statement_date_for(year, month, statement_day, -1)
    else:
        statement = statement_date_for(year, month, statement_day, 1)
        previous = this_statement

    return BillingCycle(
        cycle_start=previous + timedelta(days=1),
        cycle_end=statement,
        statement_date=statement
    )


def next_due_date(statement_day: int, due_day: int, reference_date: Optional[date] = None) -> date:
    """Due date for the statement closing the current billing cycle"""
    cycle = current_billing_cycle(statement_day, reference_date)
    return _due_after_statement(cycle.statement_date, statement_day, due_day)


def days_until_due(statement_day: int, due_day: int, reference_date: Optional[date] = None) -> int:
    reference_date = reference_date or date.today()
    return (next_due_date(statement_day, due_day, reference_date) - reference_date).days


def is_payment_overdue(statement_day: int, due_day: int, reference_date: Optional[date] = None) -> bool:
    """True once the due date of the last generated statement has passed"""
    reference_date = reference_date or date.today()
    return reference_date > due_date(statement_day, due_day, reference_date)


def payment_due_status(due: Optional[date], reference_date: Optional[date] = None,
                       due_soon_days: Optional[int] = None) -> DueStatus:
    """
    Overdue after the due date, due soon within due_soon_days of it
    (LedgerConfig.due_soon_days when omitted)
    """
    if due is None:
        return DueStatus.NOT_DUE
    if due_soon_days is None:
        due_soon_days = get_config().due_soon_days
    reference_date = reference_date or date.today()
    if reference_date > due:
        return DueStatus.OVERDUE
    if (due - reference_date).days <= due_soon_days:
        return DueStatus.DUE_SOON
    return DueStatus.NOT_DUE


def transaction_statement_info(statement_day: int, due_day: int, transaction_date: date) -> StatementInfo:
    """
    Transactions on or after the statement day roll into next month's
    statement; earlier ones land on this month's.
    """
    this_statement = statement_date_for(transaction_date.year, transaction_date.month, statement_day)
    offset = 1 if transaction_date >= this_statement else 0
    statement = statement_date_for(transaction_date.year, transaction_date.month, statement_day, offset)
    return StatementInfo(
        statement_date=statement,
        due_date=_due_after_statement(statement, statement_day, due_day)
    )
