import logging
from datetime import date, datetime, timedelta
from dateutil.relativedelta import relativedelta
from typing import Dict, Iterator, List, Optional

from cashflow.config import BALANCE_HISTORY_LIMIT
from cashflow.models import (
    BalanceSnapshot, BudgetState, Expense, ExpenseOccurrence, Income, IncomeOccurrence, LedgerEntry
)

logger = logging.getLogger(__name__)

SATURDAY, SUNDAY = 6, 7


class InvalidInterval(ValueError):
    """Raised when a forecast interval ends before it starts."""


def _as_day(value) -> date:
    if isinstance(value, datetime):
        return value.date()
    return value


# ===== BUDGET MUTATIONS =====

def add_or_update_expense(state: BudgetState, expense: Expense) -> None:
    for existing in state.expenses:
        if existing.id == expense.id:
            existing.amount = expense.amount
            existing.label = expense.label
            existing.recurring = expense.recurring
            return

    state.expenses.append(expense)


def remove_expense(state: BudgetState, expense_id: str) -> bool:
    count = len(state.expenses)
    state.expenses[:] = [e for e in state.expenses if e.id != expense_id]
    return len(state.expenses) != count


def add_or_update_income(state: BudgetState, income: Income) -> None:
    for existing in state.incomes:
        if existing.id == income.id:
            existing.name = income.name
            existing.total_in = income.total_in
            existing.total_retained = income.total_retained
            existing.day_of_month = income.day_of_month
            return

    state.incomes.append(income)


def remove_income(state: BudgetState, income_id: str) -> bool:
    count = len(state.incomes)
    state.incomes[:] = [i for i in state.incomes if i.id != income_id]
    return len(state.incomes) != count


def clear_all(state: BudgetState) -> None:
    state.expenses.clear()
    state.incomes.clear()
    state.balance_history.clear()


def set_manual_balance(
        state: BudgetState,
        day: date,
        balance: Optional[float],
        limit: int = BALANCE_HISTORY_LIMIT,
) -> None:
    """Record, replace or (with ``balance=None``) drop the snapshot for ``day``.

    History stays sorted newest first and only the ``limit`` most recent
    dates are kept.
    """
    day = _as_day(day)
    state.balance_history[:] = [s for s in state.balance_history if s.date != day]
    if balance is not None:
        state.balance_history.append(BalanceSnapshot(day, balance))
    state.balance_history.sort(key=lambda s: s.date, reverse=True)
    del state.balance_history[limit:]


# ===== RECURRENCE EXPANSION =====

def iter_days(start: date, end: date) -> Iterator[date]:
    current = start
    while current <= end:
        yield current
        current += timedelta(days=1)


def expense_occurs_on(expense: Expense, day: date) -> bool:
    rule = expense.recurring
    if rule.type == "monthly":
        return day.day == rule.day_of_month
    elif rule.type == "weekly":
        return day.isoweekday() == rule.day_of_week
    elif rule.type == "yearly":
        return day.month == rule.month and day.day == rule.day_of_month
    # Unknown rule types never fire
    return False


def resolve_payday(income: Income, year: int, month: int) -> date:
    """Payday for ``income`` in the given month.

    The target day is clamped to the month length, then moved back to the
    closest weekday. The rollback never leaves the month: it stops on the
    1st even if that is still a weekend.
    """
    target = date(year, month, 1) + relativedelta(day=income.day_of_month)
    while target.isoweekday() in (SATURDAY, SUNDAY) and target.day > 1:
        target -= timedelta(days=1)
    return target


def get_expenses(expenses: List[Expense], days: List[date]) -> List[ExpenseOccurrence]:
    occurrences = []
    for day in days:
        for expense in expenses:
            if expense_occurs_on(expense, day):
                occurrences.append(ExpenseOccurrence(day, expense.label, expense.amount))
    return occurrences


def get_incomes(incomes: List[Income], days: List[date]) -> List[IncomeOccurrence]:
    occurrences = []
    paydays: Dict[tuple, date] = {}
    for day in days:
        for index, income in enumerate(incomes):
            key = (index, day.year, day.month)
            if key not in paydays:
                paydays[key] = resolve_payday(income, day.year, day.month)
            if paydays[key] == day:
                occurrences.append(
                    IncomeOccurrence(day, income.name, income.total_in, income.total_retained)
                )
    return occurrences


# ===== FORECAST =====

def find_anchor(history: List[BalanceSnapshot], start: date) -> Optional[BalanceSnapshot]:
    valid = [s for s in history if s.date <= start]
    if not valid:
        return None
    return max(valid, key=lambda s: s.date)


def generate_forecast(budget: BudgetState, start: date, end: date) -> List[LedgerEntry]:
    """Project a daily ledger for every day in ``[start, end]``.

    The walk starts at the latest manual snapshot on or before ``start`` (or
    at ``start`` with a zero balance when there is none) so recurring items
    between the snapshot and ``start`` are folded into the running balance.
    A manual snapshot always overrides the computed closing balance of its
    day. Days before ``start`` are computed and then dropped.
    """
    start, end = _as_day(start), _as_day(end)
    if end < start:
        raise InvalidInterval(f"Forecast end {end} is before start {start}")

    history = sorted(budget.balance_history, key=lambda s: s.date, reverse=True)
    manual = {}
    for snapshot in history:
        manual.setdefault(snapshot.date, snapshot.balance)

    anchor = find_anchor(history, start)
    balance = anchor.balance if anchor else 0
    days = list(iter_days(anchor.date if anchor else start, end))
    logger.debug("Forecast %s..%s anchored at %s (%d days computed)",
                 start, end, anchor.date if anchor else start, len(days))

    expenses_by_day: Dict[date, List[ExpenseOccurrence]] = {}
    for occ in get_expenses(budget.expenses, days):
        expenses_by_day.setdefault(occ.date, []).append(occ)
    incomes_by_day: Dict[date, List[IncomeOccurrence]] = {}
    for occ in get_incomes(budget.incomes, days):
        incomes_by_day.setdefault(occ.date, []).append(occ)

    ledger = []
    for day in days:
        starting_balance = balance
        day_expenses = expenses_by_day.get(day, [])
        day_incomes = incomes_by_day.get(day, [])

        cost = sum(e.amount for e in day_expenses) - sum(i.net for i in day_incomes)

        if day in manual:
            balance = manual[day]
            entry_type = "manual"
        else:
            balance = starting_balance - cost
            entry_type = "forecast"

        if day < start:
            continue
        ledger.append(LedgerEntry(
            date=day,
            starting_balance=starting_balance,
            closing_balance=balance,
            expenses=day_expenses,
            incomes=day_incomes,
            total_expense_cost=cost,
            type=entry_type,
            is_payday=bool(day_incomes),
        ))

    return ledger
