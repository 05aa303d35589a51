import copy
import functools
import json
import logging
import os
import threading
import uuid
from collections import Counter
from datetime import date
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

from cashflow import logic
from cashflow.config import BALANCE_HISTORY_LIMIT, LEGACY_STORE_KEY, STORE_KEY, get_store_path
from cashflow.models import BalanceSnapshot, BudgetState, Expense, Income, LedgerEntry, Recurrence

logger = logging.getLogger(__name__)


class StorageError(Exception):
    """Raised when the persisted store cannot be read or written."""


class KeyValueStore(Protocol):
    def get(self, key: str) -> Optional[Any]: ...

    def set(self, key: str, value: Any) -> None: ...


class MemoryStore:
    def __init__(self, data: Optional[Dict[str, Any]] = None):
        self.data = dict(data or {})

    def get(self, key):
        return copy.deepcopy(self.data.get(key))

    def set(self, key, value):
        self.data[key] = copy.deepcopy(value)


class JsonFileStore:
    """Key-value store kept as a single JSON document on disk."""

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path) if path else get_store_path()

    def _read(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError) as e:
            raise StorageError(f"Cannot read store {self.path}: {e}") from e
        if not isinstance(data, dict):
            raise StorageError(f"Store {self.path} does not hold a JSON object")
        return data

    def get(self, key):
        return self._read().get(key)

    def set(self, key, value):
        data = self._read()
        data[key] = value
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self.path.with_name(self.path.name + ".tmp")
            tmp_path.write_text(json.dumps(data, indent=2), encoding="utf-8")
            os.replace(tmp_path, self.path)
        except OSError as e:
            raise StorageError(f"Cannot write store {self.path}: {e}") from e


# ===== SERIALISATION =====

def recurrence_to_dict(rule: Recurrence) -> Dict[str, Any]:
    data = {"type": rule.type}
    if rule.month is not None:
        data["month"] = rule.month
    if rule.day_of_month is not None:
        data["dayOfMonth"] = rule.day_of_month
    if rule.day_of_week is not None:
        data["dayOfWeek"] = rule.day_of_week
    return data


def budget_to_dict(state: BudgetState) -> Dict[str, Any]:
    return {
        "recurringExpenses": [
            {
                "id": e.id,
                "label": e.label,
                "amount": e.amount,
                "recurring": recurrence_to_dict(e.recurring),
            } for e in state.expenses
        ],
        "incomes": [
            {
                "id": i.id,
                "name": i.name,
                "totalIn": i.total_in,
                "totalRetained": i.total_retained,
                "dayOfMonth": i.day_of_month,
            } for i in state.incomes
        ],
        "accountBalanceHistory": [
            {
                "date": s.date.isoformat(),
                "balance": s.balance,
            } for s in state.balance_history
        ],
    }


def _number(value) -> float:
    if isinstance(value, bool):
        raise TypeError(f"expected a number, got {value!r}")
    return float(value)


def _bounded(value, low: int, high: int, name: str) -> int:
    if isinstance(value, bool) or (isinstance(value, float) and not value.is_integer()):
        raise ValueError(f"{name} must be a whole number, got {value!r}")
    number = int(value)
    if not low <= number <= high:
        raise ValueError(f"{name} must be between {low} and {high}, got {number}")
    return number


def recurrence_from_dict(rule: Dict[str, Any]) -> Recurrence:
    rule_type = rule["type"]
    if rule_type == "monthly":
        return Recurrence.monthly(_bounded(rule["dayOfMonth"], 1, 31, "dayOfMonth"))
    elif rule_type == "weekly":
        return Recurrence.weekly(_bounded(rule["dayOfWeek"], 1, 7, "dayOfWeek"))
    elif rule_type == "yearly":
        return Recurrence.yearly(
            _bounded(rule["month"], 1, 12, "month"),
            _bounded(rule["dayOfMonth"], 1, 31, "dayOfMonth"),
        )
    # Unknown rule types are kept as stored; they never produce occurrences
    return Recurrence(
        type=str(rule_type),
        day_of_month=rule.get("dayOfMonth"),
        day_of_week=rule.get("dayOfWeek"),
        month=rule.get("month"),
    )


def budget_from_dict(data: Dict[str, Any]) -> BudgetState:
    state = BudgetState()

    for e_data in data.get("recurringExpenses") or []:
        try:
            state.expenses.append(Expense(
                id=str(e_data["id"]),
                label=e_data.get("label") or "",
                amount=_number(e_data["amount"]),
                recurring=recurrence_from_dict(e_data["recurring"]),
            ))
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("Skipping invalid expense %s: %s", e_data, e)

    for i_data in data.get("incomes") or []:
        try:
            state.incomes.append(Income(
                id=str(i_data["id"]),
                name=i_data.get("name") or "",
                total_in=_number(i_data["totalIn"]),
                total_retained=_number(i_data.get("totalRetained") or 0),
                day_of_month=_bounded(i_data["dayOfMonth"], 1, 31, "dayOfMonth"),
            ))
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("Skipping invalid income %s: %s", i_data, e)

    duplicates = [i for i, n in Counter(i.id for i in state.incomes).items() if n > 1]
    if duplicates:
        logger.warning("Incomes share ids %s; updates will only reach the first match", duplicates)

    for s_data in data.get("accountBalanceHistory") or []:
        try:
            logic.set_manual_balance(
                state,
                date.fromisoformat(s_data["date"]),
                _number(s_data["balance"]),
                limit=BALANCE_HISTORY_LIMIT,
            )
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("Skipping invalid balance snapshot %s: %s", s_data, e)

    return state


# ===== LEGACY MIGRATION =====

def _migrate_v0_to_v1(old: Dict[str, Any]) -> Dict[str, Any]:
    """snake_case keys (``budget_info``) to the current camelCase shape."""
    return {
        "accountBalanceHistory": old.get("account_balance_history") or [],
        "incomes": [
            {
                "id": income.get("id"),
                "name": income.get("name"),
                "totalIn": income.get("total_in"),
                "totalRetained": income.get("total_retained"),
                "dayOfMonth": income.get("dayOfMonth", income.get("day_of_month")),
            } for income in old.get("incomes") or []
        ],
        "recurringExpenses": old.get("recurring_expenses") or [],
    }


MIGRATIONS = [_migrate_v0_to_v1]
CURRENT_VERSION = len(MIGRATIONS)


def migrate_budget_info(raw: Dict[str, Any], from_version: int = 0) -> Dict[str, Any]:
    data = raw
    for step in MIGRATIONS[from_version:]:
        data = step(data)
    return data


def load_budget(store: KeyValueStore) -> BudgetState:
    current = store.get(STORE_KEY)
    if current:
        return budget_from_dict(current)

    legacy = store.get(LEGACY_STORE_KEY)
    if legacy:
        logger.info("Migrating legacy budget data to schema version %d", CURRENT_VERSION)
        data = migrate_budget_info(legacy)
        state = budget_from_dict(data)
        store.set(STORE_KEY, budget_to_dict(state))
        return state

    return BudgetState()


# ===== REPOSITORY =====

def persisted(method):
    """Run a mutation under the repository lock and save the state afterwards.

    If saving fails the in-memory state is rolled back before the error propagates.
    """

    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        with self._lock:
            previous = copy.deepcopy(self.state)
            try:
                result = method(self, *args, **kwargs)
                self.store.set(STORE_KEY, budget_to_dict(self.state))
            except StorageError:
                self.state = previous
                raise
        return result

    return wrapper


class BudgetRepository:
    def __init__(self, store: Optional[KeyValueStore] = None):
        self.store = store if store is not None else JsonFileStore()
        self._lock = threading.Lock()
        self.state = load_budget(self.store)
        logger.info("Loaded %d expenses, %d incomes, %d balance snapshots",
                    len(self.state.expenses), len(self.state.incomes),
                    len(self.state.balance_history))

    def snapshot(self) -> BudgetState:
        with self._lock:
            return copy.deepcopy(self.state)

    def forecast(self, start: date, end: date) -> List[LedgerEntry]:
        return logic.generate_forecast(self.snapshot(), start, end)

    @persisted
    def add_or_update_expense(self, expense: Expense) -> None:
        logic.add_or_update_expense(self.state, expense)

    @persisted
    def remove_expense(self, expense_id: str) -> bool:
        return logic.remove_expense(self.state, expense_id)

    @persisted
    def add_or_update_income(self, income: Income) -> None:
        logic.add_or_update_income(self.state, income)

    @persisted
    def remove_income(self, income_id: str) -> bool:
        return logic.remove_income(self.state, income_id)

    @persisted
    def clear_all(self) -> None:
        logic.clear_all(self.state)

    @persisted
    def set_manual_balance(self, day: date, balance: Optional[float]) -> None:
        logic.set_manual_balance(self.state, day, balance, limit=BALANCE_HISTORY_LIMIT)

    def add_expense(
            self,
            label: str,
            amount: float,
            recurring: Recurrence,
            expense_id: Optional[str] = None,
    ) -> Expense:
        expense = Expense(id=expense_id or uuid.uuid4().hex, label=label, amount=amount, recurring=recurring)
        self.add_or_update_expense(expense)
        return expense

    def add_income(
            self,
            name: str,
            total_in: float,
            day_of_month: int,
            total_retained: float = 0.0,
            income_id: Optional[str] = None,
    ) -> Income:
        income = Income(
            id=income_id or uuid.uuid4().hex,
            name=name,
            total_in=total_in,
            total_retained=total_retained,
            day_of_month=day_of_month,
        )
        self.add_or_update_income(income)
        return income
