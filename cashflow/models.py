from __future__ import annotations
from dataclasses import dataclass, field
from datetime import date
from typing import Optional, List, Literal


EntryType = Literal["manual", "forecast"]


@dataclass
class Recurrence:
    type: str
    day_of_month: Optional[int] = None
    day_of_week: Optional[int] = None
    month: Optional[int] = None

    @classmethod
    def monthly(cls, day_of_month: int) -> Recurrence:
        return cls("monthly", day_of_month=day_of_month)

    @classmethod
    def weekly(cls, day_of_week: int) -> Recurrence:
        return cls("weekly", day_of_week=day_of_week)

    @classmethod
    def yearly(cls, month: int, day_of_month: int) -> Recurrence:
        return cls("yearly", day_of_month=day_of_month, month=month)


@dataclass
class Expense:
    id: str
    label: str
    amount: float
    recurring: Recurrence


@dataclass
class Income:
    id: str
    name: str
    total_in: float
    total_retained: float
    day_of_month: int

    @property
    def net(self) -> float:
        return self.total_in - self.total_retained


@dataclass
class BalanceSnapshot:
    date: date
    balance: float


@dataclass
class BudgetState:
    expenses: List[Expense] = field(default_factory=list)
    incomes: List[Income] = field(default_factory=list)
    balance_history: List[BalanceSnapshot] = field(default_factory=list)


@dataclass
class ExpenseOccurrence:
    date: date
    label: str
    amount: float


@dataclass
class IncomeOccurrence:
    date: date
    name: str
    total_in: float
    total_retained: float

    @property
    def net(self) -> float:
        return self.total_in - self.total_retained


@dataclass
class LedgerEntry:
    date: date
    starting_balance: float
    closing_balance: float
    expenses: List[ExpenseOccurrence] = field(default_factory=list)
    incomes: List[IncomeOccurrence] = field(default_factory=list)
    total_expense_cost: float = 0.0
    type: EntryType = "forecast"
    is_payday: bool = False
