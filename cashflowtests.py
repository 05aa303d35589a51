import io
import json
import tempfile
import unittest
from datetime import date, datetime, timedelta
from pathlib import Path
from unittest.mock import patch

from cashflow.models import (
    BalanceSnapshot, BudgetState, Expense, Income, LedgerEntry, Recurrence
)
from cashflow.logic import (
    InvalidInterval, add_or_update_expense, add_or_update_income, clear_all, expense_occurs_on,
    find_anchor, generate_forecast, get_incomes, iter_days, remove_expense, remove_income,
    resolve_payday, set_manual_balance
)
from cashflow.storage import (
    BudgetRepository, JsonFileStore, MemoryStore, StorageError, budget_from_dict, budget_to_dict,
    migrate_budget_info
)
from cashflow.cli import CashflowCLI, format_ordinal


JAN_1 = date(2024, 1, 1)
JAN_31 = date(2024, 1, 31)
FEB_1 = date(2024, 2, 1)
FEB_29 = date(2024, 2, 29)


def make_budget(expenses=(), incomes=(), history=((JAN_1, 1000),)):
    return BudgetState(
        expenses=list(expenses),
        incomes=list(incomes),
        balance_history=[BalanceSnapshot(d, b) for d, b in history],
    )


class FailingStore(MemoryStore):
    def __init__(self, data=None):
        super().__init__(data)
        self.fail = False

    def set(self, key, value):
        if self.fail:
            raise StorageError("disk full")
        super().set(key, value)


class TestForecast(unittest.TestCase):
    def assertBalances(self, entry: LedgerEntry, starting, closing):
        self.assertEqual((entry.starting_balance, entry.closing_balance), (starting, closing),
                         f"unexpected balances on {entry.date}")

    def test_nothing_changes(self):
        """A single snapshot with no rules keeps the balance flat"""
        forecast = generate_forecast(make_budget(), JAN_1, JAN_31)

        self.assertEqual(len(forecast), 31)
        for entry in forecast:
            self.assertBalances(entry, 1000, 1000)
            self.assertEqual(entry.total_expense_cost, 0)
            self.assertEqual(entry.expenses, [])
            self.assertEqual(entry.incomes, [])
            self.assertFalse(entry.is_payday)

    def test_empty_budget(self):
        """No snapshots at all starts from zero"""
        forecast = generate_forecast(BudgetState(), JAN_1, date(2024, 1, 7))
        self.assertEqual(len(forecast), 7)
        for entry in forecast:
            self.assertBalances(entry, 0, 0)
            self.assertEqual(entry.type, "forecast")

    def test_entry_types(self):
        forecast = generate_forecast(make_budget(), JAN_1, date(2024, 1, 3))
        self.assertEqual([e.type for e in forecast], ["manual", "forecast", "forecast"])
        self.assertEqual([e.date for e in forecast], list(iter_days(JAN_1, date(2024, 1, 3))))

    def test_weekly_expense(self):
        """Tuesday coffee reduces the balance every 7 days"""
        coffee = Expense("1", "Coffee", 10, Recurrence.weekly(2))
        forecast = generate_forecast(make_budget(expenses=[coffee]), JAN_1, JAN_31)

        self.assertEqual(len(forecast), 31)
        self.assertBalances(forecast[1], 1000, 990)
        self.assertBalances(forecast[8], 990, 980)
        self.assertBalances(forecast[15], 980, 970)
        self.assertBalances(forecast[22], 970, 960)
        self.assertBalances(forecast[29], 960, 950)

        charged = [e.date for e in forecast if e.expenses]
        self.assertEqual(charged, [date(2024, 1, d) for d in (2, 9, 16, 23, 30)])
        for entry in forecast:
            self.assertEqual(entry.date.isoweekday() == 2, entry.starting_balance - entry.closing_balance == 10)

    def test_monthly_expense(self):
        """Monthly expense fires on its day and carries over into February"""
        rent = Expense("1", "Rent", 100, Recurrence.monthly(28))
        budget = make_budget(expenses=[rent])

        jan = generate_forecast(budget, JAN_1, JAN_31)
        self.assertEqual(len(jan), 31)
        self.assertBalances(jan[26], 1000, 1000)
        self.assertBalances(jan[27], 1000, 900)
        self.assertBalances(jan[28], 900, 900)
        self.assertEqual(jan[27].expenses[0].label, "Rent")
        self.assertEqual(jan[27].total_expense_cost, 100)

        feb = generate_forecast(budget, FEB_1, FEB_29)
        self.assertEqual(len(feb), 29)
        self.assertBalances(feb[0], 900, 900)
        self.assertBalances(feb[27], 900, 800)
        self.assertBalances(feb[28], 800, 800)

    def test_monthly_expense_day_31_skips_short_months(self):
        """Day 31 does not roll over into shorter months"""
        bill = Expense("1", "Bill", 50, Recurrence.monthly(31))
        budget = make_budget(expenses=[bill], history=[(FEB_1, 1000)])

        forecast = generate_forecast(budget, FEB_1, date(2024, 4, 30))
        charged = [e.date for e in forecast if e.expenses]
        self.assertEqual(charged, [date(2024, 3, 31)])
        self.assertEqual(forecast[-1].closing_balance, 950)

    def test_yearly_expense(self):
        insurance = Expense("1", "Insurance", 100, Recurrence.yearly(1, 28))
        budget = make_budget(expenses=[insurance])

        jan = generate_forecast(budget, JAN_1, JAN_31)
        self.assertBalances(jan[27], 1000, 900)

        feb = generate_forecast(budget, FEB_1, FEB_29)
        self.assertEqual(len(feb), 29)
        self.assertBalances(feb[-1], 900, 900)

        self.assertFalse(expense_occurs_on(insurance, date(2024, 2, 28)))
        self.assertTrue(expense_occurs_on(insurance, date(2025, 1, 28)))

    def test_monthly_income(self):
        pay = Income("1", "Paycheck", 500, 0, 26)
        budget = make_budget(incomes=[pay])

        jan = generate_forecast(budget, JAN_1, JAN_31)
        # Jan 26 is a Friday
        self.assertBalances(jan[25], 1000, 1500)
        self.assertBalances(jan[26], 1500, 1500)
        self.assertTrue(jan[25].is_payday)
        self.assertEqual(jan[25].total_expense_cost, -500)

        feb = generate_forecast(budget, FEB_1, FEB_29)
        self.assertBalances(feb[0], 1500, 1500)
        # Feb 26 is a Monday
        self.assertBalances(feb[25], 1500, 2000)

    def test_income_retained_amount(self):
        pay = Income("1", "Paycheck", 500, 120, 26)
        jan = generate_forecast(make_budget(incomes=[pay]), JAN_1, JAN_31)
        self.assertBalances(jan[25], 1000, 1380)
        self.assertEqual(jan[25].incomes[0].total_retained, 120)
        self.assertEqual(jan[25].incomes[0].net, 380)

    def test_income_backdated_for_weekends_and_month_length(self):
        """Jan 28 2024 is a Sunday so that payday moves to Friday the 26th"""
        incomes = [
            Income("1", "Paycheck1", 500, 0, 31),
            Income("1", "Paycheck2", 200, 0, 28),
        ]
        budget = make_budget(incomes=incomes)

        jan = generate_forecast(budget, JAN_1, JAN_31)
        self.assertBalances(jan[25], 1000, 1200)
        self.assertEqual([i.name for i in jan[25].incomes], ["Paycheck2"])
        self.assertBalances(jan[30], 1200, 1700)

        feb = generate_forecast(budget, FEB_1, FEB_29)
        self.assertBalances(feb[0], 1700, 1700)
        # Feb 28 is a Wednesday and the 31st clamps to Thursday the 29th
        self.assertBalances(feb[27], 1700, 1900)
        self.assertBalances(feb[28], 1900, 2400)

    def test_resolve_payday(self):
        """Rollback stops at the first of the month"""
        end_of_june = Income("1", "Pay", 1, 0, 30)
        self.assertEqual(resolve_payday(end_of_june, 2024, 6), date(2024, 6, 28))
        self.assertEqual(resolve_payday(end_of_june, 2024, 2), date(2024, 2, 29))
        self.assertEqual(resolve_payday(end_of_june, 2023, 2), date(2023, 2, 28))

        # June 1 2024 is a Saturday
        first = Income("2", "Pay", 1, 0, 1)
        self.assertEqual(resolve_payday(first, 2024, 6), date(2024, 6, 1))

    def test_get_incomes_only_on_payday(self):
        pay = Income("1", "Pay", 100, 0, 15)
        days = list(iter_days(JAN_1, date(2024, 3, 31)))
        self.assertEqual([o.date for o in get_incomes([pay], days)],
                         [date(2024, 1, 15), date(2024, 2, 15), date(2024, 3, 15)])

    def test_manual_override(self):
        """A snapshot forces that day's close and seeds the next day"""
        coffee = Expense("1", "Coffee", 10, Recurrence.weekly(2))
        budget = make_budget(expenses=[coffee], history=[(JAN_1, 1000), (date(2024, 1, 9), 500)])

        forecast = generate_forecast(budget, JAN_1, JAN_31)
        jan_9 = forecast[8]
        self.assertEqual(jan_9.type, "manual")
        self.assertBalances(jan_9, 990, 500)
        self.assertEqual(jan_9.total_expense_cost, 10)
        self.assertBalances(forecast[9], 500, 500)
        self.assertBalances(forecast[15], 500, 490)

    def test_anchor_before_interval(self):
        """Recurring items between the anchor and the start are folded in"""
        rent = Expense("1", "Rent", 100, Recurrence.monthly(28))
        budget = make_budget(expenses=[rent])

        forecast = generate_forecast(budget, date(2024, 3, 1), date(2024, 3, 5))
        self.assertEqual(forecast[0].date, date(2024, 3, 1))
        self.assertBalances(forecast[0], 800, 800)

    def test_anchor_is_latest_snapshot_on_or_before_start(self):
        history = [BalanceSnapshot(JAN_1, 1000), BalanceSnapshot(date(2024, 1, 20), 300),
                   BalanceSnapshot(date(2024, 1, 10), 700)]
        self.assertEqual(find_anchor(history, date(2024, 1, 15)).balance, 700)
        self.assertEqual(find_anchor(history, date(2024, 1, 10)).balance, 700)
        self.assertIsNone(find_anchor(history, date(2023, 12, 31)))

    def test_snapshot_after_start_without_anchor(self):
        """No earlier snapshot: start from zero until the later snapshot resets"""
        budget = make_budget(history=[(date(2024, 1, 5), 250)])
        forecast = generate_forecast(budget, JAN_1, date(2024, 1, 7))

        self.assertBalances(forecast[0], 0, 0)
        self.assertBalances(forecast[4], 0, 250)
        self.assertEqual(forecast[4].type, "manual")
        self.assertBalances(forecast[6], 250, 250)

    def test_single_day_interval(self):
        forecast = generate_forecast(make_budget(), date(2024, 1, 10), date(2024, 1, 10))
        self.assertEqual(len(forecast), 1)
        self.assertBalances(forecast[0], 1000, 1000)

    def test_day_coverage(self):
        budget = make_budget(expenses=[Expense("1", "Gym", 30, Recurrence.weekly(5))])
        for start, end in [(JAN_1, JAN_31), (FEB_1, FEB_29), (date(2023, 12, 15), date(2024, 3, 1))]:
            forecast = generate_forecast(budget, start, end)
            self.assertEqual(len(forecast), (end - start).days + 1)
            self.assertEqual(forecast[0].date, start)
            self.assertEqual(forecast[-1].date, end)

    def test_datetime_bounds_are_truncated(self):
        forecast = generate_forecast(make_budget(), datetime(2024, 1, 1, 15, 30), datetime(2024, 1, 2, 9))
        self.assertEqual([e.date for e in forecast], [JAN_1, date(2024, 1, 2)])

    def test_invalid_interval(self):
        with self.assertRaises(InvalidInterval):
            generate_forecast(make_budget(), JAN_31, JAN_1)
        self.assertTrue(issubclass(InvalidInterval, ValueError))

    def test_unknown_recurrence_is_ignored(self):
        budget = make_budget(expenses=[
            Expense("1", "Broken", 999, Recurrence("fortnightly", day_of_month=2)),
            Expense("2", "Coffee", 10, Recurrence.weekly(2)),
        ])
        forecast = generate_forecast(budget, JAN_1, date(2024, 1, 7))
        self.assertEqual(forecast[-1].closing_balance, 990)
        self.assertEqual([e.label for e in forecast[1].expenses], ["Coffee"])

    def test_forecast_is_pure(self):
        budget = make_budget(
            expenses=[Expense("1", "Rent", 100, Recurrence.monthly(28))],
            incomes=[Income("1", "Pay", 500, 50, 31)],
        )
        before = budget_to_dict(budget)
        first = generate_forecast(budget, FEB_1, FEB_29)
        second = generate_forecast(budget, FEB_1, FEB_29)
        self.assertEqual(first, second)
        self.assertEqual(budget_to_dict(budget), before)


class TestBudgetMutations(unittest.TestCase):
    def setUp(self):
        self.state = BudgetState()

    def test_add_or_update_expense(self):
        add_or_update_expense(self.state, Expense("a", "Rent", 100, Recurrence.monthly(1)))
        add_or_update_expense(self.state, Expense("b", "Gym", 30, Recurrence.weekly(1)))
        self.assertEqual(len(self.state.expenses), 2)

        add_or_update_expense(self.state, Expense("a", "Rent (new)", 120, Recurrence.monthly(2)))
        self.assertEqual(len(self.state.expenses), 2)
        self.assertEqual(self.state.expenses[0].label, "Rent (new)")
        self.assertEqual(self.state.expenses[0].amount, 120)
        self.assertEqual(self.state.expenses[0].recurring, Recurrence.monthly(2))

    def test_remove_expense(self):
        add_or_update_expense(self.state, Expense("a", "Rent", 100, Recurrence.monthly(1)))
        self.assertTrue(remove_expense(self.state, "a"))
        self.assertFalse(remove_expense(self.state, "a"))
        self.assertEqual(self.state.expenses, [])

    def test_add_or_update_income(self):
        add_or_update_income(self.state, Income("p", "Pay", 1000, 200, 25))
        add_or_update_income(self.state, Income("p", "Salary", 1100, 250, 28))
        self.assertEqual(self.state.incomes, [Income("p", "Salary", 1100, 250, 28)])

        self.assertTrue(remove_income(self.state, "p"))
        self.assertFalse(remove_income(self.state, "missing"))

    def test_clear_all(self):
        add_or_update_expense(self.state, Expense("a", "Rent", 100, Recurrence.monthly(1)))
        add_or_update_income(self.state, Income("p", "Pay", 1000, 0, 25))
        set_manual_balance(self.state, JAN_1, 10)
        clear_all(self.state)
        self.assertEqual(self.state, BudgetState())

    def test_set_manual_balance(self):
        set_manual_balance(self.state, JAN_1, 1000)
        set_manual_balance(self.state, date(2024, 2, 1), 1500)
        self.assertEqual([s.date for s in self.state.balance_history], [date(2024, 2, 1), JAN_1])

        # Same date replaces
        set_manual_balance(self.state, JAN_1, 1200)
        self.assertEqual(len(self.state.balance_history), 2)
        self.assertEqual(self.state.balance_history[1].balance, 1200)

        # None removes, unknown date is a no-op
        set_manual_balance(self.state, JAN_1, None)
        set_manual_balance(self.state, date(2020, 1, 1), None)
        self.assertEqual(self.state.balance_history, [BalanceSnapshot(date(2024, 2, 1), 1500)])

    def test_balance_history_cap(self):
        """An 11th distinct date evicts the oldest"""
        for offset in range(10):
            set_manual_balance(self.state, JAN_1 + timedelta(days=offset), offset)
        self.assertEqual(len(self.state.balance_history), 10)

        set_manual_balance(self.state, JAN_1 + timedelta(days=10), 10)
        self.assertEqual(len(self.state.balance_history), 10)
        self.assertNotIn(JAN_1, [s.date for s in self.state.balance_history])
        self.assertEqual(self.state.balance_history[0].date, date(2024, 1, 11))
        self.assertEqual(self.state.balance_history[-1].date, date(2024, 1, 2))

        # Older than everything kept: inserted then pruned straight away
        set_manual_balance(self.state, date(2023, 1, 1), 5)
        self.assertNotIn(date(2023, 1, 1), [s.date for s in self.state.balance_history])


class TestStorage(unittest.TestCase):
    def setUp(self):
        self.store = MemoryStore()
        self.repo = BudgetRepository(self.store)

    def test_missing_state_is_empty(self):
        self.assertEqual(self.repo.state, BudgetState())
        self.assertIsNone(self.store.get("budgetInfo"))

    def test_persists_after_every_mutation(self):
        self.repo.add_or_update_expense(Expense("a", "Rent", 100, Recurrence.monthly(1)))
        saved = self.store.get("budgetInfo")
        self.assertEqual(saved["recurringExpenses"][0]["recurring"], {"type": "monthly", "dayOfMonth": 1})

        self.repo.set_manual_balance(JAN_1, 1000)
        self.assertEqual(self.store.get("budgetInfo")["accountBalanceHistory"],
                         [{"date": "2024-01-01", "balance": 1000}])

        self.repo.clear_all()
        self.assertEqual(self.store.get("budgetInfo"),
                         {"recurringExpenses": [], "incomes": [], "accountBalanceHistory": []})

    def test_reload_round_trip(self):
        self.repo.add_or_update_expense(Expense("a", "Tax", 300, Recurrence.yearly(4, 5)))
        self.repo.add_or_update_income(Income("p", "Pay", 1000, 100, 25))
        self.repo.set_manual_balance(JAN_1, 50.5)

        reloaded = BudgetRepository(self.store)
        self.assertEqual(reloaded.state, self.repo.state)

    def test_generated_ids(self):
        first = self.repo.add_income("Pay", 1000, 25)
        second = self.repo.add_income("Pay", 1000, 25)
        self.assertNotEqual(first.id, second.id)
        self.assertEqual(len(self.repo.state.incomes), 2)

        expense = self.repo.add_expense("Rent", 100, Recurrence.monthly(1), expense_id="rent")
        self.assertEqual(expense.id, "rent")

    def test_snapshot_is_detached(self):
        self.repo.add_or_update_expense(Expense("a", "Rent", 100, Recurrence.monthly(1)))
        snapshot = self.repo.snapshot()
        snapshot.expenses[0].amount = 1
        self.assertEqual(self.repo.state.expenses[0].amount, 100)

    def test_repository_forecast(self):
        self.repo.set_manual_balance(JAN_1, 1000)
        self.repo.add_or_update_expense(Expense("a", "Rent", 100, Recurrence.monthly(28)))
        forecast = self.repo.forecast(JAN_1, JAN_31)
        self.assertEqual(forecast[-1].closing_balance, 900)

    def test_legacy_migration(self):
        legacy = {
            "recurring_expenses": [
                {"id": "e", "label": "Rent", "amount": 100, "recurring": {"type": "monthly", "dayOfMonth": 1}}
            ],
            "account_balance_history": [{"date": "2024-01-01", "balance": 1000}],
            "incomes": [{"id": "i", "name": "Pay", "total_in": 500, "total_retained": 50, "dayOfMonth": 26}],
        }
        store = MemoryStore({"budget_info": legacy})
        repo = BudgetRepository(store)

        self.assertEqual(repo.state.incomes, [Income("i", "Pay", 500, 50, 26)])
        self.assertEqual(repo.state.expenses[0].recurring, Recurrence.monthly(1))
        self.assertEqual(repo.state.balance_history, [BalanceSnapshot(JAN_1, 1000)])
        self.assertEqual(store.get("budgetInfo")["incomes"][0]["totalIn"], 500)

        migrated = migrate_budget_info(legacy)
        self.assertEqual(migrated["incomes"][0]["totalRetained"], 50)

    def test_current_key_wins_over_legacy(self):
        store = MemoryStore({
            "budget_info": {"incomes": [{"id": "old", "name": "Old", "total_in": 1, "total_retained": 0,
                                         "dayOfMonth": 1}]},
            "budgetInfo": {"incomes": [{"id": "new", "name": "New", "totalIn": 2, "totalRetained": 0,
                                        "dayOfMonth": 2}]},
        })
        repo = BudgetRepository(store)
        self.assertEqual([i.id for i in repo.state.incomes], ["new"])

    def test_invalid_records_are_skipped(self):
        data = {
            "recurringExpenses": [{"id": "broken"}],
            "incomes": [{"id": "i", "name": "Pay", "totalIn": 10, "totalRetained": 0, "dayOfMonth": 3}],
            "accountBalanceHistory": [{"date": "not a date", "balance": 1}],
        }
        with self.assertLogs("cashflow.storage", level="WARNING") as logs:
            state = budget_from_dict(data)
        self.assertEqual(state.expenses, [])
        self.assertEqual(len(state.incomes), 1)
        self.assertEqual(state.balance_history, [])
        self.assertEqual(len(logs.records), 2)

    def test_wrongly_typed_records_are_skipped(self):
        """Null, non-numeric and out-of-range fields drop the record"""
        data = {
            "recurringExpenses": [
                {"id": "s", "label": "Str", "amount": "100", "recurring": {"type": "monthly", "dayOfMonth": "5"}},
                {"id": "n", "label": "Null", "amount": None, "recurring": {"type": "monthly", "dayOfMonth": 1}},
                {"id": "w", "label": "Week", "amount": 5, "recurring": {"type": "weekly", "dayOfWeek": 9}},
                {"id": "y", "label": "Year", "amount": 5, "recurring": {"type": "yearly", "month": 2.5,
                                                                        "dayOfMonth": 1}},
            ],
            "incomes": [
                {"id": "i", "name": "Pay", "totalIn": None, "dayOfMonth": 26},
                {"id": "j", "name": "Pay", "totalIn": "lots", "dayOfMonth": 26},
                {"id": "k", "name": "Pay", "totalIn": 100, "dayOfMonth": None},
                {"id": "m", "name": "Pay", "totalIn": 100, "dayOfMonth": 32},
            ],
            "accountBalanceHistory": [{"date": "2024-01-01", "balance": None}],
        }
        with self.assertLogs("cashflow.storage", level="WARNING") as logs:
            state = budget_from_dict(data)

        self.assertEqual(state.expenses, [Expense("s", "Str", 100.0, Recurrence.monthly(5))])
        self.assertEqual(state.incomes, [])
        self.assertEqual(state.balance_history, [])
        self.assertEqual(len(logs.records), 8)

        forecast = generate_forecast(state, JAN_1, date(2024, 1, 5))
        self.assertEqual(forecast[-1].closing_balance, -100)

    def test_legacy_income_without_amount_is_skipped(self):
        store = MemoryStore({"budget_info": {
            "incomes": [{"id": "i", "name": "Pay", "dayOfMonth": 26}],
            "account_balance_history": [{"date": "2024-01-01", "balance": 1000}],
        }})
        with self.assertLogs("cashflow.storage", level="WARNING"):
            repo = BudgetRepository(store)

        self.assertEqual(repo.state.incomes, [])
        forecast = repo.forecast(JAN_1, JAN_31)
        self.assertEqual(forecast[-1].closing_balance, 1000)

    def test_failed_save_rolls_back(self):
        """A mutation whose save fails leaves no trace in memory or in the store"""
        store = FailingStore()
        repo = BudgetRepository(store)
        repo.add_or_update_expense(Expense("a", "Rent", 100, Recurrence.monthly(1)))
        repo.set_manual_balance(JAN_1, 1000)
        before_state = repo.snapshot()
        before_saved = store.get("budgetInfo")

        store.fail = True
        with self.assertRaises(StorageError):
            repo.add_or_update_expense(Expense("b", "Gym", 30, Recurrence.weekly(1)))
        with self.assertRaises(StorageError):
            repo.add_or_update_expense(Expense("a", "Rent", 999, Recurrence.monthly(2)))
        with self.assertRaises(StorageError):
            repo.set_manual_balance(JAN_1, None)
        with self.assertRaises(StorageError):
            repo.clear_all()

        self.assertEqual(repo.state, before_state)
        self.assertEqual(store.get("budgetInfo"), before_saved)
        self.assertEqual(repo.forecast(JAN_1, JAN_1)[0].closing_balance, 1000)

        store.fail = False
        repo.remove_expense("a")
        self.assertEqual(store.get("budgetInfo")["recurringExpenses"], [])

    def test_unknown_recurrence_survives_storage(self):
        state = BudgetState(expenses=[Expense("x", "Odd", 5, Recurrence("fortnightly", day_of_month=3))])
        self.assertEqual(budget_from_dict(budget_to_dict(state)), state)

    def test_json_file_store(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "nested" / "budget-store.json"
            store = JsonFileStore(path)
            self.assertIsNone(store.get("budgetInfo"))
            self.assertFalse(path.exists())

            repo = BudgetRepository(store)
            repo.set_manual_balance(JAN_1, 1000)
            self.assertEqual(json.loads(path.read_text())["budgetInfo"]["accountBalanceHistory"][0]["balance"], 1000)
            self.assertEqual(BudgetRepository(JsonFileStore(path)).state.balance_history[0].balance, 1000)

    def test_corrupt_json_file(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "budget-store.json"
            path.write_text("{not json")
            with self.assertRaises(StorageError):
                BudgetRepository(JsonFileStore(path))


    def test_json_store_replaces_file_atomically(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "budget-store.json"
            store = JsonFileStore(path)
            store.set("budgetInfo", {"incomes": []})
            self.assertEqual([p.name for p in Path(tmp).iterdir()], ["budget-store.json"])

            with patch("cashflow.storage.os.replace", side_effect=OSError("disk full")):
                with self.assertRaises(StorageError):
                    store.set("budgetInfo", {"incomes": [{"id": "x"}]})
            self.assertEqual(json.loads(path.read_text()), {"budgetInfo": {"incomes": []}})


class TestCLI(unittest.TestCase):
    def setUp(self):
        self.out = io.StringIO()
        self.repo = BudgetRepository(MemoryStore())
        self.cli = CashflowCLI(repository=self.repo, stdout=self.out)

    def test_expense_commands(self):
        self.cli.onecmd("expense add 10 weekly 2 --id coffee --label Morning coffee")
        self.cli.onecmd("expense add 300 yearly 4 5 --label Tax")
        self.assertEqual(len(self.repo.state.expenses), 2)
        self.assertEqual(self.repo.state.expenses[0].label, "Morning coffee")
        self.assertEqual(self.repo.state.expenses[1].recurring, Recurrence.yearly(4, 5))

        self.cli.onecmd("expense list")
        self.assertIn("every Tuesday", self.out.getvalue())
        self.assertIn("yearly on April 5th", self.out.getvalue())

        self.cli.onecmd("expense remove coffee")
        self.assertEqual(len(self.repo.state.expenses), 1)

    def test_invalid_input(self):
        self.cli.onecmd("expense add 10 weekly 9")
        self.cli.onecmd("income add lots 3")
        self.cli.onecmd("forecast 2024-02-01 2024-01-01")
        self.assertEqual(self.out.getvalue().count("Invalid input"), 3)
        self.assertEqual(self.repo.state, BudgetState())

    def test_income_and_balance_commands(self):
        self.cli.onecmd("income add 500 28 --retained 100 --id pay --name Salary")
        self.assertEqual(self.repo.state.incomes, [Income("pay", "Salary", 500, 100, 28)])

        self.cli.onecmd("balance 2024-01-01 1000")
        self.cli.onecmd("balance 2024-01-05 900")
        self.cli.onecmd("balance 2024-01-05 clear")
        self.assertEqual(self.repo.state.balance_history, [BalanceSnapshot(JAN_1, 1000)])

    def test_forecast_command(self):
        self.cli.onecmd("balance 2024-01-01 1000")
        self.cli.onecmd("income add 200 28 --name Pay")
        self.cli.onecmd("forecast 2024-01-01 2024-01-31")
        lines = [line for line in self.out.getvalue().splitlines() if line[3:13].startswith("2024-")]
        self.assertEqual(len(lines), 31)
        self.assertTrue(lines[0].startswith("* "))
        self.assertTrue(lines[25].startswith(" $"))
        self.assertIn("1,200.00", lines[25])

    def test_clear_and_exit(self):
        self.cli.onecmd("expense add 10 monthly 1")
        self.cli.onecmd("clear")
        self.assertEqual(self.repo.state, BudgetState())
        self.assertTrue(self.cli.onecmd("exit"))

    def test_list_with_out_of_range_rule(self):
        self.repo.add_or_update_expense(Expense("x", "Odd", 5, Recurrence.weekly(9)))
        self.cli.onecmd("expense list")
        self.assertIn("unknown rule 'weekly'", self.out.getvalue())

    def test_failed_save_is_reported(self):
        store = FailingStore()
        cli = CashflowCLI(repository=BudgetRepository(store), stdout=self.out)
        store.fail = True
        cli.onecmd("expense add 10 monthly 1 --label Rent")
        store.fail = False
        cli.onecmd("expense list")
        self.assertIn("Error: disk full", self.out.getvalue())
        self.assertIn("No expenses defined", self.out.getvalue())

    def test_format_ordinal(self):
        self.assertEqual([format_ordinal(n) for n in (1, 2, 3, 4, 11, 12, 13, 21, 22, 23, 31)],
                         ["1st", "2nd", "3rd", "4th", "11th", "12th", "13th", "21st", "22nd", "23rd", "31st"])


if __name__ == "__main__":
    unittest.main()
