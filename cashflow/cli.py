import calendar
import cmd
import shlex
from datetime import date
from typing import Optional
from dateutil.relativedelta import relativedelta

from cashflow.models import Recurrence
from cashflow.storage import BudgetRepository, StorageError


def format_ordinal(num: int) -> str:
    """1 -> 1st, 2 -> 2nd, 11 -> 11th, 23 -> 23rd"""
    if 10 <= num % 100 <= 20:
        suffix = "th"
    else:
        suffix = {1: "st", 2: "nd", 3: "rd"}.get(num % 10, "th")
    return f"{num}{suffix}"


def _in_range(value, low: int, high: int) -> bool:
    return isinstance(value, int) and low <= value <= high


def describe_recurrence(rule: Recurrence) -> str:
    if rule.type == "monthly" and _in_range(rule.day_of_month, 1, 31):
        return f"monthly on the {format_ordinal(rule.day_of_month)}"
    elif rule.type == "weekly" and _in_range(rule.day_of_week, 1, 7):
        return f"every {calendar.day_name[rule.day_of_week - 1]}"
    elif rule.type == "yearly" and _in_range(rule.month, 1, 12) and _in_range(rule.day_of_month, 1, 31):
        return f"yearly on {calendar.month_name[rule.month]} {format_ordinal(rule.day_of_month)}"
    return f"unknown rule '{rule.type}'"


class CashflowCLI(cmd.Cmd):
    prompt = "(cashflow) "

    def __init__(self, repository: Optional[BudgetRepository] = None, stdout=None):
        super().__init__(stdout=stdout)
        self.repository = repository if repository is not None else BudgetRepository()
        self.intro = "Welcome to Cashflow. Type 'help' for commands."

    def _print(self, text=""):
        print(text, file=self.stdout)

    # ===== BUDGET COMMANDS =====
    def do_expense(self, arg):
        """Manage expenses:
        expense add <amount> monthly <day> [--id ID] [--label text]
        expense add <amount> weekly <weekday 1-7> [--id ID] [--label text]
        expense add <amount> yearly <month> <day> [--id ID] [--label text]
        expense remove <id>
        expense list"""
        try:
            args = shlex.split(arg)
        except ValueError as e:
            self._print(f"Invalid input: {e}")
            return
        if not args:
            self.do_help("expense")
            return

        try:
            if args[0] == "add":
                parsed = self._parse_expense_args(args[1:])
                expense = self.repository.add_expense(**parsed)
                self._print(f"✓ Saved expense {expense.id}: {expense.label or '(no label)'} "
                            f"${expense.amount:,.2f} {describe_recurrence(expense.recurring)}")
            elif args[0] == "remove" and len(args) > 1:
                if self.repository.remove_expense(args[1]):
                    self._print(f"✓ Removed expense {args[1]}")
                else:
                    self._print(f"Expense not found: {args[1]}")
            elif args[0] == "list":
                expenses = self.repository.snapshot().expenses
                if not expenses:
                    self._print("No expenses defined")
                    return
                self._print("\nExpenses:")
                for e in expenses:
                    self._print(f"  [{e.id}] {e.label}: ${e.amount:,.2f} {describe_recurrence(e.recurring)}")
            else:
                self.do_help("expense")
        except ValueError as e:
            self._print(f"Invalid input: {e}")
        except StorageError as e:
            self._print(f"Error: {e}")

    def do_income(self, arg):
        """Manage incomes:
        income add <total_in> <day_of_month> [--retained X] [--id ID] [--name text]
        income remove <id>
        income list"""
        try:
            args = shlex.split(arg)
        except ValueError as e:
            self._print(f"Invalid input: {e}")
            return
        if not args:
            self.do_help("income")
            return

        try:
            if args[0] == "add":
                parsed = self._parse_income_args(args[1:])
                income = self.repository.add_income(**parsed)
                self._print(f"✓ Saved income {income.id}: {income.name or '(no name)'} "
                            f"${income.net:,.2f} net on the {format_ordinal(income.day_of_month)}")
            elif args[0] == "remove" and len(args) > 1:
                if self.repository.remove_income(args[1]):
                    self._print(f"✓ Removed income {args[1]}")
                else:
                    self._print(f"Income not found: {args[1]}")
            elif args[0] == "list":
                incomes = self.repository.snapshot().incomes
                if not incomes:
                    self._print("No incomes defined")
                    return
                self._print("\nIncomes:")
                for i in incomes:
                    self._print(f"  [{i.id}] {i.name}: ${i.total_in:,.2f} in, ${i.total_retained:,.2f} retained, "
                                f"paid on the {format_ordinal(i.day_of_month)}")
            else:
                self.do_help("income")
        except ValueError as e:
            self._print(f"Invalid input: {e}")
        except StorageError as e:
            self._print(f"Error: {e}")

    def do_balance(self, arg):
        """Record a manual balance: balance <YYYY-MM-DD> <amount|clear>
        With no arguments, list recorded balances."""
        args = arg.split()
        try:
            if not args:
                history = self.repository.snapshot().balance_history
                if not history:
                    self._print("No manual balances recorded")
                    return
                self._print("\nManual balances:")
                for s in history:
                    self._print(f"  {s.date.isoformat()}: ${s.balance:,.2f}")
                return

            if len(args) != 2:
                raise ValueError("Usage: balance <YYYY-MM-DD> <amount|clear>")
            day = self._parse_date(args[0])
            if args[1] == "clear":
                self.repository.set_manual_balance(day, None)
                self._print(f"✓ Cleared balance on {day}")
            else:
                amount = float(args[1])
                self.repository.set_manual_balance(day, amount)
                self._print(f"✓ Balance on {day} set to ${amount:,.2f}")
        except ValueError as e:
            self._print(f"Invalid input: {e}")
        except StorageError as e:
            self._print(f"Error: {e}")

    def do_forecast(self, arg):
        """Print the daily forecast: forecast [start=today] [end=start+1 month]"""
        args = arg.split()
        try:
            start = self._parse_date(args[0]) if args else date.today()
            end = self._parse_date(args[1]) if len(args) > 1 else start + relativedelta(months=1)
            ledger = self.repository.forecast(start, end)
        except ValueError as e:
            self._print(f"Invalid input: {e}")
            return

        self._print(f"\n{' Forecast ' + start.isoformat() + ' to ' + end.isoformat() + ' ':-^60}")
        for entry in ledger:
            marker = ("*" if entry.type == "manual" else " ") + ("$" if entry.is_payday else " ")
            line = f"{marker} {entry.date.isoformat()} {entry.closing_balance:>12,.2f}"
            items = [f"-{e.label} {e.amount:,.2f}" for e in entry.expenses]
            items += [f"+{i.name} {i.net:,.2f}" for i in entry.incomes]
            if items:
                line += "  " + ", ".join(items)
            self._print(line)
        self._print("\n(* manual balance, $ payday)")

    def do_clear(self, arg):
        """Remove all expenses, incomes and balances"""
        try:
            self.repository.clear_all()
        except StorageError as e:
            self._print(f"Error: {e}")
            return
        self._print("✓ Cleared all budget data")

    # ===== UTILITIES =====
    def do_exit(self, arg):
        """Exit the program"""
        self._print("Goodbye!")
        return True

    # ===== HELPERS =====
    @staticmethod
    def _parse_date(value: str) -> date:
        try:
            return date.fromisoformat(value)
        except ValueError:
            raise ValueError("Date must be in YYYY-MM-DD format")

    @staticmethod
    def _parse_day(value: str, low: int, high: int, name: str) -> int:
        number = int(value)
        if not low <= number <= high:
            raise ValueError(f"{name} must be between {low} and {high}")
        return number

    def _parse_expense_args(self, args):
        if len(args) < 3:
            raise ValueError("Missing required arguments (amount, rule and day)")

        amount = float(args[0])
        rule = args[1].lower()
        if rule == "monthly":
            recurring = Recurrence.monthly(self._parse_day(args[2], 1, 31, "Day of month"))
            i = 3
        elif rule == "weekly":
            recurring = Recurrence.weekly(self._parse_day(args[2], 1, 7, "Weekday"))
            i = 3
        elif rule == "yearly":
            if len(args) < 4:
                raise ValueError("Yearly expenses need a month and a day")
            recurring = Recurrence.yearly(
                self._parse_day(args[2], 1, 12, "Month"),
                self._parse_day(args[3], 1, 31, "Day of month"),
            )
            i = 4
        else:
            raise ValueError("Rule must be monthly, weekly or yearly")

        result = {'amount': amount, 'recurring': recurring, 'label': "", 'expense_id': None}
        while i < len(args):
            if args[i] == '--id' and i + 1 < len(args):
                result['expense_id'] = args[i + 1]
                i += 2
            elif args[i] == '--label':
                result['label'] = ' '.join(args[i + 1:])
                break
            else:
                raise ValueError(f"Unexpected argument: {args[i]}")
        return result

    def _parse_income_args(self, args):
        if len(args) < 2:
            raise ValueError("Missing required arguments (total_in and day_of_month)")

        result = {
            'total_in': float(args[0]),
            'day_of_month': self._parse_day(args[1], 1, 31, "Day of month"),
            'total_retained': 0.0,
            'name': "",
            'income_id': None,
        }
        i = 2
        while i < len(args):
            if args[i] == '--retained' and i + 1 < len(args):
                result['total_retained'] = float(args[i + 1])
                i += 2
            elif args[i] == '--id' and i + 1 < len(args):
                result['income_id'] = args[i + 1]
                i += 2
            elif args[i] == '--name':
                result['name'] = ' '.join(args[i + 1:])
                break
            else:
                raise ValueError(f"Unexpected argument: {args[i]}")
        return result
