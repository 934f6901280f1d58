"""
Ledger services.

BalanceLedger is the only writer of transactions and balances; every other
service reaches balances through it.
"""

from ledger_engine.services.balance_ledger import BalanceLedger, LedgerListener
from ledger_engine.services.budget_alerts import BudgetAlertEvaluator
from ledger_engine.services.recurring_scheduler import RecurrenceScheduler
from ledger_engine.services.currency_conversion import CurrencyConversionEngine
from ledger_engine.services.accounts import AccountService
from ledger_engine.services.budgets import BudgetService
from ledger_engine.services.goals import GoalService
from ledger_engine.services.profiles import ProfileService

__all__ = [
    "BalanceLedger",
    "LedgerListener",
    "BudgetAlertEvaluator",
    "RecurrenceScheduler",
    "CurrencyConversionEngine",
    "AccountService",
    "BudgetService",
    "GoalService",
    "ProfileService",
]
