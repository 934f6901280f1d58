"""
Shared fixtures.

Every test gets its own file-backed SQLite database under tmp_path and a
fixed clock. Exchange rates come from in-memory fakes; no test touches
the network.
"""

import datetime as dt
from decimal import Decimal
from types import SimpleNamespace
from typing import Optional

import pytest
import pytest_asyncio

from ledger_engine.config import DatabaseSettings, LedgerSettings
from ledger_engine.exceptions import ExternalServiceUnavailableError
from ledger_engine.models.ledger import AccountType
from ledger_engine.rates.interface import ExchangeRateSource
from ledger_engine.services.balance_ledger import BalanceLedger
from ledger_engine.services.budget_alerts import BudgetAlertEvaluator
from ledger_engine.storage.database import (
    create_database_engine,
    create_session_factory,
    init_db,
    unit_of_work,
)
from ledger_engine.storage.tables import AccountRow, CategoryRow, UserRow


TODAY = dt.date(2024, 6, 15)


def fixed_today() -> dt.date:
    return TODAY


class FakeRateSource(ExchangeRateSource):
    """
    Rates by date, with a default for unknown dates.

    Dates listed in ``fail_on`` raise ExternalServiceUnavailableError.
    """

    def __init__(
        self,
        rates: Optional[dict[dt.date, Decimal]] = None,
        default: Decimal = Decimal("2"),
        fail_on: Optional[set[dt.date]] = None,
    ):
        self.rates = rates or {}
        self.default = default
        self.fail_on = fail_on or set()
        self.calls: list[tuple[dt.date, str, str]] = []

    async def get_rate(self, on_date: dt.date, from_currency: str, to_currency: str) -> Decimal:
        self.calls.append((on_date, from_currency, to_currency))
        if on_date in self.fail_on:
            raise ExternalServiceUnavailableError("fake_rates", f"no rate for {on_date}")
        return self.rates.get(on_date, self.default)


@pytest_asyncio.fixture
async def db_engine(tmp_path):
    engine = create_database_engine(
        DatabaseSettings(url=f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}")
    )
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return create_session_factory(db_engine)


@pytest.fixture
def ledger_settings():
    return LedgerSettings(
        default_currency="USD",
        alert_thresholds="75,90,100",
        verify_invariant=True,
    )


@pytest.fixture
def evaluator():
    return BudgetAlertEvaluator()


@pytest.fixture
def ledger(ledger_settings, evaluator):
    ledger = BalanceLedger(ledger_settings)
    ledger.subscribe(evaluator.handle_ledger_change)
    return ledger


@pytest_asyncio.fixture
async def seeded(session_factory):
    """One USD user with a category and a checking account, plus a stranger."""
    async with unit_of_work(session_factory) as session:
        user = UserRow(email="owner@example.com", display_name="Owner", currency="USD")
        stranger = UserRow(email="stranger@example.com", currency="USD")
        session.add_all([user, stranger])
        await session.flush()

        groceries = CategoryRow(user_id=user.id, name="Groceries")
        salary = CategoryRow(user_id=None, name="Salary")
        session.add_all([groceries, salary])
        await session.flush()

        account = AccountRow(
            user_id=user.id,
            name="Checking",
            type=AccountType.CHECKING,
            currency="USD",
            balance=Decimal("0.00"),
            is_active=True,
            is_manual=True,
        )
        savings = AccountRow(
            user_id=user.id,
            name="Savings",
            type=AccountType.SAVINGS,
            currency="USD",
            balance=Decimal("0.00"),
            is_active=True,
            is_manual=False,
        )
        session.add_all([account, savings])
        await session.flush()

        return SimpleNamespace(
            user_id=user.id,
            stranger_id=stranger.id,
            category_id=groceries.id,
            income_category_id=salary.id,
            account_id=account.id,
            savings_id=savings.id,
        )
