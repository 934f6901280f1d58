"""
Tests for CurrencyConversionEngine

A conversion either rewrites everything consistently or nothing at all.
"""

from datetime import date
from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from ledger_engine.audit import AuditLogger
from ledger_engine.exceptions import (
    ConflictError,
    ExternalServiceUnavailableError,
    ValidationError,
)
from ledger_engine.models.conversion import ConversionState, ConversionStatus
from ledger_engine.services import currency_conversion
from ledger_engine.services.currency_conversion import CurrencyConversionEngine
from ledger_engine.storage.database import unit_of_work
from ledger_engine.storage.queries import computed_balance
from ledger_engine.storage.tables import (
    AccountRow,
    BudgetRow,
    CurrencyConversionRunRow,
    GoalRow,
    TransactionRow,
    UserRow,
)
from ledger_engine.utils import utc_now

from tests.conftest import TODAY, FakeRateSource, fixed_today


JAN_10 = date(2024, 1, 10)
MAR_5 = date(2024, 3, 5)


@pytest.fixture
def rates():
    return FakeRateSource(
        rates={JAN_10: Decimal("0.9"), MAR_5: Decimal("0.8")},
        default=Decimal("0.5"),
    )


@pytest.fixture
def engine(session_factory, rates, ledger_settings):
    return CurrencyConversionEngine(
        session_factory,
        rates,
        settings=ledger_settings,
        audit_logger=AuditLogger(),
        today=fixed_today,
    )


@pytest_asyncio.fixture
async def dataset(session_factory, ledger, seeded):
    """Three transactions on three dates, a budget and a goal."""
    async with unit_of_work(session_factory) as session:
        for day, amount, category_id in [
            (JAN_10, Decimal("1000"), seeded.income_category_id),
            (MAR_5, Decimal("-200"), seeded.category_id),
            (TODAY, Decimal("-50"), seeded.category_id),
        ]:
            await ledger.create_transaction(
                session, seeded.user_id, seeded.account_id, day, amount, "Payee", category_id
            )
        session.add(BudgetRow(
            user_id=seeded.user_id,
            category_id=seeded.category_id,
            month="2024-06",
            amount=Decimal("100.00"),
            rollover=False,
        ))
        session.add(GoalRow(
            user_id=seeded.user_id,
            name="Holiday",
            target_amount=Decimal("1000.00"),
            current_amount=Decimal("100.00"),
        ))
    return seeded


async def _amounts(session_factory, user_id):
    async with session_factory() as session:
        return list((await session.execute(
            select(TransactionRow.amount)
            .where(TransactionRow.user_id == user_id)
            .order_by(TransactionRow.date)
        )).scalars())


async def _user_currency(session_factory, user_id):
    async with session_factory() as session:
        return (await session.get(UserRow, user_id)).currency


class TestConversion:

    async def test_converts_every_value(self, engine, session_factory, dataset):
        result = await engine.convert(dataset.user_id, "eur")

        assert result.from_currency == "USD"
        assert result.to_currency == "EUR"
        assert result.exchange_rate == Decimal("0.5")
        assert result.transactions_converted == 3
        assert result.accounts_converted == 2
        assert result.budgets_converted == 1
        assert result.goals_converted == 1

        assert await _amounts(session_factory, dataset.user_id) == [
            Decimal("900.00"),
            Decimal("-160.00"),
            Decimal("-25.00"),
        ]
        assert await _user_currency(session_factory, dataset.user_id) == "EUR"

        async with session_factory() as session:
            checking = await session.get(AccountRow, dataset.account_id)
            savings = await session.get(AccountRow, dataset.savings_id)
            budget = (await session.execute(select(BudgetRow))).scalar_one()
            goal = (await session.execute(select(GoalRow))).scalar_one()
            assert await computed_balance(session, dataset.account_id) == checking.balance

        assert checking.balance == Decimal("715.00")
        assert checking.currency == "EUR"
        assert checking.original_currency is None
        assert savings.original_currency == "USD"
        assert budget.amount == Decimal("50.00")
        assert goal.target_amount == Decimal("500.00")
        assert goal.current_amount == Decimal("50.00")

    async def test_one_rate_per_distinct_date(self, engine, session_factory, ledger, rates, dataset):
        async with unit_of_work(session_factory) as session:
            await ledger.create_transaction(
                session, dataset.user_id, dataset.account_id, JAN_10,
                Decimal("-1"), "Payee", dataset.category_id,
            )

        await engine.convert(dataset.user_id, "EUR")

        fetched = [call[0] for call in rates.calls]
        assert sorted(fetched) == [JAN_10, MAR_5, TODAY]

    async def test_future_dates_use_todays_rate(self, engine, session_factory, ledger, rates, seeded):
        async with unit_of_work(session_factory) as session:
            await ledger.create_transaction(
                session, seeded.user_id, seeded.account_id, date(2024, 7, 1),
                Decimal("-10"), "Payee", seeded.category_id,
            )

        await engine.convert(seeded.user_id, "EUR")

        assert [call[0] for call in rates.calls] == [TODAY]
        assert await _amounts(session_factory, seeded.user_id) == [Decimal("-5.00")]

    async def test_empty_dataset(self, engine, seeded):
        result = await engine.convert(seeded.user_id, "GBP")
        assert result.transactions_converted == 0
        assert result.accounts_converted == 2


class TestValidation:

    async def test_same_currency_rejected(self, engine, seeded):
        with pytest.raises(ValidationError):
            await engine.convert(seeded.user_id, "USD")
        assert await engine.get_history(seeded.user_id) == []

    async def test_unsupported_currency_rejected(self, engine, seeded):
        with pytest.raises(ValidationError):
            await engine.convert(seeded.user_id, "XYZ")


class TestAtomicity:

    async def test_rate_outage_changes_nothing(self, session_factory, ledger_settings, dataset):
        rates = FakeRateSource(default=Decimal("0.5"), fail_on={MAR_5})
        engine = CurrencyConversionEngine(
            session_factory, rates, settings=ledger_settings, today=fixed_today
        )

        with pytest.raises(ExternalServiceUnavailableError):
            await engine.convert(dataset.user_id, "EUR")

        assert await _amounts(session_factory, dataset.user_id) == [
            Decimal("1000.00"),
            Decimal("-200.00"),
            Decimal("-50.00"),
        ]
        assert await _user_currency(session_factory, dataset.user_id) == "USD"

        history = await engine.get_history(dataset.user_id)
        assert history[0].status == ConversionStatus.FAILED
        assert "2024-03-05" in history[0].error_message
        status = await engine.get_status(dataset.user_id)
        assert status.state == ConversionState.IDLE

    async def test_failure_mid_rewrite_rolls_back(self, engine, session_factory, dataset, monkeypatch):
        real_convert = currency_conversion.convert_amount
        calls = []

        def flaky_convert(amount, rate):
            calls.append(amount)
            if len(calls) == 2:
                raise RuntimeError("disk on fire")
            return real_convert(amount, rate)

        monkeypatch.setattr(currency_conversion, "convert_amount", flaky_convert)

        with pytest.raises(RuntimeError):
            await engine.convert(dataset.user_id, "EUR")

        assert await _amounts(session_factory, dataset.user_id) == [
            Decimal("1000.00"),
            Decimal("-200.00"),
            Decimal("-50.00"),
        ]
        async with session_factory() as session:
            checking = await session.get(AccountRow, dataset.account_id)
        assert checking.balance == Decimal("750.00")
        assert checking.currency == "USD"

        history = await engine.get_history(dataset.user_id)
        assert history[0].status == ConversionStatus.FAILED
        assert history[0].error_message == "disk on fire"

    async def test_ledger_change_during_rate_fetch_conflicts(
        self, session_factory, ledger_settings, ledger, dataset
    ):
        """A transaction on a date with no fetched rate aborts the rewrite."""
        feb_2 = date(2024, 2, 2)

        class LateWriteRates(FakeRateSource):
            async def get_rate(self, on_date, from_currency, to_currency):
                if not self.calls:
                    async with unit_of_work(session_factory) as session:
                        await ledger.create_transaction(
                            session, dataset.user_id, dataset.account_id, feb_2,
                            Decimal("-30"), "Late", dataset.category_id,
                        )
                return await super().get_rate(on_date, from_currency, to_currency)

        rates = LateWriteRates(default=Decimal("0.5"))
        engine = CurrencyConversionEngine(
            session_factory, rates, settings=ledger_settings, today=fixed_today
        )

        with pytest.raises(ConflictError):
            await engine.convert(dataset.user_id, "EUR")

        assert feb_2 not in [call[0] for call in rates.calls]
        assert await _amounts(session_factory, dataset.user_id) == [
            Decimal("1000.00"),
            Decimal("-30.00"),
            Decimal("-200.00"),
            Decimal("-50.00"),
        ]
        assert await _user_currency(session_factory, dataset.user_id) == "USD"

        history = await engine.get_history(dataset.user_id)
        assert history[0].status == ConversionStatus.FAILED
        assert "2024-02-02" in history[0].error_message

    async def test_invalid_rate_is_a_service_failure(self, session_factory, ledger_settings, dataset):
        engine = CurrencyConversionEngine(
            session_factory,
            FakeRateSource(default=Decimal("0")),
            settings=ledger_settings,
            today=fixed_today,
        )
        with pytest.raises(ExternalServiceUnavailableError):
            await engine.convert(dataset.user_id, "EUR")


class TestExclusivity:

    async def _in_progress(self, session_factory, user_id):
        async with unit_of_work(session_factory) as session:
            run = CurrencyConversionRunRow(
                user_id=user_id,
                from_currency="USD",
                to_currency="GBP",
                status=ConversionStatus.IN_PROGRESS,
                started_at=utc_now(),
            )
            session.add(run)
        return run.id

    async def test_second_conversion_conflicts(self, engine, session_factory, dataset):
        """A running conversion blocks another and is left untouched."""
        run_id = await self._in_progress(session_factory, dataset.user_id)

        with pytest.raises(ConflictError) as exc_info:
            await engine.convert(dataset.user_id, "EUR")

        assert exc_info.value.existing_id == run_id
        async with session_factory() as session:
            run = await session.get(CurrencyConversionRunRow, run_id)
        assert run.status == ConversionStatus.IN_PROGRESS
        assert run.completed_at is None
        assert await _user_currency(session_factory, dataset.user_id) == "USD"

        status = await engine.get_status(dataset.user_id)
        assert status.state == ConversionState.IN_PROGRESS
        assert status.run_id == run_id
        assert status.to_currency == "GBP"

    async def test_unique_index_blocks_two_in_progress_runs(self, session_factory, seeded):
        await self._in_progress(session_factory, seeded.user_id)
        with pytest.raises(IntegrityError):
            await self._in_progress(session_factory, seeded.user_id)

    async def test_finished_runs_do_not_block(self, session_factory, seeded):
        async with unit_of_work(session_factory) as session:
            for status in (ConversionStatus.COMPLETED, ConversionStatus.FAILED, ConversionStatus.FAILED):
                session.add(CurrencyConversionRunRow(
                    user_id=seeded.user_id,
                    from_currency="USD",
                    to_currency="EUR",
                    status=status,
                    started_at=utc_now(),
                ))
        await self._in_progress(session_factory, seeded.user_id)


class TestHistoryAndRates:

    async def test_history_most_recent_first(self, engine, seeded):
        await engine.convert(seeded.user_id, "EUR")
        await engine.convert(seeded.user_id, "GBP")

        history = await engine.get_history(seeded.user_id)
        assert [(run.from_currency, run.to_currency) for run in history] == [
            ("EUR", "GBP"),
            ("USD", "EUR"),
        ]
        assert all(run.status == ConversionStatus.COMPLETED for run in history)
        assert len(await engine.get_history(seeded.user_id, limit=1)) == 1

    async def test_rate_preview(self, engine):
        quote = await engine.get_exchange_rate("usd", "EUR", MAR_5)
        assert quote.rate == Decimal("0.8")
        assert quote.date == MAR_5

    async def test_rate_preview_defaults_to_today(self, engine):
        quote = await engine.get_exchange_rate("USD", "EUR")
        assert quote.date == TODAY

    async def test_rate_preview_rejects_future_dates(self, engine):
        with pytest.raises(ValidationError):
            await engine.get_exchange_rate("USD", "EUR", date(2024, 6, 16))

    async def test_rate_preview_rejects_same_currency(self, engine):
        with pytest.raises(ValidationError):
            await engine.get_exchange_rate("EUR", "EUR")
