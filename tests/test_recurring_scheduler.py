"""
Tests for RecurrenceScheduler

Generation must be idempotent, respect the state machine and isolate
failures per template.
"""

from datetime import date
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import select

from ledger_engine.audit import AuditLogger
from ledger_engine.exceptions import ConflictError, NotFoundError, ValidationError
from ledger_engine.models.ledger import (
    LAST_DAY_OF_MONTH,
    RecurrenceFrequency,
    RecurringStatus,
    RecurringTemplateCreate,
    RecurringTemplateUpdate,
)
from ledger_engine.services.recurring_scheduler import RecurrenceScheduler
from ledger_engine.storage.database import unit_of_work
from ledger_engine.storage.tables import AccountRow, TransactionRow


@pytest.fixture
def scheduler(session_factory, ledger):
    return RecurrenceScheduler(session_factory, ledger, AuditLogger())


def _rent(seeded, **overrides):
    fields = {
        "account_id": seeded.account_id,
        "amount": Decimal("-1200"),
        "payee": "Landlord",
        "category_id": seeded.category_id,
        "frequency": RecurrenceFrequency.MONTHLY,
        "start_date": date(2024, 1, 31),
        "day_of_month": LAST_DAY_OF_MONTH,
    }
    fields.update(overrides)
    return RecurringTemplateCreate(**fields)


async def _transactions(session_factory, template_id):
    async with session_factory() as session:
        return list((await session.execute(
            select(TransactionRow)
            .where(TransactionRow.recurring_template_id == template_id)
            .order_by(TransactionRow.date)
        )).scalars())


async def _balance(session_factory, account_id):
    async with session_factory() as session:
        return (await session.get(AccountRow, account_id)).balance


class TestTemplateManagement:

    async def test_first_occurrence_is_after_start(self, scheduler, seeded):
        template = await scheduler.create_template(seeded.user_id, _rent(seeded))
        assert template.status == RecurringStatus.ACTIVE
        assert template.next_scheduled_date == date(2024, 2, 29)
        assert template.last_generated_date is None

    async def test_created_completed_when_first_date_past_end(self, scheduler, seeded):
        template = await scheduler.create_template(
            seeded.user_id,
            _rent(seeded, start_date=date(2024, 1, 1), end_date=date(2024, 1, 15), day_of_month=None),
        )
        assert template.status == RecurringStatus.COMPLETED

    async def test_foreign_account_rejected(self, scheduler, seeded):
        with pytest.raises(NotFoundError):
            await scheduler.create_template(seeded.stranger_id, _rent(seeded))

    async def test_archived_account_rejected(self, scheduler, session_factory, seeded):
        async with unit_of_work(session_factory) as session:
            savings = await session.get(AccountRow, seeded.savings_id)
            savings.is_active = False

        with pytest.raises(ValidationError):
            await scheduler.create_template(seeded.user_id, _rent(seeded, account_id=seeded.savings_id))

        template = await scheduler.create_template(seeded.user_id, _rent(seeded))
        with pytest.raises(ValidationError):
            await scheduler.update_template(
                seeded.user_id, template.id, RecurringTemplateUpdate(account_id=seeded.savings_id)
            )

    async def test_end_before_start_rejected_by_model(self, seeded):
        with pytest.raises(ValueError):
            _rent(seeded, end_date=date(2023, 12, 31))

    async def test_zero_amount_rejected_by_model(self, seeded):
        with pytest.raises(ValueError):
            _rent(seeded, amount=Decimal("0"))

    async def test_schedule_change_recomputes_next_date(self, scheduler, seeded):
        template = await scheduler.create_template(seeded.user_id, _rent(seeded))
        updated = await scheduler.update_template(
            seeded.user_id, template.id, RecurringTemplateUpdate(day_of_month=15)
        )
        assert updated.day_of_month == 15
        assert updated.next_scheduled_date == date(2024, 2, 15)

    async def test_non_schedule_change_keeps_next_date(self, scheduler, seeded):
        template = await scheduler.create_template(seeded.user_id, _rent(seeded))
        updated = await scheduler.update_template(
            seeded.user_id, template.id, RecurringTemplateUpdate(payee="New Landlord")
        )
        assert updated.payee == "New Landlord"
        assert updated.next_scheduled_date == template.next_scheduled_date

    async def test_update_end_before_start_rejected(self, scheduler, seeded):
        template = await scheduler.create_template(seeded.user_id, _rent(seeded))
        with pytest.raises(ValidationError):
            await scheduler.update_template(
                seeded.user_id, template.id, RecurringTemplateUpdate(end_date=date(2023, 1, 1))
            )

    async def test_terminal_template_cannot_be_edited(self, scheduler, seeded):
        template = await scheduler.create_template(seeded.user_id, _rent(seeded))
        await scheduler.cancel(seeded.user_id, template.id)
        with pytest.raises(ConflictError):
            await scheduler.update_template(
                seeded.user_id, template.id, RecurringTemplateUpdate(payee="x")
            )

    async def test_delete_unused_template(self, scheduler, seeded):
        template = await scheduler.create_template(seeded.user_id, _rent(seeded))
        await scheduler.delete_template(seeded.user_id, template.id)
        with pytest.raises(NotFoundError):
            await scheduler.pause(seeded.user_id, template.id)

    async def test_delete_used_template_conflicts(self, scheduler, seeded):
        template = await scheduler.create_template(seeded.user_id, _rent(seeded))
        await scheduler.run_due_generation(date(2024, 2, 29))
        with pytest.raises(ConflictError) as exc_info:
            await scheduler.delete_template(seeded.user_id, template.id)
        assert exc_info.value.existing_id == template.id


class TestStateMachine:

    async def test_pause_and_resume(self, scheduler, seeded):
        template = await scheduler.create_template(seeded.user_id, _rent(seeded))
        paused = await scheduler.pause(seeded.user_id, template.id)
        assert paused.status == RecurringStatus.PAUSED
        resumed = await scheduler.resume(seeded.user_id, template.id)
        assert resumed.status == RecurringStatus.ACTIVE

    async def test_pause_twice_conflicts(self, scheduler, seeded):
        template = await scheduler.create_template(seeded.user_id, _rent(seeded))
        await scheduler.pause(seeded.user_id, template.id)
        with pytest.raises(ConflictError):
            await scheduler.pause(seeded.user_id, template.id)

    async def test_cancelled_is_terminal(self, scheduler, seeded):
        template = await scheduler.create_template(seeded.user_id, _rent(seeded))
        await scheduler.cancel(seeded.user_id, template.id)
        with pytest.raises(ConflictError):
            await scheduler.resume(seeded.user_id, template.id)


class TestGeneration:

    async def test_catches_up_every_due_occurrence(self, scheduler, session_factory, seeded):
        template = await scheduler.create_template(seeded.user_id, _rent(seeded))

        report = await scheduler.run_due_generation(date(2024, 4, 30))

        assert report.processed == 1
        assert report.created == 3
        assert report.errors == 0
        transactions = await _transactions(session_factory, template.id)
        assert [t.date for t in transactions] == [date(2024, 2, 29), date(2024, 3, 31), date(2024, 4, 30)]
        assert all(not t.is_manual for t in transactions)
        assert await _balance(session_factory, seeded.account_id) == Decimal("-3600.00")

    async def test_rerun_creates_nothing(self, scheduler, session_factory, seeded):
        """Test generation idempotence for the same as_of."""
        template = await scheduler.create_template(seeded.user_id, _rent(seeded))
        await scheduler.run_due_generation(date(2024, 3, 31))

        report = await scheduler.run_due_generation(date(2024, 3, 31))

        assert report.created == 0
        assert len(await _transactions(session_factory, template.id)) == 2

    async def test_nothing_due_before_first_date(self, scheduler, seeded):
        await scheduler.create_template(seeded.user_id, _rent(seeded))
        report = await scheduler.run_due_generation(date(2024, 2, 28))
        assert report.processed == 0
        assert report.created == 0

    async def test_completes_after_end_date(self, scheduler, session_factory, seeded):
        template = await scheduler.create_template(
            seeded.user_id,
            _rent(
                seeded,
                frequency=RecurrenceFrequency.DAILY,
                start_date=date(2024, 1, 1),
                end_date=date(2024, 1, 3),
                day_of_month=None,
                amount=Decimal("-5"),
            ),
        )

        report = await scheduler.run_due_generation(date(2024, 1, 10))

        assert report.created == 2
        transactions = await _transactions(session_factory, template.id)
        assert [t.date for t in transactions] == [date(2024, 1, 2), date(2024, 1, 3)]
        upcoming = await scheduler.list_upcoming(seeded.user_id, date(2024, 1, 10))
        assert upcoming == []
        with pytest.raises(ConflictError):
            await scheduler.pause(seeded.user_id, template.id)

    async def test_paused_templates_are_skipped(self, scheduler, session_factory, seeded):
        template = await scheduler.create_template(seeded.user_id, _rent(seeded))
        await scheduler.pause(seeded.user_id, template.id)

        report = await scheduler.run_due_generation(date(2024, 4, 30))
        assert report.created == 0

        await scheduler.resume(seeded.user_id, template.id)
        report = await scheduler.run_due_generation(date(2024, 4, 30))
        assert report.created == 3

    async def test_failure_is_isolated(self, scheduler, session_factory, seeded):
        """One broken template does not stop the others."""
        healthy = await scheduler.create_template(seeded.user_id, _rent(seeded))
        broken = await scheduler.create_template(
            seeded.user_id, _rent(seeded, account_id=seeded.savings_id)
        )
        async with unit_of_work(session_factory) as session:
            savings = await session.get(AccountRow, seeded.savings_id)
            savings.is_active = False

        report = await scheduler.run_due_generation(date(2024, 2, 29))

        assert report.processed == 2
        assert report.created == 1
        assert report.errors == 1
        assert report.failures[0].template_id == broken.id
        assert report.failures[0].error_code == "validation_error"
        assert len(await _transactions(session_factory, healthy.id)) == 1
        assert await _transactions(session_factory, broken.id) == []

    async def test_generation_restricted_to_user(self, scheduler, seeded):
        await scheduler.create_template(seeded.user_id, _rent(seeded))
        report = await scheduler.run_due_generation(date(2024, 4, 30), user_id=uuid4())
        assert report.processed == 0


class TestUpcoming:

    async def test_lists_occurrences_in_window(self, scheduler, seeded):
        await scheduler.create_template(
            seeded.user_id,
            _rent(
                seeded,
                frequency=RecurrenceFrequency.WEEKLY,
                start_date=date(2024, 6, 1),
                day_of_month=None,
                payee="Gym",
                amount=Decimal("-10"),
            ),
        )

        upcoming = await scheduler.list_upcoming(seeded.user_id, date(2024, 6, 1), days=21)

        assert [item.date for item in upcoming] == [
            date(2024, 6, 8),
            date(2024, 6, 15),
            date(2024, 6, 22),
        ]
        assert all(item.payee == "Gym" for item in upcoming)
