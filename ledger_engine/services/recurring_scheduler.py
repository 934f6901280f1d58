"""
Recurrence Scheduler

Owns recurring templates and turns due occurrences into transactions.

State machine (validated against RECURRING_TRANSITIONS):
    ACTIVE <-> PAUSED
    ACTIVE -> COMPLETED    next date would fall after end_date
    ACTIVE | PAUSED -> CANCELLED

DESIGN DECISION: Generation is driven by an external timer calling
run_due_generation(as_of). Each occurrence is its own unit of work:
the template row is locked and its due date re-checked before the
transaction is created through BalanceLedger, and the template advances
in the same commit. Re-running a pass, or two passes racing, therefore
never creates an occurrence twice.

Failures are isolated per template: one template's error is logged,
counted and audited, and the pass moves on.
"""

import datetime as dt
from datetime import timedelta
from typing import Optional
from uuid import UUID

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ledger_engine.audit.logger import AuditLogger, create_correlation_id
from ledger_engine.exceptions import (
    ConflictError,
    LedgerError,
    NotFoundError,
    ValidationError,
)
from ledger_engine.models.events import (
    GenerationFailure,
    GenerationReport,
    UpcomingOccurrence,
)
from ledger_engine.models.ledger import (
    RecurringStatus,
    RecurringTemplate,
    RecurringTemplateCreate,
    RecurringTemplateUpdate,
)
from ledger_engine.services.balance_ledger import BalanceLedger
from ledger_engine.services.schedule import next_for_template, occurrences_between
from ledger_engine.storage.database import unit_of_work
from ledger_engine.storage.queries import get_owned_account, get_owned_category
from ledger_engine.storage.tables import RecurringTransactionRow, TransactionRow


class RecurrenceScheduler:

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        ledger: BalanceLedger,
        audit_logger: Optional[AuditLogger] = None,
    ):
        self._session_factory = session_factory
        self._ledger = ledger
        self._audit_logger = audit_logger or AuditLogger()
        self._logger = structlog.get_logger(__name__)

    # =========================================================================
    # TEMPLATE MANAGEMENT
    # =========================================================================

    async def create_template(
        self,
        user_id: UUID,
        data: RecurringTemplateCreate,
    ) -> RecurringTemplate:
        """
        Create a template. Its first occurrence is the first scheduled date
        strictly after start_date; a template whose first occurrence already
        lies past end_date is created COMPLETED.

        Raises:
            ValidationError: The account is archived
        """
        async with unit_of_work(self._session_factory) as session:
            await self._require_active_account(session, user_id, data.account_id)
            await get_owned_category(session, user_id, data.category_id)

            row = RecurringTransactionRow(
                user_id=user_id,
                **data.model_dump(),
                status=RecurringStatus.ACTIVE,
            )
            row.next_scheduled_date = next_for_template(row, data.start_date)
            if row.end_date is not None and row.next_scheduled_date > row.end_date:
                row.status = RecurringStatus.COMPLETED
            session.add(row)
            await session.flush()
            template = RecurringTemplate.model_validate(row)

        self._logger.info(
            "recurring_template_created",
            template_id=str(template.id),
            frequency=template.frequency.value,
            next_scheduled_date=template.next_scheduled_date.isoformat(),
        )
        return template

    async def update_template(
        self,
        user_id: UUID,
        template_id: UUID,
        patch: RecurringTemplateUpdate,
    ) -> RecurringTemplate:
        """
        Edit a template. Changing schedule fields recomputes the next date
        from the last generated date (or the start date).

        Raises:
            ConflictError: Template is COMPLETED or CANCELLED
        """
        async with unit_of_work(self._session_factory) as session:
            row = await self._get_owned_template(session, user_id, template_id)
            if row.status.is_terminal:
                raise ConflictError(f"Recurring template {template_id} is {row.status.value}")

            fields = patch.model_fields_set
            if "account_id" in fields and patch.account_id is not None:
                await self._require_active_account(session, user_id, patch.account_id)
            if "category_id" in fields and patch.category_id is not None:
                await get_owned_category(session, user_id, patch.category_id)

            for name in fields:
                value = getattr(patch, name)
                if value is None and name not in ("notes", "end_date", "day_of_month", "day_of_week"):
                    continue
                setattr(row, name, value)

            if row.end_date is not None and row.end_date < row.start_date:
                raise ValidationError("end_date cannot be before start_date")

            if patch.changes_schedule:
                anchor = row.last_generated_date or row.start_date
                row.next_scheduled_date = next_for_template(row, anchor)
                if (
                    row.status == RecurringStatus.ACTIVE
                    and row.end_date is not None
                    and row.next_scheduled_date > row.end_date
                ):
                    row.status = RecurringStatus.COMPLETED
            await session.flush()
            return RecurringTemplate.model_validate(row)

    async def delete_template(self, user_id: UUID, template_id: UUID) -> None:
        """
        Delete a template that never generated anything.

        Raises:
            ConflictError: Transactions reference the template; cancel it instead
        """
        async with unit_of_work(self._session_factory) as session:
            row = await self._get_owned_template(session, user_id, template_id)
            generated = (await session.execute(
                select(func.count(TransactionRow.id)).where(
                    TransactionRow.recurring_template_id == template_id
                )
            )).scalar_one()
            if generated:
                raise ConflictError(
                    f"Recurring template {template_id} generated {generated} transaction(s); cancel it instead",
                    existing_id=template_id,
                )
            await session.delete(row)

    async def pause(self, user_id: UUID, template_id: UUID) -> RecurringTemplate:
        """ACTIVE -> PAUSED. Paused templates are skipped by generation."""
        return await self._transition(user_id, template_id, RecurringStatus.PAUSED)

    async def resume(self, user_id: UUID, template_id: UUID) -> RecurringTemplate:
        """
        PAUSED -> ACTIVE. Nothing is generated here; missed occurrences are
        caught up by the next generation pass.
        """
        return await self._transition(user_id, template_id, RecurringStatus.ACTIVE)

    async def cancel(self, user_id: UUID, template_id: UUID) -> RecurringTemplate:
        """ACTIVE | PAUSED -> CANCELLED (terminal)."""
        return await self._transition(user_id, template_id, RecurringStatus.CANCELLED)

    async def list_upcoming(
        self,
        user_id: UUID,
        as_of: dt.date,
        days: int = 30,
    ) -> list[UpcomingOccurrence]:
        """Occurrences of ACTIVE templates due within ``days`` of as_of."""
        window_end = as_of + timedelta(days=days)
        async with self._session_factory() as session:
            rows = (await session.execute(
                select(RecurringTransactionRow).where(
                    RecurringTransactionRow.user_id == user_id,
                    RecurringTransactionRow.status == RecurringStatus.ACTIVE,
                    RecurringTransactionRow.next_scheduled_date <= window_end,
                )
            )).scalars().all()

        upcoming = [
            UpcomingOccurrence(
                template_id=row.id,
                account_id=row.account_id,
                payee=row.payee,
                amount=row.amount,
                date=occurrence,
                category_id=row.category_id,
            )
            for row in rows
            for occurrence in occurrences_between(row, row.next_scheduled_date, window_end)
        ]
        upcoming.sort(key=lambda item: (item.date, item.payee))
        return upcoming

    # =========================================================================
    # GENERATION
    # =========================================================================

    async def run_due_generation(
        self,
        as_of: dt.date,
        user_id: Optional[UUID] = None,
    ) -> GenerationReport:
        """
        Materialize every occurrence due on or before ``as_of``.

        Args:
            as_of: Generation cut-off date (inclusive)
            user_id: Restrict the pass to one user's templates

        Returns:
            Report with processed / created / errors counts
        """
        correlation_id = create_correlation_id()
        report = GenerationReport(as_of=as_of)

        stmt = (
            select(RecurringTransactionRow.id)
            .where(
                RecurringTransactionRow.status == RecurringStatus.ACTIVE,
                RecurringTransactionRow.next_scheduled_date <= as_of,
            )
            .order_by(RecurringTransactionRow.next_scheduled_date)
        )
        if user_id is not None:
            stmt = stmt.where(RecurringTransactionRow.user_id == user_id)
        async with self._session_factory() as session:
            due_ids = list((await session.execute(stmt)).scalars())

        self._logger.info("recurring_generation_started", as_of=as_of.isoformat(), due=len(due_ids))

        for template_id in due_ids:
            report.processed += 1
            try:
                await self._generate_template(template_id, as_of, report, correlation_id)
            except Exception as e:
                report.errors += 1
                error_code = e.code if isinstance(e, LedgerError) else type(e).__name__
                report.failures.append(GenerationFailure(
                    template_id=template_id,
                    error_code=error_code,
                    error_message=str(e),
                ))
                self._logger.error(
                    "recurring_generation_failed",
                    template_id=str(template_id),
                    error=str(e),
                    exc_info=True,
                )
                await self._audit_logger.log_recurring_generation_failed(
                    template_id=template_id,
                    error_code=error_code,
                    error_message=str(e),
                    correlation_id=correlation_id,
                )
                if not isinstance(e, LedgerError):
                    await self._audit_logger.log_error(
                        error_type=error_code,
                        error_message=str(e),
                        details={"template_id": str(template_id)},
                        correlation_id=correlation_id,
                    )

        self._logger.info(
            "recurring_generation_finished",
            as_of=as_of.isoformat(),
            processed=report.processed,
            created=report.created,
            errors=report.errors,
        )
        return report

    async def _generate_template(
        self,
        template_id: UUID,
        as_of: dt.date,
        report: GenerationReport,
        correlation_id: UUID,
    ) -> None:
        """Create occurrences one commit at a time until the template is no longer due."""
        created = 0
        owner_id: Optional[UUID] = None
        try:
            while True:
                async with unit_of_work(self._session_factory) as session:
                    row = await self._lock_template(session, template_id)
                    if row is None or row.status != RecurringStatus.ACTIVE:
                        break
                    if row.next_scheduled_date > as_of:
                        break
                    if row.end_date is not None and row.next_scheduled_date > row.end_date:
                        row.status = RecurringStatus.COMPLETED
                        break

                    owner_id = row.user_id
                    occurrence = row.next_scheduled_date
                    result = await self._ledger.create_transaction(
                        session,
                        row.user_id,
                        row.account_id,
                        occurrence,
                        row.amount,
                        row.payee,
                        row.category_id,
                        row.notes,
                        list(row.tags or []),
                        is_manual=False,
                        recurring_template_id=row.id,
                    )
                    row.last_generated_date = occurrence
                    row.next_scheduled_date = next_for_template(row, occurrence)
                    if row.end_date is not None and row.next_scheduled_date > row.end_date:
                        row.status = RecurringStatus.COMPLETED
                        self._logger.info("recurring_template_completed", template_id=str(template_id))
                created += 1
                report.created += 1
                report.alerts.extend(result.alerts)
                if result.alerts:
                    await self._audit_logger.log_budget_alerts(owner_id, result.alerts)
        finally:
            if created and owner_id is not None:
                await self._audit_logger.log_recurring_generated(
                    user_id=owner_id,
                    template_id=template_id,
                    occurrences=created,
                    correlation_id=correlation_id,
                )

    # =========================================================================
    # INTERNALS
    # =========================================================================

    async def _lock_template(
        self,
        session: AsyncSession,
        template_id: UUID,
    ) -> Optional[RecurringTransactionRow]:
        stmt = (
            select(RecurringTransactionRow)
            .where(RecurringTransactionRow.id == template_id)
            .with_for_update()
        )
        return (await session.execute(stmt)).scalar_one_or_none()

    async def _get_owned_template(
        self,
        session: AsyncSession,
        user_id: UUID,
        template_id: UUID,
    ) -> RecurringTransactionRow:
        stmt = (
            select(RecurringTransactionRow)
            .where(
                RecurringTransactionRow.id == template_id,
                RecurringTransactionRow.user_id == user_id,
            )
            .with_for_update()
        )
        row = (await session.execute(stmt)).scalar_one_or_none()
        if row is None:
            raise NotFoundError("RecurringTemplate", template_id)
        return row

    @staticmethod
    async def _require_active_account(session: AsyncSession, user_id: UUID, account_id: UUID) -> None:
        account = await get_owned_account(session, user_id, account_id)
        if not account.is_active:
            raise ValidationError(f"Account {account_id} is archived")

    async def _transition(
        self,
        user_id: UUID,
        template_id: UUID,
        target: RecurringStatus,
    ) -> RecurringTemplate:
        async with unit_of_work(self._session_factory) as session:
            row = await self._get_owned_template(session, user_id, template_id)
            current = row.status
            if not current.can_transition_to(target):
                raise ConflictError(
                    f"Recurring template {template_id} cannot go from {current.value} to {target.value}"
                )
            row.status = target
            await session.flush()
            template = RecurringTemplate.model_validate(row)

        await self._audit_logger.log_recurring_status_changed(
            user_id=user_id,
            template_id=template_id,
            old_status=current.value,
            new_status=target.value,
        )
        return template
