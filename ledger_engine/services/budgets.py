"""
Budget Service

Monthly budgets per category, their alert thresholds, and progress.

Status rules for progress:
    percentage > 95  -> over
    percentage > 75  -> warning
    otherwise        -> good
"""

import datetime as dt
from decimal import Decimal
from typing import Optional
from uuid import UUID

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ledger_engine.config import LedgerSettings, get_settings
from ledger_engine.exceptions import ConflictError, NotFoundError
from ledger_engine.models.events import TriggeredAlert
from ledger_engine.models.ledger import (
    Budget,
    BudgetAlertThreshold,
    BudgetCreate,
    BudgetHealth,
    BudgetProgress,
    BudgetUpdate,
)
from ledger_engine.services.budget_alerts import BudgetAlertEvaluator, spent_percentage
from ledger_engine.storage.queries import get_owned_category, outflow_total
from ledger_engine.storage.tables import BudgetAlertRow, BudgetRow, CategoryRow
from ledger_engine.utils import month_bounds, quantize_money


OVER_PERCENT = Decimal("95")
WARNING_PERCENT = Decimal("75")


def budget_health(percentage: Decimal) -> BudgetHealth:
    if percentage > OVER_PERCENT:
        return BudgetHealth.OVER
    if percentage > WARNING_PERCENT:
        return BudgetHealth.WARNING
    return BudgetHealth.GOOD


class BudgetService:

    def __init__(
        self,
        evaluator: BudgetAlertEvaluator,
        settings: Optional[LedgerSettings] = None,
    ):
        self._evaluator = evaluator
        self._settings = settings or get_settings().ledger
        self._logger = structlog.get_logger(__name__)

    async def create_budget(
        self,
        session: AsyncSession,
        user_id: UUID,
        data: BudgetCreate,
    ) -> Budget:
        """
        Create a budget with one unsent alert row per configured threshold.

        Raises:
            NotFoundError: Category not visible to the user
            ConflictError: A budget already exists for that category and month
        """
        await get_owned_category(session, user_id, data.category_id)

        existing = (await session.execute(
            select(BudgetRow.id).where(
                BudgetRow.user_id == user_id,
                BudgetRow.category_id == data.category_id,
                BudgetRow.month == data.month,
            )
        )).scalar_one_or_none()
        if existing is not None:
            raise ConflictError(
                f"Budget already exists for {data.month}",
                existing_id=existing,
            )

        row = BudgetRow(
            user_id=user_id,
            category_id=data.category_id,
            month=data.month,
            amount=data.amount,
            rollover=data.rollover,
        )
        session.add(row)
        await session.flush()
        for threshold in self._settings.alert_threshold_list:
            session.add(BudgetAlertRow(budget_id=row.id, threshold=threshold, sent=False))
        await session.flush()

        self._logger.info(
            "budget_created",
            budget_id=str(row.id),
            month=row.month,
            amount=str(row.amount),
        )
        return Budget.model_validate(row)

    async def update_budget(
        self,
        session: AsyncSession,
        user_id: UUID,
        budget_id: UUID,
        patch: BudgetUpdate,
    ) -> tuple[Budget, list[TriggeredAlert]]:
        """
        Change a budget's amount or rollover flag.

        A new amount resets every threshold and re-evaluates the month, so
        thresholds still crossed under the new amount fire again.
        """
        row = await self._get_owned_budget(session, user_id, budget_id)

        alerts: list[TriggeredAlert] = []
        amount_changed = False
        if patch.amount is not None:
            amount = quantize_money(patch.amount)
            amount_changed = amount != row.amount
            row.amount = amount
        if patch.rollover is not None:
            row.rollover = patch.rollover
        await session.flush()

        if amount_changed:
            await self._evaluator.reset_alerts(session, budget_id)
            alerts = await self._evaluator.check_alerts(session, user_id, [row.category_id], row.month)
        return Budget.model_validate(row), alerts

    async def reset_alerts(self, session: AsyncSession, user_id: UUID, budget_id: UUID) -> int:
        """Re-arm every threshold of one of the user's budgets."""
        await self._get_owned_budget(session, user_id, budget_id)
        return await self._evaluator.reset_alerts(session, budget_id)

    async def delete_budget(self, session: AsyncSession, user_id: UUID, budget_id: UUID) -> None:
        row = await self._get_owned_budget(session, user_id, budget_id)
        await session.delete(row)
        await session.flush()

    async def get_progress(
        self,
        session: AsyncSession,
        user_id: UUID,
        month: str,
    ) -> list[BudgetProgress]:
        """Spending against every budget the user has for a month."""
        start, end = month_bounds(month)
        rows = (await session.execute(
            select(BudgetRow, CategoryRow.name)
            .join(CategoryRow, CategoryRow.id == BudgetRow.category_id)
            .where(BudgetRow.user_id == user_id, BudgetRow.month == month)
            .order_by(CategoryRow.name)
        )).all()

        progress = []
        for budget, category_name in rows:
            spent = await outflow_total(session, user_id, budget.category_id, start, end)
            percentage = spent_percentage(spent, budget.amount)
            progress.append(BudgetProgress(
                budget_id=budget.id,
                category_id=budget.category_id,
                category_name=category_name,
                month=month,
                budget_amount=budget.amount,
                spent=spent,
                remaining=budget.amount - spent,
                percentage=min(percentage, Decimal("100.00")),
                status=budget_health(percentage),
            ))
        return progress

    async def recent_alerts(
        self,
        session: AsyncSession,
        user_id: UUID,
        month: str,
        since: dt.datetime,
    ) -> list[TriggeredAlert]:
        """
        Thresholds of a month that fired at or after ``since``, highest first.

        Spending is read now, so the figures reflect the current month-to-date
        total rather than the total at the moment the threshold fired.
        """
        start, end = month_bounds(month)
        rows = (await session.execute(
            select(BudgetRow, CategoryRow.name, BudgetAlertRow)
            .join(CategoryRow, CategoryRow.id == BudgetRow.category_id)
            .join(BudgetAlertRow, BudgetAlertRow.budget_id == BudgetRow.id)
            .where(
                BudgetRow.user_id == user_id,
                BudgetRow.month == month,
                BudgetAlertRow.sent.is_(True),
                BudgetAlertRow.sent_at >= since,
            )
            .order_by(BudgetAlertRow.threshold.desc(), CategoryRow.name)
        )).all()

        spent_by_budget: dict[UUID, Decimal] = {}
        alerts = []
        for budget, category_name, alert in rows:
            if budget.id not in spent_by_budget:
                spent_by_budget[budget.id] = await outflow_total(
                    session, user_id, budget.category_id, start, end
                )
            spent = spent_by_budget[budget.id]
            alerts.append(TriggeredAlert(
                budget_id=budget.id,
                category_id=budget.category_id,
                category_name=category_name,
                month=month,
                threshold=alert.threshold,
                percentage=spent_percentage(spent, budget.amount),
                spent_amount=spent,
                budget_amount=budget.amount,
                sent_at=alert.sent_at,
            ))
        return alerts

    async def list_thresholds(
        self,
        session: AsyncSession,
        user_id: UUID,
        budget_id: UUID,
    ) -> list[BudgetAlertThreshold]:
        await self._get_owned_budget(session, user_id, budget_id)
        rows = (await session.execute(
            select(BudgetAlertRow)
            .where(BudgetAlertRow.budget_id == budget_id)
            .order_by(BudgetAlertRow.threshold)
        )).scalars()
        return [BudgetAlertThreshold.model_validate(row) for row in rows]

    async def _get_owned_budget(self, session: AsyncSession, user_id: UUID, budget_id: UUID) -> BudgetRow:
        row = (await session.execute(
            select(BudgetRow)
            .where(BudgetRow.id == budget_id, BudgetRow.user_id == user_id)
            .with_for_update()
        )).scalar_one_or_none()
        if row is None:
            raise NotFoundError("Budget", budget_id)
        return row
