"""
Budget Alert Evaluator

Fires budget thresholds exactly once per crossing.

    spent      = |sum of negative amounts| in the budget's category and month
    percentage = spent / budget.amount * 100   (0 when the budget is 0)

Every unsent threshold with percentage >= threshold (compared exactly, as
spent * 100 >= threshold * budget.amount) is marked sent in the
caller's unit of work and returned. Several thresholds may fire at once.
A sent threshold stays silent until reset_alerts (explicitly, or because
the budget amount changed). Each month has its own budget rows, so a new
month always starts with fresh thresholds.

DESIGN DECISION: The evaluator is a listener on BalanceLedger change
events, so spending added through any path (manual entry, imports,
recurring generation) is evaluated in the same transaction that added it.
"""

from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable
from uuid import UUID

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ledger_engine.exceptions import NotFoundError
from ledger_engine.models.events import LedgerChange, TriggeredAlert
from ledger_engine.storage.queries import outflow_total
from ledger_engine.storage.tables import BudgetAlertRow, BudgetRow, CategoryRow
from ledger_engine.utils import month_bounds, utc_now


PERCENT_QUANTUM = Decimal("0.01")


def spent_percentage(spent: Decimal, budget_amount: Decimal) -> Decimal:
    """Share of the budget spent, in percent. A zero budget reports 0."""
    if budget_amount <= 0:
        return Decimal("0.00")
    return (spent / budget_amount * 100).quantize(PERCENT_QUANTUM, rounding=ROUND_HALF_UP)


def threshold_reached(spent: Decimal, budget_amount: Decimal, threshold: int) -> bool:
    """Exact comparison; the rounded percentage is for display only."""
    if budget_amount <= 0:
        return False
    return spent * 100 >= budget_amount * threshold


class BudgetAlertEvaluator:

    def __init__(self):
        self._logger = structlog.get_logger(__name__)

    async def check_alerts(
        self,
        session: AsyncSession,
        user_id: UUID,
        category_ids: Iterable[UUID],
        month: str,
    ) -> list[TriggeredAlert]:
        """
        Evaluate the user's budgets for the given categories in one month.

        Args:
            session: Caller's unit of work; sent flags commit with it
            user_id: Budget owner
            category_ids: Categories whose spending may have changed
            month: YYYY-MM

        Returns:
            Thresholds that fired during this call

        Raises:
            ValidationError: If month is not YYYY-MM
        """
        start, end = month_bounds(month)
        category_ids = list(dict.fromkeys(category_ids))
        if not category_ids:
            return []

        stmt = (
            select(BudgetRow, CategoryRow.name)
            .join(CategoryRow, CategoryRow.id == BudgetRow.category_id)
            .where(
                BudgetRow.user_id == user_id,
                BudgetRow.month == month,
                BudgetRow.category_id.in_(category_ids),
            )
        )
        budgets = (await session.execute(stmt)).all()

        triggered: list[TriggeredAlert] = []
        for budget, category_name in budgets:
            pending = await self._unsent_thresholds(session, budget.id)
            if not pending:
                continue

            spent = await outflow_total(session, user_id, budget.category_id, start, end)
            percentage = spent_percentage(spent, budget.amount)

            now = utc_now()
            for alert in pending:
                if not threshold_reached(spent, budget.amount, alert.threshold):
                    break
                alert.sent = True
                alert.sent_at = now
                triggered.append(TriggeredAlert(
                    budget_id=budget.id,
                    category_id=budget.category_id,
                    category_name=category_name,
                    month=month,
                    threshold=alert.threshold,
                    percentage=percentage,
                    spent_amount=spent,
                    budget_amount=budget.amount,
                    sent_at=now,
                ))

        if triggered:
            await session.flush()
            self._logger.info(
                "budget_alerts_triggered",
                user_id=str(user_id),
                month=month,
                thresholds=[(str(a.budget_id), a.threshold) for a in triggered],
            )
        return triggered

    async def reset_alerts(self, session: AsyncSession, budget_id: UUID) -> int:
        """
        Clear every sent flag of a budget so thresholds can fire again.

        Returns:
            Number of thresholds that were reset
        """
        if await session.get(BudgetRow, budget_id) is None:
            raise NotFoundError("Budget", budget_id)
        stmt = (
            select(BudgetAlertRow)
            .where(BudgetAlertRow.budget_id == budget_id, BudgetAlertRow.sent.is_(True))
            .with_for_update()
        )
        sent = list((await session.execute(stmt)).scalars())
        for alert in sent:
            alert.sent = False
            alert.sent_at = None
        await session.flush()
        self._logger.info("budget_alerts_reset", budget_id=str(budget_id), count=len(sent))
        return len(sent)

    async def handle_ledger_change(
        self,
        session: AsyncSession,
        change: LedgerChange,
    ) -> list[TriggeredAlert]:
        """BalanceLedger listener: re-check every month the change touched."""
        alerts: list[TriggeredAlert] = []
        for month, category_ids in change.categories_by_month().items():
            alerts.extend(await self.check_alerts(session, change.user_id, category_ids, month))
        return alerts

    async def _unsent_thresholds(self, session: AsyncSession, budget_id: UUID) -> list[BudgetAlertRow]:
        stmt = (
            select(BudgetAlertRow)
            .where(BudgetAlertRow.budget_id == budget_id, BudgetAlertRow.sent.is_(False))
            .order_by(BudgetAlertRow.threshold)
            .with_for_update()
        )
        return list((await session.execute(stmt)).scalars())
