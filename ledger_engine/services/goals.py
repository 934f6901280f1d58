"""Savings goals."""

from decimal import Decimal
from uuid import UUID

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ledger_engine.exceptions import NotFoundError, ValidationError
from ledger_engine.models.ledger import Goal, GoalCreate
from ledger_engine.storage.queries import get_owned_account
from ledger_engine.storage.tables import GoalRow
from ledger_engine.utils import MoneyInput, quantize_money


logger = structlog.get_logger(__name__)


class GoalService:

    async def create_goal(self, session: AsyncSession, user_id: UUID, data: GoalCreate) -> Goal:
        """
        Raises:
            NotFoundError: linked_account_id is not one of the user's accounts
        """
        if data.linked_account_id is not None:
            await get_owned_account(session, user_id, data.linked_account_id)

        row = GoalRow(
            user_id=user_id,
            name=data.name,
            target_amount=quantize_money(data.target_amount),
            current_amount=quantize_money(data.current_amount),
            linked_account_id=data.linked_account_id,
            target_date=data.target_date,
        )
        session.add(row)
        await session.flush()
        logger.info("goal_created", goal_id=str(row.id), target=str(row.target_amount))
        return Goal.model_validate(row)

    async def update_progress(
        self,
        session: AsyncSession,
        user_id: UUID,
        goal_id: UUID,
        current_amount: MoneyInput,
    ) -> Goal:
        amount = quantize_money(current_amount)
        if amount < Decimal("0"):
            raise ValidationError("Goal progress cannot be negative")

        row = (await session.execute(
            select(GoalRow)
            .where(GoalRow.id == goal_id, GoalRow.user_id == user_id)
            .with_for_update()
        )).scalar_one_or_none()
        if row is None:
            raise NotFoundError("Goal", goal_id)

        row.current_amount = amount
        await session.flush()
        return Goal.model_validate(row)
