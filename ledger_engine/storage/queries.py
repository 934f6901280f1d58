"""
Shared read helpers.

Ownership is enforced in the WHERE clause: an entity owned by someone else
is indistinguishable from one that does not exist, and both raise
NotFoundError.
"""

import datetime as dt
from decimal import Decimal
from typing import Optional
from uuid import UUID

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from ledger_engine.exceptions import NotFoundError
from ledger_engine.storage.tables import (
    AccountRow,
    CategoryRow,
    TransactionRow,
    UserRow,
)
from ledger_engine.utils import sum_money


async def get_user(session: AsyncSession, user_id: UUID) -> UserRow:
    user = await session.get(UserRow, user_id)
    if user is None:
        raise NotFoundError("User", user_id)
    return user


async def get_owned_account(
    session: AsyncSession,
    user_id: UUID,
    account_id: UUID,
    for_update: bool = False,
) -> AccountRow:
    """Fetch an account owned by the user, optionally locking the row."""
    stmt = select(AccountRow).where(
        AccountRow.id == account_id,
        AccountRow.user_id == user_id,
    )
    if for_update:
        stmt = stmt.with_for_update()
    account = (await session.execute(stmt)).scalar_one_or_none()
    if account is None:
        raise NotFoundError("Account", account_id)
    return account


async def get_owned_category(
    session: AsyncSession,
    user_id: UUID,
    category_id: UUID,
) -> CategoryRow:
    """Categories owned by the user or shared (no owner) are visible."""
    stmt = select(CategoryRow).where(
        CategoryRow.id == category_id,
        or_(CategoryRow.user_id == user_id, CategoryRow.user_id.is_(None)),
    )
    category = (await session.execute(stmt)).scalar_one_or_none()
    if category is None:
        raise NotFoundError("Category", category_id)
    return category


async def account_transaction_amounts(session: AsyncSession, account_id: UUID) -> list[Decimal]:
    stmt = select(TransactionRow.amount).where(TransactionRow.account_id == account_id)
    return list((await session.execute(stmt)).scalars())


async def computed_balance(session: AsyncSession, account_id: UUID) -> Decimal:
    """Exact Decimal sum of an account's transactions."""
    return sum_money(await account_transaction_amounts(session, account_id))


async def outflow_total(
    session: AsyncSession,
    user_id: UUID,
    category_id: UUID,
    start: dt.date,
    end: dt.date,
    account_ids: Optional[list[UUID]] = None,
) -> Decimal:
    """
    Absolute sum of negative amounts in a category between two dates
    (inclusive). Inflows never offset spending.
    """
    stmt = select(TransactionRow.amount).where(
        TransactionRow.user_id == user_id,
        TransactionRow.category_id == category_id,
        TransactionRow.date >= start,
        TransactionRow.date <= end,
        TransactionRow.amount < 0,
    )
    if account_ids is not None:
        stmt = stmt.where(TransactionRow.account_id.in_(account_ids))
    amounts = (await session.execute(stmt)).scalars()
    return abs(sum_money(amounts))
