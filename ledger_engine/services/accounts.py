"""
Account lifecycle and reconciliation.

Opening balances go through BalanceLedger as an ordinary transaction, so
an account is consistent from the moment it exists.
"""

import datetime as dt
from typing import Optional
from uuid import UUID

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ledger_engine.exceptions import ValidationError
from ledger_engine.models.events import BalanceReport, TriggeredAlert
from ledger_engine.models.ledger import Account, AccountCreate
from ledger_engine.services.balance_ledger import BalanceLedger
from ledger_engine.storage.queries import get_owned_account, get_user
from ledger_engine.storage.tables import AccountRow
from ledger_engine.utils import ZERO


OPENING_BALANCE_PAYEE = "Opening balance"


class AccountService:

    def __init__(self, ledger: BalanceLedger):
        self._ledger = ledger
        self._logger = structlog.get_logger(__name__)

    async def open_account(
        self,
        session: AsyncSession,
        user_id: UUID,
        data: AccountCreate,
    ) -> tuple[Account, list[TriggeredAlert]]:
        """
        Create an account in the owner's currency.

        Returns:
            (account, alerts fired by a negative opening balance)

        Raises:
            ValidationError: Currency differs from the owner's
        """
        user = await get_user(session, user_id)
        currency = data.currency or user.currency
        if currency != user.currency:
            raise ValidationError(
                f"Account currency {currency} must match the user's currency {user.currency}"
            )

        row = AccountRow(
            user_id=user_id,
            name=data.name,
            institution=data.institution,
            type=data.type,
            currency=currency,
            balance=ZERO,
            is_active=True,
            is_manual=data.is_manual,
        )
        session.add(row)
        await session.flush()

        alerts: list[TriggeredAlert] = []
        if data.opening_balance != 0:
            result = await self._ledger.create_transaction(
                session,
                user_id,
                row.id,
                data.opening_balance_date or dt.date.today(),
                data.opening_balance,
                OPENING_BALANCE_PAYEE,
                data.opening_balance_category_id,
                is_manual=True,
            )
            alerts = result.alerts

        self._logger.info(
            "account_opened",
            account_id=str(row.id),
            user_id=str(user_id),
            balance=str(row.balance),
        )
        return Account.model_validate(row), alerts

    async def archive_account(
        self,
        session: AsyncSession,
        user_id: UUID,
        account_id: UUID,
    ) -> Account:
        """Archived accounts keep their history but accept no new transactions."""
        row = await get_owned_account(session, user_id, account_id, for_update=True)
        row.is_active = False
        await session.flush()
        self._logger.info("account_archived", account_id=str(account_id))
        return Account.model_validate(row)

    async def list_accounts(
        self,
        session: AsyncSession,
        user_id: UUID,
        include_archived: bool = False,
    ) -> list[Account]:
        stmt = select(AccountRow).where(AccountRow.user_id == user_id).order_by(AccountRow.name)
        if not include_archived:
            stmt = stmt.where(AccountRow.is_active.is_(True))
        return [Account.model_validate(row) for row in (await session.execute(stmt)).scalars()]

    async def reconcile(
        self,
        session: AsyncSession,
        user_id: UUID,
        account_id: Optional[UUID] = None,
    ) -> list[BalanceReport]:
        """
        Report accounts whose stored balance differs from their transaction sum.

        Nothing is repaired; an empty list means every account is consistent.
        """
        stmt = select(AccountRow.id).where(AccountRow.user_id == user_id)
        if account_id is not None:
            stmt = stmt.where(AccountRow.id == account_id)
        account_ids = list((await session.execute(stmt)).scalars())

        mismatched = []
        for current_id in account_ids:
            report = await self._ledger.get_account_balance_report(session, current_id)
            if not report.is_consistent:
                self._logger.warning(
                    "balance_mismatch",
                    account_id=str(current_id),
                    stored_balance=str(report.stored_balance),
                    computed_balance=str(report.computed_balance),
                )
                mismatched.append(report)
        return mismatched
