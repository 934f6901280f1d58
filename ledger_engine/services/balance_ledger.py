"""
Balance Ledger

The only path through which transaction mutations reach account balances.

INVARIANT: for every account, balance == sum(amount) of its transactions.

DESIGN DECISION: The ledger never opens or commits a transaction. Every
operation takes the caller's AsyncSession and does all of its work there,
so the row insert/update/delete, the balance change and any listener side
effects (budget alerts) commit or roll back together.

Concurrency:
- Account rows are read with SELECT ... FOR UPDATE
- Balances change through a single SQL expression (balance = balance + :delta)
  so concurrent increments to one account never get lost
"""

import datetime as dt
from collections.abc import Awaitable, Callable, Iterable
from decimal import Decimal
from typing import Optional
from uuid import UUID

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ledger_engine.config import LedgerSettings, get_settings
from ledger_engine.exceptions import (
    ConflictError,
    InvariantViolationError,
    NotFoundError,
    ValidationError,
)
from ledger_engine.models.events import (
    BalanceReport,
    ChangeKind,
    LedgerChange,
    MutationResult,
    SpendingKey,
    TriggeredAlert,
)
from ledger_engine.models.ledger import Transaction, TransactionPatch
from ledger_engine.storage.queries import (
    account_transaction_amounts,
    get_owned_account,
    get_owned_category,
)
from ledger_engine.storage.tables import AccountRow, TransactionRow
from ledger_engine.utils import MoneyInput, month_key, quantize_money, sum_money


LedgerListener = Callable[[AsyncSession, LedgerChange], Awaitable[list[TriggeredAlert]]]


def spending_keys(
    user_id: UUID,
    entries: Iterable[tuple[UUID, dt.date, Decimal]],
) -> list[SpendingKey]:
    """
    Outflow aggregates touched by a set of (category, date, amount) entries.

    Only negative amounts count as spending; inflows never move a budget.
    """
    keys: list[SpendingKey] = []
    for category_id, day, amount in entries:
        if amount < 0:
            key = SpendingKey(user_id=user_id, category_id=category_id, month=month_key(day))
            if key not in keys:
                keys.append(key)
    return keys


class BalanceLedger:
    """
    Creates, edits and deletes transactions while keeping balances exact.

    Listeners subscribed with ``subscribe`` receive a LedgerChange after
    every mutation, inside the same unit of work.
    """

    def __init__(self, settings: Optional[LedgerSettings] = None):
        self._settings = settings or get_settings().ledger
        self._listeners: list[LedgerListener] = []
        self._logger = structlog.get_logger(__name__)

    def subscribe(self, listener: LedgerListener) -> None:
        self._listeners.append(listener)

    # =========================================================================
    # MUTATIONS
    # =========================================================================

    async def create_transaction(
        self,
        session: AsyncSession,
        user_id: UUID,
        account_id: UUID,
        date: Optional[dt.date],
        amount: MoneyInput,
        payee: str,
        category_id: UUID,
        notes: Optional[str] = None,
        tags: Optional[list[str]] = None,
        *,
        is_manual: bool = True,
        external_id: Optional[str] = None,
        recurring_template_id: Optional[UUID] = None,
    ) -> MutationResult:
        """
        Insert a transaction and increment its account's balance by ``amount``.

        Raises:
            ValidationError: Zero amount, missing date or payee, archived account
            NotFoundError: Account or category not owned by the user
            ConflictError: external_id already imported on this account
            InvariantViolationError: Balance disagrees with transactions afterwards
        """
        if date is None:
            raise ValidationError("Transaction date is required")
        amount = self._require_amount(amount)
        payee = self._require_payee(payee)

        account = await get_owned_account(session, user_id, account_id, for_update=True)
        if not account.is_active:
            raise ValidationError(f"Account {account_id} is archived")
        await get_owned_category(session, user_id, category_id)
        if external_id is not None:
            await self._ensure_external_id_free(session, account_id, external_id)

        row = TransactionRow(
            user_id=user_id,
            account_id=account_id,
            date=date,
            amount=amount,
            payee=payee,
            category_id=category_id,
            notes=notes,
            tags=list(tags or []),
            is_manual=is_manual,
            external_id=external_id,
            recurring_template_id=recurring_template_id,
        )
        session.add(row)
        await self._flush_unique(session, external_id)

        await self._apply_delta(session, account, amount)
        await self._verify(session, [account])

        change = LedgerChange(
            kind=ChangeKind.CREATED,
            user_id=user_id,
            transaction_id=row.id,
            account_ids=[account_id],
            spending_keys=spending_keys(user_id, [(category_id, date, amount)]),
        )
        alerts = await self._publish(session, change)

        self._logger.info(
            "transaction_created",
            transaction_id=str(row.id),
            account_id=str(account_id),
            amount=str(amount),
            balance=str(account.balance),
        )
        return MutationResult(transaction=Transaction.model_validate(row), alerts=alerts)

    async def update_transaction(
        self,
        session: AsyncSession,
        user_id: UUID,
        transaction_id: UUID,
        patch: TransactionPatch,
    ) -> MutationResult:
        """
        Apply a partial update.

        An amount change moves the balance by (new - old). Moving to another
        account takes the old amount off the old account and puts the new
        amount on the new one. Other fields never touch balances.
        """
        row = await self._get_owned_transaction(session, user_id, transaction_id)
        fields = patch.model_fields_set

        old_account_id = row.account_id
        old_amount = row.amount
        old_entry = (row.category_id, row.date, row.amount)

        new_amount = old_amount
        if "amount" in fields:
            new_amount = self._require_amount(patch.amount)
        new_account_id = old_account_id
        if "account_id" in fields:
            if patch.account_id is None:
                raise ValidationError("account_id cannot be cleared")
            new_account_id = patch.account_id
        if "date" in fields and patch.date is None:
            raise ValidationError("Transaction date is required")
        if "payee" in fields:
            self._require_payee(patch.payee)
        if "category_id" in fields:
            if patch.category_id is None:
                raise ValidationError("category_id cannot be cleared")
            await get_owned_category(session, user_id, patch.category_id)

        # Accounts are always locked in id order
        accounts: dict[UUID, AccountRow] = {}
        for account_id in sorted({old_account_id, new_account_id}, key=str):
            accounts[account_id] = await get_owned_account(session, user_id, account_id, for_update=True)

        moved = new_account_id != old_account_id
        if moved:
            if not accounts[new_account_id].is_active:
                raise ValidationError(f"Account {new_account_id} is archived")
            if row.external_id is not None:
                await self._ensure_external_id_free(session, new_account_id, row.external_id)

        for name in fields:
            value = getattr(patch, name)
            if name == "amount":
                value = new_amount
            elif name == "tags":
                value = list(value or [])
            setattr(row, name, value)
        await self._flush_unique(session, row.external_id)

        if moved:
            await self._apply_delta(session, accounts[old_account_id], -old_amount)
            await self._apply_delta(session, accounts[new_account_id], new_amount)
        else:
            await self._apply_delta(session, accounts[old_account_id], new_amount - old_amount)
        await self._verify(session, accounts.values())

        change = LedgerChange(
            kind=ChangeKind.UPDATED,
            user_id=user_id,
            transaction_id=row.id,
            account_ids=list(accounts),
            spending_keys=spending_keys(
                user_id, [old_entry, (row.category_id, row.date, row.amount)]
            ),
        )
        alerts = await self._publish(session, change)

        self._logger.info(
            "transaction_updated",
            transaction_id=str(row.id),
            fields=sorted(fields),
            moved=moved,
        )
        return MutationResult(transaction=Transaction.model_validate(row), alerts=alerts)

    async def delete_transaction(
        self,
        session: AsyncSession,
        user_id: UUID,
        transaction_id: UUID,
    ) -> MutationResult:
        """Remove a transaction and reverse its amount from the balance."""
        row = await self._get_owned_transaction(session, user_id, transaction_id)
        account = await get_owned_account(session, user_id, row.account_id, for_update=True)
        snapshot = Transaction.model_validate(row)

        await session.delete(row)
        await session.flush()

        await self._apply_delta(session, account, -snapshot.amount)
        await self._verify(session, [account])

        change = LedgerChange(
            kind=ChangeKind.DELETED,
            user_id=user_id,
            transaction_id=snapshot.id,
            account_ids=[account.id],
            spending_keys=spending_keys(
                user_id, [(snapshot.category_id, snapshot.date, snapshot.amount)]
            ),
        )
        alerts = await self._publish(session, change)

        self._logger.info(
            "transaction_deleted",
            transaction_id=str(snapshot.id),
            account_id=str(account.id),
            amount=str(snapshot.amount),
        )
        return MutationResult(transaction=snapshot, alerts=alerts)

    # =========================================================================
    # READS
    # =========================================================================

    async def get_account_balance_report(
        self,
        session: AsyncSession,
        account_id: UUID,
    ) -> BalanceReport:
        """Stored balance next to the recomputed one. Read-only."""
        account = await session.get(AccountRow, account_id)
        if account is None:
            raise NotFoundError("Account", account_id)
        amounts = await account_transaction_amounts(session, account_id)
        return BalanceReport(
            account_id=account_id,
            stored_balance=account.balance,
            computed_balance=sum_money(amounts),
            transaction_count=len(amounts),
        )

    # =========================================================================
    # INTERNALS
    # =========================================================================

    @staticmethod
    def _require_amount(amount: Optional[MoneyInput]) -> Decimal:
        if amount is None:
            raise ValidationError("Amount is required")
        amount = quantize_money(amount)
        if amount == 0:
            raise ValidationError("Amount must not be zero")
        return amount

    @staticmethod
    def _require_payee(payee: Optional[str]) -> str:
        payee = (payee or "").strip()
        if not payee:
            raise ValidationError("Payee is required")
        return payee

    async def _get_owned_transaction(
        self,
        session: AsyncSession,
        user_id: UUID,
        transaction_id: UUID,
    ) -> TransactionRow:
        stmt = (
            select(TransactionRow)
            .where(TransactionRow.id == transaction_id, TransactionRow.user_id == user_id)
            .with_for_update()
        )
        row = (await session.execute(stmt)).scalar_one_or_none()
        if row is None:
            raise NotFoundError("Transaction", transaction_id)
        return row

    async def _ensure_external_id_free(
        self,
        session: AsyncSession,
        account_id: UUID,
        external_id: str,
    ) -> None:
        stmt = select(TransactionRow.id).where(
            TransactionRow.account_id == account_id,
            TransactionRow.external_id == external_id,
        )
        existing_id = (await session.execute(stmt)).scalar_one_or_none()
        if existing_id is not None:
            raise ConflictError(
                f"external_id {external_id!r} already imported on account {account_id}",
                existing_id=existing_id,
            )

    async def _flush_unique(self, session: AsyncSession, external_id: Optional[str]) -> None:
        # A concurrent import of the same external_id surfaces here
        try:
            await session.flush()
        except IntegrityError as e:
            if external_id is None:
                raise
            raise ConflictError(f"external_id {external_id!r} already imported") from e

    async def _apply_delta(self, session: AsyncSession, account: AccountRow, delta: Decimal) -> None:
        if delta == 0:
            return
        await session.execute(
            update(AccountRow)
            .where(AccountRow.id == account.id)
            .values(balance=AccountRow.balance + delta)
            .execution_options(synchronize_session=False)
        )
        await session.refresh(account, attribute_names=["balance"])

    async def _verify(self, session: AsyncSession, accounts: Iterable[AccountRow]) -> None:
        if not self._settings.verify_invariant:
            return
        for account in accounts:
            computed = sum_money(await account_transaction_amounts(session, account.id))
            if account.balance != computed:
                self._logger.critical(
                    "balance_invariant_violated",
                    account_id=str(account.id),
                    stored_balance=str(account.balance),
                    computed_balance=str(computed),
                )
                raise InvariantViolationError(account.id, account.balance, computed)

    async def _publish(self, session: AsyncSession, change: LedgerChange) -> list[TriggeredAlert]:
        alerts: list[TriggeredAlert] = []
        for listener in self._listeners:
            alerts.extend(await listener(session, change))
        return alerts
