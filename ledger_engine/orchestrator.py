"""
Main Orchestrator for the Ledger Engine

This module ties the components together for callers that do not manage
their own database session:

1. BalanceLedger with BudgetAlertEvaluator subscribed to its change events
2. RecurrenceScheduler generating through the same ledger
3. CurrencyConversionEngine with a cached exchange-rate source
4. Account / budget / goal / profile services

DESIGN DECISION: The orchestrator owns the unit-of-work boundary. Each
facade call is one database transaction; audit events are written only
after that transaction commits, so the audit trail never records work
that was rolled back. An invariant violation is the exception: it is
audited after the rollback because it signals a defect.

Callers that compose several operations into one transaction use the
components directly with their own session (see ``unit_of_work``).
"""

import datetime as dt
from collections.abc import Awaitable, Callable
from typing import Optional, TypeVar
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from ledger_engine.audit import AuditLogger
from ledger_engine.config import DatabaseSettings, Settings, get_settings
from ledger_engine.exceptions import InvariantViolationError
from ledger_engine.models.conversion import (
    ConversionResult,
    ConversionRun,
    ConversionStatusView,
    ExchangeRateQuote,
)
from ledger_engine.models.events import (
    BalanceReport,
    GenerationReport,
    MutationResult,
    TriggeredAlert,
    UpcomingOccurrence,
)
from ledger_engine.models.ledger import (
    Account,
    AccountCreate,
    Budget,
    BudgetAlertThreshold,
    BudgetCreate,
    BudgetProgress,
    BudgetUpdate,
    Category,
    Goal,
    GoalCreate,
    RecurringTemplate,
    RecurringTemplateCreate,
    RecurringTemplateUpdate,
    TransactionPatch,
    User,
)
from ledger_engine.rates import (
    CachedExchangeRateSource,
    ExchangeRateApiSource,
    ExchangeRateSource,
)
from ledger_engine.services import (
    AccountService,
    BalanceLedger,
    BudgetAlertEvaluator,
    BudgetService,
    CurrencyConversionEngine,
    GoalService,
    ProfileService,
    RecurrenceScheduler,
)
from ledger_engine.storage import (
    SqlAuditStorage,
    create_database_engine,
    create_session_factory,
    unit_of_work,
)
from ledger_engine.utils import MoneyInput, utc_now


T = TypeVar("T")


class LedgerEngine:
    """
    Facade over every ledger component.

    Components are exposed as attributes (``ledger``, ``scheduler``,
    ``conversion``...) for callers that need session-level control.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        rate_source: ExchangeRateSource,
        settings: Optional[Settings] = None,
        audit_logger: Optional[AuditLogger] = None,
        today: Callable[[], dt.date] = dt.date.today,
    ):
        self._settings = settings or get_settings()
        self._session_factory = session_factory
        self._audit_logger = audit_logger or AuditLogger()
        self._today = today

        ledger_settings = self._settings.ledger
        self.ledger = BalanceLedger(ledger_settings)
        self.evaluator = BudgetAlertEvaluator()
        self.ledger.subscribe(self.evaluator.handle_ledger_change)

        self.scheduler = RecurrenceScheduler(session_factory, self.ledger, self._audit_logger)
        self.conversion = CurrencyConversionEngine(
            session_factory,
            rate_source,
            settings=ledger_settings,
            audit_logger=self._audit_logger,
            today=today,
        )
        self.accounts = AccountService(self.ledger)
        self.budgets = BudgetService(self.evaluator, ledger_settings)
        self.goals = GoalService()
        self.profiles = ProfileService(ledger_settings)

    async def _in_unit_of_work(self, operation: Callable[[AsyncSession], Awaitable[T]]) -> T:
        """Run ``operation`` in one transaction; audit invariant violations."""
        try:
            async with unit_of_work(self._session_factory) as session:
                return await operation(session)
        except InvariantViolationError as e:
            await self._audit_logger.log_invariant_violation(
                account_id=e.account_id,
                stored_balance=e.stored_balance,
                computed_balance=e.computed_balance,
            )
            raise

    async def _audit_alerts(self, user_id: UUID, alerts: list[TriggeredAlert]) -> None:
        if alerts:
            await self._audit_logger.log_budget_alerts(user_id, alerts)

    # =========================================================================
    # USERS, CATEGORIES, ACCOUNTS
    # =========================================================================

    async def create_user(
        self,
        email: str,
        display_name: Optional[str] = None,
        currency: Optional[str] = None,
    ) -> User:
        return await self._in_unit_of_work(
            lambda session: self.profiles.create_user(session, email, display_name, currency)
        )

    async def create_category(self, name: str, user_id: Optional[UUID] = None) -> Category:
        return await self._in_unit_of_work(
            lambda session: self.profiles.create_category(session, name, user_id)
        )

    async def list_categories(self, user_id: UUID) -> list[Category]:
        async with self._session_factory() as session:
            return await self.profiles.list_categories(session, user_id)

    async def open_account(self, user_id: UUID, data: AccountCreate) -> Account:
        account, alerts = await self._in_unit_of_work(
            lambda session: self.accounts.open_account(session, user_id, data)
        )
        await self._audit_alerts(user_id, alerts)
        return account

    async def archive_account(self, user_id: UUID, account_id: UUID) -> Account:
        return await self._in_unit_of_work(
            lambda session: self.accounts.archive_account(session, user_id, account_id)
        )

    async def list_accounts(self, user_id: UUID, include_archived: bool = False) -> list[Account]:
        async with self._session_factory() as session:
            return await self.accounts.list_accounts(session, user_id, include_archived)

    async def reconcile(self, user_id: UUID) -> list[BalanceReport]:
        """Accounts whose stored balance diverges from their transactions."""
        async with self._session_factory() as session:
            return await self.accounts.reconcile(session, user_id)

    async def get_account_balance_report(self, account_id: UUID) -> BalanceReport:
        async with self._session_factory() as session:
            return await self.ledger.get_account_balance_report(session, account_id)

    # =========================================================================
    # TRANSACTIONS
    # =========================================================================

    async def create_transaction(
        self,
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
    ) -> MutationResult:
        result = await self._in_unit_of_work(
            lambda session: self.ledger.create_transaction(
                session,
                user_id,
                account_id,
                date,
                amount,
                payee,
                category_id,
                notes,
                tags,
                is_manual=is_manual,
                external_id=external_id,
            )
        )
        await self._audit_logger.log_transaction_created(
            user_id=user_id,
            transaction_id=result.transaction.id,
            account_id=account_id,
            amount=result.transaction.amount,
            is_manual=is_manual,
        )
        await self._audit_alerts(user_id, result.alerts)
        return result

    async def update_transaction(
        self,
        user_id: UUID,
        transaction_id: UUID,
        patch: TransactionPatch,
    ) -> MutationResult:
        result = await self._in_unit_of_work(
            lambda session: self.ledger.update_transaction(session, user_id, transaction_id, patch)
        )
        await self._audit_logger.log_transaction_updated(
            user_id=user_id,
            transaction_id=transaction_id,
            changed_fields=sorted(patch.model_fields_set),
        )
        await self._audit_alerts(user_id, result.alerts)
        return result

    async def delete_transaction(self, user_id: UUID, transaction_id: UUID) -> MutationResult:
        result = await self._in_unit_of_work(
            lambda session: self.ledger.delete_transaction(session, user_id, transaction_id)
        )
        await self._audit_logger.log_transaction_deleted(
            user_id=user_id,
            transaction_id=transaction_id,
            account_id=result.transaction.account_id,
            amount=result.transaction.amount,
        )
        await self._audit_alerts(user_id, result.alerts)
        return result

    # =========================================================================
    # RECURRING
    # =========================================================================

    async def create_recurring(self, user_id: UUID, data: RecurringTemplateCreate) -> RecurringTemplate:
        return await self.scheduler.create_template(user_id, data)

    async def update_recurring(
        self,
        user_id: UUID,
        template_id: UUID,
        patch: RecurringTemplateUpdate,
    ) -> RecurringTemplate:
        return await self.scheduler.update_template(user_id, template_id, patch)

    async def delete_recurring(self, user_id: UUID, template_id: UUID) -> None:
        await self.scheduler.delete_template(user_id, template_id)

    async def pause_recurring(self, user_id: UUID, template_id: UUID) -> RecurringTemplate:
        return await self.scheduler.pause(user_id, template_id)

    async def resume_recurring(self, user_id: UUID, template_id: UUID) -> RecurringTemplate:
        return await self.scheduler.resume(user_id, template_id)

    async def cancel_recurring(self, user_id: UUID, template_id: UUID) -> RecurringTemplate:
        return await self.scheduler.cancel(user_id, template_id)

    async def list_upcoming(self, user_id: UUID, days: Optional[int] = None) -> list[UpcomingOccurrence]:
        return await self.scheduler.list_upcoming(
            user_id,
            self._today(),
            days or self._settings.ledger.upcoming_days,
        )

    async def run_due_generation(
        self,
        as_of: Optional[dt.date] = None,
        user_id: Optional[UUID] = None,
    ) -> GenerationReport:
        return await self.scheduler.run_due_generation(as_of or self._today(), user_id)

    # =========================================================================
    # BUDGETS & GOALS
    # =========================================================================

    async def create_budget(self, user_id: UUID, data: BudgetCreate) -> Budget:
        return await self._in_unit_of_work(
            lambda session: self.budgets.create_budget(session, user_id, data)
        )

    async def update_budget(self, user_id: UUID, budget_id: UUID, patch: BudgetUpdate) -> Budget:
        budget, alerts = await self._in_unit_of_work(
            lambda session: self.budgets.update_budget(session, user_id, budget_id, patch)
        )
        await self._audit_alerts(user_id, alerts)
        return budget

    async def reset_budget_alerts(self, user_id: UUID, budget_id: UUID) -> int:
        count = await self._in_unit_of_work(
            lambda session: self.budgets.reset_alerts(session, user_id, budget_id)
        )
        await self._audit_logger.log_budget_alerts_reset(budget_id=budget_id, reset_count=count)
        return count

    async def delete_budget(self, user_id: UUID, budget_id: UUID) -> None:
        await self._in_unit_of_work(
            lambda session: self.budgets.delete_budget(session, user_id, budget_id)
        )

    async def get_budget_progress(self, user_id: UUID, month: str) -> list[BudgetProgress]:
        async with self._session_factory() as session:
            return await self.budgets.get_progress(session, user_id, month)

    async def get_recent_budget_alerts(
        self,
        user_id: UUID,
        month: str,
        within_hours: int = 24,
    ) -> list[TriggeredAlert]:
        """Thresholds of ``month`` that fired in the last ``within_hours`` hours."""
        since = utc_now() - dt.timedelta(hours=within_hours)
        async with self._session_factory() as session:
            return await self.budgets.recent_alerts(session, user_id, month, since)

    async def list_budget_thresholds(self, user_id: UUID, budget_id: UUID) -> list[BudgetAlertThreshold]:
        async with self._session_factory() as session:
            return await self.budgets.list_thresholds(session, user_id, budget_id)

    async def create_goal(self, user_id: UUID, data: GoalCreate) -> Goal:
        return await self._in_unit_of_work(
            lambda session: self.goals.create_goal(session, user_id, data)
        )

    async def update_goal_progress(self, user_id: UUID, goal_id: UUID, current_amount: MoneyInput) -> Goal:
        return await self._in_unit_of_work(
            lambda session: self.goals.update_progress(session, user_id, goal_id, current_amount)
        )

    # =========================================================================
    # CURRENCY
    # =========================================================================

    async def convert_currency(self, user_id: UUID, to_currency: str) -> ConversionResult:
        return await self.conversion.convert(user_id, to_currency)

    async def get_conversion_status(self, user_id: UUID) -> ConversionStatusView:
        return await self.conversion.get_status(user_id)

    async def get_conversion_history(self, user_id: UUID, limit: Optional[int] = None) -> list[ConversionRun]:
        return await self.conversion.get_history(user_id, limit)

    async def get_exchange_rate(
        self,
        from_currency: str,
        to_currency: str,
        on_date: Optional[dt.date] = None,
    ) -> ExchangeRateQuote:
        return await self.conversion.get_exchange_rate(from_currency, to_currency, on_date)


def create_ledger_engine(
    settings: Optional[Settings] = None,
    rate_source: Optional[ExchangeRateSource] = None,
    database: Optional[DatabaseSettings] = None,
) -> tuple[LedgerEngine, AsyncEngine]:
    """
    Factory function to create all engine components.

    Args:
        settings: Settings to build from; loaded from the environment if None
        rate_source: Exchange-rate source. Defaults to the HTTP API wrapped
                    in the persistent rate cache.
        database: Database settings overriding settings.database

    Returns:
        (ledger_engine, database_engine). Call ``init_db(database_engine)``
        before first use and ``database_engine.dispose()`` on shutdown.
    """
    settings = settings or get_settings()

    db_engine = create_database_engine(database or settings.database)
    session_factory = create_session_factory(db_engine)

    audit_logger = AuditLogger(SqlAuditStorage(session_factory))

    if rate_source is None:
        rate_source = CachedExchangeRateSource(
            ExchangeRateApiSource(settings.exchange_rate),
            session_factory,
            settings.exchange_rate,
        )

    engine = LedgerEngine(
        session_factory,
        rate_source,
        settings=settings,
        audit_logger=audit_logger,
    )
    return engine, db_engine
