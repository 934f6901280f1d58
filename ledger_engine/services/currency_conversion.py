"""
Currency Conversion Engine

Re-denominates a user's whole dataset into another currency, atomically.

Flow:
1. Validate the target and commit an IN_PROGRESS run (before any data changes)
2. Fetch one rate per distinct transaction date, plus today's rate
3. In ONE unit of work:
   - transaction.amount = quantize(amount x rate(transaction.date))
   - account.balance = sum of its converted transactions
   - budgets and goals converted at today's rate
   - user.currency and the run row (COMPLETED) updated
4. On any failure the rewrite rolls back entirely and the run is marked
   FAILED in a separate unit of work; the error propagates.

DESIGN DECISION: Balances are NEVER multiplied by a rate. Transactions are
converted at their own historical rates, so multiplying the old balance by
today's rate would break balance == sum(transactions). The balance is
recomputed from the converted transactions instead.

Exclusivity: an advisory check for an IN_PROGRESS run, backed by the
partial unique index on currency_conversion_runs, so a race between two
conversions surfaces as ConflictError rather than two runs.
"""

import datetime as dt
import time
from collections import defaultdict
from decimal import Decimal
from typing import Callable, Optional
from uuid import UUID

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ledger_engine.audit.logger import AuditLogger
from ledger_engine.config import LedgerSettings, get_settings
from ledger_engine.exceptions import (
    ConflictError,
    ExternalServiceUnavailableError,
    InvariantViolationError,
    LedgerError,
    ValidationError,
)
from ledger_engine.models.conversion import (
    ConversionResult,
    ConversionRun,
    ConversionState,
    ConversionStatus,
    ConversionStatusView,
    ExchangeRateQuote,
)
from ledger_engine.rates.interface import ExchangeRateSource
from ledger_engine.storage.database import unit_of_work
from ledger_engine.storage.queries import computed_balance, get_user
from ledger_engine.storage.tables import (
    AccountRow,
    BudgetRow,
    CurrencyConversionRunRow,
    GoalRow,
    TransactionRow,
)
from ledger_engine.utils import convert_amount, quantize_rate, sum_money, utc_now


RATE_SERVICE = "exchange_rate"


class CurrencyConversionEngine:
    """
    Converts every monetary value a user owns into a new currency.

    The rate source is only called before the data unit of work opens, so
    no database lock is held while waiting on the network.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        rate_source: ExchangeRateSource,
        settings: Optional[LedgerSettings] = None,
        audit_logger: Optional[AuditLogger] = None,
        today: Callable[[], dt.date] = dt.date.today,
    ):
        self._session_factory = session_factory
        self._rate_source = rate_source
        self._settings = settings or get_settings().ledger
        self._audit_logger = audit_logger or AuditLogger()
        self._today = today
        self._logger = structlog.get_logger(__name__)

    # =========================================================================
    # CONVERSION
    # =========================================================================

    async def convert(self, user_id: UUID, to_currency: str) -> ConversionResult:
        """
        Convert all of a user's data to ``to_currency``.

        Raises:
            ValidationError: Unsupported code, or the user already uses it
            ConflictError: Another conversion is IN_PROGRESS (existing_id is its
                run id), or a transaction on a new date arrived while rates were
                being fetched
            ExternalServiceUnavailableError: The rate source failed; nothing was changed
        """
        to_currency = self._require_supported(to_currency)
        run = await self._start_run(user_id, to_currency)
        from_currency = run.from_currency

        await self._audit_logger.log_conversion_started(
            user_id=user_id,
            run_id=run.id,
            from_currency=from_currency,
            to_currency=to_currency,
        )
        self._logger.info(
            "currency_conversion_started",
            user_id=str(user_id),
            run_id=str(run.id),
            from_currency=from_currency,
            to_currency=to_currency,
        )

        started = time.monotonic()
        try:
            rates = await self._collect_rates(user_id, from_currency, to_currency)
            result = await self._rewrite(user_id, run.id, from_currency, to_currency, rates, started)
        except Exception as e:
            duration_ms = self._elapsed_ms(started)
            await self._mark_failed(run.id, str(e), duration_ms)
            error_code = e.code if isinstance(e, LedgerError) else type(e).__name__
            self._logger.error(
                "currency_conversion_failed",
                user_id=str(user_id),
                run_id=str(run.id),
                error=str(e),
                duration_ms=duration_ms,
            )
            await self._audit_logger.log_conversion_failed(
                user_id=user_id,
                run_id=run.id,
                error_code=error_code,
                error_message=str(e),
            )
            if isinstance(e, ExternalServiceUnavailableError):
                await self._audit_logger.log_external_service_error(
                    service=e.service,
                    error_message=str(e),
                    correlation_id=run.id,
                )
            raise

        await self._audit_logger.log_conversion_completed(
            user_id=user_id,
            run_id=run.id,
            counts={
                "transactions": result.transactions_converted,
                "accounts": result.accounts_converted,
                "budgets": result.budgets_converted,
                "goals": result.goals_converted,
            },
            exchange_rate=result.exchange_rate,
            duration_ms=result.duration_ms,
        )
        self._logger.info(
            "currency_conversion_completed",
            user_id=str(user_id),
            run_id=str(run.id),
            transactions=result.transactions_converted,
            duration_ms=result.duration_ms,
        )
        return result

    async def _start_run(self, user_id: UUID, to_currency: str) -> ConversionRun:
        """Validate the user's side and commit the IN_PROGRESS run."""
        try:
            async with unit_of_work(self._session_factory) as session:
                user = await get_user(session, user_id)
                if user.currency == to_currency:
                    raise ValidationError(f"User already uses {to_currency}")

                existing = await self._in_progress_run(session, user_id)
                if existing is not None:
                    raise ConflictError(
                        "Currency conversion already in progress",
                        existing_id=existing.id,
                    )

                row = CurrencyConversionRunRow(
                    user_id=user_id,
                    from_currency=user.currency,
                    to_currency=to_currency,
                    status=ConversionStatus.IN_PROGRESS,
                    started_at=utc_now(),
                )
                session.add(row)
                await session.flush()
                return ConversionRun.model_validate(row)
        except IntegrityError as e:
            # Lost the race against a concurrent start
            raise ConflictError("Currency conversion already in progress") from e

    async def _collect_rates(
        self,
        user_id: UUID,
        from_currency: str,
        to_currency: str,
    ) -> dict[dt.date, Decimal]:
        """
        One rate per distinct transaction date, plus today's.

        Dates on or after today use today's rate.
        """
        today = self._today()
        async with self._session_factory() as session:
            dates = (await session.execute(
                select(TransactionRow.date).where(TransactionRow.user_id == user_id).distinct()
            )).scalars().all()

        rates: dict[dt.date, Decimal] = {}
        for rate_date in sorted({min(day, today) for day in dates} | {today}):
            rates[rate_date] = await self._fetch_rate(rate_date, from_currency, to_currency)
        return rates

    async def _fetch_rate(self, on_date: dt.date, from_currency: str, to_currency: str) -> Decimal:
        try:
            rate = await self._rate_source.get_rate(on_date, from_currency, to_currency)
        except LedgerError:
            raise
        except Exception as e:
            raise ExternalServiceUnavailableError(RATE_SERVICE, str(e)) from e
        if rate is None or not isinstance(rate, Decimal) or not rate.is_finite() or rate <= 0:
            raise ExternalServiceUnavailableError(
                RATE_SERVICE,
                f"Invalid rate {rate!r} for {from_currency}/{to_currency} on {on_date.isoformat()}",
            )
        return quantize_rate(rate)

    async def _rewrite(
        self,
        user_id: UUID,
        run_id: UUID,
        from_currency: str,
        to_currency: str,
        rates: dict[dt.date, Decimal],
        started: float,
    ) -> ConversionResult:
        today = self._today()
        current_rate = rates[today]

        async with unit_of_work(self._session_factory) as session:
            user = await get_user(session, user_id)

            transactions = (await session.execute(
                select(TransactionRow).where(TransactionRow.user_id == user_id).with_for_update()
            )).scalars().all()
            missing = sorted({min(txn.date, today) for txn in transactions} - set(rates))
            if missing:
                raise ConflictError(
                    "Ledger changed during conversion, retry "
                    f"(no rate for {', '.join(day.isoformat() for day in missing)})"
                )

            by_account: dict[UUID, list[Decimal]] = defaultdict(list)
            for txn in transactions:
                txn.amount = convert_amount(txn.amount, rates[min(txn.date, today)])
                by_account[txn.account_id].append(txn.amount)

            accounts = (await session.execute(
                select(AccountRow).where(AccountRow.user_id == user_id).with_for_update()
            )).scalars().all()
            for account in accounts:
                account.balance = sum_money(by_account.get(account.id, []))
                account.currency = to_currency
                account.original_currency = None if account.is_manual else from_currency

            budgets = (await session.execute(
                select(BudgetRow).where(BudgetRow.user_id == user_id)
            )).scalars().all()
            for budget in budgets:
                budget.amount = convert_amount(budget.amount, current_rate)

            goals = (await session.execute(
                select(GoalRow).where(GoalRow.user_id == user_id)
            )).scalars().all()
            for goal in goals:
                goal.target_amount = convert_amount(goal.target_amount, current_rate)
                goal.current_amount = convert_amount(goal.current_amount, current_rate)

            user.currency = to_currency
            await session.flush()

            if self._settings.verify_invariant:
                for account in accounts:
                    computed = await computed_balance(session, account.id)
                    if account.balance != computed:
                        raise InvariantViolationError(account.id, account.balance, computed)

            duration_ms = self._elapsed_ms(started)
            run = await session.get(CurrencyConversionRunRow, run_id)
            run.status = ConversionStatus.COMPLETED
            run.exchange_rate = current_rate
            run.transactions_converted = len(transactions)
            run.accounts_converted = len(accounts)
            run.budgets_converted = len(budgets)
            run.goals_converted = len(goals)
            run.completed_at = utc_now()
            run.duration_ms = duration_ms

        return ConversionResult(
            run_id=run_id,
            from_currency=from_currency,
            to_currency=to_currency,
            exchange_rate=current_rate,
            transactions_converted=len(transactions),
            accounts_converted=len(accounts),
            budgets_converted=len(budgets),
            goals_converted=len(goals),
            duration_ms=duration_ms,
        )

    async def _mark_failed(self, run_id: UUID, message: str, duration_ms: int) -> None:
        async with unit_of_work(self._session_factory) as session:
            run = await session.get(CurrencyConversionRunRow, run_id)
            run.status = ConversionStatus.FAILED
            run.error_message = message[:2000]
            run.completed_at = utc_now()
            run.duration_ms = duration_ms

    # =========================================================================
    # READS
    # =========================================================================

    async def get_status(self, user_id: UUID) -> ConversionStatusView:
        """IN_PROGRESS with the running conversion's details, or IDLE."""
        async with self._session_factory() as session:
            run = await self._in_progress_run(session, user_id)
        if run is None:
            return ConversionStatusView(state=ConversionState.IDLE)
        return ConversionStatusView(
            state=ConversionState.IN_PROGRESS,
            run_id=run.id,
            from_currency=run.from_currency,
            to_currency=run.to_currency,
            started_at=run.started_at,
        )

    async def get_history(self, user_id: UUID, limit: Optional[int] = None) -> list[ConversionRun]:
        """Past runs, most recent first."""
        limit = limit or self._settings.conversion_history_limit
        async with self._session_factory() as session:
            rows = (await session.execute(
                select(CurrencyConversionRunRow)
                .where(CurrencyConversionRunRow.user_id == user_id)
                .order_by(CurrencyConversionRunRow.started_at.desc())
                .limit(limit)
            )).scalars().all()
        return [ConversionRun.model_validate(row) for row in rows]

    async def get_exchange_rate(
        self,
        from_currency: str,
        to_currency: str,
        on_date: Optional[dt.date] = None,
    ) -> ExchangeRateQuote:
        """
        Preview a rate without converting anything.

        Raises:
            ValidationError: Unsupported codes, identical codes, or a future date
        """
        from_currency = self._require_supported(from_currency)
        to_currency = self._require_supported(to_currency)
        if from_currency == to_currency:
            raise ValidationError("Source and target currency are the same")
        today = self._today()
        on_date = on_date or today
        if on_date > today:
            raise ValidationError(f"Cannot fetch a rate for a future date: {on_date.isoformat()}")

        rate = await self._fetch_rate(on_date, from_currency, to_currency)
        return ExchangeRateQuote(
            from_currency=from_currency,
            to_currency=to_currency,
            date=on_date,
            rate=rate,
        )

    # =========================================================================
    # INTERNALS
    # =========================================================================

    def _require_supported(self, currency: Optional[str]) -> str:
        code = (currency or "").strip().upper()
        if code not in self._settings.supported_currency_list:
            raise ValidationError(f"Unsupported currency: {currency!r}")
        return code

    @staticmethod
    async def _in_progress_run(
        session: AsyncSession,
        user_id: UUID,
    ) -> Optional[CurrencyConversionRunRow]:
        stmt = select(CurrencyConversionRunRow).where(
            CurrencyConversionRunRow.user_id == user_id,
            CurrencyConversionRunRow.status == ConversionStatus.IN_PROGRESS,
        )
        return (await session.execute(stmt)).scalar_one_or_none()

    @staticmethod
    def _elapsed_ms(started: float) -> int:
        return int((time.monotonic() - started) * 1000)
