"""
Persistent exchange rate cache.

Wraps another ExchangeRateSource and stores every fetched rate in the
``exchange_rates`` table. Historical rates are effectively permanent;
the current-date rate expires after ``current_rate_ttl_hours``.

When the wrapped source fails, a rate for the same pair fetched within
``stale_fallback_days`` is served instead (same date preferred, otherwise
the most recently fetched). Without one the failure propagates.

Cache reads and writes run in their own short transactions, never inside
a caller's unit of work.
"""

import datetime as dt
from datetime import timedelta
from decimal import Decimal
from typing import Callable, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ledger_engine.config import ExchangeRateSettings, get_settings
from ledger_engine.exceptions import ExternalServiceUnavailableError
from ledger_engine.rates.interface import ExchangeRateSource
from ledger_engine.storage.database import unit_of_work
from ledger_engine.storage.tables import ExchangeRateRow
from ledger_engine.utils import utc_now


logger = structlog.get_logger(__name__)


class CachedExchangeRateSource(ExchangeRateSource):

    def __init__(
        self,
        inner: ExchangeRateSource,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Optional[ExchangeRateSettings] = None,
        today: Callable[[], dt.date] = dt.date.today,
    ):
        self._inner = inner
        self._session_factory = session_factory
        self._settings = settings or get_settings().exchange_rate
        self._today = today

    def _ttl(self, on_date: dt.date) -> timedelta:
        if on_date < self._today():
            return timedelta(days=self._settings.historical_rate_ttl_days)
        return timedelta(hours=self._settings.current_rate_ttl_hours)

    async def _lookup(self, on_date: dt.date, from_currency: str, to_currency: str) -> Optional[Decimal]:
        stmt = select(ExchangeRateRow.rate).where(
            ExchangeRateRow.date == on_date,
            ExchangeRateRow.from_currency == from_currency,
            ExchangeRateRow.to_currency == to_currency,
            ExchangeRateRow.expires_at > utc_now(),
        )
        async with self._session_factory() as session:
            return (await session.execute(stmt)).scalar_one_or_none()

    async def _stale(self, on_date: dt.date, from_currency: str, to_currency: str) -> Optional[ExchangeRateRow]:
        days = self._settings.stale_fallback_days
        if days == 0:
            return None
        stmt = select(ExchangeRateRow).where(
            ExchangeRateRow.from_currency == from_currency,
            ExchangeRateRow.to_currency == to_currency,
            ExchangeRateRow.fetched_at > utc_now() - timedelta(days=days),
        ).order_by(ExchangeRateRow.fetched_at.desc())
        async with self._session_factory() as session:
            rows = (await session.execute(stmt)).scalars().all()
        for row in rows:
            if row.date == on_date:
                return row
        return rows[0] if rows else None

    async def _store(self, on_date: dt.date, from_currency: str, to_currency: str, rate: Decimal) -> None:
        now = utc_now()
        async with unit_of_work(self._session_factory) as session:
            stmt = select(ExchangeRateRow).where(
                ExchangeRateRow.date == on_date,
                ExchangeRateRow.from_currency == from_currency,
                ExchangeRateRow.to_currency == to_currency,
            )
            row = (await session.execute(stmt)).scalar_one_or_none()
            if row is None:
                row = ExchangeRateRow(
                    date=on_date,
                    from_currency=from_currency,
                    to_currency=to_currency,
                )
                session.add(row)
            row.rate = rate
            row.fetched_at = now
            row.expires_at = now + self._ttl(on_date)

    async def get_rate(
        self,
        on_date: dt.date,
        from_currency: str,
        to_currency: str,
    ) -> Decimal:
        if from_currency == to_currency:
            return Decimal("1")

        cached = await self._lookup(on_date, from_currency, to_currency)
        if cached is not None:
            logger.debug("rate_cache_hit", date=on_date.isoformat(), pair=f"{from_currency}/{to_currency}")
            return cached

        try:
            rate = await self._inner.get_rate(on_date, from_currency, to_currency)
        except ExternalServiceUnavailableError as e:
            stale = await self._stale(on_date, from_currency, to_currency)
            if stale is None:
                raise
            logger.warning(
                "rate_stale_fallback",
                date=on_date.isoformat(),
                cached_date=stale.date.isoformat(),
                pair=f"{from_currency}/{to_currency}",
                error=str(e),
            )
            return stale.rate
        await self._store(on_date, from_currency, to_currency, rate)
        return rate
