"""
Tests for exchange rate sources.

The HTTP source is exercised against httpx.MockTransport; no test
touches the network.
"""

from datetime import date, timedelta
from decimal import Decimal

import httpx
import pytest
from sqlalchemy import func, select, update

from ledger_engine.config import ExchangeRateSettings
from ledger_engine.exceptions import ExternalServiceUnavailableError
from ledger_engine.rates import CachedExchangeRateSource, ExchangeRateApiSource
from ledger_engine.storage.database import unit_of_work
from ledger_engine.storage.tables import ExchangeRateRow
from ledger_engine.utils import utc_now

from tests.conftest import TODAY, FakeRateSource, fixed_today


def _settings(**overrides):
    fields = {
        "api_key": "test-key",
        "base_url": "https://rates.test/v6",
        "max_attempts": 3,
        "retry_min_wait_seconds": 0,
        "retry_max_wait_seconds": 0,
    }
    fields.update(overrides)
    return ExchangeRateSettings(**fields)


def _source(handler, **overrides):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return ExchangeRateApiSource(_settings(**overrides), client=client, today=fixed_today)


def _success(rates):
    return httpx.Response(200, json={"result": "success", "conversion_rates": rates})


class TestExchangeRateApiSource:

    async def test_current_rate_uses_latest_endpoint(self):
        seen = []

        def handler(request):
            seen.append(request.url.path)
            return _success({"EUR": 0.92})

        rate = await _source(handler).get_rate(TODAY, "USD", "EUR")

        assert rate == Decimal("0.92")
        assert seen == ["/v6/test-key/latest/USD"]

    async def test_past_rate_uses_history_endpoint(self):
        seen = []

        def handler(request):
            seen.append(request.url.path)
            return _success({"EUR": 0.9})

        await _source(handler).get_rate(date(2024, 3, 5), "USD", "EUR")

        assert seen == ["/v6/test-key/history/USD/2024/3/5"]

    async def test_server_errors_are_retried(self):
        attempts = []

        def handler(request):
            attempts.append(request)
            if len(attempts) < 3:
                return httpx.Response(503)
            return _success({"EUR": 0.92})

        assert await _source(handler).get_rate(TODAY, "USD", "EUR") == Decimal("0.92")
        assert len(attempts) == 3

    async def test_persistent_outage_raises_after_max_attempts(self):
        attempts = []

        def handler(request):
            attempts.append(request)
            return httpx.Response(502)

        with pytest.raises(ExternalServiceUnavailableError) as exc_info:
            await _source(handler, max_attempts=2).get_rate(TODAY, "USD", "EUR")

        assert len(attempts) == 2
        assert exc_info.value.code == "external_service_unavailable"

    async def test_timeout_is_unavailable(self):
        def handler(request):
            raise httpx.ReadTimeout("too slow", request=request)

        with pytest.raises(ExternalServiceUnavailableError):
            await _source(handler, max_attempts=1).get_rate(TODAY, "USD", "EUR")

    async def test_client_errors_are_not_retried(self):
        attempts = []

        def handler(request):
            attempts.append(request)
            return httpx.Response(404)

        with pytest.raises(ExternalServiceUnavailableError):
            await _source(handler).get_rate(TODAY, "USD", "EUR")
        assert len(attempts) == 1

    async def test_provider_error_result(self):
        def handler(request):
            return httpx.Response(200, json={"result": "error", "error-type": "invalid-key"})

        with pytest.raises(ExternalServiceUnavailableError) as exc_info:
            await _source(handler).get_rate(TODAY, "USD", "EUR")
        assert "invalid-key" in str(exc_info.value)

    async def test_missing_currency(self):
        def handler(request):
            return _success({"GBP": 0.8})

        with pytest.raises(ExternalServiceUnavailableError):
            await _source(handler).get_rate(TODAY, "USD", "EUR")

    async def test_zero_rate_rejected(self):
        def handler(request):
            return _success({"EUR": 0})

        with pytest.raises(ExternalServiceUnavailableError):
            await _source(handler).get_rate(TODAY, "USD", "EUR")

    async def test_missing_api_key(self):
        def handler(request):
            raise AssertionError("no request expected")

        with pytest.raises(ExternalServiceUnavailableError):
            await _source(handler, api_key=None).get_rate(TODAY, "USD", "EUR")

    async def test_same_currency_is_one(self):
        def handler(request):
            raise AssertionError("no request expected")

        assert await _source(handler).get_rate(TODAY, "EUR", "EUR") == Decimal("1")


class TestCachedExchangeRateSource:
    """Fetched rates are stored and reused until they expire."""

    @pytest.fixture
    def inner(self):
        return FakeRateSource(default=Decimal("0.75"))

    @pytest.fixture
    def cache(self, inner, session_factory):
        return CachedExchangeRateSource(inner, session_factory, ExchangeRateSettings(), today=fixed_today)

    async def test_second_lookup_is_a_hit(self, cache, inner):
        first = await cache.get_rate(date(2024, 3, 5), "USD", "EUR")
        second = await cache.get_rate(date(2024, 3, 5), "USD", "EUR")

        assert first == second == Decimal("0.75")
        assert len(inner.calls) == 1

    async def test_pairs_are_cached_separately(self, cache, inner):
        await cache.get_rate(TODAY, "USD", "EUR")
        await cache.get_rate(TODAY, "USD", "GBP")
        await cache.get_rate(TODAY - timedelta(days=1), "USD", "EUR")
        assert len(inner.calls) == 3

    async def test_expired_rate_is_refetched(self, cache, inner, session_factory):
        await cache.get_rate(TODAY, "USD", "EUR")
        async with unit_of_work(session_factory) as session:
            await session.execute(
                update(ExchangeRateRow).values(expires_at=utc_now() - timedelta(minutes=1))
            )

        inner.default = Decimal("0.8")
        assert await cache.get_rate(TODAY, "USD", "EUR") == Decimal("0.8")
        assert len(inner.calls) == 2

        async with session_factory() as session:
            count = (await session.execute(select(func.count(ExchangeRateRow.id)))).scalar_one()
        assert count == 1

    async def test_failures_are_not_cached(self, cache, inner, session_factory):
        inner.fail_on = {TODAY}
        with pytest.raises(ExternalServiceUnavailableError):
            await cache.get_rate(TODAY, "USD", "EUR")

        async with session_factory() as session:
            count = (await session.execute(select(func.count(ExchangeRateRow.id)))).scalar_one()
        assert count == 0

    async def test_same_currency_skips_cache(self, cache, inner):
        assert await cache.get_rate(TODAY, "USD", "USD") == Decimal("1")
        assert inner.calls == []

    async def test_recent_rate_served_when_provider_fails(self, cache, inner):
        await cache.get_rate(TODAY - timedelta(days=1), "USD", "EUR")

        inner.fail_on = {TODAY}
        assert await cache.get_rate(TODAY, "USD", "EUR") == Decimal("0.75")
        assert len(inner.calls) == 2

    async def test_fallback_prefers_the_same_date(self, cache, inner, session_factory):
        march, april = date(2024, 3, 5), date(2024, 4, 5)
        await cache.get_rate(march, "USD", "EUR")
        inner.default = Decimal("0.8")
        await cache.get_rate(april, "USD", "EUR")
        async with unit_of_work(session_factory) as session:
            await session.execute(
                update(ExchangeRateRow).values(expires_at=utc_now() - timedelta(minutes=1))
            )

        inner.fail_on = {march, april}
        assert await cache.get_rate(march, "USD", "EUR") == Decimal("0.75")

    async def test_old_rate_is_not_a_fallback(self, cache, inner, session_factory):
        await cache.get_rate(TODAY - timedelta(days=1), "USD", "EUR")
        async with unit_of_work(session_factory) as session:
            await session.execute(
                update(ExchangeRateRow).values(fetched_at=utc_now() - timedelta(days=8))
            )

        inner.fail_on = {TODAY}
        with pytest.raises(ExternalServiceUnavailableError):
            await cache.get_rate(TODAY, "USD", "EUR")

    async def test_fallback_can_be_disabled(self, inner, session_factory):
        cache = CachedExchangeRateSource(
            inner, session_factory, ExchangeRateSettings(stale_fallback_days=0), today=fixed_today
        )
        await cache.get_rate(TODAY - timedelta(days=1), "USD", "EUR")

        inner.fail_on = {TODAY}
        with pytest.raises(ExternalServiceUnavailableError):
            await cache.get_rate(TODAY, "USD", "EUR")
