"""
HTTP exchange rate source (exchangerate-api.com v6 protocol).

Endpoints:
    {base_url}/{api_key}/latest/{FROM}
    {base_url}/{api_key}/history/{FROM}/{YYYY}/{M}/{D}

Both answer ``{"result": "success", "conversion_rates": {"EUR": 0.92, ...}}``.
Responses are parsed with Decimal for floats so a rate never passes
through a binary float.
"""

import datetime as dt
from decimal import Decimal
from typing import Callable, Optional

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ledger_engine.config import ExchangeRateSettings, get_settings
from ledger_engine.exceptions import ExternalServiceUnavailableError
from ledger_engine.rates.interface import ExchangeRateSource
from ledger_engine.utils import quantize_rate


SERVICE_NAME = "exchange_rate_api"

logger = structlog.get_logger(__name__)


class ExchangeRateApiSource(ExchangeRateSource):
    """
    Fetches rates over HTTP with a per-request timeout and bounded,
    exponentially backed-off retries on transport errors and 5xx answers.
    """

    def __init__(
        self,
        settings: Optional[ExchangeRateSettings] = None,
        client: Optional[httpx.AsyncClient] = None,
        today: Callable[[], dt.date] = dt.date.today,
    ):
        """
        Args:
            settings: Provider settings (defaults to environment)
            client: Shared AsyncClient; one is created per request if None
            today: Clock used to pick the latest vs. history endpoint
        """
        self._settings = settings or get_settings().exchange_rate
        self._client = client
        self._today = today

    def _url(self, on_date: dt.date, from_currency: str) -> str:
        base = self._settings.base_url.rstrip("/")
        key = self._settings.api_key
        if on_date >= self._today():
            return f"{base}/{key}/latest/{from_currency}"
        return f"{base}/{key}/history/{from_currency}/{on_date.year}/{on_date.month}/{on_date.day}"

    async def _get(self, url: str) -> httpx.Response:
        if self._client is not None:
            response = await self._client.get(url, timeout=self._settings.timeout_seconds)
        else:
            async with httpx.AsyncClient(timeout=self._settings.timeout_seconds) as client:
                response = await client.get(url)
        if response.status_code >= 500:
            response.raise_for_status()
        return response

    async def _fetch(self, url: str) -> httpx.Response:
        retrying = AsyncRetrying(
            retry=retry_if_exception_type((httpx.TransportError, httpx.HTTPStatusError)),
            stop=stop_after_attempt(self._settings.max_attempts),
            wait=wait_exponential(
                multiplier=self._settings.retry_min_wait_seconds,
                min=self._settings.retry_min_wait_seconds,
                max=self._settings.retry_max_wait_seconds,
            ),
            reraise=True,
        )
        return await retrying(self._get, url)

    async def get_rate(
        self,
        on_date: dt.date,
        from_currency: str,
        to_currency: str,
    ) -> Decimal:
        """Fetch one rate from the provider."""
        if from_currency == to_currency:
            return Decimal("1")
        if not self._settings.api_key:
            raise ExternalServiceUnavailableError(SERVICE_NAME, "API key is not configured")

        url = self._url(on_date, from_currency)
        try:
            response = await self._fetch(url)
        except httpx.TimeoutException as e:
            logger.error("rate_fetch_timeout", date=on_date.isoformat(), from_currency=from_currency)
            raise ExternalServiceUnavailableError(SERVICE_NAME, f"request timed out: {e}") from e
        except httpx.HTTPError as e:
            logger.error("rate_fetch_failed", date=on_date.isoformat(), error=str(e))
            raise ExternalServiceUnavailableError(SERVICE_NAME, f"request failed: {e}") from e

        if response.status_code != 200:
            raise ExternalServiceUnavailableError(
                SERVICE_NAME, f"unexpected status {response.status_code}"
            )

        try:
            payload = response.json(parse_float=Decimal)
        except ValueError as e:
            raise ExternalServiceUnavailableError(SERVICE_NAME, "response is not valid JSON") from e

        if payload.get("result") != "success":
            raise ExternalServiceUnavailableError(
                SERVICE_NAME, f"provider error: {payload.get('error-type', 'unknown')}"
            )

        raw_rate = payload.get("conversion_rates", {}).get(to_currency)
        if raw_rate is None:
            raise ExternalServiceUnavailableError(SERVICE_NAME, f"no rate for {to_currency}")

        rate = quantize_rate(Decimal(str(raw_rate)))
        if rate <= 0:
            raise ExternalServiceUnavailableError(SERVICE_NAME, f"invalid rate {raw_rate}")

        logger.info(
            "rate_fetched",
            date=on_date.isoformat(),
            from_currency=from_currency,
            to_currency=to_currency,
            rate=str(rate),
        )
        return rate
