"""
Exchange Rate Source Interface

DESIGN DECISION: The conversion engine only knows this interface.
Concrete sources (HTTP provider, persistent cache, test fakes) are
injected, so conversions are testable without a network.
"""

import datetime as dt
from abc import ABC, abstractmethod
from decimal import Decimal


class ExchangeRateSource(ABC):
    """Provides the rate to multiply a from-currency amount by."""

    @abstractmethod
    async def get_rate(
        self,
        on_date: dt.date,
        from_currency: str,
        to_currency: str,
    ) -> Decimal:
        """
        Rate in effect on a date.

        Args:
            on_date: Historical date, or today for the current rate
            from_currency: ISO 4217 code being converted from
            to_currency: ISO 4217 code being converted to

        Returns:
            Positive Decimal rate

        Raises:
            ExternalServiceUnavailableError: Provider failed, timed out or
                returned no usable rate
        """
        pass
