"""Exchange rate sources."""

from ledger_engine.rates.interface import ExchangeRateSource
from ledger_engine.rates.exchangerate_api import ExchangeRateApiSource
from ledger_engine.rates.cached import CachedExchangeRateSource

__all__ = [
    "ExchangeRateSource",
    "ExchangeRateApiSource",
    "CachedExchangeRateSource",
]
