"""Configuration package."""

from ledger_engine.config.settings import (
    DatabaseSettings,
    ExchangeRateSettings,
    LedgerSettings,
    Settings,
    get_settings,
    validate_all_settings,
)

__all__ = [
    "DatabaseSettings",
    "ExchangeRateSettings",
    "LedgerSettings",
    "Settings",
    "get_settings",
    "validate_all_settings",
]
