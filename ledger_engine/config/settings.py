"""
Configuration Management for the Ledger Engine

Uses pydantic-settings for type-safe configuration from environment variables.

DESIGN DECISION: All configuration is centralized here.
This makes it easy to see what external dependencies exist (the database
and the exchange-rate provider) and ensures all required configuration is
validated at startup.
"""

from functools import lru_cache
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class DatabaseSettings(BaseSettings):
    """Relational store configuration."""

    model_config = SettingsConfigDict(
        env_prefix="LEDGER_DB_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    url: str = Field(
        default="sqlite+aiosqlite:///./ledger.db",
        description="SQLAlchemy async database URL"
    )
    echo: bool = Field(
        default=False,
        description="Echo emitted SQL (debugging only)"
    )


class ExchangeRateSettings(BaseSettings):
    """Exchange-rate provider configuration."""

    model_config = SettingsConfigDict(
        env_prefix="EXCHANGE_RATE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    api_key: Optional[str] = Field(
        default=None,
        description="Exchange rate API key"
    )
    base_url: str = Field(
        default="https://v6.exchangerate-api.com/v6",
        description="Base URL of the exchange rate API"
    )
    timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        le=120,
        description="Per-request timeout for rate fetches"
    )
    max_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Attempts per rate fetch before the conversion aborts"
    )
    retry_min_wait_seconds: float = Field(
        default=2.0,
        ge=0,
        description="Lower bound of the exponential backoff between attempts"
    )
    retry_max_wait_seconds: float = Field(
        default=10.0,
        ge=0,
        description="Upper bound of the exponential backoff between attempts"
    )
    current_rate_ttl_hours: int = Field(
        default=24,
        ge=1,
        description="How long a cached current-date rate stays valid"
    )
    historical_rate_ttl_days: int = Field(
        default=3650,
        ge=1,
        description="How long a cached historical rate stays valid"
    )
    stale_fallback_days: int = Field(
        default=7,
        ge=0,
        description="On provider failure, reuse a cached rate fetched within this many days (0 disables)"
    )


class LedgerSettings(BaseSettings):
    """
    Main ledger settings.

    Loads configuration from environment variables and .env file.
    """

    model_config = SettingsConfigDict(
        env_prefix="LEDGER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    default_currency: str = Field(
        default="USD",
        description="Currency assigned to new users"
    )
    supported_currencies: str = Field(
        default="USD,EUR,GBP,CAD,AUD,JPY,CHF,CNY,INR,BRL",
        description="Comma-separated list of ISO 4217 codes accepted for conversion"
    )
    alert_thresholds: str = Field(
        default="75,90,100",
        description="Comma-separated budget alert thresholds (percent)"
    )
    verify_invariant: bool = Field(
        default=True,
        description="Re-check balance == sum(transactions) after every mutation"
    )
    conversion_history_limit: int = Field(
        default=10,
        ge=1,
        le=100,
        description="Number of conversion runs returned by history"
    )
    upcoming_days: int = Field(
        default=30,
        ge=1,
        le=365,
        description="Default look-ahead window for upcoming recurring transactions"
    )
    log_level: str = Field(
        default="INFO",
        description="Log level for the engine's local logs"
    )
    log_json: bool = Field(
        default=True,
        description="Render local logs as JSON (console renderer otherwise)"
    )

    @field_validator('default_currency')
    @classmethod
    def validate_default_currency(cls, v: str) -> str:
        """Currency codes are three upper-case letters."""
        v = v.strip().upper()
        if len(v) != 3 or not v.isalpha():
            raise ValueError(f"Invalid currency code: {v}")
        return v

    @field_validator('alert_thresholds')
    @classmethod
    def validate_alert_thresholds(cls, v: str) -> str:
        for part in v.split(","):
            if not part.strip().isdigit() or int(part) <= 0:
                raise ValueError(f"Alert thresholds must be positive integers, got: {v}")
        return v

    @property
    def supported_currency_list(self) -> list[str]:
        """Get supported currencies as a list."""
        return [code.strip().upper() for code in self.supported_currencies.split(",") if code.strip()]

    @property
    def alert_threshold_list(self) -> list[int]:
        """Get alert thresholds as a sorted list."""
        return sorted({int(part) for part in self.alert_thresholds.split(",")})


class Settings(BaseSettings):
    """
    Root settings container.

    Aggregates all sub-settings for easy access.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # Note: These are loaded lazily to allow partial configuration

    @property
    def database(self) -> DatabaseSettings:
        return DatabaseSettings()

    @property
    def exchange_rate(self) -> ExchangeRateSettings:
        return ExchangeRateSettings()

    @property
    def ledger(self) -> LedgerSettings:
        return LedgerSettings()


@lru_cache()
def get_settings() -> Settings:
    """
    Get application settings (cached).

    Uses LRU cache to ensure settings are only loaded once.
    Call get_settings.cache_clear() to reload if needed.
    """
    return Settings()


def validate_all_settings() -> dict[str, bool]:
    """
    Validate all settings are properly configured.

    Returns a dict of {setting_name: is_valid}.
    Useful for startup checks.
    """
    results = {}

    settings = get_settings()

    for name in ("database", "exchange_rate", "ledger"):
        try:
            getattr(settings, name)
            results[name] = True
        except Exception as e:
            results[name] = False
            results[f"{name}_error"] = str(e)

    return results
