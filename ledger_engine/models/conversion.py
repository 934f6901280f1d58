"""
Currency conversion models.

A conversion run re-denominates a user's whole dataset. The run row is the
only record of progress: it is committed as IN_PROGRESS before any data is
touched and ends either COMPLETED (with counts) or FAILED (with a message).
"""

import datetime as dt
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict


class ConversionStatus(str, Enum):
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class ConversionState(str, Enum):
    """What get_status reports for a user."""
    IN_PROGRESS = "IN_PROGRESS"
    IDLE = "IDLE"


class ConversionRun(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: UUID
    from_currency: str
    to_currency: str
    exchange_rate: Optional[Decimal] = None
    status: ConversionStatus
    transactions_converted: int = 0
    accounts_converted: int = 0
    budgets_converted: int = 0
    goals_converted: int = 0
    started_at: dt.datetime
    completed_at: Optional[dt.datetime] = None
    duration_ms: Optional[int] = None
    error_message: Optional[str] = None


class ConversionResult(BaseModel):
    """Returned by a successful convert()."""

    run_id: UUID
    from_currency: str
    to_currency: str
    exchange_rate: Decimal
    transactions_converted: int
    accounts_converted: int
    budgets_converted: int
    goals_converted: int
    duration_ms: int


class ConversionStatusView(BaseModel):
    state: ConversionState
    run_id: Optional[UUID] = None
    from_currency: Optional[str] = None
    to_currency: Optional[str] = None
    started_at: Optional[dt.datetime] = None


class ExchangeRateQuote(BaseModel):
    from_currency: str
    to_currency: str
    date: dt.date
    rate: Decimal
