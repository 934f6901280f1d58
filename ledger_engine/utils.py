"""
Money and calendar helpers shared by every component.

DESIGN DECISION: Money is decimal.Decimal quantized to cents with
ROUND_HALF_UP. Binary floats are rejected outright rather than converted,
so a float can never leak into a stored amount.
"""

import calendar
import re
from datetime import date, datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Iterable, Union

from ledger_engine.exceptions import ValidationError


# =============================================================================
# MONEY
# =============================================================================

CENT = Decimal("0.01")
RATE_QUANTUM = Decimal("0.00000001")
ZERO = Decimal("0.00")

MoneyInput = Union[Decimal, int, str]


def to_decimal(value: MoneyInput) -> Decimal:
    """Convert to Decimal, refusing floats and garbage."""
    if isinstance(value, bool) or isinstance(value, float):
        raise ValidationError(f"Monetary values must not be {type(value).__name__}: {value!r}")
    if isinstance(value, Decimal):
        result = value
    else:
        try:
            result = Decimal(str(value).strip())
        except InvalidOperation:
            raise ValidationError(f"Not a decimal number: {value!r}")
    if not result.is_finite():
        raise ValidationError(f"Not a finite number: {value!r}")
    return result


def quantize_money(value: MoneyInput) -> Decimal:
    """Round to cents, half up."""
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def quantize_rate(value: MoneyInput) -> Decimal:
    return to_decimal(value).quantize(RATE_QUANTUM, rounding=ROUND_HALF_UP)


def sum_money(values: Iterable[Decimal]) -> Decimal:
    """Exact Decimal sum, quantized to cents."""
    return quantize_money(sum(values, Decimal("0")))


def convert_amount(amount: Decimal, rate: Decimal) -> Decimal:
    return quantize_money(to_decimal(amount) * to_decimal(rate))


# =============================================================================
# CALENDAR
# =============================================================================

_MONTH_PATTERN = re.compile(r"^(\d{4})-(\d{2})$")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def month_key(day: date) -> str:
    """Calendar month of a date as YYYY-MM."""
    return f"{day.year:04d}-{day.month:02d}"


def parse_month(month: str) -> tuple[int, int]:
    """
    Parse a YYYY-MM month key.

    Raises:
        ValidationError: If the key is malformed or the month is out of range
    """
    match = _MONTH_PATTERN.match(month or "")
    if not match:
        raise ValidationError(f"Month must be formatted YYYY-MM, got: {month!r}")
    year, month_number = int(match.group(1)), int(match.group(2))
    if not 1 <= month_number <= 12:
        raise ValidationError(f"Month out of range: {month!r}")
    return year, month_number


def days_in_month(year: int, month: int) -> int:
    return calendar.monthrange(year, month)[1]


def last_day_of_month(year: int, month: int) -> date:
    return date(year, month, days_in_month(year, month))


def month_bounds(month: str) -> tuple[date, date]:
    """First and last day (inclusive) of a YYYY-MM month."""
    year, month_number = parse_month(month)
    return date(year, month_number, 1), last_day_of_month(year, month_number)
