"""
Core Data Models for the Ledger Engine

These models define the strict schemas for everything that crosses a
component boundary: read models built from ORM rows, and input models that
validate requests before they reach the ledger.

DESIGN DECISION: Enumerations are closed ``str`` enums and every status
transition is validated against a single table. Money fields are Decimal;
the ORM rows live in ``ledger_engine.storage.tables`` and never leak out of
the services.
"""

import datetime as dt
from decimal import Decimal
from enum import Enum
from typing import Annotated, Optional
from uuid import UUID

from pydantic import (
    AfterValidator,
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)

from ledger_engine.exceptions import ValidationError as LedgerValidationError
from ledger_engine.utils import parse_month, quantize_money


# =============================================================================
# ENUMS - Finite set of valid values
# =============================================================================

class AccountType(str, Enum):
    """Kinds of account a user can hold."""
    CHECKING = "CHECKING"
    SAVINGS = "SAVINGS"
    CREDIT = "CREDIT"
    INVESTMENT = "INVESTMENT"
    CASH = "CASH"


class RecurrenceFrequency(str, Enum):
    """How often a recurring template fires."""
    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    BIWEEKLY = "BIWEEKLY"
    MONTHLY = "MONTHLY"
    YEARLY = "YEARLY"


class RecurringStatus(str, Enum):
    """
    Lifecycle of a recurring template.

    ACTIVE <-> PAUSED, ACTIVE -> COMPLETED (schedule ran past end_date),
    ACTIVE|PAUSED -> CANCELLED. COMPLETED and CANCELLED are terminal.
    """
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return not RECURRING_TRANSITIONS[self]

    def can_transition_to(self, target: "RecurringStatus") -> bool:
        return target in RECURRING_TRANSITIONS[self]


RECURRING_TRANSITIONS: dict[RecurringStatus, frozenset[RecurringStatus]] = {
    RecurringStatus.ACTIVE: frozenset({
        RecurringStatus.PAUSED,
        RecurringStatus.COMPLETED,
        RecurringStatus.CANCELLED,
    }),
    RecurringStatus.PAUSED: frozenset({
        RecurringStatus.ACTIVE,
        RecurringStatus.CANCELLED,
    }),
    RecurringStatus.COMPLETED: frozenset(),
    RecurringStatus.CANCELLED: frozenset(),
}


class BudgetHealth(str, Enum):
    """Traffic-light status of a budget's progress."""
    GOOD = "good"
    WARNING = "warning"
    OVER = "over"


# day_of_month sentinel: always the last day of the month
LAST_DAY_OF_MONTH = -1


def _validate_day_of_month(v: int) -> int:
    if v != LAST_DAY_OF_MONTH and not 1 <= v <= 31:
        raise ValueError("day_of_month must be 1..31 or -1 for the last day")
    return v


def _validate_nonzero_amount(v: Decimal) -> Decimal:
    v = quantize_money(v)
    if v == 0:
        raise ValueError("Amount must not be zero")
    return v


NonZeroAmount = Annotated[Decimal, AfterValidator(_validate_nonzero_amount)]
DayOfMonth = Annotated[int, AfterValidator(_validate_day_of_month)]


# =============================================================================
# READ MODELS - built from ORM rows
# =============================================================================

class User(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    email: str
    display_name: Optional[str] = None
    currency: str


class Category(BaseModel):
    """A spending category. ``user_id`` is None for shared defaults."""
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: Optional[UUID] = None
    name: str


class Account(BaseModel):
    """
    An account and its cached balance.

    INVARIANT: balance == sum(amount) over the account's transactions.
    """
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: UUID
    name: str
    institution: Optional[str] = None
    type: AccountType
    currency: str
    balance: Decimal
    is_active: bool
    is_manual: bool
    last_synced_at: Optional[dt.datetime] = None
    original_currency: Optional[str] = None


class Transaction(BaseModel):
    """A signed money movement. Negative amounts are outflows."""
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: UUID
    account_id: UUID
    date: dt.date
    amount: Decimal
    payee: str
    category_id: UUID
    notes: Optional[str] = None
    tags: list[str] = Field(default_factory=list)
    is_manual: bool
    external_id: Optional[str] = None
    recurring_template_id: Optional[UUID] = None


class RecurringTemplate(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: UUID
    account_id: UUID
    amount: Decimal
    payee: str
    category_id: UUID
    notes: Optional[str] = None
    tags: list[str] = Field(default_factory=list)
    frequency: RecurrenceFrequency
    interval: int
    start_date: dt.date
    end_date: Optional[dt.date] = None
    day_of_month: Optional[int] = None
    day_of_week: Optional[int] = None
    status: RecurringStatus
    next_scheduled_date: dt.date
    last_generated_date: Optional[dt.date] = None


class Budget(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: UUID
    category_id: UUID
    month: str
    amount: Decimal
    rollover: bool


class BudgetAlertThreshold(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    budget_id: UUID
    threshold: int
    sent: bool
    sent_at: Optional[dt.datetime] = None


class BudgetProgress(BaseModel):
    """Spending against one budget for its month."""

    budget_id: UUID
    category_id: UUID
    category_name: str
    month: str
    budget_amount: Decimal
    spent: Decimal
    remaining: Decimal
    percentage: Decimal
    status: BudgetHealth


class Goal(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: UUID
    name: str
    target_amount: Decimal
    current_amount: Decimal
    linked_account_id: Optional[UUID] = None
    target_date: Optional[dt.date] = None


# =============================================================================
# INPUT MODELS - validated requests
# =============================================================================

class TransactionPatch(BaseModel):
    """
    Partial update of a transaction.

    Only fields explicitly set are applied (``model_fields_set``), so
    ``notes=None`` clears the notes while an omitted ``notes`` leaves them.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    account_id: Optional[UUID] = None
    date: Optional[dt.date] = None
    amount: Optional[Decimal] = None
    payee: Optional[str] = Field(default=None, min_length=1, max_length=200)
    category_id: Optional[UUID] = None
    notes: Optional[str] = Field(default=None, max_length=1000)
    tags: Optional[list[str]] = None


class AccountCreate(BaseModel):
    """
    Request to open an account.

    A non-zero opening balance is recorded as an ordinary transaction so
    the balance invariant holds from the first moment.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(..., min_length=1, max_length=100)
    institution: Optional[str] = Field(default=None, max_length=100)
    type: AccountType = AccountType.CHECKING
    currency: Optional[str] = Field(
        default=None,
        description="Defaults to the owner's currency; must match it when given"
    )
    is_manual: bool = True
    opening_balance: Decimal = Decimal("0")
    opening_balance_date: Optional[dt.date] = None
    opening_balance_category_id: Optional[UUID] = None

    @field_validator('currency')
    @classmethod
    def normalize_currency(cls, v: Optional[str]) -> Optional[str]:
        return v.upper() if v else v

    @model_validator(mode='after')
    def validate_opening_balance(self) -> 'AccountCreate':
        if self.opening_balance != 0 and self.opening_balance_category_id is None:
            raise ValueError("opening_balance_category_id is required with a non-zero opening balance")
        return self


class RecurringTemplateCreate(BaseModel):
    """Request to schedule a recurring transaction."""
    model_config = ConfigDict(str_strip_whitespace=True)

    account_id: UUID
    amount: NonZeroAmount
    payee: str = Field(..., min_length=1, max_length=200)
    category_id: UUID
    notes: Optional[str] = Field(default=None, max_length=1000)
    tags: list[str] = Field(default_factory=list)
    frequency: RecurrenceFrequency
    interval: int = Field(default=1, ge=1, le=365)
    start_date: dt.date
    end_date: Optional[dt.date] = None
    day_of_month: Optional[DayOfMonth] = None
    day_of_week: Optional[int] = Field(
        default=None,
        ge=0,
        le=6,
        description="0=Monday .. 6=Sunday"
    )

    @model_validator(mode='after')
    def validate_dates(self) -> 'RecurringTemplateCreate':
        if self.end_date is not None and self.end_date < self.start_date:
            raise ValueError("end_date cannot be before start_date")
        return self


# Fields whose change forces the next date to be recomputed
SCHEDULE_FIELDS = frozenset({
    "frequency", "interval", "start_date", "end_date", "day_of_month", "day_of_week",
})


class RecurringTemplateUpdate(BaseModel):
    """Partial update of a recurring template; only set fields apply."""
    model_config = ConfigDict(str_strip_whitespace=True)

    account_id: Optional[UUID] = None
    amount: Optional[NonZeroAmount] = None
    payee: Optional[str] = Field(default=None, min_length=1, max_length=200)
    category_id: Optional[UUID] = None
    notes: Optional[str] = Field(default=None, max_length=1000)
    tags: Optional[list[str]] = None
    frequency: Optional[RecurrenceFrequency] = None
    interval: Optional[int] = Field(default=None, ge=1, le=365)
    start_date: Optional[dt.date] = None
    end_date: Optional[dt.date] = None
    day_of_month: Optional[DayOfMonth] = None
    day_of_week: Optional[int] = Field(default=None, ge=0, le=6)

    @property
    def changes_schedule(self) -> bool:
        return bool(self.model_fields_set & SCHEDULE_FIELDS)


class BudgetCreate(BaseModel):
    category_id: UUID
    month: str = Field(..., description="Calendar month, YYYY-MM")
    amount: Decimal = Field(..., ge=0)
    rollover: bool = False

    @field_validator('month')
    @classmethod
    def validate_month(cls, v: str) -> str:
        try:
            parse_month(v)
        except LedgerValidationError as e:
            raise ValueError(e.message)
        return v

    @field_validator('amount')
    @classmethod
    def quantize_amount(cls, v: Decimal) -> Decimal:
        return quantize_money(v)


class BudgetUpdate(BaseModel):
    amount: Optional[Decimal] = Field(default=None, ge=0)
    rollover: Optional[bool] = None


class GoalCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(..., min_length=1, max_length=100)
    target_amount: Decimal = Field(..., gt=0)
    current_amount: Decimal = Field(default=Decimal("0"), ge=0)
    linked_account_id: Optional[UUID] = None
    target_date: Optional[dt.date] = None
