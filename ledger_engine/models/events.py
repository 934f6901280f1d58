"""
Ledger change events and operation results.

DESIGN DECISION: BalanceLedger does not know about budgets. Each mutation
emits a LedgerChange describing which (user, category, month) outflow
totals moved, and listeners subscribed to the ledger react to it inside
the same unit of work.
"""

import datetime as dt
from collections import defaultdict
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from ledger_engine.models.ledger import Transaction


class ChangeKind(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"


class SpendingKey(BaseModel):
    """Identifies one outflow aggregate: a user's category in a month."""
    model_config = ConfigDict(frozen=True)

    user_id: UUID
    category_id: UUID
    month: str


class LedgerChange(BaseModel):
    """Emitted by BalanceLedger after every successful mutation."""

    kind: ChangeKind
    user_id: UUID
    transaction_id: UUID
    account_ids: list[UUID] = Field(default_factory=list)
    spending_keys: list[SpendingKey] = Field(default_factory=list)

    def categories_by_month(self) -> dict[str, list[UUID]]:
        grouped: dict[str, list[UUID]] = defaultdict(list)
        for key in self.spending_keys:
            if key.category_id not in grouped[key.month]:
                grouped[key.month].append(key.category_id)
        return dict(grouped)


class TriggeredAlert(BaseModel):
    """A budget threshold that was crossed and has just been marked sent."""

    budget_id: UUID
    category_id: UUID
    category_name: str
    month: str
    threshold: int
    percentage: Decimal
    spent_amount: Decimal
    budget_amount: Decimal
    sent_at: dt.datetime


class MutationResult(BaseModel):
    """
    Outcome of a ledger mutation.

    ``transaction`` is the row as written (for deletes, as it was before
    removal); ``alerts`` holds thresholds fired by the change.
    """

    transaction: Transaction
    alerts: list[TriggeredAlert] = Field(default_factory=list)


class GenerationFailure(BaseModel):
    template_id: UUID
    error_code: str
    error_message: str


class GenerationReport(BaseModel):
    """Result of one recurring-generation pass."""

    as_of: dt.date
    processed: int = 0
    created: int = 0
    errors: int = 0
    failures: list[GenerationFailure] = Field(default_factory=list)
    alerts: list[TriggeredAlert] = Field(default_factory=list)

    @property
    def generated_count(self) -> int:
        return self.created


class BalanceReport(BaseModel):
    """Stored versus recomputed balance for one account."""

    account_id: UUID
    stored_balance: Decimal
    computed_balance: Decimal
    transaction_count: int

    @property
    def is_consistent(self) -> bool:
        return self.stored_balance == self.computed_balance


class UpcomingOccurrence(BaseModel):
    template_id: UUID
    account_id: UUID
    payee: str
    amount: Decimal
    date: dt.date
    category_id: Optional[UUID] = None
