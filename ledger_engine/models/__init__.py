"""
Data Models Package

This package contains all Pydantic models used by the Ledger Engine.
All data crossing a component boundary must conform to these schemas.
"""

from ledger_engine.models.ledger import (
    LAST_DAY_OF_MONTH,
    RECURRING_TRANSITIONS,
    Account,
    AccountCreate,
    AccountType,
    Budget,
    BudgetAlertThreshold,
    BudgetCreate,
    BudgetHealth,
    BudgetProgress,
    BudgetUpdate,
    Category,
    Goal,
    GoalCreate,
    RecurrenceFrequency,
    RecurringStatus,
    RecurringTemplate,
    RecurringTemplateCreate,
    RecurringTemplateUpdate,
    Transaction,
    TransactionPatch,
    User,
)
from ledger_engine.models.events import (
    BalanceReport,
    ChangeKind,
    GenerationFailure,
    GenerationReport,
    LedgerChange,
    MutationResult,
    SpendingKey,
    TriggeredAlert,
    UpcomingOccurrence,
)
from ledger_engine.models.conversion import (
    ConversionResult,
    ConversionRun,
    ConversionState,
    ConversionStatus,
    ConversionStatusView,
    ExchangeRateQuote,
)
from ledger_engine.models.audit import (
    AuditEvent,
    AuditEventBuilder,
    AuditEventType,
    AuditSeverity,
)

__all__ = [
    # Ledger models
    "LAST_DAY_OF_MONTH",
    "RECURRING_TRANSITIONS",
    "Account",
    "AccountCreate",
    "AccountType",
    "Budget",
    "BudgetAlertThreshold",
    "BudgetCreate",
    "BudgetHealth",
    "BudgetProgress",
    "BudgetUpdate",
    "Category",
    "Goal",
    "GoalCreate",
    "RecurrenceFrequency",
    "RecurringStatus",
    "RecurringTemplate",
    "RecurringTemplateCreate",
    "RecurringTemplateUpdate",
    "Transaction",
    "TransactionPatch",
    "User",
    # Events and results
    "BalanceReport",
    "ChangeKind",
    "GenerationFailure",
    "GenerationReport",
    "LedgerChange",
    "MutationResult",
    "SpendingKey",
    "TriggeredAlert",
    "UpcomingOccurrence",
    # Conversion models
    "ConversionResult",
    "ConversionRun",
    "ConversionState",
    "ConversionStatus",
    "ConversionStatusView",
    "ExchangeRateQuote",
    # Audit models
    "AuditEvent",
    "AuditEventBuilder",
    "AuditEventType",
    "AuditSeverity",
]
