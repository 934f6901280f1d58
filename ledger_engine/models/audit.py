"""
Audit Models for the Ledger Engine

Every significant action on the ledger is logged for audit purposes.
This provides:
1. Traceability of every balance-affecting change
2. Debugging information when a conversion or generation pass fails
3. A record of which budget alerts were fired and when

DESIGN DECISION: Audit logs are append-only. We never delete or modify them.
Details hold JSON-safe values only; amounts are recorded as strings so
Decimal precision survives serialization.
"""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class AuditEventType(str, Enum):
    """
    Types of events we audit.

    Each engine component has its own group of event types.
    """
    # Balance ledger
    TRANSACTION_CREATED = "transaction_created"
    TRANSACTION_UPDATED = "transaction_updated"
    TRANSACTION_DELETED = "transaction_deleted"
    INVARIANT_VIOLATION = "invariant_violation"

    # Recurring schedules
    RECURRING_GENERATED = "recurring_generated"
    RECURRING_GENERATION_FAILED = "recurring_generation_failed"
    RECURRING_STATUS_CHANGED = "recurring_status_changed"

    # Currency conversion
    CONVERSION_STARTED = "conversion_started"
    CONVERSION_COMPLETED = "conversion_completed"
    CONVERSION_FAILED = "conversion_failed"

    # Budget alerts
    BUDGET_ALERT_TRIGGERED = "budget_alert_triggered"
    BUDGET_ALERTS_RESET = "budget_alerts_reset"

    # System events
    SYSTEM_ERROR = "system_error"
    EXTERNAL_SERVICE_ERROR = "external_service_error"


class AuditSeverity(str, Enum):
    """Severity level for audit events."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class AuditEvent(BaseModel):
    """
    A single audit event.

    This is the core unit of our audit trail.
    Every significant action creates one of these.
    """

    # Identity
    event_id: UUID = Field(
        default_factory=uuid4,
        description="Unique event identifier"
    )
    timestamp: datetime = Field(
        default_factory=_utc_now,
        description="When the event occurred (UTC)"
    )

    # Event classification
    event_type: AuditEventType = Field(
        ...,
        description="Type of event"
    )
    severity: AuditSeverity = Field(
        default=AuditSeverity.INFO,
        description="Event severity"
    )

    # Context - what entity is this about?
    user_id: Optional[UUID] = Field(
        default=None,
        description="Owner of the affected data"
    )
    entity_type: Optional[str] = Field(
        default=None,
        description="Type of entity (e.g., 'transaction', 'recurring_template', 'conversion_run')"
    )
    entity_id: Optional[UUID] = Field(
        default=None,
        description="ID of the entity this event relates to"
    )

    # Correlation - for tracking related events
    correlation_id: Optional[UUID] = Field(
        default=None,
        description="ID to correlate related events (e.g., all events in one generation pass)"
    )

    description: str = Field(
        ...,
        max_length=500,
        description="Human-readable description of what happened"
    )
    details: dict[str, Any] = Field(
        default_factory=dict,
        description="Additional event-specific data"
    )

    # Error information (if applicable)
    error_code: Optional[str] = None
    error_message: Optional[str] = None

    def to_log_dict(self) -> dict:
        """
        Convert to a dictionary suitable for structured logging.
        """
        return {
            "event_id": str(self.event_id),
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type.value,
            "severity": self.severity.value,
            "user_id": str(self.user_id) if self.user_id else None,
            "entity_type": self.entity_type,
            "entity_id": str(self.entity_id) if self.entity_id else None,
            "correlation_id": str(self.correlation_id) if self.correlation_id else None,
            "description": self.description,
            "details": self.details,
            "error_code": self.error_code,
            "error_message": self.error_message,
        }


class AuditEventBuilder:
    """
    Helper class to build audit events with common patterns.

    Usage:
        event = AuditEventBuilder.transaction_created(user_id, transaction_id, account_id, amount)
        event = AuditEventBuilder.conversion_failed(user_id, run_id, "EUR", "rate outage")
    """

    @staticmethod
    def transaction_created(
        user_id: UUID,
        transaction_id: UUID,
        account_id: UUID,
        amount: Decimal,
        is_manual: bool = True,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.TRANSACTION_CREATED,
            user_id=user_id,
            entity_type="transaction",
            entity_id=transaction_id,
            description=f"Transaction created: {amount}",
            details={
                "account_id": str(account_id),
                "amount": str(amount),
                "is_manual": is_manual,
            },
        )

    @staticmethod
    def transaction_updated(
        user_id: UUID,
        transaction_id: UUID,
        changed_fields: list[str],
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.TRANSACTION_UPDATED,
            user_id=user_id,
            entity_type="transaction",
            entity_id=transaction_id,
            description=f"Transaction updated: {', '.join(changed_fields) or 'no changes'}",
            details={"changed_fields": changed_fields},
        )

    @staticmethod
    def transaction_deleted(
        user_id: UUID,
        transaction_id: UUID,
        account_id: UUID,
        amount: Decimal,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.TRANSACTION_DELETED,
            user_id=user_id,
            entity_type="transaction",
            entity_id=transaction_id,
            description=f"Transaction deleted: {amount} reversed",
            details={
                "account_id": str(account_id),
                "amount": str(amount),
            },
        )

    @staticmethod
    def invariant_violation(
        account_id: UUID,
        stored_balance: Decimal,
        computed_balance: Decimal,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.INVARIANT_VIOLATION,
            severity=AuditSeverity.CRITICAL,
            entity_type="account",
            entity_id=account_id,
            description="Account balance diverged from its transactions",
            details={
                "stored_balance": str(stored_balance),
                "computed_balance": str(computed_balance),
            },
            error_code="invariant_violation",
        )

    @staticmethod
    def recurring_generated(
        user_id: UUID,
        template_id: UUID,
        occurrences: int,
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.RECURRING_GENERATED,
            user_id=user_id,
            entity_type="recurring_template",
            entity_id=template_id,
            correlation_id=correlation_id,
            description=f"Generated {occurrences} recurring transaction(s)",
            details={"occurrences": occurrences},
        )

    @staticmethod
    def recurring_generation_failed(
        template_id: UUID,
        error_code: str,
        error_message: str,
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.RECURRING_GENERATION_FAILED,
            severity=AuditSeverity.ERROR,
            entity_type="recurring_template",
            entity_id=template_id,
            correlation_id=correlation_id,
            description="Recurring generation failed",
            error_code=error_code,
            error_message=error_message,
        )

    @staticmethod
    def recurring_status_changed(
        user_id: UUID,
        template_id: UUID,
        old_status: str,
        new_status: str,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.RECURRING_STATUS_CHANGED,
            user_id=user_id,
            entity_type="recurring_template",
            entity_id=template_id,
            description=f"Recurring template {old_status} -> {new_status}",
            details={
                "old_status": old_status,
                "new_status": new_status,
            },
        )

    @staticmethod
    def conversion_started(
        user_id: UUID,
        run_id: UUID,
        from_currency: str,
        to_currency: str,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.CONVERSION_STARTED,
            user_id=user_id,
            entity_type="conversion_run",
            entity_id=run_id,
            correlation_id=run_id,
            description=f"Currency conversion started: {from_currency} -> {to_currency}",
            details={
                "from_currency": from_currency,
                "to_currency": to_currency,
            },
        )

    @staticmethod
    def conversion_completed(
        user_id: UUID,
        run_id: UUID,
        counts: dict[str, int],
        exchange_rate: Decimal,
        duration_ms: int,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.CONVERSION_COMPLETED,
            user_id=user_id,
            entity_type="conversion_run",
            entity_id=run_id,
            correlation_id=run_id,
            description=f"Currency conversion completed in {duration_ms} ms",
            details={
                **counts,
                "exchange_rate": str(exchange_rate),
                "duration_ms": duration_ms,
            },
        )

    @staticmethod
    def conversion_failed(
        user_id: UUID,
        run_id: UUID,
        error_code: str,
        error_message: str,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.CONVERSION_FAILED,
            severity=AuditSeverity.ERROR,
            user_id=user_id,
            entity_type="conversion_run",
            entity_id=run_id,
            correlation_id=run_id,
            description="Currency conversion failed; no data was changed",
            error_code=error_code,
            error_message=error_message,
        )

    @staticmethod
    def budget_alert_triggered(
        user_id: UUID,
        budget_id: UUID,
        threshold: int,
        percentage: Decimal,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.BUDGET_ALERT_TRIGGERED,
            user_id=user_id,
            entity_type="budget",
            entity_id=budget_id,
            description=f"Budget reached {percentage}% (threshold {threshold}%)",
            details={
                "threshold": threshold,
                "percentage": str(percentage),
            },
        )

    @staticmethod
    def budget_alerts_reset(
        budget_id: UUID,
        reset_count: int,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.BUDGET_ALERTS_RESET,
            entity_type="budget",
            entity_id=budget_id,
            description=f"Reset {reset_count} budget alert threshold(s)",
            details={"reset_count": reset_count},
        )

    @staticmethod
    def system_error(
        error_type: str,
        error_message: str,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SYSTEM_ERROR,
            severity=AuditSeverity.ERROR,
            description=f"System error: {error_type}",
            error_message=error_message,
            details=details or {},
            correlation_id=correlation_id,
        )

    @staticmethod
    def external_service_error(
        service: str,
        error_message: str,
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.EXTERNAL_SERVICE_ERROR,
            severity=AuditSeverity.ERROR,
            description=f"External service error: {service}",
            error_message=error_message,
            details={
                "service": service,
            },
            correlation_id=correlation_id,
        )
