"""
Audit Logger

DESIGN DECISION: Every significant action on the ledger is logged.
This provides:
1. Complete traceability of balance-affecting changes
2. Debugging capability for failed conversions and generation passes
3. A permanent record of which budget alerts were fired

The audit logger:
- Is async to not block main flow
- Gracefully handles failures (an audit write never breaks a ledger operation)
- Supports correlation IDs to trace related events
"""

import logging
from decimal import Decimal
from typing import Optional
from uuid import UUID, uuid4

import structlog

from ledger_engine.models.audit import AuditEvent, AuditEventBuilder, AuditSeverity
from ledger_engine.models.events import TriggeredAlert
from ledger_engine.storage.interface import AuditStorageInterface


def configure_logging(level: str = "INFO", json_output: bool = True) -> None:
    """
    Configure structlog for local logging.

    Called once at import with defaults; entry points call it again with
    the configured level and renderer.
    """
    logging.basicConfig(format="%(message)s", level=level.upper())
    renderer = (
        structlog.processors.JSONRenderer()
        if json_output
        else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging()


class AuditLogger:
    """
    Central audit logging service.

    Logs events both to:
    1. Structured local log (for debugging)
    2. Audit storage (for persistence), when configured
    """

    def __init__(
        self,
        storage: Optional[AuditStorageInterface] = None,
    ):
        """
        Initialize audit logger.

        Args:
            storage: Storage backend for persistence.
                    If None, only logs locally.
        """
        self._storage = storage
        self._logger = structlog.get_logger(__name__)

    async def log(self, event: AuditEvent) -> bool:
        """
        Log an audit event.

        Always logs locally. Persists to storage if available.

        Returns True if storage write succeeded (or no storage configured).
        """
        log_dict = event.to_log_dict()

        if event.severity in (AuditSeverity.ERROR, AuditSeverity.CRITICAL):
            self._logger.error("audit_event", **log_dict)
        elif event.severity == AuditSeverity.WARNING:
            self._logger.warning("audit_event", **log_dict)
        else:
            self._logger.info("audit_event", **log_dict)

        if self._storage:
            try:
                return await self._storage.append_event(event)
            except Exception as e:
                # Log failure but don't raise
                self._logger.error(
                    "audit_storage_failed",
                    error=str(e),
                    event_id=str(event.event_id),
                )
                return False

        return True

    async def log_transaction_created(
        self,
        user_id: UUID,
        transaction_id: UUID,
        account_id: UUID,
        amount: Decimal,
        is_manual: bool = True,
    ) -> None:
        """Log transaction creation."""
        await self.log(AuditEventBuilder.transaction_created(
            user_id=user_id,
            transaction_id=transaction_id,
            account_id=account_id,
            amount=amount,
            is_manual=is_manual,
        ))

    async def log_transaction_updated(
        self,
        user_id: UUID,
        transaction_id: UUID,
        changed_fields: list[str],
    ) -> None:
        await self.log(AuditEventBuilder.transaction_updated(
            user_id=user_id,
            transaction_id=transaction_id,
            changed_fields=changed_fields,
        ))

    async def log_transaction_deleted(
        self,
        user_id: UUID,
        transaction_id: UUID,
        account_id: UUID,
        amount: Decimal,
    ) -> None:
        await self.log(AuditEventBuilder.transaction_deleted(
            user_id=user_id,
            transaction_id=transaction_id,
            account_id=account_id,
            amount=amount,
        ))

    async def log_invariant_violation(
        self,
        account_id: UUID,
        stored_balance: Decimal,
        computed_balance: Decimal,
    ) -> None:
        """Log a balance/transaction-sum mismatch."""
        await self.log(AuditEventBuilder.invariant_violation(
            account_id=account_id,
            stored_balance=stored_balance,
            computed_balance=computed_balance,
        ))

    async def log_recurring_generated(
        self,
        user_id: UUID,
        template_id: UUID,
        occurrences: int,
        correlation_id: UUID,
    ) -> None:
        await self.log(AuditEventBuilder.recurring_generated(
            user_id=user_id,
            template_id=template_id,
            occurrences=occurrences,
            correlation_id=correlation_id,
        ))

    async def log_recurring_generation_failed(
        self,
        template_id: UUID,
        error_code: str,
        error_message: str,
        correlation_id: UUID,
    ) -> None:
        await self.log(AuditEventBuilder.recurring_generation_failed(
            template_id=template_id,
            error_code=error_code,
            error_message=error_message,
            correlation_id=correlation_id,
        ))

    async def log_recurring_status_changed(
        self,
        user_id: UUID,
        template_id: UUID,
        old_status: str,
        new_status: str,
    ) -> None:
        await self.log(AuditEventBuilder.recurring_status_changed(
            user_id=user_id,
            template_id=template_id,
            old_status=old_status,
            new_status=new_status,
        ))

    async def log_conversion_started(
        self,
        user_id: UUID,
        run_id: UUID,
        from_currency: str,
        to_currency: str,
    ) -> None:
        await self.log(AuditEventBuilder.conversion_started(
            user_id=user_id,
            run_id=run_id,
            from_currency=from_currency,
            to_currency=to_currency,
        ))

    async def log_conversion_completed(
        self,
        user_id: UUID,
        run_id: UUID,
        counts: dict[str, int],
        exchange_rate: Decimal,
        duration_ms: int,
    ) -> None:
        await self.log(AuditEventBuilder.conversion_completed(
            user_id=user_id,
            run_id=run_id,
            counts=counts,
            exchange_rate=exchange_rate,
            duration_ms=duration_ms,
        ))

    async def log_conversion_failed(
        self,
        user_id: UUID,
        run_id: UUID,
        error_code: str,
        error_message: str,
    ) -> None:
        await self.log(AuditEventBuilder.conversion_failed(
            user_id=user_id,
            run_id=run_id,
            error_code=error_code,
            error_message=error_message,
        ))

    async def log_budget_alerts(
        self,
        user_id: UUID,
        alerts: list[TriggeredAlert],
    ) -> None:
        """Log every fired threshold."""
        for alert in alerts:
            await self.log(AuditEventBuilder.budget_alert_triggered(
                user_id=user_id,
                budget_id=alert.budget_id,
                threshold=alert.threshold,
                percentage=alert.percentage,
            ))

    async def log_budget_alerts_reset(
        self,
        budget_id: UUID,
        reset_count: int,
    ) -> None:
        await self.log(AuditEventBuilder.budget_alerts_reset(
            budget_id=budget_id,
            reset_count=reset_count,
        ))

    async def log_error(
        self,
        error_type: str,
        error_message: str,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log an error."""
        await self.log(AuditEventBuilder.system_error(
            error_type=error_type,
            error_message=error_message,
            details=details,
            correlation_id=correlation_id,
        ))

    async def log_external_service_error(
        self,
        service: str,
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log external service error."""
        await self.log(AuditEventBuilder.external_service_error(
            service=service,
            error_message=error_message,
            correlation_id=correlation_id,
        ))


def create_correlation_id() -> UUID:
    """
    Create a new correlation ID for tracking related events.

    Use this at the start of a new multi-step action (e.g., a generation
    pass). Pass it through all subsequent operations.
    """
    return uuid4()
