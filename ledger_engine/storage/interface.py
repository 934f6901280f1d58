"""
Abstract Audit Storage Interface

DESIGN DECISION: The audit trail is written through an abstract interface.
This allows us to:
1. Keep the trail in the ledger database (SqlAuditStorage)
2. Use in-memory storage for testing
3. Ship events elsewhere later without touching the engine

Audit logs are append-only - we never delete or modify them.
"""

from abc import ABC, abstractmethod
from typing import Optional
from uuid import UUID

from ledger_engine.models.audit import AuditEvent, AuditEventType


class AuditStorageInterface(ABC):
    """
    Abstract interface for audit log storage.

    Any storage implementation must implement these methods.
    """

    @abstractmethod
    async def append_event(self, event: AuditEvent) -> bool:
        """
        Append an audit event to the log.

        Args:
            event: The audit event to log

        Returns:
            True if logged successfully
        """
        pass

    @abstractmethod
    async def get_events_by_correlation_id(
        self,
        correlation_id: UUID,
    ) -> list[AuditEvent]:
        """
        Get all events for a correlation ID (e.g., one conversion run).

        Returns:
            List of related events in chronological order
        """
        pass

    @abstractmethod
    async def get_events_by_entity(
        self,
        entity_type: str,
        entity_id: UUID,
    ) -> list[AuditEvent]:
        """
        Get all events for a specific entity.

        Args:
            entity_type: Type of entity (e.g., 'transaction', 'budget')
            entity_id: The entity's ID

        Returns:
            List of events in chronological order
        """
        pass

    @abstractmethod
    async def get_recent_events(
        self,
        limit: int = 100,
        event_type: Optional[AuditEventType] = None,
    ) -> list[AuditEvent]:
        """
        Get the most recent audit events.

        Args:
            limit: Maximum number of events to return
            event_type: Only return events of this type

        Returns:
            List of recent events (newest first)
        """
        pass
