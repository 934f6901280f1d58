"""
SQL implementation of audit log storage.

Each append runs in its own short transaction, independent of the ledger
unit of work it describes, so audit writes never hold ledger locks.
"""

from typing import Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ledger_engine.models.audit import AuditEvent, AuditEventType, AuditSeverity
from ledger_engine.storage.database import unit_of_work
from ledger_engine.storage.interface import AuditStorageInterface
from ledger_engine.storage.tables import AuditEventRow


class SqlAuditStorage(AuditStorageInterface):
    """
    Audit events in the ``audit_events`` table.

    Audit events are append-only.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    def _event_to_row(self, event: AuditEvent) -> AuditEventRow:
        """Convert an AuditEvent to a table row."""
        return AuditEventRow(
            event_id=event.event_id,
            timestamp=event.timestamp,
            event_type=event.event_type.value,
            severity=event.severity.value,
            user_id=event.user_id,
            entity_type=event.entity_type,
            entity_id=event.entity_id,
            correlation_id=event.correlation_id,
            description=event.description,
            details=event.details,
            error_code=event.error_code,
            error_message=event.error_message,
        )

    def _row_to_event(self, row: AuditEventRow) -> AuditEvent:
        """Convert a table row to an AuditEvent."""
        return AuditEvent(
            event_id=row.event_id,
            timestamp=row.timestamp,
            event_type=AuditEventType(row.event_type),
            severity=AuditSeverity(row.severity),
            user_id=row.user_id,
            entity_type=row.entity_type,
            entity_id=row.entity_id,
            correlation_id=row.correlation_id,
            description=row.description,
            details=row.details or {},
            error_code=row.error_code,
            error_message=row.error_message,
        )

    # Locked databases (SQLite) and dropped connections are worth a retry
    @retry(
        retry=retry_if_exception_type(OperationalError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    async def append_event(self, event: AuditEvent) -> bool:
        """Append an audit event."""
        async with unit_of_work(self._session_factory) as session:
            session.add(self._event_to_row(event))
        return True

    async def _select(self, stmt) -> list[AuditEvent]:
        async with self._session_factory() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [self._row_to_event(row) for row in rows]

    async def get_events_by_correlation_id(
        self,
        correlation_id: UUID,
    ) -> list[AuditEvent]:
        """Get events by correlation ID."""
        return await self._select(
            select(AuditEventRow)
            .where(AuditEventRow.correlation_id == correlation_id)
            .order_by(AuditEventRow.timestamp)
        )

    async def get_events_by_entity(
        self,
        entity_type: str,
        entity_id: UUID,
    ) -> list[AuditEvent]:
        """Get events by entity."""
        return await self._select(
            select(AuditEventRow)
            .where(
                AuditEventRow.entity_type == entity_type,
                AuditEventRow.entity_id == entity_id,
            )
            .order_by(AuditEventRow.timestamp)
        )

    async def get_recent_events(
        self,
        limit: int = 100,
        event_type: Optional[AuditEventType] = None,
    ) -> list[AuditEvent]:
        """Get recent events, newest first."""
        stmt = select(AuditEventRow)
        if event_type is not None:
            stmt = stmt.where(AuditEventRow.event_type == event_type.value)
        return await self._select(
            stmt.order_by(AuditEventRow.timestamp.desc()).limit(limit)
        )
