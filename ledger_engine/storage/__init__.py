"""Persistence package: engine, unit of work, tables and audit storage."""

from ledger_engine.storage.database import (
    Base,
    create_database_engine,
    create_session_factory,
    init_db,
    unit_of_work,
)
from ledger_engine.storage.interface import AuditStorageInterface
from ledger_engine.storage.audit_storage import SqlAuditStorage

__all__ = [
    "Base",
    "create_database_engine",
    "create_session_factory",
    "init_db",
    "unit_of_work",
    "AuditStorageInterface",
    "SqlAuditStorage",
]
