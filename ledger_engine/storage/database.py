"""
Database engine, session factory and unit-of-work helper.

DESIGN DECISION: Components never open their own connections. They receive
either an AsyncSession (single-transaction operations) or the session
factory (operations that need several independent transactions, like a
conversion run that must commit its IN_PROGRESS marker first).
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from ledger_engine.config import DatabaseSettings, get_settings


class Base(DeclarativeBase):
    """Declarative base for every ledger table."""


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def create_database_engine(settings: Optional[DatabaseSettings] = None) -> AsyncEngine:
    """
    Create the async engine from settings.

    SQLite connections get foreign-key enforcement switched on, since SQLite
    leaves it off by default.
    """
    settings = settings or get_settings().database
    engine = create_async_engine(settings.url, echo=settings.echo)
    if engine.dialect.name == "sqlite":
        event.listen(engine.sync_engine, "connect", _enable_sqlite_foreign_keys)
    return engine


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    # Objects stay readable after commit so results can be built from them.
    return async_sessionmaker(engine, expire_on_commit=False)


async def init_db(engine: AsyncEngine) -> None:
    """Create all tables (idempotent)."""
    # Registers the mapped classes on Base.metadata
    from ledger_engine.storage import tables  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


@asynccontextmanager
async def unit_of_work(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncIterator[AsyncSession]:
    """
    One database transaction.

    Commits when the block exits normally, rolls back and re-raises on any
    exception.

    Usage:
        async with unit_of_work(session_factory) as session:
            await ledger.create_transaction(session, ...)
    """
    async with session_factory() as session:
        async with session.begin():
            yield session
