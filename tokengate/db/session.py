"""
Database Session Management - Async SQLAlchemy session factory.

Services receive an `async_sessionmaker` at construction; tests inject one
bound to an in-memory database.
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from tokengate.config import settings
from tokengate.observability.tracing import instrument_sqlalchemy

SessionFactory = async_sessionmaker[AsyncSession]

# Global engine instance
_engine: AsyncEngine | None = None

# Session factory
_session_factory: SessionFactory | None = None


def get_engine() -> AsyncEngine:
    """Get or create the database engine."""
    global _engine
    if _engine is None:
        _engine = create_async_engine(
            settings.database_url,
            pool_size=settings.database_pool_size,
            max_overflow=settings.database_max_overflow,
            pool_timeout=settings.database_pool_timeout,
            pool_recycle=settings.database_pool_recycle,
            echo=settings.log_level == "DEBUG",
        )
        instrument_sqlalchemy(_engine)
    return _engine


def get_session_factory() -> SessionFactory:
    """Get or create the session factory."""
    global _session_factory
    if _session_factory is None:
        _session_factory = create_session_factory(get_engine())
    return _session_factory


def create_session_factory(engine: AsyncEngine) -> SessionFactory:
    """Build a session factory for an engine."""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


@asynccontextmanager
async def transaction(factory: SessionFactory) -> AsyncIterator[AsyncSession]:
    """
    Open a session and a transaction; commit on exit, roll back on error.

    Usage:
        async with transaction(factory) as session:
            session.add(...)
    """
    async with factory() as session:
        async with session.begin():
            yield session


async def close_engine() -> None:
    """Close the database engine (for graceful shutdown)."""
    global _engine, _session_factory

    if _engine:
        await _engine.dispose()
        _engine = None
        _session_factory = None
