"""Database connection and session management."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, AsyncGenerator

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from ledger_engine.config import get_settings
from ledger_engine.exceptions import LedgerEngineError, PersistenceError

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine


def get_engine(database_url: str | None = None) -> AsyncEngine:
    """Create async database engine."""
    url = database_url or get_settings().database_url
    if url.startswith("sqlite"):
        return create_async_engine(url, echo=False)
    return create_async_engine(
        url,
        echo=False,
        pool_pre_ping=True,
        pool_size=10,
        max_overflow=20,
    )


def make_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory used by services, workers and tests alike."""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


# Global engine and session factory
_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def init_db() -> tuple[AsyncEngine, async_sessionmaker[AsyncSession]]:
    """Initialize database engine and session factory."""
    global _engine, _session_factory
    if _engine is None or _session_factory is None:
        _engine = get_engine()
        _session_factory = make_session_factory(_engine)
    return _engine, _session_factory


async def create_schema(engine: AsyncEngine) -> None:
    """Create all tables (development and tests)."""
    # Imported for its side effect of registering every mapped table.
    from ledger_engine.models import Base

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


@asynccontextmanager
async def transaction(
    factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """Run one unit of work: commit on success, roll back on any failure.

    Domain errors propagate unchanged; database errors are wrapped in
    PersistenceError with the original exception chained.
    """
    async with factory() as session:
        try:
            async with session.begin():
                yield session
        except LedgerEngineError:
            raise
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Transaction failed: {exc}") from exc
