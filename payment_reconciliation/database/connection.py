"""
Database engine and session management.

Side effects are conditional UPDATEs committed one observation at a time,
so sessions are short-lived and never expire loaded orders on commit.
"""
from collections.abc import AsyncGenerator
from typing import Any

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from payment_reconciliation.config import get_settings
from payment_reconciliation.database.models import Base

# Concurrent SQLite writers wait this long for the write lock
SQLITE_BUSY_TIMEOUT_SECONDS = 30

_engine: AsyncEngine | None = None
_async_session_factory: async_sessionmaker[AsyncSession] | None = None


def build_engine(database_url: str, **overrides: Any) -> AsyncEngine:
    """
    Create an async engine with pool options suited to the backend.

    SQLite gets a busy timeout instead of pool sizing, so racing
    conditional writes queue up rather than failing with ``database is locked``.
    """
    settings = get_settings()
    options: dict[str, Any] = {"echo": settings.database_echo}
    if make_url(database_url).get_backend_name() == "sqlite":
        options["connect_args"] = {"timeout": SQLITE_BUSY_TIMEOUT_SECONDS}
    else:
        options.update(
            pool_size=settings.database_pool_size,
            max_overflow=settings.database_max_overflow,
            pool_pre_ping=True,
            pool_recycle=3600,
        )
    options.update(overrides)
    return create_async_engine(database_url, **options)


def get_engine() -> AsyncEngine:
    """Process-wide engine for ``DATABASE_URL``."""
    global _engine
    if _engine is None:
        _engine = build_engine(get_settings().database_url)
    return _engine


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    global _async_session_factory
    if _async_session_factory is None:
        _async_session_factory = create_session_factory(get_engine())
    return _async_session_factory


async def get_db() -> AsyncGenerator[AsyncSession, Any]:
    """
    FastAPI dependency yielding one session per request.

    The service layer commits after each applied side effect; whatever is
    left pending when the handler returns is committed here, and rolled
    back if the handler raised.
    """
    async with get_session_factory()() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db(engine: AsyncEngine | None = None) -> None:
    """Create the orders, transactions, events and settings tables if missing."""
    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    """Dispose of the process-wide engine."""
    global _engine, _async_session_factory
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _async_session_factory = None
