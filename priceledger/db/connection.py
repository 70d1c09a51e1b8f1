"""Engine and session management for the ledger database.

One process-wide async engine is created lazily from `DATABASE_URL`.
PostgreSQL (asyncpg) gets a pre-pinged connection pool; SQLite (aiosqlite)
gets foreign keys switched on and a busy timeout so concurrent writers
wait for each other instead of failing immediately.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from priceledger.config import DBConfig, get_config
from priceledger.db.models import Base

# Milliseconds a SQLite writer waits for the database lock
SQLITE_BUSY_TIMEOUT_MS = 5000

_engine: AsyncEngine | None = None
_session_factory: sessionmaker | None = None


def is_sqlite(url: str) -> bool:
    return url.lower().startswith("sqlite")


def create_engine_from_config(db_config: DBConfig) -> AsyncEngine:
    """Build an async engine with backend-appropriate settings."""
    if is_sqlite(db_config.url):
        engine = create_async_engine(db_config.url, echo=db_config.echo)

        @event.listens_for(engine.sync_engine, "connect")
        def _sqlite_pragmas(dbapi_connection, connection_record) -> None:
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.execute(f"PRAGMA busy_timeout={SQLITE_BUSY_TIMEOUT_MS}")
            cursor.close()

        return engine

    return create_async_engine(
        db_config.url,
        echo=db_config.echo,
        pool_size=db_config.pool_size,
        max_overflow=db_config.pool_max_overflow,
        pool_timeout=db_config.pool_timeout,
        pool_pre_ping=True,
        pool_recycle=3600,
    )


def get_engine() -> AsyncEngine:
    """Get or create the singleton async engine.

    Raises:
        KeyError: If DATABASE_URL is not configured
    """
    global _engine
    if _engine is None:
        _engine = create_engine_from_config(get_config().db)
    return _engine


def get_session_factory() -> sessionmaker:
    """Get or create the AsyncSession factory bound to the singleton engine."""
    global _session_factory
    if _session_factory is None:
        # Ledger models are read after commit; keep them loaded
        _session_factory = sessionmaker(get_engine(), class_=AsyncSession, expire_on_commit=False)
    return _session_factory


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Session that commits on clean exit and rolls back on error.

    Usage:
        async with get_session() as session:
            await session.execute(stmt)
    """
    session = get_session_factory()()
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency yielding a session."""
    async with get_session() as session:
        yield session


async def init_db(drop: bool = False) -> None:
    """Create the ledger tables if they do not exist.

    Args:
        drop: Drop existing tables first (destroys the ledger; development only)
    """
    async with get_engine().begin() as conn:
        if drop:
            await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    """Dispose the engine; the next get_engine() call creates a fresh one."""
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None
