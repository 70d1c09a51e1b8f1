"""Pytest configuration and fixtures for priceledger tests.

Provides a controllable clock, a file-backed SQLite ledger and wired
recorder/audit services.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker

from priceledger.config import DBConfig, reset_config
from priceledger.db.connection import create_engine_from_config
from priceledger.db.models import Base
from priceledger.ledger.audit import PriceAuditEngine
from priceledger.ledger.recorder import PriceChangeRecorder
from priceledger.ledger.repository import SqlAlchemyLedgerStore

T0 = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Callable UTC clock that only moves when told to."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now

    def set(self, value: datetime) -> None:
        self.now = value


@pytest.fixture(autouse=True)
def setup_test_env(monkeypatch):
    """Set up test environment variables."""
    monkeypatch.setenv("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
    monkeypatch.setenv("LOG_LEVEL", "DEBUG")
    monkeypatch.delenv("PRICELEDGER_AUTH_DISABLED", raising=False)
    monkeypatch.delenv("ENVIRONMENT", raising=False)
    reset_config()
    yield
    reset_config()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest_asyncio.fixture()
async def session_factory(tmp_path):
    """File-backed SQLite database (several sessions must see the same data)."""
    engine = create_engine_from_config(DBConfig(url=f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}"))
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    try:
        yield factory
    finally:
        await engine.dispose()


@pytest.fixture
def store(session_factory) -> SqlAlchemyLedgerStore:
    return SqlAlchemyLedgerStore(session_factory)


@pytest.fixture
def recorder(store, clock) -> PriceChangeRecorder:
    return PriceChangeRecorder(store, clock=clock, retry_backoff=0)


@pytest.fixture
def audit(store, recorder, clock) -> PriceAuditEngine:
    return PriceAuditEngine(store, recorder, batch_size=2, clock=clock)


@pytest.fixture
def t0() -> datetime:
    """Instant the fake clock starts at."""
    return T0
