"""Price ledger: store, rolling calculator, recorder, audit engine and queries."""

from __future__ import annotations

from dataclasses import dataclass

from priceledger.config import LedgerConfig
from priceledger.ledger.audit import PriceAuditEngine
from priceledger.ledger.calculator import (
    OMNIBUS_WINDOW,
    LowestPrice,
    effective_price_at,
    lowest_price_in_window,
)
from priceledger.ledger.locks import EntityLocks
from priceledger.ledger.recorder import PriceChangeRecorder
from priceledger.ledger.repository import LedgerStore, SqlAlchemyLedgerStore


@dataclass
class Ledger:
    """Wired ledger services sharing one store and one lock registry."""

    store: LedgerStore
    recorder: PriceChangeRecorder
    audit: PriceAuditEngine
    config: LedgerConfig


def build_ledger(session_factory, config: LedgerConfig | None = None) -> Ledger:
    """Assemble recorder and audit engine over a SQLAlchemy session factory."""
    config = config or LedgerConfig()
    store = SqlAlchemyLedgerStore(session_factory)
    recorder = PriceChangeRecorder(
        store,
        window=config.window,
        max_attempts=config.update_max_attempts,
        retry_backoff=config.update_retry_backoff,
        locks=EntityLocks(),
    )
    audit = PriceAuditEngine(
        store,
        recorder,
        batch_size=config.recalc_batch_size,
        window=config.window,
    )
    return Ledger(store=store, recorder=recorder, audit=audit, config=config)


__all__ = [
    "OMNIBUS_WINDOW",
    "Ledger",
    "LowestPrice",
    "PriceAuditEngine",
    "PriceChangeRecorder",
    "SqlAlchemyLedgerStore",
    "build_ledger",
    "effective_price_at",
    "lowest_price_in_window",
]
