"""Shared dependencies for priceledger web routes.

Usage:
    from fastapi import Depends
    from priceledger.web.dependencies import get_ledger

    @router.get("/thing")
    async def thing(ledger: Ledger = Depends(get_ledger)):
        ...
"""

from __future__ import annotations

from priceledger.config import get_config
from priceledger.db.connection import get_session_factory
from priceledger.ledger import Ledger, build_ledger

# Process-wide ledger services; the recorder's lock registry must be shared
_ledger: Ledger | None = None


def get_ledger() -> Ledger:
    """Get the singleton Ledger wired to the configured database."""
    global _ledger
    if _ledger is None:
        _ledger = build_ledger(get_session_factory(), get_config().ledger)
    return _ledger


def reset_ledger() -> None:
    """Forget the cached Ledger (called when the database engine is closed)."""
    global _ledger
    _ledger = None
