"""Read-only ledger queries (history pages and statistics)."""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timedelta

from priceledger.errors import NotFoundError, ValidationError
from priceledger.ledger.calculator import OMNIBUS_WINDOW
from priceledger.ledger.repository import LedgerStore
from priceledger.models import EntityRef, HistoryPage, LedgerStats
from priceledger.utils.clock import utcnow


async def get_history(
    store: LedgerStore,
    ref: EntityRef,
    limit: int = 50,
    offset: int = 0,
    *,
    max_limit: int = 500,
) -> HistoryPage:
    """Return one page of an entity's ledger, newest first.

    Raises:
        ValidationError: If limit is outside 1..max_limit or offset is negative
        NotFoundError: If the entity does not exist
    """
    if not 1 <= limit <= max_limit:
        raise ValidationError(f"limit must be between 1 and {max_limit}")
    if offset < 0:
        raise ValidationError("offset must be non-negative")

    async with store.transaction() as repo:
        entity = await repo.get_entity(ref)
        if entity is None:
            raise NotFoundError(f"{ref.entity_type.value.title()} not found: {ref.entity_id}")

        entries = await repo.page_history(ref, limit=limit, offset=offset)
        total = await repo.count_history(ref)

    return HistoryPage(ref=ref, entries=entries, limit=limit, offset=offset, total=total)


async def get_ledger_stats(
    store: LedgerStore,
    *,
    window: timedelta = OMNIBUS_WINDOW,
    clock: Callable[[], datetime] = utcnow,
) -> LedgerStats:
    """Ledger-wide counters; window-scoped ones cover (now - window, now]."""
    async with store.transaction() as repo:
        return await repo.ledger_stats(since=clock() - window)
