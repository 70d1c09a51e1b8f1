"""Rolling lowest-price calculator.

Pure functions over one entity's price history. The regulatory "lowest price
in the last 30 days" is the lowest price that was *in effect* at any instant
of the half-open window (T - 720h, T].

Two kinds of entry qualify as candidates:

- every entry whose effective_at falls inside the window, and
- the carry-in: the latest entry at or before the window start. Its price was
  already in force when the window opened, so it counts even though its own
  timestamp lies outside the window.

Taking only the in-window entries is wrong for a price that was set before
the window opened and never changed since; the carry-in covers that case.

Example:
    >>> lowest = lowest_price_in_window(history, at=utcnow())
    >>> lowest.price
    Decimal('80.00')
"""

from __future__ import annotations

from bisect import bisect_right
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Protocol

from priceledger.errors import NoHistoryError
from priceledger.utils.clock import ensure_utc

# 30 x 24h rolling window, UTC, not calendar-aligned
OMNIBUS_WINDOW = timedelta(hours=720)


class PricePoint(Protocol):
    """Anything carrying an effective timestamp and a price (e.g. PriceHistoryEntry)."""

    effective_at: datetime
    price: Decimal


@dataclass(frozen=True)
class LowestPrice:
    """Result of a rolling-window evaluation."""

    price: Decimal
    set_at: datetime  # effective_at of the earliest entry carrying the minimum
    window_start: datetime
    candidates: int
    carried_in: bool  # True when the minimum comes from the carry-in entry


def _ordered(history: Iterable[PricePoint]) -> list[PricePoint]:
    # Stable sort: entries with equal timestamps keep insertion (sequence) order
    return sorted(
        history,
        key=lambda p: (ensure_utc(p.effective_at), getattr(p, "sequence", 0)),
    )


def effective_entry_at(history: Iterable[PricePoint], at: datetime) -> PricePoint | None:
    """Entry whose price was in force at `at` (latest entry with effective_at <= at)."""
    ordered = _ordered(history)
    times = [ensure_utc(p.effective_at) for p in ordered]
    idx = bisect_right(times, ensure_utc(at))
    return ordered[idx - 1] if idx else None


def effective_price_at(history: Iterable[PricePoint], at: datetime) -> Decimal | None:
    """Price in force at `at`, or None if the entity had no price yet."""
    entry = effective_entry_at(history, at)
    return entry.price if entry is not None else None


def lowest_price_in_window(
    history: Iterable[PricePoint],
    at: datetime,
    window: timedelta = OMNIBUS_WINDOW,
) -> LowestPrice:
    """Lowest price in effect during (at - window, at].

    Args:
        history: One entity's ledger entries (any order; sorted ascending here)
        at: Query instant T
        window: Rolling window length (default 720h)

    Returns:
        LowestPrice with the minimum and the entry timestamp that set it

    Raises:
        ValueError: If window is not positive
        NoHistoryError: If no entry has effective_at <= at
    """
    if window <= timedelta(0):
        raise ValueError(f"window must be positive, got {window}")

    at = ensure_utc(at)
    window_start = at - window

    ordered = _ordered(history)
    times = [ensure_utc(p.effective_at) for p in ordered]

    # ordered[:first_in_window] have effective_at <= window_start
    first_in_window = bisect_right(times, window_start)
    # ordered[:end] have effective_at <= at
    end = bisect_right(times, at)

    candidates: Sequence[int] = range(first_in_window, end)
    carry_in = first_in_window - 1 if first_in_window else None
    if carry_in is not None:
        candidates = [carry_in, *candidates]

    if not candidates:
        raise NoHistoryError(f"No price history at or before {at.isoformat()}")

    best = candidates[0]
    for idx in candidates[1:]:
        # Strict comparison keeps the earliest entry among equal prices
        if ordered[idx].price < ordered[best].price:
            best = idx

    return LowestPrice(
        price=ordered[best].price,
        set_at=times[best],
        window_start=window_start,
        candidates=len(candidates),
        carried_in=best == carry_in,
    )
