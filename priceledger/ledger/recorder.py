"""Price change recorder: the only code path that mutates a live price.

Each write is one store transaction that

1. appends a ledger entry (effective_at = now),
2. sets the live price, and
3. recomputes the cached rolling lowest price from the full ledger,

so the ledger head, the live price and the aggregate are committed together
or not at all. Writes to one entity are serialized (in-process lock plus a
version compare-and-swap in the store) and conflicts are retried a bounded
number of times before ConcurrencyConflict reaches the caller.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta
from typing import Any, TypeVar
from uuid import UUID, uuid4

import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from priceledger.errors import ConcurrencyConflict, NotFoundError, ValidationError
from priceledger.ledger.calculator import OMNIBUS_WINDOW, LowestPrice, lowest_price_in_window
from priceledger.ledger.locks import EntityLocks
from priceledger.ledger.repository import LedgerRepository, LedgerStore
from priceledger.models import (
    EntityRef,
    EntityType,
    LowestPriceRefresh,
    PriceableEntity,
    PriceChangeSource,
    PriceHistoryEntry,
    PriceUpdateResult,
    parse_price,
)
from priceledger.utils.clock import utcnow

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class PriceChangeRecorder:
    """Atomic, per-entity serialized writer for the price ledger."""

    def __init__(
        self,
        store: LedgerStore,
        *,
        window: timedelta = OMNIBUS_WINDOW,
        max_attempts: int = 3,
        retry_backoff: float = 0.05,
        clock: Callable[[], datetime] = utcnow,
        locks: EntityLocks | None = None,
    ):
        """Initialize recorder.

        Args:
            store: Ledger store providing atomic transactions
            window: Rolling lowest-price window
            max_attempts: Attempts per write before a conflict is surfaced
            retry_backoff: Initial backoff between attempts (seconds)
            clock: Source of "now" (UTC, timezone-aware)
            locks: Shared per-entity lock registry
        """
        self.store = store
        self.window = window
        self.max_attempts = max_attempts
        self.retry_backoff = retry_backoff
        self.clock = clock
        self.locks = locks or EntityLocks()

    async def update_price(
        self,
        ref: EntityRef,
        new_price: Any,
        source: PriceChangeSource,
        changed_by: str | None = None,
        reason: str | None = None,
    ) -> PriceUpdateResult:
        """Record a price change (or re-confirmation) for one entity.

        A call with the current price still appends an entry; the result
        reports price_changed=False for it.

        Raises:
            ValidationError: If new_price is not a finite, non-negative decimal
            NotFoundError: If the entity does not exist
            ConcurrencyConflict: If retries are exhausted
        """
        price = parse_price(new_price)
        source = PriceChangeSource(source)

        async def attempt() -> PriceUpdateResult:
            async with self.store.transaction() as repo:
                entity = await repo.get_entity(ref, lock=True)
                if entity is None:
                    raise NotFoundError(f"{ref.entity_type.value.title()} not found: {ref.entity_id}")
                return await self._write_entry(repo, entity, price, source, changed_by, reason)

        result = await self._serialized(ref, attempt)
        logger.info(
            "price_updated",
            entity=str(ref),
            price=str(result.history_entry.price),
            previous_price=str(result.previous_price) if result.previous_price is not None else None,
            price_changed=result.price_changed,
            lowest_price_30_days=str(result.lowest_price_30_days),
            source=source.value,
            sequence=result.history_entry.sequence,
        )
        return result

    async def register_product(
        self,
        name: str,
        price: Any,
        *,
        source: PriceChangeSource = PriceChangeSource.IMPORT,
        changed_by: str | None = None,
        reason: str | None = None,
        product_id: UUID | None = None,
    ) -> PriceUpdateResult:
        """Create a product together with its first ledger entry."""
        entity = PriceableEntity(
            entity_type=EntityType.PRODUCT,
            id=product_id or uuid4(),
            name=_require_name(name),
            price=parse_price(price),
        )
        return await self._register(entity, source, changed_by, reason)

    async def register_variant(
        self,
        product_id: UUID,
        name: str,
        price: Any,
        *,
        sku: str | None = None,
        source: PriceChangeSource = PriceChangeSource.IMPORT,
        changed_by: str | None = None,
        reason: str | None = None,
        variant_id: UUID | None = None,
    ) -> PriceUpdateResult:
        """Create a variant of an existing product with its first ledger entry.

        Raises:
            NotFoundError: If the owning product does not exist
        """
        entity = PriceableEntity(
            entity_type=EntityType.VARIANT,
            id=variant_id or uuid4(),
            product_id=product_id,
            sku=sku,
            name=_require_name(name),
            price=parse_price(price),
        )
        return await self._register(entity, source, changed_by, reason)

    async def initialize_entity(
        self,
        ref: EntityRef,
        *,
        source: PriceChangeSource = PriceChangeSource.IMPORT,
        changed_by: str | None = None,
        reason: str | None = "Initial ledger entry (backfill)",
    ) -> PriceUpdateResult | None:
        """Write the creation entry for a legacy entity that has no ledger yet.

        Returns:
            The write result, or None if the entity was already initialized

        Raises:
            NotFoundError: If the entity does not exist
        """

        async def attempt() -> PriceUpdateResult | None:
            async with self.store.transaction() as repo:
                entity = await repo.get_entity(ref, lock=True)
                if entity is None:
                    raise NotFoundError(f"{ref.entity_type.value.title()} not found: {ref.entity_id}")
                if entity.is_initialized:
                    return None
                return await self._write_entry(
                    repo, entity, entity.price, source, changed_by, reason
                )

        result = await self._serialized(ref, attempt)
        if result is not None:
            logger.info("ledger_initialized", entity=str(ref), price=str(result.entity.price))
        return result

    async def refresh_lowest_price(self, ref: EntityRef) -> LowestPriceRefresh:
        """Recompute the cached lowest price from the ledger and store it if it drifted.

        This is step 3 of a price update on its own: it never writes a ledger
        entry and never touches the live price.

        Raises:
            NotFoundError: If the entity does not exist
            NoHistoryError: If the entity has no ledger entries
            ConcurrencyConflict: If retries are exhausted
        """

        async def attempt() -> LowestPriceRefresh:
            async with self.store.transaction() as repo:
                entity = await repo.get_entity(ref, lock=True)
                if entity is None:
                    raise NotFoundError(f"{ref.entity_type.value.title()} not found: {ref.entity_id}")

                now = self.clock()
                history = await repo.load_history(ref)
                lowest = self._lowest(history, now)

                if history and history[-1].price != entity.price:
                    logger.error(
                        "live_price_diverged",
                        entity=str(ref),
                        live_price=str(entity.price),
                        ledger_price=str(history[-1].price),
                    )

                stored = entity.lowest_price_30_days
                if stored is not None and stored == lowest.price:
                    return LowestPriceRefresh(
                        ref=ref, stored=stored, computed=lowest.price, updated=False
                    )

                await repo.save_lowest_price(
                    ref,
                    expected_version=entity.version,
                    lowest_price=lowest.price,
                    lowest_price_at=lowest.set_at,
                    updated_at=now,
                )
                return LowestPriceRefresh(
                    ref=ref, stored=stored, computed=lowest.price, updated=True
                )

        refresh = await self._serialized(ref, attempt)
        if refresh.updated:
            logger.info(
                "lowest_price_corrected",
                entity=str(ref),
                stored=str(refresh.stored) if refresh.stored is not None else None,
                computed=str(refresh.computed),
            )
        return refresh

    async def _register(
        self,
        entity: PriceableEntity,
        source: PriceChangeSource,
        changed_by: str | None,
        reason: str | None,
    ) -> PriceUpdateResult:
        source = PriceChangeSource(source)

        async def attempt() -> PriceUpdateResult:
            async with self.store.transaction() as repo:
                if entity.product_id is not None:
                    owner = await repo.get_entity(EntityRef.product(entity.product_id))
                    if owner is None:
                        raise NotFoundError(f"Product not found: {entity.product_id}")
                if await repo.get_entity(entity.ref) is not None:
                    raise ValidationError(f"{entity.ref} already exists")

                now = self.clock()
                fresh = entity.model_copy(update={"created_at": now, "updated_at": now})
                await repo.add_entity(fresh)
                return await self._write_entry(
                    repo, fresh, entity.price, source, changed_by, reason
                )

        result = await self._serialized(entity.ref, attempt)
        logger.info(
            "entity_registered",
            entity=str(entity.ref),
            price=str(entity.price),
            source=source.value,
        )
        return result

    async def _write_entry(
        self,
        repo: LedgerRepository,
        entity: PriceableEntity,
        price,
        source: PriceChangeSource,
        changed_by: str | None,
        reason: str | None,
    ) -> PriceUpdateResult:
        """Append an entry, set the live price and refresh the aggregate (one transaction)."""
        history = await repo.load_history(entity.ref)

        now = self.clock()
        if history:
            # Never place a new head behind the current one if the clock stepped back
            now = max(now, history[-1].effective_at)

        # The creation entry has no predecessor
        previous_price = entity.price if history else None
        entry = PriceHistoryEntry(
            entity_type=entity.entity_type,
            entity_id=entity.id,
            sequence=entity.version + 1,
            price=price,
            previous_price=previous_price,
            source=source,
            changed_by=changed_by,
            reason=reason,
            effective_at=now,
        )

        lowest = self._lowest([*history, entry], now)

        await repo.append_entry(entry)
        await repo.save_price(
            entity.ref,
            expected_version=entity.version,
            price=price,
            lowest_price=lowest.price,
            lowest_price_at=lowest.set_at,
            updated_at=now,
        )

        updated = entity.model_copy(
            update={
                "price": price,
                "lowest_price_30_days": lowest.price,
                "lowest_price_30_days_at": lowest.set_at,
                "version": entity.version + 1,
                "updated_at": now,
            }
        )
        return PriceUpdateResult(
            entity=updated,
            history_entry=entry,
            previous_price=previous_price,
            price_changed=previous_price is None or previous_price != price,
            lowest_price_30_days=lowest.price,
        )

    def _lowest(self, history: list[PriceHistoryEntry], at: datetime) -> LowestPrice:
        return lowest_price_in_window(history, at, self.window)

    async def _serialized(self, ref: EntityRef, operation: Callable[[], Awaitable[T]]) -> T:
        """Run one write attempt at a time per entity, retrying on conflicts."""
        async with self.locks.hold(ref):
            retrying = AsyncRetrying(
                stop=stop_after_attempt(self.max_attempts),
                wait=wait_exponential(multiplier=self.retry_backoff, max=2),
                retry=retry_if_exception_type(ConcurrencyConflict),
                before_sleep=_log_conflict(ref),
                reraise=True,
            )
            async for attempt in retrying:
                with attempt:
                    result = await operation()
            return result


def _log_conflict(ref: EntityRef):
    def before_sleep(retry_state) -> None:
        logger.warning(
            "price_update_conflict",
            entity=str(ref),
            attempt=retry_state.attempt_number,
            error=str(retry_state.outcome.exception()),
        )

    return before_sleep


def _require_name(name: str) -> str:
    if not name or not name.strip():
        raise ValidationError("Name is required")
    return name.strip()
