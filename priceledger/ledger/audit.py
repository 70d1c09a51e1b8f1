"""Audit / recalculation engine for the cached rolling lowest price.

Scans every priceable entity (products first, then variants) in keyset
batches, recomputes the lowest price from the ledger and compares it to the
cached value. Corrections go through `PriceChangeRecorder.refresh_lowest_price`,
the same atomic path a price update uses for its aggregate, so the engine
never rewrites history.

A pass can be interrupted at any batch boundary and simply re-run from the
start; there is no checkpoint state.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable
from datetime import datetime, timedelta

import structlog

from priceledger.errors import LedgerError, NoHistoryError
from priceledger.ledger.calculator import OMNIBUS_WINDOW, lowest_price_in_window
from priceledger.ledger.recorder import PriceChangeRecorder
from priceledger.ledger.repository import LedgerStore
from priceledger.models import (
    BackfillSummary,
    EntityType,
    PriceableEntity,
    PriceMismatch,
    RecalcSummary,
)
from priceledger.utils.clock import utcnow

logger = structlog.get_logger(__name__)

# Products are scanned before variants
SCAN_ORDER = (EntityType.PRODUCT, EntityType.VARIANT)

# Keep the per-run error list readable in API responses
MAX_REPORTED_ERRORS = 50


class PriceAuditEngine:
    """Detects and corrects drift between cached and ledger-derived lowest prices."""

    def __init__(
        self,
        store: LedgerStore,
        recorder: PriceChangeRecorder,
        *,
        batch_size: int = 500,
        window: timedelta = OMNIBUS_WINDOW,
        clock: Callable[[], datetime] = utcnow,
    ):
        if batch_size < 1:
            raise ValueError(f"batch_size must be positive, got {batch_size}")
        self.store = store
        self.recorder = recorder
        self.batch_size = batch_size
        self.window = window
        self.clock = clock

    async def recalc_all(self) -> RecalcSummary:
        """Recompute every entity's lowest price and store corrections.

        One entity's failure is counted and logged; the scan carries on.
        Running this twice without price changes in between reports
        updated=0 on the second run.
        """
        summary = RecalcSummary()
        logger.info("recalc_started", batch_size=self.batch_size)

        async for entity_type, batch in self._batches():
            batch_updated = 0
            for entity in batch:
                summary.checked += 1
                try:
                    refresh = await self.recorder.refresh_lowest_price(entity.ref)
                except NoHistoryError:
                    summary.failed += 1
                    self._record_error(summary.errors, entity, "no price history")
                    logger.error(
                        "ledger_invariant_violated",
                        entity=str(entity.ref),
                        reason="entity has no price history",
                    )
                    continue
                except LedgerError as e:
                    summary.failed += 1
                    self._record_error(summary.errors, entity, str(e))
                    logger.warning("recalc_entity_failed", entity=str(entity.ref), error=str(e))
                    continue
                except Exception as e:
                    summary.failed += 1
                    self._record_error(summary.errors, entity, "unexpected error")
                    logger.exception("recalc_entity_failed", entity=str(entity.ref), error=str(e))
                    continue

                if refresh.updated:
                    summary.updated += 1
                    batch_updated += 1
                else:
                    summary.unchanged += 1

            logger.info(
                "recalc_batch_completed",
                entity_type=entity_type.value,
                size=len(batch),
                updated=batch_updated,
            )

        logger.info(
            "recalc_completed",
            checked=summary.checked,
            updated=summary.updated,
            unchanged=summary.unchanged,
            failed=summary.failed,
        )
        return summary

    async def find_mismatches(self, limit: int = 100) -> list[PriceMismatch]:
        """Read-only drift report, at most `limit` rows."""
        if limit < 1:
            raise ValueError(f"limit must be positive, got {limit}")

        mismatches: list[PriceMismatch] = []
        now = self.clock()

        async for _, batch in self._batches():
            async with self.store.transaction() as repo:
                for listed in batch:
                    # Stored value and history must come from the same snapshot
                    entity = await repo.get_entity(listed.ref)
                    if entity is None:
                        continue
                    history = await repo.load_history(entity.ref)
                    try:
                        computed = lowest_price_in_window(history, now, self.window).price
                    except NoHistoryError:
                        logger.error(
                            "ledger_invariant_violated",
                            entity=str(entity.ref),
                            reason="entity has no price history",
                        )
                        continue

                    stored = entity.lowest_price_30_days
                    if stored is not None and stored == computed:
                        continue

                    mismatches.append(
                        PriceMismatch(
                            entity_type=entity.entity_type,
                            entity_id=entity.id,
                            name=entity.name,
                            stored=stored,
                            computed=computed,
                            delta=abs(computed - stored) if stored is not None else computed,
                        )
                    )
                    if len(mismatches) >= limit:
                        return mismatches

        return mismatches

    async def backfill(self) -> BackfillSummary:
        """Write creation entries for legacy entities that have no ledger yet."""
        summary = BackfillSummary()

        async for _, batch in self._batches():
            for entity in batch:
                summary.checked += 1
                if entity.is_initialized:
                    continue
                try:
                    result = await self.recorder.initialize_entity(entity.ref)
                except LedgerError as e:
                    summary.failed += 1
                    self._record_error(summary.errors, entity, str(e))
                    logger.warning("backfill_entity_failed", entity=str(entity.ref), error=str(e))
                    continue
                except Exception as e:
                    summary.failed += 1
                    self._record_error(summary.errors, entity, "unexpected error")
                    logger.exception(
                        "backfill_entity_failed", entity=str(entity.ref), error=str(e)
                    )
                    continue
                if result is not None:
                    summary.initialized += 1

        logger.info(
            "backfill_completed",
            checked=summary.checked,
            initialized=summary.initialized,
            failed=summary.failed,
        )
        return summary

    async def _batches(self) -> AsyncIterator[tuple[EntityType, list[PriceableEntity]]]:
        """Yield entity batches, each read in its own short transaction."""
        for entity_type in SCAN_ORDER:
            after = None
            while True:
                async with self.store.transaction() as repo:
                    batch = await repo.list_entities(
                        entity_type, after=after, limit=self.batch_size
                    )
                if not batch:
                    break
                yield entity_type, batch
                if len(batch) < self.batch_size:
                    break
                after = batch[-1].id

    @staticmethod
    def _record_error(errors: list[str], entity: PriceableEntity, message: str) -> None:
        if len(errors) < MAX_REPORTED_ERRORS:
            errors.append(f"{entity.ref}: {message}")
