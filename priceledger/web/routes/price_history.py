"""Price history routes for the priceledger API.

Routes:
- GET  /price-history/product/{product_id}          - Paginated product ledger
- GET  /price-history/variant/{variant_id}          - Paginated variant ledger
- POST /price-history/product/{product_id}/update   - Admin price update (product)
- POST /price-history/variant/{variant_id}/update   - Admin price update (variant)
- POST /price-history/recalculate                   - Recalculate every cached lowest price
- GET  /price-history/audit/mismatches              - Read-only drift report
- GET  /price-history/audit/stats                   - Ledger statistics
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query

from priceledger.errors import ConcurrencyConflict, NotFoundError, ValidationError
from priceledger.ledger import Ledger
from priceledger.ledger.queries import get_history, get_ledger_stats
from priceledger.models import EntityRef, PriceChangeSource
from priceledger.web.auth import require_admin
from priceledger.web.dependencies import get_ledger
from priceledger.web.models import (
    DEFAULT_UPDATE_REASON,
    HistoryResponse,
    LedgerStatsOut,
    MismatchOut,
    MismatchResponse,
    PriceUpdateRequest,
    PriceUpdateResponse,
    RecalcResponse,
)

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/price-history", tags=["price-history"])


@contextmanager
def ledger_errors(operation: str) -> Iterator[None]:
    """Translate ledger errors into HTTP responses.

    Unexpected failures become a generic 500 so storage details never leak.
    """
    try:
        yield
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    except ConcurrencyConflict as e:
        logger.warning("price_update_conflict_exhausted", operation=operation, error=str(e))
        raise HTTPException(
            status_code=409, detail="Price is being updated concurrently, please retry"
        ) from e
    except HTTPException:
        raise
    except Exception as e:
        logger.exception("ledger_operation_failed", operation=operation)
        raise HTTPException(status_code=500, detail=f"Failed to {operation}") from e


# ============================================================================
# History
# ============================================================================


async def _history(ref: EntityRef, limit: int | None, offset: int, ledger: Ledger):
    config = ledger.config
    with ledger_errors("fetch price history"):
        page = await get_history(
            ledger.store,
            ref,
            limit=config.history_page_limit if limit is None else limit,
            offset=offset,
            max_limit=config.history_page_max,
        )
    return HistoryResponse.from_page(page)


@router.get("/product/{product_id}", response_model=HistoryResponse)
async def product_history(
    product_id: UUID,
    limit: int | None = Query(default=None),
    offset: int = Query(default=0),
    ledger: Ledger = Depends(get_ledger),
):
    """Price ledger of one product, newest first."""
    return await _history(EntityRef.product(product_id), limit, offset, ledger)


@router.get("/variant/{variant_id}", response_model=HistoryResponse)
async def variant_history(
    variant_id: UUID,
    limit: int | None = Query(default=None),
    offset: int = Query(default=0),
    ledger: Ledger = Depends(get_ledger),
):
    """Price ledger of one variant, newest first."""
    return await _history(EntityRef.variant(variant_id), limit, offset, ledger)


# ============================================================================
# Updates
# ============================================================================


async def _update(ref: EntityRef, body: PriceUpdateRequest, username: str, ledger: Ledger):
    with ledger_errors("update price"):
        result = await ledger.recorder.update_price(
            ref,
            body.new_price,
            PriceChangeSource.ADMIN,
            changed_by=username,
            reason=body.reason or DEFAULT_UPDATE_REASON,
        )
    return PriceUpdateResponse.from_result(result)


@router.post("/product/{product_id}/update", response_model=PriceUpdateResponse)
async def update_product_price(
    product_id: UUID,
    body: PriceUpdateRequest,
    username: str = Depends(require_admin),
    ledger: Ledger = Depends(get_ledger),
):
    """Admin-sourced price update for a product."""
    return await _update(EntityRef.product(product_id), body, username, ledger)


@router.post("/variant/{variant_id}/update", response_model=PriceUpdateResponse)
async def update_variant_price(
    variant_id: UUID,
    body: PriceUpdateRequest,
    username: str = Depends(require_admin),
    ledger: Ledger = Depends(get_ledger),
):
    """Admin-sourced price update for a variant."""
    return await _update(EntityRef.variant(variant_id), body, username, ledger)


# ============================================================================
# Audit
# ============================================================================


@router.post("/recalculate", response_model=RecalcResponse)
async def recalculate(
    username: str = Depends(require_admin),
    ledger: Ledger = Depends(get_ledger),
):
    """Recompute every cached lowest price and correct drift.

    Runs to completion before responding; schedule the worker job instead
    for very large catalogs.
    """
    logger.info("recalc_requested", requested_by=username)
    with ledger_errors("recalculate lowest prices"):
        summary = await ledger.audit.recalc_all()
    return RecalcResponse(message="Lowest prices recalculated", **summary.model_dump())


@router.get("/audit/mismatches", response_model=MismatchResponse)
async def mismatches(
    limit: int | None = Query(default=None),
    username: str = Depends(require_admin),
    ledger: Ledger = Depends(get_ledger),
):
    """Entities whose cached lowest price differs from the ledger (read-only)."""
    limit = ledger.config.mismatch_limit if limit is None else limit
    with ledger_errors("find mismatches"):
        if limit < 1:
            raise ValidationError("limit must be a positive integer")
        rows = await ledger.audit.find_mismatches(limit=limit)
    return MismatchResponse(count=len(rows), mismatches=[MismatchOut.from_mismatch(m) for m in rows])


@router.get("/audit/stats", response_model=LedgerStatsOut)
async def stats(
    username: str = Depends(require_admin),
    ledger: Ledger = Depends(get_ledger),
):
    """Ledger-wide counters for the compliance overview."""
    with ledger_errors("load ledger statistics"):
        ledger_stats = await get_ledger_stats(ledger.store, window=ledger.config.window)
    return LedgerStatsOut(**ledger_stats.model_dump(), window_days=ledger.config.window_days)
