"""Health check API routes."""

import structlog
from fastapi import APIRouter, Depends, status
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from priceledger.db.connection import get_db
from priceledger.db.models import PriceHistoryModel

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/health", tags=["Health"])


@router.get("", status_code=status.HTTP_200_OK)
async def health_check(db: AsyncSession = Depends(get_db)):
    """Probe the ledger table and report how many entries it holds.

    Reading price_history proves both connectivity and that the schema is
    initialized. Driver errors are logged, not returned.
    """
    try:
        entries = (
            await db.execute(select(func.count()).select_from(PriceHistoryModel))
        ).scalar_one()
    except Exception:
        logger.exception("health_check_failed")
        return {"status": "error", "database": "disconnected"}

    return {"status": "ok", "database": "connected", "ledgerEntries": entries}
