"""arq background worker for scheduled lowest-price recalculation.

Run with:
    arq priceledger.worker.WorkerSettings
"""

from __future__ import annotations

from typing import Any

import structlog
from arq.connections import RedisSettings
from arq.cron import cron

from priceledger.config import get_config
from priceledger.core.logging import configure_logging
from priceledger.db.connection import close_db, get_session_factory
from priceledger.ledger import build_ledger

logger = structlog.get_logger(__name__)


async def startup(ctx: dict[str, Any]) -> None:
    """Initialize resources when worker starts."""
    config = get_config()
    configure_logging(config.log_level, config.log_format)
    ctx["ledger"] = build_ledger(get_session_factory(), config.ledger)
    logger.info("worker_started")


async def shutdown(ctx: dict[str, Any]) -> None:
    """Cleanup resources when worker stops."""
    await close_db()
    logger.info("worker_stopped")


async def recalculate_lowest_prices(ctx: dict[str, Any]) -> dict[str, Any]:
    """Full recalculation pass; safe to re-run after an interruption."""
    summary = await ctx["ledger"].audit.recalc_all()
    return summary.model_dump()


async def backfill_ledger(ctx: dict[str, Any]) -> dict[str, Any]:
    """Initialize ledgers of legacy entities."""
    summary = await ctx["ledger"].audit.backfill()
    return summary.model_dump()


def _cron_jobs() -> list:
    worker_config = get_config().worker
    if not worker_config.recalc_cron_enabled:
        return []
    return [
        cron(
            recalculate_lowest_prices,
            hour=worker_config.recalc_cron_hour,
            minute=0,
            unique=True,
        )
    ]


class WorkerSettings:
    functions = [recalculate_lowest_prices, backfill_ledger]
    on_startup = startup
    on_shutdown = shutdown
    cron_jobs = _cron_jobs()
    redis_settings = RedisSettings.from_dsn(get_config().worker.redis_url)
    # A full pass over a large catalog can take a while
    job_timeout = 3600
