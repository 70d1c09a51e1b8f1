"""Structured logging setup (structlog over the stdlib logging module).

Ledger events carry Decimal prices and UUID entity ids; the JSON renderer
serializes both as strings so log lines stay exact and parseable.
"""

import json
import logging
import os
import sys
from pathlib import Path
from typing import Any

import structlog

# Chatty third-party loggers that drown out ledger events at DEBUG
_QUIET_LOGGERS = ("aiosqlite", "asyncio", "sqlalchemy.engine.Engine", "multipart")


def _json_dumps(obj: Any, **kwargs: Any) -> str:
    return json.dumps(obj, default=str, **kwargs)


def configure_logging(log_level: str | None = None, log_format: str | None = None) -> None:
    """Configure structured logging for the application.

    Args:
        log_level: Stdlib level name (default: LOG_LEVEL env or INFO)
        log_format: "json" or "text" (default: JSON_LOGS env)
    """
    level = (log_level or os.getenv("LOG_LEVEL", "INFO")).upper()
    if log_format is None:
        log_format = "json" if os.getenv("JSON_LOGS", "false").lower() == "true" else "text"

    shared_processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if log_format == "json":
        renderer: Any = structlog.processors.JSONRenderer(serializer=_json_dumps)
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=shared_processors + [renderer],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]

    # Only log to file when the directory was provisioned
    log_file = Path(os.getenv("LOG_FILE", "logs/priceledger.log"))
    if log_file.parent.exists():
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(format="%(message)s", handlers=handlers, level=level, force=True)

    if level != "DEBUG":
        return
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.INFO)
