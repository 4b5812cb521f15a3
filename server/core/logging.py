"""Structured logging for the persist service."""

import sys
import structlog
import logging
from pathlib import Path
from datetime import datetime
from typing import Optional

from constants import NEVER_EXPIRES
from core.config import Settings


def configure_logging(settings: Settings) -> None:
    """Configure structured logging based on settings."""
    level = getattr(logging, settings.log_level.upper())

    # Set up log file if specified
    if settings.log_file:
        log_path = Path(settings.log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_path)
        file_handler.setLevel(level)

        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(level)

        logging.basicConfig(
            level=level,
            handlers=[console_handler, file_handler],
            format="%(message)s"
        )
    else:
        # Console only
        logging.basicConfig(
            format="%(message)s",
            stream=sys.stdout,
            level=level
        )

    # aiosqlite logs every cursor call at DEBUG
    logging.getLogger("aiosqlite").setLevel(max(level, logging.INFO))

    processors = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    # Add appropriate renderer based on format
    if settings.log_format == "json":
        processors.insert(0, structlog.processors.TimeStamper(fmt="iso"))
        processors.insert(0, structlog.stdlib.add_logger_name)
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.insert(0, structlog.processors.TimeStamper(fmt="%H:%M:%S"))
        processors.append(structlog.dev.ConsoleRenderer(
            colors=False,
            pad_event=35,
            exception_formatter=structlog.dev.plain_traceback
        ))

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)


def log_persist_operation(logger: structlog.BoundLogger, operation: str,
                          key: str, database_id: str, hit: Optional[bool] = None,
                          expires: Optional[datetime] = None, **kwargs) -> None:
    """Log a persist store operation against one database.

    `expires` is the absolute expiration written; the never-expires
    sentinel is logged as `persist_expires=None`.
    """
    log_data = {
        "operation": operation,
        "persist_key": key,
        "database_id": database_id,
        **kwargs
    }

    if hit is not None:
        log_data["persist_hit"] = hit
    if expires is not None:
        log_data["persist_expires"] = None if expires == NEVER_EXPIRES else expires.isoformat()

    logger.debug("Persist operation", **log_data)
