"""
Structured logging configuration for Receipt Insights.

Configures structlog to work alongside stdlib logging so that both
`logging.getLogger()` and `structlog.get_logger()` produce consistent,
structured JSON output in production and human-readable output in dev.

Usage:
    from src.lib.logging import setup_logging

    setup_logging()  # Call once at application startup
"""

import logging
import os
import sys

import structlog


def setup_logging(dev_mode: bool | None = None, log_level: str | None = None) -> None:
    """
    Configure structlog and stdlib logging for the application.

    In development (RECEIPTS_DEV_MODE=1): human-readable colored console output.
    In production: JSON-formatted structured logs.

    Args:
        dev_mode: Overrides RECEIPTS_DEV_MODE when given.
        log_level: Overrides LOG_LEVEL when given.
    """
    if dev_mode is None:
        dev_mode = os.environ.get("RECEIPTS_DEV_MODE") == "1"
    level_name = (log_level or os.environ.get("LOG_LEVEL", "INFO")).upper()

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    renderer: structlog.types.Processor
    if dev_mode:
        renderer = structlog.dev.ConsoleRenderer()
    else:
        renderer = structlog.processors.JSONRenderer()

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    # stdlib records (logging.getLogger) go through the same renderer
    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, level_name, logging.INFO))

    for noisy_logger in ("httpx", "httpcore", "sqlalchemy.engine", "aiosqlite", "uvicorn.access"):
        logging.getLogger(noisy_logger).setLevel(logging.WARNING)
