"""Structured logging setup."""
import logging
import sys
from typing import Optional

import structlog

from shopassist import config


def configure_logging(level: Optional[str] = None, fmt: Optional[str] = None) -> None:
    """Configure stdlib logging and structlog.

    Args:
        level: Log level name (default from config)
        fmt: "json" or "console" (default from config)
    """
    level = (level or config.LOG_LEVEL).upper()
    fmt = fmt or config.LOG_FORMAT

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, level, logging.INFO),
    )

    renderer = (
        structlog.dev.ConsoleRenderer()
        if fmt == "console"
        else structlog.processors.JSONRenderer()
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
