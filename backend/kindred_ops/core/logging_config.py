"""
Logging setup.

Services log through the standard library (``logging.getLogger``);
background loops and the API use structlog. Both end up on the same
stdlib handlers, rendered for humans in development and as JSON in
production.
"""

import logging
import sys
from typing import Optional

import structlog

from kindred_ops.core.config import settings

# Chatty third-party loggers kept at WARNING unless DATABASE_ECHO is set
QUIET_LOGGERS = ("sqlalchemy.engine", "aiosqlite", "httpx")


def configure_logging(level: Optional[str] = None) -> None:
    """Configure stdlib logging and structlog. Safe to call repeatedly."""
    level = (level or settings.LOG_LEVEL).upper()

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=level,
        force=True,
    )
    if not settings.DATABASE_ECHO:
        for name in QUIET_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer() if settings.is_production else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
