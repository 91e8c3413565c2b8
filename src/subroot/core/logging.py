"""
Subscription Root Service - Logging Configuration
"""

import logging
import sys

import structlog

from subroot.core.config import settings

# Third-party loggers that are too chatty at INFO
QUIET_LOGGERS = ("apscheduler", "httpx", "httpcore", "sqlalchemy.engine")


def setup_logging() -> None:
    """
    Configure structlog over stdlib logging.

    Production emits one JSON object per line; other environments get the
    console renderer, colored only when attached to a terminal.
    """
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]

    if settings.ENV == "production":
        processors.append(structlog.processors.dict_tracebacks)
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    structlog.contextvars.bind_contextvars(
        service="subroot",
        ledger_backend=settings.LEDGER_BACKEND,
    )
