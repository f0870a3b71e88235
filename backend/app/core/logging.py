"""
structlog setup for the engine.

Every log line is a set of keyword fields. Request-scoped fields (organization
and actor) are carried in contextvars and merged into each event, so service
code logs reservation and ledger facts without passing the tenant around.
"""
import logging
import sys
from typing import Any

import structlog

# Library loggers that are noisy at INFO
QUIET_LOGGERS = ("sqlalchemy.engine", "aiosqlite", "asyncio")


def _renderer(json_format: bool) -> Any:
    if json_format:
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer(colors=True)


def setup_logging(log_level: str = "INFO", json_format: bool = True) -> None:
    """
    Configure stdlib logging and structlog.

    Args:
        log_level: DEBUG, INFO, WARNING or ERROR
        json_format: JSON lines (production) instead of the console renderer
    """
    level = getattr(logging, log_level.upper(), logging.INFO)
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            _renderer(json_format),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def bind_tenant(organization_id: int, actor_id: int) -> None:
    """Attach tenant identifiers to every event logged for the current request."""
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(organization_id=organization_id, actor_id=actor_id)


def get_logger(name: str = __name__) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
