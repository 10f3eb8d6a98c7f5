"""Structured logging setup."""

import logging
import sys

import structlog

from catalog_closure.infrastructure.config import settings


def configure_logging(level: str | None = None) -> None:
    """Configure stdlib logging and structlog JSON output.

    Args:
        level: Log level name, defaults to ``settings.log_level``.
    """
    logging.basicConfig(
        level=getattr(logging, (level or settings.log_level).upper()),
        format="%(message)s",
        stream=sys.stderr,
    )
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.JSONRenderer(),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
