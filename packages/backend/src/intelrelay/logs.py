"""structlog setup shared by the API and dispatcher processes.

Learn: Modules only ever call structlog.get_logger() and log event-style
keys ("delivery.dispatched", key=value...). This module decides how those
events are rendered: colored console lines in development, one JSON
object per line when INTELRELAY_LOG_FORMAT=json.
"""

import logging
import sys

import structlog

from intelrelay.config import settings


def configure_logging(level: str | None = None, fmt: str | None = None) -> None:
    """Configure stdlib logging and structlog. Safe to call more than once."""
    level_name = (level or settings.log_level).upper()
    fmt = fmt or settings.log_format

    logging.basicConfig(
        level=level_name,
        format="%(message)s",
        stream=sys.stdout,
        force=True,
    )

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]
    if fmt == "json":
        # Tracebacks must be strings before JSON serialization
        processors += [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(level_name)
        ),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=False,
    )
