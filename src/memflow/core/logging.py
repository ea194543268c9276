"""structlog setup."""

import logging
import sys
from typing import Optional

import structlog

from memflow.core.config import Settings, get_settings


def configure_logging(
    log_level: Optional[str] = None,
    log_format: Optional[str] = None,
    settings: Optional[Settings] = None,
) -> None:
    """Configure stdlib logging and structlog.

    Explicit arguments win over the ``MEMFLOW_LOG_LEVEL`` and
    ``MEMFLOW_LOG_FORMAT`` settings. ``log_format`` is ``json`` or
    ``console``.
    """
    settings = settings or get_settings()
    level = (log_level or settings.log_level).upper()
    fmt = log_format or settings.log_format

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, level, logging.INFO),
    )

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if fmt == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
