"""
Logging Configuration for Retail Profitability Analytics

Routes structlog and stdlib records through one stdout handler so batch
runs emit a single stream, rendered as JSON or as coloured console lines.
"""

import logging
import sys
from typing import List, Optional

import structlog
from structlog.processors import JSONRenderer, TimeStamper
from structlog.stdlib import ProcessorFormatter, add_log_level

from retail_metrics.config.settings import get_settings

# Libraries that flood DEBUG output during scans and joins
_QUIET_LOGGERS = ("polars", "pyarrow")


def _shared_processors() -> List:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        add_log_level,
        TimeStamper(fmt="iso"),
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]


def _renderer(log_format: str):
    if log_format == "json":
        return JSONRenderer()
    return structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())


def configure_logging(log_level: Optional[str] = None, log_format: Optional[str] = None) -> None:
    """
    Configure structured logging for the pipeline.

    Args:
        log_level: Override LOG_LEVEL (DEBUG, INFO, WARNING, ERROR)
        log_format: Override LOG_FORMAT ("json" or "text")
    """
    settings = get_settings()
    level = (log_level or settings.monitoring.log_level).upper()
    log_format = log_format or settings.monitoring.log_format
    numeric_level = getattr(logging, level, logging.INFO)

    processors = _shared_processors()
    structlog.configure(
        processors=processors + [ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(numeric_level)
    handler.setFormatter(ProcessorFormatter(processor=_renderer(log_format), foreign_pre_chain=processors))

    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(numeric_level)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(numeric_level, logging.INFO))

    structlog.get_logger(__name__).info(
        "Logging configured",
        level=level,
        format=log_format,
        environment=settings.app_env,
    )


def get_logger(name: str):
    """Get a structlog logger bound to name"""
    return structlog.get_logger(name)
