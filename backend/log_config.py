"""
structlog setup shared by everything that hosts an element library.
"""

import logging

import structlog

from config import settings


def configure_logging(level: str = None) -> None:
    """
    Configure structlog processors for console output.

    Safe to call more than once; later calls only change the level.

    Args:
        level: Log level name (default: settings.LOG_LEVEL)
    """
    level_name = (level or settings.LOG_LEVEL).upper()
    log_level = logging.getLevelName(level_name)
    if not isinstance(log_level, int):
        log_level = logging.INFO

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer()
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=False,
    )
