"""
Structured logging setup shared by every entry point.
"""

import logging
import sys

import structlog


def configure_logging(log_level: str = "INFO", colors: bool = True) -> None:
    """
    Configure structlog on top of the stdlib logging backend.

    Args:
        log_level: Minimum level name (debug, info, warning, error)
        colors: Whether the console renderer should emit ANSI colors
    """
    level = getattr(logging, str(log_level).upper(), logging.INFO)

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=level,
    )
    logging.getLogger().setLevel(level)

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
            structlog.dev.ConsoleRenderer(colors=colors),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
