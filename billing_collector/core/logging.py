"""
Logging configuration.

Sets up structlog for console or JSON output on stderr.
"""

import logging
import sys

import structlog

LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}

LOG_FORMATS = ("console", "json")


def setup_logging(level: str = "info", fmt: str = "console") -> None:
    """Configure structlog and the standard library logger.

    Args:
        level: One of LOG_LEVELS
        fmt: "console" for humans, "json" for log shipping
    """
    if level not in LOG_LEVELS:
        raise ValueError(f"log level must be one of: {list(LOG_LEVELS)}")
    if fmt not in LOG_FORMATS:
        raise ValueError(f"log format must be one of: {list(LOG_FORMATS)}")

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]
    if fmt == "json":
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        # ConsoleRenderer formats exceptions itself
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(LOG_LEVELS[level]),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=LOG_LEVELS[level],
    )
