"""Logging configuration."""

import logging
import sys

import structlog

from referral_engine.settings import settings


def configure_logging() -> None:
    """Configure structured logging for the engine and the CLI.

    ``settings.log_format`` picks JSON lines (for log shipping) or the
    colored console renderer; ``settings.log_level`` filters both.
    """
    shared = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
    ]

    if settings.log_format == "json":
        processors = shared + [
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = shared + [
            structlog.processors.TimeStamper(fmt="%Y-%m-%d %H:%M:%S"),
            structlog.dev.ConsoleRenderer(),
        ]

    level = logging.getLevelName(settings.log_level.upper())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )

    # SQLAlchemy engine echo goes through stdlib logging
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=level,
    )


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a logger that tags every event with its module name."""
    return structlog.get_logger(name)
