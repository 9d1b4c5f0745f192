"""Logging configuration for pal."""

import logging
import sys

import structlog

from pal.config import get_settings


def _renderers(log_format: str) -> list[structlog.types.Processor]:
    """Final processors; ``auto`` follows whether stderr is a terminal."""
    interactive = sys.stderr.isatty()
    if log_format == "console" or (log_format == "auto" and interactive):
        return [structlog.dev.ConsoleRenderer(colors=interactive)]
    return [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]


def setup_logging() -> None:
    """Configure structured logging.

    Log output goes to stderr so that it never mixes with command output
    (``pal --version`` is parsed by the updater).
    """
    settings = get_settings()
    log_level = getattr(logging, settings.log_level.upper(), logging.INFO)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            *_renderers(settings.log_format),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )

    # Third-party packages log through the standard library
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=log_level,
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a logger that tags every event with *name*."""
    return structlog.get_logger(name, logger=name)
