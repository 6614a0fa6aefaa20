"""Structured logging configuration using structlog."""

from __future__ import annotations

import logging
import sys

import structlog

from sandboxwatch.config import get_settings


def setup_logging() -> None:
    """Configure structured logging for the entire supervisor.

    Log output goes to stderr; stdout is reserved for command results.
    The first call wins; later calls are no-ops.
    """
    if structlog.is_configured():
        return

    settings = get_settings()
    log_level = getattr(logging, settings.sandboxwatch_log_level.upper(), logging.INFO)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.JSONRenderer() if settings.sandboxwatch_env == "production"
            else structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=log_level,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Return a named structured logger."""
    return structlog.get_logger(name)
