"""Logging configuration for codeloop."""

import logging
import sys
from typing import Any

import structlog

from codeloop.config import get_config


def configure_logging(level: str | None = None, fmt: str | None = None) -> None:
    """Configure structured logging.

    Args:
        level: Optional level override (defaults to ``config.logging.level``)
        fmt: Optional renderer override, ``console`` or ``json``
    """
    config = get_config()
    level_name = (level or config.logging.level).upper()
    log_level = getattr(logging, level_name, logging.INFO)

    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if (fmt or config.logging.format) == "console":
        processors.append(structlog.dev.ConsoleRenderer())
    else:
        processors.append(structlog.processors.JSONRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )


def bind_turn_context(**values: Any) -> None:
    """Bind per-turn identifiers so every nested log line carries them."""
    structlog.contextvars.bind_contextvars(**values)


def clear_turn_context(*keys: str) -> None:
    """Drop per-turn identifiers bound by ``bind_turn_context``."""
    if keys:
        structlog.contextvars.unbind_contextvars(*keys)
    else:
        structlog.contextvars.clear_contextvars()


def get_logger(name: str | None = None) -> structlog.BoundLogger:
    """Get a logger instance.

    Args:
        name: Optional logger name (usually __name__)

    Returns:
        Configured structlog logger
    """
    if name:
        return structlog.get_logger(name)
    return structlog.get_logger()
