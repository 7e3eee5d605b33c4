"""Structured logging setup for Bonfire.

All components log through structlog with snake_case event names and keyword
context, e.g. ``log.info("post_published", record_id=..., message_id=...)``.
Output is JSON by default (for log shipping) or a human-readable console
rendering for local development.
"""

from __future__ import annotations

import logging
import sys
from typing import Any

import structlog


def setup_logging(json_output: bool = True, level: str = "INFO") -> None:
    """Configure structlog and the stdlib root logger.

    Safe to call more than once; the last call wins.

    Args:
        json_output: Render JSON lines if True, console output otherwise.
        level: Minimum log level name (DEBUG, INFO, WARNING, ERROR).
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=log_level,
        force=True,
    )
    # discord.py is chatty at INFO
    logging.getLogger("discord").setLevel(max(log_level, logging.WARNING))

    renderer: structlog.types.Processor
    if json_output:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )


def get_logger(name: str) -> Any:
    """Get a logger bound to a component name.

    The logger is a lazy proxy, so module-level loggers created before
    ``setup_logging`` still pick up the final configuration.

    Args:
        name: Component name, e.g. "listener" or "reconciler".

    Returns:
        Lazily configured structlog logger.
    """
    return structlog.get_logger(name, component=name)
