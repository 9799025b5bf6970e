"""
structlog setup.

Logs always go to stderr so they never interleave with the rendered output on stdout.
"""

from __future__ import annotations

import logging
import sys
from uuid import uuid4

import structlog
from structlog.contextvars import bind_contextvars, clear_contextvars
from structlog.typing import FilteringBoundLogger


def configure_logging(level: str = "WARNING", *, json: bool = False) -> str:
    """Configure structlog for one invocation and return a fresh run id bound to the context."""
    log_level = logging.getLevelNamesMapping().get(level.upper(), logging.WARNING)

    renderer: structlog.typing.Processor
    if json:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=False,
    )

    run_id = uuid4().hex[:12]
    clear_contextvars()
    bind_contextvars(run_id=run_id)
    return run_id


def get_logger(name: str) -> FilteringBoundLogger:
    """Logger whose events carry `logger_name`; resolved lazily against the current config."""
    return structlog.get_logger(logger_name=name)


__all__ = ["configure_logging", "get_logger"]
