"""Structured logging configuration using structlog.

Every reconciliation cycle binds ``app`` and ``cycle_id`` into the
structlog context variables so that log lines emitted by the differ,
executor and health assessor can be correlated without threading the
identifiers through every call.
"""

from __future__ import annotations

import logging
import sys
from typing import cast

import structlog
from structlog.typing import FilteringBoundLogger

_VALID_LEVELS: frozenset[str] = frozenset({"debug", "info", "warning", "error"})


def setup_logging(level: str = "info") -> None:
    """Configure structlog for JSON output to stderr."""
    if level.lower() not in _VALID_LEVELS:
        raise ValueError(f"Invalid log level: {level!r}")
    log_level = getattr(logging, level.upper(), logging.INFO)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso", utc=True, key="ts"),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )


def get_logger(component: str) -> FilteringBoundLogger:
    """Get a logger bound with a component name."""
    return cast(FilteringBoundLogger, structlog.get_logger(component=component))


def bind_cycle(app: str, cycle_id: str) -> None:
    """Attach the current reconciliation cycle to every subsequent log line."""
    structlog.contextvars.bind_contextvars(app=app, cycle_id=cycle_id)


def clear_cycle() -> None:
    """Drop the cycle identifiers bound by :func:`bind_cycle`."""
    structlog.contextvars.unbind_contextvars("app", "cycle_id")
