"""Structured logging configuration using structlog.

Every line is one JSON object on stderr.  Loggers are bound with a
``component`` name; per-resource context is added with :func:`bind_resource`
so that all events about one object carry the same keys.
"""

from __future__ import annotations

import logging
import sys
from typing import TYPE_CHECKING, cast

import structlog
from structlog.typing import FilteringBoundLogger

if TYPE_CHECKING:
    from meshplane.models.resources import ResourceKey


def setup_logging(level: str = "info") -> None:
    """Route structlog events to stderr as sorted JSON, dropping anything below *level*."""
    threshold = logging.getLevelName(level.upper())
    if not isinstance(threshold, int):
        threshold = logging.INFO

    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True, key="ts"),
            structlog.processors.format_exc_info,
            structlog.processors.EventRenamer("msg"),
            structlog.processors.JSONRenderer(sort_keys=True),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(threshold),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=False,
    )


def get_logger(component: str) -> FilteringBoundLogger:
    """Return a logger tagged with the reconciler *component* emitting the events."""
    return cast(FilteringBoundLogger, structlog.get_logger(component=component))


def bind_resource(log: FilteringBoundLogger, key: ResourceKey) -> FilteringBoundLogger:
    """Bind the identity of one API object to *log*."""
    return log.bind(resource=str(key), kind=key.kind, name=key.name, namespace=key.namespace)
