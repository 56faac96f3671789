"""Structured logging setup built on structlog.

Usage:
    >>> from mangatrack_common import configure_logging, get_logger
    >>> configure_logging(level="INFO", fmt="json")
    >>> logger = get_logger(__name__)
    >>> logger.info("reference_resolved", reference_id="...", confidence=0.92)
"""

from __future__ import annotations

import logging
import sys
from typing import Any

import structlog

_configured = False


def configure_logging(level: str = "INFO", fmt: str = "console") -> None:
    """Configure structlog and the stdlib root logger.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        fmt: "console" for human-readable output, "json" for log shippers
    """
    global _configured

    log_level = getattr(logging, level.upper(), logging.INFO)

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=log_level,
        force=True,
    )

    shared_processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if fmt == "json":
        renderer: Any = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())

    structlog.configure(
        processors=[*shared_processors, renderer],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    _configured = True


def get_logger(name: str | None = None) -> Any:
    """Return a structlog logger bound to ``name``.

    Loggers obtained before ``configure_logging`` runs pick up the final
    configuration lazily, so module-level ``logger = get_logger(__name__)``
    is safe.
    """
    return structlog.get_logger(name)


def is_configured() -> bool:
    """Whether configure_logging() has been called in this process."""
    return _configured
