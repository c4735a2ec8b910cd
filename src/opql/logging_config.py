"""structlog configuration for OPQL processes."""

from __future__ import annotations

import logging
import sys
from typing import Any, TextIO

import structlog

_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def configure_logging(level: str = "WARNING", fmt: str = "console", stream: TextIO | None = None) -> None:
    """Install structlog processors writing to ``stream`` (stderr by default).

    Raises:
        ValueError: If ``level`` or ``fmt`` is not recognised.
    """
    level_upper = level.upper()
    if level_upper not in _LEVELS:
        raise ValueError(f"Invalid log level: {level}. Must be one of: {', '.join(_LEVELS)}")
    fmt_lower = fmt.lower()
    if fmt_lower not in ("json", "console"):
        raise ValueError(f"Invalid format: {fmt}. Must be 'json' or 'console'")

    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]
    if fmt_lower == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=False))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, level_upper)),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=stream or sys.stderr),
        cache_logger_on_first_use=False,
    )
