"""structlog setup shared by the CLI and the helper service."""

from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Any

import structlog


def configure_logging(
    level: str = "INFO",
    structured: bool = False,
    file: Path | str | None = None,
) -> None:
    """
    Configure structlog output.

    Args:
        level: Minimum level name (DEBUG, INFO, WARNING, ERROR)
        structured: Render JSON lines instead of the console format
        file: Append output to this file instead of stderr
    """
    numeric = logging.getLevelNamesMapping().get(level.upper(), logging.INFO)

    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]
    if structured:
        processors.append(structlog.processors.format_exc_info)
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=file is None and sys.stderr.isatty()))

    if file is not None:
        path = Path(file)
        path.parent.mkdir(parents=True, exist_ok=True)
        factory = structlog.WriteLoggerFactory(file=path.open("a", encoding="utf-8"))
    else:
        factory = structlog.WriteLoggerFactory(file=sys.stderr)

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(numeric),
        logger_factory=factory,
        cache_logger_on_first_use=False,
    )
