"""Structured logging setup for the API, worker and CLI.

Modules log through ``structlog.get_logger(__name__)`` with an event name and
key/value fields; records go out through the stdlib root logger.
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Any

import structlog

from codified.config import LoggingConfig, get_config


def configure_logging(config: LoggingConfig | None = None) -> None:
    """Configure structlog and the stdlib root logger.

    Args:
        config: Logging settings; defaults to the application config
    """
    if config is None:
        config = get_config().log

    shared_processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    renderer: Any
    if config.format == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[*shared_processors, renderer],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    log_file = Path(config.file)
    if log_file.parent.is_dir():
        handlers.append(logging.FileHandler(log_file))

    # force: the API, worker and CLI may each configure once per process
    logging.basicConfig(format="%(message)s", handlers=handlers, level=config.level, force=True)
