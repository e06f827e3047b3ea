"""Structlog setup shared by the API server, the dispatcher and the CLI.

Production emits one JSON object per line; development gets a coloured console
renderer and the test environment a plain one. Every event carries the service
name and version so that cron-triggered passes can be told apart from API
traffic in aggregated logs.
"""

from __future__ import annotations

import logging
import sys
from typing import Any, Optional

import structlog

from reistandard import __version__
from reistandard.config import Settings, get_settings

SERVICE_NAME = "reistandard"

# Third-party loggers that are chatty at INFO.
_QUIET_LOGGERS = ("apscheduler", "httpx", "aiosqlite")


def _renderer(settings: Settings) -> Any:
    if settings.is_production:
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer(colors=settings.reistandard_env != "test")


def setup_logging(settings: Optional[Settings] = None) -> None:
    settings = settings or get_settings()
    log_level = getattr(logging, settings.reistandard_log_level.upper(), logging.INFO)

    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]
    if settings.is_production:
        processors.append(structlog.processors.format_exc_info)
    else:
        processors.append(structlog.dev.set_exc_info)
    processors.append(_renderer(settings))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(sys.stdout),
        cache_logger_on_first_use=True,
    )
    structlog.contextvars.bind_contextvars(
        service=SERVICE_NAME,
        version=__version__,
        env=settings.reistandard_env,
    )

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=log_level)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(log_level, logging.WARNING))


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Return a named structured logger."""
    return structlog.get_logger(name)
