"""
Structured logging setup.

Every module logs through ``structlog.get_logger()`` with snake_case event
names and keyword context. Call ``configure_logging()`` once at startup to
pick the renderer and level; without it structlog's defaults apply.

Records from stdlib loggers (SQLAlchemy, httpx, tenacity) go through a root
handler that renders them with the same processors, so one run produces one
log format.
"""
from __future__ import annotations

import logging
import os
import sys

import structlog

LOG_LEVEL_ENV = "LOG_LEVEL"
HANDLER_NAME = "followups"

# Chatty below WARNING unless debugging
_QUIET_LOGGERS = ("sqlalchemy.engine", "httpx", "httpcore")


def _level(debug: bool) -> int:
    if debug:
        return logging.DEBUG
    name = os.getenv(LOG_LEVEL_ENV, "INFO").upper()
    return getattr(logging, name, logging.INFO)


def _renderer(log_format: str):
    if log_format == "json":
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer(colors=False)


def _route_stdlib(shared: list, renderer, level: int, debug: bool) -> None:
    handler = logging.StreamHandler(sys.stdout)
    handler.set_name(HANDLER_NAME)
    handler.setFormatter(structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=[structlog.stdlib.add_logger_name, *shared],
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
    ))

    root = logging.getLogger()
    root.handlers = [h for h in root.handlers if h.get_name() != HANDLER_NAME]
    root.addHandler(handler)
    root.setLevel(level)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(level if debug else max(level, logging.WARNING))


def configure_logging(log_format: str = "console", debug: bool = False) -> None:
    """Configure structlog and the stdlib root logger. ``log_format`` is "json" or "console"."""
    level = _level(debug)
    shared = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    renderer = _renderer(log_format)

    structlog.configure(
        processors=[*shared, renderer],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
    _route_stdlib(shared, renderer, level, debug)
