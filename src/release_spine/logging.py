"""
Release-Spine Logging - structured logging for task runs.

Progress lines at each stage boundary ("starting dependencies", "connecting
stores", "running migrations for STORE", "success") are consumed by human
operators and log aggregators. They are emitted through structlog so the
same event renders as a coloured console line on a terminal and as a JSON
document when the release runs under a process launcher.

Manifesto:
    - **Standardizes:** One processor chain for every module
    - **Structures:** JSON output for log aggregation when not on a TTY
    - **Correlates:** operation and store bound as context variables
    - **Flushes:** Output is flushed before the process exits

Architecture:
    ::

        configure_logging(level="INFO", json_format=None, service="release-spine")
            ↓
        structlog processor chain:
          1. TimeStamper(iso)
          2. merge_contextvars (operation, store)
          3. add_log_level (logger name is bound by get_logger)
          4. service.name stamp
          5. ECS field names: @timestamp, log.level, log.logger (JSON only)
          6. JSONRenderer  |  ConsoleRenderer

Examples:
    >>> from release_spine.logging import configure_logging, get_logger
    >>> configure_logging(level="INFO", json_format=True)
    >>> logger = get_logger(__name__)
    >>> logger.info("running migrations for store", store="billing")

Tags:
    logging, structlog, observability, json-logging, release-spine

Doc-Types:
    - API Reference
    - Observability Guide
"""

from __future__ import annotations

import logging
import sys
from typing import Any

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}

# ECS names for the fields structlog emits
_ECS_RENAMES = {"timestamp": "@timestamp", "level": "log.level", "logger": "log.logger"}


def _service_stamp(service: str) -> Processor:
    def stamp(_logger: WrappedLogger, _method: str, event_dict: EventDict) -> EventDict:
        event_dict.setdefault("service.name", service)
        return event_dict

    return stamp


def _ecs_field_names(_logger: WrappedLogger, _method: str, event_dict: EventDict) -> EventDict:
    for plain, ecs in _ECS_RENAMES.items():
        if plain in event_dict:
            event_dict[ecs] = event_dict.pop(plain)
    return event_dict


def configure_logging(
    level: str = "INFO",
    json_format: bool | None = None,
    service: str = "release-spine",
    add_timestamp: bool = True,
) -> None:
    """Configure structlog once, at process start.

    Args:
        level: Minimum level emitted; unknown names fall back to INFO.
        json_format: JSON lines when True, console lines when False.  None
            picks JSON unless stdout is a terminal, which is the case under a
            release launcher.
        service: Value of ``service.name`` on every event.
        add_timestamp: Stamp events with an ISO-8601 UTC time.
    """
    level = level.upper()
    numeric_level = getattr(logging, level if level in _LEVELS else "INFO")
    if json_format is None:
        json_format = not sys.stdout.isatty()

    processors: list[Processor] = []
    if add_timestamp:
        processors.append(structlog.processors.TimeStamper(fmt="iso", utc=True))
    processors += [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        _service_stamp(service),
    ]
    if json_format:
        processors += [
            structlog.processors.format_exc_info,
            _ecs_field_names,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        context_class=dict,
        # sys.stdout is looked up per logger so redirected streams are honoured
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=False,
    )

    # SQLAlchemy and the DBAPI drivers log through the standard library
    logging.basicConfig(format="%(name)s %(levelname)s %(message)s", stream=sys.stdout, level=numeric_level)
    logging.getLogger("sqlalchemy").setLevel(max(numeric_level, logging.WARNING))


def get_logger(name: str | None = None) -> Any:
    """Return a structlog logger, usually ``get_logger(__name__)``.

    The name is bound as the ``logger`` field.  PrintLogger has no name of its
    own, so ``structlog.stdlib.add_logger_name`` cannot be used here.
    """
    if name is None:
        return structlog.get_logger()
    # get_logger(logger=...) clashes with wrap_logger's own ``logger`` parameter
    return structlog._config.BoundLoggerLazyProxy(None, initial_values={"logger": name}, logger_factory_args=())


def bind_context(**kwargs: Any) -> None:
    """Attach *kwargs* to every event logged from this context onwards."""
    structlog.contextvars.bind_contextvars(**kwargs)


def unbind_context(*keys: str) -> None:
    structlog.contextvars.unbind_contextvars(*keys)


def clear_context() -> None:
    structlog.contextvars.clear_contextvars()


def flush_logging() -> None:
    """Flush stdlib handlers and the standard streams before exit."""
    for handler in logging.getLogger().handlers:
        handler.flush()
    sys.stdout.flush()
    sys.stderr.flush()


class LogContext:
    """Bind fields for the duration of a ``with`` block.

    Example:
        with LogContext(store="billing"):
            logger.info("migration.applied", version=3)
        # store unbound here
    """

    def __init__(self, **fields: Any):
        self.fields = fields

    def __enter__(self) -> LogContext:
        structlog.contextvars.bind_contextvars(**self.fields)
        return self

    def __exit__(self, *exc_info: Any) -> None:
        structlog.contextvars.unbind_contextvars(*self.fields)


__all__ = [
    "configure_logging",
    "get_logger",
    "bind_context",
    "unbind_context",
    "clear_context",
    "flush_logging",
    "LogContext",
]
