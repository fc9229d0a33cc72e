"""Structured logging for the issue grouping service.

Everything logs through structlog on top of the stdlib ``logging`` module:

- ``configure_logging`` installs the processor chain once at startup
- ``LogContext`` binds request-scoped keys (app id, group id) via contextvars
- ``log_operation`` records start, outcome and duration of a service call
"""

import logging
import sys
import time
from contextlib import contextmanager
from typing import Any, Optional

import structlog

# Chatty third-party loggers kept at WARNING unless we run at DEBUG
NOISY_LOGGERS = ("httpx", "httpcore")


def _processors(include_timestamp: bool) -> list:
    chain = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
    ]
    if include_timestamp:
        chain.append(structlog.processors.TimeStamper(fmt="iso", utc=True))
    chain += [
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]
    return chain


def configure_logging(
    level: str = "INFO",
    json_format: bool = False,
    include_timestamp: bool = True,
) -> None:
    """Configure structlog and the stdlib root logger.

    Args:
        level: Log level name, case insensitive
        json_format: Render JSON lines instead of colored console output
        include_timestamp: Add an ISO 8601 UTC ``timestamp`` key
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=numeric_level)
    logging.getLogger().setLevel(numeric_level)

    if numeric_level > logging.DEBUG:
        for name in NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)

    renderer = structlog.processors.JSONRenderer() if json_format else structlog.dev.ConsoleRenderer(colors=True)

    structlog.configure(
        processors=_processors(include_timestamp) + [renderer],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: Optional[str] = None, **context) -> structlog.BoundLogger:
    """Logger with ``context`` pre-bound."""
    logger = structlog.get_logger(name)
    return logger.bind(**context) if context else logger


class LogContext:
    """Bind keys to every log line emitted inside a block.

    Values live in contextvars, so concurrent requests on one event loop
    keep their own context. Nested blocks restore the outer values on exit.

    Usage:
        with LogContext(app_id="app-123", group_id=group_id):
            await service.get_journey(...)
    """

    def __init__(self, **context):
        self.context = context
        self._tokens: dict[str, Any] = {}

    def __enter__(self) -> "LogContext":
        self._tokens = structlog.contextvars.bind_contextvars(**self.context)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        if self._tokens:
            structlog.contextvars.reset_contextvars(**self._tokens)
            self._tokens = {}


@contextmanager
def log_operation(
    operation: str,
    logger: Optional[structlog.BoundLogger] = None,
    **context,
):
    """Log the start and outcome of an operation.

    Yields a dict the caller can fill with result facts (row counts and the
    like); they are logged with the completion event. Exceptions are logged
    at WARNING and re-raised unchanged.

    Example:
        with log_operation("get_groups", self.log, app_id=app_id) as op:
            page = await self.ranker.rank(groups, app_filter)
            op["results"] = len(page.results)
    """
    log = (logger or get_logger()).bind(operation=operation, **context)
    result: dict[str, Any] = {"success": False, "error": None}
    started = time.perf_counter()
    log.debug(f"{operation} started")

    try:
        yield result
    except Exception as e:
        result["error"] = str(e)
        log.warning(
            f"{operation} failed",
            duration_ms=round((time.perf_counter() - started) * 1000, 2),
            **result,
        )
        raise

    result["success"] = True
    log.debug(
        f"{operation} completed",
        duration_ms=round((time.perf_counter() - started) * 1000, 2),
        **result,
    )
