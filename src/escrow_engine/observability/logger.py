"""Structured logging with trace_id correlation.

Modules log through ``logging.getLogger(__name__)``; ``setup_logging``
routes those records through structlog so every entry is rendered as
JSON (or console text in development) and carries the current trace_id.
A trace_id is opened per webhook delivery, scheduled pass and operator
action, and is the correlation id quoted in internal error reports.
"""

from __future__ import annotations

import functools
import logging
import sys
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Awaitable, Callable, Iterator, TypeVar

import structlog

_trace_id: ContextVar[str] = ContextVar("trace_id", default="")

T = TypeVar("T")


def get_trace_id() -> str:
    """Current trace ID, or a one-off ID when no trace scope is open."""
    return _trace_id.get() or str(uuid.uuid4())


@contextmanager
def trace_scope(trace_id: str | None = None, **bound: Any) -> Iterator[str]:
    """Run a block under its own trace_id plus extra bound fields.

    Usage::

        with trace_scope(order_id=order.id) as tid:
            ...
    """
    token = _trace_id.set(trace_id or str(uuid.uuid4()))
    structlog.contextvars.bind_contextvars(**bound)
    try:
        yield _trace_id.get()
    finally:
        structlog.contextvars.unbind_contextvars(*bound)
        _trace_id.reset(token)


def traced(fn: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
    """Decorate a coroutine so it runs under a trace scope.

    An enclosing trace (e.g. a webhook delivery) is reused; otherwise a
    fresh trace_id is minted for the call.
    """

    @functools.wraps(fn)
    async def wrapper(*args: Any, **kwargs: Any) -> T:
        with trace_scope(_trace_id.get() or None):
            return await fn(*args, **kwargs)

    return wrapper


def _add_trace_id(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """Structlog processor: add trace_id to every log entry."""
    event_dict["trace_id"] = get_trace_id()
    return event_dict


def setup_logging(
    level: str = "INFO",
    format: str = "json",
) -> None:
    """Configure structured logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR).
        format: "json" for production, "console" for development.
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    shared: list[Any] = [
        structlog.contextvars.merge_contextvars,
        _add_trace_id,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]

    renderer: Any
    if format == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            *shared,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # Plain stdlib records (logging.getLogger(__name__)) get the same
    # processors and renderer as structlog-native ones.
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=shared,
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                structlog.processors.format_exc_info,
                renderer,
            ],
        )
    )
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(log_level)
