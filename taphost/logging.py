"""taphost — Structured logging configuration.

Uses structlog for structured, levelled logging with consistent key names
across all layers.  All log entries include:
    - timestamp (ISO-8601)
    - level
    - logger (Python logger name)
    - dispatch_id / tap / plugin (bound via context variables when available)

Guest modules log through the ``taphost.plugin`` logger; the plugin name in
those records always comes from the host-side call state.
"""

from __future__ import annotations

import logging
import sys
from contextvars import ContextVar
from typing import Any

import structlog
from structlog.types import EventDict, WrappedLogger

# Context variables — automatically injected into log records when set.
_ctx_dispatch_id: ContextVar[str | None] = ContextVar("dispatch_id", default=None)
_ctx_tap: ContextVar[str | None] = ContextVar("tap", default=None)
_ctx_plugin: ContextVar[str | None] = ContextVar("plugin", default=None)


def bind_dispatch_context(
    dispatch_id: str | None = None,
    tap: str | None = None,
    plugin: str | None = None,
) -> None:
    """Bind dispatch context to the current async task / thread."""
    if dispatch_id is not None:
        _ctx_dispatch_id.set(dispatch_id)
    if tap is not None:
        _ctx_tap.set(tap)
    if plugin is not None:
        _ctx_plugin.set(plugin)


def clear_dispatch_context() -> None:
    _ctx_dispatch_id.set(None)
    _ctx_tap.set(None)
    _ctx_plugin.set(None)


# ---------------------------------------------------------------------------
# Custom processors
# ---------------------------------------------------------------------------


def _inject_context_vars(
    _logger: WrappedLogger, _method: str, event_dict: EventDict
) -> EventDict:
    """Add ContextVar values to every log record."""
    if (dispatch_id := _ctx_dispatch_id.get()) is not None:
        event_dict.setdefault("dispatch_id", dispatch_id)
    if (tap := _ctx_tap.get()) is not None:
        event_dict.setdefault("tap", tap)
    if (plugin := _ctx_plugin.get()) is not None:
        event_dict.setdefault("plugin", plugin)
    return event_dict


# ---------------------------------------------------------------------------
# Setup
# ---------------------------------------------------------------------------


def configure_logging(
    level: str = "info",
    format: str = "console",
    log_file: str | None = None,
) -> None:
    """Configure structlog and stdlib logging.

    Call once at host startup, before any log statements.

    Args:
        level:    One of debug, info, warning, error, critical.
        format:   ``"console"`` for human-readable output, ``"json"`` for
                  machine-readable structured logs.
        log_file: Optional path to write logs to in addition to stderr.
    """
    shared_processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        _inject_context_vars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]

    if format == "json":
        renderer: Any = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    handlers: list[logging.Handler] = []

    # stderr so CLI output on stdout stays machine-readable.
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    handlers.append(stream_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    root_logger = logging.getLogger()
    root_logger.handlers = handlers
    root_logger.setLevel(level.upper())

    for noisy in ("sqlalchemy.engine", "asyncio"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Return a bound structlog logger for *name*.

    Usage::

        log = get_logger(__name__)
        log.info("plugin_enabled", plugin="blog", migrations=2)
    """
    return structlog.get_logger(name)
