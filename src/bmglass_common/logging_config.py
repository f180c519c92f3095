"""Structured key=value logging on top of structlog."""
from __future__ import annotations

import logging
import sys

import structlog

_LOG_KEY_ORDER = ["timestamp", "level", "logger", "event", "message"]


def _escape(value: str) -> str:
    return (
        value.replace("\\", "\\\\")
        .replace("\n", "\\n")
        .replace("\r", "\\r")
        .replace("\t", "\\t")
    )


def single_line_processor(logger, method_name, event_dict):
    """Escape line breaks in string values (tracebacks included)."""
    for key, value in event_dict.items():
        if isinstance(value, str):
            event_dict[key] = _escape(value)
        elif isinstance(value, (list, tuple)):
            event_dict[key] = [_escape(item) if isinstance(item, str) else item for item in value]
        elif isinstance(value, dict):
            event_dict[key] = {k: _escape(v) if isinstance(v, str) else v for k, v in value.items()}
    return event_dict


class SingleLineFormatter(logging.Formatter):
    """Formatter for stdlib records that keeps one record per line."""

    def format(self, record):
        return super().format(record).replace("\n", "\\n").replace("\r", "\\r")


def configure_logging(level: str = "INFO", *, service: str | None = None) -> None:
    """Route stdlib and structlog output to stdout as single-line key=value records.

    ``service`` is bound into the global context so every record carries it,
    including records emitted by background tasks outside a request.
    """
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(SingleLineFormatter("%(message)s"))

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(level.upper())

    # aiohttp access logs go through the root handler
    access_logger = logging.getLogger("aiohttp.access")
    access_logger.handlers = []
    access_logger.propagate = True

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            single_line_processor,
            structlog.processors.KeyValueRenderer(key_order=_LOG_KEY_ORDER, drop_missing=True),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    if service:
        structlog.contextvars.bind_contextvars(service=service)
