"""
Structured JSON logging for the inference router.

One JSON object per line on stdout. The router binds the request's
correlation id to the current context while it works on a request, so
every line logged underneath (executor, adapters, audit sink) carries it
without threading the id through each call. Structured fields go in
``extra={"_extra": {...}}``.
"""

from __future__ import annotations

import json
import logging
import os
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any

_correlation_id: ContextVar[str | None] = ContextVar("correlation_id", default=None)

# SDK clients log every HTTP exchange at INFO
_NOISY_LOGGERS = ("uvicorn.access", "httpx", "httpcore", "openai", "anthropic")


@contextmanager
def bind_correlation_id(correlation_id: str) -> Iterator[None]:
    token = _correlation_id.set(correlation_id)
    try:
        yield
    finally:
        _correlation_id.reset(token)


def current_correlation_id() -> str | None:
    return _correlation_id.get()


class JSONFormatter(logging.Formatter):

    def __init__(self, service_name: str) -> None:
        super().__init__()
        self._service = service_name

    def format(self, record: logging.LogRecord) -> str:
        extra: dict[str, Any] = dict(getattr(record, "_extra", None) or {})
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "service": self._service,
            "logger": record.name,
            "message": record.getMessage(),
        }

        correlation_id = extra.pop("correlation_id", None) or _correlation_id.get()
        if correlation_id:
            entry["correlation_id"] = correlation_id
        if extra:
            entry["extra"] = extra
        if record.exc_info and record.exc_info[1]:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


def setup_logging(service_name: str, level_name: str | None = None) -> logging.Logger:
    """
    Route the root logger to stdout as JSON and return the service logger.

    level_name falls back to LOG_LEVEL, then INFO.
    """
    level_name = (level_name or os.environ.get("LOG_LEVEL", "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter(service_name))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    for noisy in _NOISY_LOGGERS:
        logging.getLogger(noisy).setLevel(logging.WARNING)

    logger = logging.getLogger(service_name)
    logger.info("Logging initialized", extra={"_extra": {"level": level_name}})
    return logger
