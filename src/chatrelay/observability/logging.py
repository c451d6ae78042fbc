"""Structured JSON logging for the relay.

Every line carries the correlation id plus whatever message fields the
pipeline bound with `bind_message_context`. Fan-out workers run inside a
copy of the ingesting thread's context, so their lines name the message
they belong to without repeating it at each call site.
"""

import json
import logging
import os
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Iterator

from .correlation import get_correlation_id

LOG_LEVEL_ENV = "LOG_LEVEL"
SERVICE_NAME = "chatrelay"

_message_context: ContextVar[dict[str, str]] = ContextVar("message_log_context", default={})


@contextmanager
def bind_message_context(**fields: str) -> Iterator[None]:
    """Attach already-redacted fields to every log line in this context."""
    token = _message_context.set({**_message_context.get(), **fields})
    try:
        yield
    finally:
        _message_context.reset(token)


def current_message_context() -> dict[str, str]:
    return dict(_message_context.get())


class JsonFormatter(logging.Formatter):
    """One JSON object per record, merging bound and per-call fields."""

    def format(self, record: logging.LogRecord) -> str:
        log_obj: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "service": SERVICE_NAME,
            "logger": record.name,
            "message": record.getMessage(),
        }

        correlation_id = get_correlation_id()
        if correlation_id:
            log_obj["correlationId"] = correlation_id

        # forward and broadcast pools name their threads
        if record.threadName and record.threadName != "MainThread":
            log_obj["thread"] = record.threadName

        log_obj.update(_message_context.get())

        if record.exc_info:
            log_obj["exception"] = self.formatException(record.exc_info)

        extra_fields = getattr(record, "extra_fields", None)
        if extra_fields:
            log_obj.update(extra_fields)

        return json.dumps(log_obj, default=str)


def get_logger(name: str) -> logging.Logger:
    """Get a stdout JSON logger, level from LOG_LEVEL (default INFO)."""
    logger = logging.getLogger(name)

    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(JsonFormatter())
        logger.addHandler(handler)
        logger.setLevel(os.environ.get(LOG_LEVEL_ENV, "INFO").upper())
        logger.propagate = False

    return logger
