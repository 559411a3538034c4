"""Structured logging configuration.

Provides a JSON formatter and a ``load_id`` context variable. Applications
embedding the loader may call `configure_logging()` once at startup; the loader
itself only emits records through module loggers. Every ``load()`` call binds a
fresh id with `load_context()` so batch polling records can be correlated with
the file they belong to.
"""

from __future__ import annotations

import json
import logging
import sys
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Iterator

load_id_var: ContextVar[str | None] = ContextVar("load_id", default=None)

_STANDARD_FIELDS = {
    "name",
    "msg",
    "args",
    "levelname",
    "levelno",
    "pathname",
    "filename",
    "module",
    "exc_info",
    "exc_text",
    "stack_info",
    "lineno",
    "funcName",
    "created",
    "msecs",
    "relativeCreated",
    "thread",
    "threadName",
    "processName",
    "process",
    "taskName",
}


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:  # noqa: D401
        data: Dict[str, Any] = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        lid = load_id_var.get()
        if lid:
            data["load_id"] = lid
        if record.exc_info:
            data["exc_info"] = self.formatException(record.exc_info)
        for key, value in record.__dict__.items():
            if key in _STANDARD_FIELDS or key.startswith("_"):
                continue
            data[key] = value
        return json.dumps(data, ensure_ascii=False, default=str)


def configure_logging(level: int = logging.INFO, force: bool = False) -> None:
    root = logging.getLogger()
    if force:
        for handler in list(root.handlers):
            root.removeHandler(handler)
    elif any(
        isinstance(h, logging.StreamHandler) for h in root.handlers
    ):  # already configured
        root.setLevel(level)
        for handler in root.handlers:
            handler.setLevel(level)
        return
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())
    root.setLevel(level)
    root.addHandler(handler)


@contextmanager
def load_context(lid: str | None = None) -> Iterator[str]:
    """Bind a correlation id for the duration of one loader invocation."""
    value = lid or uuid.uuid4().hex
    token = load_id_var.set(value)
    try:
        yield value
    finally:
        load_id_var.reset(token)


__all__ = [
    "JsonFormatter",
    "configure_logging",
    "load_context",
    "load_id_var",
]
