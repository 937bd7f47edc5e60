"""Structured logging for the engage API.

Every record is one JSON object per line. Callers attach fields with
``extra={"context": {...}}`` or through ``bind_logger``.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import IO, Any, Optional

LOGGER_PREFIX = "engage"

# chatty third-party loggers held at WARNING
QUIET_LOGGERS = ("httpx", "httpcore", "uvicorn.access", "sqlalchemy.engine", "aiosqlite")


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        return json.dumps(self._payload(record), ensure_ascii=False, default=str)

    def _payload(self, record: logging.LogRecord) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        context = getattr(record, "context", None)
        if context:
            payload["context"] = context
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        if record.stack_info:
            payload["stack"] = self.formatStack(record.stack_info)
        return payload


class _EngageHandler(logging.StreamHandler):
    """Marks the handler setup_logging owns, so a second call replaces only it."""


def setup_logging(level: str = "INFO", stream: Optional[IO[str]] = None) -> logging.Handler:
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    for handler in [h for h in root_logger.handlers if isinstance(h, _EngageHandler)]:
        root_logger.removeHandler(handler)

    handler = _EngageHandler(stream or sys.stdout)
    handler.setFormatter(JSONFormatter())
    root_logger.addHandler(handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    return handler


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(f"{LOGGER_PREFIX}.{name}")


class LoggerAdapter(logging.LoggerAdapter):
    """Merges bound context, then per-call ``context=``, into ``extra["context"]``."""

    def process(self, msg: str, kwargs: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        context = {**self.extra, **(kwargs.pop("context", None) or {})}
        if context:
            extra = dict(kwargs.get("extra") or {})
            extra["context"] = {**(extra.get("context") or {}), **context}
            kwargs["extra"] = extra
        return msg, kwargs


def bind_logger(name: str, **context: Any) -> LoggerAdapter:
    """Logger that stamps every record with ``context``."""
    return LoggerAdapter(get_logger(name), context)
