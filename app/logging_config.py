"""JSON logging configuration for the LINE bridge service."""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

NOISY_LOGGERS = ("httpx", "httpcore", "uvicorn.access")


class JSONFormatter(logging.Formatter):
    """Format log records as single-line JSON objects."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        context = getattr(record, "context", None)
        if context:
            log_data["context"] = context

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        # default=str keeps datetimes and UUIDs in context from breaking the line
        return json.dumps(log_data, ensure_ascii=False, default=str)


def setup_logging(level: str = "INFO") -> None:
    """Configure JSON logging on the root logger."""
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter())
    root_logger.addHandler(handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(f"line_bridge.{name}")


class LoggerAdapter(logging.LoggerAdapter):
    """Logger adapter that merges bound context into every record.

    Per-call context is passed as ``context={...}`` and wins over bound keys.
    """

    def process(self, msg: str, kwargs: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        context = kwargs.pop("context", None)
        extra = kwargs.get("extra") or {}
        passed = extra.get("context") or {}
        if context or passed or self.extra:
            combined_context = {**self.extra, **passed, **(context or {})}
            kwargs["extra"] = {**extra, "context": combined_context}
        return msg, kwargs


def bind_logger(name: str, **context: Any) -> LoggerAdapter:
    """Return a logger that tags every record with ``context``."""
    return LoggerAdapter(get_logger(name), context)
