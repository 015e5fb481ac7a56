"""Structured JSON logging.

Two streams share stdout: ``transactional`` for ordinary service logs and
``audit`` for the mirror of every audit row. Each line carries the tenant,
request and job ids held in :mod:`salary_advance.core.context`.
"""

import json
import logging
import logging.config
from datetime import datetime, timezone
from typing import Any, Optional

from salary_advance.core import context
from salary_advance.core.settings import settings

AUDIT_LOGGER_NAME = "salary_advance.audit"

# Chatty libraries held at WARNING whatever the service level is
QUIET_LOGGERS = ("httpx", "httpcore", "sqlalchemy.engine", "asyncio")


class RequestContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in context.snapshot().items():
            setattr(record, key, value)
        return True


class JsonFormatter(logging.Formatter):
    def __init__(self, stream_label: str = "transactional") -> None:
        super().__init__()
        self.stream_label = stream_label

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "stream": self.stream_label,
            "message": record.getMessage(),
        }
        for key in context.CONTEXT_KEYS:
            payload[key] = getattr(record, key, "-")
        event = getattr(record, "audit_event", None)
        if event is not None:
            payload["event"] = event
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def _stdout_handler(formatter: str, level: str) -> dict[str, Any]:
    return {
        "class": "logging.StreamHandler",
        "level": level,
        "formatter": formatter,
        "filters": ["request_context"],
        "stream": "ext://sys.stdout",
    }


def configure_logging(level: Optional[str] = None) -> None:
    log_level = (level or settings.log_level).upper()
    loggers: dict[str, dict[str, Any]] = {
        "": {"handlers": ["default"], "level": log_level},
        AUDIT_LOGGER_NAME: {"handlers": ["audit"], "level": "INFO", "propagate": False},
    }
    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        loggers[name] = {"handlers": ["default"], "level": log_level, "propagate": False}
    for name in QUIET_LOGGERS:
        loggers[name] = {"level": "WARNING"}

    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "filters": {"request_context": {"()": RequestContextFilter}},
            "formatters": {
                "json": {"()": JsonFormatter, "stream_label": "transactional"},
                "audit_json": {"()": JsonFormatter, "stream_label": "audit"},
            },
            "handlers": {
                "default": _stdout_handler("json", log_level),
                "audit": _stdout_handler("audit_json", "INFO"),
            },
            "loggers": loggers,
        }
    )
    logging.getLogger(__name__).info(
        "Logging configured environment=%s level=%s timezone=%s",
        settings.environment,
        log_level,
        settings.tenant_timezone,
    )


def get_audit_logger() -> logging.Logger:
    return logging.getLogger(AUDIT_LOGGER_NAME)
