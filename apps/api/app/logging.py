from __future__ import annotations

import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any

from app.context import get_automation_id, get_correlation_id


_BASE_RECORD_KEYS = set(logging.makeLogRecord({}).__dict__.keys())
_KNOWN_FIELDS = {
    "method",
    "path",
    "status_code",
    "duration_ms",
    "job_type",
    "status",
    "error",
    "event_name",
    "queue_id",
    "trigger",
    "automation_id",
    "action",
    "webhook_id",
    "delivery_id",
    "attempt",
    "response_status",
    "next_attempt_at",
    "provider_message_id",
    "lead_id",
    "conversation_id",
    "worker_id",
    "count",
}


# Libraries that log every request at INFO.
_NOISY_LOGGERS = ("httpx", "httpcore", "celery.worker.strategy")


def _stamp_context(record: logging.LogRecord) -> None:
    if not getattr(record, "correlation_id", None):
        record.correlation_id = get_correlation_id()
    if not getattr(record, "automation_id", None):
        automation_id = get_automation_id()
        if automation_id is not None:
            record.automation_id = automation_id


class PipelineContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        _stamp_context(record)
        return True


_DEFAULT_RECORD_FACTORY = logging.getLogRecordFactory()


def _record_factory(*args: Any, **kwargs: Any) -> logging.LogRecord:
    # automation_id is left to the filter: callers pass it through extra=.
    record = _DEFAULT_RECORD_FACTORY(*args, **kwargs)
    if not getattr(record, "correlation_id", None):
        record.correlation_id = get_correlation_id()
    return record


class JsonLogFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "correlation_id": getattr(record, "correlation_id", None),
        }

        extras: dict[str, Any] = {}
        for key, value in record.__dict__.items():
            if key.startswith("_"):
                continue
            if key in _BASE_RECORD_KEYS:
                continue
            if key in {"args", "msg"}:
                continue
            if key in _KNOWN_FIELDS:
                extras[key] = value

        if record.exc_info:
            extras["exception"] = self.formatException(record.exc_info)

        error_value = extras.get("error")
        if isinstance(error_value, str):
            extras["error"] = error_value[:500]

        payload["fields"] = extras
        return json.dumps(payload, default=str)


def _build_formatter(log_format: str) -> logging.Formatter:
    if log_format == "text":
        return logging.Formatter("%(asctime)s %(levelname)s %(name)s [%(correlation_id)s] %(message)s")
    return JsonLogFormatter()


def configure_logging(level: str | None = None, log_format: str | None = None) -> None:
    """Route every logger through one stdout handler.

    ``LOG_FORMAT=text`` switches to a human-readable line for local runs; JSON is the default.
    """
    root_logger = logging.getLogger()
    if getattr(root_logger, "_zapflow_configured", False):
        return

    level_name = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    resolved_level = getattr(logging, level_name, logging.INFO)

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setLevel(resolved_level)
    handler.setFormatter(_build_formatter((log_format or os.getenv("LOG_FORMAT", "json")).lower()))
    handler.addFilter(PipelineContextFilter())

    root_logger.handlers.clear()
    root_logger.filters.clear()
    root_logger.setLevel(resolved_level)
    logging.setLogRecordFactory(_record_factory)
    root_logger.addHandler(handler)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(resolved_level, logging.WARNING))
    root_logger._zapflow_configured = True  # type: ignore[attr-defined]
