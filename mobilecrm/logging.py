"""Structured logging for the API process.

Every record gets the active correlation id stamped on it at creation time.
Only whitelisted ``extra`` keys are emitted so request payloads and secrets
never leak into log lines.
"""

from __future__ import annotations

import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any

from mobilecrm.context import get_correlation_id


_BASE_RECORD_KEYS = frozenset(logging.makeLogRecord({}).__dict__)
_KNOWN_FIELDS = frozenset(
    {
        # request
        "method",
        "path",
        "status_code",
        "duration_ms",
        "user_id",
        "client_platform",
        # domain
        "entity_type",
        "entity_id",
        "event_name",
        "transition",
        "reason",
        "status",
        "error",
    }
)
MAX_FIELD_LENGTH = 500


def extract_fields(record: logging.LogRecord) -> dict[str, Any]:
    fields: dict[str, Any] = {}
    for key, value in record.__dict__.items():
        if key not in _KNOWN_FIELDS or key in _BASE_RECORD_KEYS:
            continue
        if isinstance(value, str) and len(value) > MAX_FIELD_LENGTH:
            value = value[:MAX_FIELD_LENGTH]
        fields[key] = value
    return fields


class JsonLogFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        fields = extract_fields(record)
        if record.exc_info:
            fields["exception"] = self.formatException(record.exc_info)
        return json.dumps(
            {
                "ts": datetime.now(timezone.utc).isoformat(),
                "level": record.levelname,
                "logger": record.name,
                "msg": record.getMessage(),
                "correlation_id": getattr(record, "correlation_id", None),
                "fields": fields,
            },
            default=str,
        )


class ConsoleLogFormatter(logging.Formatter):
    """Single-line human readable output for local development."""

    def format(self, record: logging.LogRecord) -> str:
        pairs = " ".join(f"{key}={value}" for key, value in sorted(extract_fields(record).items()))
        line = f"{record.levelname:<7} {record.name} [{getattr(record, 'correlation_id', None) or '-'}] {record.getMessage()}"
        if pairs:
            line = f"{line} {pairs}"
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


_default_record_factory = logging.getLogRecordFactory()


def _record_factory(*args: Any, **kwargs: Any) -> logging.LogRecord:
    record = _default_record_factory(*args, **kwargs)
    if not getattr(record, "correlation_id", None):
        record.correlation_id = get_correlation_id()
    return record


def configure_logging() -> None:
    root_logger = logging.getLogger()
    if getattr(root_logger, "_mobilecrm_configured", False):
        return

    level = getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO)
    formatter: logging.Formatter
    if os.getenv("LOG_FORMAT", "json").lower() == "console":
        formatter = ConsoleLogFormatter()
    else:
        formatter = JsonLogFormatter()

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(formatter)

    logging.setLogRecordFactory(_record_factory)
    root_logger.handlers.clear()
    root_logger.setLevel(level)
    root_logger.addHandler(handler)
    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        server_logger = logging.getLogger(name)
        server_logger.handlers.clear()
        server_logger.propagate = True
    root_logger._mobilecrm_configured = True  # type: ignore[attr-defined]
