"""
Structured JSON logging configuration.

Every log line is one JSON object with timestamp, level, logger, message and
the correlation id of the request that caused it. Orchestration code can
attach ``pipeline_id``, ``execution_id``, ``stage_id``, ``algorithm_id`` or
``test_id`` through ``extra=`` and they are emitted as top-level fields.
"""

import json
import logging
from datetime import datetime, timezone

from app.middleware.request_context import get_request_id

CONTEXT_FIELDS = ("duration_ms", "pipeline_id", "execution_id", "stage_id", "algorithm_id", "test_id")


class JSONFormatter(logging.Formatter):
    """Emit each log record as a single JSON line."""

    def __init__(self, service: str = "orchestration"):
        super().__init__()
        self.service = service

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "service": self.service,
            "logger": record.name,
            "message": record.getMessage(),
            "correlation_id": get_request_id() or None,
        }

        for name in CONTEXT_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                log_entry[name] = value

        if record.exc_info and record.exc_info[1]:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


def configure_json_logging(log_level: str = "INFO", service: str = "orchestration"):
    """Replace the root logger's handlers with a single JSON stream handler."""
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter(service))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, log_level.upper(), logging.INFO))
