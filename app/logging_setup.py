from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime

# Structured extras copied from the record when present.
STRUCTURED_FIELDS = (
    "role",
    "service",
    "run_id",
    "component",
    "order_id",
    "job_id",
    "task_id",
    "item_id",
    "action",
    "notification_type",
    "payment_status",
    "strategy",
    "outcome",
    "attempt",
    "delay_ms",
    "count",
    "error_code",
    "error",
)


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        for key in STRUCTURED_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                payload[key] = value

        return json.dumps(payload, default=str)


def configure_logging() -> None:
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(logging.INFO)
