"""JSON log formatter.

Emits each log record as a single-line JSON object.  Activate by setting
``API_STRUCTURED_LOGGING=true``.

Output schema per line::

    {
        "timestamp": "2026-03-10T12:00:00.000000+00:00",
        "level": "INFO",
        "logger": "ledger_api.access",
        "message": "request completed",
        "request": { ... },   // RequestLoggingMiddleware
        "alert": { ... },     // operator channel
        "exc_info": "Traceback ..."
    }
"""

from __future__ import annotations

import json
import logging
import traceback
from datetime import UTC, datetime
from typing import Any

# Structured attributes attached via ``extra=`` that are copied into the payload.
_EXTRA_FIELDS: tuple[str, ...] = ("request", "alert")


class JSONFormatter(logging.Formatter):
    """Format log records as single-line JSON."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for field in _EXTRA_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                payload[field] = value

        if record.exc_info and record.exc_info[0] is not None:
            payload["exc_info"] = "".join(traceback.format_exception(*record.exc_info))

        return json.dumps(payload, default=str, ensure_ascii=False)
