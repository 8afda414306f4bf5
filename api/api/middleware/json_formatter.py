"""JSON log formatter for log aggregation.

Activate with ``API_STRUCTURED_LOGGING=true``.  Each record becomes one
line::

    {
        "timestamp": "2026-05-15T12:34:56.789012+00:00",
        "level": "INFO",
        "logger": "api.access",
        "message": "request completed",
        "request_id": "...",
        "request": { ... },          // from RequestLoggingMiddleware
        "exc_info": "Traceback ..."  // only on exceptions
    }

Records on the ``groupbuy.security`` logger get ``"security": true`` so
anomaly detection can filter on one field.
"""

from __future__ import annotations

import json
import logging
import traceback
from datetime import UTC, datetime
from typing import Any

_SECURITY_LOGGER = "groupbuy.security"


class JSONFormatter(logging.Formatter):
    """Format log records as single-line JSON."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        # Injected by TraceLoggingFilter.
        for attr in ("trace_id", "span_id", "request_id"):
            value = getattr(record, attr, None)
            if value:
                payload[attr] = value

        if record.name == _SECURITY_LOGGER or record.name.startswith(_SECURITY_LOGGER + "."):
            payload["security"] = True

        request_data = getattr(record, "request", None)
        if request_data is not None:
            payload["request"] = request_data

        if record.exc_info and record.exc_info[0] is not None:
            payload["exc_info"] = "".join(traceback.format_exception(*record.exc_info))

        return json.dumps(payload, default=str, ensure_ascii=False)
