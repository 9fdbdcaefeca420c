from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

from autoflow.context import get_correlation_id
from autoflow.core.config import get_settings


# Extra attributes copied from ``logger.info(..., extra={...})`` into the JSON line.
STRUCTURED_FIELDS = frozenset(
    {
        "method",
        "path",
        "status_code",
        "duration_ms",
        "automation_id",
        "run_id",
        "user_id",
        "service_account_id",
        "action",
        "outcome",
        "status",
        "items_processed",
        "processed",
        "event_type",
        "reason",
        "error",
    }
)
MAX_ERROR_LENGTH = 500

_base_factory = logging.getLogRecordFactory()


def _correlated_record(*args: Any, **kwargs: Any) -> logging.LogRecord:
    record = _base_factory(*args, **kwargs)
    record.correlation_id = get_correlation_id()
    return record


class JsonLogFormatter(logging.Formatter):
    """One JSON object per line with the correlation id at the top level."""

    def format(self, record: logging.LogRecord) -> str:
        fields = {name: getattr(record, name) for name in STRUCTURED_FIELDS if hasattr(record, name)}
        if isinstance(fields.get("error"), str):
            fields["error"] = fields["error"][:MAX_ERROR_LENGTH]
        if record.exc_info:
            fields["exception"] = self.formatException(record.exc_info)

        line = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "correlation_id": getattr(record, "correlation_id", None),
            "fields": fields,
        }
        return json.dumps(line, default=str)


def configure_logging() -> None:
    root = logging.getLogger()
    if getattr(root, "_autoflow_configured", False):
        return

    level = logging.getLevelName(get_settings().log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(JsonLogFormatter())

    root.handlers[:] = [handler]
    root.setLevel(level)
    logging.setLogRecordFactory(_correlated_record)
    root._autoflow_configured = True  # type: ignore[attr-defined]
