"""
Log output for the pipeline.

Production writes one JSON object per line; development and tests write a
single readable line. Records carry correlation ids through ``extra=``:
request fields from the timing middleware, and incident / USSD session /
escalation rule ids from the services.
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone

REQUEST_FIELDS = ("method", "path", "status", "duration_ms", "remote_addr", "request_id")
PIPELINE_FIELDS = ("incident_id", "session_id", "rule_id", "event_type")


class JSONFormatter(logging.Formatter):
    """One JSON object per record for the log aggregator."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key in REQUEST_FIELDS + PIPELINE_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                entry[key] = value
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


class ReadableFormatter(logging.Formatter):
    """``HH:MM:SS LEVEL logger: message (INC-..) session=.. rule=.. [12ms]``"""

    def format(self, record: logging.LogRecord) -> str:
        parts = [
            f"{self.formatTime(record, '%H:%M:%S')} {record.levelname:<8} {record.name}: {record.getMessage()}"
        ]
        incident_id = getattr(record, "incident_id", None)
        if incident_id:
            parts.append(f"({incident_id})")
        for key, label in (("session_id", "session"), ("rule_id", "rule")):
            value = getattr(record, key, None)
            if value:
                parts.append(f"{label}={value}")
        duration = getattr(record, "duration_ms", None)
        if duration is not None:
            parts.append(f"[{duration:.0f}ms]")
        line = " ".join(parts)
        if record.exc_info and record.exc_info[0] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(app):
    """Install one stderr handler on the root logger.

    LOG_LEVEL overrides the default (INFO in production, DEBUG otherwise).
    """
    is_testing = app.config.get("TESTING", False)
    is_prod = not app.config.get("DEBUG", False) and not is_testing

    level_name = os.getenv("LOG_LEVEL", "INFO" if is_prod else "DEBUG").upper()
    level = getattr(logging, level_name, logging.INFO)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JSONFormatter() if is_prod else ReadableFormatter())

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)
    for noisy in ("urllib3", "werkzeug", "sqlalchemy.engine"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
    app.logger.setLevel(level)
