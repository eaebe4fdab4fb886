"""
Logging setup.

Production writes one JSON object per line; development and tests get a
short coloured line. LOG_LEVEL overrides the level in either mode.

Workflow, alert and scheduler code attach context through ``extra=``;
the keys below are the ones that survive into the output.
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone

_EXTRA_FIELDS = (
    # request
    "method", "path", "status", "duration_ms", "remote_addr", "request_id", "user_id",
    # workflows
    "instance_id", "numero", "step_ordinal",
    # alerts and jobs
    "rule", "alert_type", "entity_id", "job_name",
)

_QUIET_LOGGERS = ("werkzeug", "sqlalchemy.engine", "alembic")


def _extras(record: logging.LogRecord) -> dict:
    return {
        key: getattr(record, key)
        for key in _EXTRA_FIELDS
        if getattr(record, key, None) is not None
    }


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "where": f"{record.module}:{record.funcName}:{record.lineno}",
        }
        entry.update(_extras(record))
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


class ReadableFormatter(logging.Formatter):
    """``HH:MM:SS LEVEL logger: message [CON-2026-0001] (12ms)``"""

    _LEVEL_COLORS = {
        logging.DEBUG: "\033[36m",
        logging.INFO: "\033[32m",
        logging.WARNING: "\033[33m",
        logging.ERROR: "\033[31m",
        logging.CRITICAL: "\033[35m",
    }
    _RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        message = record.getMessage()
        tags = []
        numero = getattr(record, "numero", None)
        if numero and numero not in message:
            tags.append(f"[{numero}]")
        if getattr(record, "duration_ms", None) is not None:
            tags.append(f"({record.duration_ms:.0f}ms)")

        color = self._LEVEL_COLORS.get(record.levelno, "")
        clock = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        line = f"{color}{clock} {record.levelname:<8}{self._RESET} {record.name}: {message}"
        if tags:
            line += " " + " ".join(tags)
        if record.exc_info and record.exc_info[0] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(app):
    testing = app.config.get("TESTING", False)
    structured = not testing and not app.config.get("DEBUG", False)

    level_name = os.getenv("LOG_LEVEL", "INFO" if structured else "DEBUG").upper()
    level = getattr(logging, level_name, logging.INFO)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JSONFormatter() if structured else ReadableFormatter())

    # Replace rather than append; the test suite builds many apps.
    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(level)
    app.logger.setLevel(level)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    if not testing:
        app.logger.info("Logging: level=%s structured=%s", level_name, structured)
