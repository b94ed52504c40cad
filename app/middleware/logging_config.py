"""
Logging setup for the report service.

Development and tests get one readable line per record; production emits one
JSON object per line. Records logged inside a request carry its request id
and, for report routes, the report/job ids from the URL so a PDF failure can
be traced back to the submit that queued it.

Environment:
    LOG_LEVEL   DEBUG | INFO | WARNING ... (default DEBUG, INFO in production)
    LOG_FORMAT  json | readable (default follows the environment)
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone

from flask import g, has_request_context, request

# Record attributes copied into JSON output when set via ``extra=``
# or by RequestContextFilter.
CONTEXT_FIELDS = (
    "request_id",
    "method",
    "path",
    "status",
    "duration_ms",
    "remote_addr",
    "report_id",
    "job_id",
    "event_type",
)

NOISY_LOGGERS = ("urllib3", "werkzeug", "sqlalchemy.engine", "reportlab")


class RequestContextFilter(logging.Filter):
    """Stamp records with the current request id and report/job route ids."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not has_request_context():
            return True
        if getattr(record, "request_id", None) is None:
            record.request_id = getattr(g, "request_id", None)
        view_args = request.view_args or {}
        for key in ("report_id", "job_id"):
            if getattr(record, key, None) is None and view_args.get(key):
                setattr(record, key, view_args[key])
        return True


class JSONFormatter(logging.Formatter):
    """One JSON object per record for log shipping."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key in CONTEXT_FIELDS:
            val = getattr(record, key, None)
            if val is not None:
                entry[key] = val
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


class ReadableFormatter(logging.Formatter):
    """Coloured single-line format for a terminal."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def __init__(self, color: bool = True):
        super().__init__()
        self.color = color

    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        level = f"{record.levelname:<8}"
        if self.color:
            level = f"{self.COLORS.get(record.levelname, '')}{level}{self.RESET}"

        context = []
        for key in ("report_id", "job_id"):
            val = getattr(record, key, None)
            if val:
                context.append(f"{key.split('_')[0]}={val}")
        duration = getattr(record, "duration_ms", None)
        if duration is not None:
            context.append(f"{duration:.0f}ms")
        suffix = f" [{' '.join(context)}]" if context else ""

        line = f"{ts} {level} {record.name}: {record.getMessage()}{suffix}"
        if record.exc_info and record.exc_info[0] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(app):
    """
    Install a single stderr handler on the root logger.

    Safe to call more than once (the test app factory runs per session);
    earlier handlers are replaced rather than stacked.
    """
    is_testing = app.config.get("TESTING", False)
    is_prod = not app.config.get("DEBUG", False) and not is_testing

    level_name = os.getenv("LOG_LEVEL", "INFO" if is_prod else "DEBUG").upper()
    level = getattr(logging, level_name, logging.INFO)

    fmt = os.getenv("LOG_FORMAT", "json" if is_prod else "readable").lower()
    if fmt == "json":
        formatter = JSONFormatter()
    else:
        formatter = ReadableFormatter(color=sys.stderr.isatty())

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)
    handler.setLevel(level)
    handler.addFilter(RequestContextFilter())

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    for noisy in NOISY_LOGGERS:
        logging.getLogger(noisy).setLevel(logging.WARNING)

    app.logger.setLevel(level)

    if not is_testing:
        app.logger.info("Logging configured: level=%s format=%s", level_name, fmt)
