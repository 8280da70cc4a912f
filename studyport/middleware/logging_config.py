"""
Log formatting for the import/export service.

Two renderings of the same records:

    json      one object per line; request facts under "request", study
              transfer facts under "transfer"
    readable  one coloured line with the event tag and a short
              study/token/dir suffix

LOG_FORMAT picks one explicitly. Otherwise production gets JSON and
debug/testing gets the readable form. LOG_LEVEL sets the threshold.
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone

# Set by the request timing middleware
REQUEST_FIELDS = ("request_id", "method", "path", "status", "duration_ms", "remote_addr")

# Set by the staging, merge and export services
TRANSFER_FIELDS = ("study_uuid", "staging_token", "dir_name", "user_email")

# Events that mean records and asset directories may disagree
ALERT_EVENTS = frozenset({"import.reconcile"})


def _collect(record: logging.LogRecord, keys) -> dict:
    found = {}
    for key in keys:
        val = getattr(record, key, None)
        if val is not None:
            found[key] = val
    return found


class JSONFormatter(logging.Formatter):
    """One JSON object per record, for log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        event = getattr(record, "event_type", None)
        entry = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "at": f"{record.module}:{record.lineno}",
        }
        if event:
            entry["event_type"] = event
            entry["area"] = event.split(".", 1)[0]
            if event in ALERT_EVENTS:
                entry["alert"] = True
        request = _collect(record, REQUEST_FIELDS)
        if request:
            entry["request"] = request
        transfer = _collect(record, TRANSFER_FIELDS)
        if transfer:
            entry["transfer"] = transfer
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


class ReadableFormatter(logging.Formatter):
    """Single-line developer output."""

    LEVEL_COLORS = {
        logging.WARNING: "\033[33m",
        logging.ERROR: "\033[31m",
        logging.CRITICAL: "\033[31m",
    }
    ALERT_COLOR = "\033[35m"
    DIM = "\033[2m"
    RESET = "\033[0m"

    def _suffix(self, record: logging.LogRecord) -> str:
        parts = []
        study_uuid = getattr(record, "study_uuid", None)
        if study_uuid:
            parts.append(f"study={str(study_uuid)[:8]}")
        token = getattr(record, "staging_token", None)
        if token:
            parts.append(f"token={token}")
        dir_name = getattr(record, "dir_name", None)
        if dir_name:
            parts.append(f"dir={dir_name}")
        duration = getattr(record, "duration_ms", None)
        if duration is not None:
            parts.append(f"{duration:.0f}ms")
        return f" {self.DIM}[{' '.join(parts)}]{self.RESET}" if parts else ""

    def format(self, record: logging.LogRecord) -> str:
        event = getattr(record, "event_type", None)
        if event in ALERT_EVENTS:
            color = self.ALERT_COLOR
        else:
            color = self.LEVEL_COLORS.get(record.levelno, "")
        stamp = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        tag = f" <{event}>" if event else ""
        line = (f"{stamp} {color}{record.levelname[0]}{self.RESET} "
                f"{record.name}{tag} {record.getMessage()}{self._suffix(record)}")
        if record.exc_info and record.exc_info[0] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line


FORMATTERS = {"json": JSONFormatter, "readable": ReadableFormatter}


def configure_logging(app):
    """Install one stderr handler on the root logger for ``app``."""
    testing = app.config.get("TESTING", False)
    production = not app.config.get("DEBUG", False) and not testing

    fmt = (app.config.get("LOG_FORMAT") or ("json" if production else "readable")).lower()
    if fmt not in FORMATTERS:
        fmt = "json"
    level_name = os.getenv("LOG_LEVEL", "INFO" if production else "DEBUG").upper()
    level = getattr(logging, level_name, logging.INFO)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(FORMATTERS[fmt]())
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    # Per-statement SQL and per-request access lines duplicate our own logs
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("werkzeug").setLevel(logging.WARNING)

    app.logger.setLevel(level)
    if not testing:
        app.logger.info("Logging configured: level=%s format=%s", level_name, fmt)
