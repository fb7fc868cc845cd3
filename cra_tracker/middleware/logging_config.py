"""
Structured logging configuration.

- Production: one JSON object per line (log aggregator compatible)
- Development / tests: coloured single-line format that also shows the
  CRA id and status move a record carries
- LOG_LEVEL picks the level; LOG_FORMAT ("json" | "readable") overrides
  the formatter choice

Workflow code attaches context through ``extra=``:
    cra_id, from_status, to_status, actor_role, event_type, outbox_id
The HTTP layer adds method, path, status, duration_ms, remote_addr and
request_id (the X-Request-ID, not a CRA id).
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone

HTTP_FIELDS = ("method", "path", "status", "duration_ms", "remote_addr", "request_id")
WORKFLOW_FIELDS = ("cra_id", "from_status", "to_status", "actor_role", "event_type", "outbox_id")


class JSONFormatter(logging.Formatter):
    """JSON log formatter for production / log aggregation."""

    def __init__(self, service: str = "cra-tracker"):
        super().__init__()
        self.service = service

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "service": self.service,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["exception"] = self.formatException(record.exc_info)

        workflow = {k: getattr(record, k) for k in WORKFLOW_FIELDS if getattr(record, k, None) is not None}
        if workflow:
            log_entry["workflow"] = workflow
        for key in HTTP_FIELDS:
            val = getattr(record, key, None)
            if val is not None:
                log_entry[key] = val
        return json.dumps(log_entry, ensure_ascii=False, default=str)


class ReadableFormatter(logging.Formatter):
    """Human-readable coloured formatter for development."""

    COLORS = {
        "DEBUG": "\033[36m",      # cyan
        "INFO": "\033[32m",       # green
        "WARNING": "\033[33m",    # yellow
        "ERROR": "\033[31m",      # red
        "CRITICAL": "\033[35m",   # magenta
    }
    RESET = "\033[0m"

    @staticmethod
    def _context(record: logging.LogRecord, msg: str) -> str:
        parts = []
        cra_id = getattr(record, "cra_id", None)
        if cra_id and cra_id not in msg:
            parts.append(cra_id)
        src, dst = getattr(record, "from_status", None), getattr(record, "to_status", None)
        if src and dst and f"{src} → {dst}" not in msg:
            parts.append(f"{src}→{dst}")
        role = getattr(record, "actor_role", None)
        if role:
            parts.append(f"as {role}")
        return f" ({', '.join(parts)})" if parts else ""

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, "")
        ts = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        msg = record.getMessage()
        duration = getattr(record, "duration_ms", None)
        dur_str = f" [{duration:.0f}ms]" if duration is not None else ""
        base = (
            f"{color}{ts} {record.levelname:<8}{self.RESET} {record.name}: "
            f"{msg}{self._context(record, msg)}{dur_str}"
        )
        if record.exc_info and record.exc_info[0] is not None:
            base += "\n" + self.formatException(record.exc_info)
        return base


def _pick_formatter(app, is_prod: bool) -> logging.Formatter:
    choice = (os.getenv("LOG_FORMAT") or app.config.get("LOG_FORMAT") or "").strip().lower()
    if choice == "json" or (not choice and is_prod):
        return JSONFormatter(service=app.config.get("SERVICE_NAME", "cra-tracker"))
    return ReadableFormatter()


def configure_logging(app):
    """
    Set up logging for the Flask app.

    Level: LOG_LEVEL env var, then config, then INFO in prod / DEBUG otherwise.
    """
    is_testing = app.config.get("TESTING", False)
    is_prod = not app.config.get("DEBUG", False) and not is_testing

    level_name = os.getenv("LOG_LEVEL") or app.config.get("LOG_LEVEL") or ("INFO" if is_prod else "DEBUG")
    level = getattr(logging, level_name.upper(), logging.INFO)
    formatter = _pick_formatter(app, is_prod)

    # create_app() runs once per test session too; never stack handlers
    root = logging.getLogger()
    root.handlers.clear()
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)
    handler.setLevel(level)
    root.addHandler(handler)
    root.setLevel(level)

    for noisy in ("urllib3", "werkzeug", "sqlalchemy.engine", "alembic"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    app.logger.setLevel(level)

    if not is_testing:
        app.logger.info("Logging configured: level=%s format=%s",
                        level_name, type(formatter).__name__)
