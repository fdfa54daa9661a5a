"""
Logging utilities for Order Printer.

- RequestIdFilter attaches request_id and path (when in a Flask request context)
- JsonFormatter emits structured lines, including job transition fields passed via `extra`
- configure_logging() initializes root logging with journald or console
- log_job_event() is the single place job transitions are logged
"""

from __future__ import annotations

import logging
import os
from typing import Any, Optional

# Fields the worker attaches to job transition records.
JOB_FIELDS = ("event", "job_id", "job_type", "status", "error", "bytes", "elapsed_ms")


class RequestIdFilter(logging.Filter):
    """
    Attach request-scoped metadata (request_id, path) to log records.
    Safely degrades outside of a Flask request context.
    """

    def filter(self, record: logging.LogRecord) -> bool:  # type: ignore[override]
        if hasattr(record, "request_id"):
            return True
        try:
            from flask import g, has_request_context, request  # lazy import

            record.request_id = g.request_id if has_request_context() and hasattr(g, "request_id") else "-"
            record.path = request.path if has_request_context() else "-"
        except Exception:
            record.request_id = "-"
            record.path = "-"
        return True


class JsonFormatter(logging.Formatter):
    """
    Minimal JSON formatter: timestamp, level, logger, message, request_id, plus job fields.
    """

    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        from json import dumps

        base = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "request_id": getattr(record, "request_id", "-"),
        }
        path = getattr(record, "path", None)
        if path not in (None, "-"):
            base["path"] = path
        for key in JOB_FIELDS:
            val = getattr(record, key, None)
            if val is not None:
                base[key] = val
        if record.exc_info:
            base["exc"] = self.formatException(record.exc_info)
        return dumps(base, ensure_ascii=False, default=str)


def configure_logging(json_logs: Optional[bool] = None, level: int = logging.INFO) -> logging.Logger:
    """
    Configure root logging for the application.

    Behavior:
    - Sets root logger to `level` (INFO by default)
    - Clears any existing handlers to avoid duplicates on reload
    - Chooses JSON or plain formatter (json_logs, else ORDERPRINTER_JSON_LOGS)
    - Prefer systemd's JournalHandler, fallback to StreamHandler
    - Ensures Flask app logger propagates to root (no separate handlers)

    Returns the configured root logger.
    """
    root = logging.getLogger()
    root.setLevel(level)
    root.handlers = []

    if json_logs is None:
        json_logs = os.environ.get("ORDERPRINTER_JSON_LOGS", "false").lower() in ("1", "true", "yes")
    formatter: logging.Formatter
    if json_logs:
        formatter = JsonFormatter()
    else:
        formatter = logging.Formatter("[%(asctime)s] %(levelname)s %(request_id)s %(name)s: %(message)s")

    try:
        from systemd.journal import JournalHandler  # type: ignore

        handler: logging.Handler = JournalHandler()
    except Exception:
        handler = logging.StreamHandler()
    handler.setFormatter(formatter)
    handler.addFilter(RequestIdFilter())
    root.addHandler(handler)

    flask_logger = logging.getLogger("flask.app")
    flask_logger.handlers = []
    flask_logger.propagate = True

    return root


def log_job_event(
    logger: logging.Logger,
    event: str,
    job: Any,
    message: str,
    *args: Any,
    level: int = logging.INFO,
    **fields: Any,
) -> None:
    """
    Emit one structured line for a job transition.

    `job` is anything exposing `id`, `job_type` and `status` attributes.
    """
    extra = {
        "event": event,
        "job_id": getattr(job, "id", None),
        "job_type": getattr(job, "job_type", None),
        "status": fields.pop("status", None) or getattr(job, "status", None),
        "request_id": "-",
    }
    extra.update(fields)
    logger.log(level, "[%s] " + message, event, *args, extra=extra)


__all__ = ["JOB_FIELDS", "JsonFormatter", "RequestIdFilter", "configure_logging", "log_job_event"]
