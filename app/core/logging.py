"""Logging setup shared by the API process and the Celery worker.

Pipeline code attaches correlation ids with ``extra={"task_id": ..., "tenant_id": ...}``.
The JSON formatter lifts them into top-level keys so completions can be traced
from webhook through aggregation; the plain formatter appends them as ``key=value``.
"""

import json
import logging
import sys
from datetime import datetime, timezone

from app.core.config import settings

CONTEXT_FIELDS = ("task_id", "tenant_id", "entity_id")


def _context_of(record: logging.LogRecord) -> dict[str, str]:
    return {f: str(getattr(record, f)) for f in CONTEXT_FIELDS if getattr(record, f, None) is not None}


class JSONFormatter(logging.Formatter):
    """One JSON object per line, for log shippers."""

    def __init__(self, service: str = "api"):
        super().__init__()
        self.service = service

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "service": self.service,
            "logger": record.name,
            "message": record.getMessage(),
        }
        entry.update(_context_of(record))
        if record.exc_info and record.exc_info[1]:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False)


class ContextFormatter(logging.Formatter):
    """Human-readable formatter that keeps the correlation ids visible."""

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        ctx = _context_of(record)
        if ctx:
            line += " [" + " ".join(f"{k}={v}" for k, v in ctx.items()) + "]"
        return line


def setup_logging(service: str = "api") -> None:
    """Install a single stdout handler on the root logger (idempotent)."""
    level = getattr(logging, settings.log_level.upper(), logging.INFO)

    root = logging.getLogger()
    root.setLevel(level)
    for existing in root.handlers[:]:
        root.removeHandler(existing)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    if settings.log_json:
        handler.setFormatter(JSONFormatter(service=service))
    else:
        handler.setFormatter(
            ContextFormatter(
                f"%(asctime)s | {service} | %(levelname)-8s | %(name)s | %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )
    root.addHandler(handler)

    # Outbound analyzer/provider calls and per-statement SQL are too chatty at INFO
    for noisy in ("httpx", "httpcore"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(level if settings.app_debug else logging.WARNING)
