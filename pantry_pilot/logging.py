"""Logging setup.

Every receipt import and every recipe generation runs under a short run id
so the LLM retries, fallbacks and merge decisions it causes can be grepped
out of the log together.
"""
from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Generator
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

from pantry_pilot.config import get_log_path, load_config

LOG_MAX_BYTES = 5 * 1024 * 1024
LOG_BACKUP_COUNT = 3
TEXT_FORMAT = "%(asctime)s | %(levelname)s | run=%(run_id)s | %(name)s | %(message)s"

_run_id: ContextVar[str] = ContextVar("run_id", default="")


def new_run_id() -> str:
    return uuid.uuid4().hex[:12]


@contextmanager
def run_context(run_id: str | None = None) -> Generator[str, None, None]:
    """Open a run, or join the one already active."""
    token = _run_id.set(run_id or _run_id.get() or new_run_id())
    try:
        yield _run_id.get()
    finally:
        _run_id.reset(token)


class RunIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if not getattr(record, "run_id", None):
            record.run_id = _run_id.get() or "-"
        return True


class JsonLineFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "run_id": getattr(record, "run_id", "-"),
            "message": record.getMessage(),
        }
        fields = getattr(record, "fields", None)
        if fields:
            entry["fields"] = fields
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def _handlers(log_path: Path) -> list[logging.Handler]:
    log_path.parent.mkdir(parents=True, exist_ok=True)
    file_handler = RotatingFileHandler(
        log_path, maxBytes=LOG_MAX_BYTES, backupCount=LOG_BACKUP_COUNT, encoding="utf-8"
    )
    return [logging.StreamHandler(), file_handler]


def configure_logging(config: dict[str, Any] | None = None) -> None:
    cfg = config or load_config()
    log_cfg = cfg.get("logging", {}) if isinstance(cfg.get("logging"), dict) else {}
    level = getattr(logging, str(log_cfg.get("level", "INFO")).upper(), logging.INFO)

    root = logging.getLogger()
    root.setLevel(level)
    if root.handlers:
        # Repeated CLI entry in one process must not stack handlers.
        return

    formatter: logging.Formatter
    if log_cfg.get("json_format"):
        formatter = JsonLineFormatter()
    else:
        formatter = logging.Formatter(TEXT_FORMAT)

    run_filter = RunIdFilter()
    for handler in _handlers(get_log_path(cfg)):
        handler.setFormatter(formatter)
        handler.addFilter(run_filter)
        root.addHandler(handler)

    # urllib3 logs every connection at DEBUG.
    logging.getLogger("urllib3").setLevel(max(level, logging.INFO))


def log_event(logger: logging.Logger, level: int, message: str, **fields: Any) -> None:
    """Log ``message`` with structured ``fields`` for the JSON formatter."""
    logger.log(level, message, extra={"fields": fields, "run_id": _run_id.get() or "-"})
