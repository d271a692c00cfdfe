"""Process-wide logging setup for the facility service."""

from __future__ import annotations

import json
import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

__all__ = ["setup_logging", "JsonFormatter"]

_CONSOLE_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def _json_payload(record: logging.LogRecord, formatter: logging.Formatter) -> str:
    base = {
        "time": formatter.formatTime(record),
        "level": record.levelname,
        "logger": record.name,
        "msg": record.getMessage(),
    }
    extra = getattr(record, "extra", None)
    if isinstance(extra, dict):
        base.update(extra)
    if record.exc_info:
        base["exc"] = formatter.formatException(record.exc_info)
    return json.dumps(base, ensure_ascii=False)


class JsonFormatter(logging.Formatter):
    """One JSON object per line; used for the rotating file log."""

    def format(self, record: logging.LogRecord) -> str:
        return _json_payload(record, self)


def setup_logging(
    level: str = "INFO",
    *,
    log_file: Optional[Path] = None,
    max_bytes: int = 5_000_000,
    backup_count: int = 3,
) -> logging.Logger:
    """Configure the ``facility`` logger tree; safe to call more than once."""
    numeric_level = getattr(logging, (level or "INFO").upper(), logging.INFO)
    logger = logging.getLogger("facility")
    logger.setLevel(numeric_level)
    logger.handlers.clear()
    logger.propagate = False

    console = logging.StreamHandler()
    console.setLevel(numeric_level)
    console.setFormatter(logging.Formatter(_CONSOLE_FORMAT))
    logger.addHandler(console)

    if log_file is not None:
        log_file = Path(log_file)
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(log_file, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8")
        handler.setLevel(numeric_level)
        handler.setFormatter(JsonFormatter())
        logger.addHandler(handler)

    return logger
