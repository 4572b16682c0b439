"""
Application logging setup.

``setup_logging(app)`` installs console and rotating-file handlers on the
Flask logger. The JSON format keeps ``extra=`` fields (``importer_job_id``,
``importer_row_number`` and friends) as top-level keys.
"""

from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from typing import Any

_STANDARD_ATTRS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    }
)
TEXT_FORMAT = "[%(asctime)s] %(levelname)s in %(module)s: %(message)s"
_MANAGED_FLAG = "_enrollment_managed"


class JSONFormatter(logging.Formatter):
    """Format records as one JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "logger": record.name,
            "module": record.module,
            "msg": record.getMessage(),
        }
        for key, value in record.__dict__.items():
            if key not in _STANDARD_ATTRS and not key.startswith("_"):
                payload[key] = value
        if record.exc_info:
            payload["error_type"] = record.exc_info[0].__name__ if record.exc_info[0] else "Exception"
            payload["exception"] = self.formatException(record.exc_info)
        if record.stack_info:
            payload["stack"] = record.stack_info
        return json.dumps(payload, default=str, ensure_ascii=False)


def _build_formatter(log_format: str) -> logging.Formatter:
    if (log_format or "").lower() == "json":
        return JSONFormatter()
    return logging.Formatter(TEXT_FORMAT)


def _remove_managed_handlers(logger: logging.Logger) -> None:
    for handler in list(logger.handlers):
        if getattr(handler, _MANAGED_FLAG, False):
            logger.removeHandler(handler)
            handler.close()


def setup_logging(app) -> None:
    """
    Configure the application logger from ``LOG_*`` settings.

    Safe to call repeatedly; handlers installed by a previous call are
    replaced rather than duplicated.
    """

    level_name = str(app.config.get("LOG_LEVEL", "INFO")).upper()
    level = logging.getLevelName(level_name)
    if not isinstance(level, int):
        level = logging.INFO
    formatter = _build_formatter(app.config.get("LOG_FORMAT", "json"))

    logger = app.logger
    _remove_managed_handlers(logger)
    logger.setLevel(level)

    if app.config.get("ENABLE_CONSOLE_LOGGING", True):
        console = logging.StreamHandler()
        console.setLevel(level)
        console.setFormatter(formatter)
        setattr(console, _MANAGED_FLAG, True)
        logger.addHandler(console)

    if app.config.get("ENABLE_FILE_LOGGING", False):
        log_dir = app.config.get("LOG_DIR", "logs")
        if not os.path.isabs(log_dir):
            log_dir = os.path.join(app.root_path, log_dir)
        os.makedirs(log_dir, exist_ok=True)
        file_handler = RotatingFileHandler(
            os.path.join(log_dir, "enrollment_admin.log"),
            maxBytes=int(app.config.get("LOG_FILE_MAX_BYTES", 10 * 1024 * 1024)),
            backupCount=int(app.config.get("LOG_FILE_BACKUP_COUNT", 10)),
            encoding="utf-8",
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        setattr(file_handler, _MANAGED_FLAG, True)
        logger.addHandler(file_handler)

    logger.propagate = False
    app.logger.debug(
        "Logging configured",
        extra={"log_level": level_name, "log_format": app.config.get("LOG_FORMAT", "json")},
    )
