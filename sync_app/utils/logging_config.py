"""
Application logging setup driven by the monitoring config.

Structured fields passed through ``extra={...}`` end up as top-level keys in
the JSON output, so ``logger.info("Job enqueued", extra={"sync_job_id": 7})``
renders ``{"message": "Job enqueued", "sync_job_id": 7, ...}``.
"""

from __future__ import annotations

import json
import logging
import os
import sys
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler

from flask import Flask

_RESERVED_ATTRS = frozenset(
    logging.LogRecord("", logging.INFO, "", 0, "", (), None).__dict__.keys()
) | {"message", "asctime"}

TEXT_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s - %(message)s"
LOG_FILENAME = "sync_app.log"

QUIET_LOGGERS = (
    "sqlalchemy.engine",
    "sqlalchemy.pool",
    "celery.worker.strategy",
    "urllib3",
    "werkzeug",
)

_HANDLER_MARKER = "_sync_app_handler"


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }
        for key, value in record.__dict__.items():
            if key in _RESERVED_ATTRS or key.startswith("_"):
                continue
            log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def _build_formatter(log_format: str) -> logging.Formatter:
    if (log_format or "").lower() == "json":
        return JSONFormatter()
    return logging.Formatter(TEXT_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")


def _remove_previous_handlers(logger: logging.Logger) -> None:
    for handler in list(logger.handlers):
        if getattr(handler, _HANDLER_MARKER, False):
            logger.removeHandler(handler)
            handler.close()


def setup_logging(app: Flask) -> None:
    """
    Configure console and rotating file handlers for the app and sync loggers.

    Safe to call repeatedly (tests re-run it after changing config); handlers
    added by an earlier call are replaced.
    """
    level_name = str(app.config.get("LOG_LEVEL", "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)
    formatter = _build_formatter(app.config.get("LOG_FORMAT", "text"))

    handlers: list[logging.Handler] = []
    if app.config.get("ENABLE_CONSOLE_LOGGING", True):
        console_handler = logging.StreamHandler(sys.stdout)
        handlers.append(console_handler)

    if app.config.get("ENABLE_FILE_LOGGING", False):
        log_dir = app.config.get("LOG_DIR", "logs")
        os.makedirs(log_dir, exist_ok=True)
        file_handler = RotatingFileHandler(
            os.path.join(log_dir, LOG_FILENAME),
            maxBytes=int(app.config.get("LOG_FILE_MAX_BYTES", 10485760)),
            backupCount=int(app.config.get("LOG_FILE_BACKUP_COUNT", 10)),
        )
        handlers.append(file_handler)

    for target in (app.logger, logging.getLogger("sync_app")):
        _remove_previous_handlers(target)
        target.setLevel(level)
        for handler in handlers:
            handler.setLevel(level)
            handler.setFormatter(formatter)
            setattr(handler, _HANDLER_MARKER, True)
            target.addHandler(handler)

    # SQL echo stays visible when explicitly requested.
    for name in QUIET_LOGGERS:
        if name == "sqlalchemy.engine" and app.config.get("SQLALCHEMY_ECHO", False):
            continue
        logging.getLogger(name).setLevel(logging.WARNING)

    app.logger.debug(
        "Logging configured",
        extra={"log_level": level_name, "log_handlers": len(handlers)},
    )
