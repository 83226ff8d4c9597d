"""Structured logging configuration for opsflow.

Every record is one JSON line. Per-input fields passed through ``log_context``
are flattened next to the standard fields so a single correlation id can be
grepped across adapters, the agent and executors.
"""

import json
import logging
import logging.config
import logging.handlers
import os
from datetime import datetime, timezone
from pathlib import Path

from .config import DEFAULT_LOG_PATH

CONTEXT_ATTR = "opsflow_context"

# Chatty third-party loggers capped at WARNING unless LOG_LEVEL is DEBUG
NOISY_LOGGERS = ("httpx", "httpcore", "aiosqlite", "anthropic", "uvicorn.access")


class JSONFormatter(logging.Formatter):
    """One JSON object per record with correlation fields at top level."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "function": record.funcName,
            "line": record.lineno,
        }

        context = getattr(record, CONTEXT_ATTR, None)
        if context:
            for key in ("correlation_id", "org_id"):
                if key in context:
                    log_data[key] = context[key]
            rest = {k: v for k, v in context.items() if k not in log_data}
            if rest:
                log_data["context"] = rest

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(
    log_level: str | None = None,
    log_file: str | None = None,
) -> None:
    """
    Setup structured logging for the runtime.

    Args:
        log_level: DEBUG, INFO, WARNING, ERROR or CRITICAL.
                   Defaults to LOG_LEVEL env var or INFO.
        log_file: Path to the rotating log file. Defaults to LOG_FILE env var,
                  then 04_logs/opsflow.log. "-" logs to the console only.
    """
    level = (log_level or os.getenv("LOG_LEVEL", "INFO")).upper()
    log_file = log_file or os.getenv("LOG_FILE") or str(DEFAULT_LOG_PATH)

    handlers: dict[str, dict] = {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "json",
            "stream": "ext://sys.stdout",
        },
    }
    if log_file != "-":
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers["file"] = {
            "class": "logging.handlers.RotatingFileHandler",
            "filename": log_file,
            "maxBytes": 10 * 1024 * 1024,
            "backupCount": 5,
            "formatter": "json",
            "encoding": "utf-8",
        }

    third_party_level = level if level == "DEBUG" else "WARNING"
    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "json": {"()": "opsflow.logging_config.JSONFormatter"},
            },
            "handlers": handlers,
            "loggers": {name: {"level": third_party_level} for name in NOISY_LOGGERS},
            "root": {"level": level, "handlers": list(handlers)},
        }
    )


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def log_context(correlation_id: str | None = None, **fields) -> dict:
    """Build the ``extra`` mapping for a log call.

    None values are dropped so call sites can pass optional ids unconditionally.
    """
    context = {k: v for k, v in fields.items() if v is not None}
    if correlation_id:
        context["correlation_id"] = correlation_id
    return {CONTEXT_ATTR: context}
