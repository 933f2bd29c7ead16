"""
Structured JSON Logging Configuration for the Quorum Operator

Provides:
- JSON formatted logs for easy parsing (Loki, ELK, etc.)
- Reconciliation identity tracking across log entries
- Automatic context injection from ``extra`` fields
- Log level filtering via environment variable
"""

import json
import logging
import os
import sys
from contextvars import ContextVar, Token
from datetime import datetime, timezone
from typing import Optional

# Context variable for the reconciliation currently running in this task
reconciliation_ctx: ContextVar[Optional[str]] = ContextVar("reconciliation", default=None)

_RESERVED_ATTRS = frozenset((
    "name", "msg", "args", "created", "filename", "funcName",
    "levelname", "levelno", "lineno", "module", "msecs",
    "pathname", "process", "processName", "relativeCreated",
    "stack_info", "exc_info", "exc_text", "thread", "threadName",
    "message", "taskName",
))


class JSONFormatter(logging.Formatter):
    """
    Custom JSON formatter for structured logging.

    Output format:
    {
        "timestamp": "2025-12-17T19:30:00.000000Z",
        "level": "INFO",
        "logger": "quorum_reconcile.reconciler",
        "message": "my-ns/my-cluster(watch): reconciliation started",
        "reconciliation": "my-ns/my-cluster(watch)",
        "extra": { ... }
    }
    """

    def format(self, record: logging.LogRecord) -> str:
        log_obj = {
            "timestamp": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        reconciliation = reconciliation_ctx.get()
        if reconciliation:
            log_obj["reconciliation"] = reconciliation

        # Add extra fields from record
        extra_fields = {
            key: value
            for key, value in record.__dict__.items()
            if key not in _RESERVED_ATTRS
        }
        if extra_fields:
            log_obj["extra"] = extra_fields

        if record.exc_info:
            log_obj["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_obj, default=str)


def setup_logging(
    level: str = "INFO",
    json_format: bool = True,
    log_to_file: Optional[str] = None
) -> logging.Logger:
    """
    Configure structured logging for the operator.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Use JSON formatting (True) or standard format (False)
        log_to_file: Optional file path for log output

    Returns:
        Configured root logger
    """
    # Allow environment override
    level = os.environ.get("QUORUM_LOG_LEVEL", level).upper()
    json_format = os.environ.get("QUORUM_LOG_JSON", str(json_format)).lower() == "true"

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level, logging.INFO))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    if json_format:
        formatter = JSONFormatter()
    else:
        formatter = logging.Formatter(
            "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S"
        )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_to_file:
        file_handler = logging.FileHandler(log_to_file)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    # Reduce noise from third-party libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    return root_logger


def get_uvicorn_log_config(json_format: bool = True) -> dict:
    """
    Get uvicorn logging configuration compatible with our setup.

    Pass this to uvicorn.run(log_config=...) to ensure consistent logging.
    """
    formatters = {}
    handler = {
        "class": "logging.StreamHandler",
        "stream": "ext://sys.stdout",
    }
    if json_format:
        formatters["json"] = {"()": "quorum_tools.logging_config.JSONFormatter"}
        handler["formatter"] = "json"

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": formatters,
        "handlers": {"default": handler},
        "loggers": {
            "uvicorn": {"handlers": ["default"], "level": "INFO", "propagate": False},
            "uvicorn.error": {"handlers": ["default"], "level": "INFO", "propagate": False},
            "uvicorn.access": {"handlers": [], "level": "CRITICAL", "propagate": False},
        },
    }


def set_reconciliation(reconciliation: str) -> Token:
    """Set the reconciliation identity for the current context."""
    return reconciliation_ctx.set(reconciliation)


def reset_reconciliation(token: Token) -> None:
    """Restore the reconciliation identity that was active before ``set_reconciliation``."""
    reconciliation_ctx.reset(token)


def get_reconciliation() -> Optional[str]:
    """Get the reconciliation identity for the current context."""
    return reconciliation_ctx.get()
