"""
Invoicing Core - Structured JSON Logging

JSON log lines for aggregation in production, plain text locally.
Each line carries the request id and account of the request being served,
plus any ``extra`` fields the caller passed (reconciliation and recurring
events log their event name, account and details this way).
"""

import logging
import json
import sys
import os
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional
import traceback

_request_id: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
_account_id: ContextVar[Optional[str]] = ContextVar("account_id", default=None)

# LogRecord attributes that are not caller-supplied extras
_RESERVED = {
    "name", "msg", "args", "created", "filename", "funcName",
    "levelname", "levelno", "lineno", "module", "msecs",
    "pathname", "process", "processName", "relativeCreated",
    "stack_info", "exc_info", "exc_text", "thread", "threadName",
    "message", "taskName", "request_id", "account_id_ctx"
}


class JSONFormatter(logging.Formatter):
    """
    Formats each record as one JSON object per line.
    """

    def __init__(self, service_name: str = "invoicing-core"):
        super().__init__()
        self.service_name = service_name
        self.environment = os.environ.get("ENVIRONMENT", "development")
        self.hostname = os.environ.get("HOSTNAME", "unknown")

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": self.service_name,
            "environment": self.environment,
            "hostname": self.hostname,
            "request_id": getattr(record, "request_id", None),
        }

        # Explicit extra wins over the request's account
        account_id = getattr(record, "account_id", None) or getattr(record, "account_id_ctx", None)
        if account_id:
            log_data["account_id"] = account_id

        log_data["location"] = {
            "file": record.pathname,
            "line": record.lineno,
            "function": record.funcName,
        }

        if record.exc_info:
            log_data["exception"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
                "traceback": traceback.format_exception(*record.exc_info) if record.exc_info[0] else None,
            }

        extra_fields = {
            key: value for key, value in record.__dict__.items()
            if key not in _RESERVED and key != "account_id"
        }
        if extra_fields:
            log_data["extra"] = extra_fields

        return json.dumps(log_data, default=str)


class RequestContextFilter(logging.Filter):
    """
    Stamps records with the current request's id and account.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = _request_id.get()
        record.account_id_ctx = _account_id.get()
        return True


def setup_logging(
    level: str = "INFO",
    json_format: bool = True,
    service_name: str = "invoicing-core"
) -> logging.Logger:
    """
    Configure logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        json_format: Use JSON format (True for production)
        service_name: Service name for log aggregation

    Returns:
        Configured root logger
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(getattr(logging, level.upper(), logging.INFO))

    if json_format:
        handler.setFormatter(JSONFormatter(service_name=service_name))
    else:
        handler.setFormatter(logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - [%(request_id)s] %(message)s"
        ))

    handler.addFilter(RequestContextFilter())
    root_logger.addHandler(handler)

    # Suppress noisy loggers
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

    return root_logger


def set_request_context(request_id: Optional[str] = None, account_id: Optional[str] = None):
    """Set request context for logging."""
    _request_id.set(request_id)
    _account_id.set(account_id)


def clear_request_context():
    _request_id.set(None)
    _account_id.set(None)


def set_account_context(account_id: Optional[str]):
    """Attach the resolved account to the rest of the request's log lines."""
    _account_id.set(account_id)
