"""
VendOps Reconciliation - Structured JSON Logging

JSON lines in production, plain text in development. Every record carries
the request and reconciliation-run context it was emitted under, so a
background run execution can be traced back to the request that started it.
"""

import logging
import json
import sys
import os
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional
import traceback


_CONTEXT_FIELDS = ("request_id", "organization_id", "user_id", "run_id")

# Context vars follow asyncio tasks, so concurrent requests and
# background run executions never see each other's context
_context: Dict[str, ContextVar] = {
    name: ContextVar(f"log_{name}", default=None) for name in _CONTEXT_FIELDS
}

# LogRecord attributes that are not user-supplied "extra" fields
_RESERVED_ATTRS = frozenset([
    "name", "msg", "args", "created", "filename", "funcName",
    "levelname", "levelno", "lineno", "module", "msecs",
    "pathname", "process", "processName", "relativeCreated",
    "stack_info", "exc_info", "exc_text", "thread", "threadName",
    "message", "taskName", *_CONTEXT_FIELDS,
])


class JSONFormatter(logging.Formatter):
    """
    Formatter that outputs one JSON object per log line.

    Context fields are emitted at the top level only when set.
    """

    def __init__(self, service_name: str = "vendops-recon"):
        super().__init__()
        self.service_name = service_name
        self.environment = os.environ.get("ENVIRONMENT", "development")

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": self.service_name,
            "environment": self.environment,
        }

        for name in _CONTEXT_FIELDS:
            value = getattr(record, name, None)
            if value:
                log_data[name] = value

        if record.levelno >= logging.WARNING:
            log_data["location"] = f"{record.module}:{record.funcName}:{record.lineno}"

        if record.exc_info and record.exc_info[0]:
            log_data["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
                "traceback": traceback.format_exception(*record.exc_info),
            }

        extra_fields = {
            key: value for key, value in record.__dict__.items()
            if key not in _RESERVED_ATTRS
        }
        if extra_fields:
            log_data["extra"] = extra_fields

        return json.dumps(log_data, default=str)


class ReconciliationContextFilter(logging.Filter):
    """Copies the current request/run context onto each record."""

    def filter(self, record: logging.LogRecord) -> bool:
        for name, var in _context.items():
            if getattr(record, name, None) is None:
                setattr(record, name, var.get())
        return True


def setup_logging(
    level: str = "INFO",
    json_format: bool = True,
    service_name: str = "vendops-recon"
) -> logging.Logger:
    """
    Configure the root logger.

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
    if json_format:
        handler.setFormatter(JSONFormatter(service_name=service_name))
    else:
        handler.setFormatter(logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - [run=%(run_id)s] %(message)s"
        ))
    handler.addFilter(ReconciliationContextFilter())
    root_logger.addHandler(handler)

    # Suppress noisy loggers
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)

    return root_logger


def set_request_context(
    request_id: Optional[str] = None,
    organization_id: Optional[str] = None,
    user_id: Optional[str] = None
):
    """Set request context for logging in the current task."""
    _context["request_id"].set(request_id)
    _context["organization_id"].set(organization_id)
    _context["user_id"].set(user_id)


def clear_request_context():
    for var in _context.values():
        var.set(None)


@contextmanager
def run_log_context(run_id: str, organization_id: Optional[str] = None):
    """Tag every record emitted inside the block with a reconciliation run."""
    tokens = [(_context["run_id"], _context["run_id"].set(run_id))]
    if organization_id:
        tokens.append((_context["organization_id"], _context["organization_id"].set(organization_id)))
    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)


def current_log_context() -> Dict[str, Optional[str]]:
    """Snapshot of the logging context of the current task."""
    return {name: var.get() for name, var in _context.items()}
