"""
Structured Logging Configuration

Provides:
- Correlation IDs for tracing one payment claim across verifier and ledger
- JSON formatting for machine parsing
- Contextual data (account_key, tx_id)
- Log rotation support
- Address masking for log messages
"""

import contextvars
import json
import logging
import logging.handlers
import sys
import traceback
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Union
from uuid import uuid4


correlation_id_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "correlation_id", default=None
)
account_key_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "account_key", default=None
)
tx_id_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "tx_id", default=None
)


class CorrelationContext:
    """Context manager for setting correlation context."""

    def __init__(
        self,
        correlation_id: Optional[str] = None,
        account_key: Optional[str] = None,
        tx_id: Optional[str] = None,
    ):
        self.correlation_id = correlation_id or str(uuid4())
        self.account_key = account_key
        self.tx_id = tx_id
        self._tokens = []

    def __enter__(self):
        self._tokens.append((correlation_id_var, correlation_id_var.set(self.correlation_id)))
        if self.account_key:
            self._tokens.append((account_key_var, account_key_var.set(self.account_key)))
        if self.tx_id:
            self._tokens.append((tx_id_var, tx_id_var.set(self.tx_id)))
        return self

    def __exit__(self, *args):
        for var, token in reversed(self._tokens):
            var.reset(token)


def _context_fields() -> Dict[str, str]:
    fields = {}
    for name, var in (
        ("correlation_id", correlation_id_var),
        ("account_key", account_key_var),
        ("tx_id", tx_id_var),
    ):
        value = var.get()
        if value:
            fields[name] = value
    return fields


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def __init__(
        self,
        include_traceback: bool = True,
        include_context: bool = True,
        extra_fields: Optional[Dict[str, Any]] = None,
    ):
        super().__init__()
        self.include_traceback = include_traceback
        self.include_context = include_context
        self.extra_fields = extra_fields or {}

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if self.include_context:
            log_data.update(_context_fields())

        log_data.update(self.extra_fields)

        if record.exc_info and self.include_traceback:
            log_data["exception"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
                "traceback": traceback.format_exception(*record.exc_info),
            }

        if hasattr(record, "extra_data"):
            log_data["extra"] = record.extra_data

        return json.dumps(log_data, default=str)


class StructuredFormatter(logging.Formatter):
    """Human-readable structured formatter for console output."""

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.fromtimestamp(record.created, tz=timezone.utc).strftime(
            "%Y-%m-%d %H:%M:%S"
        )
        parts = [
            f"[{timestamp}]",
            f"[{record.levelname}]",
            f"[{record.name}]",
            record.getMessage(),
        ]

        context = _context_fields()
        if "correlation_id" in context:
            context["correlation_id"] = context["correlation_id"][:8]
        if context:
            parts.append("[" + ", ".join(f"{k}={v}" for k, v in context.items()) + "]")

        if record.exc_info:
            parts.append("\n" + "".join(traceback.format_exception(*record.exc_info)))

        return " ".join(parts)


def setup_logging(
    level: Union[str, int] = logging.INFO,
    json_format: bool = True,
    log_file: Optional[Union[str, Path]] = None,
    console_output: bool = True,
    max_bytes: int = 50 * 1024 * 1024,
    backup_count: int = 5,
    extra_fields: Optional[Dict[str, Any]] = None,
) -> logging.Logger:
    """
    Configure logging for the `creditledger` logger tree.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Use JSON formatting for the file handler
        log_file: Optional path of a rotating log file
        console_output: Enable human-readable console output
        max_bytes: Max size of log file before rotation
        backup_count: Number of rotated files to keep
        extra_fields: Additional fields included in every JSON record

    Returns:
        The configured `creditledger` logger
    """
    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)

    root = logging.getLogger("creditledger")
    root.setLevel(level)
    root.handlers.clear()

    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            path,
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )
        if json_format:
            file_handler.setFormatter(JSONFormatter(extra_fields=extra_fields))
        else:
            file_handler.setFormatter(StructuredFormatter())
        root.addHandler(file_handler)

    if console_output:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(StructuredFormatter())
        root.addHandler(console_handler)

    return root


def mask_address(address: Optional[str], keep: int = 10) -> str:
    """Shorten a wallet address or email for log output."""
    if not address:
        return "<none>"
    if len(address) <= keep:
        return address
    return address[:keep] + "..."
