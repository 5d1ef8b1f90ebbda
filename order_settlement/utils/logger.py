"""
Logging utilities for the order settlement core

Structured JSON logging plus a context filter that stamps order, worker and
payout identifiers onto every record emitted inside a ``LoggerContext``.
"""

import logging
import sys
import json
from contextvars import ContextVar, Token
from datetime import datetime, timezone
from typing import Dict, Any, Optional
from pathlib import Path

# LogRecord attributes that are not caller-supplied extras
_RESERVED_ATTRS = frozenset({
    'name', 'msg', 'args', 'levelname', 'levelno', 'pathname',
    'filename', 'module', 'lineno', 'funcName', 'created',
    'msecs', 'relativeCreated', 'thread', 'threadName',
    'processName', 'process', 'message', 'exc_info', 'exc_text',
    'stack_info', 'taskName'
})


class StructuredFormatter(logging.Formatter):
    """
    Formats log records as one JSON object per line.

    Caller-supplied ``extra`` fields and log context (order_id, worker_id,
    request_id, component) are nested under ``extra``.
    """

    def __init__(self, include_extra: bool = True):
        super().__init__()
        self.include_extra = include_extra

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno
        }

        if record.exc_info:
            log_entry["exception"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
                "traceback": self.formatException(record.exc_info)
            }

        if self.include_extra:
            extra_fields = {
                key: value for key, value in record.__dict__.items()
                if key not in _RESERVED_ATTRS and not key.startswith("_")
            }
            if extra_fields:
                log_entry["extra"] = extra_fields

        return json.dumps(log_entry, default=str, ensure_ascii=False)


# Context entered through LoggerContext, local to the current task
_scoped_context: ContextVar[Dict[str, Any]] = ContextVar("settlement_log_context", default={})


class SettlementContextFilter(logging.Filter):
    """Adds settlement context (component, order_id, worker_id, ...) to records."""

    def __init__(self):
        super().__init__()
        self.context: Dict[str, Any] = {}

    def set_context(self, **kwargs):
        self.context.update(kwargs)

    def clear_context(self):
        self.context.clear()

    def filter(self, record: logging.LogRecord) -> bool:
        for source in (_scoped_context.get(), self.context):
            for key, value in source.items():
                if not hasattr(record, key):
                    setattr(record, key, value)
        return True


def setup_logger(
    name: str,
    level: str = "INFO",
    structured: bool = True,
    log_file: Optional[str] = None
) -> logging.Logger:
    """
    Set up a logger with console (and optionally file) output.

    Args:
        name: Logger name
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        structured: Whether to use structured JSON logging
        log_file: Optional log file path

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)

    # Avoid adding handlers multiple times; the package NullHandler does not count
    if any(not isinstance(handler, logging.NullHandler) for handler in logger.handlers):
        return logger

    numeric_level = getattr(logging, level.upper(), logging.INFO)
    logger.setLevel(numeric_level)

    if structured:
        formatter: logging.Formatter = StructuredFormatter()
    else:
        formatter = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(numeric_level)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(numeric_level)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return get_logger(name)


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance."""
    logger = logging.getLogger(name)
    if not hasattr(logger, "context_filter"):
        context_filter = SettlementContextFilter()
        logger.addFilter(context_filter)
        logger.context_filter = context_filter
    return logger


def set_log_context(logger: logging.Logger, **kwargs):
    """Set context variables for a logger."""
    if hasattr(logger, 'context_filter'):
        logger.context_filter.set_context(**kwargs)


def clear_log_context(logger: logging.Logger):
    """Clear context variables for a logger."""
    if hasattr(logger, 'context_filter'):
        logger.context_filter.clear_context()


class LoggerContext:
    """
    Context manager for temporary log context.

    The context is held per asyncio task and applies to every settlement
    logger while the block runs, including inside awaited calls.

    Usage:
        with LoggerContext(self.logger, order_id=order.order_id):
            self.logger.info("Order assigned")
    """

    def __init__(self, logger: logging.Logger, **kwargs):
        self.logger = logger
        self.context = kwargs
        self._token: Optional[Token] = None

    def __enter__(self):
        self._token = _scoped_context.set({**_scoped_context.get(), **self.context})
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self._token is not None:
            _scoped_context.reset(self._token)
            self._token = None
