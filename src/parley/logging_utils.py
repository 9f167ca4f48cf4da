"""
Unified logging utility for Parley components.

Provides setup_logger(name, logfile) to configure a rotating file handler and
console handler with consistent formatting. Idempotent: reuses existing handlers
if already configured for the logger.

Supports both traditional and structured JSON logging. JSON output is chosen
per logger with ``structured=True``, for every logger with PARLEY_LOG_FORMAT=json,
or at runtime with set_structured().
"""
from __future__ import annotations

import json
import logging
import os
import uuid
from datetime import datetime
from logging.handlers import RotatingFileHandler

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

# Environment overrides (tests point the log directory at a tmp dir)
LOG_DIR_ENV = "PARLEY_LOG_DIR"
LOG_FORMAT_ENV = "PARLEY_LOG_FORMAT"


def _resolve_logfile(logfile: str) -> str:
    override = os.environ.get(LOG_DIR_ENV)
    if override:
        return os.path.join(override, os.path.basename(logfile))
    return logfile


def _make_formatter(structured: bool) -> logging.Formatter:
    if structured or os.environ.get(LOG_FORMAT_ENV, "").lower() == "json":
        return JSONFormatter()
    return logging.Formatter(LOG_FORMAT)


def setup_logger(name: str, logfile: str, level: int = logging.INFO, structured: bool = False) -> logging.Logger:
    """Create or return a configured logger with rotating file + console handlers.

    Args:
        name: Logger name
        logfile: Log file path
        level: Log level
        structured: Whether to use structured JSON logging
    """
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger

    logger.setLevel(level)
    logfile = _resolve_logfile(logfile)

    # Ensure logs directory exists
    try:
        logdir = os.path.dirname(logfile)
        if logdir and not os.path.exists(logdir):
            os.makedirs(logdir, exist_ok=True)
    except OSError:
        pass

    fmt = _make_formatter(structured)

    # File handler
    try:
        fh = RotatingFileHandler(logfile, maxBytes=2_000_000, backupCount=3)
        fh.setFormatter(fmt)
        logger.addHandler(fh)
    except OSError:
        # If file handler fails, rely on console handler only
        pass

    # Console handler
    ch = logging.StreamHandler()
    ch.setFormatter(fmt)
    logger.addHandler(ch)

    return logger


def _parley_loggers():
    for name, obj in logging.Logger.manager.loggerDict.items():
        if name.startswith("parley") and isinstance(obj, logging.Logger):
            yield obj


def set_level(level: int) -> None:
    """Apply a log level to every logger created under the parley namespace."""
    for logger in _parley_loggers():
        logger.setLevel(level)


def set_structured(enabled: bool = True) -> None:
    """Switch every parley logger's handlers between JSON and plain text."""
    for logger in _parley_loggers():
        for handler in logger.handlers:
            handler.setFormatter(JSONFormatter() if enabled else logging.Formatter(LOG_FORMAT))


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging"""

    _RESERVED = frozenset({
        'name', 'msg', 'args', 'levelname', 'levelno', 'pathname',
        'filename', 'module', 'exc_info', 'exc_text', 'stack_info',
        'lineno', 'funcName', 'created', 'msecs', 'relativeCreated',
        'thread', 'threadName', 'processName', 'process', 'message',
        'request_id', 'error_details', 'taskName',
    })

    def __init__(self, include_request_id: bool = True):
        super().__init__()
        self.include_request_id = include_request_id

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON"""
        log_entry = {
            'timestamp': datetime.fromtimestamp(record.created).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
        }

        if self.include_request_id and hasattr(record, 'request_id'):
            log_entry['request_id'] = record.request_id

        if getattr(record, 'error_details', None):
            log_entry['error_details'] = record.error_details

        for key, value in record.__dict__.items():
            if key not in self._RESERVED:
                log_entry[key] = value

        return json.dumps(log_entry, default=str)


def log_with_context(logger: logging.Logger, level: int, message: str, **context) -> None:
    """Log message with additional context (session id, seq, state...)"""
    if not logger.isEnabledFor(level):
        return
    request_id = context.get('request_id', str(uuid.uuid4())[:8])

    record = logging.LogRecord(
        name=logger.name,
        level=level,
        pathname="",
        lineno=0,
        msg=message,
        args=(),
        exc_info=None
    )

    record.request_id = request_id
    for key, value in context.items():
        setattr(record, key, value)

    logger.handle(record)


__all__ = [
    "setup_logger",
    "set_level",
    "set_structured",
    "JSONFormatter",
    "log_with_context",
]
