"""
Parley centralized error handling and exception taxonomy.

Per-chunk failures (encode, playback decode, malformed server messages) are
reported here and never escalate; device and exhausted-transport failures are
raised to the controller, which ends the session.
"""
import logging
import time
import traceback
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Type

from .logging_utils import log_with_context, setup_logger

logger = setup_logger("parley.error_handler", "logs/parley.log")


class ErrorSeverity(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


_SEVERITY_LEVELS = {
    ErrorSeverity.LOW: logging.INFO,
    ErrorSeverity.MEDIUM: logging.WARNING,
    ErrorSeverity.HIGH: logging.ERROR,
    ErrorSeverity.CRITICAL: logging.CRITICAL,
}


@dataclass
class ErrorContext:
    """Context information for error tracking"""
    component: str
    operation: str
    session_id: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.now)
    metadata: Dict[str, Any] = field(default_factory=dict)


class ErrorHandler:
    """Centralized error reporting with bounded history and per-type counts"""

    def __init__(self, max_history_size: int = 1000):
        self.error_count = 0
        self.error_history: List[Dict[str, Any]] = []
        self.max_history_size = max_history_size
        self.error_handlers: Dict[Type[Exception], Callable] = {}

    def register_error_handler(self, exception_type: Type[Exception], handler: Callable) -> None:
        """Register a custom error handler for a specific exception type"""
        self.error_handlers[exception_type] = handler

    def handle_error(self, error: Exception, context: ErrorContext, severity: ErrorSeverity = ErrorSeverity.MEDIUM) -> Dict[str, Any]:
        """Handle an error with context and severity"""
        error_id = f"ERR_{int(time.time() * 1000000)}"
        self.error_count += 1

        error_details = {
            'error_id': error_id,
            'type': error.__class__.__name__,
            'message': str(error),
            'traceback': ''.join(traceback.format_exception(type(error), error, error.__traceback__)),
            'context': {
                'component': context.component,
                'operation': context.operation,
                'session_id': context.session_id,
                'metadata': context.metadata,
            },
            'severity': severity.value,
            'timestamp': context.timestamp.isoformat(),
            'count': self.error_count,
        }

        custom = self.error_handlers.get(error.__class__)
        if custom is not None:
            try:
                return custom(error, context, severity)
            except Exception as handler_error:
                logger.error(f"Error in custom handler for {error.__class__.__name__}: {handler_error}")

        self._log_error(error_details, severity)
        self._add_to_history(error_details)
        return error_details

    def _log_error(self, error_details: Dict[str, Any], severity: ErrorSeverity) -> None:
        """Log error with appropriate level"""
        ctx = error_details['context']
        log_message = (
            f"[{error_details['error_id']}] {ctx['component']}.{ctx['operation']} "
            f"{error_details['type']}: {error_details['message']}"
        )

        log_with_context(
            logger,
            _SEVERITY_LEVELS[severity],
            log_message,
            error_details=error_details,
            error_id=error_details['error_id'],
            component=ctx['component'],
            operation=ctx['operation'],
            session_id=ctx['session_id'],
            metadata=ctx['metadata'],
        )

    def _add_to_history(self, error_details: Dict[str, Any]) -> None:
        """Add error to history, removing old entries if needed"""
        self.error_history.append(error_details)
        if len(self.error_history) > self.max_history_size:
            self.error_history = self.error_history[-self.max_history_size:]

    def get_error_stats(self) -> Dict[str, Any]:
        """Get error statistics"""
        return {
            'total_errors': self.error_count,
            'recent_errors': len(self.error_history),
            'error_types': self._get_error_type_counts(),
        }

    def _get_error_type_counts(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for error in self.error_history[-100:]:
            error_type = error['type']
            counts[error_type] = counts.get(error_type, 0) + 1
        return counts

    def clear_error_history(self) -> None:
        """Clear error history"""
        self.error_history.clear()
        self.error_count = 0


def get_error_handler() -> ErrorHandler:
    """Get or create error handler instance"""
    if not hasattr(get_error_handler, '_instance'):
        get_error_handler._instance = ErrorHandler()
    return get_error_handler._instance


def handle_error(error: Exception, component: str, operation: str, severity: ErrorSeverity = ErrorSeverity.MEDIUM, **context_kwargs) -> Dict[str, Any]:
    """Convenience function to handle errors"""
    context = ErrorContext(component=component, operation=operation, **context_kwargs)
    return get_error_handler().handle_error(error, context, severity)


@contextmanager
def error_context(component: str, operation: str, severity: ErrorSeverity = ErrorSeverity.MEDIUM, **context_kwargs):
    """Record any exception raised in the block, then re-raise it"""
    try:
        yield
    except Exception as e:
        handle_error(e, component, operation, severity, **context_kwargs)
        raise


class ParleyError(Exception):
    """Base exception for Parley errors"""

    def __init__(self, message: str, component: str = "unknown", operation: str = "unknown", **kwargs):
        super().__init__(message)
        self.component = component
        self.operation = operation
        self.context = kwargs


class PermissionDenied(ParleyError):
    """Microphone access was refused by the OS or user"""


class DeviceUnavailable(ParleyError):
    """No usable capture/playback device"""


class EncodeFailure(ParleyError):
    """A single chunk could not be encoded; non-fatal"""


class TransportError(ParleyError):
    """Transport failure. Transient errors are retried, fatal ones end the session."""

    def __init__(self, message: str, transient: bool = True, **kwargs):
        kwargs.setdefault("component", "transport")
        super().__init__(message, **kwargs)
        self.transient = transient


class ConnectError(TransportError):
    """The transport could not be opened"""


class MalformedServerMessage(ParleyError):
    """Inbound message could not be parsed; logged and ignored"""


class PlaybackDecodeFailure(ParleyError):
    """A response audio chunk could not be decoded; skipped"""


class ConfigurationError(ParleyError, ValueError):
    """Invalid configuration file; a ValueError so existing callers keep catching it"""


__all__ = [
    "ErrorSeverity",
    "ErrorContext",
    "ErrorHandler",
    "get_error_handler",
    "handle_error",
    "error_context",
    "ParleyError",
    "PermissionDenied",
    "DeviceUnavailable",
    "EncodeFailure",
    "TransportError",
    "ConnectError",
    "MalformedServerMessage",
    "PlaybackDecodeFailure",
    "ConfigurationError",
]
