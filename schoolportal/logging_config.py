"""
SchoolPortal - Centralized Logging Configuration
Supports both development (plain text) and production (JSON structured) logging
"""

import logging
import os
import sys
import json
import traceback
import uuid
from datetime import datetime, timezone
from pathlib import Path
from logging.handlers import RotatingFileHandler
from typing import Any, Dict, Optional
from contextvars import ContextVar


# Context variables for request tracing
request_id_var: ContextVar[str] = ContextVar('request_id', default='')
test_id_var: ContextVar[str] = ContextVar('test_id', default='')


def get_request_id() -> str:
    """Get current request ID from context"""
    return request_id_var.get() or ''


def set_request_id(request_id: str) -> None:
    """Set request ID in context"""
    request_id_var.set(request_id)


def get_test_id() -> str:
    """Get current test ID from context"""
    return test_id_var.get() or ''


def set_test_id(test_id: str) -> None:
    """Set test ID in context"""
    test_id_var.set(test_id)


def generate_request_id() -> str:
    """Generate a unique request ID"""
    return str(uuid.uuid4())[:8]


_STANDARD_RECORD_KEYS = {
    'name', 'msg', 'args', 'created', 'filename', 'funcName',
    'levelname', 'levelno', 'lineno', 'module', 'msecs',
    'pathname', 'process', 'processName', 'relativeCreated',
    'stack_info', 'exc_info', 'exc_text', 'thread', 'threadName',
    'message', 'taskName', 'request_id', 'test_id',
}


class JSONFormatter(logging.Formatter):
    """
    JSON formatter for structured logging in production
    Outputs one JSON object per line so log shippers can parse it directly
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        request_id = get_request_id()
        if request_id:
            log_data["request_id"] = request_id

        test_id = get_test_id()
        if test_id:
            log_data["test_id"] = test_id

        if record.exc_info:
            log_data["exception"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
                "traceback": traceback.format_exception(*record.exc_info) if record.exc_info[0] else None
            }

        # Extra fields passed through `extra=`
        for key, value in record.__dict__.items():
            if key not in _STANDARD_RECORD_KEYS and not key.startswith('_'):
                log_data[key] = value

        return json.dumps(log_data, default=str)


class ContextualFormatter(logging.Formatter):
    """
    Formatter that includes context variables (request_id, test_id)
    Used for development with readable output
    """

    def format(self, record: logging.LogRecord) -> str:
        record.request_id = get_request_id() or '-'
        record.test_id = get_test_id() or '-'

        return super().format(record)


class SchoolPortalLogger(logging.Logger):
    """
    Custom logger with convenience methods for structured logging
    """

    def log_request(self, method: str, path: str, status_code: int,
                    duration_ms: float, attempt: int = 0, **kwargs) -> None:
        """Log one HTTP attempt"""
        self.info(
            f"HTTP {method} {path} - {status_code} ({duration_ms:.2f}ms)" +
            (f" [retry {attempt}]" if attempt else ""),
            extra={
                "event_type": "http_request",
                "http_method": method,
                "http_path": path,
                "http_status": status_code,
                "duration_ms": duration_ms,
                "attempt": attempt,
                **kwargs
            }
        )

    def log_auth_event(self, event: str, success: bool, user_email: str = None,
                       reason: str = None, **kwargs) -> None:
        """Log authentication events"""
        level = logging.INFO if success else logging.WARNING
        self.log(
            level,
            f"Auth {event}: {'success' if success else 'failed'}" +
            (f" - {user_email}" if user_email else "") +
            (f" - {reason}" if reason else ""),
            extra={
                "event_type": "auth",
                "auth_event": event,
                "auth_success": success,
                "user_email": user_email,
                "failure_reason": reason,
                **kwargs
            }
        )

    def log_integrity_event(self, test_id: Any, event: str, **kwargs) -> None:
        """Log proctoring integrity events (fullscreen exits and the like)"""
        self.warning(
            f"Integrity {event} on test {test_id}",
            extra={
                "event_type": "integrity",
                "integrity_event": event,
                "integrity_test_id": str(test_id),
                **kwargs
            }
        )

    def log_error_with_context(self, error: Exception, context: str = None,
                               **kwargs) -> None:
        """Log error with full context"""
        self.error(
            f"Error in {context}: {type(error).__name__}: {str(error)}",
            exc_info=True,
            extra={
                "event_type": "error",
                "error_type": type(error).__name__,
                "error_message": str(error),
                "error_context": context,
                **kwargs
            }
        )


def setup_logging(
    level: Optional[str] = None,
    log_file: Optional[str] = None,
    environment: Optional[str] = None,
) -> SchoolPortalLogger:
    """Setup logging configuration; unset arguments fall back to the environment"""
    level = level or os.environ.get("SCHOOLPORTAL_LOG_LEVEL", "WARNING")
    log_file = log_file or os.environ.get("SCHOOLPORTAL_LOG_FILE")
    environment = environment or os.environ.get("SCHOOLPORTAL_ENVIRONMENT", "development")

    logging.setLoggerClass(SchoolPortalLogger)

    logger = logging.getLogger("schoolportal")
    logger.__class__ = SchoolPortalLogger
    logger.setLevel(logging.DEBUG)
    logger.propagate = False

    logger.handlers.clear()

    is_production = environment == "production"
    console_level = getattr(logging, level.upper(), logging.WARNING)

    if is_production:
        formatter: logging.Formatter = JSONFormatter()
        file_formatter: logging.Formatter = formatter
    else:
        detailed_format = (
            "%(asctime)s | %(levelname)-8s | "
            "[%(request_id)s] [test %(test_id)s] | "
            "%(funcName)s:%(lineno)d | %(message)s"
        )
        simple_format = "%(levelname)-8s | %(message)s"
        formatter = ContextualFormatter(simple_format)
        file_formatter = ContextualFormatter(detailed_format)

    # stdout is reserved for the client output
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(console_level)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = RotatingFileHandler(
            path,
            maxBytes=10485760,  # 10MB
            backupCount=5
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(file_formatter)
        logger.addHandler(file_handler)

    # Suppress noisy loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    logger.debug(
        "Logging initialized",
        extra={
            "environment": environment,
            "log_level": level,
            "json_logging": is_production
        }
    )

    return logger


# Create logger instance
logger: SchoolPortalLogger = setup_logging()


__all__ = [
    'logger',
    'setup_logging',
    'get_request_id',
    'set_request_id',
    'get_test_id',
    'set_test_id',
    'generate_request_id',
    'SchoolPortalLogger',
]
