"""
Logging configuration for the IoB client SDK.

This module provides structured logging with an authentication audit trail
and configurable output formats. Host applications may also mirror SDK log
output into their own logging hook through a callback handler.
"""

import json
import logging
import logging.handlers
import os
import sys
from datetime import datetime
from pathlib import Path
from typing import Dict, Any, Optional, Callable
from enum import Enum

from iob_shared.exceptions import IobSdkError

SDK_LOGGER_NAME = "iob_client"
LOG_PREFIX = "[IoB Client]"


class LogLevel(Enum):
    """Log level enumeration."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class LogFormat(Enum):
    """Log format enumeration."""
    STANDARD = "standard"
    JSON = "json"
    DETAILED = "detailed"


class AuditEventType(Enum):
    """Types of events that should be audited."""
    LOGIN = "login"
    REFRESH = "refresh"
    LOGOUT = "logout"
    FORCED_CLEAR = "forced_clear"
    EXTERNAL_CHANGE = "external_change"
    ERROR_EVENT = "error_event"


_RESERVED_RECORD_FIELDS = {
    'name', 'msg', 'args', 'levelname', 'levelno', 'pathname', 'filename',
    'module', 'lineno', 'funcName', 'created', 'msecs', 'relativeCreated',
    'thread', 'threadName', 'processName', 'process', 'getMessage', 'exc_info',
    'exc_text', 'stack_info', 'error_info', 'audit_info', 'taskName',
}


class StructuredFormatter(logging.Formatter):
    """
    Formatter that outputs structured JSON logs with consistent fields.
    """

    def __init__(self, include_extra_fields: bool = True):
        super().__init__()
        self.include_extra_fields = include_extra_fields

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as structured JSON."""
        log_entry = {
            'timestamp': datetime.fromtimestamp(record.created).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno,
            'pid': os.getpid(),
        }

        if record.exc_info:
            log_entry['exception'] = {
                'type': record.exc_info[0].__name__ if record.exc_info[0] else None,
                'message': str(record.exc_info[1]) if record.exc_info[1] else None,
                'traceback': self.formatException(record.exc_info)
            }

        error = getattr(record, 'error_info', None)
        if isinstance(error, IobSdkError):
            log_entry['error'] = {
                'code': error.error_code.value,
                'severity': error.severity.value,
                'context': error.context,
                'recovery_actions': [action.value for action in error.recovery_actions],
                'user_message': error.user_message
            }

        if hasattr(record, 'audit_info'):
            log_entry['audit'] = record.audit_info

        if self.include_extra_fields:
            extra_fields = {
                key: value for key, value in record.__dict__.items()
                if key not in _RESERVED_RECORD_FIELDS
            }
            if extra_fields:
                log_entry['extra'] = extra_fields

        return json.dumps(log_entry, default=str, ensure_ascii=False)


class DetailedFormatter(logging.Formatter):
    """
    Detailed human-readable formatter.
    """

    def __init__(self):
        super().__init__(
            fmt='%(asctime)s | %(levelname)-8s | %(name)-28s | %(funcName)-20s:%(lineno)-4d | %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

    def format(self, record: logging.LogRecord) -> str:
        formatted = super().format(record)

        error = getattr(record, 'error_info', None)
        if isinstance(error, IobSdkError):
            formatted += f"\n  Error Code: {error.error_code.value}"
            formatted += f"\n  Severity: {error.severity.value}"
            if error.context:
                formatted += f"\n  Context: {json.dumps(error.context, indent=2, default=str)}"

        if hasattr(record, 'audit_info'):
            formatted += f"\n  Audit: {json.dumps(record.audit_info, indent=2, default=str)}"

        return formatted


class CallbackHandler(logging.Handler):
    """
    Forwards SDK log records to a host-supplied ``callback(message, data)``.

    ``data`` carries the structured error or audit information attached to
    the record, if any.
    """

    def __init__(self, callback: Callable[[str, Optional[Any]], None], level: int = logging.NOTSET):
        super().__init__(level)
        self.callback = callback

    def emit(self, record: logging.LogRecord) -> None:
        try:
            message = f"{LOG_PREFIX} {record.getMessage()}"
            data = None
            error = getattr(record, 'error_info', None)
            if isinstance(error, IobSdkError):
                data = error.to_dict()
            elif hasattr(record, 'audit_info'):
                data = record.audit_info
            self.callback(message, data)
        except Exception:
            self.handleError(record)


class AuditLogger:
    """
    Logger for authentication lifecycle events with structured information.
    """

    def __init__(self, logger_name: str = "audit"):
        self.logger = logging.getLogger(logger_name)

    def log_event(
        self,
        event_type: AuditEventType,
        message: str,
        result: Optional[str] = None,
        additional_context: Optional[Dict[str, Any]] = None
    ) -> None:
        """
        Log an audit event.

        Args:
            event_type: Type of audit event
            message: Human-readable message
            result: Result of the operation (success, failure, etc.)
            additional_context: Additional context information
        """
        audit_info = {
            'event_type': event_type.value,
            'timestamp': datetime.now().isoformat(),
            'result': result,
            'context': additional_context or {}
        }
        audit_info = {k: v for k, v in audit_info.items() if v is not None}

        self.logger.info(message, extra={'audit_info': audit_info})

    def log_authentication(
        self,
        event_type: AuditEventType,
        success: bool = True,
        failure_reason: Optional[str] = None,
        expires_at: Optional[datetime] = None
    ) -> None:
        """Log a login or refresh outcome."""
        context: Dict[str, Any] = {}
        if failure_reason:
            context['failure_reason'] = failure_reason
        if expires_at:
            context['expires_at'] = expires_at.isoformat()

        self.log_event(
            event_type=event_type,
            message=f"{event_type.value.capitalize()} {'successful' if success else 'failed'}",
            result="success" if success else "failure",
            additional_context=context
        )

    def log_error(self, error: IobSdkError) -> None:
        """Log error events."""
        self.log_event(
            event_type=AuditEventType.ERROR_EVENT,
            message=f"Error occurred: {error.message}",
            result="error",
            additional_context={
                'error_code': error.error_code.value,
                'severity': error.severity.value,
                'context': error.context
            }
        )


def setup_logging(
    log_level: LogLevel = LogLevel.INFO,
    log_format: LogFormat = LogFormat.STANDARD,
    log_file: Optional[str] = None,
    max_file_size: int = 10 * 1024 * 1024,  # 10MB
    backup_count: int = 5,
    enable_console: bool = True,
    enable_audit: bool = True,
    audit_file: Optional[str] = None,
    log_callback: Optional[Callable[[str, Optional[Any]], None]] = None
) -> Dict[str, logging.Logger]:
    """
    Set up logging for the SDK loggers.

    Only the ``iob_client`` and ``audit`` loggers are configured; the host
    application's root logger is left alone.

    Args:
        log_level: Minimum log level to capture
        log_format: Format for log output
        log_file: Path to log file (optional)
        max_file_size: Maximum size of log files before rotation
        backup_count: Number of backup files to keep
        enable_console: Whether to enable console logging
        enable_audit: Whether to enable audit logging
        audit_file: Path to audit log file (optional)
        log_callback: Host hook called with (message, data) for every record

    Returns:
        Dictionary of configured loggers
    """
    sdk_logger = logging.getLogger(SDK_LOGGER_NAME)
    for handler in sdk_logger.handlers[:]:
        sdk_logger.removeHandler(handler)
    sdk_logger.setLevel(getattr(logging, log_level.value))

    if log_format == LogFormat.JSON:
        formatter = StructuredFormatter()
    elif log_format == LogFormat.DETAILED:
        formatter = DetailedFormatter()
    else:
        formatter = logging.Formatter(
            fmt='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

    handlers = []

    if enable_console:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(formatter)
        handlers.append(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=max_file_size,
            backupCount=backup_count,
            encoding='utf-8'
        )
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    if log_callback:
        handlers.append(CallbackHandler(log_callback))

    for handler in handlers:
        sdk_logger.addHandler(handler)

    loggers = {'sdk': sdk_logger}

    if enable_audit:
        audit_logger = logging.getLogger('audit')
        for handler in audit_logger.handlers[:]:
            audit_logger.removeHandler(handler)
        audit_logger.setLevel(logging.INFO)

        if audit_file:
            audit_path = Path(audit_file)
            audit_path.parent.mkdir(parents=True, exist_ok=True)

            audit_handler = logging.handlers.RotatingFileHandler(
                audit_file,
                maxBytes=max_file_size,
                backupCount=backup_count,
                encoding='utf-8'
            )
        else:
            audit_handler = logging.StreamHandler(sys.stdout)
        # Audit records are always JSON
        audit_handler.setFormatter(StructuredFormatter())
        audit_logger.addHandler(audit_handler)

        if log_callback:
            audit_logger.addHandler(CallbackHandler(log_callback))

        loggers['audit'] = audit_logger

    return loggers


def log_structured_error(
    logger: logging.Logger,
    error: IobSdkError,
    level: int = logging.ERROR
) -> None:
    """
    Log a structured error with its context information.

    Args:
        logger: Logger instance to use
        error: The structured error to log
        level: Log level to emit at
    """
    logger.log(level, error.message, extra={'error_info': error})
