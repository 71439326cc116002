"""
Exception hierarchy for the IoB client SDK.

This module defines structured exceptions with error codes, context information,
and recovery suggestions for consistent error handling across the token
lifecycle components.
"""

from datetime import datetime, timezone
from typing import Optional, Dict, Any, List
from enum import Enum


class ErrorCode(Enum):
    """Standardized error codes for the IoB client SDK."""

    # Authentication Errors (1000-1099)
    AUTH_LOGIN_FAILED = "AUTH_1001"
    AUTH_REFRESH_FAILED = "AUTH_1002"
    AUTH_INVALID_RESPONSE = "AUTH_1003"
    AUTH_MANAGER_DESTROYED = "AUTH_1004"

    # Storage Errors (2000-2099)
    STORAGE_UNAVAILABLE = "STORAGE_2001"
    STORAGE_WRITE_FAILED = "STORAGE_2002"
    STORAGE_MALFORMED_DATA = "STORAGE_2003"

    # Configuration Errors (8000-8099)
    CONFIG_INVALID_FORMAT = "CONFIG_8002"
    CONFIG_INVALID_VALUE = "CONFIG_8004"


class ErrorSeverity(Enum):
    """Error severity levels for logging and handling."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class RecoveryAction(Enum):
    """Suggested recovery actions for errors."""
    RETRY = "retry"
    LOGIN = "login"
    USE_MEMORY_STORAGE = "use_memory_storage"
    USER_INTERVENTION = "user_intervention"
    IGNORE = "ignore"


class IobSdkError(Exception):
    """
    Base exception class for all IoB client SDK errors.

    Provides structured error information including error codes, context,
    and recovery suggestions so callers can log or display failures.
    """

    def __init__(
        self,
        message: str,
        error_code: ErrorCode,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        context: Optional[Dict[str, Any]] = None,
        recovery_actions: Optional[List[RecoveryAction]] = None,
        cause: Optional[BaseException] = None,
        user_message: Optional[str] = None
    ):
        super().__init__(message)

        self.message = message
        self.error_code = error_code
        self.severity = severity
        self.context = context or {}
        self.recovery_actions = recovery_actions or []
        self.cause = cause
        self.user_message = user_message or message
        self.timestamp = datetime.now(timezone.utc)

        if cause:
            self.context['cause_type'] = type(cause).__name__
            self.context['cause_message'] = str(cause)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary format for serialization."""
        return {
            'error': {
                'code': self.error_code.value,
                'message': self.message,
                'user_message': self.user_message,
                'severity': self.severity.value,
                'timestamp': self.timestamp.isoformat(),
                'context': self.context,
                'recovery_actions': [action.value for action in self.recovery_actions],
                'cause': {
                    'type': self.context.get('cause_type'),
                    'message': self.context.get('cause_message')
                } if self.cause else None
            }
        }


class AuthenticationFailedError(IobSdkError):
    """The login handshake failed; fatal for the current login() call."""

    def __init__(self, message: str, error_code: ErrorCode = ErrorCode.AUTH_LOGIN_FAILED, **kwargs):
        super().__init__(
            message=message,
            error_code=error_code,
            severity=ErrorSeverity.HIGH,
            recovery_actions=[RecoveryAction.USER_INTERVENTION],
            **kwargs
        )


class RefreshFailedError(IobSdkError):
    """Token renewal failed; the current token is no longer served."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message=message,
            error_code=ErrorCode.AUTH_REFRESH_FAILED,
            severity=ErrorSeverity.HIGH,
            recovery_actions=[RecoveryAction.LOGIN],
            **kwargs
        )


class AuthManagerDestroyedError(IobSdkError):
    """Raised by every public call made after destroy()."""

    def __init__(self, operation: str):
        super().__init__(
            message=f"Auth manager has been destroyed; cannot call {operation}()",
            error_code=ErrorCode.AUTH_MANAGER_DESTROYED,
            severity=ErrorSeverity.LOW,
            context={'operation': operation}
        )


class StorageUnavailableError(IobSdkError):
    """Persistent storage could not be used; callers degrade to memory."""

    def __init__(self, message: str, error_code: ErrorCode = ErrorCode.STORAGE_UNAVAILABLE, **kwargs):
        super().__init__(
            message=message,
            error_code=error_code,
            severity=ErrorSeverity.LOW,
            recovery_actions=[RecoveryAction.USE_MEMORY_STORAGE],
            **kwargs
        )


class MalformedStoredDataError(IobSdkError):
    """Stored data could not be decoded; treated as absent by the adapter."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message=message,
            error_code=ErrorCode.STORAGE_MALFORMED_DATA,
            severity=ErrorSeverity.LOW,
            recovery_actions=[RecoveryAction.IGNORE],
            **kwargs
        )


class ConfigurationError(IobSdkError):
    """Configuration related errors."""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.CONFIG_INVALID_VALUE,
        config_key: Optional[str] = None,
        **kwargs
    ):
        context = kwargs.pop('context', {})
        if config_key:
            context['config_key'] = config_key

        super().__init__(
            message=message,
            error_code=error_code,
            severity=ErrorSeverity.HIGH,
            recovery_actions=[RecoveryAction.USER_INTERVENTION],
            context=context,
            **kwargs
        )
