"""
Exception hierarchy for the CaseFlow sync client.

Every error carries an error code, a severity, context information and
suggested recovery actions so that failures surface consistently in logs,
in response envelopes and in the CLI.
"""

from datetime import datetime
from typing import Optional, Dict, Any, List
from enum import Enum


class ErrorCode(Enum):
    """Error codes; the values double as response-envelope codes."""

    # Authentication
    AUTH_REQUIRED = "AUTH_REQUIRED"
    LOGIN_FAILED = "LOGIN_FAILED"
    LOGOUT_ERROR = "LOGOUT_ERROR"
    REFRESH_FAILED = "REFRESH_FAILED"
    TOKEN_MALFORMED = "TOKEN_MALFORMED"
    PROFILE_UPDATE_FAILED = "PROFILE_UPDATE_FAILED"

    # Network and transport
    NETWORK_ERROR = "NETWORK_ERROR"
    REQUEST_TIMEOUT = "REQUEST_TIMEOUT"
    SERVER_ERROR = "SERVER_ERROR"
    CLIENT_ERROR = "CLIENT_ERROR"
    INVALID_RESPONSE = "INVALID_RESPONSE"

    # Cases and synchronization
    CASE_NOT_FOUND = "CASE_NOT_FOUND"
    SUBMISSION_FAILED = "SUBMISSION_FAILED"
    ALREADY_SUBMITTED = "ALREADY_SUBMITTED"
    SYNC_OFFLINE = "SYNC_OFFLINE"
    SYNC_OPERATION_FAILED = "SYNC_OPERATION_FAILED"
    SYNC_RETRIES_EXHAUSTED = "SYNC_RETRIES_EXHAUSTED"

    # Validation
    VALIDATION_INVALID_INPUT = "VALIDATION_INVALID_INPUT"
    VALIDATION_FIELD_NOT_WRITABLE = "VALIDATION_FIELD_NOT_WRITABLE"
    VALIDATION_UNKNOWN_REPORT = "VALIDATION_UNKNOWN_REPORT"

    # Local persistence
    STORAGE_READ_FAILED = "STORAGE_READ_FAILED"
    STORAGE_WRITE_FAILED = "STORAGE_WRITE_FAILED"
    STORAGE_ENCRYPTION_FAILED = "STORAGE_ENCRYPTION_FAILED"

    # Configuration
    CONFIG_INVALID_FORMAT = "CONFIG_INVALID_FORMAT"
    CONFIG_INVALID_VALUE = "CONFIG_INVALID_VALUE"

    INTERNAL_UNEXPECTED_ERROR = "INTERNAL_UNEXPECTED_ERROR"


class ErrorSeverity(Enum):
    """Error severity levels for logging and handling."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class RecoveryAction(Enum):
    """Suggested recovery actions for errors."""
    RETRY = "retry"
    RETRY_WITH_BACKOFF = "retry_with_backoff"
    REFRESH_TOKEN = "refresh_token"
    LOGIN_AGAIN = "login_again"
    WORK_OFFLINE = "work_offline"
    USER_INTERVENTION = "user_intervention"
    CONTACT_ADMIN = "contact_admin"
    IGNORE = "ignore"


class CaseFlowError(Exception):
    """
    Base exception class for all CaseFlow client errors.

    Provides structured error information including error codes, context,
    and recovery suggestions for consistent error handling.
    """

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.INTERNAL_UNEXPECTED_ERROR,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        context: Optional[Dict[str, Any]] = None,
        recovery_actions: Optional[List[RecoveryAction]] = None,
        cause: Optional[Exception] = None,
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
        self.timestamp = datetime.now()

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

    def to_envelope_error(self) -> Dict[str, Any]:
        """Short `{code, message}` form used inside response envelopes."""
        return {'code': self.error_code.value, 'message': self.message}


class NetworkError(CaseFlowError):
    """Transport failures: connection refused, DNS, timeouts."""

    def __init__(self, message: str, error_code: ErrorCode = ErrorCode.NETWORK_ERROR, **kwargs):
        kwargs.setdefault('severity', ErrorSeverity.MEDIUM)
        kwargs.setdefault('recovery_actions', [RecoveryAction.RETRY_WITH_BACKOFF, RecoveryAction.WORK_OFFLINE])
        super().__init__(message=message, error_code=error_code, **kwargs)


class HttpStatusError(CaseFlowError):
    """
    The service answered with a non-2xx status.

    Its envelope code is HTTP_<status>; the enum code is kept for logs.
    """

    def __init__(self, message: str, status: int, **kwargs):
        context = kwargs.pop('context', {})
        context['status'] = status
        self.status = status
        super().__init__(message=message, context=context, **kwargs)

    def to_envelope_error(self) -> Dict[str, Any]:
        return {'code': f"HTTP_{self.status}", 'message': self.message}


class ServerError(HttpStatusError):
    """The service answered with a 5xx status."""

    def __init__(self, message: str, status: int, **kwargs):
        super().__init__(
            message,
            status,
            error_code=kwargs.pop('error_code', ErrorCode.SERVER_ERROR),
            severity=ErrorSeverity.MEDIUM,
            recovery_actions=[RecoveryAction.RETRY_WITH_BACKOFF],
            **kwargs
        )


class ClientError(HttpStatusError):
    """The service rejected the request (4xx other than 401)."""

    def __init__(self, message: str, status: int, **kwargs):
        super().__init__(
            message,
            status,
            error_code=kwargs.pop('error_code', ErrorCode.CLIENT_ERROR),
            severity=ErrorSeverity.LOW,
            recovery_actions=[RecoveryAction.USER_INTERVENTION],
            **kwargs
        )


class AuthenticationError(CaseFlowError):
    """Authentication related errors."""

    def __init__(self, message: str, error_code: ErrorCode = ErrorCode.LOGIN_FAILED, **kwargs):
        kwargs.setdefault('severity', ErrorSeverity.HIGH)
        kwargs.setdefault('recovery_actions', [RecoveryAction.LOGIN_AGAIN])
        super().__init__(message=message, error_code=error_code, **kwargs)


class AuthRequiredError(AuthenticationError):
    """No usable access token and refresh did not produce one."""

    def __init__(self, message: str = "Authentication required", **kwargs):
        super().__init__(message, error_code=ErrorCode.AUTH_REQUIRED, **kwargs)


class MalformedTokenError(AuthenticationError):
    """Token is not a three-segment token with a JSON object payload."""

    def __init__(self, message: str = "Malformed token", **kwargs):
        kwargs.setdefault('severity', ErrorSeverity.LOW)
        super().__init__(message, error_code=ErrorCode.TOKEN_MALFORMED, **kwargs)


class PersistenceError(CaseFlowError):
    """Local key/value store could not be read or written."""

    def __init__(self, message: str, error_code: ErrorCode = ErrorCode.STORAGE_WRITE_FAILED, **kwargs):
        super().__init__(
            message=message,
            error_code=error_code,
            severity=ErrorSeverity.HIGH,
            recovery_actions=[RecoveryAction.RETRY, RecoveryAction.CONTACT_ADMIN],
            **kwargs
        )


class ValidationError(CaseFlowError):
    """Input validation related errors."""

    def __init__(self, message: str, field_name: Optional[str] = None, **kwargs):
        context = kwargs.pop('context', {})
        if field_name:
            context['field_name'] = field_name
        self.field_name = field_name

        error_code = kwargs.pop('error_code', ErrorCode.VALIDATION_INVALID_INPUT)
        severity = kwargs.pop('severity', ErrorSeverity.LOW)
        recovery_actions = kwargs.pop('recovery_actions', [RecoveryAction.USER_INTERVENTION])

        super().__init__(
            message=message,
            error_code=error_code,
            severity=severity,
            recovery_actions=recovery_actions,
            context=context,
            **kwargs
        )


class CaseNotFoundError(CaseFlowError):
    """Case is absent both remotely and from the local cache."""

    def __init__(self, case_id: str, **kwargs):
        context = kwargs.pop('context', {})
        context['case_id'] = case_id
        self.case_id = case_id
        super().__init__(
            message=f"Case not found: {case_id}",
            error_code=ErrorCode.CASE_NOT_FOUND,
            severity=ErrorSeverity.LOW,
            context=context,
            recovery_actions=[RecoveryAction.USER_INTERVENTION],
            **kwargs
        )


class ConfigurationError(CaseFlowError):
    """Configuration related errors."""

    def __init__(self, message: str, error_code: ErrorCode = ErrorCode.CONFIG_INVALID_VALUE, **kwargs):
        super().__init__(
            message=message,
            error_code=error_code,
            severity=ErrorSeverity.HIGH,
            recovery_actions=[RecoveryAction.USER_INTERVENTION],
            **kwargs
        )


def http_status_error(status: int, message: Optional[str] = None) -> HttpStatusError:
    """ServerError for 5xx, ClientError for anything else."""
    message = message or f"Request failed ({status})"
    if status >= 500:
        return ServerError(message, status)
    return ClientError(message, status)


def create_error_response(error: CaseFlowError) -> Dict[str, Any]:
    """Build a failure envelope from a structured error."""
    return {'success': False, 'error': error.to_envelope_error()}


def handle_exception(
    exception: Exception,
    context: Optional[Dict[str, Any]] = None,
    default_error_code: ErrorCode = ErrorCode.INTERNAL_UNEXPECTED_ERROR
) -> CaseFlowError:
    """
    Convert a generic exception to a structured CaseFlowError.

    Args:
        exception: The original exception
        context: Additional context information
        default_error_code: Error code used when no specific mapping exists

    Returns:
        Structured CaseFlowError
    """
    if isinstance(exception, CaseFlowError):
        return exception

    exception_mapping = {
        ConnectionError: (ErrorCode.NETWORK_ERROR, NetworkError),
        TimeoutError: (ErrorCode.REQUEST_TIMEOUT, NetworkError),
        PermissionError: (ErrorCode.STORAGE_WRITE_FAILED, PersistenceError),
        ValueError: (ErrorCode.VALIDATION_INVALID_INPUT, ValidationError),
    }

    error_code, error_class = exception_mapping.get(
        type(exception),
        (default_error_code, CaseFlowError)
    )

    return error_class(
        message=str(exception),
        error_code=error_code,
        context=context,
        cause=exception
    )
