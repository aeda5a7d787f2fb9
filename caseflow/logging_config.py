"""
Logging configuration for the CaseFlow sync client.

Provides console/file logging in standard, detailed or JSON form and an
audit trail for authentication, case mutations, submissions and sync runs.
"""

import json
import logging
import logging.handlers
import os
import sys
from datetime import datetime
from pathlib import Path
from typing import Dict, Any, Optional
from enum import Enum

from caseflow.exceptions import CaseFlowError


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
    """Types of events that are written to the audit log."""
    AUTHENTICATION = "authentication"
    CASE_UPDATE = "case_update"
    CASE_SUBMISSION = "case_submission"
    CASE_REVOKE = "case_revoke"
    SYNC_OPERATION = "sync_operation"
    ERROR_EVENT = "error_event"


# LogRecord attributes that are never copied into the "extra" block
_RESERVED_RECORD_FIELDS = frozenset([
    'name', 'msg', 'args', 'levelname', 'levelno', 'pathname', 'filename',
    'module', 'lineno', 'funcName', 'created', 'msecs', 'relativeCreated',
    'thread', 'threadName', 'processName', 'process', 'exc_info', 'exc_text',
    'stack_info', 'taskName', 'error_info', 'audit_info', 'message',
])


class StructuredFormatter(logging.Formatter):
    """Formatter that emits one JSON object per record."""

    def __init__(self, include_extra_fields: bool = True):
        super().__init__()
        self.include_extra_fields = include_extra_fields

    def format(self, record: logging.LogRecord) -> str:
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
        if isinstance(error, CaseFlowError):
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
    """Human-readable formatter that also prints structured error details."""

    def __init__(self):
        super().__init__(
            fmt='%(asctime)s | %(levelname)-8s | %(name)-28s | %(funcName)-20s:%(lineno)-4d | %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

    def format(self, record: logging.LogRecord) -> str:
        formatted = super().format(record)

        error = getattr(record, 'error_info', None)
        if isinstance(error, CaseFlowError):
            formatted += f"\n  Error Code: {error.error_code.value}"
            formatted += f"\n  Severity: {error.severity.value}"
            if error.context:
                formatted += f"\n  Context: {json.dumps(error.context, indent=2, default=str)}"

        if hasattr(record, 'audit_info'):
            formatted += f"\n  Audit: {json.dumps(record.audit_info, indent=2, default=str)}"

        return formatted


class AuditLogger:
    """
    Specialized logger for audit events with structured information.
    """

    def __init__(self, logger_name: str = "caseflow.audit"):
        self.logger = logging.getLogger(logger_name)

    def log_event(
        self,
        event_type: AuditEventType,
        message: str,
        user_id: Optional[str] = None,
        case_id: Optional[str] = None,
        result: Optional[str] = None,
        additional_context: Optional[Dict[str, Any]] = None
    ):
        """
        Log an audit event with structured information.

        Args:
            event_type: Type of audit event
            message: Human-readable message
            user_id: ID of the signed-in agent, when known
            case_id: ID of the case involved
            result: Result of the operation (success, failure, queued, ...)
            additional_context: Additional context information
        """
        audit_info = {
            'event_type': event_type.value,
            'timestamp': datetime.now().isoformat(),
            'user_id': user_id,
            'case_id': case_id,
            'result': result,
            'context': additional_context or {}
        }
        audit_info = {k: v for k, v in audit_info.items() if v is not None}

        self.logger.info(message, extra={'audit_info': audit_info})

    def log_authentication(
        self,
        username: str,
        action: str = "login",
        success: bool = True,
        failure_reason: Optional[str] = None
    ):
        """Log login, refresh and logout events."""
        context = {'username': username, 'action': action}
        if failure_reason:
            context['failure_reason'] = failure_reason
        self.log_event(
            event_type=AuditEventType.AUTHENTICATION,
            message=f"Authentication {action} {'successful' if success else 'failed'} for {username}",
            result="success" if success else "failure",
            additional_context=context
        )

    def log_case_update(self, case_id: str, fields: list, result: str = "success"):
        """Log a case mutation (remote, local or queued)."""
        self.log_event(
            event_type=AuditEventType.CASE_UPDATE,
            message=f"Case {case_id} update {result}: {', '.join(sorted(fields))}",
            case_id=case_id,
            result=result,
            additional_context={'fields': sorted(fields)}
        )

    def log_case_submission(self, case_id: str, result: str, error_message: Optional[str] = None):
        """Log a submission attempt and its outcome."""
        context = {'error_message': error_message} if error_message else None
        self.log_event(
            event_type=AuditEventType.CASE_SUBMISSION,
            message=f"Case {case_id} submission {result}",
            case_id=case_id,
            result=result,
            additional_context=context
        )

    def log_case_revoke(self, case_id: str, reason: str):
        self.log_event(
            event_type=AuditEventType.CASE_REVOKE,
            message=f"Case {case_id} revoked: {reason}",
            case_id=case_id,
            result="revoked",
            additional_context={'reason': reason}
        )

    def log_sync_operation(
        self,
        result: str,
        synced_count: int = 0,
        error_count: int = 0,
        pending_count: Optional[int] = None
    ):
        """Log a queue drain."""
        context = {
            'synced_count': synced_count,
            'error_count': error_count,
            'pending_count': pending_count
        }
        context = {k: v for k, v in context.items() if v is not None}
        self.log_event(
            event_type=AuditEventType.SYNC_OPERATION,
            message=f"Sync {result}: {synced_count} synced, {error_count} errors",
            result=result,
            additional_context=context
        )

    def log_error(self, error: CaseFlowError, case_id: Optional[str] = None):
        """Log error events."""
        self.log_event(
            event_type=AuditEventType.ERROR_EVENT,
            message=f"Error occurred: {error.message}",
            case_id=case_id,
            result="error",
            additional_context={
                'error_code': error.error_code.value,
                'severity': error.severity.value,
                'context': error.context,
                'recovery_actions': [action.value for action in error.recovery_actions]
            }
        )


def _build_formatter(log_format: LogFormat) -> logging.Formatter:
    if log_format == LogFormat.JSON:
        return StructuredFormatter()
    if log_format == LogFormat.DETAILED:
        return DetailedFormatter()
    return logging.Formatter(
        fmt='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )


def setup_logging(
    log_level: LogLevel = LogLevel.INFO,
    log_format: LogFormat = LogFormat.STANDARD,
    log_file: Optional[str] = None,
    max_file_size: int = 10 * 1024 * 1024,  # 10MB
    backup_count: int = 5,
    enable_console: bool = True,
    enable_audit: bool = True,
    audit_file: Optional[str] = None
) -> Dict[str, logging.Logger]:
    """
    Set up logging for the client.

    Args:
        log_level: Minimum log level to capture
        log_format: Format for log output
        log_file: Path to main log file (optional)
        max_file_size: Maximum size of log files before rotation
        backup_count: Number of backup files to keep
        enable_console: Whether to log to stderr
        enable_audit: Whether to configure the audit logger
        audit_file: Path to audit log file (optional)

    Returns:
        Dictionary of configured loggers
    """
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    root_logger.setLevel(getattr(logging, log_level.value))
    formatter = _build_formatter(log_format)

    if enable_console:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setFormatter(formatter)
        root_logger.addHandler(console_handler)

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=max_file_size,
            backupCount=backup_count,
            encoding='utf-8'
        )
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    loggers = {
        'root': root_logger,
        'auth': logging.getLogger('caseflow.auth'),
        'api': logging.getLogger('caseflow.api_client'),
        'sync': logging.getLogger('caseflow.case_service'),
        'storage': logging.getLogger('caseflow.storage'),
    }

    if enable_audit:
        audit_logger = logging.getLogger('caseflow.audit')
        audit_logger.setLevel(logging.INFO)
        for handler in audit_logger.handlers[:]:
            audit_logger.removeHandler(handler)

        if audit_file:
            Path(audit_file).parent.mkdir(parents=True, exist_ok=True)
            audit_handler = logging.handlers.RotatingFileHandler(
                audit_file,
                maxBytes=max_file_size,
                backupCount=backup_count,
                encoding='utf-8'
            )
            audit_handler.setFormatter(StructuredFormatter())
            audit_logger.addHandler(audit_handler)
            audit_logger.propagate = False

        loggers['audit'] = audit_logger

    return loggers


def log_structured_error(
    logger: logging.Logger,
    error: CaseFlowError,
    case_id: Optional[str] = None
):
    """
    Log a structured error with full context information.

    Args:
        logger: Logger instance to use
        error: The structured error to log
        case_id: Optional case ID for context
    """
    logger.error(error.message, extra={'error_info': error, 'case_id': case_id})
