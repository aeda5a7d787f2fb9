"""
Tests for structured errors and logging output.
"""

import json
import logging

import pytest

from caseflow.exceptions import (
    CaseFlowError, NetworkError, ValidationError, PersistenceError, CaseNotFoundError,
    ServerError, ClientError, AuthRequiredError, ErrorCode, ErrorSeverity, RecoveryAction,
    create_error_response, handle_exception, http_status_error
)
from caseflow.logging_config import (
    AuditLogger, StructuredFormatter, DetailedFormatter, LogFormat, LogLevel,
    setup_logging, log_structured_error
)


class TestCaseFlowError:
    """Test the structured error hierarchy."""

    def test_cause_is_recorded(self):
        cause = OSError("disk full")
        error = PersistenceError("Cannot write store", cause=cause)

        data = error.to_dict()["error"]
        assert data["code"] == "STORAGE_WRITE_FAILED"
        assert data["severity"] == "high"
        assert data["cause"] == {"type": "OSError", "message": "disk full"}
        assert data["recovery_actions"] == ["retry", "contact_admin"]

    def test_envelope_error(self):
        error = CaseNotFoundError("CASE-7")
        assert create_error_response(error) == {
            "success": False,
            "error": {"code": "CASE_NOT_FOUND", "message": "Case not found: CASE-7"},
        }
        assert error.context["case_id"] == "CASE-7"

    def test_network_error_defaults(self):
        error = NetworkError("Network request failed: refused")
        assert error.error_code == ErrorCode.NETWORK_ERROR
        assert RecoveryAction.WORK_OFFLINE in error.recovery_actions

    def test_validation_error_field(self):
        error = ValidationError("bad", field_name="priority", error_code=ErrorCode.VALIDATION_FIELD_NOT_WRITABLE)
        assert error.field_name == "priority"
        assert error.context["field_name"] == "priority"
        assert error.error_code == ErrorCode.VALIDATION_FIELD_NOT_WRITABLE
        assert error.severity == ErrorSeverity.LOW

    @pytest.mark.parametrize("exception,error_type,code", [
        (ConnectionError("refused"), NetworkError, ErrorCode.NETWORK_ERROR),
        (TimeoutError("slow"), NetworkError, ErrorCode.REQUEST_TIMEOUT),
        (PermissionError("denied"), PersistenceError, ErrorCode.STORAGE_WRITE_FAILED),
        (ValueError("nope"), ValidationError, ErrorCode.VALIDATION_INVALID_INPUT),
        (KeyError("x"), CaseFlowError, ErrorCode.INTERNAL_UNEXPECTED_ERROR),
    ])
    def test_handle_exception(self, exception, error_type, code):
        error = handle_exception(exception, context={"operation": "test"})
        assert isinstance(error, error_type)
        assert error.error_code == code
        assert error.context["operation"] == "test"

    def test_handle_exception_passes_structured_errors_through(self):
        error = NetworkError("Request timeout")
        assert handle_exception(error) is error

    @pytest.mark.parametrize("status,error_type,code", [
        (503, ServerError, ErrorCode.SERVER_ERROR),
        (500, ServerError, ErrorCode.SERVER_ERROR),
        (404, ClientError, ErrorCode.CLIENT_ERROR),
        (409, ClientError, ErrorCode.CLIENT_ERROR),
    ])
    def test_http_status_error(self, status, error_type, code):
        error = http_status_error(status)

        assert isinstance(error, error_type)
        assert error.error_code == code
        assert error.context["status"] == status
        assert create_error_response(error) == {
            "success": False,
            "error": {"code": f"HTTP_{status}", "message": f"Request failed ({status})"},
        }

    def test_auth_required_envelope(self):
        error = AuthRequiredError()
        assert error.to_envelope_error() == {"code": "AUTH_REQUIRED", "message": "Authentication required"}
        assert RecoveryAction.LOGIN_AGAIN in error.recovery_actions


class TestLogging:
    """Test formatters and the audit logger."""

    def _record(self, **extra):
        record = logging.LogRecord("caseflow.test", logging.ERROR, __file__, 10, "Sync failed", None, None)
        for key, value in extra.items():
            setattr(record, key, value)
        return record

    def test_structured_formatter_includes_error(self):
        error = NetworkError("Request timeout", error_code=ErrorCode.REQUEST_TIMEOUT)
        entry = json.loads(StructuredFormatter().format(self._record(error_info=error, case_id="CASE-1")))

        assert entry["message"] == "Sync failed"
        assert entry["error"]["code"] == "REQUEST_TIMEOUT"
        assert entry["extra"] == {"case_id": "CASE-1"}

    def test_detailed_formatter_includes_error(self):
        error = CaseNotFoundError("CASE-1")
        text = DetailedFormatter().format(self._record(error_info=error))

        assert "Error Code: CASE_NOT_FOUND" in text
        assert "Severity: low" in text

    def test_audit_events(self, caplog):
        audit = AuditLogger()
        with caplog.at_level(logging.INFO, logger="caseflow.audit"):
            audit.log_case_submission("CASE-1", "failed", error_message="Server error")
            audit.log_sync_operation("partial", synced_count=2, error_count=1, pending_count=1)

        first, second = [record.audit_info for record in caplog.records]
        assert first["event_type"] == "case_submission"
        assert first["case_id"] == "CASE-1"
        assert first["context"] == {"error_message": "Server error"}
        assert second["context"] == {"synced_count": 2, "error_count": 1, "pending_count": 1}

    def test_log_structured_error(self, caplog):
        logger = logging.getLogger("caseflow.test")
        error = PersistenceError("Cannot write store")

        with caplog.at_level(logging.ERROR, logger="caseflow.test"):
            log_structured_error(logger, error, case_id="CASE-3")

        assert caplog.records[0].error_info is error
        assert caplog.records[0].case_id == "CASE-3"

    def test_setup_logging_with_files(self, tmp_path):
        root = logging.getLogger()
        saved_handlers, saved_level = root.handlers[:], root.level
        audit_logger = logging.getLogger("caseflow.audit")
        try:
            loggers = setup_logging(
                log_level=LogLevel.DEBUG,
                log_format=LogFormat.JSON,
                log_file=str(tmp_path / "logs" / "client.log"),
                enable_console=False,
                audit_file=str(tmp_path / "logs" / "audit.log"),
            )
            loggers["sync"].info("drained queue")
            AuditLogger().log_case_revoke("CASE-1", "Not my area")
            for handler in root.handlers + audit_logger.handlers:
                handler.flush()

            line = (tmp_path / "logs" / "client.log").read_text().splitlines()[0]
            assert json.loads(line)["message"] == "drained queue"
            audit_line = (tmp_path / "logs" / "audit.log").read_text().splitlines()[0]
            assert json.loads(audit_line)["audit"]["event_type"] == "case_revoke"
        finally:
            for handler in root.handlers[:]:
                root.removeHandler(handler)
                handler.close()
            for handler in audit_logger.handlers[:]:
                audit_logger.removeHandler(handler)
                handler.close()
            audit_logger.propagate = True
            for handler in saved_handlers:
                root.addHandler(handler)
            root.setLevel(saved_level)
