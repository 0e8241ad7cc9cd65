"""
Tests for security event logging and log sanitization
"""

import json
import logging

from security_logger import SecurityLogger, get_security_logger, sanitize_for_logging


def _events(caplog):
    return [json.loads(record.getMessage()) for record in caplog.records if record.name == "security"]


class TestSanitize:
    """Log injection prevention."""

    def test_strips_control_characters(self):
        assert sanitize_for_logging("line1\r\nFAKE ENTRY\x00") == "line1 FAKE ENTRY"

    def test_truncates(self):
        assert len(sanitize_for_logging("x" * 1000)) == 500

    def test_empty(self):
        assert sanitize_for_logging("") == ""


class TestSecurityLogger:
    """Structured events written to the 'security' logger."""

    def test_file_output(self, tmp_path):
        security = SecurityLogger(log_dir=str(tmp_path), enable_file=True)
        security.log_authentication_failure(reason="MISSING_ACTOR", source="/api/v1/orgs")
        for handler in security.logger.handlers:
            handler.close()
        security.logger.handlers.clear()

        content = (tmp_path / "security.log").read_text(encoding="utf-8")
        assert "AUTHENTICATION_FAILED" in content
        assert "MISSING_ACTOR" in content

    def test_request_context_attached(self, caplog):
        security = get_security_logger()
        request_id = security.set_request_context(actor_id="user-123", source_ip="10.0.0.1")

        with caplog.at_level(logging.WARNING, logger="security"):
            security.log_validation_failure(field="name", error_code="REQUIRED", input_value="")

        event = _events(caplog)[0]
        assert request_id.startswith("REQ-")
        assert event["request_id"] == request_id
        assert event["actor_id"] == "user-123"
        assert event["source_ip"] == "10.0.0.1"

    def test_ledger_rejection(self, caplog):
        security = get_security_logger()

        with caplog.at_level(logging.WARNING, logger="security"):
            security.log_ledger_rejection(
                error_code="INSUFFICIENT_SHARES",
                org_id="org-1",
                actor_id="user-123",
                additional_context={"requested": 11, "available": 10, "note": "a\nb"},
            )

        event = _events(caplog)[0]
        assert event["event_type"] == "LEDGER_REJECTED"
        assert event["error_code"] == "INSUFFICIENT_SHARES"
        assert event["context"]["requested"] == 11
        assert event["context"]["attempted_by"] == "user-123"
        assert event["context"]["note"] == "a b"
        assert event["context"]["blocked"] is True

    def test_long_input_truncated(self, caplog):
        security = get_security_logger()

        with caplog.at_level(logging.WARNING, logger="security"):
            security.log_validation_failure(field="name", error_code="TOO_LONG", input_value="y" * 80)

        assert _events(caplog)[0]["sanitized_input"].endswith("...(truncated)")
