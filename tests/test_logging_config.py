"""
Tests for logging setup.
"""
import structlog

from abuse_guard.logging_config import configure_logging, redact_sensitive_data


def test_redacts_credentials():
    event = redact_sensitive_data(None, "info", {"event": "call", "API_KEY": "sk-1", "user_id": "u1"})
    assert event["API_KEY"] == "***REDACTED***"
    assert event["user_id"] == "u1"


def test_configure_json():
    configure_logging("DEBUG", "json")
    processors = structlog.get_config()["processors"]
    assert isinstance(processors[-1], structlog.processors.JSONRenderer)
    configure_logging()
