"""
Unit tests for the shared config, error and logging helpers used by the Flags service.
"""

import pydantic
import pytest

from shared.config import get_config
from shared.errors import DatabaseError, FlagNotFoundError, ValidationError
from shared.logging import (
    REDACTED, clear_context, correlation_id_var, redact_sensitive_values, set_correlation_id
)


class TestLogRedaction:
    """Test cases for the redaction processor."""

    def test_masks_bearer_tokens_and_emails(self):
        event = {
            "event": "login",
            "header": "Bearer eyJhbGciOi.eyJzdWIiOi.c2lnbmF0dXJl",
            "contact": "alice@example.com",
        }

        redacted = redact_sensitive_values(None, "info", event)

        assert redacted["header"] == REDACTED
        assert redacted["contact"] == REDACTED
        assert redacted["event"] == "login"

    def test_masks_nested_api_keys(self):
        key = "sk_" + "a" * 24
        event = {"event": "call", "details": {"keys": [key, "plain"]}}

        redacted = redact_sensitive_values(None, "info", event)

        assert redacted["details"]["keys"] == [REDACTED, "plain"]

    def test_leaves_non_strings_alone(self):
        event = {"event": "eval", "enabled": True, "duration_ms": 1.5}

        assert redact_sensitive_values(None, "info", event) == event


class TestCorrelationContext:

    def test_generates_id_when_missing(self):
        generated = set_correlation_id(None)

        assert generated
        assert correlation_id_var.get() == generated
        clear_context()
        assert correlation_id_var.get() is None

    def test_keeps_given_id(self):
        assert set_correlation_id("req-1") == "req-1"
        clear_context()


class TestErrors:
    """Test cases for the error hierarchy."""

    def test_status_codes(self):
        assert ValidationError().status_code == 400
        assert FlagNotFoundError("x", "prod").status_code == 404
        assert DatabaseError("get_flag").status_code == 503

    def test_database_error_response_is_generic(self):
        response = DatabaseError("audit_append").to_response()

        assert response.code == "DATABASE_ERROR"
        assert response.message == "Storage operation failed"
        assert response.details == {"operation": "audit_append"}


class TestConfig:
    """Test cases for environment-driven configuration."""

    def test_defaults(self):
        config = get_config("flags", 8013)

        assert config.store_backend == "memory"
        assert config.environment == "prod"
        assert config.store_timeout_seconds == 0.25

    def test_environment_variables_use_prefix(self, monkeypatch):
        monkeypatch.setenv("FLAGS_STORE_BACKEND", "postgres")
        monkeypatch.setenv("FLAGS_STORE_TIMEOUT_SECONDS", "0.5")

        config = get_config("flags", 8013)

        assert config.store_backend == "postgres"
        assert config.store_timeout_seconds == 0.5

    def test_rejects_non_positive_timeout(self):
        with pytest.raises(pydantic.ValidationError):
            get_config("flags", 8013, store_timeout_seconds=0)
