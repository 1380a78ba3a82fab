"""Tests for settings, error payloads and structured logging."""

import json
import logging

from delivery_plane.core.config import Settings, get_settings, reset_settings_cache
from delivery_plane.core.errors import CircuitOpenError, ConflictError, ErrorCode, ValidationError
from delivery_plane.main import status_for
from delivery_plane.utils.logging import JsonFormatter


class TestSettings:
    def test_defaults(self):
        settings = Settings()
        assert settings.CANARY_TICK_INTERVAL_SECONDS == 30.0
        assert settings.BREAKER_FAILURE_THRESHOLD == 5
        assert settings.BREAKER_OPEN_TIMEOUT_MS == 30000
        assert settings.ROUTING_STRATEGY == "sticky"

    def test_env_prefix(self, monkeypatch):
        monkeypatch.setenv("DELIVERY_CANARY_TICK_INTERVAL_SECONDS", "5")
        assert Settings().CANARY_TICK_INTERVAL_SECONDS == 5.0

    def test_cached(self, monkeypatch):
        first = get_settings()
        assert get_settings() is first
        reset_settings_cache()
        assert get_settings() is not first


class TestErrors:
    def test_validation_is_configuration_error(self):
        error = ValidationError("bad phase", {"phase": 0})
        assert error.to_dict() == {
            "code": "VALIDATION_FAILED",
            "message": "bad phase",
            "details": {"phase": 0},
        }

    def test_circuit_open_details(self):
        error = CircuitOpenError("payments:canary", "circuit is open")
        assert error.code == ErrorCode.CIRCUIT_OPEN
        assert error.details == {"breaker": "payments:canary", "reason": "circuit is open"}

    def test_http_status_mapping(self):
        assert status_for(ConflictError("busy")) == 409
        assert status_for(ValidationError("bad")) == 422


class TestJsonFormatter:
    def test_structured_fields(self):
        record = logging.LogRecord("delivery", logging.WARNING, __file__, 1, "rolled back", None, None)
        record.execution_id = "canary-1"
        record.service = "checkout"
        data = json.loads(JsonFormatter().format(record))
        assert data["level"] == "WARNING"
        assert data["message"] == "rolled back"
        assert data["execution_id"] == "canary-1"
        assert data["service"] == "checkout"
        assert "flag_key" not in data
