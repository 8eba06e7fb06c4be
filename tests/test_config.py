"""
Tests for configuration, logging and the error payloads.
"""

import structlog

from ruleflow.core.config import EngineSettings, get_settings
from ruleflow.core.errors import MalformedRuleSet, NoSuchFact, StaleFactReference
from ruleflow.core.logging import (
    add_engine_context,
    configure_from_settings,
    configure_logging,
    get_logger,
)


class TestEngineSettings:
    """Test settings loading."""

    def test_defaults(self, fresh_settings):
        """Test default inference limits."""
        settings = get_settings()
        assert settings.default_cycle_limit == 1000
        assert settings.default_time_budget_s is None
        assert settings.max_workers == 4
        assert settings.log_json is False

    def test_env_prefix(self, monkeypatch):
        """Test values are read from RULEFLOW_ variables."""
        monkeypatch.setenv("RULEFLOW_DEFAULT_TIME_BUDGET_S", "1.5")
        monkeypatch.setenv("RULEFLOW_LOG_JSON", "true")
        settings = EngineSettings()
        assert settings.default_time_budget_s == 1.5
        assert settings.log_json is True

    def test_settings_cached(self, fresh_settings):
        """Test get_settings returns one instance until cleared."""
        assert get_settings() is get_settings()


class TestLogging:
    """Test structured logging setup."""

    def test_engine_context_from_logger_name(self):
        """Test the component is derived from the logger name."""
        event = add_engine_context(None, "info", {"logger": "ruleflow.session", "event": "x"})
        assert event["component"] == "session"

    def test_engine_context_without_component(self):
        """Test events from top-level loggers are left alone."""
        event = add_engine_context(None, "info", {"logger": "ruleflow", "event": "x"})
        assert "component" not in event

    def test_configure_json(self):
        """Test configuring JSON output and logging through it."""
        configure_logging("debug", json=True)
        try:
            get_logger("ruleflow.test").info("configured", answer=42)
        finally:
            structlog.reset_defaults()

    def test_configure_from_settings(self, monkeypatch, fresh_settings):
        """Test logging is configured from the RULEFLOW_ settings."""
        monkeypatch.setenv("RULEFLOW_LOG_LEVEL", "warning")
        monkeypatch.setenv("RULEFLOW_LOG_JSON", "true")
        try:
            configure_from_settings()
            assert structlog.is_configured()
            renderer = structlog.get_config()["processors"][-1]
            assert isinstance(renderer, structlog.processors.JSONRenderer)
        finally:
            structlog.reset_defaults()


class TestErrors:
    """Test error payloads."""

    def test_no_such_fact_payload(self):
        """Test the serialized error."""
        payload = NoSuchFact(7).to_dict()
        assert payload["code"] == "NO_SUCH_FACT"
        assert payload["details"] == {"fact_id": 7}

    def test_stale_reference_code(self):
        """Test the stale subclass keeps the identity and its own code."""
        error = StaleFactReference(3)
        assert isinstance(error, NoSuchFact)
        assert error.fact_id == 3
        assert error.code == "STALE_FACT_REFERENCE"

    def test_malformed_summary(self):
        """Test long problem lists are summarized in the message."""
        error = MalformedRuleSet([f"problem {i}" for i in range(5)])
        assert "(+2 more)" in error.message
        assert len(error.details["problems"]) == 5
