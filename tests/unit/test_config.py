"""Unit tests for environment settings and logging configuration."""

import json
import logging

import pytest
import structlog
from pydantic import ValidationError

from spcflow.core.config import Settings, get_settings
from spcflow.core.logging import (
    add_component,
    configure_from_settings,
    configure_logging,
    round_durations,
)


@pytest.fixture
def restore_logging():
    """Put the root logger and structlog back after a test reconfigures them."""
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)
    structlog.reset_defaults()


class TestSettings:
    """Test SPCFLOW_ settings."""

    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("SPCFLOW_OFFLOAD_MIN_POINTS", raising=False)
        settings = Settings()
        assert settings.log_format == "console"
        assert settings.offload_enabled is True
        assert settings.offload_executor == "process"
        assert settings.offload_max_workers == 1
        assert settings.offload_min_points == 500
        assert settings.offload_timeout_seconds == 5.0

    def test_environment_override(self, monkeypatch):
        monkeypatch.setenv("SPCFLOW_OFFLOAD_MIN_POINTS", "10")
        monkeypatch.setenv("SPCFLOW_OFFLOAD_EXECUTOR", "thread")
        settings = get_settings()
        assert settings.offload_min_points == 10
        assert settings.offload_executor == "thread"

    def test_cached(self):
        assert get_settings() is get_settings()

    def test_invalid_executor(self):
        with pytest.raises(ValidationError):
            Settings(offload_executor="cluster")

    @pytest.mark.parametrize(
        "field,value",
        [
            ("offload_max_workers", 0),
            ("offload_min_points", -1),
            ("offload_timeout_seconds", 0),
        ],
    )
    def test_bounds(self, field, value):
        with pytest.raises(ValidationError):
            Settings(**{field: value})


class TestLogging:
    """Test structlog configuration."""

    def test_configure_json(self, restore_logging):
        configure_logging("json", "DEBUG")
        root = logging.getLogger()
        assert root.level == logging.DEBUG
        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0].formatter, structlog.stdlib.ProcessorFormatter)
        assert logging.getLogger("concurrent.futures").level == logging.WARNING

    def test_unknown_level_defaults_to_info(self, restore_logging):
        configure_logging("console", "chatty")
        assert logging.getLogger().level == logging.INFO

    def test_configure_from_settings(self, monkeypatch, restore_logging):
        monkeypatch.setenv("SPCFLOW_LOG_LEVEL", "WARNING")
        configure_from_settings()
        assert logging.getLogger().level == logging.WARNING

    def test_stdlib_records_get_component(self, restore_logging):
        configure_logging("json", "INFO")
        record = logging.LogRecord(
            "spcflow.core.offload.manager", logging.WARNING, __file__, 1, "pool gone", None, None
        )
        rendered = json.loads(logging.getLogger().handlers[0].format(record))
        assert rendered["event"] == "pool gone"
        assert rendered["component"] == "offload"
        assert rendered["level"] == "warning"


class TestProcessors:
    """Test spcflow's own structlog processors."""

    @pytest.mark.parametrize(
        "name,component",
        [
            ("spcflow.core.engine.spc_engine", "engine"),
            ("spcflow.core.offload.manager", "offload"),
            ("spcflow.core.config", "config"),
            ("spcflow.utils.statistics", "utils"),
        ],
    )
    def test_add_component(self, name, component):
        event = add_component(None, "info", {"logger": name, "event": "x"})
        assert event["component"] == component

    def test_add_component_ignores_other_packages(self):
        event = add_component(None, "info", {"logger": "concurrent.futures", "event": "x"})
        assert "component" not in event

    def test_add_component_keeps_explicit_value(self):
        event = add_component(
            None, "info", {"logger": "spcflow.core.engine.view", "component": "view", "event": "x"}
        )
        assert event["component"] == "view"

    def test_round_durations(self):
        event = round_durations(
            None, "info", {"event": "x", "processing_time_ms": 1.23456789, "points": 1.23456789}
        )
        assert event["processing_time_ms"] == 1.235
        assert event["points"] == 1.23456789
