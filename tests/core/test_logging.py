"""
Tests for the logging module.

Tests verify:
- configure_logging installs the processor chain and renderer
- Service metadata and ECS field renaming
- Unknown levels are rejected with ConfigError
"""

import pytest
import structlog

from statespine.core import logging as spine_logging
from statespine.core.errors import ConfigError
from statespine.core.logging import (
    _add_service_metadata,
    _elasticsearch_compatible,
    configure_from_settings,
    configure_logging,
    get_logger,
    is_configured,
)
from statespine.core.settings import RuntimeSettings


@pytest.fixture(autouse=True)
def restore_structlog(monkeypatch):
    """Undo configure_logging so other tests see structlog defaults."""
    monkeypatch.setattr(spine_logging, "_configured", False)
    monkeypatch.setattr(spine_logging, "_SERVICE_NAME", "statespine")
    yield
    structlog.reset_defaults()


class TestConfigureLogging:
    """Test configure_logging."""

    def test_json_renderer(self):
        configure_logging(level="DEBUG", json_format=True)
        processors = structlog.get_config()["processors"]
        assert isinstance(processors[-1], structlog.processors.JSONRenderer)
        assert _elasticsearch_compatible in processors
        assert is_configured()

    def test_console_renderer(self):
        configure_logging(json_format=False)
        processors = structlog.get_config()["processors"]
        assert isinstance(processors[-1], structlog.dev.ConsoleRenderer)
        assert _elasticsearch_compatible not in processors

    def test_timestamp_optional(self):
        configure_logging(json_format=True, add_timestamp=False)
        processors = structlog.get_config()["processors"]
        assert not any(isinstance(p, structlog.processors.TimeStamper) for p in processors)

    def test_unknown_level_is_rejected(self):
        with pytest.raises(ConfigError) as excinfo:
            configure_logging(level="LOUD")
        assert excinfo.value.context.metadata == {"level": "LOUD"}
        assert not is_configured()

    def test_configure_from_settings(self):
        configure_from_settings(RuntimeSettings(log_level="warning", log_format="json"))
        processors = structlog.get_config()["processors"]
        assert isinstance(processors[-1], structlog.processors.JSONRenderer)


class TestProcessors:
    """Test the custom processors."""

    def test_service_metadata(self):
        configure_logging(json_format=True, service="inventory")
        event = _add_service_metadata(None, "info", {"event": "x"})
        assert event["service.name"] == "inventory"

    def test_service_metadata_does_not_override(self):
        event = _add_service_metadata(None, "info", {"service.name": "custom"})
        assert event["service.name"] == "custom"

    def test_elasticsearch_field_names(self):
        event = _elasticsearch_compatible(
            None, "info", {"timestamp": "2026-01-01T00:00:00Z", "level": "info"}
        )
        assert event == {"@timestamp": "2026-01-01T00:00:00Z", "log.level": "info"}


def test_get_logger_returns_bound_logger():
    logger = get_logger("statespine.test")
    assert hasattr(logger, "debug")
    assert hasattr(logger, "warning")
