"""Tests for structured logging configuration."""

import json
import logging
import sys

from queryproxy.app.core.logging import (
    ContextFilter,
    JSONFormatter,
    get_log_context,
    get_logger,
    get_logging_config,
    setup_logging,
)


def _record(msg: str = "Test message", level: int = logging.INFO, exc_info=None) -> logging.LogRecord:
    return logging.LogRecord(
        name="test",
        level=level,
        pathname="test.py",
        lineno=1,
        msg=msg,
        args=(),
        exc_info=exc_info,
    )


class TestJSONFormatter:
    """Test JSON formatter for structured logging."""

    def test_basic_json_format(self):
        data = json.loads(JSONFormatter().format(_record()))

        assert data["level"] == "INFO"
        assert data["logger"] == "test"
        assert data["message"] == "Test message"
        assert "timestamp" in data
        assert data["source"]["file"] == "test.py"
        assert data["source"]["line"] == 1

    def test_json_format_with_context(self):
        """Request context fields are lifted to the top level."""
        record = _record("Query rate limited")
        record.request_id = "req-123"
        record.identity = "203.0.113.7"
        record.model = "openai/gpt-4o"
        record.bucket = "ai-query"
        record.duration_ms = 150.5

        data = json.loads(JSONFormatter().format(record))

        assert data["request_id"] == "req-123"
        assert data["identity"] == "203.0.113.7"
        assert data["model"] == "openai/gpt-4o"
        assert data["bucket"] == "ai-query"
        assert data["duration_ms"] == 150.5
        assert "extra" not in data

    def test_json_format_with_extra_fields(self):
        record = _record("Custom event")
        record.upstream_status = 503
        record.pattern = r"\bbomb\b"

        data = json.loads(JSONFormatter().format(record))

        assert data["extra"]["upstream_status"] == 503
        assert data["extra"]["pattern"] == r"\bbomb\b"

    def test_json_format_with_exception(self):
        try:
            raise ValueError("Test error")
        except ValueError:
            record = _record("Error occurred", logging.ERROR, sys.exc_info())

        data = json.loads(JSONFormatter().format(record))

        exception_text = "".join(data["exception"])
        assert "ValueError" in exception_text
        assert "Test error" in exception_text

    def test_json_format_unicode(self):
        data = json.loads(JSONFormatter().format(_record("Unicode message: héllo ✓")))
        assert data["message"] == "Unicode message: héllo ✓"

    def test_filter_defaults_are_not_emitted(self):
        record = _record()
        ContextFilter().filter(record)

        data = json.loads(JSONFormatter().format(record))

        assert "request_id" not in data
        assert "extra" not in data


class TestContextFilter:
    def test_adds_missing_fields(self):
        record = _record()
        assert ContextFilter().filter(record) is True
        assert record.request_id is None
        assert record.identity is None

    def test_keeps_existing_fields(self):
        record = _record()
        record.request_id = "req-1"
        ContextFilter().filter(record)
        assert record.request_id == "req-1"


class TestLoggingConfig:
    def test_text_format(self, make_settings):
        config = get_logging_config(make_settings(log_format="text", log_level="debug"))

        assert config["handlers"]["console"]["formatter"] == "standard"
        assert config["loggers"]["queryproxy"]["level"] == "DEBUG"
        assert config["loggers"]["queryproxy"]["propagate"] is False

    def test_structured_format(self, make_settings):
        config = get_logging_config(make_settings(log_format="structured"))

        assert config["handlers"]["console"]["formatter"] == "structured"
        assert "%(identity)s" in config["formatters"]["structured"]["format"]

    def test_json_format(self, make_settings):
        config = get_logging_config(make_settings(log_format="JSON"))

        assert config["handlers"]["console"]["formatter"] == "json"
        assert config["formatters"]["json"]["()"].endswith("JSONFormatter")

    def test_errors_also_go_to_stderr(self, make_settings):
        config = get_logging_config(make_settings())
        assert config["handlers"]["error_console"]["level"] == "ERROR"
        assert "error_console" in config["loggers"]["queryproxy"]["handlers"]

    def test_setup_logging_applies_levels(self, make_settings):
        setup_logging(make_settings(log_level="WARNING"))

        assert get_logger().level == logging.WARNING
        assert logging.getLogger("httpx").level == logging.WARNING


class TestLogContext:
    def test_drops_empty_values(self):
        assert get_log_context(request_id="abc", model=None) == {"request_id": "abc"}

    def test_extra_keys(self):
        context = get_log_context(identity="u-1", bucket="openrouter", upstream_status=429)
        assert context == {"identity": "u-1", "bucket": "openrouter", "upstream_status": 429}
