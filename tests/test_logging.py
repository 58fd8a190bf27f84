"""Tests for the structlog logging module."""

import json

from cloudflare_api_mcp.logging import REDACTED, configure_logging, get_logger


def _json_events(out: str) -> list[dict]:
    return [json.loads(line) for line in out.strip().split("\n") if line.strip()]


class TestConfigureLogging:
    """Tests for configure_logging function."""

    def test_console_mode(self, capsys):
        configure_logging(json_output=False, level="INFO")

        get_logger("test_console").info("schema_loaded", paths=12)

        captured = capsys.readouterr()
        assert "schema_loaded" in captured.out
        assert "paths" in captured.out

    def test_json_mode(self, capsys):
        """JSON output carries event, fields, level and an ISO timestamp."""
        configure_logging(json_output=True, level="INFO")

        get_logger("test_json").info("tool_called", tool="search", is_error=False)

        event = _json_events(capsys.readouterr().out)[-1]
        assert event["event"] == "tool_called"
        assert event["tool"] == "search"
        assert event["is_error"] is False
        assert event["level"] == "info"
        assert "T" in event["timestamp"]

    def test_level_filters_lower_events(self, capsys):
        configure_logging(json_output=False, level="WARNING")

        logger = get_logger("test_warning")
        logger.info("sandbox_started")
        logger.warning("bwrap_unavailable")

        captured = capsys.readouterr()
        assert "bwrap_unavailable" in captured.out
        assert "sandbox_started" not in captured.out

    def test_level_is_case_insensitive(self, capsys):
        configure_logging(json_output=False, level="debug")

        get_logger("test_debug").debug("sandbox_print", text="hi")

        assert "sandbox_print" in capsys.readouterr().out

    def test_bound_context_is_kept(self, capsys):
        configure_logging(json_output=True, level="INFO")

        get_logger("test").bind(request_id="req123").info("context_test")

        event = _json_events(capsys.readouterr().out)[-1]
        assert event["request_id"] == "req123"


class TestRedaction:
    """Credentials never reach log output."""

    def test_sensitive_keys_are_redacted(self, capsys):
        configure_logging(json_output=True, level="INFO")

        get_logger("test").info(
            "request", credential="secret-1", Authorization="Bearer secret-2", api_token="secret-3"
        )

        out = capsys.readouterr().out
        event = _json_events(out)[-1]
        assert event["credential"] == REDACTED
        assert event["Authorization"] == REDACTED
        assert event["api_token"] == REDACTED
        assert "secret" not in out

    def test_bearer_values_are_scrubbed(self, capsys):
        configure_logging(json_output=True, level="INFO")

        get_logger("test").error("upstream_failed", exception="rejected Bearer abc.def for /zones")

        event = _json_events(capsys.readouterr().out)[-1]
        assert event["exception"] == f"rejected Bearer {REDACTED} for /zones"

    def test_plain_fields_are_untouched(self, capsys):
        configure_logging(json_output=True, level="INFO")

        get_logger("test").info("identity_resolved", scope="account", account_id="abc123")

        event = _json_events(capsys.readouterr().out)[-1]
        assert event["account_id"] == "abc123"


class TestGetLogger:
    """Tests for get_logger function."""

    def test_returns_usable_logger(self):
        configure_logging(json_output=False)

        logger = get_logger("test_module")
        for method in ("debug", "info", "warning", "error"):
            assert hasattr(logger, method)

    def test_multiple_loggers_write_to_same_output(self, capsys):
        configure_logging(json_output=False, level="INFO")

        get_logger("module1").info("from_module1")
        get_logger("module2").info("from_module2")

        captured = capsys.readouterr()
        assert "from_module1" in captured.out
        assert "from_module2" in captured.out
