"""
Tests for schemaspine.core.logging.

Tests verify:
- LogContext binds keys for the block only
- JSON events carry ECS field names, the logger name and bound context
- DEBUG events are suppressed at INFO level
"""

import json

import pytest
import structlog

from schemaspine.core.logging import (
    LogContext,
    bind_context,
    clear_context,
    configure_logging,
    get_logger,
    unbind_context,
)


@pytest.fixture
def json_logs(capsys):
    """Configure INFO JSON logging for one test; return a reader of emitted events."""
    configure_logging(level="INFO", json_format=True)

    def read() -> list[dict]:
        return [json.loads(line) for line in capsys.readouterr().err.splitlines() if line.strip()]

    yield read
    configure_logging(level="CRITICAL", json_format=True)


class TestContextManagement:
    """Test context bind/unbind/clear operations."""

    def setup_method(self):
        clear_context()

    def teardown_method(self):
        clear_context()

    def test_log_context_binds_for_the_block(self):
        """Keys are bound inside the block and removed after it."""
        with LogContext(revision="3f9a1c2b7d10"):
            assert structlog.contextvars.get_contextvars() == {"revision": "3f9a1c2b7d10"}
        assert structlog.contextvars.get_contextvars() == {}

    def test_log_context_keeps_outer_keys(self):
        """Only the block's own keys are unbound on exit."""
        bind_context(command="upgrade")
        with LogContext(revision="3f9a1c2b7d10"):
            pass
        assert structlog.contextvars.get_contextvars() == {"command": "upgrade"}

    def test_unbind_context(self):
        """unbind_context removes only the named keys."""
        bind_context(command="upgrade", revision="3f9a1c2b7d10")
        unbind_context("revision")
        assert structlog.contextvars.get_contextvars() == {"command": "upgrade"}

    def test_clear_context(self):
        """clear_context removes everything."""
        bind_context(command="upgrade")
        clear_context()
        assert structlog.contextvars.get_contextvars() == {}


class TestJsonOutput:
    """Test the JSON renderer configuration."""

    def teardown_method(self):
        clear_context()

    def test_event_fields(self, json_logs):
        """Events carry ECS names, the service, the logger name and bound context."""
        with LogContext(revision="3f9a1c2b7d10"):
            get_logger("tests.logging").info("migration.revision_applied", table="users")

        (event,) = json_logs()
        assert event["event"] == "migration.revision_applied"
        assert event["log.level"] == "info"
        assert event["log.logger"] == "tests.logging"
        assert event["service.name"] == "schemaspine"
        assert event["revision"] == "3f9a1c2b7d10"
        assert event["table"] == "users"
        assert "@timestamp" in event

    def test_debug_suppressed_at_info(self, json_logs):
        """DEBUG events are filtered out at INFO level."""
        logger = get_logger("tests.logging")
        logger.debug("connection.acquired", mode="read")
        logger.warning("migration.unknown_revisions", revisions=["ffffffffffff"])

        assert [e["event"] for e in json_logs()] == ["migration.unknown_revisions"]

    def test_unnamed_logger(self, json_logs):
        get_logger().info("schemaspine.started")
        (event,) = json_logs()
        assert "log.logger" not in event
