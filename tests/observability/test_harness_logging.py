"""Tests for structured logging configuration.

This module tests the logging module that provides structured
logging for harness components.
"""

import logging
from collections.abc import Iterator
from unittest.mock import patch

import pytest
import structlog
from fastapi import FastAPI

from asgi_harness import TestServer, TestServerConfig, TransportKind
from asgi_harness.observability.logging import (
    REDACTED_PLACEHOLDER,
    bound_context,
    configure_logging,
    get_logger,
    is_debug_mode,
    sanitize_for_logging,
)


@pytest.fixture(autouse=True)
def _restore_logging() -> Iterator[None]:
    """Leave logging configured with defaults after each test."""
    yield
    structlog.contextvars.clear_contextvars()
    configure_logging(force=True)


class TestConfigureLogging:
    """Tests for configure_logging function."""

    def test_configure_logging_sets_harness_level(self) -> None:
        """The level is applied to the asgi_harness logger tree only."""
        root_level = logging.getLogger().level

        configure_logging(log_format="console", log_level="DEBUG", force=True)

        assert logging.getLogger("asgi_harness").level == logging.DEBUG
        assert logging.getLogger().level == root_level

    def test_configure_logging_with_json_format(self) -> None:
        """Test that configure_logging works with JSON format."""
        configure_logging(log_format="json", log_level="INFO", force=True)

        handlers = logging.getLogger("asgi_harness").handlers
        assert len(handlers) == 1
        assert isinstance(handlers[0].formatter, structlog.stdlib.ProcessorFormatter)

    def test_reconfigure_does_not_stack_handlers(self) -> None:
        """Forcing reconfiguration replaces the handler."""
        configure_logging(log_level="INFO", force=True)
        configure_logging(log_level="INFO", force=True)

        assert len(logging.getLogger("asgi_harness").handlers) == 1

    def test_configure_logging_from_environment_variables(self) -> None:
        """Test that configure_logging reads from environment variables."""
        with patch.dict(
            "os.environ",
            {"HARNESS_LOG_FORMAT": "json", "HARNESS_LOG_LEVEL": "ERROR"},
        ):
            configure_logging(force=True)

        assert logging.getLogger("asgi_harness").level == logging.ERROR

    def test_get_logger_returns_bound_logger(self) -> None:
        """get_logger returns a usable structlog logger."""
        logger = get_logger("asgi_harness.test")

        logger.info("harness.test.event", key="value")


class TestHarnessEvents:
    """Harness components emit dotted event names."""

    async def test_dispatch_events(self, app: FastAPI, caplog: pytest.LogCaptureFixture) -> None:
        """A request logs sending and completed events with redacted cookies."""
        configure_logging(log_level="DEBUG", force=True)

        async with TestServer(app) as server:
            await server.get("/ping").add_cookie("session", "secret-value")

        captured = [record.msg for record in caplog.records if isinstance(record.msg, dict)]

        events = {entry["event"] for entry in captured}
        assert {"harness.server.started", "harness.dispatch.sending"} <= events
        assert {"harness.dispatch.completed", "harness.server.stopped"} <= events

        sending = next(e for e in captured if e["event"] == "harness.dispatch.sending")
        assert sending["headers"]["cookie"] == REDACTED_PLACEHOLDER


class TestContext:
    """Tests for context binding."""

    def test_bound_context_is_scoped(self) -> None:
        """Values are bound inside the block and restored after it."""
        with bound_context(test_id="t-1"):
            assert structlog.contextvars.get_contextvars()["test_id"] == "t-1"
            with bound_context(test_id="t-2"):
                assert structlog.contextvars.get_contextvars()["test_id"] == "t-2"
            assert structlog.contextvars.get_contextvars()["test_id"] == "t-1"

        assert "test_id" not in structlog.contextvars.get_contextvars()

    async def test_dispatch_events_carry_transport(
        self, app: FastAPI, caplog: pytest.LogCaptureFixture
    ) -> None:
        """Events logged while sending a request name the transport and address."""
        configure_logging(log_level="DEBUG", force=True)

        async with TestServer(app, TestServerConfig(transport=TransportKind.SOCKET)) as server:
            await server.get("/ping")
            address = str(server.transport.address)

        completed = next(
            record.msg
            for record in caplog.records
            if isinstance(record.msg, dict) and record.msg["event"] == "harness.dispatch.completed"
        )
        assert completed["transport"] == "socket"
        assert completed["server_address"] == address
        assert "transport" not in structlog.contextvars.get_contextvars()


class TestSanitizeForLogging:
    """Tests for sensitive value redaction."""

    def test_redacts_sensitive_keys(self) -> None:
        """Cookie and authorization values are replaced."""
        with patch.dict("os.environ", {"HARNESS_DEBUG": ""}):
            result = sanitize_for_logging(
                {"accept": "text/html", "Cookie": "session=abc", "authorization": "Bearer x"}
            )

        assert result == {
            "accept": "text/html",
            "Cookie": REDACTED_PLACEHOLDER,
            "authorization": REDACTED_PLACEHOLDER,
        }

    def test_nested_values(self) -> None:
        """Nested dicts and lists of dicts are sanitized recursively."""
        with patch.dict("os.environ", {"HARNESS_DEBUG": ""}):
            result = sanitize_for_logging({"outer": {"api-key": "k"}, "items": [{"token": "t"}]})

        assert result == {
            "outer": {"api-key": REDACTED_PLACEHOLDER},
            "items": [{"token": REDACTED_PLACEHOLDER}],
        }

    def test_debug_mode_keeps_values(self) -> None:
        """HARNESS_DEBUG disables redaction."""
        with patch.dict("os.environ", {"HARNESS_DEBUG": "true"}):
            assert is_debug_mode()
            assert sanitize_for_logging({"cookie": "a=1"}) == {"cookie": "a=1"}

    def test_empty(self) -> None:
        """An empty dict stays empty."""
        assert sanitize_for_logging({}) == {}
