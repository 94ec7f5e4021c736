"""Tests for TestServerConfig."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from asgi_harness import TestServerConfig, TransportKind


class TestDefaults:
    """Tests for default configuration values."""

    def test_defaults(self) -> None:
        """Default config uses the in-memory transport and no session defaults."""
        config = TestServerConfig()

        assert config.transport == TransportKind.IN_MEMORY
        assert config.port is None
        assert config.port_range == (49152, 65535)
        assert config.reserve_attempts == 20
        assert config.save_cookies is False
        assert config.expect_success_by_default is False
        assert config.default_content_type is None
        assert config.restrict_requests_with_http_schema is False
        assert config.request_timeout == 30.0
        assert config.lifespan == "auto"

    def test_config_is_frozen(self) -> None:
        """The transport kind cannot change after construction."""
        config = TestServerConfig()

        with pytest.raises(ValidationError):
            config.transport = TransportKind.SOCKET  # type: ignore[misc]

    def test_transport_accepts_string(self) -> None:
        """Transport can be given by value."""
        config = TestServerConfig(transport="socket")  # type: ignore[arg-type]

        assert config.transport == TransportKind.SOCKET


class TestValidation:
    """Tests for field validation."""

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"lifespan": "sometimes"},
            {"port_range": (2000, 1000)},
            {"port_range": (0, 10)},
            {"port": 70000},
            {"reserve_attempts": 0},
            {"request_timeout": 0},
            {"base_url": "localhost:8000"},
            {"unknown_field": True},
        ],
    )
    def test_invalid_values_rejected(self, kwargs: dict[str, object]) -> None:
        """Invalid values raise ValidationError."""
        with pytest.raises(ValidationError):
            TestServerConfig(**kwargs)  # type: ignore[arg-type]


class TestFromEnv:
    """Tests for TestServerConfig.from_env."""

    def test_reads_environment(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """HARNESS_* variables populate the config."""
        monkeypatch.setenv("HARNESS_TRANSPORT", "socket")
        monkeypatch.setenv("HARNESS_REQUEST_TIMEOUT", "2.5")
        monkeypatch.setenv("HARNESS_SAVE_COOKIES", "true")

        config = TestServerConfig.from_env()

        assert config.transport == TransportKind.SOCKET
        assert config.request_timeout == 2.5
        assert config.save_cookies is True

    def test_overrides_win(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Explicit keyword overrides beat the environment."""
        monkeypatch.setenv("HARNESS_TRANSPORT", "socket")

        config = TestServerConfig.from_env(transport=TransportKind.IN_MEMORY)

        assert config.transport == TransportKind.IN_MEMORY

    def test_empty_environment(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Without variables the defaults apply."""
        for name in ("HARNESS_TRANSPORT", "HARNESS_REQUEST_TIMEOUT", "HARNESS_SAVE_COOKIES"):
            monkeypatch.delenv(name, raising=False)

        assert TestServerConfig.from_env() == TestServerConfig()
