"""Configuration for test servers."""

from __future__ import annotations

import os
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from asgi_harness.constants import (
    DEFAULT_BIND_HOST,
    DEFAULT_REQUEST_TIMEOUT,
    DEFAULT_RESERVE_ATTEMPTS,
    DEFAULT_RESERVE_BACKOFF,
    DEFAULT_SHUTDOWN_TIMEOUT,
    DEFAULT_STARTUP_TIMEOUT,
    EPHEMERAL_PORT_RANGE,
    LIFESPAN_MODES,
)
from asgi_harness.transport.base import TransportKind

# Environment variable names
ENV_TRANSPORT = "HARNESS_TRANSPORT"
ENV_REQUEST_TIMEOUT = "HARNESS_REQUEST_TIMEOUT"
ENV_SAVE_COOKIES = "HARNESS_SAVE_COOKIES"

_TRUTHY = ("true", "1", "yes", "on")


class TestServerConfig(BaseModel):
    """Static configuration of a TestServer.

    The model is frozen: a server's configuration, and so its transport kind,
    cannot change after construction. Use ``model_copy(update=...)`` to derive
    a variant.

    Example:
        >>> config = TestServerConfig(transport=TransportKind.SOCKET, save_cookies=True)
        >>> config.request_timeout
        30.0
    """

    __test__ = False

    model_config = ConfigDict(frozen=True, extra="forbid", validate_default=True)

    transport: TransportKind = Field(
        default=TransportKind.IN_MEMORY, description="Transport variant serving the app"
    )
    host: str = Field(default=DEFAULT_BIND_HOST, description="Bind host for the socket transport")
    port: int | None = Field(
        default=None,
        ge=1,
        le=65535,
        description="Pin the socket transport to this port; disables retry on conflict",
    )
    port_range: tuple[int, int] = Field(
        default=EPHEMERAL_PORT_RANGE, description="Inclusive candidate range for random ports"
    )
    reserve_attempts: int = Field(
        default=DEFAULT_RESERVE_ATTEMPTS, ge=1, description="Port reservation retry budget"
    )
    reserve_backoff: float = Field(
        default=DEFAULT_RESERVE_BACKOFF, ge=0, description="Base backoff between attempts (s)"
    )
    base_url: str | None = Field(
        default=None, description="Base URL for the in-memory transport (default http://localhost)"
    )
    save_cookies: bool = Field(
        default=False, description="Merge Set-Cookie responses into the session"
    )
    expect_success_by_default: bool = Field(
        default=False, description="Every request expects a 2xx status unless overridden"
    )
    default_content_type: str | None = Field(
        default=None, description="Content type sent when neither body nor request sets one"
    )
    restrict_requests_with_http_schema: bool = Field(
        default=False,
        description="Use absolute URLs passed as paths literally, as a path on this server",
    )
    request_timeout: float = Field(
        default=DEFAULT_REQUEST_TIMEOUT, gt=0, description="Per-request deadline (s)"
    )
    startup_timeout: float = Field(
        default=DEFAULT_STARTUP_TIMEOUT, gt=0, description="Bound on server startup (s)"
    )
    shutdown_timeout: float = Field(
        default=DEFAULT_SHUTDOWN_TIMEOUT, gt=0, description="Bound on graceful shutdown (s)"
    )
    lifespan: str = Field(default="auto", description="ASGI lifespan handling: auto, on or off")

    @field_validator("lifespan")
    @classmethod
    def _check_lifespan(cls, value: str) -> str:
        if value not in LIFESPAN_MODES:
            raise ValueError(f"lifespan must be one of {sorted(LIFESPAN_MODES)}, got {value!r}")
        return value

    @field_validator("port_range")
    @classmethod
    def _check_port_range(cls, value: tuple[int, int]) -> tuple[int, int]:
        low, high = value
        if not 0 < low <= high <= 65535:
            raise ValueError(f"port_range must satisfy 0 < low <= high <= 65535, got {value}")
        return value

    @model_validator(mode="after")
    def _check_base_url(self) -> "TestServerConfig":
        if self.base_url is not None and not self.base_url.startswith(("http://", "https://")):
            raise ValueError(f"base_url must be an http(s) URL, got {self.base_url!r}")
        return self

    @classmethod
    def from_env(cls, **overrides: Any) -> "TestServerConfig":
        """Build a config from HARNESS_* environment variables.

        Explicit keyword overrides win over the environment.

        Environment Variables:
            HARNESS_TRANSPORT: "in_memory" or "socket"
            HARNESS_REQUEST_TIMEOUT: per-request deadline in seconds
            HARNESS_SAVE_COOKIES: "true"/"1" to save cookies automatically
        """
        values: dict[str, Any] = {}
        transport = os.environ.get(ENV_TRANSPORT)
        if transport:
            values["transport"] = TransportKind(transport.strip().lower())
        timeout = os.environ.get(ENV_REQUEST_TIMEOUT)
        if timeout:
            values["request_timeout"] = float(timeout)
        save_cookies = os.environ.get(ENV_SAVE_COOKIES)
        if save_cookies:
            values["save_cookies"] = save_cookies.strip().lower() in _TRUTHY
        values.update(overrides)
        return cls(**values)


__all__ = ["TestServerConfig"]
