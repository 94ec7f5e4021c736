"""Tests for request dispatch and per-request error handling."""

from __future__ import annotations

import time

import pytest
from fastapi import FastAPI

from asgi_harness import (
    HarnessConnectionError,
    HarnessTimeoutError,
    TestServer,
    TestServerConfig,
)
from tests.apps import broken_midway_app


class TestDispatchErrors:
    """Per-request failures leave the server usable."""

    async def test_timeout_is_bounded(self, app: FastAPI, config: TestServerConfig) -> None:
        """A hung handler fails the request within its timeout."""
        async with TestServer(app, config) as server:
            start = time.perf_counter()
            with pytest.raises(HarnessTimeoutError) as exc_info:
                await server.get("/hang").timeout(0.2)
            elapsed = time.perf_counter() - start

            assert exc_info.value.timeout == 0.2
            assert elapsed < 2.0

            response = await server.get("/ping")
            response.assert_text("pong!")

    async def test_server_timeout_default(self, app: FastAPI, config: TestServerConfig) -> None:
        """The server-wide request timeout applies when the request sets none."""
        config = config.model_copy(update={"request_timeout": 0.2})
        async with TestServer(app, config) as server:
            with pytest.raises(HarnessTimeoutError):
                await server.get("/hang")

    async def test_request_after_stop(self, app: FastAPI, config: TestServerConfig) -> None:
        """Requests to a stopped server fail with a connection error."""
        server = await TestServer(app, config).start()
        builder = server.get("/ping")
        await server.stop()

        with pytest.raises(HarnessConnectionError, match="not running"):
            await builder

    async def test_request_before_start(self, app: FastAPI) -> None:
        """Requests to a server that was never started fail the same way."""
        server = TestServer(app)

        with pytest.raises(HarnessConnectionError):
            await server.get("/ping")

    async def test_broken_response_is_connection_error(self, config: TestServerConfig) -> None:
        """An app failing mid-response surfaces as a connection error."""
        async with TestServer(broken_midway_app, config) as server:
            with pytest.raises(HarnessConnectionError) as exc_info:
                await server.get("/")

        assert exc_info.value.cause is not None

    async def test_sensitive_headers_reach_app(
        self, app: FastAPI, config: TestServerConfig
    ) -> None:
        """Cookie and authorization headers reach the app unchanged."""
        async with TestServer(app, config) as server:
            response = await (
                server.get("/headers")
                .add_header("authorization", "Bearer secret")
                .add_cookie("session", "abc")
            )

        headers = dict(response.as_json(list[tuple[str, str]]))
        assert headers["authorization"] == "Bearer secret"
        assert headers["cookie"] == "session=abc"
