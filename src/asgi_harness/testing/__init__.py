"""Testing helpers for asgi-harness users.

Modules:
    pytest_plugin: Options, marker and fixtures (``harness_config``,
                   ``server_factory``), loaded automatically by pytest.

Context managers:
    running_server(): Async context manager yielding a started TestServer.

Example:
    >>> from asgi_harness.testing import running_server
    >>> async with running_server(app, transport="socket") as server:
    ...     (await server.get("/health")).assert_status_ok()
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from asgi_harness.config import TestServerConfig
from asgi_harness.server import TestServer
from asgi_harness.transport import ASGIApp


@asynccontextmanager
async def running_server(
    app: ASGIApp,
    config: TestServerConfig | None = None,
    **overrides: Any,
) -> AsyncIterator[TestServer]:
    """Start a TestServer for the scope and stop it on exit.

    Args:
        app: The ASGI application under test
        config: Base configuration (defaults to TestServerConfig())
        **overrides: Config fields to override, e.g. ``save_cookies=True``

    Yields:
        A started TestServer
    """
    config = config or TestServerConfig()
    if overrides:
        config = TestServerConfig.model_validate({**config.model_dump(), **overrides})
    async with TestServer(app, config) as server:
        yield server


__all__ = ["running_server"]
