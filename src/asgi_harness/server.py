"""TestServer: the per-test entry point.

Runs an ASGI app behind a transport and hands out request builders::

    async with TestServer(app) as server:
        response = await server.post("/todo").json({"title": "x"}).expect_status(201)
        response.assert_json({"id": 1, "title": "x"})

The server is torn down on ``stop()``/``aclose()``, on ``async with`` exit,
and when it is garbage collected without being stopped (the accept loop is
cancelled and the port released, without draining in-flight requests).
"""

from __future__ import annotations

from typing import Any, Mapping

import httpx

from asgi_harness.config import TestServerConfig
from asgi_harness.dispatch import Dispatcher
from asgi_harness.driver import DriverState, ServerDriver
from asgi_harness.observability import get_logger
from asgi_harness.ports import PortRegistry
from asgi_harness.request import RequestBuilder
from asgi_harness.session import ExpectedState, QueryParams, SessionState
from asgi_harness.transport import ASGIApp, BaseTransport, TransportKind, create_transport

logger = get_logger(__name__)


class TestServer:
    """Runs an ASGI app for the duration of a test.

    The transport kind is fixed at construction by ``config.transport``.
    Nothing is started until ``start()`` (or ``async with``); a failed start
    leaves no port held and no task running.

    Args:
        app: The ASGI application under test
        config: Server configuration (defaults to TestServerConfig())
        registry: Port registry for the socket transport (defaults to the
            process-wide registry)

    Example:
        >>> server = await TestServer(app, TestServerConfig(save_cookies=True)).start()
        >>> await server.put("/login").expect_success()
        >>> (await server.get("/me")).assert_json({"user": "alice"})
        >>> await server.stop()
    """

    __test__ = False

    def __init__(
        self,
        app: ASGIApp,
        config: TestServerConfig | None = None,
        *,
        registry: PortRegistry | None = None,
    ) -> None:
        self._app = app
        self._config = config or TestServerConfig()
        self._transport = create_transport(self._config.transport, self._config, registry)
        self._driver = ServerDriver(
            self._transport,
            startup_timeout=self._config.startup_timeout,
            shutdown_timeout=self._config.shutdown_timeout,
        )
        self._session = SessionState(
            save_cookies=self._config.save_cookies,
            expected_state=(
                ExpectedState.SUCCESS
                if self._config.expect_success_by_default
                else ExpectedState.NONE
            ),
        )
        self._dispatcher = Dispatcher(self._driver, self._session)

    def __repr__(self) -> str:
        return f"<TestServer {self._config.transport.value} {self._driver.state.value}>"

    # Lifecycle

    async def start(self) -> "TestServer":
        """Start serving the app.

        Raises:
            PortExhaustedError: If no port could be reserved (socket transport)
            AddressInUseError: If the pinned port is taken (socket transport)
            ServerStartupError: If the app fails to start
            ServerStateError: If the server was already started or stopped
        """
        await self._driver.start(self._app)
        self._session.base_url = self._transport.url
        return self

    async def stop(self) -> bool:
        """Stop the server and release its transport. Idempotent.

        Returns:
            True if this call stopped the server
        """
        return await self._driver.stop()

    async def aclose(self) -> None:
        await self.stop()

    async def __aenter__(self) -> "TestServer":
        if self._driver.state == DriverState.CREATED:
            await self.start()
        return self

    async def __aexit__(self, exc_type: object, exc_val: object, exc_tb: object) -> None:
        await self.stop()

    @property
    def is_running(self) -> bool:
        return self._driver.is_running

    @property
    def config(self) -> TestServerConfig:
        return self._config

    @property
    def transport(self) -> BaseTransport:
        return self._transport

    @property
    def transport_kind(self) -> TransportKind:
        return self._transport.kind

    @property
    def session(self) -> SessionState:
        return self._session

    def server_address(self) -> httpx.URL | None:
        """Real address of the server, with a trailing slash.

        Returns None for the in-memory transport, or before the socket
        transport has started.
        """
        address = self._transport.address
        if address is None:
            return None
        return address.copy_with(path="/")

    # Requests

    def method(self, method: str, path: str) -> RequestBuilder:
        """Start building a ``method`` request to ``path``."""
        return RequestBuilder(
            method,
            path,
            session=self._session,
            dispatcher=self._dispatcher,
            default_content_type=self._config.default_content_type,
            request_timeout=self._config.request_timeout,
            restrict_absolute=self._config.restrict_requests_with_http_schema,
        )

    def get(self, path: str) -> RequestBuilder:
        return self.method("GET", path)

    def post(self, path: str) -> RequestBuilder:
        return self.method("POST", path)

    def put(self, path: str) -> RequestBuilder:
        return self.method("PUT", path)

    def patch(self, path: str) -> RequestBuilder:
        return self.method("PATCH", path)

    def delete(self, path: str) -> RequestBuilder:
        return self.method("DELETE", path)

    def head(self, path: str) -> RequestBuilder:
        return self.method("HEAD", path)

    def options(self, path: str) -> RequestBuilder:
        return self.method("OPTIONS", path)

    # Session defaults for all future requests

    def add_cookie(self, name: str, value: str, *, domain: str = "", path: str = "/") -> None:
        self._session.add_cookie(name, value, domain=domain, path=path)

    def add_cookies(self, cookies: Mapping[str, str] | httpx.Cookies) -> None:
        self._session.add_cookies(cookies)

    def clear_cookies(self) -> None:
        self._session.clear_cookies()

    def add_header(self, name: str, value: str) -> None:
        self._session.add_header(name, value)

    def clear_headers(self) -> None:
        self._session.clear_headers()

    def add_query_param(self, name: str, value: Any) -> None:
        self._session.add_query_param(name, value)

    def add_query_params(self, params: QueryParams) -> None:
        self._session.add_query_params(params)

    def clear_query_params(self) -> None:
        self._session.clear_query_params()

    def do_save_cookies(self) -> None:
        self._session.save_cookies = True

    def do_not_save_cookies(self) -> None:
        self._session.save_cookies = False

    def expect_success(self) -> None:
        """Every following request asserts a 2xx status unless it says otherwise."""
        self._session.expected_state = ExpectedState.SUCCESS

    def expect_failure(self) -> None:
        """Every following request asserts a non-2xx status unless it says otherwise."""
        self._session.expected_state = ExpectedState.FAILURE


__all__ = ["TestServer"]
