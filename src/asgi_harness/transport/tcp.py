"""Socket transport: serves the app with uvicorn on a reserved TCP port.

Requests travel as real HTTP/1.1 over loopback, framed by uvicorn (h11) on
the server side and httpx on the client side. Use this variant when the test
needs full-stack behavior, e.g. to exercise a client library against the app.
"""

from __future__ import annotations

import asyncio
import contextlib
from typing import Iterator

import httpx
import uvicorn

from asgi_harness.constants import DEFAULT_BIND_HOST, STARTUP_POLL_INTERVAL
from asgi_harness.errors import ServerStartupError
from asgi_harness.observability import get_logger
from asgi_harness.ports import PortReservation, ReservedPort
from asgi_harness.transport.base import ASGIApp, BaseTransport, TransportKind

logger = get_logger(__name__)


class _EmbeddedServer(uvicorn.Server):
    """uvicorn server that leaves process signal handling to the test runner."""

    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self) -> Iterator[None]:
        yield


class SocketTransport(BaseTransport):
    """Transport backed by a uvicorn server on a reserved port.

    The port is reserved in ``prepare()`` and the already-listening socket is
    handed to uvicorn, so no other process can take the port in between.
    Exceptions raised by the app are turned into 500 responses by uvicorn
    and do not stop the server.
    """

    kind = TransportKind.SOCKET

    def __init__(
        self,
        *,
        host: str = DEFAULT_BIND_HOST,
        port: int | None = None,
        reservation: PortReservation | None = None,
        lifespan: str = "auto",
        graceful_shutdown: float | None = None,
    ) -> None:
        self._host = host
        self._port = port
        self._reservation = reservation or PortReservation()
        self._lifespan = lifespan
        self._graceful_shutdown = graceful_shutdown
        self._reserved: ReservedPort | None = None
        self._server: _EmbeddedServer | None = None
        self._client_transport: httpx.AsyncHTTPTransport | None = None

    @property
    def url(self) -> httpx.URL:
        if self._reserved is None:
            raise RuntimeError("SocketTransport has no address before prepare()")
        host = f"[{self._host}]" if ":" in self._host else self._host
        return httpx.URL(f"http://{host}:{self._reserved.port}")

    @property
    def address(self) -> httpx.URL | None:
        if self._reserved is None:
            return None
        return self.url

    @property
    def reserved_port(self) -> ReservedPort | None:
        return self._reserved

    async def prepare(self) -> None:
        if self._reserved is not None:
            return
        self._reserved = await self._reservation.reserve(self._host, self._port)
        self._client_transport = httpx.AsyncHTTPTransport(retries=0)
        logger.debug("harness.socket.prepared", host=self._host, port=self._reserved.port)

    def open_client_connection(self) -> httpx.AsyncBaseTransport:
        if self._client_transport is None:
            raise RuntimeError("SocketTransport used before prepare()")
        return self._client_transport

    async def accept_loop(self, app: ASGIApp, ready: asyncio.Event) -> None:
        if self._reserved is None:
            await self.prepare()
        assert self._reserved is not None

        config = uvicorn.Config(
            app,
            lifespan=self._lifespan,
            log_config=None,
            log_level="warning",
            access_log=False,
            timeout_graceful_shutdown=self._graceful_shutdown,
        )
        server = _EmbeddedServer(config)
        self._server = server

        serve_task = asyncio.ensure_future(server.serve(sockets=[self._reserved.socket]))
        try:
            while not server.started:
                if serve_task.done():
                    serve_task.result()
                    raise ServerStartupError(
                        "uvicorn exited before it started serving",
                        details={"transport": self.kind.value, "port": self._reserved.port},
                    )
                await asyncio.sleep(STARTUP_POLL_INTERVAL)
            ready.set()
            await serve_task
        finally:
            if not serve_task.done():
                server.should_exit = True
                serve_task.cancel()
                await asyncio.gather(serve_task, return_exceptions=True)

    def request_shutdown(self) -> None:
        if self._server is not None:
            self._server.should_exit = True

    async def aclose(self) -> None:
        if self._client_transport is not None:
            await self._client_transport.aclose()
            self._client_transport = None
        self.release_now()

    def release_now(self) -> None:
        if self._reserved is not None:
            self._reserved.release()


__all__ = ["SocketTransport"]
