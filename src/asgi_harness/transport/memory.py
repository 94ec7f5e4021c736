"""In-memory transport: serves an ASGI app without any OS socket.

Client connections turn each ``httpx.Request`` into an ASGI exchange (scope
plus body) and put it on a queue. The accept loop takes exchanges off that
queue and runs each one against the app in its own task, in the same way a
socket server accepts connections and hands them to a protocol handler.

Requests and responses still travel as httpx values with ASGI-encoded
headers, so an app that negotiates content from headers sees exactly what it
would see behind uvicorn.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import unquote

import httpx

from asgi_harness.constants import ASGI_SPEC_VERSION, ASGI_VERSION, DEFAULT_BASE_URL
from asgi_harness.errors import ServerStartupError
from asgi_harness.observability import get_logger
from asgi_harness.transport.base import ASGIApp, BaseTransport, Message, Scope, TransportKind

logger = get_logger(__name__)

# Peer address reported to the app for in-memory requests
IN_MEMORY_CLIENT = ("127.0.0.1", 50000)

_DEFAULT_PORTS = {"http": 80, "https": 443}

_INTERNAL_ERROR_BODY = b"Internal Server Error"

# Sentinel messages produced by the lifespan runner itself, never by the app
_LIFESPAN_UNSUPPORTED = "harness.lifespan.unsupported"
_LIFESPAN_RETURNED = "harness.lifespan.returned"


@dataclass
class _Exchange:
    """One request waiting to be served, and the future its response goes to."""

    request: httpx.Request
    scope: Scope
    body: bytes
    future: asyncio.Future[httpx.Response] = field(repr=False)


def build_http_scope(request: httpx.Request, app_state: dict[str, Any] | None = None) -> Scope:
    """Build an ASGI HTTP scope from an httpx request."""
    url = request.url
    raw_path = url.raw_path.split(b"?", 1)[0]
    port = url.port or _DEFAULT_PORTS.get(url.scheme, 80)
    return {
        "type": "http",
        "asgi": {"version": ASGI_VERSION, "spec_version": ASGI_SPEC_VERSION},
        "http_version": "1.1",
        "method": request.method,
        "scheme": url.scheme,
        "path": unquote(raw_path.decode("ascii")),
        "raw_path": raw_path,
        "query_string": url.query,
        "root_path": "",
        "headers": [(name.lower(), value) for name, value in request.headers.raw],
        "client": IN_MEMORY_CLIENT,
        "server": (url.host, port),
        "state": dict(app_state or {}),
    }


class InMemoryConnection(httpx.AsyncBaseTransport):
    """Client end of the in-memory channel.

    Safe to share between tasks; every request becomes its own exchange.
    """

    def __init__(self, transport: "InMemoryTransport") -> None:
        self._transport = transport

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        body = await request.aread()
        future = self._transport.submit(request, body)
        return await future


class InMemoryTransport(BaseTransport):
    """Transport that serves the app from an in-process queue.

    Exceptions raised by the app while handling a request are logged and
    turned into a 500 response for that request only; the accept loop keeps
    running. If the app fails after it already started its response, the
    failure is surfaced to that request as a protocol error.
    """

    kind = TransportKind.IN_MEMORY

    def __init__(self, base_url: str | None = None, lifespan: str = "auto") -> None:
        self._url = httpx.URL(base_url or DEFAULT_BASE_URL)
        self._lifespan_mode = lifespan
        self._queue: asyncio.Queue[_Exchange | None] | None = None
        self._accepting = False
        self._in_flight: set[asyncio.Task[None]] = set()
        self._app_state: dict[str, Any] = {}
        self._lifespan_task: asyncio.Task[None] | None = None
        self._lifespan_to_app: asyncio.Queue[Message] | None = None
        self._lifespan_from_app: asyncio.Queue[Message] | None = None

    @property
    def url(self) -> httpx.URL:
        return self._url

    @property
    def is_accepting(self) -> bool:
        return self._accepting

    async def prepare(self) -> None:
        self._queue = asyncio.Queue()

    def open_client_connection(self) -> httpx.AsyncBaseTransport:
        return InMemoryConnection(self)

    def submit(self, request: httpx.Request, body: bytes) -> asyncio.Future[httpx.Response]:
        """Queue a request for the accept loop.

        Raises:
            httpx.ConnectError: If the accept loop is not accepting requests
        """
        if not self._accepting or self._queue is None:
            raise httpx.ConnectError("In-memory server is not accepting requests", request=request)
        future: asyncio.Future[httpx.Response] = asyncio.get_running_loop().create_future()
        scope = build_http_scope(request, self._app_state)
        self._queue.put_nowait(_Exchange(request=request, scope=scope, body=body, future=future))
        return future

    def request_shutdown(self) -> None:
        self._accepting = False
        if self._queue is not None:
            self._queue.put_nowait(None)

    async def accept_loop(self, app: ASGIApp, ready: asyncio.Event) -> None:
        if self._queue is None:
            await self.prepare()
        assert self._queue is not None

        await self._lifespan_startup(app)
        self._accepting = True
        ready.set()
        try:
            while True:
                exchange = await self._queue.get()
                if exchange is None:
                    break
                task = asyncio.create_task(self._serve_exchange(app, exchange))
                self._in_flight.add(task)
                task.add_done_callback(self._in_flight.discard)
        finally:
            self._accepting = False
            self._fail_queued()
            if self._in_flight:
                await asyncio.gather(*self._in_flight, return_exceptions=True)
            await self._lifespan_shutdown()

    def _fail_queued(self) -> None:
        """Fail every exchange that was queued but never accepted."""
        if self._queue is None:
            return
        while not self._queue.empty():
            exchange = self._queue.get_nowait()
            if exchange is not None and not exchange.future.done():
                exchange.future.set_exception(
                    httpx.ConnectError("In-memory server stopped", request=exchange.request)
                )

    async def _serve_exchange(self, app: ASGIApp, exchange: _Exchange) -> None:
        request_sent = False
        response_started = False
        status_code: int | None = None
        response_headers: list[tuple[bytes, bytes]] = []
        body_parts: list[bytes] = []
        response_complete = asyncio.Event()

        async def receive() -> Message:
            nonlocal request_sent
            if request_sent:
                await response_complete.wait()
                return {"type": "http.disconnect"}
            request_sent = True
            return {"type": "http.request", "body": exchange.body, "more_body": False}

        async def send(message: Message) -> None:
            nonlocal response_started, status_code, response_headers
            if message["type"] == "http.response.start":
                if response_started:
                    raise RuntimeError("ASGI app sent http.response.start twice")
                response_started = True
                status_code = message["status"]
                response_headers = list(message.get("headers", []))
            elif message["type"] == "http.response.body":
                if not response_started:
                    raise RuntimeError("ASGI app sent a body before http.response.start")
                if response_complete.is_set():
                    return
                body_parts.append(message.get("body", b""))
                if not message.get("more_body", False):
                    response_complete.set()

        future = exchange.future
        try:
            await app(exchange.scope, receive, send)
        except asyncio.CancelledError:
            if not future.done():
                future.set_exception(
                    httpx.ConnectError("In-memory server stopped", request=exchange.request)
                )
            raise
        except Exception as exc:
            logger.exception(
                "harness.memory.app_error",
                method=exchange.request.method,
                url=str(exchange.request.url),
                response_started=response_started,
            )
            if response_complete.is_set():
                # Error middleware already sent a complete response; deliver it.
                pass
            elif response_started:
                if not future.done():
                    future.set_exception(
                        httpx.RemoteProtocolError(
                            f"Server error after response started: {exc!r}",
                            request=exchange.request,
                        )
                    )
                return
            else:
                status_code = 500
                response_headers = [(b"content-type", b"text/plain; charset=utf-8")]
                body_parts = [_INTERNAL_ERROR_BODY]
        finally:
            response_complete.set()

        if status_code is None:
            logger.error(
                "harness.memory.no_response",
                method=exchange.request.method,
                url=str(exchange.request.url),
            )
            status_code = 500
            response_headers = [(b"content-type", b"text/plain; charset=utf-8")]
            body_parts = [_INTERNAL_ERROR_BODY]

        # Responses to HEAD carry headers only, as on the wire
        content = b"" if exchange.request.method == "HEAD" else b"".join(body_parts)
        if not future.done():
            future.set_result(
                httpx.Response(
                    status_code,
                    headers=response_headers,
                    content=content,
                    request=exchange.request,
                )
            )

    async def _lifespan_startup(self, app: ASGIApp) -> None:
        if self._lifespan_mode == "off":
            return

        to_app: asyncio.Queue[Message] = asyncio.Queue()
        from_app: asyncio.Queue[Message] = asyncio.Queue()
        self._lifespan_to_app = to_app
        self._lifespan_from_app = from_app
        scope: Scope = {
            "type": "lifespan",
            "asgi": {"version": ASGI_VERSION, "spec_version": ASGI_SPEC_VERSION},
            "state": self._app_state,
        }

        async def run() -> None:
            try:
                await app(scope, to_app.get, from_app.put)
            except Exception as exc:
                if self._lifespan_mode == "auto":
                    await from_app.put({"type": _LIFESPAN_UNSUPPORTED, "message": repr(exc)})
                else:
                    logger.exception("harness.lifespan.error")
                    await from_app.put({"type": "lifespan.startup.failed", "message": repr(exc)})
            else:
                await from_app.put({"type": _LIFESPAN_RETURNED})

        self._lifespan_task = asyncio.create_task(run())
        await to_app.put({"type": "lifespan.startup"})
        message = await from_app.get()

        if message["type"] == "lifespan.startup.complete":
            logger.debug("harness.lifespan.started")
            return
        if message["type"] == "lifespan.startup.failed":
            await self._lifespan_task
            self._lifespan_task = None
            raise ServerStartupError(
                f"lifespan startup failed: {message.get('message', '')}",
                details={"transport": self.kind.value},
            )

        # App does not speak lifespan
        await self._lifespan_task
        self._lifespan_task = None
        if self._lifespan_mode == "on":
            raise ServerStartupError(
                "app does not support the lifespan protocol",
                details={"transport": self.kind.value, "message": message.get("message")},
            )
        logger.debug("harness.lifespan.unsupported", message=message.get("message"))

    async def _lifespan_shutdown(self) -> None:
        task = self._lifespan_task
        if task is None or self._lifespan_to_app is None or self._lifespan_from_app is None:
            return
        self._lifespan_task = None
        await self._lifespan_to_app.put({"type": "lifespan.shutdown"})
        message = await self._lifespan_from_app.get()
        if message["type"] == "lifespan.shutdown.failed":
            logger.error("harness.lifespan.shutdown_failed", message=message.get("message"))
        await asyncio.gather(task, return_exceptions=True)

    async def aclose(self) -> None:
        self._accepting = False
        self._fail_queued()
        task = self._lifespan_task
        if task is not None and not task.done():
            # Startup was abandoned while the app was still inside its lifespan
            self._lifespan_task = None
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)


__all__ = [
    "InMemoryConnection",
    "InMemoryTransport",
    "build_http_scope",
]
