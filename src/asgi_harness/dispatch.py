"""Dispatcher: sends built requests to the running server.

Requests go straight through the transport's client connection
(``httpx.AsyncBaseTransport``) rather than an ``httpx.AsyncClient``, so the
session's cookie jar is the only one involved and nothing is redirected or
retried behind the test's back.
"""

from __future__ import annotations

import asyncio
import time
from typing import TYPE_CHECKING

import httpx

from asgi_harness.driver import ServerDriver
from asgi_harness.errors import HarnessConnectionError, HarnessTimeoutError
from asgi_harness.observability import bound_context, get_logger, sanitize_for_logging
from asgi_harness.response import TestResponse
from asgi_harness.session import SessionState

if TYPE_CHECKING:
    from asgi_harness.request import TestRequest

logger = get_logger(__name__)


async def _exchange(connection: httpx.AsyncBaseTransport, request: httpx.Request) -> httpx.Response:
    response = await connection.handle_async_request(request)
    try:
        await response.aread()
    finally:
        await response.aclose()
    response.request = request
    return response


class Dispatcher:
    """Sends TestRequests over the driver's transport.

    Per-request failures are raised as harness errors and leave the server and
    the session usable:

        HarnessConnectionError: server stopped, connection refused or the app
            broke the response mid-stream
        HarnessTimeoutError: no complete response within the request timeout
    """

    def __init__(self, driver: ServerDriver, session: SessionState) -> None:
        self._driver = driver
        self._session = session

    async def send(self, request: "TestRequest") -> TestResponse:
        transport = self._driver.transport
        address = transport.address
        with bound_context(
            transport=transport.kind.value,
            server_address=str(address) if address is not None else None,
        ):
            return await self._send(request)

    async def _send(self, request: "TestRequest") -> TestResponse:
        method = request.method
        url = str(request.url)
        if not self._driver.is_running:
            raise HarnessConnectionError(
                method, url, f"test server is not running (state: {self._driver.state.value})"
            )

        http_request = request.to_httpx()
        logger.debug(
            "harness.dispatch.sending",
            method=method,
            url=url,
            headers=sanitize_for_logging(dict(http_request.headers)),
            body_kind=request.body.kind.value,
            body_size=len(request.body.content),
        )

        start = time.perf_counter()
        try:
            connection = self._driver.transport.open_client_connection()
            response = await asyncio.wait_for(
                _exchange(connection, http_request), timeout=request.timeout
            )
        except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
            logger.warning(
                "harness.dispatch.timeout", method=method, url=url, timeout=request.timeout
            )
            raise HarnessTimeoutError(method, url, request.timeout) from exc
        except httpx.TransportError as exc:
            logger.warning(
                "harness.dispatch.connection_error",
                method=method,
                url=url,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise HarnessConnectionError(
                method, url, str(exc) or type(exc).__name__, cause=exc
            ) from exc

        duration_ms = (time.perf_counter() - start) * 1000
        logger.info(
            "harness.dispatch.completed",
            method=method,
            url=url,
            status_code=response.status_code,
            duration_ms=round(duration_ms, 2),
        )

        if request.save_cookies:
            await self._session.merge_cookies(response)

        return TestResponse(response, method=method, url=request.url)


__all__ = ["Dispatcher"]
