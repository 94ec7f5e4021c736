"""Transport contract shared by the socket and in-memory variants."""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Awaitable, Callable, MutableMapping

import httpx

Scope = MutableMapping[str, Any]
Message = MutableMapping[str, Any]
Receive = Callable[[], Awaitable[Message]]
Send = Callable[[Message], Awaitable[None]]
ASGIApp = Callable[[Scope, Receive, Send], Awaitable[None]]


class TransportKind(str, Enum):
    """Transport variants.

    IN_MEMORY: Requests are handed to the app through an in-process queue
    SOCKET: The app is served by uvicorn on a reserved TCP port
    """

    IN_MEMORY = "in_memory"
    SOCKET = "socket"


class BaseTransport(ABC):
    """Contract every transport variant implements.

    Lifecycle, driven by ServerDriver:
        1. ``prepare()`` acquires resources (ports). Errors abort startup.
        2. ``accept_loop(app, ready)`` runs in a background task and sets
           ``ready`` once requests can be served.
        3. ``request_shutdown()`` asks the loop to finish.
        4. ``aclose()`` releases whatever ``prepare()`` acquired.

    ``open_client_connection()`` may be called any number of times, from
    concurrent tasks, while the loop is running.
    """

    kind: TransportKind

    @property
    @abstractmethod
    def url(self) -> httpx.URL:
        """Base URL requests should be addressed to."""

    @property
    def address(self) -> httpx.URL | None:
        """Real network address, or None when there is no socket."""
        return None

    @abstractmethod
    async def prepare(self) -> None: ...

    @abstractmethod
    async def accept_loop(self, app: ASGIApp, ready: asyncio.Event) -> None: ...

    @abstractmethod
    def request_shutdown(self) -> None: ...

    @abstractmethod
    def open_client_connection(self) -> httpx.AsyncBaseTransport: ...

    @abstractmethod
    async def aclose(self) -> None: ...

    def release_now(self) -> None:
        """Synchronously release OS resources. Used by finalizers."""
