"""Transports connecting a test server's client side to the app under test.

Two variants share one contract (``BaseTransport``):

    SocketTransport: uvicorn on a reserved TCP port, real HTTP/1.1 framing.
    InMemoryTransport: in-process request queue, no OS resources.

Callers build a transport with ``create_transport`` and never branch on which
variant they got.

Example:
    >>> from asgi_harness.transport import TransportKind, create_transport
    >>> transport = create_transport(TransportKind.IN_MEMORY)
    >>> transport.url
    URL('http://localhost')
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from asgi_harness.transport.base import ASGIApp, BaseTransport, TransportKind
from asgi_harness.transport.memory import InMemoryConnection, InMemoryTransport
from asgi_harness.transport.tcp import SocketTransport

if TYPE_CHECKING:
    from asgi_harness.config import TestServerConfig
    from asgi_harness.ports import PortRegistry


def create_transport(
    kind: TransportKind,
    config: "TestServerConfig | None" = None,
    registry: "PortRegistry | None" = None,
) -> BaseTransport:
    """Create the transport variant for ``kind``.

    Args:
        kind: Which variant to build
        config: Server configuration supplying host, port and lifespan policy
        registry: Port registry for the socket variant (defaults to the
            process-wide registry)

    Returns:
        A transport ready for ``prepare()``
    """
    from asgi_harness.config import TestServerConfig
    from asgi_harness.ports import PortReservation

    config = config or TestServerConfig()
    if kind == TransportKind.SOCKET:
        reservation = PortReservation(
            registry,
            port_range=config.port_range,
            max_attempts=config.reserve_attempts,
            base_delay=config.reserve_backoff,
        )
        return SocketTransport(
            host=config.host,
            port=config.port,
            reservation=reservation,
            lifespan=config.lifespan,
            # uvicorn cancels its own handlers before the driver gives up on it
            graceful_shutdown=config.shutdown_timeout / 2,
        )
    return InMemoryTransport(base_url=config.base_url, lifespan=config.lifespan)


__all__ = [
    "ASGIApp",
    "BaseTransport",
    "InMemoryConnection",
    "InMemoryTransport",
    "SocketTransport",
    "TransportKind",
    "create_transport",
]
