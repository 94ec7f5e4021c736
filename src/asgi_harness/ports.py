"""TCP port reservation for socket-backed test servers.

This module provides the PortReservation pattern implementation and a
process-wide registry of held ports, so concurrently running servers in one
process never race each other for the same port.

A reservation binds and listens on the candidate port straight away and keeps
that socket open until the socket transport hands it over to uvicorn. There is
no window between "port looked free" and "server bound it" in which another
process could steal it.
"""

from __future__ import annotations

import asyncio
import errno
import random
import socket
import threading

from asgi_harness.constants import (
    DEFAULT_BIND_HOST,
    DEFAULT_RESERVE_ATTEMPTS,
    DEFAULT_RESERVE_BACKOFF,
    EPHEMERAL_PORT_RANGE,
    MAX_RESERVE_BACKOFF,
)
from asgi_harness.errors import AddressInUseError, PortExhaustedError, ServerStartupError
from asgi_harness.observability import get_logger

logger = get_logger(__name__)

# errno values that mean "someone else has this port, try another one"
_RETRYABLE_ERRNOS = frozenset({errno.EADDRINUSE, errno.EACCES})

_LISTEN_BACKLOG = 128


class PortRegistry:
    """Registry of ports currently reserved by this process.

    The registry is the bookkeeping half of a reservation: a port is claimed
    here before it is bound, and released when the owning reservation is
    released. This implementation is thread-safe using RLock, because test
    runners may start servers from several threads.
    """

    def __init__(self) -> None:
        self._ports: set[int] = set()
        self._lock = threading.RLock()

    def claim(self, port: int) -> bool:
        """Claim a port. Returns False if it is already held by this process."""
        with self._lock:
            if port in self._ports:
                return False
            self._ports.add(port)
            return True

    def release(self, port: int) -> bool:
        """Release a port. Returns False if it was not held."""
        with self._lock:
            if port not in self._ports:
                return False
            self._ports.discard(port)
            return True

    def is_held(self, port: int) -> bool:
        with self._lock:
            return port in self._ports

    def held_ports(self) -> frozenset[int]:
        with self._lock:
            return frozenset(self._ports)

    def clear(self) -> None:
        """Forget all held ports (mostly for testing)."""
        with self._lock:
            self._ports.clear()


# Global registry instance, created on import. Entries are removed as
# reservations are released; whatever is left goes away with the process.
_registry = PortRegistry()


def get_registry() -> PortRegistry:
    """Helper to get the process-wide registry instance."""
    return _registry


class ReservedPort:
    """A bound, listening socket on a reserved port.

    The socket stays open until ``release()`` is called, which also frees the
    registry entry. Release is idempotent and happens exactly once.

    Attributes:
        host: Host the socket is bound to
        port: Reserved port number
    """

    def __init__(self, host: str, port: int, sock: socket.socket, registry: PortRegistry) -> None:
        self.host = host
        self.port = port
        self._socket = sock
        self._registry = registry
        self._released = False
        self._lock = threading.Lock()

    @property
    def socket(self) -> socket.socket:
        return self._socket

    @property
    def is_released(self) -> bool:
        return self._released

    def release(self) -> bool:
        """Close the socket and free the port.

        Returns:
            True if this call released the port, False if it was already released
        """
        with self._lock:
            if self._released:
                return False
            self._released = True
        self._socket.close()
        self._registry.release(self.port)
        logger.debug("harness.port.released", host=self.host, port=self.port)
        return True

    def __enter__(self) -> "ReservedPort":
        return self

    def __exit__(self, exc_type: object, exc_val: object, exc_tb: object) -> None:
        self.release()

    def __repr__(self) -> str:
        state = "released" if self._released else "held"
        return f"ReservedPort({self.host}:{self.port}, {state})"


def _bind_listening_socket(host: str, port: int) -> socket.socket:
    family = socket.AF_INET6 if ":" in host else socket.AF_INET
    sock = socket.socket(family, socket.SOCK_STREAM)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((host, port))
        sock.listen(_LISTEN_BACKLOG)
    except OSError:
        sock.close()
        raise
    sock.setblocking(False)
    return sock


class PortReservation:
    """Acquires a bindable TCP port, retrying under contention.

    Random candidates are drawn from ``port_range``. A candidate is skipped if
    the registry already holds it, or if binding fails with EADDRINUSE/EACCES
    (another process has it). Between attempts the reservation backs off
    exponentially: base_delay * (2 ** attempt), capped at MAX_RESERVE_BACKOFF.

    Example:
        >>> reservation = PortReservation(max_attempts=5)
        >>> reserved = await reservation.reserve("127.0.0.1")
        >>> reserved.port
        50231
        >>> reserved.release()
        True
    """

    def __init__(
        self,
        registry: PortRegistry | None = None,
        *,
        port_range: tuple[int, int] = EPHEMERAL_PORT_RANGE,
        max_attempts: int = DEFAULT_RESERVE_ATTEMPTS,
        base_delay: float = DEFAULT_RESERVE_BACKOFF,
        rng: random.Random | None = None,
    ) -> None:
        low, high = port_range
        if not 0 < low <= high <= 65535:
            raise ValueError(f"Invalid port range: {port_range}")
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.registry = registry if registry is not None else get_registry()
        self.port_range = (low, high)
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self._rng = rng or random.Random()  # nosec B311

    def _calculate_backoff(self, attempt: int) -> float:
        return float(min(self.base_delay * (2**attempt), MAX_RESERVE_BACKOFF))

    async def reserve(self, host: str = DEFAULT_BIND_HOST, port: int | None = None) -> ReservedPort:
        """Reserve a port on ``host``.

        Args:
            host: Interface to bind
            port: Pin this exact port instead of picking one; no retries

        Returns:
            ReservedPort holding the bound socket

        Raises:
            AddressInUseError: If a pinned port is already taken
            PortExhaustedError: If no candidate could be bound within max_attempts
            ServerStartupError: If binding fails for a reason other than contention
        """
        if port is not None:
            return self._reserve_pinned(host, port)

        low, high = self.port_range
        for attempt in range(self.max_attempts):
            if attempt > 0:
                await asyncio.sleep(self._calculate_backoff(attempt - 1))

            candidate = self._rng.randint(low, high)
            if not self.registry.claim(candidate):
                logger.debug(
                    "harness.port.retry",
                    host=host,
                    port=candidate,
                    attempt=attempt + 1,
                    reason="held_by_process",
                )
                continue

            try:
                sock = _bind_listening_socket(host, candidate)
            except OSError as exc:
                self.registry.release(candidate)
                if exc.errno not in _RETRYABLE_ERRNOS:
                    raise ServerStartupError(
                        f"cannot bind {host}:{candidate}: {exc}",
                        details={"host": host, "port": candidate, "errno": exc.errno},
                    ) from exc
                logger.debug(
                    "harness.port.retry",
                    host=host,
                    port=candidate,
                    attempt=attempt + 1,
                    reason="address_in_use",
                )
                continue

            logger.debug("harness.port.reserved", host=host, port=candidate, attempts=attempt + 1)
            return ReservedPort(host, candidate, sock, self.registry)

        logger.warning(
            "harness.port.exhausted",
            host=host,
            port_range=list(self.port_range),
            attempts=self.max_attempts,
        )
        raise PortExhaustedError(self.max_attempts, self.port_range, details={"host": host})

    def _reserve_pinned(self, host: str, port: int) -> ReservedPort:
        if not self.registry.claim(port):
            raise AddressInUseError(host, port, details={"reason": "held_by_process"})
        try:
            sock = _bind_listening_socket(host, port)
        except OSError as exc:
            self.registry.release(port)
            if exc.errno in _RETRYABLE_ERRNOS:
                raise AddressInUseError(host, port) from exc
            raise ServerStartupError(
                f"cannot bind {host}:{port}: {exc}",
                details={"host": host, "port": port, "errno": exc.errno},
            ) from exc
        logger.debug("harness.port.reserved", host=host, port=port, pinned=True)
        return ReservedPort(host, port, sock, self.registry)


__all__ = [
    "PortRegistry",
    "PortReservation",
    "ReservedPort",
    "get_registry",
]
