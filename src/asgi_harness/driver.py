"""Server driver: runs the accept loop of a transport in a background task.

The driver owns the task handle and guarantees teardown on every exit path:
explicit ``stop()``, failed ``start()``, and garbage collection of a driver
that was never stopped. The ``weakref.finalize`` hook signals and cancels a
still running accept loop, then releases the port; it cannot wait for the
loop to finish, so graceful draining needs ``stop()``.

State machine::

    CREATED --start()--> RUNNING --stop()--> STOPPED
    CREATED --stop()---------------------->  STOPPED
"""

from __future__ import annotations

import asyncio
import weakref
from enum import Enum
from typing import Callable

from asgi_harness.constants import DEFAULT_SHUTDOWN_TIMEOUT, DEFAULT_STARTUP_TIMEOUT
from asgi_harness.errors import HarnessError, ServerStartupError, ServerStateError
from asgi_harness.observability import get_logger
from asgi_harness.transport.base import ASGIApp, BaseTransport

logger = get_logger(__name__)


def _release_abandoned(transport: BaseTransport, task: "asyncio.Task[None] | None") -> None:
    """Finalizer for a driver collected without stop().

    Must not reference the driver. The loop is only signalled while its event
    loop is still open; the port is released in any case.
    """
    try:
        if task is not None and not task.done() and not task.get_loop().is_closed():
            logger.warning("harness.driver.abandoned", transport=transport.kind.value)
            transport.request_shutdown()
            task.cancel()
    finally:
        transport.release_now()


def _loop_exit_callback(
    driver_ref: "weakref.ref[ServerDriver]",
) -> Callable[[asyncio.Task[None]], None]:
    # The running task holds its callbacks, so they must not keep the driver alive
    def callback(task: asyncio.Task[None]) -> None:
        driver = driver_ref()
        if driver is not None:
            driver._on_loop_exit(task)

    return callback


class DriverState(str, Enum):
    """Lifecycle states of a ServerDriver."""

    CREATED = "created"
    RUNNING = "running"
    STOPPED = "stopped"


VALID_TRANSITIONS: dict[DriverState, set[DriverState]] = {
    DriverState.CREATED: {DriverState.RUNNING, DriverState.STOPPED},
    DriverState.RUNNING: {DriverState.STOPPED},
    DriverState.STOPPED: set(),  # Terminal state
}


def can_transition(from_state: DriverState, to_state: DriverState) -> bool:
    """Check if a driver may move from one state to another.

    Example:
        >>> can_transition(DriverState.CREATED, DriverState.RUNNING)
        True
        >>> can_transition(DriverState.STOPPED, DriverState.RUNNING)
        False
    """
    return to_state in VALID_TRANSITIONS.get(from_state, set())


class ServerDriver:
    """Owns the background accept loop for one transport.

    Exactly one accept-loop task exists between a successful ``start()`` and
    ``stop()``. A driver is single-use: once stopped it cannot be restarted.

    Example:
        >>> driver = ServerDriver(transport)
        >>> await driver.start(app)
        >>> driver.is_running
        True
        >>> await driver.stop()
        True
        >>> await driver.stop()
        False
    """

    def __init__(
        self,
        transport: BaseTransport,
        *,
        startup_timeout: float = DEFAULT_STARTUP_TIMEOUT,
        shutdown_timeout: float = DEFAULT_SHUTDOWN_TIMEOUT,
    ) -> None:
        self._transport = transport
        self._startup_timeout = startup_timeout
        self._shutdown_timeout = shutdown_timeout
        self._state = DriverState.CREATED
        self._task: asyncio.Task[None] | None = None
        self._stop_lock = asyncio.Lock()
        # Must not reference self, or the driver would never be collected.
        self._finalizer = weakref.finalize(self, _release_abandoned, transport, None)

    @property
    def state(self) -> DriverState:
        return self._state

    @property
    def transport(self) -> BaseTransport:
        return self._transport

    @property
    def is_running(self) -> bool:
        return (
            self._state == DriverState.RUNNING and self._task is not None and not self._task.done()
        )

    def _transition(self, to_state: DriverState) -> None:
        if not can_transition(self._state, to_state):
            raise ServerStateError(
                from_state=self._state.value,
                to_state=to_state.value,
                details={"transport": self._transport.kind.value},
            )
        logger.debug(
            "harness.driver.transition",
            from_state=self._state.value,
            to_state=to_state.value,
            transport=self._transport.kind.value,
        )
        self._state = to_state

    async def start(self, app: ASGIApp) -> None:
        """Start serving ``app`` and wait until requests can be accepted.

        Raises:
            ServerStateError: If the driver was already started or stopped
            ServerStartupError: If the accept loop fails or does not become
                ready within the startup timeout
            HarnessError: Port reservation errors from the transport

        On failure the transport is released and the driver ends up STOPPED.
        """
        if not can_transition(self._state, DriverState.RUNNING):
            raise ServerStateError(from_state=self._state.value, to_state=DriverState.RUNNING.value)

        try:
            await self._transport.prepare()
        except BaseException:
            await self._abort_start()
            raise

        ready = asyncio.Event()
        task = asyncio.create_task(
            self._transport.accept_loop(app, ready),
            name=f"asgi-harness-{self._transport.kind.value}",
        )
        ready_waiter = asyncio.create_task(ready.wait())
        try:
            await asyncio.wait(
                {task, ready_waiter},
                timeout=self._startup_timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        except BaseException:
            await self._cancel(task)
            await self._abort_start()
            raise
        finally:
            if not ready_waiter.done():
                ready_waiter.cancel()

        if not ready.is_set() or task.done():
            error = self._startup_failure(task)
            await self._cancel(task)
            await self._abort_start()
            logger.error(
                "harness.driver.startup_failed",
                transport=self._transport.kind.value,
                error=str(error),
            )
            raise error

        self._task = task
        task.add_done_callback(_loop_exit_callback(weakref.ref(self)))
        self._finalizer.detach()
        self._finalizer = weakref.finalize(self, _release_abandoned, self._transport, task)
        self._transition(DriverState.RUNNING)
        logger.info(
            "harness.server.started",
            transport=self._transport.kind.value,
            url=str(self._transport.url),
        )

    def _startup_failure(self, task: asyncio.Task[None]) -> HarnessError:
        if not task.done():
            return ServerStartupError(
                f"not ready within {self._startup_timeout}s",
                details={"transport": self._transport.kind.value},
            )
        if task.cancelled():
            return ServerStartupError("accept loop was cancelled during startup")
        exc = task.exception()
        if isinstance(exc, HarnessError):
            return exc
        if exc is not None:
            error = ServerStartupError(
                f"accept loop raised {exc!r}",
                details={"transport": self._transport.kind.value},
            )
            error.__cause__ = exc
            return error
        return ServerStartupError("accept loop exited before it was ready")

    async def _abort_start(self) -> None:
        try:
            await self._transport.aclose()
        finally:
            self._transport.release_now()
            self._finalizer.detach()
            self._state = DriverState.STOPPED

    @staticmethod
    async def _cancel(task: asyncio.Task[None]) -> None:
        if not task.done():
            task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    def _on_loop_exit(self, task: asyncio.Task[None]) -> None:
        if self._state != DriverState.RUNNING or task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "harness.driver.loop_crashed",
                transport=self._transport.kind.value,
                error=repr(exc),
            )
        else:
            logger.warning("harness.driver.loop_exited", transport=self._transport.kind.value)

    async def stop(self) -> bool:
        """Stop the accept loop and release the transport.

        In-flight requests are given ``shutdown_timeout`` seconds to complete
        before the loop is cancelled. Idempotent: only the first call does any
        work, later calls (including concurrent ones) wait for it and return
        False.

        Returns:
            True if this call stopped the driver, False if it was already stopped
        """
        async with self._stop_lock:
            if self._state == DriverState.STOPPED:
                return False
            was_running = self._state == DriverState.RUNNING
            self._transition(DriverState.STOPPED)

            task = self._task
            try:
                if was_running and task is not None:
                    self._transport.request_shutdown()
                    await self._await_loop(task)
            finally:
                self._task = None
                try:
                    await self._transport.aclose()
                finally:
                    self._finalizer.detach()

            logger.info("harness.server.stopped", transport=self._transport.kind.value)
            return True

    async def _await_loop(self, task: asyncio.Task[None]) -> None:
        try:
            await asyncio.wait_for(asyncio.shield(task), self._shutdown_timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "harness.driver.shutdown_timeout",
                transport=self._transport.kind.value,
                timeout=self._shutdown_timeout,
            )
            await self._cancel(task)
        except asyncio.CancelledError:
            await self._cancel(task)
            raise
        except Exception as exc:
            # The transport is still released by stop(); the crash is only reported.
            logger.warning(
                "harness.driver.loop_error_on_stop",
                transport=self._transport.kind.value,
                error=repr(exc),
            )

    def __repr__(self) -> str:
        return f"ServerDriver({self._transport.kind.value}, {self._state.value})"


__all__ = ["DriverState", "ServerDriver", "VALID_TRANSITIONS", "can_transition"]
