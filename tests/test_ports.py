"""Tests for port reservation and the process-wide registry."""

from __future__ import annotations

import asyncio
import errno
import socket
import threading

import pytest

import asgi_harness.ports as ports_module
from asgi_harness.errors import AddressInUseError, PortExhaustedError, ServerStartupError
from asgi_harness.ports import PortRegistry, PortReservation, get_registry


class TestPortRegistry:
    """Tests for PortRegistry bookkeeping."""

    def test_claim_and_release(self) -> None:
        """A port can be claimed once until it is released."""
        registry = PortRegistry()

        assert registry.claim(50000) is True
        assert registry.claim(50000) is False
        assert registry.is_held(50000)
        assert registry.release(50000) is True
        assert registry.release(50000) is False
        assert not registry.is_held(50000)

    def test_held_ports_is_snapshot(self) -> None:
        """held_ports returns an immutable copy."""
        registry = PortRegistry()
        registry.claim(50001)
        held = registry.held_ports()
        registry.claim(50002)

        assert held == frozenset({50001})

    def test_concurrent_claims_grant_once(self) -> None:
        """Only one of many threads claiming the same port wins."""
        registry = PortRegistry()
        results: list[bool] = []
        barrier = threading.Barrier(8)

        def claim() -> None:
            barrier.wait()
            results.append(registry.claim(51000))

        threads = [threading.Thread(target=claim) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert results.count(True) == 1

    def test_global_registry_is_shared(self) -> None:
        """get_registry returns the same instance every time."""
        assert get_registry() is get_registry()


class TestPortReservation:
    """Tests for PortReservation.reserve."""

    async def test_reserved_socket_is_listening(self, registry: PortRegistry) -> None:
        """The reserved socket accepts TCP connections straight away."""
        reserved = await PortReservation(registry).reserve("127.0.0.1")
        try:
            assert registry.is_held(reserved.port)
            _, writer = await asyncio.open_connection("127.0.0.1", reserved.port)
            writer.close()
            await writer.wait_closed()
        finally:
            reserved.release()

        assert not registry.is_held(reserved.port)

    async def test_release_is_idempotent(self, registry: PortRegistry) -> None:
        """Only the first release does any work."""
        reserved = await PortReservation(registry).reserve()

        assert reserved.release() is True
        assert reserved.release() is False
        assert reserved.is_released

    async def test_context_manager_releases(self, registry: PortRegistry) -> None:
        """Leaving the with block releases the port."""
        reserved = await PortReservation(registry).reserve()
        with reserved:
            pass

        assert reserved.is_released
        assert not registry.is_held(reserved.port)

    async def test_concurrent_reservations_are_distinct(self, registry: PortRegistry) -> None:
        """Servers reserving at the same time never get the same port."""
        reservation = PortReservation(registry, port_range=(50000, 50100), max_attempts=50)

        reserved = await asyncio.gather(*(reservation.reserve() for _ in range(10)))
        try:
            assert len({r.port for r in reserved}) == 10
        finally:
            for r in reserved:
                r.release()

    async def test_exhaustion_after_max_attempts(
        self, registry: PortRegistry, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """A range with only an occupied port fails after max_attempts binds."""
        occupant = await PortReservation(PortRegistry()).reserve("127.0.0.1")
        calls: list[int] = []
        real_bind = ports_module._bind_listening_socket

        def counting_bind(host: str, port: int) -> socket.socket:
            calls.append(port)
            return real_bind(host, port)

        monkeypatch.setattr(ports_module, "_bind_listening_socket", counting_bind)
        reservation = PortReservation(
            registry,
            port_range=(occupant.port, occupant.port),
            max_attempts=4,
            base_delay=0,
        )
        try:
            with pytest.raises(PortExhaustedError) as exc_info:
                await reservation.reserve("127.0.0.1")
        finally:
            occupant.release()

        assert exc_info.value.attempts == 4
        assert calls == [occupant.port] * 4
        assert not registry.is_held(occupant.port)

    async def test_held_by_process_is_skipped(self, registry: PortRegistry) -> None:
        """A port already held in the registry is never bound again."""
        registry.claim(50500)
        reservation = PortReservation(
            registry, port_range=(50500, 50500), max_attempts=3, base_delay=0
        )

        with pytest.raises(PortExhaustedError):
            await reservation.reserve()

        assert registry.is_held(50500)

    async def test_pinned_port_in_use(self, registry: PortRegistry) -> None:
        """A pinned port that is taken fails at once with AddressInUseError."""
        occupant = await PortReservation(PortRegistry()).reserve("127.0.0.1")
        try:
            with pytest.raises(AddressInUseError) as exc_info:
                await PortReservation(registry).reserve("127.0.0.1", occupant.port)
        finally:
            occupant.release()

        assert exc_info.value.port == occupant.port
        assert not registry.is_held(occupant.port)

    async def test_pinned_port_held_by_process(self, registry: PortRegistry) -> None:
        """A pinned port held by another server in this process is rejected."""
        registry.claim(50600)

        with pytest.raises(AddressInUseError):
            await PortReservation(registry).reserve("127.0.0.1", 50600)

    async def test_non_retryable_error_is_startup_error(
        self, registry: PortRegistry, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Bind errors other than contention abort without retrying."""
        calls: list[int] = []

        def failing_bind(host: str, port: int) -> socket.socket:
            calls.append(port)
            raise OSError(errno.EADDRNOTAVAIL, "Cannot assign requested address")

        monkeypatch.setattr(ports_module, "_bind_listening_socket", failing_bind)

        with pytest.raises(ServerStartupError):
            await PortReservation(registry, max_attempts=5).reserve("127.0.0.1")

        assert len(calls) == 1
        assert registry.held_ports() == frozenset()

    def test_backoff_is_capped(self) -> None:
        """Backoff doubles per attempt up to the cap."""
        reservation = PortReservation(base_delay=0.01)

        assert reservation._calculate_backoff(0) == pytest.approx(0.01)
        assert reservation._calculate_backoff(2) == pytest.approx(0.04)
        assert reservation._calculate_backoff(20) == ports_module.MAX_RESERVE_BACKOFF

    @pytest.mark.parametrize(
        "kwargs",
        [{"port_range": (0, 100)}, {"port_range": (600, 500)}, {"max_attempts": 0}],
    )
    def test_invalid_arguments(self, kwargs: dict[str, object]) -> None:
        """Invalid ranges and budgets are rejected up front."""
        with pytest.raises(ValueError):
            PortReservation(**kwargs)  # type: ignore[arg-type]
