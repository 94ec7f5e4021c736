"""Shared pytest fixtures for asgi-harness tests."""

from __future__ import annotations

import pytest
from fastapi import FastAPI

from asgi_harness import TestServerConfig, TransportKind
from asgi_harness.ports import PortRegistry
from tests.apps import create_app


@pytest.fixture
def app() -> FastAPI:
    """Create a fresh FastAPI app for the test."""
    return create_app()


@pytest.fixture
def registry() -> PortRegistry:
    """Create an isolated port registry for the test."""
    return PortRegistry()


@pytest.fixture(params=[TransportKind.IN_MEMORY, TransportKind.SOCKET], ids=["memory", "socket"])
def transport_kind(request: pytest.FixtureRequest) -> TransportKind:
    """Run the test once per transport variant."""
    return TransportKind(request.param)


@pytest.fixture
def config(transport_kind: TransportKind) -> TestServerConfig:
    """Default config on the parametrized transport with short shutdown bounds."""
    return TestServerConfig(transport=transport_kind, shutdown_timeout=1.0)
