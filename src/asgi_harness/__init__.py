"""asgi-harness: in-process HTTP test server for ASGI applications.

Runs the app under test behind an in-memory or socket transport, builds
requests fluently, and wraps responses with assertions that render diffs.

Example:
    >>> from asgi_harness import TestServer, TestServerConfig
    >>>
    >>> async with TestServer(app, TestServerConfig(save_cookies=True)) as server:
    ...     response = await server.post("/todo").json({"title": "x"}).expect_status(201)
    ...     response.assert_json({"id": 1, "title": "x"})
"""

from asgi_harness.config import TestServerConfig
from asgi_harness.errors import (
    AddressInUseError,
    DecodeError,
    ExpectationError,
    HarnessConnectionError,
    HarnessError,
    HarnessTimeoutError,
    PortExhaustedError,
    ServerStartupError,
    ServerStateError,
)
from asgi_harness.ports import PortRegistry, PortReservation, ReservedPort, get_registry
from asgi_harness.request import Multipart, RequestBuilder, TestRequest
from asgi_harness.response import TestResponse
from asgi_harness.server import TestServer
from asgi_harness.session import ExpectedState
from asgi_harness.transport import TransportKind

__version__ = "0.1.0"

__all__ = [
    "AddressInUseError",
    "DecodeError",
    "ExpectationError",
    "ExpectedState",
    "HarnessConnectionError",
    "HarnessError",
    "HarnessTimeoutError",
    "Multipart",
    "PortExhaustedError",
    "PortRegistry",
    "PortReservation",
    "RequestBuilder",
    "ReservedPort",
    "ServerStartupError",
    "ServerStateError",
    "TestRequest",
    "TestResponse",
    "TestServer",
    "TestServerConfig",
    "TransportKind",
    "__version__",
    "get_registry",
]
