"""Harness error taxonomy.

This module defines the error hierarchy for the test harness. Every error
carries a stable ``code``, a human-readable ``message`` and a ``details``
dict so failures can be inspected programmatically as well as read.

Scopes:
    - Startup errors (PortExhaustedError, AddressInUseError, ServerStartupError)
      abort TestServer construction; no partially started server is returned.
    - Request errors (HarnessConnectionError, HarnessTimeoutError) are scoped
      to a single request; the server and its session stay usable.
    - DecodeError is recoverable: the raw body is attached for inspection.
    - ExpectationError is an AssertionError and fails the current test.
"""

from __future__ import annotations

from typing import Any


class HarnessError(Exception):
    """Base exception for all harness errors.

    Attributes:
        code: Error code following the harness:<area>/<reason> pattern
        message: Human-readable error message
        details: Optional additional error context
    """

    def __init__(self, code: str, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Serialize to ``{code, message, details}`` dict."""
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


class PortExhaustedError(HarnessError):
    """Raised when no bindable port was found within the retry budget.

    Attributes:
        attempts: Number of candidate ports tried
        port_range: Inclusive (low, high) candidate range
    """

    def __init__(
        self,
        attempts: int,
        port_range: tuple[int, int],
        details: dict[str, Any] | None = None,
    ) -> None:
        low, high = port_range
        message = f"No free port found in range {low}-{high} after {attempts} attempts"
        super().__init__(
            code="harness:port/exhausted",
            message=message,
            details={"attempts": attempts, "port_range": [low, high], **(details or {})},
        )
        self.attempts = attempts
        self.port_range = port_range


class AddressInUseError(HarnessError):
    """Raised when a pinned host/port is already bound by someone else."""

    def __init__(self, host: str, port: int, details: dict[str, Any] | None = None) -> None:
        message = f"Address already in use: {host}:{port}"
        super().__init__(
            code="harness:port/address_in_use",
            message=message,
            details={"host": host, "port": port, **(details or {})},
        )
        self.host = host
        self.port = port


class ServerStateError(HarnessError):
    """Raised when attempting an invalid server lifecycle transition.

    Attributes:
        from_state: The current driver state
        to_state: The attempted target state
    """

    def __init__(
        self, from_state: str, to_state: str, details: dict[str, Any] | None = None
    ) -> None:
        message = f"Invalid server transition from '{from_state}' to '{to_state}'"
        super().__init__(
            code="harness:server/invalid_state",
            message=message,
            details={"from_state": from_state, "to_state": to_state, **(details or {})},
        )
        self.from_state = from_state
        self.to_state = to_state


class ServerStartupError(HarnessError):
    """Raised when the service under test fails to start serving."""

    def __init__(self, reason: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(
            code="harness:server/startup_failed",
            message=f"Test server failed to start: {reason}",
            details=details or {},
        )
        self.reason = reason


class HarnessConnectionError(HarnessError):
    """Raised when a request cannot be delivered to the running service.

    This happens when the accept loop has been stopped, or when the socket
    transport refuses the connection.

    Attributes:
        method: HTTP method of the failed request
        url: URL of the failed request
        cause: Original exception, if any
    """

    def __init__(
        self,
        method: str,
        url: str,
        reason: str,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(
            code="harness:transport/connection",
            message=f"Could not deliver request {method} {url}: {reason}",
            details={"method": method, "url": url},
        )
        self.method = method
        self.url = url
        self.cause = cause


class HarnessTimeoutError(HarnessError):
    """Raised when no response arrives within the per-request deadline.

    Attributes:
        timeout: Deadline in seconds
    """

    def __init__(self, method: str, url: str, timeout: float) -> None:
        super().__init__(
            code="harness:transport/timeout",
            message=f"No response for {method} {url} within {timeout}s",
            details={"method": method, "url": url, "timeout": timeout},
        )
        self.method = method
        self.url = url
        self.timeout = timeout


class DecodeError(HarnessError):
    """Raised when a response body does not decode into the requested shape.

    The raw body is kept unchanged on ``body`` so the caller can inspect it.
    """

    def __init__(self, target: str, body: bytes, reason: str) -> None:
        preview = body[:200].decode("utf-8", errors="replace")
        super().__init__(
            code="harness:response/decode",
            message=f"Failed to decode response body as {target}: {reason}. Body: {preview!r}",
            details={"target": target, "reason": reason},
        )
        self.target = target
        self.body = body
        self.reason = reason


class ExpectationError(HarnessError, AssertionError):
    """Raised when a response does not meet an expectation.

    Subclasses AssertionError so pytest reports it as a plain test failure.
    """

    def __init__(
        self,
        message: str,
        *,
        method: str | None = None,
        url: str | None = None,
        diff: str | None = None,
    ) -> None:
        rendered = message
        if method and url:
            rendered = f"{message}, for request {method} {url}"
        if diff:
            rendered = f"{rendered}\n{diff}"
        super().__init__(
            code="harness:assertion/failed",
            message=rendered,
            details={"method": method, "url": url},
        )
        self.method = method
        self.url = url
        self.diff = diff


__all__ = [
    "AddressInUseError",
    "DecodeError",
    "ExpectationError",
    "HarnessConnectionError",
    "HarnessError",
    "HarnessTimeoutError",
    "PortExhaustedError",
    "ServerStartupError",
    "ServerStateError",
]
