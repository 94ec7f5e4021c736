"""Observability module for the test harness.

Provides structured logging utilities shared by every harness component.

Example:
    >>> from asgi_harness.observability import get_logger
    >>>
    >>> logger = get_logger(__name__)
    >>> logger.info("harness.server.started", transport="socket", port=50123)
"""

from asgi_harness.observability.logging import (
    bound_context,
    configure_logging,
    get_logger,
    is_debug_mode,
    sanitize_for_logging,
)

__all__ = [
    "bound_context",
    "configure_logging",
    "get_logger",
    "is_debug_mode",
    "sanitize_for_logging",
]
