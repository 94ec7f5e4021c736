"""Structured logging for the test harness.

Harness components log through structlog with dotted event names
(``harness.server.started``, ``harness.dispatch.completed``, ...). Events are
routed into the stdlib ``asgi_harness`` logger, so pytest's ``caplog`` and
``--log-cli-level`` see them like any other library's records, and rendered
as colored console lines locally or JSON lines in CI.

Environment Variables:
    HARNESS_LOG_FORMAT: "json" or "console" (default)
    HARNESS_LOG_LEVEL: DEBUG, INFO, WARNING (default) or ERROR
    HARNESS_SERVICE_NAME: Value of the ``service`` key on every event
    HARNESS_DEBUG: "true" or "1" to log header values in full; otherwise
        cookies, credentials and tokens are redacted

Example:
    >>> from asgi_harness.observability import bound_context, configure_logging, get_logger
    >>>
    >>> configure_logging(log_format="json", log_level="DEBUG")
    >>> logger = get_logger("asgi_harness.dispatch")
    >>> with bound_context(transport="socket"):
    ...     logger.debug("harness.dispatch.sending", method="GET", url="http://127.0.0.1:50123/")
"""

import logging
import os
import sys
from contextlib import contextmanager
from typing import Any, Iterator

import structlog
from structlog.typing import Processor

DEFAULT_LOG_LEVEL = "WARNING"
DEFAULT_LOG_FORMAT = "console"
DEFAULT_SERVICE_NAME = "asgi-harness"

ENV_LOG_FORMAT = "HARNESS_LOG_FORMAT"
ENV_LOG_LEVEL = "HARNESS_LOG_LEVEL"
ENV_SERVICE_NAME = "HARNESS_SERVICE_NAME"
ENV_DEBUG = "HARNESS_DEBUG"

# stdlib logger every harness module logs under
ROOT_LOGGER_NAME = "asgi_harness"

REDACTED_PLACEHOLDER = "***REDACTED***"

# Case-insensitive substrings of header and field names whose values are redacted
_SENSITIVE_KEY_PATTERNS = frozenset(
    {"password", "token", "secret", "authorization", "auth", "cookie", "api-key"}
)

_logging_configured = False


def is_debug_mode() -> bool:
    """Return True if HARNESS_DEBUG is set to a truthy value (e.g. true, 1)."""
    return os.environ.get(ENV_DEBUG, "").strip().lower() in ("true", "1", "yes", "on")


def sanitize_for_logging(data: dict[str, Any]) -> dict[str, Any]:
    """Redact sensitive values in a dict of headers or fields before logging.

    Nested dicts and lists of dicts are handled recursively. In debug mode
    the data is returned unchanged.

    Example:
        >>> sanitize_for_logging({"accept": "text/html", "cookie": "session=abc"})
        {'accept': 'text/html', 'cookie': '***REDACTED***'}
    """
    if not data:
        return {}
    if is_debug_mode():
        return dict(data)
    return {key: _sanitize_value(key, value) for key, value in data.items()}


def _sanitize_value(key: str, value: Any) -> Any:
    lowered = key.lower()
    if any(pattern in lowered for pattern in _SENSITIVE_KEY_PATTERNS):
        return REDACTED_PLACEHOLDER
    if isinstance(value, dict):
        return sanitize_for_logging(value)
    if isinstance(value, list):
        return [sanitize_for_logging(item) if isinstance(item, dict) else item for item in value]
    return value


def _shared_processors() -> list[Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]


def _renderer(log_format: str) -> Processor:
    if log_format == "json":
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer(
        colors=sys.stdout.isatty(),
        exception_formatter=structlog.dev.plain_traceback,
    )


def configure_logging(
    log_format: str | None = None,
    log_level: str | None = None,
    service_name: str | None = None,
    force: bool = False,
) -> None:
    """Configure structlog and the ``asgi_harness`` stdlib logger.

    Only the ``asgi_harness`` logger tree gets a handler and a level, so the
    test run's own logging setup is left alone. Records still propagate to
    the root logger, where pytest captures them.

    Args:
        log_format: "json" or "console". Defaults to HARNESS_LOG_FORMAT or "console"
        log_level: Minimum level. Defaults to HARNESS_LOG_LEVEL or "WARNING"
        service_name: Value of the ``service`` key. Defaults to HARNESS_SERVICE_NAME
        force: Reconfigure even if logging was already configured
    """
    global _logging_configured

    if _logging_configured and not force:
        return

    log_format = (log_format or os.environ.get(ENV_LOG_FORMAT, DEFAULT_LOG_FORMAT)).lower()
    log_level = (log_level or os.environ.get(ENV_LOG_LEVEL, DEFAULT_LOG_LEVEL)).upper()
    service_name = service_name or os.environ.get(ENV_SERVICE_NAME, DEFAULT_SERVICE_NAME)

    shared = _shared_processors()
    structlog.configure(
        processors=[*shared, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=shared,
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                _renderer(log_format),
            ],
        )
    )

    harness_logger = logging.getLogger(ROOT_LOGGER_NAME)
    harness_logger.handlers.clear()
    harness_logger.addHandler(handler)
    harness_logger.setLevel(getattr(logging, log_level))

    structlog.contextvars.bind_contextvars(service=service_name)

    _logging_configured = True


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a structured logger, configuring logging with defaults on first use.

    Example:
        >>> logger = get_logger(__name__)
        >>> logger.info("harness.server.started", transport="in_memory")
    """
    if not _logging_configured:
        configure_logging()

    return structlog.stdlib.get_logger(name)


@contextmanager
def bound_context(**kwargs: Any) -> Iterator[None]:
    """Add ``kwargs`` to every event logged inside the block.

    Values bound outside the block are restored on exit, so nested and
    concurrent blocks (one per asyncio task) do not leak into each other.
    """
    with structlog.contextvars.bound_contextvars(**kwargs):
        yield


__all__ = [
    "REDACTED_PLACEHOLDER",
    "bound_context",
    "configure_logging",
    "get_logger",
    "is_debug_mode",
    "sanitize_for_logging",
]
