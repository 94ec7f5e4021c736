"""Constants for the test harness.

This module defines library-wide defaults used across the codebase.
"""

# Base URL used for requests when the transport has no real address
DEFAULT_BASE_URL = "http://localhost"

DEFAULT_BIND_HOST = "127.0.0.1"

# Port reservation
EPHEMERAL_PORT_RANGE = (49152, 65535)
"""Inclusive range of candidate ports for random reservation.

This is the IANA dynamic/private range, which other services rarely pin.
"""

DEFAULT_RESERVE_ATTEMPTS = 20
"""Maximum number of candidate ports tried before giving up.

Each attempt binds a random candidate; contention from concurrently running
test processes usually clears within a handful of attempts.
"""

DEFAULT_RESERVE_BACKOFF = 0.01
"""Base delay in seconds between reservation attempts.

Subsequent attempts back off exponentially: base * (2 ** attempt), capped at
MAX_RESERVE_BACKOFF.
"""

MAX_RESERVE_BACKOFF = 0.5

# Timeouts (seconds)
DEFAULT_REQUEST_TIMEOUT = 30.0
DEFAULT_STARTUP_TIMEOUT = 10.0
DEFAULT_SHUTDOWN_TIMEOUT = 5.0

# Interval used while polling uvicorn for its started flag
STARTUP_POLL_INTERVAL = 0.005

# Content types
CONTENT_TYPE_JSON = "application/json"
CONTENT_TYPE_FORM = "application/x-www-form-urlencoded"
CONTENT_TYPE_TEXT = "text/plain; charset=utf-8"
CONTENT_TYPE_BYTES = "application/octet-stream"

# ASGI
ASGI_SPEC_VERSION = "2.3"
ASGI_VERSION = "3.0"
LIFESPAN_MODES = frozenset({"auto", "on", "off"})
