"""Session state shared by all requests issued against one TestServer.

The session holds the cookie jar, default headers, default query params and
the base URL. Builders read an immutable ``SessionSnapshot``; the dispatcher
is the only writer of the cookie jar after a response, and serializes its
merges with an ``asyncio.Lock`` so interleaved requests never lose updates.

Cookies are keyed by domain + path + name (``http.cookiejar`` semantics via
``httpx.Cookies``): two cookies with the same name but different paths are
distinct entries, and both are sent when both match the request path.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, Mapping

import httpx
from pydantic import BaseModel

from asgi_harness.constants import DEFAULT_BASE_URL
from asgi_harness.observability import get_logger

logger = get_logger(__name__)


class ExpectedState(str, Enum):
    """Status expectation attached to requests.

    NONE: No check
    SUCCESS: Status must be 2xx
    FAILURE: Status must be outside 2xx
    """

    NONE = "none"
    SUCCESS = "success"
    FAILURE = "failure"


QueryValue = Any
QueryParams = Mapping[str, Any] | Iterable[tuple[str, Any]] | BaseModel


def _stringify(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, Enum):
        return str(value.value)
    return str(value)


def to_query_pairs(params: QueryParams) -> list[tuple[str, str]]:
    """Flatten query params into ordered (name, value) pairs.

    Accepts a mapping (list/tuple values expand into repeated keys), a
    sequence of pairs, or a pydantic model (``None`` fields are omitted).

    Example:
        >>> to_query_pairs({"tag": ["a", "b"], "page": 2})
        [('tag', 'a'), ('tag', 'b'), ('page', '2')]
    """
    if isinstance(params, BaseModel):
        items: Iterable[tuple[str, Any]] = params.model_dump(mode="json", exclude_none=True).items()
    elif isinstance(params, Mapping):
        items = params.items()
    else:
        items = params

    pairs: list[tuple[str, str]] = []
    for name, value in items:
        if isinstance(value, (list, tuple)):
            pairs.extend((str(name), _stringify(v)) for v in value)
        elif value is not None:
            pairs.append((str(name), _stringify(value)))
    return pairs


def copy_cookies(cookies: httpx.Cookies) -> httpx.Cookies:
    """Return an independent jar holding the same cookies."""
    copied = httpx.Cookies()
    for cookie in cookies.jar:
        copied.jar.set_cookie(cookie)
    return copied


def cookie_pairs_for(cookies: httpx.Cookies, url: httpx.URL) -> list[tuple[str, str]]:
    """Cookies from ``cookies`` that apply to ``url``, as (name, value) pairs.

    Matching (domain, path, expiry, Secure) follows ``http.cookiejar``.
    """
    if not cookies.jar:
        return []
    carrier = httpx.Request("GET", url)
    cookies.set_cookie_header(carrier)
    header = carrier.headers.get("cookie")
    if not header:
        return []
    pairs = []
    for part in header.split(";"):
        name, sep, value = part.strip().partition("=")
        if sep:
            pairs.append((name, value))
    return pairs


def _at_root(response: httpx.Response) -> httpx.Response:
    """The response as if it answered a request for ``/`` on the same origin.

    ``http.cookiejar`` derives the default path of a cookie from the request
    path; only the origin matters for domain checks.
    """
    url = response.request.url
    if url.path == "/":
        return response
    return httpx.Response(
        response.status_code,
        headers=response.headers,
        request=httpx.Request(response.request.method, url.join("/")),
    )


@dataclass(frozen=True)
class SessionSnapshot:
    """Read-only copy of session state taken when a request is built."""

    base_url: httpx.URL
    cookies: httpx.Cookies
    headers: tuple[tuple[str, str], ...]
    query_params: tuple[tuple[str, str], ...]
    save_cookies: bool
    expected_state: ExpectedState

    def cookie_pairs(self, url: httpx.URL) -> list[tuple[str, str]]:
        return cookie_pairs_for(self.cookies, url)


class SessionState:
    """Mutable session state scoped to one TestServer.

    Setters are synchronous and meant to be called from the test body between
    requests. ``merge_cookies`` is the dispatcher's write path and takes the
    session lock.
    """

    def __init__(
        self,
        base_url: httpx.URL | str = DEFAULT_BASE_URL,
        *,
        save_cookies: bool = False,
        expected_state: ExpectedState = ExpectedState.NONE,
    ) -> None:
        self._base_url = httpx.URL(base_url)
        self._cookies = httpx.Cookies()
        self._headers: list[tuple[str, str]] = []
        self._query_params: list[tuple[str, str]] = []
        self._lock = asyncio.Lock()
        self.save_cookies = save_cookies
        self.expected_state = expected_state

    @property
    def base_url(self) -> httpx.URL:
        return self._base_url

    @base_url.setter
    def base_url(self, value: httpx.URL | str) -> None:
        self._base_url = httpx.URL(value)

    @property
    def cookies(self) -> httpx.Cookies:
        """Copy of the current jar."""
        return copy_cookies(self._cookies)

    @property
    def headers(self) -> list[tuple[str, str]]:
        return list(self._headers)

    @property
    def query_params(self) -> list[tuple[str, str]]:
        return list(self._query_params)

    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(
            base_url=self._base_url,
            cookies=copy_cookies(self._cookies),
            headers=tuple(self._headers),
            query_params=tuple(self._query_params),
            save_cookies=self.save_cookies,
            expected_state=self.expected_state,
        )

    # Cookies

    def add_cookie(
        self, name: str, value: str, *, domain: str = "", path: str = "/"
    ) -> None:
        """Add a cookie sent on all future requests, replacing a same-keyed one.

        Without a domain the cookie matches every host.
        """
        self._cookies.set(name, value, domain=domain, path=path)

    def add_cookies(self, cookies: Mapping[str, str] | httpx.Cookies) -> None:
        if isinstance(cookies, httpx.Cookies):
            for cookie in cookies.jar:
                self._cookies.jar.set_cookie(cookie)
            return
        for name, value in cookies.items():
            self.add_cookie(name, value)

    def clear_cookies(self) -> None:
        self._cookies.clear()

    async def merge_cookies(self, response: httpx.Response) -> None:
        """Apply the response's Set-Cookie directives to the jar.

        Same name, domain and path replaces; otherwise the cookie is added.
        ``Max-Age=0`` or an ``Expires`` in the past deletes it.

        A cookie without a Path attribute is stored under ``/``, so it is sent
        on every later request to the host whatever path set it. Explicit
        paths are kept and scope the cookie as usual.
        """
        if "set-cookie" not in response.headers:
            return
        async with self._lock:
            before = len(self._cookies.jar)
            self._cookies.extract_cookies(_at_root(response))
            logger.debug(
                "harness.session.cookies_merged",
                url=str(response.request.url),
                directives=len(response.headers.get_list("set-cookie")),
                jar_size_before=before,
                jar_size=len(self._cookies.jar),
            )

    # Headers

    def add_header(self, name: str, value: str) -> None:
        self._headers.append((name, value))

    def clear_headers(self) -> None:
        self._headers.clear()

    # Query params

    def add_query_param(self, name: str, value: QueryValue) -> None:
        self._query_params.extend(to_query_pairs([(name, value)]))

    def add_query_params(self, params: QueryParams) -> None:
        self._query_params.extend(to_query_pairs(params))

    def clear_query_params(self) -> None:
        self._query_params.clear()


__all__ = [
    "ExpectedState",
    "SessionSnapshot",
    "SessionState",
    "cookie_pairs_for",
    "copy_cookies",
    "to_query_pairs",
]
