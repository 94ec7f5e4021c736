"""Request building: the fluent RequestBuilder and the immutable TestRequest.

A builder accumulates request-local settings. ``build()`` merges them over a
snapshot of the session (local values always win) into a TestRequest, and
``send()`` (or simply awaiting the builder) dispatches it and runs any status
expectation attached to it.

Merge rules:
    - Headers: session headers whose name is not set locally, then local
      headers. Multi-valued, in insertion order.
    - Query params: session params, then local params. Duplicates are kept.
    - Cookies: session cookies matching the URL, with same-named local
      cookies shadowing them. The session is never modified.
    - Content type: ``content_type()`` or a local Content-Type header, then
      the body's default, then a session Content-Type header, then the
      server's ``default_content_type``.
    - Status expectation: ``expect_status()``, then ``expect_success()`` /
      ``expect_failure()``, then the server-wide default.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Generator, Iterable, Mapping

import httpx

from asgi_harness.constants import (
    CONTENT_TYPE_BYTES,
    CONTENT_TYPE_FORM,
    CONTENT_TYPE_JSON,
    CONTENT_TYPE_TEXT,
    DEFAULT_REQUEST_TIMEOUT,
)
from asgi_harness.encoding import encode_form, encode_json, encode_multipart
from asgi_harness.session import (
    ExpectedState,
    QueryParams,
    SessionSnapshot,
    SessionState,
    to_query_pairs,
)

if TYPE_CHECKING:
    from pydantic import BaseModel

    from asgi_harness.dispatch import Dispatcher
    from asgi_harness.response import TestResponse


class BodyKind(str, Enum):
    """Request body variants."""

    EMPTY = "empty"
    BYTES = "bytes"
    TEXT = "text"
    JSON = "json"
    FORM = "form"
    MULTIPART = "multipart"


@dataclass(frozen=True)
class RequestBody:
    """Encoded request body plus the content type it implies."""

    kind: BodyKind = BodyKind.EMPTY
    content: bytes = b""
    content_type: str | None = None

    @classmethod
    def empty(cls) -> "RequestBody":
        return cls()

    @classmethod
    def from_json(cls, value: Any) -> "RequestBody":
        return cls(BodyKind.JSON, encode_json(value), CONTENT_TYPE_JSON)

    @classmethod
    def from_form(
        cls, value: Mapping[str, Any] | Iterable[tuple[str, Any]] | "BaseModel"
    ) -> "RequestBody":
        return cls(BodyKind.FORM, encode_form(value), CONTENT_TYPE_FORM)

    @classmethod
    def from_text(cls, value: str) -> "RequestBody":
        return cls(BodyKind.TEXT, value.encode("utf-8"), CONTENT_TYPE_TEXT)

    @classmethod
    def from_bytes(cls, value: bytes) -> "RequestBody":
        return cls(BodyKind.BYTES, bytes(value), CONTENT_TYPE_BYTES)

    @classmethod
    def from_multipart(cls, value: "Multipart") -> "RequestBody":
        content, content_type = value.encode()
        return cls(BodyKind.MULTIPART, content, content_type)


class Multipart:
    """Multipart/form-data body under construction.

    Example:
        >>> form = Multipart().add_text("title", "report").add_file(
        ...     "upload", b"a,b\\n1,2\\n", filename="data.csv", content_type="text/csv"
        ... )
        >>> await server.post("/upload").multipart(form)
    """

    def __init__(self) -> None:
        self._fields: list[tuple[str, str]] = []
        self._files: list[tuple[str, tuple[str | None, bytes, str | None]]] = []

    def add_text(self, name: str, value: str) -> "Multipart":
        self._fields.append((name, value))
        return self

    def add_file(
        self,
        name: str,
        content: bytes,
        *,
        filename: str | None = None,
        content_type: str | None = None,
    ) -> "Multipart":
        self._files.append((name, (filename, bytes(content), content_type)))
        return self

    def encode(self) -> tuple[bytes, str]:
        """Return (body, content type with boundary)."""
        return encode_multipart(self._fields, self._files)

    def __len__(self) -> int:
        return len(self._fields) + len(self._files)


@dataclass(frozen=True)
class TestRequest:
    """A fully resolved request, immutable once built."""

    __test__ = False

    method: str
    url: httpx.URL
    headers: tuple[tuple[str, str], ...] = ()
    body: RequestBody = field(default_factory=RequestBody.empty)
    expected_status: int | None = None
    expected_state: ExpectedState = ExpectedState.NONE
    save_cookies: bool = False
    timeout: float = DEFAULT_REQUEST_TIMEOUT

    def header_values(self, name: str) -> list[str]:
        lowered = name.lower()
        return [value for key, value in self.headers if key.lower() == lowered]

    def to_httpx(self) -> httpx.Request:
        return httpx.Request(
            self.method,
            self.url,
            headers=list(self.headers),
            content=self.body.content or None,
            extensions={"timeout": httpx.Timeout(self.timeout).as_dict()},
        )


def resolve_url(base_url: httpx.URL, path: str, *, restrict_absolute: bool = False) -> httpx.URL:
    """Resolve ``path`` against the server's base URL.

    An absolute ``http(s)://`` path is used as-is, unless ``restrict_absolute``
    is set; then the whole string is treated as a path on this server.

    Example:
        >>> resolve_url(httpx.URL("http://localhost"), "todo?page=2")
        URL('http://localhost/todo?page=2')
    """
    if not restrict_absolute and path.startswith(("http://", "https://")):
        return httpx.URL(path)
    base = str(base_url).split("?", 1)[0].rstrip("/")
    return httpx.URL(f"{base}/{path.lstrip('/')}")


def _drop_header(headers: list[tuple[str, str]], name: str) -> list[tuple[str, str]]:
    lowered = name.lower()
    return [(key, value) for key, value in headers if key.lower() != lowered]


def _has_header(headers: Iterable[tuple[str, str]], name: str) -> bool:
    lowered = name.lower()
    return any(key.lower() == lowered for key, _ in headers)


class RequestBuilder:
    """Fluent builder for one request against a TestServer.

    Setters return the builder and only touch their own dimension: setting a
    header keeps the body, setting a second body replaces the first. Awaiting
    the builder sends the request.

    Example:
        >>> response = await (
        ...     server.post("/todo")
        ...     .add_header("x-request-id", "42")
        ...     .json({"title": "write tests"})
        ...     .expect_status(201)
        ... )
    """

    def __init__(
        self,
        method: str,
        path: str,
        *,
        session: SessionState,
        dispatcher: "Dispatcher",
        default_content_type: str | None = None,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
        restrict_absolute: bool = False,
    ) -> None:
        self._method = method.upper()
        self._path = path
        self._session = session
        self._dispatcher = dispatcher
        self._default_content_type = default_content_type
        self._request_timeout = request_timeout
        self._restrict_absolute = restrict_absolute

        self._headers: list[tuple[str, str]] = []
        self._query_params: list[tuple[str, str]] = []
        self._clear_session_query = False
        self._cookies: list[tuple[str, str]] = []
        self._clear_session_cookies = False
        self._body = RequestBody.empty()
        self._content_type: str | None = None
        self._save_cookies: bool | None = None
        self._expected_status: int | None = None
        self._expected_state: ExpectedState | None = None
        self._timeout: float | None = None

    def __repr__(self) -> str:
        return f"<RequestBuilder {self._method} {self._path}>"

    @property
    def method(self) -> str:
        return self._method

    @property
    def path(self) -> str:
        return self._path

    def copy(self) -> "RequestBuilder":
        """Return an independent builder with the same settings."""
        clone = RequestBuilder.__new__(RequestBuilder)
        clone.__dict__.update(self.__dict__)
        clone._headers = list(self._headers)
        clone._query_params = list(self._query_params)
        clone._cookies = list(self._cookies)
        return clone

    # Headers

    def add_header(self, name: str, value: str) -> "RequestBuilder":
        self._headers.append((name, value))
        return self

    def add_headers(
        self, headers: Mapping[str, str] | Iterable[tuple[str, str]]
    ) -> "RequestBuilder":
        items = headers.items() if isinstance(headers, Mapping) else headers
        self._headers.extend((name, value) for name, value in items)
        return self

    def clear_headers(self) -> "RequestBuilder":
        """Drop the headers added to this request so far."""
        self._headers.clear()
        return self

    def content_type(self, content_type: str) -> "RequestBuilder":
        """Set the Content-Type, overriding any body default."""
        self._content_type = content_type
        return self

    # Query params

    def add_query_param(self, name: str, value: Any) -> "RequestBuilder":
        self._query_params.extend(to_query_pairs([(name, value)]))
        return self

    def add_query_params(self, params: QueryParams) -> "RequestBuilder":
        self._query_params.extend(to_query_pairs(params))
        return self

    def clear_query_params(self) -> "RequestBuilder":
        """Drop all query params, including the session's, for this request."""
        self._query_params.clear()
        self._clear_session_query = True
        return self

    # Cookies

    def add_cookie(self, name: str, value: str) -> "RequestBuilder":
        """Send a cookie on this request only, shadowing a same-named session cookie."""
        self._cookies = [(n, v) for n, v in self._cookies if n != name]
        self._cookies.append((name, value))
        return self

    def add_cookies(self, cookies: Mapping[str, str]) -> "RequestBuilder":
        for name, value in cookies.items():
            self.add_cookie(name, value)
        return self

    def clear_cookies(self) -> "RequestBuilder":
        """Send no cookies on this request, not even the session's."""
        self._cookies.clear()
        self._clear_session_cookies = True
        return self

    def save_cookies(self) -> "RequestBuilder":
        """Merge Set-Cookie from this response into the session."""
        self._save_cookies = True
        return self

    def do_not_save_cookies(self) -> "RequestBuilder":
        self._save_cookies = False
        return self

    # Body

    def json(self, value: Any) -> "RequestBuilder":
        self._body = RequestBody.from_json(value)
        return self

    def form(
        self, value: Mapping[str, Any] | Iterable[tuple[str, Any]] | "BaseModel"
    ) -> "RequestBuilder":
        self._body = RequestBody.from_form(value)
        return self

    def text(self, value: str) -> "RequestBuilder":
        self._body = RequestBody.from_text(value)
        return self

    def bytes(self, value: bytes) -> "RequestBuilder":
        self._body = RequestBody.from_bytes(value)
        return self

    def multipart(self, value: Multipart) -> "RequestBuilder":
        self._body = RequestBody.from_multipart(value)
        return self

    # Expectations

    def expect_status(self, status_code: int) -> "RequestBuilder":
        self._expected_status = int(status_code)
        return self

    def expect_success(self) -> "RequestBuilder":
        self._expected_status = None
        self._expected_state = ExpectedState.SUCCESS
        return self

    def expect_failure(self) -> "RequestBuilder":
        self._expected_status = None
        self._expected_state = ExpectedState.FAILURE
        return self

    def timeout(self, seconds: float) -> "RequestBuilder":
        if seconds <= 0:
            raise ValueError(f"timeout must be positive, got {seconds}")
        self._timeout = float(seconds)
        return self

    # Build and send

    def build(self, snapshot: SessionSnapshot | None = None) -> TestRequest:
        """Merge session defaults with local settings into a TestRequest."""
        snapshot = snapshot or self._session.snapshot()

        url = resolve_url(snapshot.base_url, self._path, restrict_absolute=self._restrict_absolute)
        # Query already in the path comes first, then session, then local
        pairs: list[tuple[str, str]] = []
        if not self._clear_session_query:
            pairs.extend(snapshot.query_params)
        pairs.extend(self._query_params)
        if pairs:
            combined = list(url.params.multi_items()) + pairs
            url = url.copy_with(params=httpx.QueryParams(combined))

        return TestRequest(
            method=self._method,
            url=url,
            headers=tuple(self._merge_headers(snapshot, url)),
            body=self._body,
            expected_status=self._expected_status,
            expected_state=self._expected_state or snapshot.expected_state,
            save_cookies=(
                snapshot.save_cookies if self._save_cookies is None else self._save_cookies
            ),
            timeout=self._timeout or self._request_timeout,
        )

    def _merge_headers(self, snapshot: SessionSnapshot, url: httpx.URL) -> list[tuple[str, str]]:
        local_names = {name.lower() for name, _ in self._headers}
        headers = [(k, v) for k, v in snapshot.headers if k.lower() not in local_names]
        headers.extend(self._headers)

        if self._content_type is not None:
            headers = _drop_header(headers, "content-type")
            headers.append(("content-type", self._content_type))
        elif "content-type" not in local_names:
            if self._body.content_type is not None:
                headers = _drop_header(headers, "content-type")
                headers.append(("content-type", self._body.content_type))
            elif self._default_content_type and not _has_header(headers, "content-type"):
                headers.append(("content-type", self._default_content_type))

        cookies: list[tuple[str, str]] = []
        if not self._clear_session_cookies:
            local = {name for name, _ in self._cookies}
            cookies.extend((n, v) for n, v in snapshot.cookie_pairs(url) if n not in local)
        cookies.extend(self._cookies)
        if cookies:
            headers.append(("cookie", "; ".join(f"{n}={v}" for n, v in cookies)))
        return headers

    async def send(self) -> "TestResponse":
        """Dispatch the request and check its status expectation.

        Raises:
            HarnessConnectionError: If the server cannot be reached
            HarnessTimeoutError: If no response arrives within the timeout
            ExpectationError: If the status does not meet the expectation
        """
        request = self.build()
        response = await self._dispatcher.send(request)
        check_expectation(request, response)
        return response

    def __await__(self) -> Generator[Any, None, "TestResponse"]:
        return self.send().__await__()


def check_expectation(request: TestRequest, response: "TestResponse") -> None:
    """Run the status expectation attached to ``request`` against ``response``."""
    if request.expected_status is not None:
        response.assert_status(request.expected_status)
    elif request.expected_state == ExpectedState.SUCCESS:
        response.assert_status_success()
    elif request.expected_state == ExpectedState.FAILURE:
        response.assert_status_failure()


__all__ = [
    "BodyKind",
    "Multipart",
    "RequestBody",
    "RequestBuilder",
    "TestRequest",
    "check_expectation",
    "resolve_url",
]
