"""Response wrapper with typed accessors and assertions.

Every assertion raises ExpectationError (an AssertionError) naming the request
method and URL; body assertions embed a rendered diff of expected versus
received. Decoding a body into a shape it does not have raises DecodeError
with the raw bytes attached, and never falls back to a default value.
"""

from __future__ import annotations

import json
from functools import cached_property
from http.cookies import CookieError, SimpleCookie
from typing import Any, TypeVar, overload

import httpx
from pydantic import TypeAdapter, ValidationError

from asgi_harness.diff import render_diff
from asgi_harness.encoding import decode_form, to_jsonable
from asgi_harness.errors import DecodeError, ExpectationError

T = TypeVar("T")

_BODY_PREVIEW_CHARS = 500


def _json_kind(value: Any) -> type:
    # bool is an int subclass in Python but a distinct JSON type
    if isinstance(value, bool):
        return bool
    if isinstance(value, int):
        return int
    if isinstance(value, float):
        return float
    if isinstance(value, str):
        return str
    return type(value)


def _json_equal(expected: Any, received: Any) -> bool:
    """Equality on decoded JSON that also requires matching JSON types.

    ``true`` never equals ``1`` and ``1`` never equals ``1.0``.
    """
    if isinstance(expected, dict):
        return (
            isinstance(received, dict)
            and expected.keys() == received.keys()
            and all(_json_equal(item, received[key]) for key, item in expected.items())
        )
    if isinstance(expected, list):
        return (
            isinstance(received, list)
            and len(expected) == len(received)
            and all(_json_equal(a, b) for a, b in zip(expected, received))
        )
    return _json_kind(expected) is _json_kind(received) and bool(expected == received)


def _is_subset(subset: Any, value: Any) -> bool:
    if isinstance(subset, dict):
        if not isinstance(value, dict):
            return False
        return all(key in value and _is_subset(item, value[key]) for key, item in subset.items())
    return _json_equal(subset, value)


class TestResponse:
    """Response to a dispatched TestRequest.

    Immutable: accessors never change the wrapped response. The untyped JSON
    value is decoded once and cached on ``json``; typed decodes through
    ``as_json(SomeType)`` re-parse the raw bytes on every call.

    Example:
        >>> response = await server.get("/todo/1")
        >>> response.assert_status_ok()
        >>> response.as_json(Todo).title
        'write tests'
    """

    __test__ = False

    def __init__(self, response: httpx.Response, *, method: str, url: httpx.URL) -> None:
        self._response = response
        self._method = method
        self._url = url

    def __repr__(self) -> str:
        return f"<TestResponse [{self.status_code}] {self._method} {self._url}>"

    # Request

    @property
    def request_method(self) -> str:
        return self._method

    @property
    def request_url(self) -> httpx.URL:
        return self._url

    @property
    def raw(self) -> httpx.Response:
        """The underlying httpx response."""
        return self._response

    # Status and headers

    @property
    def status_code(self) -> int:
        return self._response.status_code

    @property
    def is_success(self) -> bool:
        return 200 <= self.status_code < 300

    @property
    def headers(self) -> httpx.Headers:
        return self._response.headers

    def header(self, name: str) -> str | None:
        """First value of header ``name``, or None if absent."""
        values = self._response.headers.get_list(name)
        return values[0] if values else None

    def header_values(self, name: str) -> list[str]:
        """All values of header ``name`` in the order received."""
        return self._response.headers.get_list(name)

    # Cookies

    @cached_property
    def _set_cookies(self) -> dict[str, str]:
        cookies: dict[str, str] = {}
        for header in self._response.headers.get_list("set-cookie"):
            parsed: SimpleCookie = SimpleCookie()
            try:
                parsed.load(header)
            except CookieError:
                continue
            for name, morsel in parsed.items():
                cookies[name] = morsel.value
        return cookies

    @property
    def cookies(self) -> dict[str, str]:
        """Cookies set by this response (name to value; later directives win)."""
        return dict(self._set_cookies)

    def cookie(self, name: str) -> str | None:
        return self._set_cookies.get(name)

    # Body

    @property
    def content(self) -> bytes:
        return self._response.content

    @property
    def text(self) -> str:
        return self._response.text

    def as_bytes(self) -> bytes:
        return self._response.content

    def as_text(self) -> str:
        return self._response.text

    @cached_property
    def json(self) -> Any:
        """Body decoded as untyped JSON, cached after the first access.

        Raises:
            DecodeError: If the body is not valid JSON
        """
        content = self._response.content
        try:
            return json.loads(content)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise DecodeError("JSON", content, str(exc)) from exc

    @overload
    def as_json(self) -> Any: ...

    @overload
    def as_json(self, type_: type[T]) -> T: ...

    def as_json(self, type_: Any = None) -> Any:
        """Decode the body as JSON, optionally validated into ``type_``.

        ``type_`` may be anything pydantic can validate: a model, a dataclass,
        ``list[int]``, ``dict[str, Item]`` and so on. Validation is strict: a
        string is never coerced into a number, nor a number into a bool.

        Raises:
            DecodeError: If the body is not JSON or does not fit ``type_``
        """
        if type_ is None:
            return self.json
        content = self._response.content
        try:
            return TypeAdapter(type_).validate_json(content, strict=True)
        except ValidationError as exc:
            raise DecodeError(_type_name(type_), content, str(exc)) from exc

    def as_form(self, type_: Any = None) -> Any:
        """Decode a URL-encoded body.

        Without ``type_`` returns a dict (last value wins for repeated keys).
        With ``type_`` each value is parsed from its string form, strictly:
        ``"7"`` fits an int field, ``"7.5"`` does not.

        Raises:
            DecodeError: If the body is not URL-encoded text or does not fit ``type_``
        """
        content = self._response.content
        try:
            pairs = decode_form(content)
        except (UnicodeDecodeError, ValueError) as exc:
            raise DecodeError("form", content, str(exc)) from exc
        values = dict(pairs)
        if type_ is None:
            return values
        try:
            return TypeAdapter(type_).validate_strings(values, strict=True)
        except ValidationError as exc:
            raise DecodeError(_type_name(type_), content, str(exc)) from exc

    # Assertions

    def _fail(self, message: str, diff: str | None = None) -> ExpectationError:
        return ExpectationError(message, method=self._method, url=str(self._url), diff=diff)

    def _body_preview(self) -> str:
        text = self._response.content.decode("utf-8", errors="replace")
        if len(text) > _BODY_PREVIEW_CHARS:
            text = text[:_BODY_PREVIEW_CHARS] + "..."
        return f"Body: {text!r}"

    def assert_status(self, status_code: int) -> None:
        if self.status_code != status_code:
            raise self._fail(
                f"Expected status code {status_code}, received {self.status_code}",
                self._body_preview(),
            )

    def assert_status_ok(self) -> None:
        self.assert_status(httpx.codes.OK)

    def assert_status_not_found(self) -> None:
        self.assert_status(httpx.codes.NOT_FOUND)

    def assert_status_success(self) -> None:
        """Assert the status is in the 2xx range."""
        if not self.is_success:
            raise self._fail(
                f"Expected status code within 2xx range, received {self.status_code}",
                self._body_preview(),
            )

    def assert_status_failure(self) -> None:
        """Assert the status is outside the 2xx range."""
        if self.is_success:
            raise self._fail(
                f"Expected status code outside 2xx range, received {self.status_code}",
                self._body_preview(),
            )

    def assert_contains_header(self, name: str) -> None:
        if name not in self._response.headers:
            raise self._fail(f"Expected header '{name}' to be present in response")

    def assert_header(self, name: str, value: str) -> None:
        values = self.header_values(name)
        if not values:
            raise self._fail(f"Expected header '{name}' to be present in response")
        if value not in values:
            raise self._fail(
                f"Expected header '{name}' to have value {value!r}",
                render_diff(value, "\n".join(values)),
            )

    def assert_cookie(self, name: str, value: str) -> None:
        received = self.cookie(name)
        if received is None:
            raise self._fail(f"Expected cookie '{name}' to be set by response")
        if received != value:
            raise self._fail(
                f"Expected cookie '{name}' to be {value!r}", render_diff(value, received)
            )

    def assert_json(self, expected: Any) -> None:
        """Assert the JSON body equals ``expected`` (models are dumped first).

        JSON types must match too: ``true`` is not ``1`` and ``1`` is not ``1.0``.

        Raises:
            ExpectationError: On mismatch, with a diff
            DecodeError: If the body is not JSON
        """
        expected_value = to_jsonable(expected)
        received = self.json
        if not _json_equal(expected_value, received):
            raise self._fail("JSON body does not match", render_diff(expected_value, received))

    def assert_json_contains(self, subset: Any) -> None:
        """Assert every key in ``subset`` is present in the JSON body, recursively."""
        expected_value = to_jsonable(subset)
        received = self.json
        if not _is_subset(expected_value, received):
            raise self._fail(
                "JSON body does not contain the expected fields",
                render_diff(expected_value, received),
            )

    def assert_text(self, expected: str) -> None:
        received = self.text
        if received != expected:
            raise self._fail("Text body does not match", render_diff(expected, received))

    def assert_text_contains(self, substring: str) -> None:
        received = self.text
        if substring not in received:
            raise self._fail(
                f"Text body does not contain {substring!r}", render_diff(substring, received)
            )


def _type_name(type_: Any) -> str:
    return getattr(type_, "__name__", None) or repr(type_)


__all__ = ["TestResponse"]
