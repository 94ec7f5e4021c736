"""Body encoders and decoders.

JSON goes through the stdlib ``json`` module after a pydantic ``TypeAdapter``
has turned the value into plain JSON types, so models, dataclasses, datetimes
and UUIDs can be sent as request bodies and compared against response bodies.
"""

from __future__ import annotations

import json
from typing import Any, Iterable, Mapping
from urllib.parse import parse_qsl, urlencode

import httpx
from pydantic import BaseModel, TypeAdapter

_ANY = TypeAdapter(Any)


def to_jsonable(value: Any) -> Any:
    """Convert ``value`` into plain JSON types (dict, list, str, numbers, None)."""
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    return _ANY.dump_python(value, mode="json")


def encode_json(value: Any) -> bytes:
    return json.dumps(to_jsonable(value), ensure_ascii=False).encode("utf-8")


FormData = Mapping[str, Any] | Iterable[tuple[str, Any]] | BaseModel


def form_pairs(value: FormData) -> list[tuple[str, str]]:
    """Flatten a form body into ordered (name, value) pairs."""
    if isinstance(value, BaseModel):
        items: Iterable[tuple[str, Any]] = value.model_dump(mode="json", exclude_none=True).items()
    elif isinstance(value, Mapping):
        items = value.items()
    else:
        items = value
    pairs: list[tuple[str, str]] = []
    for name, item in items:
        values = item if isinstance(item, (list, tuple)) else [item]
        for v in values:
            if isinstance(v, bool):
                v = "true" if v else "false"
            pairs.append((str(name), "" if v is None else str(v)))
    return pairs


def encode_form(value: FormData) -> bytes:
    return urlencode(form_pairs(value)).encode("ascii")


def decode_form(content: bytes) -> list[tuple[str, str]]:
    return parse_qsl(content.decode("utf-8"), keep_blank_values=True, strict_parsing=False)


def encode_multipart(
    fields: Iterable[tuple[str, str]],
    files: Iterable[tuple[str, tuple[str | None, bytes, str | None]]],
) -> tuple[bytes, str]:
    """Encode a multipart/form-data body with httpx.

    Plain fields are sent as parts without a filename, so a body with no
    files is still multipart rather than URL-encoded.

    Returns:
        (body, content type including the boundary)
    """
    parts: list[tuple[str, tuple[str | None, bytes] | tuple[str | None, bytes, str | None]]] = [
        (name, (None, value.encode("utf-8"))) for name, value in fields
    ]
    for name, (filename, content, content_type) in files:
        if content_type is None:
            parts.append((name, (filename, content)))
        else:
            parts.append((name, (filename, content, content_type)))
    request = httpx.Request("POST", "http://multipart.invalid", files=parts)
    return request.read(), request.headers["content-type"]


__all__ = [
    "decode_form",
    "encode_form",
    "encode_json",
    "encode_multipart",
    "form_pairs",
    "to_jsonable",
]
