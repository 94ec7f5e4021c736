"""Tests for request body encoders."""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from uuid import UUID

from pydantic import BaseModel

from asgi_harness.encoding import encode_form, encode_json, encode_multipart, to_jsonable


@dataclass
class Point:
    x: int
    y: int


class Todo(BaseModel):
    id: UUID
    due: datetime
    done: bool = False


TODO_ID = UUID("12345678-1234-5678-1234-567812345678")


class TestToJsonable:
    """Tests for conversion into plain JSON types."""

    def test_model(self) -> None:
        """Models are dumped in JSON mode."""
        todo = Todo(id=TODO_ID, due=datetime(2024, 1, 2, tzinfo=timezone.utc))

        assert to_jsonable(todo) == {
            "id": "12345678-1234-5678-1234-567812345678",
            "due": "2024-01-02T00:00:00Z",
            "done": False,
        }

    def test_nested_values(self) -> None:
        """Dataclasses, UUIDs and tuples inside plain containers are converted."""
        value = {"point": Point(1, 2), "ids": (TODO_ID,)}

        assert to_jsonable(value) == {
            "point": {"x": 1, "y": 2},
            "ids": ["12345678-1234-5678-1234-567812345678"],
        }

    def test_plain_json_is_unchanged(self) -> None:
        """Values that already are JSON keep their types."""
        value = {"a": [1, 1.5, True, None, "x"]}

        assert to_jsonable(value) == value


class TestEncoders:
    """Tests for body encoders."""

    def test_json_is_utf8(self) -> None:
        """Non-ASCII text is written as UTF-8, not escaped."""
        body = encode_json({"name": "héllo"})

        assert "héllo".encode() in body
        assert json.loads(body) == {"name": "héllo"}

    def test_form(self) -> None:
        """Lists repeat keys; booleans and None get form renderings."""
        body = encode_form({"tag": ["a", "b"], "flag": True, "empty": None})

        assert body == b"tag=a&tag=b&flag=true&empty="

    def test_multipart_without_files(self) -> None:
        """A body with only plain fields is still multipart."""
        body, content_type = encode_multipart([("title", "report")], [])

        assert content_type.startswith("multipart/form-data; boundary=")
        assert b'name="title"' in body
        assert b"report" in body
