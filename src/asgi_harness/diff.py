"""Diff rendering for assertion failures."""

from __future__ import annotations

import difflib
import json
import pprint
from typing import Any

_MAX_DIFF_LINES = 200


def _to_lines(value: Any) -> list[str]:
    if isinstance(value, str):
        return value.splitlines() or [""]
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode("utf-8", errors="replace").splitlines() or [""]
    try:
        rendered = json.dumps(value, indent=2, sort_keys=True, ensure_ascii=False)
    except (TypeError, ValueError):
        rendered = pprint.pformat(value, width=88, sort_dicts=True)
    return rendered.splitlines()


def render_diff(expected: Any, received: Any) -> str:
    """Render a line diff between ``expected`` and ``received``.

    Structured values are pretty-printed as sorted JSON (``pprint`` for values
    JSON cannot express) before diffing, so key order never shows up as a
    difference. Lines starting with ``-`` are expected, ``+`` are received.

    Example:
        >>> print(render_diff({"id": 1}, {"id": 2}))
        --- expected
        +++ received
          {
        -   "id": 1
        +   "id": 2
          }
    """
    lines = ["--- expected", "+++ received"]
    for line in difflib.ndiff(_to_lines(expected), _to_lines(received)):
        if line.startswith("? "):
            continue
        lines.append(line)
        if len(lines) >= _MAX_DIFF_LINES:
            lines.append("... (diff truncated)")
            break
    return "\n".join(lines)


__all__ = ["render_diff"]
