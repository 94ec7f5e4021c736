"""Tests for assertion diff rendering."""

from __future__ import annotations

from asgi_harness.diff import render_diff


class TestRenderDiff:
    """Tests for render_diff."""

    def test_header(self) -> None:
        """Every diff starts with the expected/received legend."""
        lines = render_diff("a", "b").splitlines()

        assert lines[:2] == ["--- expected", "+++ received"]
        assert "- a" in lines
        assert "+ b" in lines

    def test_key_order_is_not_a_difference(self) -> None:
        """Dicts are rendered with sorted keys."""
        diff = render_diff({"b": 1, "a": 2}, {"a": 2, "b": 1})

        assert not any(line.startswith(("- ", "+ ")) for line in diff.splitlines()[2:])

    def test_bytes_are_decoded(self) -> None:
        """Byte strings diff as text."""
        diff = render_diff(b"line one\nline two", b"line one\nline 2")

        assert "- line two" in diff
        assert "+ line 2" in diff

    def test_non_json_values_fall_back_to_pprint(self) -> None:
        """Values JSON cannot express still render."""
        diff = render_diff({1, 2}, {1, 3})

        assert diff.startswith("--- expected")

    def test_no_hint_lines(self) -> None:
        """ndiff's intraline hint lines are dropped."""
        diff = render_diff("abcdef", "abcxef")

        assert not any(line.startswith("? ") for line in diff.splitlines())

    def test_long_diffs_are_truncated(self) -> None:
        """Very long diffs are cut off with a marker."""
        expected = "\n".join(f"e{i}" for i in range(500))
        received = "\n".join(f"r{i}" for i in range(500))

        lines = render_diff(expected, received).splitlines()

        assert lines[-1] == "... (diff truncated)"
        assert len(lines) <= 201
