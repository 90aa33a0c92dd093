"""
Unit tests for the resilient structured-response parser.
"""
from typing import List

import msgspec
import pytest

from core.parsing import (
    ParseError,
    escape_control_chars_in_strings,
    largest_object_span,
    parse_as,
    parse_structured,
    strip_fences,
)


class Pair(msgspec.Struct, kw_only=True):
    a: int
    b: str


class TestParseStructured:

    def test_fenced_json_with_raw_newline_in_string(self):
        raw = '```json\n{"a":1,\n"b":"x\ny"}\n```'
        assert parse_structured(raw) == {"a": 1, "b": "x\ny"}

    def test_not_json_at_all(self):
        with pytest.raises(ParseError) as exc_info:
            parse_structured("not json at all")
        assert exc_info.value.raw == "not json at all"

    def test_plain_json(self):
        assert parse_structured('{"type": "single"}') == {"type": "single"}

    def test_prose_around_object(self):
        raw = 'Sure! Here is the plan:\n{"type": "parallel", "tasks": ["a", "b"]}\nHope it helps.'
        assert parse_structured(raw) == {"type": "parallel", "tasks": ["a", "b"]}

    def test_largest_object_wins(self):
        raw = 'prefix {"x": 1} middle {"nexusTitle": "T", "nodes": [{"content": "c"}]} end'
        assert parse_structured(raw)["nexusTitle"] == "T"

    def test_raw_tab_inside_string(self):
        assert parse_structured('{"a": "col1\tcol2"}') == {"a": "col1\tcol2"}

    def test_top_level_array_is_rejected(self):
        with pytest.raises(ParseError):
            parse_structured("[1, 2, 3]")

    def test_none_is_rejected(self):
        with pytest.raises(ParseError):
            parse_structured(None)


class TestSteps:

    def test_strip_fences_without_language(self):
        assert strip_fences("```\n{}\n```") == "{}"

    def test_strip_fences_leaves_plain_text(self):
        assert strip_fences("  {}  ") == "{}"

    def test_escape_only_inside_strings(self):
        text = '{\n"a": "line1\nline2"\n}'
        escaped = escape_control_chars_in_strings(text)
        assert escaped == '{\n"a": "line1\\nline2"\n}'

    def test_span_ignores_braces_in_strings(self):
        text = 'noise {"a": "}"} tail'
        assert largest_object_span(text) == '{"a": "}"}'

    def test_span_none_without_object(self):
        assert largest_object_span("no braces here") is None


class TestParseAs:

    def test_converts_into_struct(self):
        pair = parse_as('```json\n{"a": 1, "b": "x"}\n```', Pair)
        assert pair == Pair(a=1, b="x")

    def test_schema_mismatch_is_parse_error(self):
        with pytest.raises(ParseError) as exc_info:
            parse_as('{"a": "one", "b": "x"}', Pair)
        assert "Pair" in exc_info.value.reason

    def test_constrained_list(self):
        from agents.schemas import DoctrineMap

        raw = '{"ruleStatement": "r", "elements": [], "cases": [{"caseName": "A v B"}]}'
        with pytest.raises(ParseError):
            parse_as(raw, DoctrineMap)
