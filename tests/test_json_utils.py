"""Tests for layered JSON extraction and code-block recovery."""

import json

import pytest

from devloop.core.errors import ExtractionError
from devloop.core.llm import Raw, Structured
from devloop.utils.json_utils import (
    RAW_TEXT_LIMIT,
    extension_for,
    extract_code_blocks,
    extract_json,
    is_extraction_failure,
    parse_structured,
)


class TestExtractJson:
    def test_direct_parse(self):
        assert extract_json('{"a": 1, "b": [1, 2]}') == {"a": 1, "b": [1, 2]}

    def test_valid_json_is_returned_unchanged(self):
        value = {"steps": [{"id": "step-1", "dependencies": []}], "title": "x", "nested": {"k": None}}
        text = json.dumps(value)
        assert extract_json(text) == value
        assert extract_json(json.dumps(extract_json(text))) == value

    def test_prose_around_object(self):
        text = 'Sure! Here is the plan:\n{"title": "t", "steps": []}\nLet me know.'
        assert extract_json(text) == {"title": "t", "steps": []}

    def test_json_fence(self):
        text = '{broken\n```json\n{"ok": true}\n```\n}'
        assert extract_json(text) == {"ok": True}

    def test_brace_scan_finds_first_complete_object(self):
        text = 'first {"a": 1} then {"b": 2}'
        assert extract_json(text) == {"a": 1}

    def test_no_json_raises(self):
        with pytest.raises(ExtractionError):
            extract_json("There is nothing structured in here.")

    def test_empty_raises(self):
        with pytest.raises(ExtractionError):
            extract_json("   ")


class TestParseStructured:
    def test_structured_value_passes_through(self):
        value = {"files": []}
        assert parse_structured(Structured(value)) is value

    def test_raw_text_is_extracted(self):
        assert parse_structured(Raw('{"x": 2}')) == {"x": 2}

    def test_failure_returns_flagged_record(self):
        text = "no json " * 200
        out = parse_structured(Raw(text))
        assert is_extraction_failure(out)
        assert out["text"] == text[:RAW_TEXT_LIMIT]

    def test_failure_returns_default_when_given(self):
        assert parse_structured(Raw("prose"), default={"fallback": True}) == {"fallback": True}


class TestCodeBlocks:
    def test_language_and_code(self):
        text = "Here you go:\n```python\nprint('hi')\n```\nDone."
        blocks = extract_code_blocks(text)
        assert len(blocks) == 1
        assert blocks[0].language == "python"
        assert blocks[0].code == "print('hi')\n"
        assert blocks[0].path is None

    def test_path_hint_on_preceding_line(self):
        text = "File: src/calc.py\n```python\ndef add(a, b):\n    return a + b\n```"
        blocks = extract_code_blocks(text)
        assert blocks[0].path == "src/calc.py"

    def test_multiple_blocks(self):
        text = "```js\nconsole.log(1)\n```\nand\n```css\nbody {}\n```"
        assert [b.language for b in extract_code_blocks(text)] == ["js", "css"]

    def test_no_blocks(self):
        assert extract_code_blocks("just prose") == []

    def test_extension_for(self):
        assert extension_for("python") == ".py"
        assert extension_for("unknown-lang") == ".txt"
