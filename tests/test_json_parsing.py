"""Tests for tiered JSON extraction from model text."""

import pytest

from storygen.services.json_parser import (
    _clean_json_text,
    _extract_json_array,
    _extract_json_object,
    _strip_markdown_fences,
    parse_json_text,
    repair_json_with_llm,
)
from storygen.services.vertex_gemini import GeminiError


class TestStripMarkdownFences:
    def test_strips_json_fence(self):
        assert _strip_markdown_fences('```json\n{"key": "value"}\n```') == '{"key": "value"}'

    def test_strips_plain_fence(self):
        assert _strip_markdown_fences('```\n{"key": "value"}\n```') == '{"key": "value"}'

    def test_handles_no_fence(self):
        assert _strip_markdown_fences('{"key": "value"}') == '{"key": "value"}'

    def test_case_insensitive(self):
        assert _strip_markdown_fences('```JSON\n{"key": "value"}\n```') == '{"key": "value"}'


class TestCleanJsonText:
    def test_removes_trailing_commas(self):
        text = '{"scenes": [1, 2, 3,], "title": "test",}'
        assert _clean_json_text(text) == '{"scenes": [1, 2, 3], "title": "test"}'

    def test_removes_surrounding_prose(self):
        text = 'Here is the JSON output:\n{"key": "value"}\n\nI hope this helps!'
        assert _clean_json_text(text) == '{"key": "value"}'

    def test_combined_cleaning(self):
        assert _clean_json_text('```json\n{"items": [1, 2,],}\n```\nDone!') == '{"items": [1, 2]}'


class TestExtractBalanced:
    def test_extracts_object_from_prose(self):
        assert _extract_json_object('Result: {"key": "value"} and more') == '{"key": "value"}'

    def test_ignores_braces_in_strings(self):
        assert _extract_json_object('{"text": "Hello {world}"}') == '{"text": "Hello {world}"}'

    def test_handles_escaped_quotes(self):
        text = '{"text": "He said \\"hello\\""}'
        assert _extract_json_object(text) == text

    def test_returns_none_without_object(self):
        assert _extract_json_object("No JSON here") is None

    def test_extracts_array_of_objects(self):
        assert _extract_json_array('Scenes: [{"a": 1}, {"b": 2}] done') == '[{"a": 1}, {"b": 2}]'

    def test_unbalanced_array_returns_none(self):
        assert _extract_json_array("[1, 2") is None


class TestParseJsonText:
    @pytest.mark.parametrize("text", [None, ""])
    def test_empty_input(self, text):
        assert parse_json_text(text) is None

    def test_typical_model_output(self):
        text = """Based on the screenplay, here are the shots:

```json
{
  "scenes": [
    {"scene_id": "scene_1", "shots": []},
  ]
}
```

Let me know if you need changes."""
        assert parse_json_text(text) == {"scenes": [{"scene_id": "scene_1", "shots": []}]}

    def test_bare_array(self):
        assert parse_json_text('[{"id": "char_1"}]') == [{"id": "char_1"}]

    def test_garbage_returns_none(self):
        assert parse_json_text("the model refused to answer") is None


class RepairGemini:
    def __init__(self, replies):
        self.replies = list(replies)
        self.calls = 0

    def generate_text(self, prompt, model=None, use_fallback=True, json_mode=False):
        self.calls += 1
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply


class TestRepairJsonWithLlm:
    def test_repair_success(self):
        gemini = RepairGemini(['{"status": "APPROVED", "issues": []}'])
        result = repair_json_with_llm(gemini, "{status: APPROVED")
        assert result == {"status": "APPROVED", "issues": []}

    def test_repair_gives_up_after_attempts(self):
        gemini = RepairGemini(["nope", "still nope"])
        assert repair_json_with_llm(gemini, "{status: APPROVED", max_repair_attempts=2) is None
        assert gemini.calls == 2

    def test_backend_error_counts_as_failed_attempt(self):
        gemini = RepairGemini([GeminiError("boom"), '{"ok": true}'])
        assert repair_json_with_llm(gemini, "{ok: true", max_repair_attempts=2) == {"ok": True}
