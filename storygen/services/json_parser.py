"""Tiered JSON extraction for raw model text.

Models wrap JSON in markdown fences, prepend prose or leave trailing commas.
`parse_json_text` tries progressively looser extractions before giving up;
`repair_json_with_llm` asks the model itself to fix what is left.
"""

import json
import logging
import re

from storygen.core.metrics import increment_json_parse_failure
from storygen.prompts.loader import render_prompt
from storygen.services.vertex_gemini import GeminiClient, GeminiError

logger = logging.getLogger(__name__)


def _strip_markdown_fences(text: str) -> str:
    """Remove markdown code fences from LLM output."""
    patterns = [
        r"```json\s*\n?(.*?)\n?```",
        r"```\s*\n?(.*?)\n?```",
    ]
    for pattern in patterns:
        match = re.search(pattern, text, re.DOTALL | re.IGNORECASE)
        if match:
            return match.group(1).strip()
    return text


def _clean_json_text(text: str) -> str:
    """Clean common LLM JSON output issues."""
    cleaned = _strip_markdown_fences(text.strip())
    lines = cleaned.split("\n")

    start_idx = 0
    for i, line in enumerate(lines):
        if line.strip().startswith(("{", "[")):
            start_idx = i
            break

    end_idx = len(lines) - 1
    for i in range(len(lines) - 1, -1, -1):
        if lines[i].strip().endswith(("}", "]")):
            end_idx = i
            break

    cleaned = "\n".join(lines[start_idx : end_idx + 1])
    cleaned = re.sub(r",\s*([}\]])", r"\1", cleaned)
    return cleaned.strip()


def _extract_balanced(text: str, opener: str, closer: str) -> str | None:
    """Extract the outermost balanced `opener ... closer` span, ignoring string contents."""
    start = text.find(opener)
    if start == -1:
        return None

    depth = 0
    in_string = False
    escape_next = False
    for i, char in enumerate(text[start:], start):
        if escape_next:
            escape_next = False
            continue
        if char == "\\":
            escape_next = True
            continue
        if char == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if char == opener:
            depth += 1
        elif char == closer:
            depth -= 1
            if depth == 0:
                return text[start : i + 1]
    return None


def _extract_json_object(text: str) -> str | None:
    return _extract_balanced(text, "{", "}")


def _extract_json_array(text: str) -> str | None:
    return _extract_balanced(text, "[", "]")


def parse_json_text(text: str | None) -> dict | list | None:
    """Parse model text into JSON using progressively looser tiers; None when all fail."""
    if not text:
        return None

    candidates = [
        ("direct", lambda: text),
        ("cleaned", lambda: _clean_json_text(text)),
        ("object", lambda: _extract_json_object(text)),
        ("array", lambda: _extract_json_array(text)),
    ]
    for tier, extract in candidates:
        candidate = extract()
        if not candidate:
            continue
        try:
            return json.loads(candidate)
        except json.JSONDecodeError:
            increment_json_parse_failure(tier)
    return None


def repair_json_with_llm(
    gemini: GeminiClient,
    malformed_text: str,
    expected_schema: str | None = None,
    max_repair_attempts: int = 2,
) -> dict | list | None:
    """Ask the model to rewrite malformed output as valid JSON."""
    schema_hint = f"\n\nExpected schema:\n{expected_schema}" if expected_schema else ""

    for attempt in range(max_repair_attempts):
        repair_prompt = render_prompt(
            "prompt_repair_json",
            schema_hint=schema_hint,
            malformed_text=malformed_text[:4000],
        )
        try:
            repaired = gemini.generate_text(prompt=repair_prompt, json_mode=True)
        except GeminiError as exc:
            logger.warning(
                "JSON repair attempt %d/%d raised exception: %s",
                attempt + 1,
                max_repair_attempts,
                exc,
            )
            continue

        result = parse_json_text(repaired)
        if result is not None:
            return result
        increment_json_parse_failure("repair")
        logger.warning(
            "JSON repair attempt %d/%d failed to produce valid JSON",
            attempt + 1,
            max_repair_attempts,
        )
    return None
