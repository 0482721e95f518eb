"""Generation client boundary.

The pipeline only knows `GenerationClient.generate(role, context)`. The Gemini
adapter renders the role's prompt template, calls the model in JSON mode and
turns the reply into a dict or list, repairing it through the model when the
tiered parser cannot.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Protocol

from storygen.core.exceptions import (
    ConfigurationError,
    GenerationBackendError,
    SchemaValidationError,
)
from storygen.prompts.loader import has_prompt, render_prompt
from storygen.services.json_parser import parse_json_text, repair_json_with_llm
from storygen.services.vertex_gemini import GeminiClient, GeminiError

logger = logging.getLogger(__name__)


@dataclass
class TokenUsage:
    prompt_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    calls: int = 0

    @classmethod
    def from_metadata(cls, metadata: dict[str, Any] | None) -> "TokenUsage":
        """Build from a google-genai `usage_metadata` dump; missing counts are zero."""
        metadata = metadata or {}
        prompt = metadata.get("prompt_token_count") or 0
        output = metadata.get("candidates_token_count") or 0
        return cls(
            prompt_tokens=prompt,
            output_tokens=output,
            total_tokens=metadata.get("total_token_count") or prompt + output,
            calls=1,
        )

    def add(self, other: "TokenUsage | None") -> None:
        if other is None:
            return
        self.prompt_tokens += other.prompt_tokens
        self.output_tokens += other.output_tokens
        self.total_tokens += other.total_tokens
        self.calls += other.calls


class GenerationClient(Protocol):
    """`last_usage`, when a client exposes it, describes its most recent `generate` call."""

    def generate(self, role: str, context: dict[str, Any]) -> dict | list:
        ...


def prompt_name_for_role(role: str) -> str:
    return f"prompt_{role}"


def _context_value(value: Any) -> Any:
    if value is None or isinstance(value, str):
        return value or ""
    return json.dumps(value, ensure_ascii=False, indent=2, default=str)


def render_role_prompt(role: str, context: dict[str, Any]) -> str:
    prompt_name = prompt_name_for_role(role)
    if not has_prompt(prompt_name):
        raise ConfigurationError(f"no prompt template for role '{role}' ({prompt_name})")
    try:
        return render_prompt(
            prompt_name,
            validate=True,
            **{key: _context_value(value) for key, value in context.items()},
        )
    except ValueError as exc:
        raise ConfigurationError(f"context for role '{role}' is incomplete: {exc}") from exc


class GeminiGenerationClient:
    def __init__(self, gemini: GeminiClient, repair_attempts: int = 1):
        self.gemini = gemini
        self.repair_attempts = repair_attempts
        self.last_usage: TokenUsage | None = None

    def generate(self, role: str, context: dict[str, Any]) -> dict | list:
        prompt = render_role_prompt(role, context)
        self.last_usage = None
        try:
            raw = self.gemini.generate_text(prompt=prompt, json_mode=True)
        except GeminiError as exc:
            logger.warning("generation backend failed", extra={"role": role, "error": str(exc)})
            raise GenerationBackendError(
                f"generation backend failed for role '{role}': {exc}",
                stage=role,
                detail="generation service is unavailable, please retry",
            ) from exc
        usage = TokenUsage.from_metadata(getattr(self.gemini, "last_usage", None))

        result = parse_json_text(raw)
        if result is None and raw and self.repair_attempts > 0:
            result = repair_json_with_llm(self.gemini, raw, max_repair_attempts=self.repair_attempts)
            usage.add(TokenUsage.from_metadata(getattr(self.gemini, "last_usage", None)))
        self.last_usage = usage
        if result is None:
            raise SchemaValidationError(
                f"role '{role}' returned output that is not JSON",
                stage=role,
                raw_response=raw,
                errors=["response is not valid JSON"],
            )
        return result
