"""
Prompt loader for the versioned prompt directory.

    v1/
    ├── shared/         # JSON system prompt, global constraints
    ├── pipeline/       # One prompt per generation stage role
    ├── regeneration/   # Change analysis
    ├── assets/         # Reference image descriptors
    └── utility/        # JSON repair

Usage:
    from storygen.prompts.loader import get_prompt, render_prompt

    template = get_prompt("prompt_screenwriter")
    rendered = render_prompt("prompt_screenwriter", bible="...", characters="...")
"""

from __future__ import annotations

import logging
import re
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml
from jinja2 import Environment, StrictUndefined

logger = logging.getLogger(__name__)

_PROMPTS_DIR = Path(__file__).resolve().parent
_VERSION = "v1"

_DOMAIN_DIRS = [
    "shared",
    "pipeline",
    "regeneration",
    "assets",
    "utility",
]

_SHARED_KEYS = ("system_prompt_json", "global_constraints")


def _read_yaml(path: Path) -> dict[str, Any]:
    with path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    return data if isinstance(data, dict) else {}


def _template_of(value: Any) -> str | None:
    if isinstance(value, str):
        return value
    if isinstance(value, dict) and isinstance(value.get("template"), str):
        return value["template"]
    return None


@lru_cache(maxsize=1)
def _load_prompts() -> dict[str, Any]:
    """Load every prompt of the current version, failing fast on broken templates."""
    prompts: dict[str, Any] = {}
    version_dir = _PROMPTS_DIR / _VERSION
    for domain in _DOMAIN_DIRS:
        domain_dir = version_dir / domain
        if not domain_dir.exists():
            continue
        for yaml_file in sorted(domain_dir.glob("*.yaml")):
            data = _read_yaml(yaml_file)
            for key, value in data.items():
                template = _template_of(value)
                if template is None:
                    continue
                try:
                    _jinja_env().parse(template)
                except Exception as e:  # TemplateSyntaxError or others
                    raise ValueError(f"Invalid Jinja2 template in {yaml_file}:{key}: {e}") from e
            prompts.update(data)
    return prompts


@lru_cache(maxsize=1)
def _jinja_env() -> Environment:
    return Environment(
        undefined=StrictUndefined,
        autoescape=False,
        trim_blocks=True,
        lstrip_blocks=True,
    )


def get_prompt(name: str) -> str:
    """Return the raw template for a prompt.

    Supports plain string entries and mapping entries with a `template` key
    (plus optional `required_variables`).

    Raises:
        KeyError: If prompt not found or not a template
    """
    template = _template_of(_load_prompts().get(name))
    if template is None:
        raise KeyError(f"Prompt '{name}' not found or not a string")
    return template


def has_prompt(name: str) -> bool:
    return _template_of(_load_prompts().get(name)) is not None


def render_prompt(name: str, validate: bool = False, **context: Any) -> str:
    """Render a prompt template with the given context.

    Shared prompts (system_prompt_json, global_constraints) are added to the
    context unless the caller provides them.

    Raises:
        ValueError: If validate=True and required variables are missing
    """
    prompts = _load_prompts()
    for shared_key in _SHARED_KEYS:
        if shared_key not in context and shared_key in prompts:
            context[shared_key] = prompts[shared_key]

    if validate:
        missing = check_required_variables(name, context)
        if missing:
            raise ValueError(f"Missing required variables for '{name}': {missing}")

    return _jinja_env().from_string(get_prompt(name)).render(**context).strip()


def list_prompts(domain: str | None = None) -> list[str]:
    if domain is None:
        return list(_load_prompts().keys())
    domain_dir = _PROMPTS_DIR / _VERSION / domain
    if not domain_dir.exists():
        return []
    names: list[str] = []
    for yaml_file in sorted(domain_dir.glob("*.yaml")):
        names.extend(_read_yaml(yaml_file).keys())
    return names


def extract_template_variables(template: str) -> set[str]:
    """Extract base variable names used in a Jinja2 template."""
    variables = set(re.findall(r"\{\{\s*([a-zA-Z_][a-zA-Z0-9_]*)", template))
    variables.update(re.findall(r"\{%\s*(?:if|elif)\s+([a-zA-Z_][a-zA-Z0-9_]*)", template))
    loop_vars: set[str] = set()
    for targets, iterable in re.findall(r"\{%\s*for\s+([\w\s,]+?)\s+in\s+([a-zA-Z_][a-zA-Z0-9_]*)", template):
        loop_vars.update(t.strip() for t in targets.split(",") if t.strip())
        variables.add(iterable)
    return variables - loop_vars - {"loop"}


def check_required_variables(name: str, context: dict[str, Any]) -> list[str]:
    """List the variables a prompt needs that are absent from `context`."""
    entry = _load_prompts().get(name)
    if isinstance(entry, dict) and entry.get("required_variables"):
        return [v for v in entry["required_variables"] if v not in context]

    variables = extract_template_variables(get_prompt(name)) - set(_SHARED_KEYS)
    return sorted(v for v in variables if v not in context)


def clear_cache() -> None:
    """Clear cached prompts (hot reload, tests)."""
    _load_prompts.cache_clear()
    _jinja_env.cache_clear()
