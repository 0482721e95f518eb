"""Schema migrations for persisted project documents.

Each migration takes the raw JSON mapping of version N and returns the mapping
of version N + 1. `migrate_document` applies them in order until the current
version is reached. Migrations never validate; the importer does that on the
result.

Version 1 is the browser-era wizard state: camelCase wizard fields, a
`project` backbone holding entities under `database`, characters carrying their
description inside `visual_seed`, and the change-detection baseline stored as
`originalDatabase`.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from storygen.backbone.models import SCHEMA_VERSION
from storygen.core.exceptions import ImportFormatError

logger = logging.getLogger(__name__)

Migration = Callable[[dict[str, Any]], dict[str, Any]]


def detect_version(data: dict[str, Any]) -> int:
    version = data.get("schema_version")
    if version is not None:
        if not isinstance(version, int) or isinstance(version, bool):
            raise ImportFormatError(f"schema_version must be an integer, got {version!r}")
        return version
    if "idea" in data:
        return 1
    raise ImportFormatError("document carries neither schema_version nor a legacy wizard state")


def _str(value: Any) -> str:
    return value if isinstance(value, str) else ""


def _v1_character(raw: dict[str, Any]) -> dict[str, Any]:
    seed = raw.get("visual_seed") or {}
    character = {
        "id": raw.get("id", ""),
        "name": raw.get("name", ""),
        "role": _str(raw.get("role")),
        "description": _str(raw.get("description")) or _str(seed.get("description")),
        "visual_details": raw.get("visual_details") or {},
        "visual_prompt": _str(raw.get("visual_prompt")),
        "ref_image_url": raw.get("ref_image_url") or seed.get("ref_image_url") or None,
    }
    if isinstance(raw.get("voice_specs"), dict):
        character["voice_specs"] = raw["voice_specs"]
    return character


def _v1_location(raw: dict[str, Any]) -> dict[str, Any]:
    location = {k: v for k, v in raw.items() if k in {
        "id", "name", "description", "environment_prompt", "interior_exterior",
        "lighting_default", "audio_ambiance", "visual_prompt", "ref_image_url",
    }}
    location.setdefault("description", _str(raw.get("environment_prompt")))
    return location


def _v1_shot(raw: dict[str, Any], position: int) -> dict[str, Any]:
    content = dict(raw.get("content") or {})
    content.pop("seed", None)
    audio = dict(raw.get("audio") or {})
    audio_type = audio.pop("type", None)
    audio.pop("audio_file_url", None)
    duration = audio.pop("duration_exact_sec", None)
    if audio_type and "audio_context" not in audio:
        audio["audio_context"] = audio_type
    return {
        "id": raw.get("id", ""),
        "shot_index": position,
        "duration_sec": raw.get("duration_sec", duration or 0.0),
        "composition": raw.get("composition") or {},
        "content": content,
        "audio": audio,
        "video_generation": raw.get("video_generation") or {},
    }


def _v1_scene(raw: dict[str, Any], position: int) -> dict[str, Any]:
    return {
        "id": raw.get("id", ""),
        "scene_index": position,
        "slugline": _str(raw.get("slugline")),
        "slugline_elements": raw.get("slugline_elements") or {},
        "synopsis": _str(raw.get("synopsis")),
        "location_ref_id": raw.get("location_ref_id") or None,
        "narrative_goal": _str(raw.get("narrative_goal")),
        "estimated_duration_sec": raw.get("estimated_duration_sec", 0.0),
        "script_content": raw.get("script_content") or {"lines": []},
        "shots": [_v1_shot(s, i) for i, s in enumerate(raw.get("shots") or [], start=1)],
    }


def _v1_upstream(database: dict[str, Any]) -> dict[str, Any]:
    return {
        "characters": [_v1_character(c) for c in database.get("characters") or []],
        "locations": [_v1_location(loc) for loc in database.get("locations") or []],
        "items": list(database.get("items") or []),
    }


def migrate_v1_to_v2(data: dict[str, Any]) -> dict[str, Any]:
    script = data.get("script", [])
    if not isinstance(script, list):
        raise ImportFormatError("legacy document 'script' must be an array")

    project = data.get("project") or {}
    database = project.get("database") or {}
    meta_data = project.get("meta_data") or {}
    config = project.get("config") or {}
    global_assets = project.get("global_assets") or {}
    analysis = data.get("storyAnalysis") or {}

    scenes = database.get("scenes", [])
    backbone: dict[str, Any] = {
        "schema_version": 2,
        "meta": {
            "title": _str(meta_data.get("title")) or _str(analysis.get("title")),
            "logline": _str(analysis.get("logline")),
            "genre": _str(analysis.get("genre")),
            "tone": _str(config.get("tone_style")) or _str(data.get("tone")),
            "target_audience": _str(config.get("target_audience")) or _str(data.get("targetAudience")),
            "message": _str(meta_data.get("user_intent")),
        },
        "style_guide": {
            "visual_style": _str(global_assets.get("art_style_prompt")) or _str(data.get("stylePrompt")),
        },
        **_v1_upstream(database),
        "scenes": [_v1_scene(s, i) for i, s in enumerate(scenes, start=1)] if isinstance(scenes, list) else scenes,
        "final_render": project.get("final_render") or {},
    }
    if project.get("project_id"):
        backbone["project_id"] = project["project_id"]

    original = data.get("originalDatabase")
    return {
        "schema_version": 2,
        "wizard": {
            "step": data.get("step", 0),
            "premise": data.get("idea", ""),
            "total_duration_sec": data.get("totalDuration", 60),
            "pacing": data.get("pacing", "standard"),
            "language": data.get("language", "English"),
            "tone": _str(data.get("tone")),
            "target_audience": _str(data.get("targetAudience")),
            "aspect_ratio": data.get("aspectRatio", "16:9"),
        },
        "backbone": backbone,
        "baseline": _v1_upstream(original) if isinstance(original, dict) else None,
    }


MIGRATIONS: dict[int, Migration] = {
    1: migrate_v1_to_v2,
}


def migrate_document(data: dict[str, Any]) -> dict[str, Any]:
    """Bring a raw document up to the current schema version."""
    version = detect_version(data)
    if version > SCHEMA_VERSION:
        raise ImportFormatError(
            f"document schema_version {version} is newer than supported version {SCHEMA_VERSION}"
        )
    while version < SCHEMA_VERSION:
        migration = MIGRATIONS.get(version)
        if migration is None:
            raise ImportFormatError(f"no migration from schema_version {version}")
        logger.info("migrating project document", extra={"from_version": version, "to_version": version + 1})
        data = migration(data)
        version = detect_version(data)
    return data
