"""Prompt context builders, one per stage.

Each builder reads only what its stage depends on from the current backbone
and returns plain JSON-ready values; the generation client serializes them
into the prompt.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from storygen.backbone.models import PipelineOptions, ProjectBackbone


@dataclass
class StageInput:
    backbone: ProjectBackbone
    premise: str = ""
    options: PipelineOptions = field(default_factory=PipelineOptions)
    clarifications: list[dict[str, str]] = field(default_factory=list)


def _options(stage_input: StageInput) -> dict[str, Any]:
    return stage_input.options.model_dump(mode="json")


def _bible(backbone: ProjectBackbone) -> dict[str, Any]:
    return {
        "meta": backbone.meta.model_dump(mode="json"),
        "style_guide": backbone.style_guide.model_dump(mode="json"),
    }


def _characters(backbone: ProjectBackbone) -> list[dict[str, Any]]:
    return [
        c.model_dump(mode="json", include={"id", "name", "role", "description", "visual_details"})
        for c in backbone.characters
    ]


def _locations(backbone: ProjectBackbone) -> list[dict[str, Any]]:
    return [
        loc.model_dump(
            mode="json",
            include={"id", "name", "description", "interior_exterior", "lighting_default", "audio_ambiance"},
        )
        for loc in backbone.locations
    ]


def _items(backbone: ProjectBackbone) -> list[dict[str, Any]]:
    return [i.model_dump(mode="json", include={"id", "name", "description", "type"}) for i in backbone.items]


def _shots(backbone: ProjectBackbone, with_composition: bool = False) -> list[dict[str, Any]]:
    shots = []
    for scene in backbone.scenes:
        for shot in scene.shots:
            entry = {
                "shot_id": shot.id,
                "scene_id": scene.id,
                "slugline": scene.slugline,
                "duration_sec": shot.duration_sec,
                "ui_description": shot.content.ui_description,
                "characters_in_shot": list(shot.content.characters_in_shot),
                "items_in_shot": list(shot.content.items_in_shot),
            }
            if with_composition:
                entry["composition"] = shot.composition.model_dump(mode="json")
            shots.append(entry)
    return shots


def build_bible_context(stage_input: StageInput) -> dict[str, Any]:
    return {"premise": stage_input.premise, "options": _options(stage_input)}


def build_cast_context(stage_input: StageInput) -> dict[str, Any]:
    return {
        "premise": stage_input.premise,
        "bible": _bible(stage_input.backbone),
        "options": _options(stage_input),
    }


def build_locations_context(stage_input: StageInput) -> dict[str, Any]:
    backbone = stage_input.backbone
    return {
        "premise": stage_input.premise,
        "bible": _bible(backbone),
        "characters": _characters(backbone),
        "options": _options(stage_input),
    }


def build_screenplay_context(stage_input: StageInput) -> dict[str, Any]:
    backbone = stage_input.backbone
    return {
        "bible": _bible(backbone),
        "characters": _characters(backbone),
        "locations": _locations(backbone),
        "items": _items(backbone),
        "options": _options(stage_input),
        "clarifications": stage_input.clarifications or "",
    }


def build_shot_breakdown_context(stage_input: StageInput) -> dict[str, Any]:
    backbone = stage_input.backbone
    scenes = [
        s.model_dump(
            mode="json",
            include={
                "id", "scene_index", "slugline", "synopsis", "location_ref_id",
                "narrative_goal", "estimated_duration_sec", "script_content",
            },
        )
        for s in backbone.scenes
    ]
    return {
        "bible": _bible(backbone),
        "characters": _characters(backbone),
        "items": _items(backbone),
        "scenes": scenes,
        "options": _options(stage_input),
    }


def build_cinematography_context(stage_input: StageInput) -> dict[str, Any]:
    backbone = stage_input.backbone
    return {
        "style_guide": backbone.style_guide.model_dump(mode="json"),
        "shots": _shots(backbone),
    }


def build_art_direction_context(stage_input: StageInput) -> dict[str, Any]:
    backbone = stage_input.backbone
    return {
        "style_guide": backbone.style_guide.model_dump(mode="json"),
        "characters": _characters(backbone),
        "locations": _locations(backbone),
        "items": _items(backbone),
        "shots": _shots(backbone, with_composition=True),
    }


def build_continuity_context(stage_input: StageInput) -> dict[str, Any]:
    return {"backbone": stage_input.backbone.model_dump(mode="json", exclude={"retired_ids"})}
