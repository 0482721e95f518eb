"""Merge functions, one per generating stage.

Every merge mutates a working copy of the backbone and only touches the fields
its stage owns. Ids the model left empty, duplicated or took from the retired
list are re-issued. Output that points at scenes or shots that do not exist
raises `SchemaValidationError` so the stage is retried.
"""

from __future__ import annotations

from storygen.backbone.integrity import check_backbone
from storygen.backbone.models import EntityKind, ProjectBackbone
from storygen.backbone.store import next_entity_id, reindex_scenes
from storygen.core.exceptions import SchemaValidationError
from storygen.pipeline.schemas import (
    ArtDirectionOutput,
    BibleOutput,
    CastOutput,
    CinematographyOutput,
    LocationsOutput,
    ScreenplayOutput,
    ShotBreakdownOutput,
    VisualPromptEntry,
)


def _issue_ids(entities: list, prefix: str, reserved: set[str]) -> None:
    used = set(reserved)
    for entity in entities:
        if not entity.id or entity.id in used:
            entity.id = next_entity_id(prefix, used)
        used.add(entity.id)


def _retired(backbone: ProjectBackbone) -> set[str]:
    return set(backbone.retired_ids)


def merge_bible(backbone: ProjectBackbone, output: BibleOutput) -> None:
    backbone.meta = output.meta.model_copy(deep=True)
    backbone.style_guide = output.style_guide.model_copy(deep=True)


def merge_cast(backbone: ProjectBackbone, output: CastOutput) -> None:
    characters = [c.model_copy(deep=True) for c in output.characters]
    items = [i.model_copy(deep=True) for i in output.items]
    _issue_ids(characters, EntityKind.CHARACTER.id_prefix, _retired(backbone))
    _issue_ids(items, EntityKind.ITEM.id_prefix, _retired(backbone))
    backbone.characters = characters
    backbone.items = items


def merge_locations(backbone: ProjectBackbone, output: LocationsOutput) -> None:
    locations = [loc.model_copy(deep=True) for loc in output.locations]
    _issue_ids(locations, EntityKind.LOCATION.id_prefix, _retired(backbone))
    backbone.locations = locations


def merge_screenplay(backbone: ProjectBackbone, output: ScreenplayOutput) -> None:
    # speakers written as names are mapped to character ids
    ids_by_name = {c.name.strip().lower(): c.id for c in backbone.characters}
    scenes = [s.model_copy(deep=True) for s in output.scenes]
    _issue_ids(scenes, "scene", set())
    for scene in scenes:
        scene.shots = []
        if not scene.location_ref_id:
            scene.location_ref_id = None
        _issue_ids(scene.script_content.lines, "line", set())
        for line in scene.script_content.lines:
            if line.speaker and line.speaker.strip().lower() in ids_by_name:
                line.speaker = ids_by_name[line.speaker.strip().lower()]
    backbone.scenes = reindex_scenes(scenes)
    backbone.final_render.total_duration_sec = sum(s.estimated_duration_sec for s in scenes)


def merge_shot_breakdown(backbone: ProjectBackbone, output: ShotBreakdownOutput) -> None:
    scenes_by_id = {s.id: s for s in backbone.scenes}
    unknown = [entry.scene_id for entry in output.scenes if entry.scene_id not in scenes_by_id]
    missing = [s.id for s in backbone.scenes if s.id not in {e.scene_id for e in output.scenes}]
    if unknown or missing:
        errors = [f"unknown scene id '{i}'" for i in unknown] + [f"no shots for scene '{i}'" for i in missing]
        raise SchemaValidationError("shot breakdown does not cover the screenplay", errors=errors)

    used: set[str] = set()
    for entry in output.scenes:
        shots = [shot.model_copy(deep=True) for shot in entry.shots]
        _issue_ids(shots, "shot", used)
        used.update(shot.id for shot in shots)
        scenes_by_id[entry.scene_id].shots = shots
    reindex_scenes(backbone.scenes)


def merge_cinematography(backbone: ProjectBackbone, output: CinematographyOutput) -> None:
    shots_by_id = {shot.id: shot for shot in backbone.all_shots()}
    unknown = [entry.shot_id for entry in output.shots if entry.shot_id not in shots_by_id]
    if unknown:
        raise SchemaValidationError(
            "cinematography references unknown shots",
            errors=[f"unknown shot id '{i}'" for i in unknown],
        )
    for entry in output.shots:
        shots_by_id[entry.shot_id].composition = entry.composition.model_copy(deep=True)


def _apply_visual_prompts(entities: list, entries: list[VisualPromptEntry], label: str) -> list[str]:
    by_id = {e.id: e for e in entities}
    errors = []
    for entry in entries:
        entity = by_id.get(entry.id)
        if entity is None:
            errors.append(f"unknown {label} id '{entry.id}'")
            continue
        entity.visual_prompt = entry.visual_prompt
    return errors


def merge_art_direction(backbone: ProjectBackbone, output: ArtDirectionOutput) -> None:
    errors = _apply_visual_prompts(backbone.characters, output.characters, "character")
    errors += _apply_visual_prompts(backbone.locations, output.locations, "location")
    errors += _apply_visual_prompts(backbone.items, output.items, "item")

    shots_by_id = {shot.id: shot for shot in backbone.all_shots()}
    for entry in output.shots:
        shot = shots_by_id.get(entry.shot_id)
        if shot is None:
            errors.append(f"unknown shot id '{entry.shot_id}'")
            continue
        shot.content.final_image_prompt = entry.final_image_prompt
        shot.content.video_motion_prompt = entry.video_motion_prompt
    if errors:
        raise SchemaValidationError("art direction references unknown ids", errors=errors)


def validate_integrity(backbone: ProjectBackbone) -> list[str]:
    """Semantic check run on the merged working copy of every generating stage."""
    return [str(issue) for issue in check_backbone(backbone)]
