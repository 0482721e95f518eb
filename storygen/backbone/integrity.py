"""Deterministic referential integrity checks over a backbone.

Used three ways: as the semantic validator of generated stage output, as the
deterministic half of the continuity check, and by the clarification resolver
to find which scenes still use an entity.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass

from storygen.backbone.models import EntityKind, ProjectBackbone, Scene


@dataclass(frozen=True)
class IntegrityIssue:
    code: str
    message: str

    def __str__(self) -> str:
        return f"[{self.code}] {self.message}"


def _duplicates(ids: list[str]) -> list[str]:
    return sorted(i for i, count in Counter(ids).items() if count > 1)


def duplicate_id_issues(backbone: ProjectBackbone) -> list[IntegrityIssue]:
    issues: list[IntegrityIssue] = []
    for kind in EntityKind:
        ids = [e.id for e in backbone.collection(kind)]
        for dup in _duplicates(ids):
            issues.append(IntegrityIssue("duplicate_id", f"{kind.value} id '{dup}' is used more than once"))
        for missing in (i for i, e in enumerate(backbone.collection(kind)) if not e.id):
            issues.append(IntegrityIssue("missing_id", f"{kind.value} #{missing + 1} has no id"))
        for retired in sorted(set(ids) & set(backbone.retired_ids)):
            issues.append(IntegrityIssue("retired_id", f"{kind.value} id '{retired}' was retired and reused"))

    for dup in _duplicates([s.id for s in backbone.scenes]):
        issues.append(IntegrityIssue("duplicate_id", f"scene id '{dup}' is used more than once"))
    for dup in _duplicates([shot.id for shot in backbone.all_shots()]):
        issues.append(IntegrityIssue("duplicate_id", f"shot id '{dup}' is used more than once"))
    return issues


def index_issues(backbone: ProjectBackbone) -> list[IntegrityIssue]:
    issues: list[IntegrityIssue] = []
    actual = [s.scene_index for s in backbone.scenes]
    if actual != list(range(1, len(actual) + 1)):
        issues.append(IntegrityIssue("scene_index", f"scene indexes are {actual}, expected 1..{len(actual)}"))
    for scene in backbone.scenes:
        shot_indexes = [shot.shot_index for shot in scene.shots]
        if shot_indexes != list(range(1, len(shot_indexes) + 1)):
            issues.append(
                IntegrityIssue("shot_index", f"scene '{scene.id}' shot indexes are {shot_indexes}")
            )
    return issues


def dangling_reference_issues(backbone: ProjectBackbone) -> list[IntegrityIssue]:
    """References from scenes and shots to entities that do not exist."""
    character_ids = {c.id for c in backbone.characters}
    location_ids = {loc.id for loc in backbone.locations}
    item_ids = {i.id for i in backbone.items}

    issues: list[IntegrityIssue] = []
    for scene in backbone.scenes:
        if scene.location_ref_id and scene.location_ref_id not in location_ids:
            issues.append(
                IntegrityIssue(
                    "dangling_location",
                    f"scene '{scene.id}' references unknown location '{scene.location_ref_id}'",
                )
            )
        for line in scene.script_content.lines:
            if line.type == "dialogue" and line.speaker and line.speaker not in character_ids:
                issues.append(
                    IntegrityIssue(
                        "dangling_speaker",
                        f"scene '{scene.id}' line '{line.id}' is spoken by unknown character '{line.speaker}'",
                    )
                )
        for shot in scene.shots:
            for char_id in shot.content.characters_in_shot:
                if char_id and char_id not in character_ids:
                    issues.append(
                        IntegrityIssue(
                            "dangling_character",
                            f"shot '{shot.id}' in scene '{scene.id}' shows unknown character '{char_id}'",
                        )
                    )
            for item_id in shot.content.items_in_shot:
                if item_id and item_id not in item_ids:
                    issues.append(
                        IntegrityIssue(
                            "dangling_item",
                            f"shot '{shot.id}' in scene '{scene.id}' shows unknown item '{item_id}'",
                        )
                    )
            speaker = shot.audio.speaker_ref_id
            if speaker and speaker not in character_ids:
                issues.append(
                    IntegrityIssue(
                        "dangling_speaker",
                        f"shot '{shot.id}' in scene '{scene.id}' is voiced by unknown character '{speaker}'",
                    )
                )
    return issues


def check_backbone(backbone: ProjectBackbone) -> list[IntegrityIssue]:
    """Every deterministic integrity issue in the backbone."""
    return duplicate_id_issues(backbone) + index_issues(backbone) + dangling_reference_issues(backbone)


def scene_references(backbone: ProjectBackbone) -> dict[str, dict[str, list[str]]]:
    """Map collection -> entity id -> ids of the scenes that use it."""
    refs: dict[str, dict[str, list[str]]] = {kind.collection: {} for kind in EntityKind}

    def _add(collection: str, entity_id: str | None, scene: Scene) -> None:
        if not entity_id:
            return
        scene_ids = refs[collection].setdefault(entity_id, [])
        if scene.id not in scene_ids:
            scene_ids.append(scene.id)

    for scene in backbone.scenes:
        _add("locations", scene.location_ref_id, scene)
        for line in scene.script_content.lines:
            if line.type == "dialogue":
                _add("characters", line.speaker, scene)
        for shot in scene.shots:
            for char_id in shot.content.characters_in_shot:
                _add("characters", char_id, scene)
            for item_id in shot.content.items_in_shot:
                _add("items", item_id, scene)
            _add("characters", shot.audio.speaker_ref_id, scene)
    return refs
