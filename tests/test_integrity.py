"""Tests for backbone models, referential integrity checks and the duration review."""

import pytest
from pydantic import ValidationError

from fakes import sample_backbone
from storygen.backbone.integrity import check_backbone, scene_references
from storygen.backbone.models import Character, EntityKind, ProjectBackbone, Scene, ScriptLine
from storygen.backbone.review import estimate_scene_duration, review_scene, review_scenes


class TestModels:
    def test_entity_kind_collections(self):
        assert EntityKind.from_collection("locations") is EntityKind.LOCATION
        assert EntityKind.ITEM.id_prefix == "item"
        with pytest.raises(ValueError):
            EntityKind.from_collection("props")

    def test_character_requires_name(self):
        with pytest.raises(ValidationError):
            Character(id="char_1", name="")

    def test_unknown_fields_are_ignored(self):
        character = Character.model_validate({"id": "char_1", "name": "Mina", "mood": "tired"})
        assert not hasattr(character, "mood")

    def test_upstream_is_a_deep_copy(self):
        backbone = sample_backbone()
        snapshot = backbone.upstream()
        snapshot.characters[0].name = "Changed"
        assert backbone.characters[0].name == "Mina"

    def test_new_backbones_get_distinct_project_ids(self):
        assert ProjectBackbone().project_id != ProjectBackbone().project_id


class TestCheckBackbone:
    def test_sample_is_clean(self):
        assert check_backbone(sample_backbone()) == []

    def test_reports_dangling_references(self):
        backbone = sample_backbone()
        backbone.locations = [loc for loc in backbone.locations if loc.id != "loc_2"]
        backbone.characters = [c for c in backbone.characters if c.id != "char_2"]

        codes = sorted(issue.code for issue in check_backbone(backbone))

        # scene_2 location, dialogue line, shot character and shot voice
        assert codes == ["dangling_character", "dangling_location", "dangling_speaker", "dangling_speaker"]

    def test_reports_reused_retired_ids(self):
        backbone = sample_backbone()
        backbone.retired_ids = ["item_1"]
        assert [issue.code for issue in check_backbone(backbone)] == ["retired_id"]

    def test_reports_duplicate_shot_ids(self):
        backbone = sample_backbone()
        backbone.scenes[1].shots[0].id = "shot_1"
        assert any("shot id 'shot_1'" in str(issue) for issue in check_backbone(backbone))

    def test_issue_string_carries_code(self):
        backbone = sample_backbone()
        backbone.scenes[0].scene_index = 3
        assert str(check_backbone(backbone)[0]).startswith("[scene_index]")


def test_scene_references():
    refs = scene_references(sample_backbone())
    assert refs["locations"] == {"loc_1": ["scene_1"], "loc_2": ["scene_2"]}
    assert refs["characters"] == {"char_1": ["scene_1"], "char_2": ["scene_2"]}
    assert refs["items"] == {"item_1": ["scene_1"]}


class TestSceneReview:
    def _scene(self, words: int, actions: int, target: float) -> Scene:
        lines = [ScriptLine(type="action", content="Something happens.") for _ in range(actions)]
        lines.append(ScriptLine(type="dialogue", speaker="char_1", content=" ".join(["word"] * words)))
        return Scene(id="scene_1", estimated_duration_sec=target, script_content={"lines": lines})

    def test_estimate(self):
        # 25 words at 2.5 words/s plus two action lines at 3s
        assert estimate_scene_duration(self._scene(words=25, actions=2, target=10)) == pytest.approx(16.0)

    def test_within_tolerance_is_approved(self):
        review = review_scene(self._scene(words=25, actions=0, target=9), 9, tolerance=0.2)
        assert review.approved

    def test_too_long_is_rejected_with_feedback(self):
        review = review_scene(self._scene(words=50, actions=2, target=10), 10, tolerance=0.2)
        assert not review.approved
        assert "too long" in review.feedback

    def test_scenes_without_target_are_skipped(self):
        scenes = [self._scene(words=5, actions=0, target=0), self._scene(words=5, actions=0, target=5)]
        assert len(review_scenes(scenes)) == 1
