"""Tests for the stage registry and the LangGraph-driven orchestrator."""

from dataclasses import replace

import pytest

from fakes import FakeGenerationClient, Scripted, sample_backbone
from storygen.backbone.models import EntityKind, PipelineOptions
from storygen.backbone.store import BackboneStore
from storygen.core.exceptions import (
    ConfigurationError,
    GenerationBackendError,
    SchemaValidationError,
)
from storygen.pipeline.orchestrator import StageOrchestrator, generate_validated
from storygen.pipeline.registry import STAGES, regeneration_stages, sort_stages
from storygen.pipeline.schemas import ContinuityReport
from storygen.services.generation import TokenUsage

PREMISE = "A courier has one night to return a stolen lantern."

ROLE_ORDER = [
    "showrunner",
    "casting_director",
    "location_scout",
    "screenwriter",
    "director",
    "director_of_photography",
    "art_director",
    "script_supervisor",
]


class TestStageRegistry:
    def test_declared_order_is_topological(self):
        assert [s.role for s in sort_stages(STAGES)] == ROLE_ORDER

    def test_sort_ignores_declaration_order(self):
        assert [s.name for s in sort_stages(reversed(STAGES))][:2] == ["bible", "cast"]

    def test_cycle_is_rejected(self):
        stages = list(STAGES)
        stages[0] = replace(stages[0], depends_on=("continuity",))
        with pytest.raises(ConfigurationError, match="cycle"):
            sort_stages(stages)

    def test_unknown_dependency_is_rejected(self):
        with pytest.raises(ConfigurationError, match="unknown"):
            sort_stages([replace(STAGES[1], depends_on=("storyboard",))])

    def test_duplicate_names_are_rejected(self):
        with pytest.raises(ConfigurationError, match="duplicate"):
            sort_stages([STAGES[0], STAGES[0]])

    def test_regeneration_reruns_scene_stages(self):
        assert [s.name for s in regeneration_stages(STAGES)] == [
            "screenplay",
            "shot_breakdown",
            "cinematography",
            "art_direction",
        ]

    def test_only_continuity_is_a_validator(self):
        assert [s.name for s in STAGES if s.is_validator] == ["continuity"]


class TestGenerateValidated:
    def test_recovers_within_attempt_limit(self):
        client = FakeGenerationClient({"script_supervisor": Scripted([{"status": "maybe"}, {"status": "approved"}])})
        report = generate_validated(
            client,
            stage="continuity",
            role="script_supervisor",
            context={},
            schema=ContinuityReport,
            max_attempts=3,
        )
        assert report.approved
        assert len(client.calls) == 2

    def test_bare_list_is_wrapped(self, responses):
        client = FakeGenerationClient({"location_scout": responses["location_scout"]["locations"]})
        stage = next(s for s in STAGES if s.name == "locations")
        output = generate_validated(
            client,
            stage=stage.name,
            role=stage.role,
            context={},
            schema=stage.output_schema,
            max_attempts=1,
        )
        assert [loc.id for loc in output.locations] == ["loc_1", "loc_2"]


class TestRunPipeline:
    def test_full_run_produces_complete_backbone(self, fake_client):
        store = BackboneStore()
        progress = []
        orchestrator = StageOrchestrator(fake_client, on_progress=lambda *args: progress.append(args))

        result = orchestrator.run_pipeline(PREMISE, PipelineOptions(total_duration_sec=40), store=store)

        assert result.approved
        assert result.completed_stages == [s.name for s in STAGES]
        assert fake_client.roles() == ROLE_ORDER
        assert progress[0] == ("bible", 1, 8)
        assert progress[-1] == ("continuity", 8, 8)

        backbone = store.backbone
        assert backbone.project_id == store.project_id
        assert backbone.meta.title == "Night Market"
        assert [s.id for s in backbone.scenes] == ["scene_1", "scene_2"]
        assert backbone.scenes[0].script_content.lines[1].speaker == "char_1"
        assert backbone.scenes[0].shots[0].composition.shot_type == "Wide Shot"
        assert backbone.scenes[0].shots[0].content.final_image_prompt.startswith("wide shot")
        assert backbone.characters[0].visual_prompt
        assert backbone.final_render.total_duration_sec == 40
        assert store.baseline == backbone.upstream()
        assert not store.is_stale()
        assert all(review.approved for review in result.scene_reviews)

    def test_premise_reaches_first_stage(self, fake_client):
        StageOrchestrator(fake_client).run_pipeline(PREMISE)
        role, context = fake_client.calls[0]
        assert role == "showrunner"
        assert context["premise"] == PREMISE

    def test_empty_premise_is_rejected(self, fake_client):
        with pytest.raises(ValueError):
            StageOrchestrator(fake_client).run_pipeline("  ")
        assert fake_client.calls == []

    def test_unparsable_output_fails_stage_after_three_attempts(self, responses):
        responses["screenwriter"] = {"scenes": "INT. NOWHERE"}
        client = FakeGenerationClient(responses)
        store = BackboneStore()

        with pytest.raises(SchemaValidationError) as exc_info:
            StageOrchestrator(client, max_attempts=3).run_pipeline(PREMISE, store=store)

        assert exc_info.value.stage == "screenplay"
        assert "after 3 attempts" in str(exc_info.value)
        assert client.roles().count("screenwriter") == 3
        assert "director" not in client.roles()
        backbone = store.backbone
        assert backbone.characters == []
        assert backbone.scenes == []
        assert store.baseline is None

    def test_integrity_breach_is_retried(self, responses):
        broken = {"scenes": [dict(responses["screenwriter"]["scenes"][0], location_ref_id="loc_9")]}
        responses["screenwriter"] = Scripted([broken, responses["screenwriter"]])
        client = FakeGenerationClient(responses)

        result = StageOrchestrator(client).run_pipeline(PREMISE)

        assert client.roles().count("screenwriter") == 2
        assert result.backbone.scenes[0].location_ref_id == "loc_1"

    def test_backend_failures_share_the_attempt_limit(self, responses):
        responses["director"] = GenerationBackendError("service unavailable", stage="director")
        client = FakeGenerationClient(responses)

        with pytest.raises(GenerationBackendError) as exc_info:
            StageOrchestrator(client, max_attempts=2).run_pipeline(PREMISE)

        assert exc_info.value.stage == "shot_breakdown"
        assert client.roles().count("director") == 2

    def test_shot_breakdown_must_cover_every_scene(self, responses):
        responses["director"] = {"scenes": responses["director"]["scenes"][:1]}
        client = FakeGenerationClient(responses)

        with pytest.raises(SchemaValidationError) as exc_info:
            StageOrchestrator(client, max_attempts=1).run_pipeline(PREMISE)
        assert "no shots for scene 'scene_2'" in exc_info.value.errors

    def test_rejected_continuity_attaches_warning(self, responses):
        responses["script_supervisor"] = {"status": "rejected", "issues": ["Mina's jacket changes colour"]}
        store = BackboneStore()

        result = StageOrchestrator(FakeGenerationClient(responses)).run_pipeline(PREMISE, store=store)

        assert not result.approved
        assert result.warning.issues == ["Mina's jacket changes colour"]
        assert result.continuity.status == "REJECTED"
        assert len(store.backbone.scenes) == 2

    def test_rerun_keeps_project_id_and_retired_ids(self, fake_client):
        store = BackboneStore()
        orchestrator = StageOrchestrator(fake_client)
        orchestrator.run_pipeline(PREMISE, store=store)
        project_id = store.project_id
        store.add_entity(EntityKind.CHARACTER, {"name": "Dae"})
        store.remove_entity(EntityKind.CHARACTER, "char_3")

        orchestrator.run_pipeline(PREMISE, store=store)

        backbone = store.backbone
        assert backbone.project_id == project_id
        assert backbone.retired_ids == ["char_3"]
        assert [c.id for c in backbone.characters] == ["char_1", "char_2"]


class TestRunRegenerationStages:
    def test_only_rewrites_scenes(self, responses):
        client = FakeGenerationClient(responses)
        backbone = sample_backbone()
        backbone.characters[0].visual_prompt = "kept"
        backbone.scenes[0].synopsis = "old synopsis"
        clarifications = [{"question": "Where?", "answer": "The rooftop"}]

        regenerated = StageOrchestrator(client).run_regeneration_stages(backbone, clarifications=clarifications)

        assert client.roles() == ["screenwriter", "director", "director_of_photography", "art_director"]
        assert client.calls[0][1]["clarifications"] == clarifications
        assert regenerated.characters[0].visual_prompt == "kept"
        assert [s.id for s in regenerated.scenes] == ["scene_1", "scene_2"]
        assert regenerated.scenes[0].synopsis == ""
        assert backbone.scenes[0].synopsis == "old synopsis"


class MeteredClient(FakeGenerationClient):
    """Reports 100 prompt and 20 output tokens for every call."""

    def generate(self, role, context):
        self.last_usage = TokenUsage(prompt_tokens=100, output_tokens=20, total_tokens=120, calls=1)
        return super().generate(role, context)


class TestTokenUsage:
    def test_from_metadata(self):
        usage = TokenUsage.from_metadata({"prompt_token_count": 7, "candidates_token_count": 3, "total_token_count": None})
        assert (usage.prompt_tokens, usage.output_tokens, usage.total_tokens, usage.calls) == (7, 3, 10, 1)
        assert TokenUsage.from_metadata(None).total_tokens == 0

    def test_usage_is_reported_per_stage(self, responses):
        result = StageOrchestrator(MeteredClient(responses)).run_pipeline(PREMISE)

        assert list(result.usage) == [s.name for s in STAGES]
        assert result.usage["bible"].total_tokens == 120
        assert result.total_usage.calls == 8
        assert result.total_usage.prompt_tokens == 800

    def test_retried_calls_are_counted(self, responses):
        broken = {"scenes": [dict(responses["screenwriter"]["scenes"][0], location_ref_id="loc_9")]}
        responses["screenwriter"] = Scripted([broken, responses["screenwriter"]])

        result = StageOrchestrator(MeteredClient(responses)).run_pipeline(PREMISE)

        assert result.usage["screenplay"].calls == 2
        assert result.usage["screenplay"].output_tokens == 40

    def test_clients_without_usage_report_zero(self, fake_client):
        result = StageOrchestrator(fake_client).run_pipeline(PREMISE)
        assert result.total_usage == TokenUsage()
