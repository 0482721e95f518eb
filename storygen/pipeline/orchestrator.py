"""Stage orchestrator.

Runs the registry in dependency order as a linear LangGraph graph. Each node
builds its stage context from the current backbone, calls the generation
client, validates the output, merges it into a working copy and runs the
stage's semantic check. The working copy replaces the graph state only when all
of that succeeded, so a failing stage never leaves partial output behind.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from functools import partial
from typing import Any, TypedDict, TypeVar

from langgraph.graph import END, StateGraph
from pydantic import BaseModel

from storygen.backbone.integrity import check_backbone
from storygen.backbone.models import PipelineOptions, ProjectBackbone
from storygen.backbone.review import SceneReview, review_scenes
from storygen.backbone.store import BackboneStore
from storygen.core.exceptions import (
    GenerationBackendError,
    GenerationError,
    ReferentialIntegrityWarning,
    SchemaValidationError,
)
from storygen.core.metrics import record_continuity_result, record_stage_attempt, track_stage
from storygen.core.request_context import log_context
from storygen.core.settings import settings
from storygen.pipeline.context import StageInput
from storygen.pipeline.registry import STAGES, StageDefinition, regeneration_stages, sort_stages
from storygen.pipeline.schemas import ContinuityReport, validate_output
from storygen.services.generation import GenerationClient, TokenUsage

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str, int, int], None]
T = TypeVar("T")


class PipelineState(TypedDict, total=False):
    backbone: ProjectBackbone
    premise: str
    options: PipelineOptions
    clarifications: list[dict[str, str]]
    continuity_report: ContinuityReport | None
    completed_stages: list[str]
    usage: dict[str, TokenUsage]


@dataclass
class PipelineResult:
    backbone: ProjectBackbone
    continuity: ContinuityReport | None = None
    warning: ReferentialIntegrityWarning | None = None
    scene_reviews: list[SceneReview] = field(default_factory=list)
    completed_stages: list[str] = field(default_factory=list)
    usage: dict[str, TokenUsage] = field(default_factory=dict)

    @property
    def approved(self) -> bool:
        return self.warning is None

    @property
    def total_usage(self) -> TokenUsage:
        total = TokenUsage()
        for stage_usage in self.usage.values():
            total.add(stage_usage)
        return total


def generate_validated(
    client: GenerationClient,
    *,
    stage: str,
    role: str,
    context: dict[str, Any],
    schema: type[BaseModel],
    max_attempts: int,
    check: Callable[[BaseModel], T] | None = None,
    graph: str = "pipeline",
    usage: TokenUsage | None = None,
) -> T | BaseModel:
    """Call `role` until its output validates (and passes `check`), at most `max_attempts` times.

    Schema failures and backend failures share the attempt limit. The last
    failure is re-raised with the stage name attached.
    Token usage reported by the client for every call, failed or not, is
    added to `usage`.
    """
    last_error: GenerationError | None = None
    for attempt in range(1, max_attempts + 1):
        try:
            with track_stage(graph, stage):
                try:
                    raw = client.generate(role, context)
                finally:
                    if usage is not None:
                        usage.add(getattr(client, "last_usage", None))
                output = validate_output(schema, raw, stage=stage)
                result = check(output) if check is not None else output
        except GenerationError as exc:
            exc.stage = stage
            last_error = exc
            outcome = "backend_error" if isinstance(exc, GenerationBackendError) else "schema_error"
            record_stage_attempt(stage, outcome)
            logger.warning(
                "stage attempt failed",
                extra={
                    "attempt": attempt,
                    "max_attempts": max_attempts,
                    "outcome": outcome,
                    "error": str(exc),
                    "errors": getattr(exc, "errors", None),
                },
            )
            continue
        record_stage_attempt(stage, "success")
        return result

    assert last_error is not None
    message = f"stage '{stage}' failed after {max_attempts} attempts: {last_error}"
    if isinstance(last_error, SchemaValidationError):
        raise SchemaValidationError(
            message,
            stage=stage,
            raw_response=last_error.raw_response,
            errors=last_error.errors,
        ) from last_error
    if isinstance(last_error, GenerationBackendError):
        raise GenerationBackendError(
            message,
            stage=stage,
            raw_response=last_error.raw_response,
            detail=f"stage '{stage}' could not reach the generation service",
        ) from last_error
    raise GenerationError(message, stage=stage, raw_response=last_error.raw_response) from last_error


class StageOrchestrator:
    def __init__(
        self,
        client: GenerationClient,
        stages: Iterable[StageDefinition] = STAGES,
        max_attempts: int | None = None,
        on_progress: ProgressCallback | None = None,
        duration_tolerance: float | None = None,
    ):
        self.client = client
        self.stages = sort_stages(stages)
        self.max_attempts = max_attempts or settings.pipeline_max_stage_attempts
        self.on_progress = on_progress
        self.duration_tolerance = (
            settings.scene_duration_tolerance if duration_tolerance is None else duration_tolerance
        )

    # -- single stage ------------------------------------------------------

    def run_stage(
        self,
        stage: StageDefinition,
        stage_input: StageInput,
        graph: str = "pipeline",
        usage: TokenUsage | None = None,
    ) -> ProjectBackbone | ContinuityReport:
        """Run one stage with bounded retries.

        Returns the merged working copy for generating stages, or the report
        for the terminal validator.
        """
        context = stage.build_context(stage_input)

        def _merge(output: BaseModel) -> ProjectBackbone | BaseModel:
            if stage.is_validator:
                return output
            candidate = stage_input.backbone.model_copy(deep=True)
            stage.merge(candidate, output)
            issues = stage.validate(candidate) if stage.validate else []
            if issues:
                raise SchemaValidationError(
                    f"output of stage '{stage.name}' breaks referential integrity",
                    stage=stage.name,
                    errors=issues,
                )
            return candidate

        with log_context(stage_name=stage.name, project_id=stage_input.backbone.project_id):
            started = time.perf_counter()
            logger.info("stage started", extra={"role": stage.role})
            result = generate_validated(
                self.client,
                stage=stage.name,
                role=stage.role,
                context=context,
                schema=stage.output_schema,
                max_attempts=self.max_attempts,
                check=_merge,
                graph=graph,
                usage=usage,
            )
            logger.info(
                "stage completed",
                extra={
                    "role": stage.role,
                    "duration_ms": (time.perf_counter() - started) * 1000,
                    "total_tokens": usage.total_tokens if usage else None,
                },
            )
        return result

    # -- graph -------------------------------------------------------------

    def _node_stage(self, state: PipelineState, stage: StageDefinition, step: int, total: int, graph: str) -> dict[str, Any]:
        if self.on_progress is not None:
            self.on_progress(stage.name, step, total)
        stage_input = StageInput(
            backbone=state["backbone"],
            premise=state.get("premise", ""),
            options=state.get("options") or PipelineOptions(),
            clarifications=state.get("clarifications") or [],
        )
        usage = TokenUsage()
        result = self.run_stage(stage, stage_input, graph=graph, usage=usage)
        update: dict[str, Any] = {
            "completed_stages": [*state.get("completed_stages", []), stage.name],
            "usage": {**state.get("usage", {}), stage.name: usage},
        }
        if stage.is_validator:
            update["continuity_report"] = result
        else:
            update["backbone"] = result
        return update

    def build_graph(self, stages: list[StageDefinition], graph_name: str = "pipeline"):
        graph = StateGraph(PipelineState)
        total = len(stages)
        for step, stage in enumerate(stages, start=1):
            graph.add_node(
                stage.name,
                partial(self._node_stage, stage=stage, step=step, total=total, graph=graph_name),
            )

        graph.set_entry_point(stages[0].name)
        for current, following in zip(stages, stages[1:]):
            graph.add_edge(current.name, following.name)
        graph.add_edge(stages[-1].name, END)
        return graph.compile()

    def _invoke(self, stages: list[StageDefinition], state: PipelineState, graph_name: str) -> PipelineState:
        if not stages:
            return state
        app = self.build_graph(stages, graph_name)
        return app.invoke(state, config={"recursion_limit": len(stages) + 5})

    # -- entry points ------------------------------------------------------

    def run_pipeline(
        self,
        premise: str,
        options: PipelineOptions | None = None,
        store: BackboneStore | None = None,
    ) -> PipelineResult:
        """Generate a complete backbone from a premise.

        When `store` is given, the result is committed to it (taking the
        baseline snapshot) only after every stage succeeded.

        Raises:
            SchemaValidationError, GenerationBackendError: Naming the failed stage.
        """
        if not premise or not premise.strip():
            raise ValueError("premise must not be empty")
        options = options or PipelineOptions()
        start = store.backbone if store is not None else ProjectBackbone()
        start.scenes = []

        with log_context(project_id=start.project_id):
            logger.info("pipeline started", extra={"stages": [s.name for s in self.stages]})
            final = self._invoke(
                self.stages,
                {
                    "backbone": start,
                    "premise": premise,
                    "options": options,
                    "clarifications": [],
                    "continuity_report": None,
                    "completed_stages": [],
                    "usage": {},
                },
                "pipeline",
            )
            result = self._build_result(final)
            if store is not None:
                store.commit_generation(result.backbone)
            logger.info(
                "pipeline completed",
                extra={
                    "scenes": len(result.backbone.scenes),
                    "approved": result.approved,
                    "issues": result.warning.issues if result.warning else [],
                    "total_tokens": result.total_usage.total_tokens,
                },
            )
        return result

    def run_regeneration_stages(
        self,
        backbone: ProjectBackbone,
        options: PipelineOptions | None = None,
        clarifications: list[dict[str, str]] | None = None,
    ) -> ProjectBackbone:
        """Re-run the stages flagged for regeneration on a copy of `backbone`.

        Only the scene subtree of the result is new: characters, locations
        and items are returned exactly as given, even though art direction
        writes entity prompts on its working copy.
        """
        stages = regeneration_stages(self.stages)
        final = self._invoke(
            stages,
            {
                "backbone": backbone.model_copy(deep=True),
                "premise": "",
                "options": options or PipelineOptions(),
                "clarifications": clarifications or [],
                "continuity_report": None,
                "completed_stages": [],
                "usage": {},
            },
            "regeneration",
        )
        return backbone.model_copy(update={"scenes": final["backbone"].scenes}, deep=True)

    def _build_result(self, state: PipelineState) -> PipelineResult:
        backbone = state["backbone"]
        report = state.get("continuity_report")

        issues: list[str] = []
        if report is not None and not report.approved:
            issues = list(report.issues) or ["continuity check rejected the project without listing issues"]
        issues += [str(issue) for issue in check_backbone(backbone)]
        warning = ReferentialIntegrityWarning(issues) if issues else None
        if report is not None:
            record_continuity_result("REJECTED" if warning else "APPROVED")
        if warning:
            logger.warning("continuity check rejected the project", extra={"issues": issues})

        return PipelineResult(
            backbone=backbone,
            continuity=report,
            warning=warning,
            scene_reviews=review_scenes(backbone.scenes, self.duration_tolerance),
            completed_stages=list(state.get("completed_stages", [])),
            usage=dict(state.get("usage", {})),
        )
