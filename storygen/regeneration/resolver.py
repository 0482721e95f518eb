"""Clarification resolver.

Asks the change analyst whether an upstream edit can be applied to the
screenplay silently. The model's answer is untrusted: it is schema-validated
with the same retry bound as a pipeline stage, and a deterministic guard forces
a question whenever an entity that scenes still use has been removed.
"""

from __future__ import annotations

import logging

from storygen.backbone.integrity import scene_references
from storygen.backbone.models import ProjectBackbone, UpstreamSnapshot
from storygen.core.metrics import record_change_analysis
from storygen.core.request_context import log_context
from storygen.core.settings import settings
from storygen.pipeline.orchestrator import generate_validated
from storygen.pipeline.schemas import ChangeAnalysis, ClarificationQuestion
from storygen.regeneration.detector import diff_upstream
from storygen.services.generation import GenerationClient

logger = logging.getLogger(__name__)

CHANGE_ANALYST_ROLE = "change_analyst"

_LABELS = {"characters": "Character", "locations": "Location", "items": "Item"}


def _removed_referenced(
    baseline: UpstreamSnapshot,
    current: ProjectBackbone,
) -> list[tuple[str, str, str, list[str]]]:
    """(collection, entity id, entity name, scene ids) for removed entities scenes still use."""
    diff = diff_upstream(baseline, current)
    refs = scene_references(current)
    names = {
        collection: {e.id: e.name for e in getattr(baseline, collection)}
        for collection in diff
    }
    found = []
    for collection, collection_diff in diff.items():
        for entity_id in collection_diff.removed:
            scene_ids = refs[collection].get(entity_id)
            if scene_ids:
                found.append((collection, entity_id, names[collection].get(entity_id, entity_id), scene_ids))
    return found


def _mentions(question: ClarificationQuestion, entity_id: str, name: str) -> bool:
    text = question.text.lower()
    return entity_id.lower() in text or (bool(name) and name.lower() in text)


def _removal_question(collection: str, entity_id: str, name: str, scene_ids: list[str]) -> ClarificationQuestion:
    label = _LABELS[collection]
    scenes = ", ".join(scene_ids)
    if collection == "locations":
        options = [
            "Move these scenes to another existing location",
            "Cut these scenes from the screenplay",
            "Let the writer choose a new setting for each scene",
        ]
    else:
        options = [
            f"Write the {label.lower()} out of these scenes",
            "Replace them with another existing entity",
            "Cut these scenes from the screenplay",
        ]
    return ClarificationQuestion(
        id=f"removed_{entity_id}",
        text=f"{label} '{name}' ({entity_id}) was removed but scenes {scenes} still use it. How should they change?",
        options=options,
    )


class ClarificationResolver:
    def __init__(self, client: GenerationClient, max_attempts: int | None = None):
        self.client = client
        self.max_attempts = max_attempts or settings.pipeline_max_stage_attempts

    def analyze_changes(self, baseline: UpstreamSnapshot, current: ProjectBackbone) -> ChangeAnalysis:
        """Classify the edit as CONFIRMED or QUESTION.

        Raises:
            GenerationError: When the analyst cannot produce a valid answer within
                the attempt bound. Nothing is changed in that case.
        """
        diff = diff_upstream(baseline, current)
        context = {
            "baseline": baseline.model_dump(mode="json"),
            "current": current.upstream().model_dump(mode="json"),
            "diff": {collection: d.to_dict() for collection, d in diff.items() if not d.is_empty},
            "scene_references": scene_references(current),
        }

        with log_context(stage_name=CHANGE_ANALYST_ROLE, project_id=current.project_id):
            analysis = generate_validated(
                self.client,
                stage=CHANGE_ANALYST_ROLE,
                role=CHANGE_ANALYST_ROLE,
                context=context,
                schema=ChangeAnalysis,
                max_attempts=self.max_attempts,
                graph="regeneration",
            )
            analysis = self._apply_removal_guard(analysis, baseline, current)
            record_change_analysis(analysis.status)
            logger.info(
                "change analysis completed",
                extra={"status": analysis.status, "questions": [q.id for q in analysis.questions]},
            )
        return analysis

    def _apply_removal_guard(
        self,
        analysis: ChangeAnalysis,
        baseline: UpstreamSnapshot,
        current: ProjectBackbone,
    ) -> ChangeAnalysis:
        removed = _removed_referenced(baseline, current)
        if not removed:
            return analysis

        questions = list(analysis.questions)
        taken = {q.id for q in questions}
        for collection, entity_id, name, scene_ids in removed:
            if any(_mentions(q, entity_id, name) for q in questions):
                continue
            question = _removal_question(collection, entity_id, name, scene_ids)
            if question.id in taken:
                continue
            questions.append(question)
            taken.add(question.id)

        if analysis.status == "CONFIRMED":
            logger.info(
                "change analysis overridden: referenced entities were removed",
                extra={"removed": [entity_id for _, entity_id, _, _ in removed]},
            )
        return ChangeAnalysis(status="QUESTION", questions=questions)
