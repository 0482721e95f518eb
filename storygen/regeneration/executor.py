"""Regeneration executor: rewrites the scene subtree from the current upstream entities."""

from __future__ import annotations

import logging

from storygen.backbone.models import PipelineOptions, Scene
from storygen.backbone.store import BackboneStore
from storygen.core.request_context import log_context
from storygen.pipeline.orchestrator import StageOrchestrator
from storygen.pipeline.schemas import ClarificationQuestion

logger = logging.getLogger(__name__)


def clarification_context(
    questions: list[ClarificationQuestion],
    answers: dict[str, str] | None,
) -> list[dict[str, str]]:
    if not answers:
        return []
    by_id = {q.id: q for q in questions}
    return [
        {"question": by_id[qid].text if qid in by_id else qid, "answer": answer}
        for qid, answer in answers.items()
    ]


class RegenerationExecutor:
    def __init__(self, orchestrator: StageOrchestrator, store: BackboneStore, options: PipelineOptions | None = None):
        self.orchestrator = orchestrator
        self.store = store
        self.options = options or PipelineOptions()

    def regenerate(
        self,
        answers: dict[str, str] | None = None,
        questions: list[ClarificationQuestion] | None = None,
    ) -> list[Scene]:
        """Re-run the regeneration stages and commit the new scenes.

        On success the scenes are swapped wholesale and the baseline becomes
        the upstream entities that were used. On failure the store is
        untouched and the error propagates.
        """
        backbone = self.store.backbone
        upstream_used = backbone.upstream()

        with log_context(project_id=backbone.project_id):
            logger.info("regeneration started", extra={"answers": len(answers or {})})
            regenerated = self.orchestrator.run_regeneration_stages(
                backbone,
                options=self.options,
                clarifications=clarification_context(questions or [], answers),
            )
            self.store.commit_regeneration(regenerated.scenes, upstream_used)
            logger.info("regeneration committed", extra={"scenes": len(regenerated.scenes)})
        return self.store.backbone.scenes
