"""In-memory project sessions.

A session wires one project's store to its orchestrator and regeneration
workflow. The registry is process-local; persistence happens through the
export/import document.
"""

from __future__ import annotations

import logging
import threading

from storygen.backbone.models import ProjectBackbone
from storygen.backbone.persistence import ProjectDocument, WizardState
from storygen.backbone.store import BackboneStore
from storygen.core.exceptions import EntityNotFoundError
from storygen.pipeline.orchestrator import PipelineResult, StageOrchestrator
from storygen.regeneration.executor import RegenerationExecutor
from storygen.regeneration.resolver import ClarificationResolver
from storygen.regeneration.state_machine import RegenerationWorkflow
from storygen.services.generation import GenerationClient

logger = logging.getLogger(__name__)


class ProjectSession:
    def __init__(
        self,
        wizard: WizardState,
        client: GenerationClient,
        store: BackboneStore | None = None,
    ):
        self.wizard = wizard
        self.store = store or BackboneStore()
        self.orchestrator = StageOrchestrator(client, on_progress=self._record_progress)
        self.workflow = RegenerationWorkflow(
            self.store,
            ClarificationResolver(client),
            RegenerationExecutor(self.orchestrator, self.store, wizard.pipeline_options()),
        )
        self.last_result: PipelineResult | None = None
        self.progress: dict[str, object] = {}
        # new, running, succeeded, failed or imported
        self.status = "new"
        self.error: str | None = None

    @property
    def project_id(self) -> str:
        return self.store.project_id

    def _record_progress(self, stage: str, step: int, total: int) -> None:
        self.progress = {"current_stage": stage, "step": step, "total_steps": total}

    def generate(self) -> PipelineResult:
        """Run the full pipeline; `status` and `error` track the outcome for pollers."""
        self.status, self.error = "running", None
        try:
            result = self.orchestrator.run_pipeline(
                self.wizard.premise,
                self.wizard.pipeline_options(),
                store=self.store,
            )
        except Exception as exc:
            self.status, self.error = "failed", str(exc)
            raise
        self.last_result = result
        self.wizard.step = 2
        self.workflow.refresh()
        self.status = "succeeded"
        return result

    def load(self, document: ProjectDocument) -> None:
        self.store.replace(document.backbone, document.baseline)
        self.wizard = document.wizard
        self.workflow.executor.options = document.wizard.pipeline_options()
        self.workflow.refresh()


class ProjectRegistry:
    def __init__(self):
        self._sessions: dict[str, ProjectSession] = {}
        self._lock = threading.Lock()

    def create(self, wizard: WizardState, client: GenerationClient, backbone: ProjectBackbone | None = None) -> ProjectSession:
        session = ProjectSession(wizard, client, BackboneStore(backbone) if backbone else None)
        with self._lock:
            self._sessions[session.project_id] = session
        logger.info("project session created", extra={"session_project_id": session.project_id})
        return session

    def create_from_document(self, document: ProjectDocument, client: GenerationClient) -> ProjectSession:
        session = ProjectSession(document.wizard, client, BackboneStore(document.backbone, document.baseline))
        session.status = "imported"
        with self._lock:
            self._sessions[session.project_id] = session
        logger.info("project session imported", extra={"session_project_id": session.project_id})
        return session

    def get(self, project_id: str) -> ProjectSession:
        with self._lock:
            session = self._sessions.get(project_id)
        if session is None:
            raise EntityNotFoundError("project", project_id)
        return session

    def rekey(self, old_id: str, session: ProjectSession) -> None:
        """Re-register a session whose project id changed (import)."""
        with self._lock:
            self._sessions.pop(old_id, None)
            self._sessions[session.project_id] = session

    def remove(self, project_id: str) -> None:
        with self._lock:
            if self._sessions.pop(project_id, None) is None:
                raise EntityNotFoundError("project", project_id)

    def clear(self) -> None:
        with self._lock:
            self._sessions.clear()


project_registry = ProjectRegistry()
