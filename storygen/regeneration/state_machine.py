"""Regeneration workflow state machine.

    IDLE --upstream edit--> DETECTED --start--> ANALYZING
    ANALYZING --CONFIRMED--> REGENERATING
    ANALYZING --QUESTION--> AWAITING_ANSWERS --answers--> REGENERATING
    ANALYZING --error--> DETECTED
    REGENERATING --success--> IDLE
    REGENERATING --error--> DETECTED
    AWAITING_ANSWERS --upstream edit--> DETECTED

The workflow is single-flight: requests that arrive while ANALYZING or
REGENERATING are rejected, and so are user edits to the store.
"""

from __future__ import annotations

import logging
import threading
from enum import Enum

from pydantic import BaseModel, Field

from storygen.backbone.models import EntityKind, Scene
from storygen.backbone.store import BackboneStore
from storygen.core.exceptions import (
    ClarificationIncompleteError,
    InvalidStateTransitionError,
    RegenerationBusyError,
    StaleScenesError,
)
from storygen.core.metrics import record_regeneration
from storygen.core.request_context import log_context
from storygen.pipeline.schemas import ClarificationQuestion
from storygen.regeneration.executor import RegenerationExecutor
from storygen.regeneration.resolver import ClarificationResolver

logger = logging.getLogger(__name__)


class RegenerationState(str, Enum):
    IDLE = "IDLE"
    DETECTED = "DETECTED"
    ANALYZING = "ANALYZING"
    AWAITING_ANSWERS = "AWAITING_ANSWERS"
    REGENERATING = "REGENERATING"


_BUSY = (RegenerationState.ANALYZING, RegenerationState.REGENERATING)


class RegenerationStatus(BaseModel):
    state: RegenerationState
    stale: bool
    questions: list[ClarificationQuestion] = Field(default_factory=list)
    last_error: str | None = None


class RegenerationWorkflow:
    def __init__(self, store: BackboneStore, resolver: ClarificationResolver, executor: RegenerationExecutor):
        self.store = store
        self.resolver = resolver
        self.executor = executor
        self._lock = threading.Lock()
        self._state = RegenerationState.DETECTED if store.is_stale() else RegenerationState.IDLE
        self._questions: list[ClarificationQuestion] = []
        self._last_error: str | None = None
        store.add_upstream_listener(self._on_upstream_edit)
        store.set_mutation_guard(self._guard)

    @property
    def state(self) -> RegenerationState:
        return self._state

    @property
    def questions(self) -> list[ClarificationQuestion]:
        return [q.model_copy() for q in self._questions]

    def status(self) -> RegenerationStatus:
        with self._lock:
            return RegenerationStatus(
                state=self._state,
                stale=self.store.is_stale(),
                questions=self.questions,
                last_error=self._last_error,
            )

    def _transition(self, target: RegenerationState, reason: str) -> None:
        if target != self._state:
            logger.info(
                "regeneration state changed",
                extra={"from_state": self._state.value, "to_state": target.value, "reason": reason},
            )
        self._state = target

    # -- store hooks -------------------------------------------------------

    def _guard(self, operation: str) -> None:
        # Called under the store lock; reads state without taking ours.
        if self._state in _BUSY:
            raise RegenerationBusyError(
                f"cannot {operation} while regeneration is {self._state.value}",
                detail="a regeneration is in progress, try again when it finishes",
            )

    def _on_upstream_edit(self, kind: EntityKind, entity_id: str) -> None:
        with self._lock:
            if self._state in _BUSY:
                return
            if self._state == RegenerationState.AWAITING_ANSWERS:
                self._questions = []
            self._sync(f"{kind.value} {entity_id} edited")

    def _sync(self, reason: str) -> None:
        stale = self.store.is_stale()
        self._transition(RegenerationState.DETECTED if stale else RegenerationState.IDLE, reason)

    def refresh(self) -> RegenerationState:
        """Re-derive the state from the store, e.g. after an import."""
        with self._lock:
            if self._state not in _BUSY:
                self._questions = []
                self._last_error = None
                self._sync("refresh")
            return self._state

    # -- transitions -------------------------------------------------------

    def start_regeneration(self) -> RegenerationStatus:
        """DETECTED -> ANALYZING -> (REGENERATING -> IDLE | AWAITING_ANSWERS)."""
        with self._lock:
            if self._state in _BUSY:
                raise RegenerationBusyError(f"regeneration already {self._state.value}")
            if self._state == RegenerationState.AWAITING_ANSWERS:
                raise InvalidStateTransitionError(
                    "clarification questions are pending",
                    detail="answer the outstanding questions first",
                )
            if self._state == RegenerationState.IDLE and not self.store.is_stale():
                raise InvalidStateTransitionError(
                    "no upstream changes to regenerate from",
                    detail="scenes are already up to date",
                )
            self._last_error = None
            self._transition(RegenerationState.ANALYZING, "regeneration requested")
            baseline = self.store.baseline
            current = self.store.backbone

        with log_context(project_id=current.project_id):
            try:
                analysis = self.resolver.analyze_changes(baseline, current) if baseline else None
            except Exception as exc:
                with self._lock:
                    self._last_error = str(exc)
                    self._transition(RegenerationState.DETECTED, "change analysis failed")
                record_regeneration("analysis_failed")
                raise

            if analysis is not None and analysis.status == "QUESTION":
                with self._lock:
                    self._questions = list(analysis.questions)
                    self._transition(RegenerationState.AWAITING_ANSWERS, "clarification needed")
                return self.status()

            with self._lock:
                self._transition(RegenerationState.REGENERATING, "change confirmed")
            self._run_regeneration(answers=None, questions=[])
        return self.status()

    def submit_answers(self, answers: dict[str, str]) -> RegenerationStatus:
        """AWAITING_ANSWERS -> REGENERATING -> IDLE.

        Raises:
            ClarificationIncompleteError: Unless every outstanding question has
                exactly one non-empty answer. No generation call is made.
        """
        with self._lock:
            if self._state in _BUSY:
                raise RegenerationBusyError(f"regeneration already {self._state.value}")
            if self._state != RegenerationState.AWAITING_ANSWERS:
                raise InvalidStateTransitionError(
                    f"no clarification questions are pending (state {self._state.value})",
                    detail="there are no questions to answer",
                )
            expected = {q.id for q in self._questions}
            answered = {qid for qid, answer in answers.items() if isinstance(answer, str) and answer.strip()}
            missing = expected - answered
            unexpected = set(answers) - expected
            if missing or unexpected:
                raise ClarificationIncompleteError(missing, unexpected)
            questions = list(self._questions)
            self._transition(RegenerationState.REGENERATING, "answers submitted")

        self._run_regeneration(answers={qid: answers[qid].strip() for qid in expected}, questions=questions)
        return self.status()

    def _run_regeneration(self, answers: dict[str, str] | None, questions: list[ClarificationQuestion]) -> list[Scene]:
        try:
            scenes = self.executor.regenerate(answers=answers, questions=questions)
        except Exception as exc:
            with self._lock:
                self._last_error = str(exc)
                self._questions = []
                self._transition(RegenerationState.DETECTED, "regeneration failed")
            record_regeneration("failure")
            raise
        with self._lock:
            self._questions = []
            self._transition(RegenerationState.IDLE, "regeneration committed")
        record_regeneration("success")
        return scenes

    # -- consumers ---------------------------------------------------------

    def assert_scenes_current(self) -> None:
        """Raise unless scenes match the current upstream entities."""
        if self._state != RegenerationState.IDLE or self.store.is_stale():
            raise StaleScenesError(
                f"scenes are stale (state {self._state.value})",
                detail="upstream entities changed; regenerate the scenes first",
            )
