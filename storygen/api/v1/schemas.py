from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field

from storygen.backbone.models import EntityKind, ProjectBackbone, Scene
from storygen.backbone.persistence import WizardState
from storygen.pipeline.schemas import ClarificationQuestion, ContinuityReport
from storygen.regeneration.state_machine import RegenerationState
from storygen.services.generation import TokenUsage


class EntityCollection(str, Enum):
    characters = "characters"
    locations = "locations"
    items = "items"

    @property
    def kind(self) -> EntityKind:
        return EntityKind.from_collection(self.value)


class ProjectCreate(BaseModel):
    premise: str = Field(min_length=1)
    total_duration_sec: int = Field(default=60, ge=5, le=3600)
    pacing: Literal["slow", "standard", "fast"] = "standard"
    language: str = "English"
    tone: str = ""
    target_audience: str = ""
    aspect_ratio: Literal["16:9", "9:16", "1:1", "4:3", "3:4"] = "16:9"

    def to_wizard(self) -> WizardState:
        return WizardState(step=1, **self.model_dump())


class SceneReviewRead(BaseModel):
    scene_id: str
    estimated_duration_sec: float
    target_duration_sec: float
    approved: bool
    feedback: str


class ProjectRead(BaseModel):
    project_id: str
    wizard: WizardState
    backbone: ProjectBackbone
    regeneration_state: RegenerationState
    stale: bool
    continuity: ContinuityReport | None = None
    continuity_issues: list[str] = Field(default_factory=list)
    scene_reviews: list[SceneReviewRead] = Field(default_factory=list)
    usage: dict[str, TokenUsage] = Field(default_factory=dict)


class ProgressRead(BaseModel):
    project_id: str
    current_stage: str | None = None
    step: int = 0
    total_steps: int = 0
    status: str = "new"
    error: str | None = None


class MetaUpdate(BaseModel):
    title: str | None = None
    logline: str | None = None
    genre: str | None = None
    tone: str | None = None
    target_audience: str | None = None
    message: str | None = None


class EntityWrite(BaseModel):
    """Free-form entity fields; validated against the entity model by the store."""

    model_config = {"extra": "allow"}

    id: str | None = None


class EntityRead(BaseModel):
    kind: EntityKind
    entity: dict[str, Any]
    stale: bool


class SceneInsert(BaseModel):
    scene: dict[str, Any]
    position: int | None = Field(default=None, ge=1)


class SceneReorder(BaseModel):
    scene_ids: list[str]


class SceneMove(BaseModel):
    position: int = Field(ge=1)


class ScenesRead(BaseModel):
    scenes: list[Scene]


class ShotListItem(BaseModel):
    scene_id: str
    scene_index: int
    shot_id: str
    shot_index: int
    duration_sec: float
    final_image_prompt: str
    video_motion_prompt: str


class ShotListRead(BaseModel):
    shots: list[ShotListItem]


class ReferenceImageRead(BaseModel):
    entity_id: str
    ref_image_url: str


class RegenerationStatusRead(BaseModel):
    state: RegenerationState
    stale: bool
    questions: list[ClarificationQuestion] = Field(default_factory=list)
    last_error: str | None = None


class AnswersSubmit(BaseModel):
    answers: dict[str, str]
