"""Output schemas for every generation role and the validator that applies them.

Model output is untrusted: it is validated against these pydantic models
before anything is merged. A mismatch raises `SchemaValidationError`, which the
orchestrator retries like any other stage failure.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from storygen.backbone.models import (
    Character,
    Item,
    Location,
    ProjectMeta,
    Scene,
    Shot,
    ShotComposition,
    StyleGuide,
)
from storygen.core.exceptions import SchemaValidationError


class _Output(BaseModel):
    model_config = ConfigDict(extra="ignore")


class BibleOutput(_Output):
    meta: ProjectMeta
    style_guide: StyleGuide


class CastOutput(_Output):
    characters: list[Character] = Field(min_length=1)
    items: list[Item] = Field(default_factory=list)


class LocationsOutput(_Output):
    locations: list[Location] = Field(min_length=1)


class ScreenplayOutput(_Output):
    scenes: list[Scene] = Field(min_length=1)


class SceneShots(_Output):
    scene_id: str = Field(min_length=1)
    shots: list[Shot] = Field(min_length=1)


class ShotBreakdownOutput(_Output):
    scenes: list[SceneShots] = Field(min_length=1)


class ShotCompositionEntry(_Output):
    shot_id: str = Field(min_length=1)
    composition: ShotComposition


class CinematographyOutput(_Output):
    shots: list[ShotCompositionEntry] = Field(min_length=1)


class VisualPromptEntry(_Output):
    id: str = Field(min_length=1)
    visual_prompt: str = Field(min_length=1)


class ShotPromptEntry(_Output):
    shot_id: str = Field(min_length=1)
    final_image_prompt: str = Field(min_length=1)
    video_motion_prompt: str = ""


class ArtDirectionOutput(_Output):
    characters: list[VisualPromptEntry] = Field(default_factory=list)
    locations: list[VisualPromptEntry] = Field(default_factory=list)
    items: list[VisualPromptEntry] = Field(default_factory=list)
    shots: list[ShotPromptEntry] = Field(default_factory=list)


def _upper(value: Any) -> Any:
    return value.strip().upper() if isinstance(value, str) else value


class ContinuityReport(_Output):
    status: Literal["APPROVED", "REJECTED"]
    issues: list[str] = Field(default_factory=list)

    @field_validator("status", mode="before")
    @classmethod
    def normalize_status(cls, value: Any) -> Any:
        return _upper(value)

    @property
    def approved(self) -> bool:
        return self.status == "APPROVED"


class ClarificationQuestion(_Output):
    id: str = Field(min_length=1)
    text: str = Field(min_length=1)
    options: list[str] = Field(default_factory=list)


class ChangeAnalysis(_Output):
    status: Literal["CONFIRMED", "QUESTION"]
    questions: list[ClarificationQuestion] = Field(default_factory=list)

    @field_validator("status", mode="before")
    @classmethod
    def normalize_status(cls, value: Any) -> Any:
        return _upper(value)

    @model_validator(mode="after")
    def check_questions(self) -> "ChangeAnalysis":
        if self.status == "CONFIRMED":
            self.questions = []
            return self
        if not self.questions:
            raise ValueError("QUESTION status requires at least one question")
        ids = [q.id for q in self.questions]
        if len(set(ids)) != len(ids):
            raise ValueError(f"question ids must be unique, got {ids}")
        return self


def _coerce_payload(schema: type[BaseModel], payload: Any) -> Any:
    """Wrap a bare list into the schema's only required list field."""
    if not isinstance(payload, list):
        return payload
    list_fields = [
        name
        for name, info in schema.model_fields.items()
        if getattr(info.annotation, "__origin__", None) is list
    ]
    if len(list_fields) == 1:
        return {list_fields[0]: payload}
    return payload


def validate_output(schema: type[BaseModel], payload: Any, stage: str | None = None) -> BaseModel:
    """Validate raw model output against `schema`.

    Raises:
        SchemaValidationError: With one message per pydantic error.
    """
    try:
        return schema.model_validate(_coerce_payload(schema, payload))
    except ValidationError as exc:
        errors = [
            f"{'.'.join(str(p) for p in err['loc']) or '<root>'}: {err['msg']}"
            for err in exc.errors()
        ]
        raise SchemaValidationError(
            f"output of stage '{stage}' does not match {schema.__name__}",
            stage=stage,
            raw_response=str(payload)[:2000],
            errors=errors,
        ) from exc
