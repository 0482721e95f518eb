"""Project document export and import.

A project is persisted as one JSON document: the wizard settings the user
entered, the backbone, and the baseline snapshot. Import either returns a
fully validated document or raises `ImportFormatError`; it never touches a
store on failure.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from storygen.backbone.integrity import duplicate_id_issues, index_issues
from storygen.backbone.migrations import migrate_document
from storygen.backbone.models import (
    SCHEMA_VERSION,
    PipelineOptions,
    ProjectBackbone,
    UpstreamSnapshot,
)
from storygen.backbone.store import BackboneStore
from storygen.core.exceptions import ImportFormatError

logger = logging.getLogger(__name__)


class WizardState(BaseModel):
    model_config = ConfigDict(extra="ignore")

    step: int = Field(default=0, ge=0)
    premise: str = ""
    total_duration_sec: int = 60
    pacing: Literal["slow", "standard", "fast"] = "standard"
    language: str = "English"
    tone: str = ""
    target_audience: str = ""
    aspect_ratio: Literal["16:9", "9:16", "1:1", "4:3", "3:4"] = "16:9"

    def pipeline_options(self) -> PipelineOptions:
        return PipelineOptions(
            total_duration_sec=self.total_duration_sec,
            pacing=self.pacing,
            language=self.language,
            tone=self.tone,
            target_audience=self.target_audience,
            aspect_ratio=self.aspect_ratio,
        )


class ProjectDocument(BaseModel):
    model_config = ConfigDict(extra="ignore")

    schema_version: int = SCHEMA_VERSION
    wizard: WizardState
    backbone: ProjectBackbone
    baseline: UpstreamSnapshot | None = None


def export_document(store: BackboneStore, wizard: WizardState) -> ProjectDocument:
    return ProjectDocument(
        wizard=wizard.model_copy(deep=True),
        backbone=store.backbone,
        baseline=store.baseline,
    )


def export_project(store: BackboneStore, wizard: WizardState) -> str:
    return export_document(store, wizard).model_dump_json(indent=2)


def _check_minimum_shape(data: dict[str, Any]) -> None:
    wizard = data.get("wizard")
    if not isinstance(wizard, dict):
        raise ImportFormatError("'wizard' must be an object")
    premise = wizard.get("premise")
    if not isinstance(premise, str) or not premise.strip():
        raise ImportFormatError("premise must be a non-empty string")
    backbone = data.get("backbone")
    if not isinstance(backbone, dict):
        raise ImportFormatError("'backbone' must be an object")
    if not isinstance(backbone.get("scenes", []), list):
        raise ImportFormatError("'backbone.scenes' must be an array")


def parse_document(raw: str | bytes | dict[str, Any]) -> ProjectDocument:
    """Parse, migrate and validate a persisted project.

    Raises:
        ImportFormatError: On any shape mismatch.
    """
    if isinstance(raw, (str, bytes)):
        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise ImportFormatError(f"project file is not valid JSON: {exc}") from exc
    else:
        data = raw
    if not isinstance(data, dict):
        raise ImportFormatError("project file must contain a JSON object")

    data = migrate_document(data)
    _check_minimum_shape(data)

    try:
        document = ProjectDocument.model_validate(data)
    except ValidationError as exc:
        raise ImportFormatError(f"project file does not match the schema: {exc.error_count()} errors") from exc

    issues = duplicate_id_issues(document.backbone) + index_issues(document.backbone)
    if issues:
        raise ImportFormatError("; ".join(str(issue) for issue in issues))

    if document.baseline is None and document.backbone.scenes:
        document.baseline = document.backbone.upstream()
    return document


def import_project(store: BackboneStore, raw: str | bytes | dict[str, Any]) -> ProjectDocument:
    """Validate `raw` completely, then load it into `store`."""
    document = parse_document(raw)
    store.replace(document.backbone, document.baseline)
    logger.info(
        "project imported",
        extra={"imported_project_id": document.backbone.project_id, "scenes": len(document.backbone.scenes)},
    )
    return document
