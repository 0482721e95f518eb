"""Declarative stage registry.

A stage is data: its role, the stages it depends on, how to build its prompt
context, the schema its output must satisfy and how that output merges into the
backbone. Adding a stage means adding an entry to `STAGES`.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel

from storygen.backbone.models import ProjectBackbone
from storygen.core.exceptions import ConfigurationError
from storygen.pipeline import context, merge
from storygen.pipeline.context import StageInput
from storygen.pipeline.merge import validate_integrity
from storygen.pipeline.schemas import (
    ArtDirectionOutput,
    BibleOutput,
    CastOutput,
    CinematographyOutput,
    ContinuityReport,
    LocationsOutput,
    ScreenplayOutput,
    ShotBreakdownOutput,
)
ContextBuilder = Callable[[StageInput], dict[str, Any]]
MergeFn = Callable[[ProjectBackbone, Any], None]
Validator = Callable[[ProjectBackbone], list[str]]


@dataclass(frozen=True)
class StageDefinition:
    name: str
    role: str
    output_schema: type[BaseModel]
    build_context: ContextBuilder
    depends_on: tuple[str, ...] = ()
    # None marks a terminal validator: its output is a report, not backbone content.
    merge: MergeFn | None = None
    validate: Validator | None = validate_integrity
    rerun_on_regeneration: bool = False

    @property
    def is_validator(self) -> bool:
        return self.merge is None


STAGES: tuple[StageDefinition, ...] = (
    StageDefinition(
        name="bible",
        role="showrunner",
        output_schema=BibleOutput,
        build_context=context.build_bible_context,
        merge=merge.merge_bible,
    ),
    StageDefinition(
        name="cast",
        role="casting_director",
        depends_on=("bible",),
        output_schema=CastOutput,
        build_context=context.build_cast_context,
        merge=merge.merge_cast,
    ),
    StageDefinition(
        name="locations",
        role="location_scout",
        depends_on=("bible", "cast"),
        output_schema=LocationsOutput,
        build_context=context.build_locations_context,
        merge=merge.merge_locations,
    ),
    StageDefinition(
        name="screenplay",
        role="screenwriter",
        depends_on=("cast", "locations"),
        output_schema=ScreenplayOutput,
        build_context=context.build_screenplay_context,
        merge=merge.merge_screenplay,
        rerun_on_regeneration=True,
    ),
    StageDefinition(
        name="shot_breakdown",
        role="director",
        depends_on=("screenplay",),
        output_schema=ShotBreakdownOutput,
        build_context=context.build_shot_breakdown_context,
        merge=merge.merge_shot_breakdown,
        rerun_on_regeneration=True,
    ),
    StageDefinition(
        name="cinematography",
        role="director_of_photography",
        depends_on=("shot_breakdown",),
        output_schema=CinematographyOutput,
        build_context=context.build_cinematography_context,
        merge=merge.merge_cinematography,
        rerun_on_regeneration=True,
    ),
    StageDefinition(
        name="art_direction",
        role="art_director",
        depends_on=("cinematography",),
        output_schema=ArtDirectionOutput,
        build_context=context.build_art_direction_context,
        merge=merge.merge_art_direction,
        rerun_on_regeneration=True,
    ),
    StageDefinition(
        name="continuity",
        role="script_supervisor",
        depends_on=("art_direction",),
        output_schema=ContinuityReport,
        build_context=context.build_continuity_context,
        validate=None,
    ),
)


def sort_stages(stages: Iterable[StageDefinition]) -> list[StageDefinition]:
    """Topological order by `depends_on`; declaration order breaks ties.

    Raises:
        ConfigurationError: On duplicate names, unknown dependencies or cycles.
    """
    stages = list(stages)
    by_name: dict[str, StageDefinition] = {}
    for stage in stages:
        if stage.name in by_name:
            raise ConfigurationError(f"duplicate stage name '{stage.name}'")
        by_name[stage.name] = stage

    for stage in stages:
        unknown = [dep for dep in stage.depends_on if dep not in by_name]
        if unknown:
            raise ConfigurationError(f"stage '{stage.name}' depends on unknown stages {unknown}")

    ordered: list[StageDefinition] = []
    done: set[str] = set()
    while len(ordered) < len(stages):
        ready = [s for s in stages if s.name not in done and all(d in done for d in s.depends_on)]
        if not ready:
            pending = [s.name for s in stages if s.name not in done]
            raise ConfigurationError(f"stage dependencies form a cycle among {pending}")
        ordered.append(ready[0])
        done.add(ready[0].name)
    return ordered


def regeneration_stages(stages: Iterable[StageDefinition]) -> list[StageDefinition]:
    return [s for s in sort_stages(stages) if s.rerun_on_regeneration]
