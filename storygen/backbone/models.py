"""Canonical production bible document.

The `ProjectBackbone` is the single source of truth produced by the stage
pipeline and edited by the user. Characters, locations and items are the
upstream entities watched by the regeneration workflow; scenes and their
shots are generated against a baseline snapshot of those entities.
"""

from __future__ import annotations

import uuid
from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

SCHEMA_VERSION = 2

ScriptLineType = Literal["slugline", "action", "dialogue", "parenthetical", "transition"]
ShotStatus = Literal["pending", "processing", "ready"]


class EntityKind(str, Enum):
    CHARACTER = "character"
    LOCATION = "location"
    ITEM = "item"

    @property
    def collection(self) -> str:
        return {
            EntityKind.CHARACTER: "characters",
            EntityKind.LOCATION: "locations",
            EntityKind.ITEM: "items",
        }[self]

    @property
    def id_prefix(self) -> str:
        return {
            EntityKind.CHARACTER: "char",
            EntityKind.LOCATION: "loc",
            EntityKind.ITEM: "item",
        }[self]

    @classmethod
    def from_collection(cls, collection: str) -> "EntityKind":
        for kind in cls:
            if kind.collection == collection:
                return kind
        raise ValueError(f"unknown entity collection: {collection}")


class _Model(BaseModel):
    model_config = ConfigDict(extra="ignore", validate_assignment=True)


class ProjectMeta(_Model):
    title: str = ""
    logline: str = ""
    genre: str = ""
    tone: str = ""
    target_audience: str = ""
    message: str = ""


class StyleGuide(_Model):
    visual_style: str = ""
    color_palette: str = ""
    lighting_mood: str = ""
    camera_language: str = ""
    reference_movies: list[str] = Field(default_factory=list)


class CharacterVisualDetails(_Model):
    age: str = ""
    gender: str = ""
    ethnicity: str = ""
    hair: str = ""
    eyes: str = ""
    clothing: str = ""
    accessories: str = ""
    body_type: str = ""


class VoiceSpecs(_Model):
    gender: str = ""
    age_group: str = "adult"
    accent: str = "neutral"
    pitch: float = 1.0
    speed: float = 1.0
    tone: str = "neutral"


class Character(_Model):
    id: str = ""
    name: str = Field(min_length=1)
    role: str = ""
    description: str = ""
    visual_details: CharacterVisualDetails = Field(default_factory=CharacterVisualDetails)
    visual_prompt: str = ""
    voice_specs: VoiceSpecs | None = None
    ref_image_url: str | None = None


class Location(_Model):
    id: str = ""
    name: str = Field(min_length=1)
    description: str = ""
    environment_prompt: str = ""
    interior_exterior: Literal["INT", "EXT"] = "EXT"
    lighting_default: str = ""
    audio_ambiance: str = ""
    visual_prompt: str = ""
    ref_image_url: str | None = None


class Item(_Model):
    id: str = ""
    name: str = Field(min_length=1)
    description: str = ""
    type: str = "prop"
    visual_details: str = ""
    visual_prompt: str = ""
    ref_image_url: str | None = None


class ScriptLine(_Model):
    id: str = ""
    type: ScriptLineType
    content: str = ""
    speaker: str | None = None


class ScriptContent(_Model):
    lines: list[ScriptLine] = Field(default_factory=list)


class SluglineElements(_Model):
    int_ext: str = ""
    location: str = ""
    time: str = ""


class ShotComposition(_Model):
    shot_type: str = "Wide Shot"
    camera_movement: str = "Static"
    angle: str = "Eye Level"
    focal_length: str = ""
    depth_of_field: str = ""
    lighting: str = ""


class ShotContent(_Model):
    ui_description: str = ""
    characters_in_shot: list[str] = Field(default_factory=list)
    items_in_shot: list[str] = Field(default_factory=list)
    final_image_prompt: str = ""
    video_motion_prompt: str = ""


class ShotAudio(_Model):
    audio_context: str = ""
    is_voice_over: bool = False
    speaker_ref_id: str | None = None
    text_content: str | None = None


class VideoGeneration(_Model):
    status: ShotStatus = "pending"
    motion_strength: float = 0.5
    video_file_url: str | None = None


class Shot(_Model):
    id: str = ""
    shot_index: int = 0
    duration_sec: float = 0.0
    composition: ShotComposition = Field(default_factory=ShotComposition)
    content: ShotContent = Field(default_factory=ShotContent)
    audio: ShotAudio = Field(default_factory=ShotAudio)
    video_generation: VideoGeneration = Field(default_factory=VideoGeneration)


class Scene(_Model):
    id: str = ""
    scene_index: int = 0
    slugline: str = ""
    slugline_elements: SluglineElements = Field(default_factory=SluglineElements)
    synopsis: str = ""
    location_ref_id: str | None = None
    narrative_goal: str = ""
    estimated_duration_sec: float = 0.0
    script_content: ScriptContent = Field(default_factory=ScriptContent)
    shots: list[Shot] = Field(default_factory=list)


class FinalRender(_Model):
    total_duration_sec: float = 0.0
    video_file_url: str | None = None


class UpstreamSnapshot(_Model):
    """Frozen copy of the entities that scenes are generated against."""

    characters: list[Character] = Field(default_factory=list)
    locations: list[Location] = Field(default_factory=list)
    items: list[Item] = Field(default_factory=list)


class ProjectBackbone(_Model):
    schema_version: int = SCHEMA_VERSION
    project_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    meta: ProjectMeta = Field(default_factory=ProjectMeta)
    style_guide: StyleGuide = Field(default_factory=StyleGuide)
    characters: list[Character] = Field(default_factory=list)
    locations: list[Location] = Field(default_factory=list)
    items: list[Item] = Field(default_factory=list)
    scenes: list[Scene] = Field(default_factory=list)
    retired_ids: list[str] = Field(default_factory=list)
    final_render: FinalRender = Field(default_factory=FinalRender)

    def upstream(self) -> UpstreamSnapshot:
        """Deep copy of characters, locations and items."""
        return UpstreamSnapshot(
            characters=[c.model_copy(deep=True) for c in self.characters],
            locations=[loc.model_copy(deep=True) for loc in self.locations],
            items=[i.model_copy(deep=True) for i in self.items],
        )

    def collection(self, kind: EntityKind) -> list:
        return getattr(self, kind.collection)

    def all_shots(self) -> list[Shot]:
        return [shot for scene in self.scenes for shot in scene.shots]


class PipelineOptions(_Model):
    """User settings that shape generation (wizard inputs)."""

    total_duration_sec: int = Field(default=60, ge=5, le=3600)
    pacing: Literal["slow", "standard", "fast"] = "standard"
    language: str = "English"
    tone: str = ""
    target_audience: str = ""
    visual_style: str = ""
    aspect_ratio: Literal["16:9", "9:16", "1:1", "4:3", "3:4"] = "16:9"
