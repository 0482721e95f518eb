"""Reference media generation for upstream entities.

One user action maps to one outstanding request per asset id; a second request
for the same asset while the first is in flight is rejected. Different assets
are independent.
"""

from __future__ import annotations

import logging
import threading
from typing import Any

from storygen.backbone.models import Character, EntityKind, Item, Location, StyleGuide
from storygen.core.exceptions import AssetGenerationError, AssetGenerationInProgressError
from storygen.prompts.loader import render_prompt
from storygen.services.storage import LocalMediaStore
from storygen.services.vertex_gemini import GeminiClient, GeminiError

logger = logging.getLogger(__name__)


def describe_entity(entity: Character | Location | Item) -> str:
    """Visual descriptor for an entity, preferring the art-directed prompt."""
    if entity.visual_prompt:
        return entity.visual_prompt
    if isinstance(entity, Character):
        details = entity.visual_details.model_dump()
        traits = ", ".join(f"{k.replace('_', ' ')}: {v}" for k, v in details.items() if v)
        return ". ".join(part for part in (entity.name, entity.description, traits) if part)
    if isinstance(entity, Location):
        return ". ".join(
            part
            for part in (entity.name, entity.environment_prompt or entity.description, entity.lighting_default)
            if part
        )
    return ". ".join(part for part in (entity.name, entity.description, entity.visual_details) if part)


def style_context_for(style_guide: StyleGuide) -> str:
    parts = [
        style_guide.visual_style,
        f"palette: {style_guide.color_palette}" if style_guide.color_palette else "",
        f"lighting: {style_guide.lighting_mood}" if style_guide.lighting_mood else "",
    ]
    return ", ".join(p for p in parts if p) or "cinematic, photorealistic"


class AssetGenerator:
    def __init__(self, gemini: GeminiClient, media_store: LocalMediaStore, aspect_ratio: str = "1:1"):
        self.gemini = gemini
        self.media_store = media_store
        self.aspect_ratio = aspect_ratio
        self._in_flight: set[str] = set()
        self._lock = threading.Lock()

    def is_in_flight(self, asset_id: str) -> bool:
        with self._lock:
            return asset_id in self._in_flight

    def generate_asset(
        self,
        kind: EntityKind | str,
        descriptor: str,
        style_context: str,
        asset_id: str | None = None,
    ) -> str:
        """Generate a reference image and return its public uri.

        Raises:
            AssetGenerationInProgressError: `asset_id` already has a request in flight.
            AssetGenerationError: The backend or the media store failed.
        """
        kind_value = kind.value if isinstance(kind, EntityKind) else str(kind)
        key = asset_id or f"{kind_value}:{descriptor}"
        with self._lock:
            if key in self._in_flight:
                raise AssetGenerationInProgressError(
                    f"asset '{key}' already has a generation in flight",
                    detail="this asset is already being generated",
                )
            self._in_flight.add(key)

        try:
            prompt = render_prompt(
                "prompt_asset_reference_image",
                kind=kind_value,
                descriptor=descriptor,
                style_context=style_context,
            )
            image_bytes, mime_type = self.gemini.generate_image(prompt=prompt, aspect_ratio=self.aspect_ratio)
            _, url = self.media_store.save_bytes(image_bytes, mime_type, stem=asset_id or kind_value)
        except GeminiError as exc:
            logger.warning("asset generation failed", extra={"asset_id": key, "error": str(exc)})
            raise AssetGenerationError(
                f"image generation failed for '{key}': {exc}",
                detail="image generation failed, please retry",
            ) from exc
        except OSError as exc:
            raise AssetGenerationError(
                f"could not store media for '{key}': {exc}",
                detail="could not store generated image",
            ) from exc
        finally:
            with self._lock:
                self._in_flight.discard(key)

        logger.info("asset generated", extra={"asset_id": key, "kind": kind_value, "url": url})
        return url

    def generate_for_entity(self, kind: EntityKind, entity: Any, style_guide: StyleGuide) -> str:
        return self.generate_asset(kind, describe_entity(entity), style_context_for(style_guide), asset_id=entity.id)
