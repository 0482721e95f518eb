import os

import pytest

from fakes import sample_backbone
from storygen.backbone.models import EntityKind, StyleGuide
from storygen.core.exceptions import AssetGenerationError, AssetGenerationInProgressError
from storygen.services.assets import AssetGenerator, describe_entity, style_context_for
from storygen.services.storage import LocalMediaStore
from storygen.services.vertex_gemini import GeminiContentFilterError


class StubImageGemini:
    def __init__(self, on_call=None, error=None):
        self.prompts = []
        self.on_call = on_call
        self.error = error

    def generate_image(self, prompt, aspect_ratio="16:9", **kwargs):
        self.prompts.append(prompt)
        if self.on_call:
            on_call, self.on_call = self.on_call, None
            on_call()
        if self.error:
            raise self.error
        return b"\x89PNG fake", "image/png"


@pytest.fixture()
def media_store(tmp_path):
    return LocalMediaStore(root_dir=str(tmp_path / "media"), url_prefix="/media/")


def test_save_bytes_writes_file_and_url(media_store):
    path, url = media_store.save_bytes(b"data", "image/png", stem="char 1/../x")

    assert os.path.exists(path)
    assert url.startswith("/media/char-1-x-")
    assert url.endswith(".png")
    assert "/" not in os.path.relpath(path, media_store.root_dir)


def test_unknown_mime_gets_bin_extension(media_store):
    _, url = media_store.save_bytes(b"data", "application/x-thing")
    assert url.endswith(".bin")


def test_generate_for_entity_returns_url_and_renders_prompt(media_store):
    gemini = StubImageGemini()
    generator = AssetGenerator(gemini, media_store)
    backbone = sample_backbone()
    location = backbone.locations[0]

    url = generator.generate_for_entity(EntityKind.LOCATION, location, StyleGuide(visual_style="noir"))

    assert url.startswith("/media/loc_1-")
    assert "Night Market" in gemini.prompts[0]
    assert "noir" in gemini.prompts[0]
    assert not generator.is_in_flight("loc_1")


def test_second_request_for_same_asset_is_rejected(media_store):
    nested = {}
    generator = None

    def reenter():
        nested["in_flight"] = generator.is_in_flight("char_1")
        with pytest.raises(AssetGenerationInProgressError):
            generator.generate_asset(EntityKind.CHARACTER, "Mina", "noir", asset_id="char_1")
        nested["other"] = generator.generate_asset(EntityKind.ITEM, "Lantern", "noir", asset_id="item_1")

    generator = AssetGenerator(StubImageGemini(on_call=reenter), media_store)
    generator.generate_asset(EntityKind.CHARACTER, "Mina", "noir", asset_id="char_1")

    assert nested["in_flight"] is True
    assert nested["other"].startswith("/media/item_1-")


def test_backend_failure_is_wrapped_and_releases_guard(media_store):
    generator = AssetGenerator(StubImageGemini(error=GeminiContentFilterError("blocked")), media_store)

    with pytest.raises(AssetGenerationError, match="char_1"):
        generator.generate_asset(EntityKind.CHARACTER, "Mina", "noir", asset_id="char_1")

    assert not generator.is_in_flight("char_1")


def test_describe_entity_prefers_visual_prompt():
    backbone = sample_backbone()
    backbone.characters[0].visual_prompt = "young courier, yellow rain jacket"
    assert describe_entity(backbone.characters[0]) == "young courier, yellow rain jacket"
    assert describe_entity(backbone.characters[1]) == "Joon. A stall owner."


def test_style_context_defaults():
    assert style_context_for(StyleGuide()) == "cinematic, photorealistic"
    assert style_context_for(StyleGuide(visual_style="ink", color_palette="teal")) == "ink, palette: teal"
