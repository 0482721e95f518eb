from functools import lru_cache

from fastapi import Depends

from storygen.core.gemini_factory import build_gemini_client
from storygen.core.settings import settings
from storygen.services.assets import AssetGenerator
from storygen.services.generation import GeminiGenerationClient, GenerationClient
from storygen.services.projects import ProjectRegistry, project_registry
from storygen.services.storage import LocalMediaStore


def get_project_registry() -> ProjectRegistry:
    return project_registry


def get_generation_client() -> GenerationClient:
    return GeminiGenerationClient(build_gemini_client())


@lru_cache(maxsize=1)
def get_asset_generator() -> AssetGenerator:
    # single instance; the in-flight guard is process-wide
    return AssetGenerator(
        build_gemini_client(),
        LocalMediaStore(root_dir=settings.media_root, url_prefix=settings.media_url_prefix),
    )


RegistryDep = Depends(get_project_registry)
GenerationClientDep = Depends(get_generation_client)
AssetGeneratorDep = Depends(get_asset_generator)
