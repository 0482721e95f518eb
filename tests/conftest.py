import httpx
import pytest

from fakes import FakeGenerationClient, stage_responses
from storygen.api.deps import get_generation_client
from storygen.core import settings as settings_module
from storygen.main import app
from storygen.services.projects import project_registry


@pytest.fixture()
def responses():
    return stage_responses()


@pytest.fixture()
def fake_client(responses):
    return FakeGenerationClient(responses)


@pytest.fixture(autouse=True)
def _isolate_state(tmp_path, monkeypatch):
    monkeypatch.setattr(settings_module.settings, "media_root", str(tmp_path / "media"))
    project_registry.clear()
    yield
    project_registry.clear()
    app.dependency_overrides.clear()


@pytest.fixture()
async def client(fake_client):
    app.dependency_overrides[get_generation_client] = lambda: fake_client
    async with app.router.lifespan_context(app):
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
            yield client
