import json

import pytest

from storygen.api.deps import get_asset_generator
from storygen.core.exceptions import GenerationBackendError
from storygen.main import app
from storygen.services.assets import AssetGenerator
from storygen.services.storage import LocalMediaStore

PREMISE = {"premise": "A courier has one night to return a stolen lantern.", "total_duration_sec": 40}
REGENERATION_ROLES = ["screenwriter", "director", "director_of_photography", "art_director"]


async def _create(client) -> dict:
    resp = await client.post("/v1/projects", json=PREMISE)
    assert resp.status_code == 201, resp.text
    return resp.json()


@pytest.mark.anyio
async def test_create_project_runs_pipeline(client, fake_client):
    project = await _create(client)

    assert project["wizard"]["step"] == 2
    assert project["regeneration_state"] == "IDLE"
    assert project["stale"] is False
    assert [s["id"] for s in project["backbone"]["scenes"]] == ["scene_1", "scene_2"]
    assert project["continuity"]["status"] == "APPROVED"
    assert fake_client.roles()[0] == "showrunner"

    resp = await client.get(f"/v1/projects/{project['project_id']}/progress")
    assert resp.json() == {
        "project_id": project["project_id"],
        "current_stage": "continuity",
        "step": 8,
        "total_steps": 8,
        "status": "succeeded",
        "error": None,
    }
    assert project["usage"]["bible"]["calls"] == 0


@pytest.mark.anyio
async def test_async_create_is_pollable(client, fake_client):
    resp = await client.post("/v1/projects/async", json=PREMISE)
    assert resp.status_code == 202
    accepted = resp.json()
    assert accepted["status"] == "new"
    assert accepted["step"] == 0

    progress = (await client.get(f"/v1/projects/{accepted['project_id']}/progress")).json()
    assert progress["status"] == "succeeded"
    assert progress["step"] == progress["total_steps"] == 8

    project = (await client.get(f"/v1/projects/{accepted['project_id']}")).json()
    assert project["wizard"]["step"] == 2
    assert [s["id"] for s in project["backbone"]["scenes"]] == ["scene_1", "scene_2"]


@pytest.mark.anyio
async def test_async_create_failure_is_reported(client, responses):
    responses["director"] = GenerationBackendError("service unavailable")

    resp = await client.post("/v1/projects/async", json=PREMISE)
    project_id = resp.json()["project_id"]

    progress = (await client.get(f"/v1/projects/{project_id}/progress")).json()
    assert progress["status"] == "failed"
    assert "service unavailable" in progress["error"]
    assert progress["current_stage"] == "shot_breakdown"
    project = (await client.get(f"/v1/projects/{project_id}")).json()
    assert project["wizard"]["step"] != 2


@pytest.mark.anyio
async def test_create_rejects_empty_premise(client, fake_client):
    resp = await client.post("/v1/projects", json={"premise": ""})
    assert resp.status_code == 422
    assert fake_client.calls == []


@pytest.mark.anyio
async def test_pipeline_failure_reports_stage(client, responses):
    responses["director"] = GenerationBackendError("service unavailable")

    resp = await client.post("/v1/projects", json=PREMISE)

    assert resp.status_code == 503
    assert resp.json()["stage"] == "shot_breakdown"
    assert "request_id" in resp.json()


@pytest.mark.anyio
async def test_unknown_project_is_404(client):
    resp = await client.get("/v1/projects/nope")
    assert resp.status_code == 404
    assert resp.headers["x-request-id"]


@pytest.mark.anyio
async def test_delete_project(client):
    project_id = (await _create(client))["project_id"]

    assert (await client.delete(f"/v1/projects/{project_id}")).status_code == 204
    assert (await client.get(f"/v1/projects/{project_id}")).status_code == 404


@pytest.mark.anyio
async def test_entity_edits_mark_scenes_stale(client):
    project_id = (await _create(client))["project_id"]
    base = f"/v1/projects/{project_id}"

    resp = await client.post(f"{base}/characters", json={"name": "Dae", "role": "courier"})
    assert resp.status_code == 201
    assert resp.json()["entity"]["id"] == "char_3"
    assert resp.json()["stale"] is True

    resp = await client.patch(f"{base}/characters/char_3", json={"description": "A rival courier."})
    assert resp.json()["entity"]["description"] == "A rival courier."

    resp = await client.post(f"{base}/characters", json={"id": "char_1", "name": "Copy"})
    assert resp.status_code == 409

    resp = await client.patch(f"{base}/locations/loc_9", json={"name": "Nowhere"})
    assert resp.status_code == 404

    resp = await client.get(f"{base}/shots")
    assert resp.status_code == 409

    assert (await client.delete(f"{base}/characters/char_3")).status_code == 204
    project = (await client.get(base)).json()
    assert project["stale"] is False
    assert project["backbone"]["retired_ids"] == ["char_3"]


@pytest.mark.anyio
async def test_unknown_collection_is_rejected(client):
    project_id = (await _create(client))["project_id"]
    resp = await client.post(f"/v1/projects/{project_id}/props", json={"name": "Map"})
    assert resp.status_code == 422


@pytest.mark.anyio
async def test_shot_list(client):
    project_id = (await _create(client))["project_id"]

    shots = (await client.get(f"/v1/projects/{project_id}/shots")).json()["shots"]

    assert [(s["scene_id"], s["shot_id"]) for s in shots] == [("scene_1", "shot_1"), ("scene_2", "shot_2")]
    assert shots[0]["final_image_prompt"] == "wide shot of a neon night market"


@pytest.mark.anyio
async def test_scene_ordering(client):
    project_id = (await _create(client))["project_id"]
    base = f"/v1/projects/{project_id}/scenes"

    resp = await client.post(base, json={"scene": {"synopsis": "Opening"}, "position": 1})
    assert resp.status_code == 201
    scenes = resp.json()["scenes"]
    assert [s["id"] for s in scenes] == ["scene_3", "scene_1", "scene_2"]
    assert [s["scene_index"] for s in scenes] == [1, 2, 3]

    resp = await client.put(f"{base}/order", json={"scene_ids": ["scene_1", "scene_2", "scene_3"]})
    assert [s["id"] for s in resp.json()["scenes"]] == ["scene_1", "scene_2", "scene_3"]

    resp = await client.post(f"{base}/scene_3/move", json={"position": 2})
    assert [s["id"] for s in resp.json()["scenes"]] == ["scene_1", "scene_3", "scene_2"]

    resp = await client.put(f"{base}/order", json={"scene_ids": ["scene_1"]})
    assert resp.status_code == 400

    resp = await client.delete(f"{base}/scene_3")
    assert [s["scene_index"] for s in resp.json()["scenes"]] == [1, 2]


@pytest.mark.anyio
async def test_update_meta(client):
    project_id = (await _create(client))["project_id"]
    resp = await client.patch(f"/v1/projects/{project_id}/meta", json={"title": "Lantern Run"})
    assert resp.status_code == 200
    assert resp.json()["title"] == "Lantern Run"
    project = (await client.get(f"/v1/projects/{project_id}")).json()
    assert project["stale"] is False


@pytest.mark.anyio
async def test_regeneration_with_clarification(client, responses, fake_client):
    responses["change_analyst"] = {
        "status": "QUESTION",
        "questions": [{"id": "q1", "text": "Does Joon still help Mina?"}],
    }
    project_id = (await _create(client))["project_id"]
    base = f"/v1/projects/{project_id}"

    resp = await client.post(f"{base}/regeneration")
    assert resp.status_code == 409

    await client.patch(f"{base}/characters/char_2", json={"role": "rival"})
    assert (await client.get(f"{base}/regeneration")).json()["state"] == "DETECTED"

    status = (await client.post(f"{base}/regeneration")).json()
    assert status["state"] == "AWAITING_ANSWERS"
    assert [q["id"] for q in status["questions"]] == ["q1"]

    resp = await client.post(f"{base}/regeneration/answers", json={"answers": {}})
    assert resp.status_code == 422
    assert resp.json()["missing"] == ["q1"]

    resp = await client.post(f"{base}/regeneration/answers", json={"answers": {"q1": "No"}})
    assert resp.status_code == 200
    assert resp.json()["state"] == "IDLE"
    assert resp.json()["stale"] is False
    assert fake_client.roles()[-4:] == REGENERATION_ROLES

    resp = await client.get(f"{base}/shots")
    assert resp.status_code == 200
    assert all(shot["final_image_prompt"] and shot["video_motion_prompt"] for shot in resp.json()["shots"])


@pytest.mark.anyio
async def test_export_and_import(client):
    project = await _create(client)
    project_id = project["project_id"]
    await client.patch(f"/v1/projects/{project_id}/items/item_1", json={"type": "weapon"})

    resp = await client.get(f"/v1/projects/{project_id}/export")
    assert resp.status_code == 200
    assert project_id in resp.headers["content-disposition"]
    document = resp.json()

    imported = await client.post("/v1/projects/import", json=document)
    assert imported.status_code == 201
    assert imported.json()["project_id"] == project_id
    assert imported.json()["stale"] is True
    assert imported.json()["regeneration_state"] == "DETECTED"

    other = await _create(client)
    resp = await client.put(f"/v1/projects/{other['project_id']}/import", json=document)
    assert resp.status_code == 200
    assert resp.json()["backbone"]["items"][0]["type"] == "weapon"


@pytest.mark.anyio
async def test_import_rejects_malformed_document(client):
    project = await _create(client)
    document = {"schema_version": 2, "wizard": {"premise": ""}, "backbone": {}}

    resp = await client.put(f"/v1/projects/{project['project_id']}/import", json=document)

    assert resp.status_code == 400
    current = (await client.get(f"/v1/projects/{project['project_id']}")).json()
    assert current["backbone"] == project["backbone"]


class _StubImageGemini:
    def generate_image(self, prompt, aspect_ratio="16:9", **kwargs):
        return b"png", "image/png"


@pytest.mark.anyio
async def test_reference_image(client, tmp_path):
    app.dependency_overrides[get_asset_generator] = lambda: AssetGenerator(
        _StubImageGemini(), LocalMediaStore(root_dir=str(tmp_path / "media"), url_prefix="/media")
    )
    project_id = (await _create(client))["project_id"]

    resp = await client.post(f"/v1/projects/{project_id}/locations/loc_1/reference-image")

    assert resp.status_code == 200
    url = resp.json()["ref_image_url"]
    assert url.startswith("/media/loc_1-")
    project = (await client.get(f"/v1/projects/{project_id}")).json()
    assert project["backbone"]["locations"][0]["ref_image_url"] == url
    assert project["stale"] is True
    assert json.dumps(project["backbone"]["locations"][0])
