import logging
from dataclasses import asdict
from typing import Any

from fastapi import APIRouter, BackgroundTasks, Body, Response

from storygen.api.deps import AssetGeneratorDep, GenerationClientDep, RegistryDep
from storygen.api.v1.schemas import (
    EntityCollection,
    EntityRead,
    EntityWrite,
    MetaUpdate,
    ProgressRead,
    ProjectCreate,
    ProjectRead,
    ReferenceImageRead,
    SceneInsert,
    SceneMove,
    SceneReorder,
    SceneReviewRead,
    ScenesRead,
    ShotListItem,
    ShotListRead,
)
from storygen.backbone.models import ProjectMeta
from storygen.backbone.persistence import export_project, parse_document
from storygen.core.request_context import log_context
from storygen.services.projects import ProjectSession


router = APIRouter(tags=["projects"])
logger = logging.getLogger(__name__)


def _project_read(session: ProjectSession) -> ProjectRead:
    result = session.last_result
    return ProjectRead(
        project_id=session.project_id,
        wizard=session.wizard,
        backbone=session.store.backbone,
        regeneration_state=session.workflow.state,
        stale=session.store.is_stale(),
        continuity=result.continuity if result else None,
        continuity_issues=result.warning.issues if result and result.warning else [],
        scene_reviews=[SceneReviewRead(**asdict(r)) for r in result.scene_reviews] if result else [],
        usage=result.usage if result else {},
    )


def _progress_read(session: ProjectSession) -> ProgressRead:
    return ProgressRead(project_id=session.project_id, status=session.status, error=session.error, **session.progress)


@router.post("/projects", response_model=ProjectRead, status_code=201)
def create_project(payload: ProjectCreate, registry=RegistryDep, client=GenerationClientDep):
    session = registry.create(payload.to_wizard(), client)
    try:
        session.generate()
    except Exception:
        registry.remove(session.project_id)
        raise
    return _project_read(session)


def _generate_background(session: ProjectSession):
    """Background task for an accepted project; failures stay on the session."""
    try:
        session.generate()
    except Exception as e:
        logger.exception("project_generation_failed project_id=%s error=%s", session.project_id, e)


@router.post("/projects/async", response_model=ProgressRead, status_code=202)
def create_project_async(
    payload: ProjectCreate,
    background_tasks: BackgroundTasks,
    registry=RegistryDep,
    client=GenerationClientDep,
):
    """Accept a premise and generate in the background.

    Poll `/projects/{project_id}/progress` until `status` is `succeeded` or `failed`.
    """
    session = registry.create(payload.to_wizard(), client)
    background_tasks.add_task(_generate_background, session)
    return _progress_read(session)


@router.post("/projects/import", response_model=ProjectRead, status_code=201)
def import_new_project(payload: dict[str, Any] = Body(...), registry=RegistryDep, client=GenerationClientDep):
    document = parse_document(payload)
    session = registry.create_from_document(document, client)
    return _project_read(session)


@router.get("/projects/{project_id}", response_model=ProjectRead)
def get_project(project_id: str, registry=RegistryDep):
    return _project_read(registry.get(project_id))


@router.delete("/projects/{project_id}", status_code=204)
def delete_project(project_id: str, registry=RegistryDep):
    registry.remove(project_id)
    return Response(status_code=204)


@router.get("/projects/{project_id}/progress", response_model=ProgressRead)
def get_progress(project_id: str, registry=RegistryDep):
    return _progress_read(registry.get(project_id))


@router.get("/projects/{project_id}/export")
def export_project_document(project_id: str, registry=RegistryDep):
    session = registry.get(project_id)
    return Response(
        content=export_project(session.store, session.wizard),
        media_type="application/json",
        headers={"content-disposition": f'attachment; filename="{session.project_id}.json"'},
    )


@router.put("/projects/{project_id}/import", response_model=ProjectRead)
def import_into_project(project_id: str, payload: dict[str, Any] = Body(...), registry=RegistryDep):
    session = registry.get(project_id)
    document = parse_document(payload)
    session.load(document)
    if session.project_id != project_id:
        registry.rekey(project_id, session)
    return _project_read(session)


@router.patch("/projects/{project_id}/meta", response_model=ProjectMeta)
def update_meta(project_id: str, payload: MetaUpdate, registry=RegistryDep):
    session = registry.get(project_id)
    return session.store.update_meta(payload.model_dump(exclude_unset=True, exclude_none=True))


@router.get("/projects/{project_id}/scenes", response_model=ScenesRead)
def list_scenes(project_id: str, registry=RegistryDep):
    session = registry.get(project_id)
    return ScenesRead(scenes=session.store.backbone.scenes)


@router.post("/projects/{project_id}/scenes", response_model=ScenesRead, status_code=201)
def insert_scene(project_id: str, payload: SceneInsert, registry=RegistryDep):
    session = registry.get(project_id)
    session.store.insert_scene(payload.scene, payload.position)
    return ScenesRead(scenes=session.store.backbone.scenes)


@router.delete("/projects/{project_id}/scenes/{scene_id}", response_model=ScenesRead)
def delete_scene(project_id: str, scene_id: str, registry=RegistryDep):
    session = registry.get(project_id)
    session.store.delete_scene(scene_id)
    return ScenesRead(scenes=session.store.backbone.scenes)


@router.put("/projects/{project_id}/scenes/order", response_model=ScenesRead)
def reorder_scenes(project_id: str, payload: SceneReorder, registry=RegistryDep):
    session = registry.get(project_id)
    session.store.reorder_scenes(payload.scene_ids)
    return ScenesRead(scenes=session.store.backbone.scenes)


@router.post("/projects/{project_id}/scenes/{scene_id}/move", response_model=ScenesRead)
def move_scene(project_id: str, scene_id: str, payload: SceneMove, registry=RegistryDep):
    session = registry.get(project_id)
    session.store.move_scene(scene_id, payload.position)
    return ScenesRead(scenes=session.store.backbone.scenes)


@router.get("/projects/{project_id}/shots", response_model=ShotListRead)
def list_shots(project_id: str, registry=RegistryDep):
    """Flattened shot list for the render step; refused while scenes are stale."""
    session = registry.get(project_id)
    session.workflow.assert_scenes_current()
    shots = [
        ShotListItem(
            scene_id=scene.id,
            scene_index=scene.scene_index,
            shot_id=shot.id,
            shot_index=shot.shot_index,
            duration_sec=shot.duration_sec,
            final_image_prompt=shot.content.final_image_prompt,
            video_motion_prompt=shot.content.video_motion_prompt,
        )
        for scene in session.store.backbone.scenes
        for shot in scene.shots
    ]
    return ShotListRead(shots=shots)


@router.post("/projects/{project_id}/{collection}", response_model=EntityRead, status_code=201)
def add_entity(project_id: str, collection: EntityCollection, payload: EntityWrite, registry=RegistryDep):
    session = registry.get(project_id)
    entity = session.store.add_entity(collection.kind, payload.model_dump(exclude_none=True))
    return EntityRead(kind=collection.kind, entity=entity.model_dump(mode="json"), stale=session.store.is_stale())


@router.patch("/projects/{project_id}/{collection}/{entity_id}", response_model=EntityRead)
def update_entity(
    project_id: str,
    collection: EntityCollection,
    entity_id: str,
    payload: EntityWrite,
    registry=RegistryDep,
):
    session = registry.get(project_id)
    changes = payload.model_dump(exclude={"id"})
    entity = session.store.update_entity(collection.kind, entity_id, changes)
    return EntityRead(kind=collection.kind, entity=entity.model_dump(mode="json"), stale=session.store.is_stale())


@router.delete("/projects/{project_id}/{collection}/{entity_id}", status_code=204)
def remove_entity(project_id: str, collection: EntityCollection, entity_id: str, registry=RegistryDep):
    session = registry.get(project_id)
    session.store.remove_entity(collection.kind, entity_id)
    return Response(status_code=204)


@router.post(
    "/projects/{project_id}/{collection}/{entity_id}/reference-image",
    response_model=ReferenceImageRead,
)
def generate_reference_image(
    project_id: str,
    collection: EntityCollection,
    entity_id: str,
    registry=RegistryDep,
    assets=AssetGeneratorDep,
):
    session = registry.get(project_id)
    entity = session.store.get_entity(collection.kind, entity_id)
    with log_context(project_id=session.project_id):
        url = assets.generate_for_entity(collection.kind, entity, session.store.backbone.style_guide)
    session.store.set_reference_image(collection.kind, entity_id, url)
    return ReferenceImageRead(entity_id=entity_id, ref_image_url=url)
