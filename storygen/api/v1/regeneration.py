from fastapi import APIRouter

from storygen.api.deps import RegistryDep
from storygen.api.v1.schemas import AnswersSubmit, RegenerationStatusRead


router = APIRouter(tags=["regeneration"])


@router.get("/projects/{project_id}/regeneration", response_model=RegenerationStatusRead)
def get_regeneration_status(project_id: str, registry=RegistryDep):
    session = registry.get(project_id)
    return RegenerationStatusRead(**session.workflow.status().model_dump())


@router.post("/projects/{project_id}/regeneration", response_model=RegenerationStatusRead)
def start_regeneration(project_id: str, registry=RegistryDep):
    """Analyse upstream edits and either regenerate or return clarification questions."""
    session = registry.get(project_id)
    status = session.workflow.start_regeneration()
    return RegenerationStatusRead(**status.model_dump())


@router.post("/projects/{project_id}/regeneration/answers", response_model=RegenerationStatusRead)
def submit_answers(project_id: str, payload: AnswersSubmit, registry=RegistryDep):
    session = registry.get(project_id)
    status = session.workflow.submit_answers(payload.answers)
    return RegenerationStatusRead(**status.model_dump())
