from fastapi import APIRouter

from storygen.api.v1 import projects, regeneration


api_router = APIRouter(prefix="/v1")

api_router.include_router(regeneration.router)
api_router.include_router(projects.router)
