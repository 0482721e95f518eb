import contextvars
from contextlib import contextmanager
import uuid

request_id_var: contextvars.ContextVar[str | None] = contextvars.ContextVar("request_id", default=None)
stage_name_var: contextvars.ContextVar[str | None] = contextvars.ContextVar("stage_name", default=None)
project_id_var: contextvars.ContextVar[str | None] = contextvars.ContextVar("project_id", default=None)
scene_id_var: contextvars.ContextVar[str | None] = contextvars.ContextVar("scene_id", default=None)


def set_request_id(request_id: str) -> contextvars.Token:
    """Store the current request ID in a context variable."""
    return request_id_var.set(request_id)


def reset_request_id(token: contextvars.Token) -> None:
    """Reset the request ID context variable to a previous state."""
    request_id_var.reset(token)


def get_request_id() -> str | None:
    """Retrieve the current request ID from the context."""
    return request_id_var.get()


def _normalize_id(value: uuid.UUID | str | None) -> str | None:
    if value is None:
        return None
    return str(value)


def get_stage_name() -> str | None:
    """Retrieve the current pipeline stage name for logging."""
    return stage_name_var.get()


def get_project_id() -> str | None:
    """Retrieve the current project ID for logging."""
    return project_id_var.get()


def get_scene_id() -> str | None:
    return scene_id_var.get()


@contextmanager
def log_context(
    stage_name: str | None = None,
    project_id: uuid.UUID | str | None = None,
    scene_id: uuid.UUID | str | None = None,
):
    """Temporarily scope stage/project/scene context for structured logs."""
    tokens: list[tuple[contextvars.ContextVar[str | None], contextvars.Token]] = []
    if stage_name is not None:
        tokens.append((stage_name_var, stage_name_var.set(stage_name)))
    if project_id is not None:
        tokens.append((project_id_var, project_id_var.set(_normalize_id(project_id))))
    if scene_id is not None:
        tokens.append((scene_id_var, scene_id_var.set(_normalize_id(scene_id))))
    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)
