from contextlib import asynccontextmanager
import logging
import time
import uuid

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
from fastapi.responses import JSONResponse, PlainTextResponse

from storygen.api.v1.router import api_router
from storygen.core.exceptions import (
    AppError,
    AssetGenerationError,
    AssetGenerationInProgressError,
    ClarificationIncompleteError,
    ConfigurationError,
    DuplicateEntityError,
    EntityNotFoundError,
    GenerationBackendError,
    GenerationError,
    ImportFormatError,
    InvalidStateTransitionError,
    RegenerationBusyError,
    SchemaValidationError,
    StaleScenesError,
)
from storygen.core.logging import configure_logging
from storygen.core.metrics import get_metrics_payload
from storygen.core.request_context import (
    reset_request_id,
    set_request_id,
)
from storygen.core.settings import settings


logger = logging.getLogger("storygen")

# Most specific first; the first isinstance match wins.
_STATUS_CODES: list[tuple[type[AppError], int]] = [
    (EntityNotFoundError, 404),
    (DuplicateEntityError, 409),
    (RegenerationBusyError, 409),
    (AssetGenerationInProgressError, 409),
    (InvalidStateTransitionError, 409),
    (StaleScenesError, 409),
    (ClarificationIncompleteError, 422),
    (ImportFormatError, 400),
    (SchemaValidationError, 502),
    (GenerationBackendError, 503),
    (GenerationError, 502),
    (AssetGenerationError, 502),
    (ConfigurationError, 500),
]


def _status_for(exc: AppError) -> int:
    for exc_type, status_code in _STATUS_CODES:
        if isinstance(exc, exc_type):
            return status_code
    return 400


def _is_polling_request(method: str, path: str) -> bool:
    if method != "GET":
        return False
    return path.startswith("/v1/projects/") and (
        path.endswith("/progress") or path.endswith("/regeneration")
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(settings.log_level, settings.log_file)
    yield


app = FastAPI(lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.mount(
    settings.media_url_prefix,
    StaticFiles(directory=settings.media_root, check_dir=False),
    name="media",
)


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
    request.state.request_id = request_id
    token = set_request_id(request_id)
    start = time.perf_counter()
    try:
        try:
            response = await call_next(request)
        except Exception:
            duration_ms = (time.perf_counter() - start) * 1000
            logger.exception(
                "request_failed",
                extra={
                    "method": request.method,
                    "path": request.url.path,
                    "duration_ms": duration_ms,
                },
            )
            raise

        duration_ms = (time.perf_counter() - start) * 1000
        request_logger = logger.debug if _is_polling_request(request.method, request.url.path) else logger.info
        request_logger(
            "request_complete",
            extra={
                "method": request.method,
                "path": request.url.path,
                "status": response.status_code,
                "duration_ms": duration_ms,
            },
        )
        response.headers["x-request-id"] = request_id
        return response
    finally:
        reset_request_id(token)


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    request_id = getattr(request.state, "request_id", None)
    status_code = _status_for(exc)
    content: dict[str, object] = {"detail": exc.detail, "message": str(exc), "request_id": request_id}
    if isinstance(exc, GenerationError) and exc.stage:
        content["stage"] = exc.stage
    if isinstance(exc, SchemaValidationError) and exc.errors:
        content["errors"] = exc.errors[:20]
    if isinstance(exc, ClarificationIncompleteError):
        content["missing"] = exc.missing
        content["unexpected"] = exc.unexpected
    log = logger.error if status_code >= 500 else logger.warning
    log(
        "request_rejected",
        extra={
            "error_type": type(exc).__name__,
            "status": status_code,
            "stage": getattr(exc, "stage", None),
            "error_message": str(exc),
        },
    )
    return JSONResponse(status_code=status_code, content=content)


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    request_id = getattr(request.state, "request_id", None)
    return JSONResponse(
        status_code=400,
        content={"detail": str(exc), "request_id": request_id},
    )


@app.get("/health")
def health():
    return {"status": "ok"}


@app.get("/metrics")
def metrics_endpoint():
    return PlainTextResponse(get_metrics_payload(), media_type="text/plain; version=0.0.4; charset=utf-8")


app.include_router(api_router)
