"""FastAPI application: chat relay, model management and record store routes."""

from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager

from fastapi import APIRouter, BackgroundTasks, Body, Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, StreamingResponse

from .backend import OllamaClient
from .config import SQLITE_PATH
from .errors import RelayError, ValidationError
from .models import (
    FileContent,
    FileCreate,
    FileRecord,
    MessageCreate,
    MessageRecord,
    OllamaModel,
    Project,
    ProjectCreate,
    StoreStats,
)
from .relay import ChatRelay, validate_chat_request
from .storage import ProjectStore

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    stream=sys.stderr,
)
logger = logging.getLogger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
}

router = APIRouter(prefix="/api")


def get_client(request: Request) -> OllamaClient:
    return request.app.state.client


def get_store(request: Request) -> ProjectStore:
    return request.app.state.store


# -- chat relay ----------------------------------------------------------


@router.post("/ai/chat")
async def relay_chat(request: Request, client: OllamaClient = Depends(get_client)):
    """Relay a chat request as one JSON reply or as an SSE stream.

    Errors before the stream opens become ``{"error": ...}`` replies with
    400, 503 or 500. Errors after it opens become a final SSE error frame.
    """
    try:
        body = await request.json()
    except ValueError as e:
        raise ValidationError("Request body is not valid JSON") from e

    chat_request = validate_chat_request(body)
    relay = ChatRelay(client)

    try:
        if not chat_request.stream:
            return JSONResponse(await relay.complete(chat_request))

        frames = await relay.open_stream(chat_request, request.is_disconnected)
        return StreamingResponse(frames, media_type="text/event-stream", headers=SSE_HEADERS)
    except RelayError:
        raise
    except Exception as e:
        logger.exception("Chat relay failed: %s", e)
        raise RelayError(str(e)) from e


@router.get("/ai/chat")
async def backend_health(client: OllamaClient = Depends(get_client)):
    """Inference server reachability, independent of any chat call."""
    try:
        healthy = await client.check_health()
    except Exception:
        logger.exception("Health check failed")
        return JSONResponse(
            {"status": "error", "message": "Health check failed"}, status_code=500
        )

    if healthy:
        return {"status": "healthy", "message": "Inference server is running"}
    return JSONResponse(
        {"status": "unhealthy", "message": "Inference server is unavailable"},
        status_code=503,
    )


# -- model management ----------------------------------------------------


@router.get("/models")
async def list_models(client: OllamaClient = Depends(get_client)) -> dict[str, list[OllamaModel]]:
    return {"models": await client.list_models()}


async def _pull_in_background(client: OllamaClient, name: str) -> None:
    last_logged = -10.0

    def report(percent: float) -> None:
        nonlocal last_logged
        if percent - last_logged >= 10 or percent >= 100:
            logger.info("Pulling %s: %.0f%%", name, percent)
            last_logged = percent

    try:
        await client.pull_model(name, report)
    except RelayError as e:
        logger.error("Background pull of %s failed: %s", name, e.message)
    else:
        logger.info("Pulled model %s", name)


@router.post("/models")
async def manage_model(
    background: BackgroundTasks,
    payload: dict = Body(...),
    client: OllamaClient = Depends(get_client),
):
    action = payload.get("action")
    model_name = payload.get("modelName")
    if not action or not model_name:
        raise ValidationError("Missing required parameters: action and modelName")

    if action == "pull":
        background.add_task(_pull_in_background, client, model_name)
        return {"message": f"Started downloading model: {model_name}", "status": "started"}
    if action == "delete":
        await client.delete_model(model_name)
        return {"message": f"Model {model_name} deleted", "status": "deleted"}

    raise ValidationError(f"Unknown action: {action}")


# -- record store --------------------------------------------------------
# Plain ``def`` handlers: FastAPI runs them in its threadpool.


@router.get("/projects")
def list_projects(store: ProjectStore = Depends(get_store)) -> list[Project]:
    return store.get_projects()


@router.post("/projects", status_code=201)
def create_project(project: ProjectCreate, store: ProjectStore = Depends(get_store)) -> Project:
    return store.create_project(project)


@router.get("/projects/{project_id}/files")
def list_project_files(project_id: str, store: ProjectStore = Depends(get_store)) -> list[FileRecord]:
    return store.get_files_by_project(project_id)


@router.post("/projects/{project_id}/files", status_code=201)
def save_file(
    project_id: str, file: FileContent, store: ProjectStore = Depends(get_store)
) -> FileRecord:
    return store.save_file(FileCreate(project_id=project_id, **file.model_dump()))


@router.get("/messages")
def list_messages(
    project_id: str | None = None, store: ProjectStore = Depends(get_store)
) -> list[MessageRecord]:
    return store.get_chat_messages(project_id)


@router.post("/messages", status_code=201)
def save_message(message: MessageCreate, store: ProjectStore = Depends(get_store)) -> MessageRecord:
    return store.save_chat_message(message)


@router.get("/stats")
def stats(store: ProjectStore = Depends(get_store)) -> StoreStats:
    return store.get_stats()


# -- application ---------------------------------------------------------


async def _relay_error_handler(request: Request, exc: RelayError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.warning("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


async def _request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = "; ".join(
        f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()
    )
    return JSONResponse(status_code=400, content={"error": errors or "Invalid request"})


async def _unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("%s %s failed", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"error": str(exc) or "Internal server error"})


def create_app(
    client: OllamaClient | None = None,
    store: ProjectStore | None = None,
) -> FastAPI:
    """Build the application.

    Collaborators passed in are used as-is and left open on shutdown; missing
    ones are built from configuration and closed on shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        own_client = client is None
        own_store = store is None
        app.state.client = client or OllamaClient()
        app.state.store = store or ProjectStore(SQLITE_PATH)
        app.state.store.init()
        logger.info("Relaying to inference server at %s", app.state.client.base_url)
        try:
            yield
        finally:
            if own_client:
                await app.state.client.aclose()
            if own_store:
                app.state.store.close()

    app = FastAPI(
        title="chatrelay",
        description="Streaming chat relay for a local inference server",
        lifespan=lifespan,
    )
    app.add_exception_handler(RelayError, _relay_error_handler)
    app.add_exception_handler(RequestValidationError, _request_validation_handler)
    app.add_exception_handler(Exception, _unhandled_error_handler)
    app.include_router(router)
    return app
