from __future__ import annotations

import traceback
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import pydantic
import uvicorn
from fastapi import APIRouter, Depends, FastAPI, Query, Request, WebSocket
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse, Response
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from dashboard.config import Settings, load_config
from dashboard.context import AppContext, build_context
from dashboard.db import check_db
from dashboard.errors import DashboardError, NotFoundError, UpstreamError
from dashboard.http_logging_asgi import HTTPLoggingASGIMiddleware
from dashboard.logging_utils import get_logger, init_logging
from shared.schemas import (
    ChatRequest,
    ConversationCreate,
    ConversationUpdate,
    CredentialUpdate,
    ImageRequest,
    MessageCreate,
    ProfileCreate,
    ProfileUpdate,
    TaskCreate,
)

log = get_logger()
router = APIRouter(prefix="/api")


def get_ctx(request: Request) -> AppContext:
    return request.app.state.ctx


def ok(data: Any = None, **extra) -> Dict[str, Any]:
    body = {"success": True, "data": data}
    body.update(extra)
    return body


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _validation_message(errors) -> str:
    parts = []
    for err in errors:
        loc = ".".join(str(p) for p in err.get("loc", ()) if p != "body")
        parts.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return "; ".join(parts) or "Invalid request"


# ---------------------------
# Health
# ---------------------------
@router.get("/health")
async def health(ctx: AppContext = Depends(get_ctx)):
    try:
        db_ok = check_db(ctx.sessions)
    except SQLAlchemyError as exc:
        log.error("health_db_failed", error=str(exc))
        db_ok = False
    return ok({
        "status": "ok" if db_ok else "degraded",
        "database": db_ok,
        "ollama": await ctx.gateway.ollama.is_available(),
        "ws_clients": ctx.events.client_count,
        "background_pollers": len(ctx.tracker.active_pollers),
        "dev_encryption_key": ctx.settings.uses_dev_key,
    })


# ---------------------------
# Local models (Ollama)
# ---------------------------
@router.get("/models")
async def list_models(ctx: AppContext = Depends(get_ctx)):
    return ok(await ctx.gateway.ollama.list_models())


@router.get("/models/{name}")
async def model_info(name: str, ctx: AppContext = Depends(get_ctx)):
    return ok(await ctx.gateway.ollama.model_info(name))


@router.post("/models/{name}/load")
async def load_model(name: str, ctx: AppContext = Depends(get_ctx)):
    return ok(await ctx.gateway.ollama.load_model(name), message=f"Model {name} is loading")


@router.post("/models/{name}/unload")
async def unload_model(name: str, ctx: AppContext = Depends(get_ctx)):
    return ok(await ctx.gateway.ollama.unload_model(name), message=f"Model {name} unloaded")


@router.get("/models/{name}/status")
async def model_status(name: str, ctx: AppContext = Depends(get_ctx)):
    return ok(await ctx.gateway.ollama.model_status(name))


# ---------------------------
# Provider settings
# ---------------------------
@router.get("/settings")
async def list_settings(ctx: AppContext = Depends(get_ctx)):
    return ok(ctx.credentials.list_masked())


@router.get("/settings/{provider}")
async def get_settings(provider: str, ctx: AppContext = Depends(get_ctx)):
    return ok(ctx.credentials.get_masked(provider))


@router.put("/settings/{provider}")
async def put_settings(provider: str, body: CredentialUpdate, ctx: AppContext = Depends(get_ctx)):
    return ok(ctx.credentials.upsert(provider, body.api_key, body.endpoint_url, body.default_model))


@router.delete("/settings/{provider}")
async def delete_settings(provider: str, ctx: AppContext = Depends(get_ctx)):
    ctx.credentials.delete(provider)
    return ok(message=f"Settings for {provider} deleted")


@router.post("/settings/{provider}/test")
async def test_settings(provider: str, ctx: AppContext = Depends(get_ctx)):
    return ok(await ctx.gateway.test_connection(provider))


# ---------------------------
# Profiles
# ---------------------------
@router.get("/profiles")
async def list_profiles(provider: Optional[str] = None, ctx: AppContext = Depends(get_ctx)):
    return ok(ctx.profiles.list(provider=provider))


@router.post("/profiles", status_code=201)
async def create_profile(body: ProfileCreate, ctx: AppContext = Depends(get_ctx)):
    fields = body.model_dump(exclude={"name", "kind", "provider", "api_key"})
    return ok(ctx.profiles.create(body.name, body.kind, body.provider, api_key=body.api_key, **fields))


@router.get("/profiles/{profile_id}")
async def get_profile(profile_id: str, ctx: AppContext = Depends(get_ctx)):
    return ok(ctx.profiles.get(profile_id))


@router.put("/profiles/{profile_id}")
async def update_profile(profile_id: str, body: ProfileUpdate, ctx: AppContext = Depends(get_ctx)):
    fields = body.model_dump(exclude_unset=True, exclude={"api_key"})
    return ok(ctx.profiles.update(profile_id, api_key=body.api_key, **fields))


@router.delete("/profiles/{profile_id}")
async def delete_profile(profile_id: str, ctx: AppContext = Depends(get_ctx)):
    ctx.profiles.delete(profile_id)
    return ok(message=f"Profile {profile_id} deleted")


@router.post("/profiles/{profile_id}/test")
async def test_profile(profile_id: str, ctx: AppContext = Depends(get_ctx)):
    profile = ctx.profiles.get(profile_id)
    return ok(await ctx.gateway.test_connection(profile["provider"], profile_id=profile_id))


# ---------------------------
# Chat
# ---------------------------
@router.get("/chat/sources")
async def chat_sources(ctx: AppContext = Depends(get_ctx)):
    return ok(ctx.gateway.sources())


@router.post("/chat")
async def chat(body: ChatRequest, ctx: AppContext = Depends(get_ctx)):
    job = await ctx.tracker.submit_chat(
        body.provider,
        body.model,
        [m.model_dump() for m in body.messages],
        conversation_id=body.conversation_id,
        options=body.options,
        profile_id=body.profile_id,
    )
    result = job["result"] or {}
    meta = result.get("metadata") or {}
    return ok({
        "role": "assistant",
        "content": result.get("content", ""),
        "job_id": job["id"],
        "model": meta.get("model"),
        "tokens_used": meta.get("tokens_used"),
        "finish_reason": meta.get("finish_reason"),
    })


# ---------------------------
# Tasks
# ---------------------------
@router.get("/tasks")
async def list_tasks(
    status: Optional[str] = None,
    type: Optional[str] = None,
    provider: Optional[str] = None,
    page: int = 1,
    limit: int = 20,
    ctx: AppContext = Depends(get_ctx),
):
    return ok(ctx.tracker.list(status=status, kind=type, provider=provider, page=page, limit=limit))


@router.post("/tasks", status_code=201)
async def create_task(body: TaskCreate, ctx: AppContext = Depends(get_ctx)):
    if body.kind == "text":
        job = await ctx.tracker.create_chat(
            body.provider,
            body.model,
            [{"role": "user", "content": body.prompt}],
            options=body.options,
            name=body.name,
        )
    else:
        request = ImageRequest(
            provider=body.provider,
            model=body.model or None,
            prompt=body.prompt,
            negative_prompt=body.options.get("negative_prompt"),
            parameters=body.options.get("parameters") or {},
            workflow=body.options.get("workflow"),
            name=body.name,
        )
        job = await ctx.tracker.create_image(request)
    return ok(job)


@router.get("/tasks/history")
async def task_history(
    status: Optional[str] = None,
    provider: Optional[str] = None,
    type: Optional[str] = None,
    start_date: Optional[datetime] = Query(default=None, alias="startDate"),
    end_date: Optional[datetime] = Query(default=None, alias="endDate"),
    search: Optional[str] = None,
    page: int = 1,
    limit: int = 20,
    ctx: AppContext = Depends(get_ctx),
):
    return ok(ctx.tracker.history(
        status=status,
        start_date=_utc(start_date),
        end_date=_utc(end_date),
        search=search,
        provider=provider,
        kind=type,
        page=page,
        limit=limit,
    ))


@router.get("/tasks/history/export")
async def export_history(
    format: str = "json",
    status: Optional[str] = None,
    provider: Optional[str] = None,
    type: Optional[str] = None,
    start_date: Optional[datetime] = Query(default=None, alias="startDate"),
    end_date: Optional[datetime] = Query(default=None, alias="endDate"),
    search: Optional[str] = None,
    ctx: AppContext = Depends(get_ctx),
):
    body, media_type, filename = ctx.tracker.export_history(
        format,
        status=status,
        start_date=_utc(start_date),
        end_date=_utc(end_date),
        search=search,
        provider=provider,
        kind=type,
    )
    return Response(
        content=body,
        media_type=media_type,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.get("/tasks/{job_id}")
async def get_task(job_id: str, ctx: AppContext = Depends(get_ctx)):
    return ok(ctx.tracker.get(job_id))


@router.delete("/tasks/{job_id}")
async def delete_task(job_id: str, ctx: AppContext = Depends(get_ctx)):
    ctx.tracker.delete(job_id)
    return ok(message=f"Task {job_id} deleted")


@router.post("/tasks/{job_id}/dispatch")
async def dispatch_task(job_id: str, ctx: AppContext = Depends(get_ctx)):
    return ok(await ctx.tracker.dispatch(job_id))


@router.post("/tasks/{job_id}/retry")
async def retry_task(job_id: str, ctx: AppContext = Depends(get_ctx)):
    return ok(await ctx.tracker.retry(job_id))


@router.get("/tasks/{job_id}/status")
async def task_status(job_id: str, ctx: AppContext = Depends(get_ctx)):
    return ok(await ctx.tracker.check(job_id))


# ---------------------------
# Images
# ---------------------------
@router.post("/images", status_code=202)
async def generate_image(body: ImageRequest, ctx: AppContext = Depends(get_ctx)):
    return ok(await ctx.tracker.submit_image(body))


@router.get("/comfyui/options")
async def comfyui_options(ctx: AppContext = Depends(get_ctx)):
    return ok(await ctx.gateway.comfyui.options())


@router.get("/comfyui/image/{filename}")
async def comfyui_image(
    filename: str,
    subfolder: str = "",
    type: str = "output",
    ctx: AppContext = Depends(get_ctx),
):
    try:
        artifact = await ctx.gateway.comfyui.fetch_artifact(
            {"filename": filename, "subfolder": subfolder, "type": type}
        )
    except UpstreamError as exc:
        if exc.status == 404:
            raise NotFoundError(f"Image {filename} not found") from exc
        raise
    return Response(content=artifact.data, media_type=artifact.content_type)


# ---------------------------
# Results
# ---------------------------
@router.get("/results")
async def list_results(
    type: Optional[str] = None,
    page: int = 1,
    limit: int = 20,
    ctx: AppContext = Depends(get_ctx),
):
    return ok(ctx.results.list(result_type=type, page=page, limit=limit))


@router.get("/results/{result_id}")
async def get_result(result_id: str, ctx: AppContext = Depends(get_ctx)):
    return ok(ctx.results.get(result_id))


@router.get("/results/{result_id}/download")
async def download_result(result_id: str, ctx: AppContext = Depends(get_ctx)):
    dl = ctx.results.download(result_id)
    if dl.path is not None:
        return FileResponse(dl.path, media_type=dl.media_type, filename=dl.filename)
    return Response(
        content=dl.text,
        media_type=dl.media_type,
        headers={"Content-Disposition": f'attachment; filename="{dl.filename}"'},
    )


@router.delete("/results/{result_id}")
async def delete_result(result_id: str, ctx: AppContext = Depends(get_ctx)):
    ctx.results.delete(result_id)
    return ok(message=f"Result {result_id} deleted")


# ---------------------------
# Conversations
# ---------------------------
@router.get("/conversations")
async def list_conversations(ctx: AppContext = Depends(get_ctx)):
    return ok(ctx.conversations.list())


@router.post("/conversations", status_code=201)
async def create_conversation(body: ConversationCreate, ctx: AppContext = Depends(get_ctx)):
    return ok(ctx.conversations.create(body.provider, body.model, body.title))


@router.get("/conversations/{conversation_id}")
async def get_conversation(conversation_id: str, ctx: AppContext = Depends(get_ctx)):
    return ok(ctx.conversations.get(conversation_id))


@router.put("/conversations/{conversation_id}")
async def rename_conversation(conversation_id: str, body: ConversationUpdate, ctx: AppContext = Depends(get_ctx)):
    return ok(ctx.conversations.rename(conversation_id, body.title))


@router.delete("/conversations/{conversation_id}")
async def delete_conversation(conversation_id: str, ctx: AppContext = Depends(get_ctx)):
    ctx.conversations.delete(conversation_id)
    return ok(message=f"Conversation {conversation_id} deleted")


@router.post("/conversations/{conversation_id}/messages", status_code=201)
async def add_message(conversation_id: str, body: MessageCreate, ctx: AppContext = Depends(get_ctx)):
    return ok(ctx.conversations.append_message(conversation_id, body.role, body.content))


# ---------------------------
# Error envelope
# ---------------------------
def _install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(DashboardError)
    async def _dashboard_error(request: Request, exc: DashboardError):
        body = {"success": False, "error": exc.message}
        if exc.job_id:
            body["job_id"] = exc.job_id
        return JSONResponse(status_code=exc.status_code, content=body)

    @app.exception_handler(RequestValidationError)
    async def _request_validation(request: Request, exc: RequestValidationError):
        return JSONResponse(status_code=400, content={"success": False, "error": _validation_message(exc.errors())})

    @app.exception_handler(pydantic.ValidationError)
    async def _model_validation(request: Request, exc: pydantic.ValidationError):
        return JSONResponse(status_code=400, content={"success": False, "error": _validation_message(exc.errors())})

    @app.exception_handler(StarletteHTTPException)
    async def _http_error(request: Request, exc: StarletteHTTPException):
        return JSONResponse(status_code=exc.status_code, content={"success": False, "error": str(exc.detail)})

    @app.exception_handler(Exception)
    async def _unexpected(request: Request, exc: Exception):
        log.error(
            "unhandled_exception",
            error=str(exc),
            stack_trace="".join(traceback.format_exception(type(exc), exc, exc.__traceback__)),
            path=request.url.path,
        )
        return JSONResponse(status_code=500, content={"success": False, "error": "Internal server error"})


# ---------------------------
# App factory
# ---------------------------
def create_app(ctx: Optional[AppContext] = None, settings: Optional[Settings] = None) -> FastAPI:
    if ctx is None:
        settings = settings or load_config()
        ctx = build_context(settings)
    init_logging(service_id=ctx.settings.service_id)

    app = FastAPI(title="gen-dashboard")
    app.state.ctx = ctx

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(ctx.settings.cors_origins),
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(HTTPLoggingASGIMiddleware, service_id=ctx.settings.service_id)
    _install_error_handlers(app)
    app.include_router(router)

    @app.websocket("/ws")
    async def ws_endpoint(ws: WebSocket):
        await ctx.events.serve(ws)

    @app.on_event("startup")
    async def _startup():
        log.info(
            "dashboard_started",
            port=ctx.settings.port,
            storage_path=ctx.settings.storage_path,
            poll_interval_s=ctx.settings.poll_interval_s,
            poll_max_attempts=ctx.settings.poll_max_attempts,
        )

    @app.on_event("shutdown")
    async def _shutdown():
        await ctx.close()

    return app


def main() -> None:
    settings = load_config()
    uvicorn.run(create_app(settings=settings), host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
