from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Optional

import httpx
from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response, StreamingResponse

from relay.bridge import EventBridge
from relay.errors import InvalidRequestError, ProviderUnavailable
from relay.http_client import LoggedHTTPClient
from relay.http_logging_asgi import HTTPLoggingASGIMiddleware
from relay.hub import FanoutHub
from relay.logging_utils import get_logger, init_logging
from relay.prompts import build_variations
from relay.provider import ProviderGateway, get_gateway
from relay.reaper import LifecycleReaper
from relay.registry import ProjectRegistry
from relay.settings import Settings, load_settings
from shared.schemas import FailedEvent, GenerateRequest, GenerateResponse, JobRef, to_sse

log = logging.getLogger("render-relay")
slog = get_logger()

UNKNOWN_PROJECT = "Unknown project"

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


@dataclass
class RelayServices:
    """Everything the routes share. One instance per application."""
    settings: Settings
    gateway: ProviderGateway
    registry: ProjectRegistry
    hub: FanoutHub
    reaper: LifecycleReaper
    bridge: EventBridge


def build_services(settings: Settings, gateway: Optional[ProviderGateway] = None) -> RelayServices:
    gateway = gateway or get_gateway(settings)
    registry = ProjectRegistry()
    hub = FanoutHub(max_pending=settings.subscriber_queue_size)
    reaper = LifecycleReaper(registry, hub, default_delay=settings.cleanup_delay_s)
    bridge = EventBridge(
        gateway,
        registry,
        hub,
        reaper,
        completion_delay=settings.completion_delay_s,
        cleanup_delay=settings.cleanup_delay_s,
    )
    return RelayServices(settings, gateway, registry, hub, reaper, bridge)


def get_services(request: Request) -> RelayServices:
    return request.app.state.services


router = APIRouter(prefix="/api")


def _validated_prompt(req: GenerateRequest) -> str:
    prompt = (req.prompt or "").strip()
    if not prompt:
        raise InvalidRequestError("Missing prompt")
    return prompt


@router.post("/generate", response_model=GenerateResponse)
async def generate(req: GenerateRequest, services: RelayServices = Depends(get_services)):
    """
    Start a batch render and return its project id immediately.
    Progress is streamed separately from /api/progress/{projectId}.
    """
    prompt = _validated_prompt(req)
    render = services.settings.render
    prompts = build_variations(prompt, req.character, req.scene_type, count=render.number_of_images)

    try:
        started = await services.gateway.start_job(prompts, render, req.seed)
    except ProviderUnavailable as exc:
        slog.error("project_start_failed", error=str(exc))
        return JSONResponse(status_code=500, content={"error": str(exc) or "Generation failed"})

    project = services.registry.create(started.project_id, started.job_ids, prompts)
    slog.info(
        "project_started",
        project_id=project.id,
        jobs=len(project.jobs),
        seed=req.seed,
        character=req.character or None,
        scene_type=req.scene_type or None,
    )
    return GenerateResponse(
        projectId=project.id,
        jobs=[JobRef(id=job.id, index=job.index) for job in project.jobs],
    )


@router.get("/progress/{project_id}")
async def progress(project_id: str, services: RelayServices = Depends(get_services)):
    """
    Live event stream for one project, from the moment of attach onward.

    An unknown (or already reaped) project gets a single `failed` message and
    a finished one gets its terminal event again; both streams end at once.
    """
    project = services.registry.get(project_id)
    if project is None or project.is_terminal:
        if project is None:
            event = FailedEvent(reason=UNKNOWN_PROJECT, category="unknown")
        else:
            event = project.terminal_event or FailedEvent(reason="Project finished")

        async def final_message():
            yield to_sse(project_id, event)

        return StreamingResponse(final_message(), media_type="text/event-stream", headers=SSE_HEADERS)

    channel = services.hub.attach(project_id)

    async def event_source():
        try:
            async for message in channel.stream(keepalive=services.settings.keepalive_s):
                yield message
        finally:
            services.hub.detach(project_id, channel)
            channel.close()

    return StreamingResponse(event_source(), media_type="text/event-stream", headers=SSE_HEADERS)


@router.get("/cancel/{project_id}")
async def cancel(project_id: str, services: RelayServices = Depends(get_services)):
    try:
        await services.bridge.cancel(project_id)
    except ProviderUnavailable as exc:
        return JSONResponse(status_code=502, content={"ok": False, "error": str(exc)})
    return {"ok": True}


@router.get("/status/{project_id}")
async def status(project_id: str, services: RelayServices = Depends(get_services)):
    project = services.registry.get(project_id)
    if project is None:
        return JSONResponse(status_code=404, content={"error": UNKNOWN_PROJECT})
    return project.status()


@router.get("/result/{project_id}/{job_id}")
async def result(project_id: str, job_id: str, services: RelayServices = Depends(get_services)):
    """Proxy a finished job's image so the browser never talks to the provider's storage."""
    project = services.registry.get(project_id)
    job = project.job(job_id) if project else None
    if job is None or not job.result_ref:
        return JSONResponse(status_code=404, content={"error": "Result not available"})

    try:
        async with LoggedHTTPClient("result-proxy", timeout=httpx.Timeout(30.0), follow_redirects=True) as client:
            resp = await client.get(job.result_ref)
            resp.raise_for_status()
    except httpx.HTTPError as exc:
        return JSONResponse(status_code=502, content={"error": f"Result fetch failed: {exc}"})

    return Response(
        content=resp.content,
        media_type=resp.headers.get("content-type", "image/png"),
        headers={"Cache-Control": "no-store"},
    )


@router.get("/health")
async def health(services: RelayServices = Depends(get_services)):
    return {"ok": True, "env": services.settings.provider_env}


async def _invalid_request(request: Request, exc: InvalidRequestError):
    return JSONResponse(status_code=400, content={"error": str(exc)})


async def _invalid_body(request: Request, exc: RequestValidationError):
    detail = [str(err.get("msg", "")) for err in exc.errors()]
    return JSONResponse(status_code=400, content={"error": "Invalid request body", "detail": detail})


def create_app(settings: Optional[Settings] = None, gateway: Optional[ProviderGateway] = None) -> FastAPI:
    settings = settings or load_settings()
    init_logging(settings.provider_env)
    services = build_services(settings, gateway)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        slog.info(
            "relay_config",
            provider_env=settings.provider_env,
            testnet=settings.testnet,
            credentials=settings.has_credentials,
            allowed_origins=settings.allowed_origins,
            completion_delay_ms=settings.completion_delay_ms,
            cleanup_delay_ms=settings.cleanup_delay_ms,
        )
        services.bridge.start()
        try:
            yield
        finally:
            log.info("Shutting down: %d active projects", len(services.registry))
            await services.bridge.stop()
            services.reaper.shutdown()
            for project_id in services.hub.project_ids():
                services.hub.close_project(project_id)
            await services.gateway.close()

    app = FastAPI(title="render relay", lifespan=lifespan)
    app.state.services = services
    app.add_exception_handler(InvalidRequestError, _invalid_request)
    app.add_exception_handler(RequestValidationError, _invalid_body)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=False,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )
    app.add_middleware(HTTPLoggingASGIMiddleware)
    app.include_router(router)
    return app
