"""FastAPI application for the build-mode engine."""

import asyncio
import json
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field, ValidationError

from src.build_engine.agents import AgentError
from src.build_engine.engine import BuildModeEngine
from src.build_engine.iteration import IterationError
from src.build_engine.projects import ProjectIdentityError
from src.build_engine.prompts import PromptError
from src.build_engine.snapshot import SnapshotVersionError
from src.build_engine.usage_guard import UsageLimitExceeded
from src.config import settings
from src.domain.schema import DomainEvent, Framework, StageName
from src.infrastructure.di import get_container
from src.utils.logger import get_logger, setup_logging
from src.utils.tracing import get_trace_id, setup_tracing

# Setup logging and tracing
setup_logging()
setup_tracing()

logger = get_logger(__name__)

# FastAPI app
app = FastAPI(title="Build Mode Engine", version="0.1.0")
default_cors_origins = [
    "http://localhost:5173",
    "http://127.0.0.1:5173",
]
cors_origins = [
    origin.strip()
    for origin in settings.cors_origins.split(",")
    if origin.strip()
]
app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins or default_cors_origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

ERROR_STATUS = {
    ProjectIdentityError: 409,
    IterationError: 409,
    UsageLimitExceeded: 429,
    PromptError: 422,
    AgentError: 422,
    SnapshotVersionError: 422,
    ValidationError: 422,
}
DOMAIN_ERRORS = tuple(ERROR_STATUS)


def _to_http(exc: Exception, event: str) -> HTTPException:
    """Map a domain exception to an HTTP error and log it."""
    status = next(code for cls, code in ERROR_STATUS.items() if isinstance(exc, cls))
    logger.warning(event, status=status, error=str(exc), trace_id=get_trace_id())
    return HTTPException(status_code=status, detail=str(exc))


def _json_default(obj: object) -> object:
    if hasattr(obj, "model_dump"):
        return obj.model_dump(by_alias=True, mode="json")
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, UUID):
        return str(obj)
    return str(obj)


@app.on_event("startup")
async def startup_event():
    """Attach the host and log startup configuration."""
    await get_container().get_host()
    logger.info(
        "api_startup",
        model=settings.litellm_model,
        storage_backend=settings.storage_backend,
        storage_root=settings.storage_root,
        rate_limit=settings.rate_limit,
    )


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy"}


# ============================================
# Request models
# ============================================

class CreateProjectRequest(BaseModel):
    """Request to create a project from its idea."""
    title: str = Field(description="Project title; the project id is derived from it")
    idea: str = Field(default="", description="Product idea")


class NavigateRequest(BaseModel):
    stage: StageName = Field(description="Stage to open")


class SaveStageRequest(BaseModel):
    """Request to save stage data."""
    stage: Optional[StageName] = Field(default=None, description="Stage to save (defaults to the current stage)")
    data: Dict[str, Any] = Field(default_factory=dict, description="Stage document (camelCase keys)")
    completed: bool = Field(default=False, description="Mark the stage as completed")


class StageRequest(BaseModel):
    stage: Optional[StageName] = Field(default=None, description="Target stage (defaults to the current stage)")


class StartIterationRequest(BaseModel):
    """Request to start the iteration loop."""
    screens: Optional[List[str]] = Field(default=None, description="Screens to build (defaults to design screens)")
    roles: Optional[List[str]] = Field(default=None, description="Role order (defaults to the dev flow order)")
    framework: Optional[Framework] = Field(default=None, description="Target framework")
    auto_run: bool = Field(default=True, description="Advance automatically between roles")


class ApproveRequest(BaseModel):
    approved: bool = Field(description="Approve the screen, or iterate on it")
    feedback: Optional[str] = Field(default=None, description="Feedback for the next iteration")


class ScreenshotRequest(BaseModel):
    url: Optional[str] = Field(default=None, description="Preview URL (defaults to the last one used)")


# ============================================
# Projects
# ============================================

async def _engine_for(project_id: str) -> BuildModeEngine:
    """Live engine of a project, loading it from storage on first access."""
    container = get_container()
    registry = container.get_engine_registry()
    engine = registry.get(project_id)
    if engine is not None:
        return engine
    if project_id not in await container.get_stage_store().list_projects():
        raise HTTPException(status_code=404, detail=f"Project '{project_id}' not found")
    engine = registry.open(project_id)
    host = await container.get_host()
    await host.open_project(project_id)
    return engine


@app.get("/api/projects")
async def list_projects():
    container = get_container()
    stored = await container.get_stage_store().list_projects()
    return {"projects": sorted(set(stored) | set(container.get_engine_registry().project_ids()))}


@app.post("/api/projects", status_code=201)
async def create_project(request: CreateProjectRequest):
    """Create a project; the first idea save establishes its id."""
    container = get_container()
    await container.get_host()
    existing = await container.get_stage_store().list_projects()
    try:
        engine = await container.get_engine_registry().create(request.title, request.idea, existing)
    except DOMAIN_ERRORS as e:
        raise _to_http(e, "create_project_error")
    return {"projectId": engine.project_id, "currentStage": engine.current_stage.value}


@app.delete("/api/projects/{project_id}")
async def delete_project(project_id: str):
    container = get_container()
    container.get_engine_registry().close(project_id)
    deleted = await container.get_stage_store().delete_project(project_id)
    if not deleted:
        raise HTTPException(status_code=404, detail=f"Project '{project_id}' not found")
    return {"deleted": project_id}


@app.get("/api/projects/{project_id}/snapshot")
async def get_snapshot(project_id: str):
    engine = await _engine_for(project_id)
    return engine.snapshot().to_wire()


@app.get("/api/projects/{project_id}/build-log")
async def get_build_log(project_id: str):
    await _engine_for(project_id)
    log = await get_container().get_build_log().read(project_id)
    return log.to_wire() if log else {"entries": []}


@app.post("/api/projects/{project_id}/messages", status_code=202)
async def post_message(project_id: str, request: Request):
    """Feed an inbound host message (tagged envelope) into the engine."""
    engine = await _engine_for(project_id)
    payload = await request.json()
    try:
        await engine.dispatch(payload)
    except DOMAIN_ERRORS as e:
        raise _to_http(e, "inbound_message_error")
    return {"accepted": payload.get("type")}


# ============================================
# Stages
# ============================================

@app.post("/api/projects/{project_id}/navigate")
async def navigate(project_id: str, request: NavigateRequest):
    engine = await _engine_for(project_id)
    allowed, reason = await engine.navigate(request.stage)
    return {"allowed": allowed, "reason": reason, "currentStage": engine.current_stage.value}


@app.post("/api/projects/{project_id}/save")
async def save_stage(project_id: str, request: SaveStageRequest):
    engine = await _engine_for(project_id)
    try:
        record = await engine.save_stage(request.stage, request.data, request.completed)
    except DOMAIN_ERRORS as e:
        raise _to_http(e, "save_stage_error")
    return record.to_wire() if record else {}


@app.post("/api/projects/{project_id}/generate", status_code=202)
async def generate(project_id: str, request: StageRequest):
    engine = await _engine_for(project_id)
    stage = request.stage or engine.current_stage
    try:
        await engine.generate_stage(stage)
    except DOMAIN_ERRORS as e:
        raise _to_http(e, "generate_error")
    return {"status": "dispatched", "stage": stage.value}


@app.post("/api/projects/{project_id}/retry", status_code=202)
async def retry(project_id: str, request: StageRequest):
    engine = await _engine_for(project_id)
    stage = request.stage or engine.current_stage
    try:
        await engine.request_retry(stage)
    except DOMAIN_ERRORS as e:
        raise _to_http(e, "retry_error")
    return {"status": "requested", "stage": stage.value}


# ============================================
# Iteration loop
# ============================================

@app.post("/api/projects/{project_id}/iteration/start")
async def start_iteration(project_id: str, request: StartIterationRequest):
    engine = await _engine_for(project_id)
    try:
        state = await engine.start_iteration(request.screens, request.roles, request.framework, request.auto_run)
    except DOMAIN_ERRORS as e:
        raise _to_http(e, "iteration_start_error")
    return state.to_wire()


@app.post("/api/projects/{project_id}/iteration/next")
async def next_step(project_id: str):
    engine = await _engine_for(project_id)
    try:
        await engine.next_step()
    except DOMAIN_ERRORS as e:
        raise _to_http(e, "iteration_next_error")
    return engine.iteration_state.to_wire()


@app.post("/api/projects/{project_id}/iteration/approve")
async def approve(project_id: str, request: ApproveRequest):
    engine = await _engine_for(project_id)
    try:
        outcome = await engine.approve(request.approved, request.feedback)
    except DOMAIN_ERRORS as e:
        raise _to_http(e, "iteration_approve_error")
    return {"outcome": outcome, "iterationState": engine.iteration_state.to_wire()}


@app.post("/api/projects/{project_id}/iteration/resume")
async def resume_iteration(project_id: str):
    engine = await _engine_for(project_id)
    try:
        state = await engine.resume_iteration()
    except DOMAIN_ERRORS as e:
        raise _to_http(e, "iteration_resume_error")
    return state.to_wire()


@app.post("/api/projects/{project_id}/iteration/stop")
async def stop_iteration(project_id: str):
    engine = await _engine_for(project_id)
    state = await engine.stop_iteration()
    return state.to_wire()


@app.post("/api/projects/{project_id}/screenshot", status_code=202)
async def capture_screenshot(project_id: str, request: ScreenshotRequest):
    engine = await _engine_for(project_id)
    await engine.capture_screenshot(request.url)
    return {"status": "requested", "url": engine.orchestrator.screenshot_url}


# ============================================
# Usage
# ============================================

@app.get("/api/projects/{project_id}/usage")
async def get_usage(project_id: str):
    engine = await _engine_for(project_id)
    return engine.usage_status()


@app.post("/api/projects/{project_id}/usage/reset")
async def reset_usage(project_id: str):
    engine = await _engine_for(project_id)
    await engine.reset_usage()
    return engine.usage_status()


# ============================================
# Outbound message stream
# ============================================

@app.get("/api/projects/{project_id}/events")
async def stream_events(project_id: str):
    """Stream the project's outbound messages as server-sent events."""
    await _engine_for(project_id)
    event_bus = get_container().get_event_bus()
    queue: asyncio.Queue = asyncio.Queue()

    async def enqueue(event: DomainEvent) -> None:
        if event.project_id == project_id:
            await queue.put(event.payload)

    await event_bus.subscribe("*", enqueue)

    async def event_stream():
        """Stream events with heartbeat to prevent connection timeout."""
        heartbeat_interval = 15  # seconds
        event_counter = 0
        try:
            while True:
                try:
                    item = await asyncio.wait_for(queue.get(), timeout=heartbeat_interval)
                    event_counter += 1
                    yield f"id: evt-{event_counter}\ndata: {json.dumps(item, default=_json_default)}\n\n"
                except asyncio.TimeoutError:
                    event_counter += 1
                    heartbeat = {
                        "type": "heartbeat",
                        "id": f"evt-{event_counter}",
                        "timestamp": datetime.now().isoformat(),
                    }
                    yield f"data: {json.dumps(heartbeat)}\n\n"
        finally:
            await event_bus.unsubscribe("*", enqueue)

    return StreamingResponse(event_stream(), media_type="text/event-stream")


def main() -> None:
    """Run the API server."""
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)


if __name__ == "__main__":
    main()
