"""
FastAPI routes for the project control surface.

Project Endpoints:
  POST /projects                — Create or replace a project
  GET  /projects                — List projects
  GET  /projects/runs           — Run history
  POST /projects/{id}/start     — Start a project in the background
  POST /projects/pause          — Pause the active project
  POST /projects/{id}/resume    — Resume in place, or cold-resume from checkpoint
  POST /projects/stop           — Stop the active project (progress is kept)
  GET  /projects/status         — Active job status
  GET  /projects/interrupted    — Jobs found interrupted at startup

Batch Endpoints:
  POST   /batch/projects/{id}   — Queue a project
  DELETE /batch/projects/{id}   — Remove a queued project
  POST   /batch/reorder         — Reorder the queue
  POST   /batch/start|pause|resume|stop|retry-failed
  GET    /batch/status          — Queue state

The orchestrator and batch runner live on app.state (see main.lifespan).
"""

import logging

from fastapi import APIRouter, HTTPException, Request

from ..errors import PreconditionError, ProjectAlreadyRunningError
from .batch_queue import BatchQueueRunner
from .models import (
    BatchQueue,
    BatchReorderRequest,
    ControlResponse,
    InterruptedJob,
    Project,
    ProjectStatus,
    RunRecord,
    StatusResponse,
    now_iso,
)
from .orchestrator import ProjectOrchestrator

logger = logging.getLogger(__name__)


def _orchestrator(request: Request) -> ProjectOrchestrator:
    return request.app.state.orchestrator


def _batch(request: Request) -> BatchQueueRunner:
    return request.app.state.batch


def _http_error(e: Exception) -> HTTPException:
    if isinstance(e, ProjectAlreadyRunningError):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, PreconditionError):
        message = str(e)
        status = 404 if "not found" in message.lower() else 400
        return HTTPException(status_code=status, detail=message)
    logger.error(f"Control request failed: {e}", exc_info=True)
    return HTTPException(status_code=500, detail=str(e))


# ═════════════════════════════════════════════════════════════════════════════
# Project Router
# ═════════════════════════════════════════════════════════════════════════════

project_router = APIRouter(prefix="/projects", tags=["projects"])


@project_router.post("", response_model=Project)
async def save_project(project: Project, request: Request):
    """Create or replace a project definition. The active project cannot be edited."""
    status = _orchestrator(request).get_status()
    if status.running and status.project_id == project.id:
        raise HTTPException(status_code=409, detail="Cannot edit a running project")
    if project.status in (ProjectStatus.DRAFT, ProjectStatus.RUNNING):
        project.status = ProjectStatus.READY
    project.updated_at = now_iso()
    await request.app.state.store.save_project(project)
    return project


@project_router.get("", response_model=list[Project])
async def list_projects(request: Request):
    return await request.app.state.store.list_projects()


@project_router.get("/runs", response_model=list[RunRecord])
async def list_runs(request: Request, limit: int = 20):
    return await request.app.state.store.list_run_records(limit)


@project_router.get("/status", response_model=StatusResponse)
async def get_status(request: Request):
    return _orchestrator(request).get_status()


@project_router.get("/interrupted", response_model=list[InterruptedJob])
async def get_interrupted(request: Request):
    """Projects that were running when the previous process died."""
    return _orchestrator(request).interrupted


@project_router.post("/pause", response_model=StatusResponse)
async def pause_project(request: Request):
    try:
        return await _orchestrator(request).pause_project()
    except Exception as e:
        raise _http_error(e)


@project_router.post("/stop", response_model=ControlResponse)
async def stop_project(request: Request):
    orchestrator = _orchestrator(request)
    project_id = orchestrator.get_status().project_id
    try:
        await orchestrator.stop_project()
    except Exception as e:
        raise _http_error(e)
    return ControlResponse(project_id=project_id, message="Stopped")


@project_router.post("/{project_id}/start", response_model=StatusResponse)
async def start_project(project_id: str, request: Request):
    """
    Validate, then run the project in the background.

    Errors:
      - 409: Another project is running
      - 400: Precondition failed (missing prompts, unknown mode)
      - 404: Project not found
    """
    try:
        return await _orchestrator(request).start_project_background(project_id)
    except Exception as e:
        raise _http_error(e)


@project_router.post("/{project_id}/resume", response_model=StatusResponse)
async def resume_project(project_id: str, request: Request):
    try:
        return await _orchestrator(request).resume_project(project_id, background=True)
    except Exception as e:
        raise _http_error(e)


# ═════════════════════════════════════════════════════════════════════════════
# Batch Router
# ═════════════════════════════════════════════════════════════════════════════

batch_router = APIRouter(prefix="/batch", tags=["batch"])


@batch_router.get("/status", response_model=BatchQueue)
async def batch_status(request: Request):
    return await _batch(request).get_status()


@batch_router.post("/projects/{project_id}", response_model=BatchQueue)
async def batch_add(project_id: str, request: Request):
    try:
        return await _batch(request).add_project(project_id)
    except Exception as e:
        raise _http_error(e)


@batch_router.delete("/projects/{project_id}", response_model=BatchQueue)
async def batch_remove(project_id: str, request: Request):
    try:
        return await _batch(request).remove_project(project_id)
    except Exception as e:
        raise _http_error(e)


@batch_router.post("/reorder", response_model=BatchQueue)
async def batch_reorder(body: BatchReorderRequest, request: Request):
    try:
        return await _batch(request).reorder(body.project_ids)
    except Exception as e:
        raise _http_error(e)


@batch_router.post("/start", response_model=BatchQueue)
async def batch_start(request: Request):
    try:
        return await _batch(request).start()
    except Exception as e:
        raise _http_error(e)


@batch_router.post("/pause", response_model=BatchQueue)
async def batch_pause(request: Request):
    try:
        return await _batch(request).pause()
    except Exception as e:
        raise _http_error(e)


@batch_router.post("/resume", response_model=BatchQueue)
async def batch_resume(request: Request):
    try:
        return await _batch(request).resume()
    except Exception as e:
        raise _http_error(e)


@batch_router.post("/stop", response_model=BatchQueue)
async def batch_stop(request: Request):
    try:
        return await _batch(request).stop()
    except Exception as e:
        raise _http_error(e)


@batch_router.post("/retry-failed", response_model=BatchQueue)
async def batch_retry_failed(request: Request):
    try:
        return await _batch(request).retry_failed()
    except Exception as e:
        raise _http_error(e)
