"""API route handlers and Pydantic response schemas."""

import json
import logging
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, ValidationError

from clipforge import __version__, check_credentials
from clipforge.config import Settings, settings as app_settings
from clipforge.db.models import DEFAULT_USER_ID, Asset, Clip, RenderJob
from clipforge.errors import ClipAlreadyRendering, ClipNotFound, PipelineError
from clipforge.orchestrator.pipeline import PipelineOrchestrator, build_orchestrator
from clipforge.orchestrator.state import STEP_AUTH_CHECK, STEP_PARSE_REQUEST
from clipforge.schemas.clip_request import ClipRequest
from clipforge.services.job_store import ClipStore
from clipforge.workers.render_tasks import (
    TASK_STATUS,
    is_running,
    render_clip_task,
    request_cancel,
    reserve_run,
    task_id_for,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")

# HTTP status per failing step; any step not listed is a server-side failure
STEP_HTTP_STATUS = {
    STEP_AUTH_CHECK: 401,
    STEP_PARSE_REQUEST: 422,
}


def status_code_for(error: PipelineError) -> int:
    if isinstance(error, ClipAlreadyRendering):
        return 409
    if isinstance(error, ClipNotFound):
        return 404
    return STEP_HTTP_STATUS.get(error.step, 500)


# ============================================================================
# Dependencies
# ============================================================================

_orchestrator: Optional[PipelineOrchestrator] = None


def get_settings() -> Settings:
    return app_settings


def get_orchestrator() -> PipelineOrchestrator:
    """Process-wide orchestrator built from settings on first use."""
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = build_orchestrator(app_settings)
    return _orchestrator


async def close_orchestrator() -> None:
    global _orchestrator
    if _orchestrator is not None:
        await _orchestrator.aclose()
        _orchestrator = None


def authenticate(
    authorization: Optional[str] = Header(None),
    settings: Settings = Depends(get_settings),
) -> str:
    """Resolve the bearer token to a user id.

    With no tokens configured (development mode) any bearer token is
    accepted and attributed to the default user.
    """
    if not authorization or not authorization.startswith("Bearer "):
        raise PipelineError(STEP_AUTH_CHECK, "Not authenticated")
    token = authorization.removeprefix("Bearer ").strip()
    tokens = settings.auth.api_tokens
    if not tokens:
        return DEFAULT_USER_ID
    user_id = tokens.get(token)
    if user_id is None:
        raise PipelineError(STEP_AUTH_CHECK, "User authentication failed")
    return user_id


# ============================================================================
# Request/Response Schemas
# ============================================================================

class ClipCreateRequest(BaseModel):
    """Register a clip owned by the calling system."""
    clip_id: Optional[str] = Field(default=None, max_length=64)
    source_media_id: Optional[str] = None
    title: Optional[str] = None


class RunSummary(BaseModel):
    run_id: str
    started_at: str
    completed_at: Optional[str] = None
    total_duration_seconds: Optional[float] = None
    failed_step: Optional[str] = None
    captions_degraded: bool = False
    step_log: Optional[dict] = None


class ClipStatusResponse(BaseModel):
    clip_id: str
    status: str
    title: Optional[str] = None
    error_message: Optional[str] = None
    vertical_url: Optional[str] = None
    thumbnail_url: Optional[str] = None
    created_at: str
    updated_at: str
    task: Optional[dict] = None
    last_run: Optional[RunSummary] = None


class AssetResponse(BaseModel):
    asset_id: str
    output_type: str
    storage_path: str
    duration_seconds: float
    metadata: Optional[dict] = None


class RenderJobResponse(BaseModel):
    job_id: str
    user_id: str
    job_type: str
    engine: str
    status: str
    params: dict
    error_message: Optional[str] = None
    started_at: str
    completed_at: Optional[str] = None
    processing_time_seconds: Optional[float] = None
    assets: list[AssetResponse] = []


class RenderAccepted(BaseModel):
    clip_id: str
    status: str
    status_url: str


def _clip_status(clip: Clip) -> ClipStatusResponse:
    return ClipStatusResponse(
        clip_id=clip.id,
        status=clip.status,
        title=clip.title,
        error_message=clip.error_message,
        vertical_url=clip.vertical_url,
        thumbnail_url=clip.thumbnail_url,
        created_at=clip.created_at.isoformat(),
        updated_at=clip.updated_at.isoformat(),
        task=TASK_STATUS.get(task_id_for(clip.id)),
    )


def _job_response(job: RenderJob, assets: list[Asset]) -> RenderJobResponse:
    return RenderJobResponse(
        job_id=str(job.id),
        user_id=job.user_id,
        job_type=job.job_type,
        engine=job.engine,
        status=job.status,
        params=job.params or {},
        error_message=job.error_message,
        started_at=job.started_at.isoformat(),
        completed_at=job.completed_at.isoformat() if job.completed_at else None,
        processing_time_seconds=job.processing_time_seconds,
        assets=[
            AssetResponse(
                asset_id=str(a.id),
                output_type=a.output_type,
                storage_path=a.storage_path,
                duration_seconds=a.duration_seconds,
                metadata=a.asset_metadata,
            )
            for a in assets
        ],
    )


async def _parse_clip_request(request: Request) -> ClipRequest:
    try:
        payload = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise PipelineError(STEP_PARSE_REQUEST, f"Request body is not valid JSON: {e}") from e
    try:
        return ClipRequest.model_validate(payload)
    except ValidationError as e:
        fields = ", ".join(
            ".".join(str(p) for p in err["loc"]) or "body" for err in e.errors()
        )
        raise PipelineError(STEP_PARSE_REQUEST, f"Invalid render request: {fields}") from e


# ============================================================================
# Endpoint Handlers
# ============================================================================

@router.post("/clips", status_code=201, response_model=ClipStatusResponse)
async def register_clip(
    request: ClipCreateRequest,
    user_id: str = Depends(authenticate),
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
):
    """Register a pending clip so it can be rendered."""
    if request.clip_id and await orchestrator.clips.get_clip(request.clip_id):
        raise HTTPException(status_code=409, detail=f"Clip {request.clip_id} already exists")
    clip = await orchestrator.clips.create_clip(
        request.clip_id,
        user_id=user_id,
        source_media_id=request.source_media_id,
        title=request.title,
    )
    return _clip_status(clip)


@router.post("/clips/render")
async def render_clip(
    request: Request,
    background_tasks: BackgroundTasks,
    background: bool = False,
    user_id: str = Depends(authenticate),
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
):
    """Render the vertical and thumbnail derivatives of a clip.

    Synchronous by default: the response carries both derivative URLs or
    the step-tagged failure. With ``background=true`` the pipeline is
    queued and 202 Accepted is returned with a status URL to poll.
    """
    clip_request = await _parse_clip_request(request)

    if background:
        clip = await orchestrator.clips.get_clip(clip_request.clip_id)
        if clip is None:
            raise ClipNotFound(clip_request.clip_id)
        held_elsewhere = clip.status == "processing" and not ClipStore.is_stale(
            clip, orchestrator.stale_run_seconds,
        )
        if held_elsewhere or is_running(clip.id):
            raise ClipAlreadyRendering(clip.id)
        # No await between the check above and the reservation
        cancel_event = reserve_run(clip.id)
        background_tasks.add_task(
            render_clip_task, orchestrator, clip_request, user_id, cancel_event=cancel_event,
        )
        accepted = RenderAccepted(
            clip_id=clip_request.clip_id,
            status="processing",
            status_url=f"/api/clips/{clip_request.clip_id}/status",
        )
        return JSONResponse(status_code=202, content=accepted.model_dump())

    outcome = await orchestrator.render_clip(clip_request, user_id)
    status_code = 200 if outcome.success else status_code_for(outcome.error)
    return JSONResponse(status_code=status_code, content=outcome.to_response())


@router.post("/clips/{clip_id}/cancel", status_code=202)
async def cancel_render(clip_id: str, user_id: str = Depends(authenticate)):
    """Ask a background render to stop before its next step."""
    if not request_cancel(clip_id):
        raise HTTPException(
            status_code=409,
            detail=f"No background render running for clip {clip_id}",
        )
    return {"clip_id": clip_id, "cancel_requested": True}


@router.get("/clips/{clip_id}/status", response_model=ClipStatusResponse)
async def get_clip_status(
    clip_id: str,
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
):
    """Get clip status for polling, with the latest run summary."""
    clip = await orchestrator.clips.get_clip(clip_id)
    if clip is None:
        raise HTTPException(status_code=404, detail="Clip not found")

    response = _clip_status(clip)
    run = await orchestrator.clips.latest_run(clip_id)
    if run is not None:
        response.last_run = RunSummary(
            run_id=str(run.id),
            started_at=run.started_at.isoformat(),
            completed_at=run.completed_at.isoformat() if run.completed_at else None,
            total_duration_seconds=run.total_duration_seconds,
            failed_step=run.failed_step,
            captions_degraded=run.captions_degraded,
            step_log=run.log,
        )
    return response


@router.get("/clips/{clip_id}/jobs", response_model=list[RenderJobResponse])
async def list_clip_jobs(
    clip_id: str,
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
):
    """RenderJob ledger for a clip, oldest first, with produced assets."""
    if await orchestrator.clips.get_clip(clip_id) is None:
        raise HTTPException(status_code=404, detail="Clip not found")
    jobs = await orchestrator.jobs.list_jobs(clip_id)
    return [_job_response(job, assets) for job, assets in jobs]


@router.get("/health")
async def health_check(settings: Settings = Depends(get_settings)):
    """Health check endpoint with provider configuration status."""
    return {
        "status": "ok",
        "version": __version__,
        "providers": check_credentials(settings),
    }
