"""HTTP endpoints for triggering, resetting and watching pipeline runs."""

from typing import Any, Dict, Optional

from fastapi import APIRouter, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse, PlainTextResponse, StreamingResponse
from pydantic import BaseModel, Field

from studio_pipeline.logging import get_logger
from studio_pipeline.persistence.exceptions import PersistenceError
from studio_pipeline.pipeline.exceptions import AlreadyRunningError, RunNotFoundError

from .stream import run_event_stream

logger = get_logger(__name__, component="api")

router = APIRouter(tags=["Pipeline"])

ALREADY_RUNNING = "A pipeline run is already in progress"


# ═══════════════════════════════════════════════════════════════════════════
# RESPONSE MODELS
# ═══════════════════════════════════════════════════════════════════════════


class StartResponse(BaseModel):
    """A run was queued."""

    job_id: str = Field(..., serialization_alias="jobId")


class AlreadyRunningResponse(BaseModel):
    """Returned with 409 when another run holds the slot."""

    error: str = ALREADY_RUNNING
    job_id: str = Field(..., serialization_alias="jobId")


class ResetResponse(BaseModel):
    """Outcome of a reset; ``cleared`` is 1 when a run was terminated."""

    success: bool = True
    cleared: int = Field(..., ge=0, le=1)
    job_id: Optional[str] = Field(None, serialization_alias="jobId")


class HealthResponse(BaseModel):
    status: str = "ok"


# ═══════════════════════════════════════════════════════════════════════════
# ENDPOINTS
# ═══════════════════════════════════════════════════════════════════════════


@router.post(
    "/pipeline",
    response_model=StartResponse,
    responses={409: {"model": AlreadyRunningResponse, "description": "A run is already active"}},
    summary="Start a pipeline run",
)
def start_pipeline(request: Request):
    orchestrator = request.app.state.orchestrator
    try:
        run_id = orchestrator.start()
    except AlreadyRunningError as e:
        logger.info(
            "Start rejected: run already active",
            extra={"event": "api.pipeline.already_running", "run_id": e.active_run_id},
        )
        return JSONResponse(
            status_code=status.HTTP_409_CONFLICT,
            content=AlreadyRunningResponse(job_id=e.active_run_id).model_dump(by_alias=True),
        )
    except PersistenceError as e:
        logger.error(f"Could not start run: {e}", extra={"event": "api.pipeline.start_failed"})
        raise HTTPException(status_code=503, detail="Database unavailable") from e

    return StartResponse(job_id=run_id)


@router.delete(
    "/pipeline",
    response_model=ResetResponse,
    response_model_exclude_none=True,
    summary="Reset the active run",
)
def reset_pipeline(request: Request) -> ResetResponse:
    run_id = request.app.state.orchestrator.reset()
    return ResetResponse(cleared=1 if run_id else 0, job_id=run_id)


@router.get("/pipeline/{job_id}", summary="Snapshot of one run")
def get_run(job_id: str, request: Request) -> Dict[str, Any]:
    try:
        return request.app.state.orchestrator.status(job_id).to_dict()
    except RunNotFoundError as e:
        raise HTTPException(status_code=404, detail="Job not found") from e


@router.get("/status", summary="Stream run progress as server-sent events")
def stream_status(request: Request, job_id: Optional[str] = Query(None, alias="jobId")):
    if not job_id:
        return PlainTextResponse("Missing jobId", status_code=status.HTTP_400_BAD_REQUEST)

    server = request.app.state.server_config
    return StreamingResponse(
        run_event_stream(
            request.app.state.orchestrator,
            job_id,
            timeout_seconds=server.stream_timeout_seconds,
            keepalive_seconds=server.keepalive_seconds,
        ),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


@router.get("/freshness", summary="Data freshness per report category")
def get_freshness(request: Request) -> Dict[str, Any]:
    return request.app.state.freshness.snapshot()


@router.get("/health", response_model=HealthResponse, summary="Liveness probe")
def health() -> HealthResponse:
    return HealthResponse()
