"""FastAPI application exposing the control API over HTTP."""

from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import Depends, FastAPI, Query, status
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from loguru import logger

from control import ControlAPI
from db import check_db_health, init_db
from schemas import (
    CancelResponse,
    ControlResponse,
    DeleteRequest,
    DeleteResponse,
    EnqueueRequest,
    EnqueueResponse,
    FamilyStatusResponse,
    HealthResponse,
    JobListResponse,
    JobStatusResponse,
    PruneRequest,
    PruneResponse,
    RequeueResponse,
    RunRequest,
    RunResponse,
)
from settings import settings
from utils import configure_logging

configure_logging(settings.log_level, settings.log_file)

# HTTP status for each failure outcome of the control API
OUTCOME_STATUS_CODES = {
    "invalid": status.HTTP_400_BAD_REQUEST,
    "not_found": status.HTTP_404_NOT_FOUND,
    "conflict": status.HTTP_409_CONFLICT,
    "blocked": status.HTTP_409_CONFLICT,
    "skipped": status.HTTP_409_CONFLICT,
    "busy": status.HTTP_503_SERVICE_UNAVAILABLE,
    "start_failed": status.HTTP_503_SERVICE_UNAVAILABLE,
}

_control: Optional[ControlAPI] = None


def get_control() -> ControlAPI:
    """Lazily built control API shared by all requests."""
    global _control
    if _control is None:
        _control = ControlAPI(actor="http")
    return _control


def respond(result: ControlResponse, success_code: int = status.HTTP_200_OK) -> JSONResponse:
    if result.ok:
        code = success_code
    else:
        code = OUTCOME_STATUS_CODES.get(result.status, status.HTTP_500_INTERNAL_SERVER_ERROR)
    return JSONResponse(status_code=code, content=jsonable_encoder(result))


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("Starting media jobs control service")
    init_db()
    logger.info("Database initialized")
    yield
    logger.info("Media jobs control service stopped")


# Create FastAPI app
app = FastAPI(
    title="Media Jobs",
    description="Background job orchestration for scans, analysis and image regeneration",
    version=settings.version,
    lifespan=lifespan,
)


@app.get("/healthz", response_model=HealthResponse)
def health_check():
    """Health check endpoint."""
    db_healthy = check_db_health()

    return HealthResponse(
        ok=db_healthy, db="ready" if db_healthy else "error", version=settings.version
    )


@app.post("/jobs/enqueue", response_model=EnqueueResponse)
def enqueue_jobs(request: EnqueueRequest, control: ControlAPI = Depends(get_control)):
    """Enqueue one subject or a filtered set of subjects."""
    result = control.enqueue(
        request.type,
        subject_id=request.subject_id,
        subject_ids=request.subject_ids,
        since=request.since,
        limit=request.limit,
        missing_only=request.missing_only,
        force=request.force,
        payload=request.payload,
    )
    created = result.ok and result.enqueued > 0
    return respond(result, status.HTTP_201_CREATED if created else status.HTTP_200_OK)


@app.get("/jobs", response_model=JobListResponse)
def list_jobs(
    family: Optional[str] = None,
    type: Optional[str] = None,
    status_filter: Optional[List[str]] = Query(None, alias="status"),
    subject_id: Optional[int] = None,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    control: ControlAPI = Depends(get_control),
):
    """List jobs, newest first."""
    return respond(
        control.list_jobs(
            family=family,
            job_type=type,
            statuses=status_filter,
            subject_id=subject_id,
            limit=limit,
            offset=offset,
        )
    )


@app.get("/jobs/{job_id}", response_model=JobStatusResponse)
def get_job_status(job_id: int, control: ControlAPI = Depends(get_control)):
    """Get job status and progress."""
    return respond(control.job_status(job_id))


@app.post("/jobs/{job_id}/cancel", response_model=CancelResponse)
def cancel_job(job_id: int, control: ControlAPI = Depends(get_control)):
    """Cancel a job, immediately if it was not claimed yet."""
    return respond(control.cancel(job_id))


@app.post("/jobs/{job_id}/requeue", response_model=RequeueResponse)
def requeue_job(job_id: int, control: ControlAPI = Depends(get_control)):
    """Queue a fresh copy of a finished job."""
    result = control.requeue(job_id)
    return respond(result, status.HTTP_201_CREATED if result.status == "enqueued" else status.HTTP_200_OK)


@app.post("/jobs/prune", response_model=PruneResponse)
def prune_jobs(request: PruneRequest, control: ControlAPI = Depends(get_control)):
    """Bulk delete jobs matching the filters."""
    return respond(
        control.prune(
            type_prefix=request.type_prefix,
            types=request.types,
            statuses=request.statuses,
            subject_id=request.subject_id,
            created_after=request.created_after,
            created_before=request.created_before,
            force=request.force,
            dry_run=request.dry_run,
        )
    )


@app.post("/families/{family}/run", response_model=RunResponse)
def run_family(family: str, request: Optional[RunRequest] = None, control: ControlAPI = Depends(get_control)):
    """Make sure a worker is running for the family."""
    request = request or RunRequest()
    return respond(
        control.run(
            family,
            desired_concurrency=request.desired_concurrency,
            batch_size=request.batch_size,
            time_budget=request.time_budget,
        )
    )


@app.get("/families/{family}/status", response_model=FamilyStatusResponse)
def family_status(family: str, control: ControlAPI = Depends(get_control)):
    """Counts, lease state and snapshot age of a family."""
    return respond(control.status(family))


@app.post("/results/delete", response_model=DeleteResponse)
def delete_results(request: DeleteRequest, control: ControlAPI = Depends(get_control)):
    """Delete derived data of a subject, guarded against live jobs."""
    return respond(control.delete(request.subject_id, request.type, force=request.force))


if __name__ == "__main__":
    import uvicorn

    logger.info(f"Starting server on {settings.host}:{settings.port}")
    uvicorn.run(
        "app:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
        reload=False,
    )
