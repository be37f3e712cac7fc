"""Pydantic schemas for control API requests and responses."""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class ControlResponse(BaseModel):
    """Fields every control API answer carries."""

    ok: bool = Field(default=True, description="False when the operation did not happen")
    status: str = Field(..., description="Operation status or failure outcome")
    reason: Optional[str] = Field(None, description="Stable code explaining the status")
    message: Optional[str] = Field(None, description="Human readable detail")


class EnqueueRequest(BaseModel):
    """Request schema for enqueueing work."""

    type: str = Field(..., description="Job type, e.g. analysis.caption")
    subject_id: Optional[int] = Field(None, description="Single subject to enqueue for")
    subject_ids: Optional[List[int]] = Field(None, description="Restrict candidates to these subjects")
    since: Optional[datetime] = Field(None, description="Only subjects imported since")
    limit: Optional[int] = Field(default=50, ge=1, description="Maximum candidates")
    missing_only: bool = Field(default=True, description="Skip subjects that already have a result")
    force: bool = Field(default=False, description="Enqueue even when a result exists")
    payload: Dict[str, Any] = Field(default_factory=dict, description="Payload overrides")


class EnqueueResponse(ControlResponse):
    job_id: Optional[int] = Field(None, description="Job of a single-subject enqueue")
    deduped: bool = Field(default=False)
    candidates: int = 0
    enqueued: int = 0
    deduped_count: int = 0
    skipped: int = 0
    skipped_ineligible: int = 0
    skipped_error: int = 0
    job_ids: List[int] = Field(default_factory=list)
    errors: List[Dict[str, Any]] = Field(default_factory=list)


class RunRequest(BaseModel):
    desired_concurrency: int = Field(default=1, ge=1, description="Workers wanted for the family")
    batch_size: Optional[int] = Field(None, ge=1, description="Jobs per worker invocation")
    time_budget: Optional[int] = Field(None, ge=1, description="Seconds per worker invocation")


class RunResponse(ControlResponse):
    family: Optional[str] = None
    pid: Optional[int] = None
    pids: List[int] = Field(default_factory=list)
    live_workers: int = 0
    max_concurrency: int = 1


class CancelResponse(ControlResponse):
    job_id: Optional[int] = None
    cancel_requested: bool = False
    immediate: bool = False


class ProgressInfo(BaseModel):
    """Job progress information."""

    numerator: Optional[int] = Field(None, description="Units done")
    denominator: Optional[int] = Field(None, description="Units total")
    percent: Optional[float] = Field(None, description="Progress percentage")
    stage: Optional[str] = Field(None, description="Current stage")


class JobStatusResponse(ControlResponse):
    """Projection of one job for pollers."""

    job_id: Optional[int] = None
    type: Optional[str] = None
    subject_id: Optional[int] = None
    progress: Optional[ProgressInfo] = None
    heartbeat_at: Optional[str] = None
    last_error_code: Optional[str] = None
    error_message: Optional[str] = None
    cancel_requested: bool = False
    attempts: int = 0
    not_before: Optional[str] = None
    created_at: Optional[str] = None
    finished_at: Optional[str] = None


class FamilyStatusResponse(ControlResponse):
    family: Optional[str] = None
    counts_by_status: Dict[str, int] = Field(default_factory=dict)
    counts_by_submode: Dict[str, Dict[str, int]] = Field(default_factory=dict)
    error_counts: Dict[str, int] = Field(default_factory=dict)
    running: int = 0
    max_concurrency: int = 1
    lease_held: bool = False
    worker_pids: List[int] = Field(default_factory=list)
    upstream_down: bool = Field(default=False, description="External service found down by the last run")
    blocked: int = Field(default=0, description="Unclaimed jobs held for the upstream")
    leases: List[Dict[str, Any]] = Field(default_factory=list)
    snapshot_age: Optional[float] = Field(None, description="Age of the cached snapshot in seconds")
    source: Optional[str] = Field(None, description="cache or store")
    stale: bool = False
    last_spawn: Optional[Dict[str, Any]] = None


class DeleteRequest(BaseModel):
    subject_id: int = Field(..., description="Subject whose derived data is deleted")
    type: str = Field(..., description="Job type of the derived data")
    force: bool = Field(default=False, description="Cancel and delete live jobs too")


class DeleteResponse(ControlResponse):
    job_delete: Dict[str, Any] = Field(default_factory=dict)
    result_delete: Dict[str, Any] = Field(default_factory=dict)


class PruneRequest(BaseModel):
    type_prefix: Optional[str] = Field(None, description="Match job types starting with this")
    types: Optional[List[str]] = Field(None, description="Match these job types")
    statuses: Optional[List[str]] = Field(None, description="Match these statuses")
    subject_id: Optional[int] = None
    created_after: Optional[datetime] = None
    created_before: Optional[datetime] = None
    force: bool = Field(default=False, description="Cancel and delete live jobs too")
    dry_run: bool = Field(default=False, description="Report without deleting")


class PruneResponse(ControlResponse):
    matched_count: int = 0
    deleted_count: int = 0
    updated_count: int = 0
    blocked_running_count: int = 0
    dry_run: bool = False


class RequeueResponse(ControlResponse):
    source_job_id: Optional[int] = None
    job_id: Optional[int] = None
    deduped: bool = False


class JobListResponse(ControlResponse):
    count: int = 0
    jobs: List[Dict[str, Any]] = Field(default_factory=list)


class HealthResponse(BaseModel):
    """Response schema for health check."""

    ok: bool = Field(..., description="Service health status")
    db: str = Field(..., description="Database status")
    version: str = Field(..., description="Application version")
