"""Control API shared by the HTTP tier and the CLI.

Every operation returns a structured response; failures are mapped onto
named outcomes (``invalid``, ``not_found``, ``conflict``, ``busy``,
``start_failed``, ``error``) instead of escaping as exceptions.
"""

import functools
from datetime import datetime
from typing import Callable, List, Optional

from loguru import logger
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from admin import AdminService, PruneFilter
from db import JobFilter, JobRepository, is_busy_error, session_scope
from enqueue import BulkEnqueueSummary, CandidateFilter, EnqueueService
from errors import (
    InvalidJobError,
    InvalidTransitionError,
    JobNotFoundError,
    OrchestrationError,
    PayloadBuildError,
    QueueFullError,
    StoreBusyError,
    SupervisorError,
)
from executors import default_registry
from registry import JobRegistry
from schemas import (
    CancelResponse,
    DeleteResponse,
    EnqueueResponse,
    FamilyStatusResponse,
    JobListResponse,
    JobStatusResponse,
    ProgressInfo,
    PruneResponse,
    RequeueResponse,
    RunResponse,
)
from settings import Settings, settings as default_settings
from status_cache import StatusCache
from supervisor import START_FAILED, WorkerSupervisor
from utils import naive_utc


def outcome_for(exc: Exception) -> str:
    if isinstance(exc, (StoreBusyError, QueueFullError)):
        return "busy"
    if isinstance(exc, JobNotFoundError):
        return "not_found"
    if isinstance(exc, InvalidTransitionError):
        return "conflict"
    if isinstance(exc, (InvalidJobError, PayloadBuildError)):
        return "invalid"
    if isinstance(exc, SupervisorError):
        return START_FAILED
    return "error"


def structured(response_model):
    """Turn exceptions raised by a control operation into ``response_model``."""

    def decorator(fn):
        @functools.wraps(fn)
        def wrapper(self, *args, **kwargs):
            try:
                return fn(self, *args, **kwargs)
            except OrchestrationError as e:
                logger.info(f"{fn.__name__} -> {outcome_for(e)}: {e}")
                return response_model(ok=False, status=outcome_for(e), reason=e.code, message=str(e))
            except SQLAlchemyError as e:
                if is_busy_error(e):
                    return response_model(ok=False, status="busy", reason="busy", message=str(e))
                logger.exception(f"{fn.__name__} failed on the store")
                return response_model(ok=False, status="error", reason="store_error", message=str(e))
            except Exception as e:
                logger.exception(f"{fn.__name__} failed")
                return response_model(ok=False, status="error", reason="internal_error", message=str(e))

        return wrapper

    return decorator


class ControlAPI:
    """Facade over the enqueue service, supervisor, status cache and admin operations."""

    def __init__(
        self,
        registry: Optional[JobRegistry] = None,
        session_factory: Optional[Callable[[], Session]] = None,
        supervisor: Optional[WorkerSupervisor] = None,
        status_cache: Optional[StatusCache] = None,
        config: Optional[Settings] = None,
        actor: Optional[str] = None,
    ):
        self.registry = registry or default_registry()
        self.actor = actor
        self.session_factory = session_factory
        self.settings = config or default_settings
        self.supervisor = supervisor or WorkerSupervisor(state_dir=self.settings.state_dir)
        self.status_cache = status_cache or StatusCache(state_dir=self.settings.state_dir)

    def _session(self):
        return session_scope(self.session_factory)

    def _admin(self, db: Session) -> AdminService:
        return AdminService(db, self.registry, self.settings, actor=self.actor)

    @structured(EnqueueResponse)
    def enqueue(
        self,
        job_type: str,
        subject_id: Optional[int] = None,
        subject_ids: Optional[List[int]] = None,
        since: Optional[datetime] = None,
        limit: Optional[int] = 50,
        missing_only: bool = True,
        force: bool = False,
        payload: Optional[dict] = None,
    ) -> EnqueueResponse:
        spec = self.registry.get(job_type)
        with self._session() as db:
            service = EnqueueService(db, self.registry, self.settings)
            if subject_id is not None or not spec.requires_subject:
                result = service.enqueue(job_type, subject_id, overrides=payload, force=force)
                summary = BulkEnqueueSummary(candidates=1)
                if result.status == "enqueued":
                    summary.enqueued = 1
                elif result.status == "deduped":
                    summary.deduped = 1
                else:
                    summary.skipped_ineligible = 1
                if result.job_id is not None:
                    summary.job_ids.append(result.job_id)
                return self._enqueue_response(summary, result.status, result.reason, result.job_id, result.deduped)

            flt = CandidateFilter(
                subject_ids=subject_ids,
                since=naive_utc(since),
                limit=limit,
                missing_only=missing_only and not force,
            )
            candidates = service.select_candidates(job_type, flt)
            summary = service.bulk_enqueue(job_type, candidates, overrides=payload, force=force)
            return self._enqueue_response(summary, "ok")

    @staticmethod
    def _enqueue_response(summary: BulkEnqueueSummary, status: str, reason=None, job_id=None, deduped=False):
        return EnqueueResponse(
            status=status,
            reason=reason,
            job_id=job_id,
            deduped=deduped,
            candidates=summary.candidates,
            enqueued=summary.enqueued,
            deduped_count=summary.deduped,
            skipped=summary.skipped,
            skipped_ineligible=summary.skipped_ineligible,
            skipped_error=summary.skipped_error,
            job_ids=summary.job_ids,
            errors=summary.errors,
        )

    @structured(RunResponse)
    def run(
        self,
        family: str,
        desired_concurrency: int = 1,
        batch_size: Optional[int] = None,
        time_budget: Optional[int] = None,
    ) -> RunResponse:
        self.registry.types_for_family(family)
        result = self.supervisor.ensure_running(
            family,
            desired_concurrency=desired_concurrency,
            batch_size=batch_size,
            time_budget=time_budget,
        )
        return RunResponse(
            ok=result.status != START_FAILED,
            status=result.status,
            reason=result.reason,
            family=family,
            pid=result.pid,
            pids=result.pids,
            live_workers=result.live_workers,
            max_concurrency=result.max_concurrency,
        )

    @structured(CancelResponse)
    def cancel(self, job_id: int) -> CancelResponse:
        with self._session() as db:
            result = self._admin(db).cancel(job_id)
        return CancelResponse(
            status=result.status,
            job_id=result.job_id,
            cancel_requested=result.cancel_requested,
            immediate=result.immediate,
        )

    @structured(JobStatusResponse)
    def job_status(self, job_id: int) -> JobStatusResponse:
        with self._session() as db:
            job = JobRepository(db).get(job_id)
            data = job.to_dict()
            return JobStatusResponse(
                status=job.status,
                job_id=job.id,
                type=job.type,
                subject_id=job.subject_id,
                progress=ProgressInfo(
                    numerator=job.progress_numerator,
                    denominator=job.progress_denominator,
                    percent=job.progress_percent(),
                    stage=job.stage,
                ),
                heartbeat_at=data["heartbeat_at"],
                last_error_code=job.last_error_code,
                error_message=job.error_message,
                cancel_requested=bool(job.cancel_requested),
                attempts=job.attempts,
                not_before=data["not_before"],
                created_at=data["created_at"],
                finished_at=data["finished_at"],
            )

    @structured(FamilyStatusResponse)
    def status(self, family: str) -> FamilyStatusResponse:
        self.registry.types_for_family(family)
        with self._session() as db:
            snapshot = self.status_cache.status(db, family, self.registry)
        # Lease probes are cheap, so report them live rather than cached
        leases = self.supervisor.inspect(family)
        held = [lease for lease in leases if lease.held]
        data = snapshot.model_dump()
        data.update(
            lease_held=bool(held),
            worker_pids=[lease.pid for lease in held if lease.pid],
            leases=[lease.to_dict() for lease in leases],
            last_spawn=self.supervisor.last_spawn(family),
        )
        data.pop("ts", None)
        return FamilyStatusResponse(status="ok", **data)

    @structured(DeleteResponse)
    def delete(self, subject_id: int, job_type: str, force: bool = False) -> DeleteResponse:
        with self._session() as db:
            result = self._admin(db).delete_with_guard(subject_id, job_type, force)
        body = result.to_dict()
        blocked = bool(result.blocked) and not force
        return DeleteResponse(
            ok=not blocked,
            status="blocked" if blocked else "deleted",
            reason="active_jobs" if blocked else None,
            job_delete=body["job_delete"],
            result_delete=body["result_delete"],
        )

    @structured(PruneResponse)
    def prune(
        self,
        type_prefix: Optional[str] = None,
        types: Optional[List[str]] = None,
        statuses: Optional[List[str]] = None,
        subject_id: Optional[int] = None,
        created_after: Optional[datetime] = None,
        created_before: Optional[datetime] = None,
        force: bool = False,
        dry_run: bool = False,
    ) -> PruneResponse:
        flt = PruneFilter(
            type_prefix=type_prefix,
            types=types,
            statuses=statuses,
            subject_id=subject_id,
            created_after=naive_utc(created_after),
            created_before=naive_utc(created_before),
        )
        with self._session() as db:
            result = self._admin(db).prune(flt, force=force, dry_run=dry_run)
        return PruneResponse(status="dry_run" if dry_run else "pruned", **result.to_dict())

    @structured(RequeueResponse)
    def requeue(self, job_id: int) -> RequeueResponse:
        with self._session() as db:
            result = self._admin(db).requeue(job_id)
        return RequeueResponse(
            ok=result.job_id is not None,
            status=result.status,
            reason=result.reason,
            source_job_id=job_id,
            job_id=result.job_id,
            deduped=result.deduped,
        )

    @structured(JobListResponse)
    def list_jobs(
        self,
        family: Optional[str] = None,
        job_type: Optional[str] = None,
        statuses: Optional[List[str]] = None,
        subject_id: Optional[int] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> JobListResponse:
        types = self.registry.types_for_family(family) if family else None
        if job_type:
            types = [job_type]
        with self._session() as db:
            jobs = JobRepository(db).list_jobs(
                JobFilter(types=types, statuses=statuses, subject_id=subject_id, limit=limit, offset=offset)
            )
            return JobListResponse(status="ok", count=len(jobs), jobs=[job.to_dict() for job in jobs])
