"""Admin operations over the job store: requeue, cancel, prune and guarded delete."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Sequence

from loguru import logger
from sqlalchemy.orm import Session

from db import AuditRepository, JobFilter, JobRepository, ResultRepository
from enqueue import EnqueueResult, EnqueueService
from errors import InvalidJobError, InvalidTransitionError
from models import TERMINAL_STATUSES, UNCLAIMED_STATUSES, JobStatus
from registry import JobRegistry
from settings import Settings


@dataclass
class CancelResult:
    job_id: int
    status: str
    cancel_requested: bool
    immediate: bool = False

    def to_dict(self) -> dict:
        return dict(self.__dict__)


@dataclass
class PruneFilter:
    type_prefix: Optional[str] = None
    types: Optional[Sequence[str]] = None
    statuses: Optional[Sequence[str]] = None
    subject_id: Optional[int] = None
    created_after: Optional[datetime] = None
    created_before: Optional[datetime] = None


@dataclass
class PruneResult:
    matched_count: int = 0
    deleted_count: int = 0
    updated_count: int = 0
    blocked_running_count: int = 0
    dry_run: bool = False

    def to_dict(self) -> dict:
        return dict(self.__dict__)


@dataclass
class DeleteResult:
    deleted: int = 0
    blocked: List[int] = field(default_factory=list)
    cancel_requested_set: List[int] = field(default_factory=list)
    results_deleted: int = 0

    def to_dict(self) -> dict:
        return {
            "job_delete": {
                "deleted": self.deleted,
                "blocked": self.blocked,
                "cancel_requested_set": self.cancel_requested_set,
            },
            "result_delete": {"deleted": self.results_deleted, "blocked": bool(self.blocked)},
        }


class AdminService:
    """Mutations an operator can request. None of them waits for a worker."""

    def __init__(
        self,
        db: Session,
        registry: JobRegistry,
        config: Optional[Settings] = None,
        actor: Optional[str] = None,
    ):
        self.db = db
        self.registry = registry
        self.config = config
        self.actor = actor
        self.jobs = JobRepository(db)
        self.results = ResultRepository(db)
        self.audit = AuditRepository(db)

    def _audit(self, action: str, entity_type: Optional[str], entity_id: Optional[int], **details) -> None:
        self.audit.record(action, entity_type, entity_id, details=details, actor=self.actor)

    def requeue(self, job_id: int) -> EnqueueResult:
        """Queue a fresh copy of a terminal job; the old row stays as history."""
        job = self.jobs.get(job_id)
        if not job.is_terminal:
            raise InvalidTransitionError(f"Job {job_id} is {job.status}, only terminal jobs can be requeued")
        payload = dict(job.payload or {})
        result = EnqueueService(self.db, self.registry, self.config).enqueue(
            job.type, job.subject_id, payload_builder=lambda subject: payload, force=True
        )
        logger.info(f"Requeue of job {job_id}: {result.to_dict()}")
        self._audit("job_requeue", "job", job_id, new_job_id=result.job_id, status=result.status)
        return result

    def cancel(self, job_id: int) -> CancelResult:
        job = self.jobs.get(job_id)
        if job.is_terminal:
            raise InvalidTransitionError(f"Job {job_id} is already {job.status}", code="not_cancellable")
        if job.status in UNCLAIMED_STATUSES and self.jobs.cancel_unclaimed(job_id):
            logger.info(f"Job {job_id} cancelled before claim")
            self._audit("job_cancel", "job", job_id, immediate=True)
            return CancelResult(job_id, JobStatus.CANCELLED.value, True, immediate=True)

        # Claimed in the meantime: the worker finalizes at its next checkpoint
        job = self.jobs.request_cancel(job_id)
        logger.info(f"Cancellation requested for running job {job_id}")
        self._audit("job_cancel", "job", job_id, immediate=False)
        return CancelResult(job_id, job.status, True, immediate=False)

    def prune(self, flt: PruneFilter, force: bool = False, dry_run: bool = False) -> PruneResult:
        """Delete matching terminal jobs; with ``force`` cancel and delete live ones too."""
        if not flt.type_prefix and not flt.types:
            raise InvalidJobError("prune needs type_prefix or types", code="missing_type_filter")

        matches = self.jobs.matching_ids(
            JobFilter(
                types=flt.types,
                type_prefix=flt.type_prefix,
                statuses=flt.statuses,
                subject_id=flt.subject_id,
                created_after=flt.created_after,
                created_before=flt.created_before,
            )
        )
        terminal_ids = [job_id for job_id, status in matches if status in TERMINAL_STATUSES]
        active_ids = [job_id for job_id, status in matches if status not in TERMINAL_STATUSES]
        result = PruneResult(matched_count=len(matches), dry_run=dry_run)

        if not force:
            result.blocked_running_count = len(active_ids)
            result.deleted_count = len(terminal_ids)
            if not dry_run:
                result.deleted_count = self.jobs.delete_jobs(terminal_ids, statuses=TERMINAL_STATUSES)
        else:
            result.updated_count = len(active_ids)
            result.deleted_count = len(matches)
            if not dry_run:
                if active_ids:
                    cancelled, flagged = self.jobs.request_cancel_many(active_ids)
                    result.updated_count = cancelled + flagged
                result.deleted_count = self.jobs.delete_jobs([job_id for job_id, _ in matches])

        logger.info(f"Prune {flt} force={force}: {result.to_dict()}")
        if not dry_run:
            self._audit("jobs_prune", None, None, filter=_filter_details(flt), force=force, **result.to_dict())
        return result

    def delete_with_guard(self, subject_id: int, job_type: str, force: bool = False) -> DeleteResult:
        """Delete jobs and the derived result of (subject, type).

        Refused while a non-terminal job exists for the pair unless forced;
        running ones are asked to cancel so a later retry can succeed.
        """
        self.registry.get(job_type)
        jobs = self.jobs.list_jobs(JobFilter(types=[job_type], subject_id=subject_id, newest_first=False))
        active = [job for job in jobs if not job.is_terminal]
        result = DeleteResult()

        if active and not force:
            result.blocked = [job.id for job in active]
            running = [job.id for job in active if job.status == JobStatus.RUNNING.value and not job.cancel_requested]
            if running:
                self.jobs.request_cancel_many(running)
                result.cancel_requested_set = running
                self._audit(
                    "result_delete_blocked", "subject", subject_id, type=job_type, cancel_requested=running
                )
            logger.info(f"Delete of {job_type} for subject {subject_id} blocked by jobs {result.blocked}")
            return result

        if active:
            active_ids = [job.id for job in active]
            self.jobs.request_cancel_many(active_ids)
            result.cancel_requested_set = active_ids
        result.deleted = self.jobs.delete_jobs([job.id for job in jobs])
        result.results_deleted = self.results.delete(subject_id, job_type)
        self._audit(
            "result_delete",
            "subject",
            subject_id,
            type=job_type,
            force=force,
            jobs_deleted=result.deleted,
            results_deleted=result.results_deleted,
            cancel_requested=result.cancel_requested_set,
        )
        logger.info(
            f"Deleted {result.deleted} jobs and {result.results_deleted} results of {job_type} for subject {subject_id}"
        )
        return result


def _filter_details(flt: PruneFilter) -> dict:
    details = {}
    for key, value in flt.__dict__.items():
        if value is None:
            continue
        if isinstance(value, datetime):
            value = value.isoformat()
        elif not isinstance(value, str):
            value = list(value)
        details[key] = value
    return details
