"""Enqueue service: validation, dedup, eligibility and queue limits."""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Sequence

from loguru import logger
from sqlalchemy.orm import Session

from db import JobRepository, ResultRepository, SubjectRepository
from errors import (
    IneligibleSubjectError,
    InvalidJobError,
    OrchestrationError,
    PayloadBuildError,
    QueueFullError,
)
from models import Subject
from registry import JobRegistry, JobTypeSpec
from settings import Settings, settings as default_settings
from utils import utcnow

PayloadBuilder = Callable[[Optional[Subject]], dict]


@dataclass
class EnqueueResult:
    job_id: Optional[int]
    deduped: bool = False
    status: str = "enqueued"  # enqueued, deduped, skipped
    reason: Optional[str] = None
    subject_id: Optional[int] = None

    def to_dict(self) -> dict:
        return dict(self.__dict__)


@dataclass
class BulkEnqueueSummary:
    candidates: int = 0
    enqueued: int = 0
    deduped: int = 0
    skipped_ineligible: int = 0
    skipped_error: int = 0
    job_ids: List[int] = field(default_factory=list)
    errors: List[Dict[str, object]] = field(default_factory=list)

    @property
    def skipped(self) -> int:
        return self.skipped_ineligible + self.skipped_error

    def to_dict(self) -> dict:
        data = dict(self.__dict__)
        data["skipped"] = self.skipped
        return data


@dataclass
class CandidateFilter:
    """Which subjects a bulk enqueue considers."""

    subject_ids: Optional[Sequence[int]] = None
    since: Optional[datetime] = None
    limit: Optional[int] = 50
    missing_only: bool = True


class EnqueueService:
    """Turns requests for work into queued jobs."""

    def __init__(self, db: Session, registry: JobRegistry, config: Optional[Settings] = None):
        self.db = db
        self.registry = registry
        self.settings = config or default_settings
        self.jobs = JobRepository(db)
        self.subjects = SubjectRepository(db)
        self.results = ResultRepository(db)

    def enqueue(
        self,
        job_type: str,
        subject_id: Optional[int] = None,
        payload_builder: Optional[PayloadBuilder] = None,
        overrides: Optional[dict] = None,
        force: bool = False,
        delay_sec: Optional[float] = None,
    ) -> EnqueueResult:
        """Queue one job, or return the existing non-terminal one.

        Raises InvalidJobError for bad requests, PayloadBuildError and
        QueueFullError for per-candidate failures. Ineligible subjects come
        back as ``status="skipped"``.
        """
        spec = self.registry.get(job_type)
        subject = self._validate_subject(spec, subject_id)

        if spec.requires_subject:
            existing = self.jobs.active_for(subject_id, job_type)
            if existing is not None:
                return EnqueueResult(existing.id, True, "deduped", subject_id=subject_id)

        try:
            self._check_eligible(spec, subject, force)
        except IneligibleSubjectError as e:
            logger.debug(f"Skipping {job_type} for subject {subject_id}: {e}")
            return EnqueueResult(None, False, "skipped", reason=e.code, subject_id=subject_id)

        payload = self._build_payload(spec, subject, payload_builder, overrides or {})
        parsed = self.registry.parse_payload(job_type, payload)
        dedup_key = spec.dedup_key(parsed) if spec.dedup_key is not None else None

        # Family-wide jobs are only duplicates when they target the same thing
        if not spec.requires_subject:
            existing = self.jobs.active_for(subject_id, job_type, dedup_key)
            if existing is not None:
                return EnqueueResult(existing.id, True, "deduped", subject_id=subject_id)

        self._check_capacity(job_type, subject_id)
        not_before = utcnow() + timedelta(seconds=delay_sec) if delay_sec else None
        outcome = self.jobs.create(
            job_type, subject_id, parsed.model_dump(), not_before=not_before, dedup_key=dedup_key
        )
        if outcome.deduped:
            return EnqueueResult(outcome.job.id, True, "deduped", subject_id=subject_id)
        logger.info(f"Enqueued job {outcome.job.id} type={job_type} subject={subject_id}")
        return EnqueueResult(outcome.job.id, False, "enqueued", subject_id=subject_id)

    def bulk_enqueue(
        self,
        job_type: str,
        subject_ids: Sequence[int],
        payload_builder: Optional[PayloadBuilder] = None,
        overrides: Optional[dict] = None,
        force: bool = False,
    ) -> BulkEnqueueSummary:
        """Enqueue ``job_type`` for many subjects; one failure never aborts the rest."""
        self.registry.get(job_type)
        summary = BulkEnqueueSummary()
        for subject_id in subject_ids:
            summary.candidates += 1
            try:
                result = self.enqueue(job_type, subject_id, payload_builder, overrides, force)
            except OrchestrationError as e:
                summary.skipped_error += 1
                summary.errors.append({"subject_id": subject_id, "reason": e.code, "message": str(e)})
                logger.warning(f"Enqueue {job_type} for subject {subject_id} failed: {e}")
                continue

            if result.status == "enqueued":
                summary.enqueued += 1
                summary.job_ids.append(result.job_id)
            elif result.status == "deduped":
                summary.deduped += 1
                summary.job_ids.append(result.job_id)
            else:
                summary.skipped_ineligible += 1

        logger.info(f"Bulk enqueue {job_type}: {summary.to_dict()}")
        return summary

    def select_candidates(self, job_type: str, flt: Optional[CandidateFilter] = None) -> List[int]:
        """Subject ids worth considering for ``job_type``."""
        spec = self.registry.get(job_type)
        flt = flt or CandidateFilter()
        if not spec.requires_subject:
            return []
        subjects = self.subjects.candidates(
            kinds=spec.subject_kinds or None,
            subject_ids=flt.subject_ids,
            since=flt.since,
            missing_type=job_type if flt.missing_only else None,
            limit=flt.limit,
        )
        return [subject.id for subject in subjects]

    def _validate_subject(self, spec: JobTypeSpec, subject_id: Optional[int]) -> Optional[Subject]:
        if not spec.requires_subject:
            if subject_id is not None:
                raise InvalidJobError(f"{spec.name} does not take a subject", code="unexpected_subject")
            return None
        if subject_id is None:
            raise InvalidJobError(f"{spec.name} requires a subject", code="missing_subject")
        subject = self.subjects.get(subject_id)
        if subject is None:
            raise InvalidJobError(f"Unknown subject {subject_id}", code="unknown_subject")
        return subject

    def _check_eligible(self, spec: JobTypeSpec, subject: Optional[Subject], force: bool) -> None:
        if subject is None:
            return
        if not subject.present:
            raise IneligibleSubjectError(f"Subject {subject.id} is missing on disk", code="subject_missing")
        if spec.subject_kinds and subject.kind not in spec.subject_kinds:
            raise IneligibleSubjectError(
                f"{spec.name} does not support {subject.kind} subjects", code="unsupported_kind"
            )
        if spec.skip_if_done and not force and self.results.exists(subject.id, spec.name):
            raise IneligibleSubjectError(f"Subject {subject.id} already has {spec.name}", code="already_done")

    def _check_capacity(self, job_type: str, subject_id: Optional[int]) -> None:
        if self.jobs.active_count() >= self.settings.queue_max_total:
            raise QueueFullError(f"Queue holds {self.settings.queue_max_total} active jobs")
        if self.jobs.active_count(types=[job_type]) >= self.settings.queue_max_per_type:
            raise QueueFullError(f"Queue for {job_type} is full")
        if subject_id is not None and self.jobs.active_count(subject_id=subject_id) >= self.settings.queue_max_per_subject:
            raise QueueFullError(f"Subject {subject_id} already has too many active jobs")

    def _build_payload(
        self,
        spec: JobTypeSpec,
        subject: Optional[Subject],
        payload_builder: Optional[PayloadBuilder],
        overrides: dict,
    ) -> dict:
        try:
            if payload_builder is not None:
                return payload_builder(subject)
            if spec.build_payload is not None:
                return spec.build_payload(subject, overrides, self.db)
            return dict(overrides)
        except PayloadBuildError:
            raise
        except Exception as e:
            raise PayloadBuildError(f"Payload for {spec.name} failed: {e}") from e
