"""Database configuration, session management and repositories."""

import functools
import os
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

from loguru import logger
from sqlalchemy import and_, create_engine, delete, event, func, or_, select, text, update
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from errors import InvalidTransitionError, JobNotFoundError, StoreBusyError
from models import (
    ACTIVE_STATUSES,
    UNCLAIMED_STATUSES,
    AuditLog,
    Base,
    DerivedResult,
    Job,
    JobStatus,
    Subject,
)
from settings import settings
from utils import ensure_directory, utcnow

CLAIM_RETRIES = 5
BLOCKED_BY_UPSTREAM = "blocked_by_upstream"
DELETE_CHUNK_SIZE = 500

_BUSY_MARKERS = (
    "database is locked",
    "database is busy",
    "database table is locked",
    "could not obtain lock",
    "deadlock detected",
    "lock timeout",
)


def _sqlite_pragmas(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def create_db_engine(db_url: str, busy_timeout: Optional[float] = None):
    """Create an engine; SQLite files get WAL and a busy timeout."""
    if not db_url.startswith("sqlite"):
        return create_engine(db_url, pool_pre_ping=True, echo=False)

    connect_args = {
        "check_same_thread": False,
        "timeout": busy_timeout if busy_timeout is not None else settings.db_busy_timeout_sec,
    }
    if db_url in ("sqlite://", "sqlite:///:memory:"):
        return create_engine(
            db_url, poolclass=StaticPool, connect_args=connect_args, echo=False
        )

    sqlite_engine = create_engine(db_url, connect_args=connect_args, echo=False)
    event.listen(sqlite_engine, "connect", _sqlite_pragmas)
    return sqlite_engine


engine = create_db_engine(settings.db_url)

# Create session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db() -> None:
    """Initialize database tables."""
    url = engine.url
    if url.get_backend_name() == "sqlite" and url.database not in (None, "", ":memory:"):
        ensure_directory(os.path.dirname(os.path.abspath(url.database)))
    Base.metadata.create_all(bind=engine)


def get_db() -> Iterator[Session]:
    """Get database session."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def session_scope(factory: Optional[Callable[[], Session]] = None) -> Iterator[Session]:
    """Open a session from ``factory`` (or the module factory) and close it."""
    db = (factory or SessionLocal)()
    try:
        yield db
    finally:
        db.close()


def is_busy_error(exc: BaseException) -> bool:
    message = str(getattr(exc, "orig", exc)).lower()
    return any(marker in message for marker in _BUSY_MARKERS)


def translate_busy(fn):
    """Roll back and raise StoreBusyError when storage reports a lock conflict."""

    @functools.wraps(fn)
    def wrapper(self, *args, **kwargs):
        try:
            return fn(self, *args, **kwargs)
        except OperationalError as e:
            self.db.rollback()
            if is_busy_error(e):
                logger.warning(f"Store busy during {fn.__name__}: {e.orig}")
                raise StoreBusyError(str(e.orig)) from e
            raise

    return wrapper


def backoff_delay_ms(
    attempt: int,
    base_ms: Optional[int] = None,
    max_ms: Optional[int] = None,
) -> int:
    """Delay before retry number ``attempt`` (1-based): base * 2**(attempt-1), capped."""
    base_ms = settings.retry_backoff_base_ms if base_ms is None else base_ms
    max_ms = settings.retry_backoff_max_ms if max_ms is None else max_ms
    attempt = max(1, attempt)
    # Cap the exponent so huge attempt counts do not build huge integers
    return int(min(max_ms, base_ms * (2 ** min(attempt - 1, 32))))


@dataclass
class CreateOutcome:
    job: Job
    deduped: bool


@dataclass
class JobOutcome:
    """How a unit of work ended, handed to ``JobRepository.finalize``."""

    kind: str  # done, error, cancelled, transient
    result: Optional[dict] = None
    error_message: Optional[str] = None
    error_code: Optional[str] = None
    error_payload: Optional[dict] = None

    @classmethod
    def done(cls, result: Optional[dict] = None) -> "JobOutcome":
        return cls("done", result=result)

    @classmethod
    def error(cls, message: str, code: str = "job_failed", payload: Optional[dict] = None) -> "JobOutcome":
        return cls("error", error_message=message, error_code=code, error_payload=payload)

    @classmethod
    def cancelled(cls, message: str = "cancelled") -> "JobOutcome":
        return cls("cancelled", error_message=message, error_code="cancelled")

    @classmethod
    def transient(cls, message: str, code: str = "transient") -> "JobOutcome":
        return cls("transient", error_message=message, error_code=code)


@dataclass
class JobFilter:
    types: Optional[Sequence[str]] = None
    type_prefix: Optional[str] = None
    statuses: Optional[Sequence[str]] = None
    subject_id: Optional[int] = None
    created_after: Optional[datetime] = None
    created_before: Optional[datetime] = None
    limit: Optional[int] = None
    offset: int = 0
    newest_first: bool = True


@dataclass
class StaleSweep:
    requeued: List[int] = field(default_factory=list)
    errored: List[int] = field(default_factory=list)
    cancelled: List[int] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.requeued) + len(self.errored) + len(self.cancelled)


def _chunks(ids: Sequence[int], size: int = DELETE_CHUNK_SIZE) -> Iterator[Sequence[int]]:
    for start in range(0, len(ids), size):
        yield ids[start:start + size]


def _clamp_progress(numerator: Optional[int], denominator: Optional[int]) -> Tuple[Optional[int], Optional[int]]:
    if denominator is not None:
        denominator = max(0, int(denominator))
    if numerator is not None:
        numerator = max(0, int(numerator))
        if denominator:
            numerator = min(numerator, denominator)
    return numerator, denominator


class JobRepository:
    """Repository for job operations.

    Status changes out of ``running`` are compare-and-swap updates guarded by
    ``worker_owner`` so only the claimant moves its own rows.
    """

    def __init__(self, db: Session):
        self.db = db

    @property
    def dialect(self) -> str:
        return self.db.get_bind().dialect.name

    def _apply_filter(self, stmt, flt: JobFilter):
        if flt.types:
            stmt = stmt.where(Job.type.in_(list(flt.types)))
        if flt.type_prefix:
            stmt = stmt.where(Job.type.like(f"{flt.type_prefix}%"))
        if flt.statuses:
            stmt = stmt.where(Job.status.in_(list(flt.statuses)))
        if flt.subject_id is not None:
            stmt = stmt.where(Job.subject_id == flt.subject_id)
        if flt.created_after is not None:
            stmt = stmt.where(Job.created_at >= flt.created_after)
        if flt.created_before is not None:
            stmt = stmt.where(Job.created_at < flt.created_before)
        return stmt

    @staticmethod
    def _subject_clause(subject_id: Optional[int]):
        return Job.subject_id.is_(None) if subject_id is None else Job.subject_id == subject_id

    # Reads

    def find(self, job_id: int) -> Optional[Job]:
        """Get job by ID, or None."""
        return self.db.get(Job, job_id, populate_existing=True)

    def get(self, job_id: int) -> Job:
        """Get job by ID or raise JobNotFoundError."""
        job = self.find(job_id)
        if job is None:
            raise JobNotFoundError(f"Job {job_id} not found")
        return job

    def active_for(self, subject_id: Optional[int], job_type: str, dedup_key: Optional[str] = None) -> Optional[Job]:
        """Oldest non-terminal job for (subject, type, dedup key)."""
        key_clause = Job.dedup_key.is_(None) if dedup_key is None else Job.dedup_key == dedup_key
        stmt = (
            select(Job)
            .where(self._subject_clause(subject_id), Job.type == job_type, key_clause)
            .where(Job.status.in_(ACTIVE_STATUSES))
            .order_by(Job.id)
            .limit(1)
        )
        return self.db.execute(stmt).scalars().first()

    def list_jobs(self, flt: Optional[JobFilter] = None) -> List[Job]:
        flt = flt or JobFilter()
        stmt = self._apply_filter(select(Job), flt)
        stmt = stmt.order_by(Job.id.desc() if flt.newest_first else Job.id)
        if flt.offset:
            stmt = stmt.offset(flt.offset)
        if flt.limit:
            stmt = stmt.limit(flt.limit)
        return list(self.db.execute(stmt).scalars())

    def matching_ids(self, flt: JobFilter) -> List[Tuple[int, str]]:
        """(id, status) pairs matching the filter, oldest first."""
        stmt = self._apply_filter(select(Job.id, Job.status), flt).order_by(Job.id)
        return [(row.id, row.status) for row in self.db.execute(stmt)]

    def counts_by_status(self, types: Optional[Sequence[str]] = None) -> Dict[str, int]:
        stmt = select(Job.status, func.count()).group_by(Job.status)
        if types:
            stmt = stmt.where(Job.type.in_(list(types)))
        counts = {status.value: 0 for status in JobStatus}
        for status, count in self.db.execute(stmt):
            counts[status] = count
        return counts

    def counts_by_type(self, types: Optional[Sequence[str]] = None) -> Dict[str, Dict[str, int]]:
        stmt = select(Job.type, Job.status, func.count()).group_by(Job.type, Job.status)
        if types:
            stmt = stmt.where(Job.type.in_(list(types)))
        counts: Dict[str, Dict[str, int]] = {}
        for job_type, status, count in self.db.execute(stmt):
            counts.setdefault(job_type, {})[status] = count
        return counts

    def error_counts(self, types: Optional[Sequence[str]] = None) -> Dict[str, int]:
        stmt = (
            select(Job.last_error_code, func.count())
            .where(Job.status == JobStatus.ERROR.value)
            .group_by(Job.last_error_code)
        )
        if types:
            stmt = stmt.where(Job.type.in_(list(types)))
        return {code or "unknown": count for code, count in self.db.execute(stmt)}

    def running_count(self, types: Optional[Sequence[str]] = None) -> int:
        return self.counts_by_status(types)[JobStatus.RUNNING.value]

    def active_count(
        self,
        types: Optional[Sequence[str]] = None,
        subject_id: Optional[int] = None,
    ) -> int:
        stmt = select(func.count()).select_from(Job).where(Job.status.in_(ACTIVE_STATUSES))
        if types:
            stmt = stmt.where(Job.type.in_(list(types)))
        if subject_id is not None:
            stmt = stmt.where(Job.subject_id == subject_id)
        return int(self.db.execute(stmt).scalar() or 0)

    # Writes

    @translate_busy
    def create(
        self,
        job_type: str,
        subject_id: Optional[int],
        payload: dict,
        max_attempts: Optional[int] = None,
        not_before: Optional[datetime] = None,
        dedup_key: Optional[str] = None,
    ) -> CreateOutcome:
        """Insert a queued job unless a non-terminal one exists for (subject, type, dedup key)."""
        existing = self.active_for(subject_id, job_type, dedup_key)
        if existing is not None:
            return CreateOutcome(existing, True)

        now = utcnow()
        delayed = not_before is not None and not_before > now
        job = Job(
            type=job_type,
            subject_id=subject_id,
            dedup_key=dedup_key,
            status=JobStatus.PENDING.value if delayed else JobStatus.QUEUED.value,
            payload=payload or {},
            not_before=not_before if delayed else None,
            attempts=0,
            max_attempts=max_attempts or settings.retry_max_attempts,
            cancel_requested=False,
            created_at=now,
            updated_at=now,
        )
        self.db.add(job)
        self.db.commit()
        self.db.refresh(job)

        # Two writers can pass the check together; the older row wins unless
        # a worker already claimed ours.
        job_id = job.id
        winner = self.active_for(subject_id, job_type, dedup_key)
        if winner is not None and winner.id != job_id:
            dropped = self.db.execute(
                delete(Job)
                .where(Job.id == job_id, Job.status.in_(UNCLAIMED_STATUSES))
                .execution_options(synchronize_session=False)
            ).rowcount
            self.db.commit()
            if dropped == 1:
                self.db.expunge(job)
                logger.info(f"Dropped duplicate job {job_id}, keeping {winner.id} for {job_type}")
                return CreateOutcome(winner, True)
            logger.info(f"Duplicate job {job_id} of {job_type} was claimed before the tie-break, keeping it")
            return CreateOutcome(self.get(job_id), False)
        return CreateOutcome(job, False)

    @translate_busy
    def claim_next(
        self,
        types: Optional[Sequence[str]],
        owner: str,
        subject_id: Optional[int] = None,
    ) -> Optional[Job]:
        """Atomically move the oldest eligible job to ``running`` for ``owner``."""
        for _ in range(CLAIM_RETRIES):
            now = utcnow()
            stmt = (
                select(Job.id)
                .where(Job.status.in_(UNCLAIMED_STATUSES))
                .where(or_(Job.not_before.is_(None), Job.not_before <= now))
                .order_by(Job.created_at, Job.id)
                .limit(1)
            )
            if types:
                stmt = stmt.where(Job.type.in_(list(types)))
            if subject_id is not None:
                stmt = stmt.where(Job.subject_id == subject_id)
            if self.dialect == "postgresql":
                stmt = stmt.with_for_update(skip_locked=True)

            job_id = self.db.execute(stmt).scalar()
            if job_id is None:
                self.db.rollback()
                return None

            claimed = self.db.execute(
                update(Job)
                .where(Job.id == job_id, Job.status.in_(UNCLAIMED_STATUSES))
                .values(
                    status=JobStatus.RUNNING.value,
                    worker_owner=owner,
                    started_at=now,
                    heartbeat_at=now,
                    stage="claimed",
                    stage_changed_at=now,
                    not_before=None,
                    attempts=Job.attempts + 1,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            self.db.commit()
            if claimed.rowcount == 1:
                return self.find(job_id)
            logger.debug(f"Lost claim race for job {job_id}, retrying")
        return None

    @translate_busy
    def update_heartbeat(
        self,
        job_id: int,
        owner: str,
        numerator: Optional[int] = None,
        denominator: Optional[int] = None,
        stage: Optional[str] = None,
    ) -> bool:
        """Refresh liveness and progress of a running job held by ``owner``."""
        job = self.find(job_id)
        if job is None or job.status != JobStatus.RUNNING.value or job.worker_owner != owner:
            return False

        now = utcnow()
        values = {"heartbeat_at": now, "updated_at": now}
        if denominator is None and numerator is not None:
            denominator = job.progress_denominator
        if numerator is None and denominator is not None:
            numerator = job.progress_numerator
        numerator, denominator = _clamp_progress(numerator, denominator)
        if denominator is not None:
            values["progress_denominator"] = denominator
        if numerator is not None:
            values["progress_numerator"] = numerator
        if stage and stage != job.stage:
            values["stage"] = stage
            values["stage_changed_at"] = now

        result = self.db.execute(
            update(Job)
            .where(Job.id == job_id, Job.status == JobStatus.RUNNING.value, Job.worker_owner == owner)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        return result.rowcount == 1

    def is_cancel_requested(self, job_id: int) -> bool:
        flag = self.db.execute(select(Job.cancel_requested).where(Job.id == job_id)).scalar()
        self.db.rollback()
        # A vanished row reads as cancelled
        return True if flag is None else bool(flag)

    @translate_busy
    def finalize(self, job_id: int, owner: str, outcome: JobOutcome) -> Optional[Job]:
        """Write the outcome of a running job. Returns None if the claim was lost."""
        job = self.find(job_id)
        if job is None:
            logger.warning(f"Job {job_id} vanished before finalize")
            return None
        if job.status != JobStatus.RUNNING.value or job.worker_owner != owner:
            logger.warning(
                f"Job {job_id} no longer held by {owner} (status={job.status}, owner={job.worker_owner})"
            )
            return None

        now = utcnow()
        values = {"heartbeat_at": None, "updated_at": now, "stage_changed_at": now}
        kind = outcome.kind
        if kind == "transient" and job.cancel_requested:
            kind = "cancelled"

        if kind == "done":
            values.update(
                status=JobStatus.DONE.value,
                result=outcome.result,
                finished_at=now,
                stage="done",
                error_message=None,
                last_error_code=None,
            )
            if job.progress_denominator:
                values["progress_numerator"] = job.progress_denominator
        elif kind == "cancelled":
            values.update(
                status=JobStatus.CANCELLED.value,
                cancel_requested=True,
                cancelled_at=now,
                finished_at=now,
                stage="cancelled",
                error_message=outcome.error_message or "cancelled",
            )
        elif kind == "transient" and job.attempts < job.max_attempts:
            delay_ms = backoff_delay_ms(job.attempts)
            values.update(
                status=JobStatus.QUEUED.value,
                not_before=now + timedelta(milliseconds=delay_ms),
                worker_owner=None,
                stage="backoff",
                error_message=outcome.error_message,
                last_error_code=outcome.error_code,
            )
            logger.info(
                f"Job {job_id} attempt {job.attempts}/{job.max_attempts} failed transiently, "
                f"retry in {delay_ms}ms"
            )
        elif kind in ("transient", "error"):
            message = outcome.error_message or "job failed"
            if kind == "transient":
                message = f"{message} (retries exhausted)"
            values.update(
                status=JobStatus.ERROR.value,
                error_message=message,
                last_error_code=outcome.error_code or "job_failed",
                error_payload=outcome.error_payload,
                finished_at=now,
                stage="error",
            )
        else:
            raise ValueError(f"Unknown outcome kind: {outcome.kind}")

        result = self.db.execute(
            update(Job)
            .where(Job.id == job_id, Job.status == JobStatus.RUNNING.value, Job.worker_owner == owner)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        if result.rowcount != 1:
            return None
        return self.find(job_id)

    @translate_busy
    def cancel_unclaimed(self, job_id: int) -> bool:
        """Move a queued/pending job straight to ``cancelled``."""
        now = utcnow()
        result = self.db.execute(
            update(Job)
            .where(Job.id == job_id, Job.status.in_(UNCLAIMED_STATUSES))
            .values(
                status=JobStatus.CANCELLED.value,
                cancel_requested=True,
                cancelled_at=now,
                finished_at=now,
                not_before=None,
                heartbeat_at=None,
                stage="cancelled",
                stage_changed_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        return result.rowcount == 1

    @translate_busy
    def request_cancel(self, job_id: int) -> Job:
        """Set the advisory cancel flag on a non-terminal job."""
        job = self.get(job_id)
        if job.is_terminal:
            raise InvalidTransitionError(f"Job {job_id} is already {job.status}")
        result = self.db.execute(
            update(Job)
            .where(Job.id == job_id, Job.status.in_(ACTIVE_STATUSES))
            .values(cancel_requested=True, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        if result.rowcount != 1:
            job = self.get(job_id)
            raise InvalidTransitionError(f"Job {job_id} is already {job.status}")
        return self.get(job_id)

    @translate_busy
    def request_cancel_many(self, ids: Sequence[int]) -> Tuple[int, int]:
        """Cancel unclaimed rows and flag running ones. Returns (cancelled, flagged)."""
        now = utcnow()
        cancelled = flagged = 0
        for chunk in _chunks(list(ids)):
            cancelled += self.db.execute(
                update(Job)
                .where(Job.id.in_(chunk), Job.status.in_(UNCLAIMED_STATUSES))
                .values(
                    status=JobStatus.CANCELLED.value,
                    cancel_requested=True,
                    cancelled_at=now,
                    finished_at=now,
                    not_before=None,
                    stage="cancelled",
                    stage_changed_at=now,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            ).rowcount
            flagged += self.db.execute(
                update(Job)
                .where(
                    Job.id.in_(chunk),
                    Job.status == JobStatus.RUNNING.value,
                    Job.cancel_requested.is_(False),
                )
                .values(cancel_requested=True, updated_at=now)
                .execution_options(synchronize_session=False)
            ).rowcount
        self.db.commit()
        return cancelled, flagged

    @translate_busy
    def mark_blocked(self, types: Sequence[str], blocked: bool, message: str = "upstream unavailable") -> int:
        """Stamp or clear BLOCKED_BY_UPSTREAM on unclaimed jobs of ``types``."""
        if not types:
            return 0
        stmt = update(Job).where(Job.type.in_(list(types)), Job.status.in_(UNCLAIMED_STATUSES))
        if blocked:
            stmt = stmt.values(last_error_code=BLOCKED_BY_UPSTREAM, error_message=message, updated_at=utcnow())
        else:
            stmt = stmt.where(Job.last_error_code == BLOCKED_BY_UPSTREAM).values(
                last_error_code=None, error_message=None, updated_at=utcnow()
            )
        changed = self.db.execute(stmt.execution_options(synchronize_session=False)).rowcount
        self.db.commit()
        return changed

    def blocked_count(self, types: Optional[Sequence[str]] = None) -> int:
        stmt = (
            select(func.count())
            .select_from(Job)
            .where(Job.status.in_(UNCLAIMED_STATUSES), Job.last_error_code == BLOCKED_BY_UPSTREAM)
        )
        if types:
            stmt = stmt.where(Job.type.in_(list(types)))
        return int(self.db.execute(stmt).scalar() or 0)

    @translate_busy
    def delete_jobs(self, ids: Sequence[int], statuses: Optional[Sequence[str]] = None) -> int:
        """Delete rows by id in chunks, optionally only those still in ``statuses``."""
        deleted = 0
        for chunk in _chunks(list(ids)):
            stmt = delete(Job).where(Job.id.in_(chunk))
            if statuses:
                stmt = stmt.where(Job.status.in_(list(statuses)))
            deleted += self.db.execute(stmt.execution_options(synchronize_session=False)).rowcount
        self.db.commit()
        self.db.expire_all()
        return deleted

    @translate_busy
    def requeue_stale(
        self,
        types: Optional[Sequence[str]],
        threshold_sec: Optional[int] = None,
        owner_alive: Optional[Callable[[Optional[str]], bool]] = None,
    ) -> StaleSweep:
        """Recover running jobs whose worker stopped heartbeating."""
        threshold_sec = settings.stale_heartbeat_sec if threshold_sec is None else threshold_sec
        now = utcnow()
        cutoff = now - timedelta(seconds=threshold_sec)
        stmt = select(Job).where(
            Job.status == JobStatus.RUNNING.value,
            or_(
                Job.heartbeat_at < cutoff,
                and_(Job.heartbeat_at.is_(None), Job.started_at < cutoff),
            ),
        )
        if types:
            stmt = stmt.where(Job.type.in_(list(types)))

        sweep = StaleSweep()
        for job in list(self.db.execute(stmt).scalars()):
            if owner_alive is not None and owner_alive(job.worker_owner):
                continue
            values = {"heartbeat_at": None, "updated_at": now, "stage_changed_at": now}
            if job.cancel_requested:
                values.update(status=JobStatus.CANCELLED.value, cancelled_at=now, finished_at=now, stage="cancelled")
                bucket = sweep.cancelled
            elif job.attempts < job.max_attempts:
                values.update(
                    status=JobStatus.QUEUED.value,
                    worker_owner=None,
                    not_before=None,
                    stage="requeued_stale",
                    last_error_code="stale_running",
                    error_message="worker stopped heartbeating",
                )
                bucket = sweep.requeued
            else:
                values.update(
                    status=JobStatus.ERROR.value,
                    finished_at=now,
                    stage="error",
                    last_error_code="stale_running",
                    error_message="worker stopped heartbeating (retries exhausted)",
                )
                bucket = sweep.errored
            heartbeat_guard = (
                Job.heartbeat_at.is_(None) if job.heartbeat_at is None else Job.heartbeat_at == job.heartbeat_at
            )
            result = self.db.execute(
                update(Job)
                .where(Job.id == job.id, Job.status == JobStatus.RUNNING.value, heartbeat_guard)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                bucket.append(job.id)
        self.db.commit()
        if sweep.total:
            logger.warning(
                f"Stale sweep: requeued={sweep.requeued} errored={sweep.errored} cancelled={sweep.cancelled}"
            )
        return sweep


class SubjectRepository:
    """Repository for media subjects."""

    def __init__(self, db: Session):
        self.db = db

    def get(self, subject_id: int) -> Optional[Subject]:
        return self.db.get(Subject, subject_id)

    def get_by_path(self, path: str) -> Optional[Subject]:
        return self.db.execute(select(Subject).where(Subject.path == path)).scalars().first()

    @translate_busy
    def upsert(self, path: str, kind: str) -> Tuple[Subject, bool]:
        """Insert or refresh a subject by path. Returns (subject, created)."""
        subject = self.get_by_path(path)
        created = subject is None
        if created:
            subject = Subject(path=path, kind=kind, present=True)
            self.db.add(subject)
        else:
            subject.kind = kind
            subject.present = True
        self.db.commit()
        self.db.refresh(subject)
        return subject, created

    @translate_busy
    def set_present(self, subject_id: int, present: bool) -> None:
        self.db.execute(
            update(Subject).where(Subject.id == subject_id).values(present=present, updated_at=utcnow())
        )
        self.db.commit()

    def candidates(
        self,
        kinds: Optional[Iterable[str]] = None,
        subject_ids: Optional[Sequence[int]] = None,
        since: Optional[datetime] = None,
        missing_type: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Subject]:
        """Present subjects, optionally only those without a result of ``missing_type``."""
        stmt = select(Subject).where(Subject.present.is_(True))
        if kinds:
            stmt = stmt.where(Subject.kind.in_(list(kinds)))
        if subject_ids:
            stmt = stmt.where(Subject.id.in_(list(subject_ids)))
        if since is not None:
            stmt = stmt.where(Subject.imported_at >= since)
        if missing_type:
            has_result = (
                select(DerivedResult.id)
                .where(DerivedResult.subject_id == Subject.id, DerivedResult.type == missing_type)
                .exists()
            )
            stmt = stmt.where(~has_result)
        stmt = stmt.order_by(Subject.id)
        if limit:
            stmt = stmt.limit(limit)
        return list(self.db.execute(stmt).scalars())


class ResultRepository:
    """Repository for derived results."""

    def __init__(self, db: Session):
        self.db = db

    def get(self, subject_id: int, result_type: str) -> Optional[DerivedResult]:
        return (
            self.db.execute(
                select(DerivedResult).where(
                    DerivedResult.subject_id == subject_id, DerivedResult.type == result_type
                )
            )
            .scalars()
            .first()
        )

    def exists(self, subject_id: int, result_type: str) -> bool:
        return self.get(subject_id, result_type) is not None

    @translate_busy
    def upsert(self, subject_id: int, result_type: str, data: Optional[dict], job_id: Optional[int]) -> DerivedResult:
        row = self.get(subject_id, result_type)
        if row is None:
            row = DerivedResult(subject_id=subject_id, type=result_type)
            self.db.add(row)
        row.data = data
        row.job_id = job_id
        row.created_at = utcnow()
        self.db.commit()
        self.db.refresh(row)
        return row

    @translate_busy
    def delete(self, subject_id: int, result_type: str) -> int:
        deleted = self.db.execute(
            delete(DerivedResult).where(
                DerivedResult.subject_id == subject_id, DerivedResult.type == result_type
            )
        ).rowcount
        self.db.commit()
        return deleted


class AuditRepository:
    """Append-only log of operator mutations."""

    def __init__(self, db: Session):
        self.db = db

    @translate_busy
    def record(
        self,
        action: str,
        entity_type: Optional[str] = None,
        entity_id: Optional[int] = None,
        details: Optional[dict] = None,
        actor: Optional[str] = None,
    ) -> AuditLog:
        entry = AuditLog(
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            details=details or {},
            actor=actor,
            created_at=utcnow(),
        )
        self.db.add(entry)
        self.db.commit()
        self.db.refresh(entry)
        return entry

    def list_entries(self, action: Optional[str] = None, limit: int = 100) -> List[AuditLog]:
        stmt = select(AuditLog)
        if action:
            stmt = stmt.where(AuditLog.action == action)
        stmt = stmt.order_by(AuditLog.id.desc()).limit(limit)
        return list(self.db.execute(stmt).scalars())


def check_db_health() -> bool:
    """Check database health."""
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False
