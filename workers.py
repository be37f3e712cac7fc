"""Job processor: the claim, execute, finalize loop run by worker processes."""

import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from loguru import logger
from sqlalchemy.orm import Session

from db import JobOutcome, JobRepository, ResultRepository, SubjectRepository, session_scope
from errors import (
    JobCancelledError,
    OrchestrationError,
    StoreBusyError,
    SupervisorError,
    TransientJobError,
    WorkTimeoutError,
)
from models import Job, JobStatus
from registry import JobRegistry, JobTypeSpec
from settings import Settings, settings as default_settings
from status_cache import StatusCache
from supervisor import WorkerLease
from utils import owner_alive, worker_identity

BUSY_RETRIES = 3


class CancellationToken:
    """Reads the advisory ``cancel_requested`` flag at checkpoints.

    Reads are rate limited by ``poll_interval``; the first read always
    hits the store.
    """

    def __init__(self, job_id: int, session_factory: Optional[Callable[[], Session]] = None, poll_interval: float = 1.0):
        self.job_id = job_id
        self.session_factory = session_factory
        self.poll_interval = poll_interval
        self._cancelled = False
        self._last_poll: Optional[float] = None

    @property
    def cancelled(self) -> bool:
        if self._cancelled:
            return True
        now = time.monotonic()
        if self._last_poll is None or now - self._last_poll >= self.poll_interval:
            self._last_poll = now
            try:
                with session_scope(self.session_factory) as db:
                    self._cancelled = JobRepository(db).is_cancel_requested(self.job_id)
            except StoreBusyError:
                logger.debug(f"Job {self.job_id}: cancel flag read hit a busy store")
        return self._cancelled

    def checkpoint(self) -> None:
        if self.cancelled:
            raise JobCancelledError(f"Job {self.job_id} cancelled at checkpoint")


class HeartbeatTicker:
    """Background thread that keeps ``heartbeat_at`` and the lease fresh."""

    def __init__(
        self,
        job_id: int,
        owner: str,
        interval: float,
        session_factory: Optional[Callable[[], Session]] = None,
        lease: Optional[WorkerLease] = None,
    ):
        self.job_id = job_id
        self.owner = owner
        self.interval = interval
        self.session_factory = session_factory
        self.lease = lease
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._run, name=f"heartbeat-{job_id}", daemon=True)

    def start(self) -> None:
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread.is_alive():
            self._thread.join(timeout=self.interval + 1)

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            try:
                with session_scope(self.session_factory) as db:
                    if not JobRepository(db).update_heartbeat(self.job_id, self.owner):
                        return
                if self.lease is not None:
                    self.lease.renew(job_id=self.job_id)
            except (StoreBusyError, OSError) as e:
                logger.warning(f"Heartbeat for job {self.job_id} skipped: {e}")


@dataclass
class ExecutionContext:
    """Everything an executor gets to run one job."""

    job_id: int
    job_type: str
    subject_id: Optional[int]
    payload: Any
    db: Session
    owner: str
    token: CancellationToken
    deadline: float
    settings: Settings
    log: Any = field(default=logger)

    @property
    def subjects(self) -> SubjectRepository:
        return SubjectRepository(self.db)

    @property
    def subject(self):
        return self.subjects.get(self.subject_id) if self.subject_id is not None else None

    def remaining(self) -> float:
        return max(0.0, self.deadline - time.monotonic())

    def checkpoint(self) -> None:
        """Honor cancellation and the time limit between units of work."""
        self.token.checkpoint()
        if time.monotonic() >= self.deadline:
            raise WorkTimeoutError(f"Job {self.job_id} exceeded its time limit")

    def progress(self, numerator: Optional[int], denominator: Optional[int] = None, stage: Optional[str] = None) -> None:
        try:
            JobRepository(self.db).update_heartbeat(
                self.job_id, self.owner, numerator=numerator, denominator=denominator, stage=stage
            )
        except StoreBusyError:
            self.log.debug("Progress update skipped, store busy")


@dataclass
class ProcessorSummary:
    processed: int = 0
    done: int = 0
    error: int = 0
    retried: int = 0
    cancelled: int = 0
    lost: int = 0
    stale_recovered: int = 0
    blocked: int = 0
    stopped_by: str = "no_work"

    def to_dict(self) -> dict:
        return dict(self.__dict__)


class JobProcessor:
    """Sequentially claims and runs jobs of one family.

    One processor runs per worker process and per lease slot. It exits when
    no eligible work remains or when the batch size or time budget is used up.
    """

    def __init__(
        self,
        family: str,
        registry: JobRegistry,
        session_factory: Optional[Callable[[], Session]] = None,
        owner: Optional[str] = None,
        lease: Optional[WorkerLease] = None,
        status_cache: Optional[StatusCache] = None,
        config: Optional[Settings] = None,
    ):
        self.family = family
        self.registry = registry
        self.session_factory = session_factory
        self.lease = lease
        self.owner = owner or (lease.owner if lease is not None else worker_identity())
        self.status_cache = status_cache
        self.settings = config or default_settings
        self.types = registry.types_for_family(family)
        self.log = logger.bind(component="processor", family=family, owner=self.owner)
        self._last_status_write = 0.0

    def run(
        self,
        batch_size: Optional[int] = None,
        time_budget: Optional[float] = None,
        subject_id: Optional[int] = None,
    ) -> ProcessorSummary:
        """Process jobs until the queue is drained or a budget is exhausted."""
        if self.lease is not None and not self.lease.held:
            raise SupervisorError(f"Processor for {self.family} started without its lease")

        batch_size = batch_size or self.settings.worker_batch_size
        time_budget = time_budget or self.settings.worker_time_budget_sec
        deadline = time.monotonic() + time_budget
        summary = ProcessorSummary()
        self.log.info(f"Processor starting: batch_size={batch_size} time_budget={time_budget}s")

        with session_scope(self.session_factory) as db:
            repo = JobRepository(db)
            sweep = repo.requeue_stale(self.types, self.settings.stale_heartbeat_sec, owner_alive)
            summary.stale_recovered = sweep.total

            upstream_ok = self._upstream_ok()
            if upstream_ok:
                released = repo.mark_blocked(self.types, False)
                if released:
                    self.log.info(f"Upstream back, released {released} held jobs")
            else:
                summary.blocked = repo.mark_blocked(self.types, True)
                summary.stopped_by = "upstream_down"
                self.log.warning(f"Upstream of {self.family} is down, holding {summary.blocked} jobs")

            busy = 0
            while upstream_ok:
                if summary.processed >= batch_size:
                    summary.stopped_by = "batch_size"
                    break
                if time.monotonic() >= deadline:
                    summary.stopped_by = "time_budget"
                    break
                try:
                    job = repo.claim_next(self.types, self.owner, subject_id=subject_id)
                except StoreBusyError:
                    busy += 1
                    if busy > BUSY_RETRIES:
                        summary.stopped_by = "store_busy"
                        break
                    time.sleep(0.2 * busy)
                    continue
                busy = 0
                if job is None:
                    summary.stopped_by = "no_work"
                    break

                self.process_job(db, job, summary)
                if self.lease is not None:
                    self.lease.renew(last_job_id=job.id, processed=summary.processed)
                self._refresh_status(db)

            self._refresh_status(db, force=True, upstream_down=not upstream_ok)

        self.log.info(f"Processor finished: {summary.to_dict()}")
        return summary

    def process_job(self, db: Session, job: Job, summary: ProcessorSummary) -> Optional[Job]:
        """Execute one claimed job and write its outcome."""
        log = self.log.bind(job_id=job.id, job_type=job.type)
        job_id, job_type, subject_id = job.id, job.type, job.subject_id
        started = time.monotonic()
        result: Optional[dict] = None
        spec: Optional[JobTypeSpec] = None

        token = CancellationToken(job_id, self.session_factory, self.settings.cancel_poll_interval_sec)
        ticker = HeartbeatTicker(
            job_id, self.owner, self.settings.heartbeat_interval_sec, self.session_factory, self.lease
        )
        try:
            spec = self.registry.get(job_type)
            payload = self.registry.parse_payload(job_type, job.payload)
            timeout = spec.timeout_sec or self.settings.job_timeout_sec
            ctx = ExecutionContext(
                job_id=job_id,
                job_type=job_type,
                subject_id=subject_id,
                payload=payload,
                db=db,
                owner=self.owner,
                token=token,
                deadline=started + timeout,
                settings=self.settings,
                log=log,
            )
            ctx.checkpoint()
            ticker.start()
            log.info(f"Job {job_id} started (attempt {job.attempts}/{job.max_attempts})")
            result = spec.executor(ctx) or {}
            outcome = JobOutcome.done(result)
        except JobCancelledError as e:
            outcome = JobOutcome.cancelled(str(e))
        except TransientJobError as e:
            log.warning(f"Job {job_id} transient failure: {e}")
            outcome = JobOutcome.transient(str(e), e.code)
        except OrchestrationError as e:
            log.error(f"Job {job_id} failed: {e}")
            outcome = JobOutcome.error(str(e), e.code)
        except Exception as e:
            log.exception(f"Job {job_id} crashed")
            outcome = JobOutcome.error(f"{type(e).__name__}: {e}", "job_failed")
        finally:
            ticker.stop()

        final = self._finalize(db, job_id, outcome)
        summary.processed += 1
        elapsed = time.monotonic() - started
        if final is None:
            summary.lost += 1
            log.warning(f"Job {job_id} outcome {outcome.kind} dropped, claim lost or row deleted")
            return None

        if final.status == JobStatus.DONE.value:
            summary.done += 1
            if subject_id is not None and spec is not None and spec.requires_subject:
                ResultRepository(db).upsert(subject_id, job_type, result, job_id)
        elif final.status == JobStatus.CANCELLED.value:
            summary.cancelled += 1
        elif final.status == JobStatus.ERROR.value:
            summary.error += 1
        else:
            summary.retried += 1
        log.info(f"Job {job_id} -> {final.status} in {elapsed:.2f}s")
        return final

    def _finalize(self, db: Session, job_id: int, outcome: JobOutcome) -> Optional[Job]:
        repo = JobRepository(db)
        for attempt in range(BUSY_RETRIES + 1):
            try:
                return repo.finalize(job_id, self.owner, outcome)
            except StoreBusyError:
                if attempt == BUSY_RETRIES:
                    raise
                time.sleep(0.2 * (attempt + 1))
        return None

    def _refresh_status(self, db: Session, force: bool = False, upstream_down: Optional[bool] = None) -> None:
        if self.status_cache is None:
            return
        now = time.monotonic()
        if not force and now - self._last_status_write < self.settings.status_write_interval_sec:
            return
        self._last_status_write = now
        try:
            self.status_cache.refresh(db, self.family, self.registry, upstream_down=upstream_down)
        except StoreBusyError as e:
            self.log.warning(f"Status refresh skipped: {e}")

    def _upstream_ok(self) -> bool:
        """Run the family's upstream health checks; any failure holds the queue."""
        for check in self.registry.health_checks(self.family):
            try:
                if not check():
                    return False
            except Exception as e:
                self.log.warning(f"Upstream health check raised: {e}")
                return False
        return True
