"""SQLAlchemy models for the job orchestration layer."""

from enum import Enum

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base

from utils import utcnow

Base = declarative_base()


class JobStatus(str, Enum):
    QUEUED = "queued"
    PENDING = "pending"
    RUNNING = "running"
    DONE = "done"
    ERROR = "error"
    CANCELLED = "cancelled"


UNCLAIMED_STATUSES = (JobStatus.QUEUED.value, JobStatus.PENDING.value)
ACTIVE_STATUSES = UNCLAIMED_STATUSES + (JobStatus.RUNNING.value,)
TERMINAL_STATUSES = (
    JobStatus.DONE.value,
    JobStatus.ERROR.value,
    JobStatus.CANCELLED.value,
)
ALL_STATUSES = ACTIVE_STATUSES + TERMINAL_STATUSES


def _iso(value):
    return value.isoformat() + "Z" if value is not None else None


class Job(Base):
    """A unit of background work and its control fields."""

    __tablename__ = "jobs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    type = Column(String(64), nullable=False)  # family.submode, e.g. analysis.caption
    subject_id = Column(Integer, nullable=True)  # NULL for family-wide jobs
    dedup_key = Column(String(512), nullable=True)  # tells family-wide jobs apart, e.g. scan root
    status = Column(
        String(16), nullable=False, default=JobStatus.QUEUED.value
    )  # queued, pending, running, done, error, cancelled
    payload = Column(JSON, nullable=False, default=dict)
    result = Column(JSON, nullable=True)
    error_payload = Column(JSON, nullable=True)
    error_message = Column(Text, nullable=True)
    last_error_code = Column(String(64), nullable=True)

    heartbeat_at = Column(DateTime, nullable=True)  # only set while running
    progress_numerator = Column(Integer, nullable=True)
    progress_denominator = Column(Integer, nullable=True)

    cancel_requested = Column(Boolean, nullable=False, default=False)
    cancelled_at = Column(DateTime, nullable=True)

    worker_owner = Column(String(128), nullable=True)  # host:pid:slot of the claimant
    stage = Column(String(64), nullable=True)
    stage_changed_at = Column(DateTime, nullable=True)

    not_before = Column(DateTime, nullable=True)  # backoff gate
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)

    started_at = Column(DateTime, nullable=True)
    finished_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("idx_jobs_status", "status"),
        Index("idx_jobs_type", "type"),
        Index("idx_jobs_subject_type", "subject_id", "type"),
        Index("idx_jobs_type_dedup", "type", "dedup_key"),
        Index("idx_jobs_created_at", "created_at"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def progress_percent(self):
        if not self.progress_denominator:
            return None
        return round(100.0 * (self.progress_numerator or 0) / self.progress_denominator, 1)

    def to_dict(self) -> dict:
        """Convert model to dictionary."""
        return {
            "id": self.id,
            "type": self.type,
            "subject_id": self.subject_id,
            "dedup_key": self.dedup_key,
            "status": self.status,
            "payload": self.payload,
            "result": self.result,
            "error_payload": self.error_payload,
            "error_message": self.error_message,
            "last_error_code": self.last_error_code,
            "heartbeat_at": _iso(self.heartbeat_at),
            "progress_numerator": self.progress_numerator,
            "progress_denominator": self.progress_denominator,
            "cancel_requested": bool(self.cancel_requested),
            "cancelled_at": _iso(self.cancelled_at),
            "worker_owner": self.worker_owner,
            "stage": self.stage,
            "stage_changed_at": _iso(self.stage_changed_at),
            "not_before": _iso(self.not_before),
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "started_at": _iso(self.started_at),
            "finished_at": _iso(self.finished_at),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


class Subject(Base):
    """Media item a job can operate on."""

    __tablename__ = "subjects"

    id = Column(Integer, primary_key=True, autoincrement=True)
    path = Column(String(1024), nullable=False, unique=True)
    kind = Column(String(16), nullable=False, default="other")  # image, video, other
    present = Column(Boolean, nullable=False, default=True)
    imported_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "path": self.path,
            "kind": self.kind,
            "present": bool(self.present),
            "imported_at": _iso(self.imported_at),
        }


class DerivedResult(Base):
    """Data a job produced for a subject, one row per (subject, type)."""

    __tablename__ = "derived_results"

    id = Column(Integer, primary_key=True, autoincrement=True)
    subject_id = Column(Integer, nullable=False)
    type = Column(String(64), nullable=False)
    data = Column(JSON, nullable=True)
    job_id = Column(Integer, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("subject_id", "type", name="uq_derived_subject_type"),
    )


class AuditLog(Base):
    """Record of an operator mutation on jobs or derived data."""

    __tablename__ = "audit_log"

    id = Column(Integer, primary_key=True, autoincrement=True)
    # job_requeue, job_cancel, jobs_prune, result_delete or result_delete_blocked
    action = Column(String(64), nullable=False)
    entity_type = Column(String(32), nullable=True)  # job, subject
    entity_id = Column(Integer, nullable=True)
    details = Column(JSON, nullable=True)
    actor = Column(String(128), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (Index("idx_audit_log_created_at", "created_at"),)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "action": self.action,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "details": self.details,
            "actor": self.actor,
            "created_at": _iso(self.created_at),
        }
