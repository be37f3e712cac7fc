"""Per-family status snapshot files for cheap polling."""

import os
from typing import Dict, List, Optional, Tuple

from loguru import logger
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from db import JobRepository
from registry import JobRegistry
from settings import settings
from supervisor import LeaseState, inspect_family
from utils import get_current_timestamp, parse_timestamp, read_json_file, seconds_since, write_json_atomic


class StatusSnapshot(BaseModel):
    """Aggregate view of one job family."""

    family: str
    ts: str = Field(..., description="UTC time the counts were read from the store")
    counts_by_status: Dict[str, int] = Field(default_factory=dict)
    counts_by_submode: Dict[str, Dict[str, int]] = Field(default_factory=dict)
    error_counts: Dict[str, int] = Field(default_factory=dict)
    running: int = 0
    max_concurrency: int = 1
    lease_held: bool = False
    worker_pids: List[int] = Field(default_factory=list)
    upstream_down: bool = Field(default=False, description="Workers found the external service down")
    blocked: int = Field(default=0, description="Unclaimed jobs held while the upstream is down")
    source: str = Field(default="cache", description="cache or store")
    snapshot_age: Optional[float] = Field(
        None, description="Seconds since the cached snapshot was written, None if there was none"
    )
    stale: bool = False


class StatusCache:
    """Reads and writes snapshot files under ``<state_dir>/status``."""

    def __init__(self, state_dir: Optional[str] = None, max_age_sec: Optional[float] = None):
        self.state_dir = state_dir or settings.state_dir
        self.max_age_sec = settings.status_max_age_sec if max_age_sec is None else max_age_sec

    def path(self, family: str) -> str:
        return os.path.join(self.state_dir, "status", f"{family}.json")

    def build(
        self,
        db: Session,
        family: str,
        registry: JobRegistry,
        leases: Optional[List[LeaseState]] = None,
        upstream_down: Optional[bool] = None,
    ) -> StatusSnapshot:
        """Read the authoritative counts for ``family`` from the store."""
        types = registry.types_for_family(family)
        repo = JobRepository(db)
        by_type = repo.counts_by_type(types) if types else {}
        counts_by_status = repo.counts_by_status(types) if types else {}
        if leases is None:
            leases = inspect_family(family, self.state_dir)
        held = [lease for lease in leases if lease.held]
        blocked = repo.blocked_count(types) if types else 0
        if upstream_down is None:
            upstream_down = blocked > 0
        snapshot = StatusSnapshot(
            family=family,
            ts=get_current_timestamp(),
            counts_by_status=counts_by_status,
            counts_by_submode={registry.get(name).submode: counts for name, counts in by_type.items()},
            error_counts=repo.error_counts(types) if types else {},
            running=counts_by_status.get("running", 0),
            max_concurrency=settings.max_concurrency(family),
            lease_held=bool(held),
            worker_pids=[lease.pid for lease in held if lease.pid],
            upstream_down=upstream_down,
            blocked=blocked,
            source="store",
        )
        db.rollback()
        return snapshot

    def write(self, snapshot: StatusSnapshot) -> None:
        data = snapshot.model_dump(exclude={"source", "snapshot_age", "stale"})
        write_json_atomic(self.path(snapshot.family), data)

    def refresh(
        self,
        db: Session,
        family: str,
        registry: JobRegistry,
        leases: Optional[List[LeaseState]] = None,
        upstream_down: Optional[bool] = None,
    ) -> StatusSnapshot:
        snapshot = self.build(db, family, registry, leases, upstream_down)
        try:
            self.write(snapshot)
        except OSError as e:
            logger.warning(f"Could not write status snapshot for {family}: {e}")
        return snapshot

    def read(self, family: str) -> Tuple[Optional[StatusSnapshot], Optional[float]]:
        """Return the cached snapshot and its age in seconds."""
        data = read_json_file(self.path(family))
        if not data:
            return None, None
        try:
            snapshot = StatusSnapshot(**data, source="cache")
            age = seconds_since(parse_timestamp(snapshot.ts))
        except (ValueError, TypeError) as e:
            logger.warning(f"Ignoring unreadable status snapshot for {family}: {e}")
            return None, None
        snapshot.snapshot_age = age
        return snapshot, age

    def is_stale(self, age: Optional[float]) -> bool:
        return age is None or age > self.max_age_sec

    def status(self, db: Session, family: str, registry: JobRegistry) -> StatusSnapshot:
        """Fast path from the snapshot file; the store when it is missing or stale.

        The age of the cached snapshot is always reported, even after the
        fallback, so callers can see that the cache lagged. Sessions connect
        lazily, so the fast path never touches the store.
        """
        snapshot, age = self.read(family)
        if snapshot is not None and not self.is_stale(age):
            return snapshot

        fresh = self.refresh(db, family, registry)
        fresh.snapshot_age = age
        fresh.stale = snapshot is not None
        return fresh
