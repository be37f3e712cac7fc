"""Test the status snapshot cache."""

import json
import os
from datetime import timedelta

from sqlalchemy.orm import Session

from db import JobRepository
from enqueue import EnqueueService
from status_cache import StatusCache
from utils import utcnow


def _backdate(cache: StatusCache, family: str, seconds: int) -> None:
    path = cache.path(family)
    with open(path) as f:
        data = json.load(f)
    data["ts"] = (utcnow() - timedelta(seconds=seconds)).isoformat() + "Z"
    with open(path, "w") as f:
        json.dump(data, f)


class TestStatusCache:
    """Test snapshot reads, writes and the stale fallback."""

    def test_refresh_writes_snapshot(self, status_cache, test_db_session: Session, registry, make_subject):
        EnqueueService(test_db_session, registry).enqueue("analyze", make_subject().id)

        snapshot = status_cache.refresh(test_db_session, "analysis", registry)

        assert snapshot.source == "store"
        assert snapshot.counts_by_status["queued"] == 1
        assert snapshot.counts_by_submode["analyze"] == {"queued": 1}
        assert snapshot.max_concurrency == 2
        cached, age = status_cache.read("analysis")
        assert cached.counts_by_status == snapshot.counts_by_status
        assert cached.source == "cache"
        assert age < 5

    def test_read_missing(self, status_cache):
        assert status_cache.read("scan") == (None, None)

    def test_read_corrupt_file(self, status_cache):
        path = status_cache.path("scan")
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "w") as f:
            f.write("{not json")

        assert status_cache.read("scan") == (None, None)

    def test_fresh_snapshot_served_from_cache(self, status_cache, test_db_session: Session, registry, make_subject):
        status_cache.refresh(test_db_session, "analysis", registry)
        EnqueueService(test_db_session, registry).enqueue("analyze", make_subject().id)

        snapshot = status_cache.status(test_db_session, "analysis", registry)

        assert snapshot.source == "cache"
        assert snapshot.counts_by_status["queued"] == 0
        assert snapshot.stale is False

    def test_stale_snapshot_falls_back_to_store(self, status_cache, test_db_session: Session, registry, make_subject):
        """A stale snapshot is replaced by store counts; its age is still reported."""
        status_cache.refresh(test_db_session, "analysis", registry)
        _backdate(status_cache, "analysis", 60)
        EnqueueService(test_db_session, registry).enqueue("analyze", make_subject().id)

        snapshot = status_cache.status(test_db_session, "analysis", registry)

        assert snapshot.source == "store"
        assert snapshot.stale is True
        assert snapshot.snapshot_age >= 60
        assert snapshot.counts_by_status["queued"] == 1
        # The fallback rewrote the file
        assert status_cache.read("analysis")[1] < 5

    def test_missing_snapshot_reads_store(self, status_cache, test_db_session: Session, registry):
        snapshot = status_cache.status(test_db_session, "scan", registry)

        assert snapshot.source == "store"
        assert snapshot.stale is False
        assert snapshot.snapshot_age is None

    def test_held_jobs_mark_upstream_down(self, status_cache, test_db_session: Session, registry, make_subject):
        EnqueueService(test_db_session, registry).enqueue("analyze", make_subject().id)
        JobRepository(test_db_session).mark_blocked(["analyze"], True)

        snapshot = status_cache.build(test_db_session, "analysis", registry)

        assert snapshot.blocked == 1
        assert snapshot.upstream_down is True
        assert status_cache.build(test_db_session, "scan", registry).upstream_down is False
