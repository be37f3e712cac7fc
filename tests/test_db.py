"""Test database operations."""

import threading
from datetime import timedelta

import pytest
from sqlalchemy import update
from sqlalchemy.orm import Session

from db import (
    BLOCKED_BY_UPSTREAM,
    AuditRepository,
    JobFilter,
    JobOutcome,
    JobRepository,
    ResultRepository,
    SubjectRepository,
    backoff_delay_ms,
    check_db_health,
    session_scope,
)
from errors import InvalidTransitionError, JobNotFoundError
from models import Job
from utils import utcnow


def _age_heartbeat(db: Session, job_id: int, seconds: int) -> None:
    job = db.get(Job, job_id)
    job.heartbeat_at = utcnow() - timedelta(seconds=seconds)
    db.commit()


class TestJobCreation:
    """Test job creation and dedup."""

    def test_create_job(self, test_db_session: Session):
        """A new job starts queued with zero attempts."""
        repo = JobRepository(test_db_session)

        outcome = repo.create("analyze", 42, {"mode": "caption"})

        assert outcome.deduped is False
        assert outcome.job.status == "queued"
        assert outcome.job.attempts == 0
        assert outcome.job.cancel_requested is False
        assert outcome.job.heartbeat_at is None

    def test_create_dedups_non_terminal(self, test_db_session: Session):
        """A second create for the same (subject, type) returns the first job."""
        repo = JobRepository(test_db_session)

        first = repo.create("analyze", 42, {})
        second = repo.create("analyze", 42, {})

        assert second.deduped is True
        assert second.job.id == first.job.id
        assert len(repo.list_jobs()) == 1

    def test_create_dedups_null_subject(self, test_db_session: Session):
        """Family-wide jobs dedup on a NULL subject too."""
        repo = JobRepository(test_db_session)

        first = repo.create("scan.path", None, {"path": "/media"})
        second = repo.create("scan.path", None, {"path": "/media"})

        assert second.job.id == first.job.id

    def test_create_dedup_key_separates_jobs(self, test_db_session: Session):
        repo = JobRepository(test_db_session)

        first = repo.create("scan.path", None, {"path": "/media/a"}, dedup_key="/media/a")
        other = repo.create("scan.path", None, {"path": "/media/b"}, dedup_key="/media/b")
        again = repo.create("scan.path", None, {"path": "/media/a"}, dedup_key="/media/a")

        assert other.deduped is False
        assert other.job.id != first.job.id
        assert again.deduped is True
        assert again.job.id == first.job.id

    def test_create_race_drops_newer_row(self, test_db_session: Session, monkeypatch):
        """When two writers pass the check together, the older row wins."""
        repo = JobRepository(test_db_session)
        older = repo.create("analyze", 42, {}).job
        real_active_for = JobRepository.active_for
        calls = []

        def racing_active_for(self, subject_id, job_type, dedup_key=None):
            calls.append(job_type)
            if len(calls) == 1:
                return None
            return real_active_for(self, subject_id, job_type, dedup_key)

        monkeypatch.setattr(JobRepository, "active_for", racing_active_for)
        outcome = repo.create("analyze", 42, {})

        assert outcome.deduped is True
        assert outcome.job.id == older.id
        assert [job.id for job in repo.list_jobs()] == [older.id]

    def test_create_race_keeps_claimed_row(self, test_db_session: Session, monkeypatch):
        """A duplicate a worker already claimed is not deleted under it."""
        repo = JobRepository(test_db_session)
        older = repo.create("analyze", 42, {}).job
        older_id = older.id
        real_active_for = JobRepository.active_for
        calls = []

        def racing_active_for(self, subject_id, job_type, dedup_key=None):
            calls.append(job_type)
            if len(calls) == 1:
                return None
            self.db.execute(
                update(Job)
                .where(Job.id != older_id, Job.type == job_type)
                .values(status="running", worker_owner="host:9", attempts=1)
            )
            self.db.commit()
            return real_active_for(self, subject_id, job_type, dedup_key)

        monkeypatch.setattr(JobRepository, "active_for", racing_active_for)
        outcome = repo.create("analyze", 42, {})

        assert outcome.deduped is False
        assert outcome.job.id != older_id
        assert outcome.job.status == "running"
        assert len(repo.list_jobs()) == 2

    def test_create_after_terminal(self, test_db_session: Session):
        """A terminal job does not block a new one."""
        repo = JobRepository(test_db_session)
        first = repo.create("analyze", 42, {})
        assert repo.cancel_unclaimed(first.job.id) is True

        second = repo.create("analyze", 42, {})

        assert second.deduped is False
        assert second.job.id != first.job.id

    def test_create_delayed_is_pending(self, test_db_session: Session):
        repo = JobRepository(test_db_session)

        outcome = repo.create("analyze", 1, {}, not_before=utcnow() + timedelta(minutes=5))

        assert outcome.job.status == "pending"
        assert outcome.job.not_before is not None

    def test_get_not_found(self, test_db_session: Session):
        repo = JobRepository(test_db_session)

        assert repo.find(999) is None
        with pytest.raises(JobNotFoundError):
            repo.get(999)


class TestClaim:
    """Test claiming work."""

    def test_claim_oldest_first(self, test_db_session: Session):
        """Jobs are claimed in creation order."""
        repo = JobRepository(test_db_session)
        first = repo.create("analyze", 1, {}).job
        second = repo.create("analyze", 2, {}).job

        claimed = repo.claim_next(["analyze"], "host:1")

        assert claimed.id == first.id
        assert claimed.status == "running"
        assert claimed.worker_owner == "host:1"
        assert claimed.attempts == 1
        assert claimed.heartbeat_at is not None
        assert repo.claim_next(["analyze"], "host:1").id == second.id
        assert repo.claim_next(["analyze"], "host:1") is None

    def test_claim_respects_types(self, test_db_session: Session):
        repo = JobRepository(test_db_session)
        repo.create("scan.path", None, {"path": "/media"})

        assert repo.claim_next(["analyze"], "host:1") is None

    def test_claim_skips_backoff(self, test_db_session: Session):
        """Jobs whose not_before lies in the future are not eligible."""
        repo = JobRepository(test_db_session)
        repo.create("analyze", 1, {}, not_before=utcnow() + timedelta(minutes=5))

        assert repo.claim_next(["analyze"], "host:1") is None

    def test_claim_pending_when_due(self, test_db_session: Session):
        repo = JobRepository(test_db_session)
        job = repo.create("analyze", 1, {}, not_before=utcnow() + timedelta(minutes=5)).job
        job.not_before = utcnow() - timedelta(seconds=1)
        test_db_session.commit()

        claimed = repo.claim_next(["analyze"], "host:1")

        assert claimed.id == job.id
        assert claimed.not_before is None

    def test_single_claimant(self, test_db_session: Session, session_factory):
        """Concurrent workers never claim the same job twice."""
        repo = JobRepository(test_db_session)
        for subject_id in range(1, 9):
            repo.create("analyze", subject_id, {})

        claims = {}
        errors = []

        def worker(name):
            try:
                with session_scope(session_factory) as db:
                    worker_repo = JobRepository(db)
                    while True:
                        job = worker_repo.claim_next(["analyze"], name)
                        if job is None:
                            return
                        claims.setdefault(job.id, []).append(name)
            except Exception as e:  # surfaced below
                errors.append(e)

        threads = [threading.Thread(target=worker, args=(f"host:{n}",)) for n in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=30)

        assert not errors
        assert len(claims) == 8
        assert all(len(owners) == 1 for owners in claims.values())


class TestHeartbeat:
    """Test heartbeat and progress updates."""

    def test_progress_is_clamped(self, test_db_session: Session):
        repo = JobRepository(test_db_session)
        job = repo.create("analyze", 1, {}).job
        repo.claim_next(["analyze"], "host:1")

        assert repo.update_heartbeat(job.id, "host:1", numerator=15, denominator=10, stage="working")
        job = repo.get(job.id)

        assert job.progress_numerator == 10
        assert job.progress_denominator == 10
        assert job.stage == "working"
        assert job.progress_percent() == 100.0

    def test_negative_progress_is_clamped(self, test_db_session: Session):
        repo = JobRepository(test_db_session)
        job = repo.create("analyze", 1, {}).job
        repo.claim_next(["analyze"], "host:1")

        repo.update_heartbeat(job.id, "host:1", numerator=-3, denominator=5)

        assert repo.get(job.id).progress_numerator == 0

    def test_heartbeat_needs_owner(self, test_db_session: Session):
        """Only the claimant may write heartbeats."""
        repo = JobRepository(test_db_session)
        job = repo.create("analyze", 1, {}).job
        repo.claim_next(["analyze"], "host:1")

        assert repo.update_heartbeat(job.id, "host:2") is False

    def test_heartbeat_not_running(self, test_db_session: Session):
        repo = JobRepository(test_db_session)
        job = repo.create("analyze", 1, {}).job

        assert repo.update_heartbeat(job.id, "host:1") is False
        assert repo.get(job.id).heartbeat_at is None


class TestFinalize:
    """Test terminal transitions."""

    def _claimed(self, repo, max_attempts=None):
        job = repo.create("analyze", 1, {}, max_attempts=max_attempts).job
        return repo.claim_next(["analyze"], "host:1") or job

    def test_finalize_done(self, test_db_session: Session):
        repo = JobRepository(test_db_session)
        job = self._claimed(repo)
        repo.update_heartbeat(job.id, "host:1", numerator=2, denominator=4)

        final = repo.finalize(job.id, "host:1", JobOutcome.done({"text": "ok"}))

        assert final.status == "done"
        assert final.result == {"text": "ok"}
        assert final.finished_at is not None
        assert final.heartbeat_at is None
        assert final.progress_numerator == 4

    def test_finalize_error(self, test_db_session: Session):
        repo = JobRepository(test_db_session)
        job = self._claimed(repo)

        final = repo.finalize(job.id, "host:1", JobOutcome.error("bad input", "bad_input"))

        assert final.status == "error"
        assert final.last_error_code == "bad_input"
        assert final.error_message == "bad input"

    def test_finalize_transient_requeues_with_backoff(self, test_db_session: Session):
        """A transient failure below max_attempts goes back to queued."""
        repo = JobRepository(test_db_session)
        job = self._claimed(repo, max_attempts=3)
        before = utcnow()

        final = repo.finalize(job.id, "host:1", JobOutcome.transient("upstream down"))

        assert final.status == "queued"
        assert final.worker_owner is None
        assert final.heartbeat_at is None
        assert final.not_before >= before + timedelta(milliseconds=900)
        assert final.last_error_code == "transient"

    def test_finalize_transient_exhausted(self, test_db_session: Session):
        repo = JobRepository(test_db_session)
        job = self._claimed(repo, max_attempts=1)

        final = repo.finalize(job.id, "host:1", JobOutcome.transient("upstream down"))

        assert final.status == "error"
        assert "retries exhausted" in final.error_message

    def test_finalize_transient_with_cancel_requested(self, test_db_session: Session):
        """A cancelled job is never retried."""
        repo = JobRepository(test_db_session)
        job = self._claimed(repo, max_attempts=3)
        repo.request_cancel(job.id)

        final = repo.finalize(job.id, "host:1", JobOutcome.transient("upstream down"))

        assert final.status == "cancelled"
        assert final.cancelled_at is not None

    def test_finalize_requires_owner(self, test_db_session: Session):
        repo = JobRepository(test_db_session)
        job = self._claimed(repo)

        assert repo.finalize(job.id, "host:2", JobOutcome.done()) is None
        assert repo.get(job.id).status == "running"

    def test_finalize_vanished_row(self, test_db_session: Session):
        repo = JobRepository(test_db_session)
        job = self._claimed(repo)
        repo.delete_jobs([job.id])

        assert repo.finalize(job.id, "host:1", JobOutcome.done()) is None

    def test_finalize_terminal_is_noop(self, test_db_session: Session):
        """Terminal rows are never rewritten."""
        repo = JobRepository(test_db_session)
        job = self._claimed(repo)
        repo.finalize(job.id, "host:1", JobOutcome.done({"text": "first"}))

        assert repo.finalize(job.id, "host:1", JobOutcome.error("late")) is None
        assert repo.get(job.id).status == "done"


class TestBackoff:
    """Test retry delays."""

    def test_backoff_doubles(self):
        assert backoff_delay_ms(1, 1000, 30000) == 1000
        assert backoff_delay_ms(2, 1000, 30000) == 2000
        assert backoff_delay_ms(3, 1000, 30000) == 4000

    def test_backoff_is_capped(self):
        assert backoff_delay_ms(10, 1000, 30000) == 30000
        assert backoff_delay_ms(500, 1000, 30000) == 30000

    def test_backoff_is_monotonic(self):
        delays = [backoff_delay_ms(attempt, 250, 10000) for attempt in range(1, 20)]

        assert delays == sorted(delays)


class TestCancel:
    """Test cancellation primitives."""

    def test_cancel_unclaimed(self, test_db_session: Session):
        repo = JobRepository(test_db_session)
        job = repo.create("analyze", 1, {}).job

        assert repo.cancel_unclaimed(job.id) is True
        job = repo.get(job.id)
        assert job.status == "cancelled"
        assert job.cancel_requested is True
        assert job.finished_at is not None

    def test_cancel_unclaimed_running(self, test_db_session: Session):
        repo = JobRepository(test_db_session)
        job = repo.create("analyze", 1, {}).job
        repo.claim_next(["analyze"], "host:1")

        assert repo.cancel_unclaimed(job.id) is False
        assert repo.get(job.id).status == "running"

    def test_request_cancel_terminal(self, test_db_session: Session):
        repo = JobRepository(test_db_session)
        job = repo.create("analyze", 1, {}).job
        repo.cancel_unclaimed(job.id)

        with pytest.raises(InvalidTransitionError):
            repo.request_cancel(job.id)

    def test_cancel_flag_of_deleted_job(self, test_db_session: Session):
        """A vanished row reads as cancelled so its worker stops."""
        repo = JobRepository(test_db_session)

        assert repo.is_cancel_requested(12345) is True


class TestStaleRecovery:
    """Test the stale running job sweep."""

    def test_requeue_stale(self, test_db_session: Session):
        repo = JobRepository(test_db_session)
        job = repo.create("analyze", 1, {}, max_attempts=3).job
        repo.claim_next(["analyze"], "host:1")
        _age_heartbeat(test_db_session, job.id, 600)

        sweep = repo.requeue_stale(["analyze"], 300, owner_alive=lambda owner: False)

        assert sweep.requeued == [job.id]
        job = repo.get(job.id)
        assert job.status == "queued"
        assert job.last_error_code == "stale_running"
        assert job.worker_owner is None

    def test_stale_exhausted_errors(self, test_db_session: Session):
        repo = JobRepository(test_db_session)
        job = repo.create("analyze", 1, {}, max_attempts=1).job
        repo.claim_next(["analyze"], "host:1")
        _age_heartbeat(test_db_session, job.id, 600)

        sweep = repo.requeue_stale(["analyze"], 300, owner_alive=lambda owner: False)

        assert sweep.errored == [job.id]
        assert repo.get(job.id).status == "error"

    def test_fresh_heartbeat_untouched(self, test_db_session: Session):
        repo = JobRepository(test_db_session)
        job = repo.create("analyze", 1, {}).job
        repo.claim_next(["analyze"], "host:1")

        sweep = repo.requeue_stale(["analyze"], 300, owner_alive=lambda owner: False)

        assert sweep.total == 0
        assert repo.get(job.id).status == "running"

    def test_live_owner_untouched(self, test_db_session: Session):
        repo = JobRepository(test_db_session)
        job = repo.create("analyze", 1, {}).job
        repo.claim_next(["analyze"], "host:1")
        _age_heartbeat(test_db_session, job.id, 600)

        sweep = repo.requeue_stale(["analyze"], 300, owner_alive=lambda owner: True)

        assert sweep.total == 0


class TestQueries:
    """Test aggregate reads."""

    def test_counts_by_status(self, test_db_session: Session):
        repo = JobRepository(test_db_session)
        repo.create("analyze", 1, {})
        repo.create("analyze", 2, {})
        repo.claim_next(["analyze"], "host:1")

        counts = repo.counts_by_status(["analyze"])

        assert counts["queued"] == 1
        assert counts["running"] == 1
        assert counts["done"] == 0
        assert repo.active_count(["analyze"]) == 2

    def test_list_jobs_filters(self, test_db_session: Session):
        repo = JobRepository(test_db_session)
        repo.create("analyze", 1, {})
        repo.create("analysis.caption", 1, {})
        repo.create("scan.path", None, {"path": "/media"})

        assert len(repo.list_jobs(JobFilter(type_prefix="analysis"))) == 1
        assert len(repo.list_jobs(JobFilter(subject_id=1))) == 2
        assert [job.type for job in repo.list_jobs(JobFilter(limit=1))] == ["scan.path"]


class TestSubjectsAndResults:
    """Test subject and derived result repositories."""

    def test_subject_upsert(self, test_db_session: Session):
        repo = SubjectRepository(test_db_session)

        subject, created = repo.upsert("/media/a.jpg", "image")
        again, created_again = repo.upsert("/media/a.jpg", "image")

        assert created is True
        assert created_again is False
        assert again.id == subject.id

    def test_candidates_missing_result(self, test_db_session: Session, make_subject):
        first = make_subject()
        second = make_subject()
        make_subject(kind="video")
        ResultRepository(test_db_session).upsert(first.id, "analyze", {"text": "x"}, None)

        ids = [s.id for s in SubjectRepository(test_db_session).candidates(kinds=["image"], missing_type="analyze")]

        assert ids == [second.id]

    def test_result_upsert_and_delete(self, test_db_session: Session, make_subject):
        subject = make_subject()
        repo = ResultRepository(test_db_session)

        repo.upsert(subject.id, "analyze", {"text": "one"}, 1)
        repo.upsert(subject.id, "analyze", {"text": "two"}, 2)

        assert repo.get(subject.id, "analyze").data == {"text": "two"}
        assert repo.delete(subject.id, "analyze") == 1
        assert repo.exists(subject.id, "analyze") is False


class TestDatabaseHealth:
    """Test database health check."""

    def test_check_db_health(self, test_engine):
        import db

        original_engine = db.engine
        db.engine = test_engine
        try:
            assert check_db_health() is True
        finally:
            db.engine = original_engine


class TestUpstreamHold:
    """Test marking unclaimed jobs held for a down upstream."""

    def test_mark_and_clear(self, test_db_session: Session):
        repo = JobRepository(test_db_session)
        queued = repo.create("analyze", 1, {}).job
        running = repo.create("analyze", 2, {}).job
        other = repo.create("forge.regen", 3, {}).job
        repo.claim_next(["analyze"], "host:1", subject_id=2)

        assert repo.mark_blocked(["analyze"], True) == 1
        assert repo.get(queued.id).last_error_code == BLOCKED_BY_UPSTREAM
        assert repo.get(running.id).last_error_code is None
        assert repo.get(other.id).last_error_code is None
        assert repo.blocked_count(["analyze"]) == 1

        assert repo.mark_blocked(["analyze"], False) == 1
        job = repo.get(queued.id)
        assert job.last_error_code is None
        assert job.error_message is None
        assert repo.blocked_count() == 0

    def test_clear_leaves_other_errors(self, test_db_session: Session):
        repo = JobRepository(test_db_session)
        job = repo.create("analyze", 1, {}).job
        job.last_error_code = "upstream_timeout"
        test_db_session.commit()

        assert repo.mark_blocked(["analyze"], False) == 0
        assert repo.get(job.id).last_error_code == "upstream_timeout"


class TestAuditLog:
    """Test the operator audit trail."""

    def test_record_and_list(self, test_db_session: Session):
        audit = AuditRepository(test_db_session)

        audit.record("job_cancel", "job", 7, details={"immediate": True}, actor="cli")
        audit.record("jobs_prune", details={"deleted_count": 3})

        entries = audit.list_entries()
        assert [entry.action for entry in entries] == ["jobs_prune", "job_cancel"]
        assert entries[1].entity_id == 7
        assert entries[1].details == {"immediate": True}
        assert entries[1].actor == "cli"
        assert [entry.action for entry in audit.list_entries(action="job_cancel")] == ["job_cancel"]
