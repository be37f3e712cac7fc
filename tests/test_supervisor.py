"""Test worker leases and the supervisor."""

import os
import time

import pytest
from sqlalchemy.orm import sessionmaker

from db import Base, JobRepository, create_db_engine, session_scope
from enqueue import EnqueueService
from errors import LeaseHeldError
from executors import default_registry
from supervisor import (
    ALREADY_RUNNING,
    AT_CAPACITY,
    SPAWNED,
    START_FAILED,
    WorkerLease,
    WorkerSupervisor,
    inspect_lease,
    slot_path,
)


class ExitingHandle:
    pid = 999999

    def poll(self):
        return 1


class HangingHandle:
    pid = 999998

    def poll(self):
        return None


class TestWorkerLease:
    """Test the flock based lease."""

    def test_acquire_is_exclusive(self, state_dir):
        path = slot_path("scan", 0, state_dir)
        first = WorkerLease(path, owner="a")
        second = WorkerLease(path, owner="b")

        assert first.acquire() is True
        assert second.acquire() is False
        first.release()
        assert second.acquire() is True
        second.release()

    def test_context_manager_raises_when_held(self, state_dir):
        path = slot_path("scan", 0, state_dir)
        with WorkerLease(path):
            with pytest.raises(LeaseHeldError):
                with WorkerLease(path):
                    pass

    def test_inspect_reads_the_lock(self, state_dir):
        """A leftover metadata file does not count as a live worker."""
        path = slot_path("scan", 0, state_dir)
        lease = WorkerLease(path, owner="me")
        lease.acquire()

        state = inspect_lease(path, slot=0)
        assert state.held is True
        assert state.pid == os.getpid()
        assert state.alive is True
        assert state.owner == "me"

        lease.release()
        state = inspect_lease(path, slot=0)
        assert state.held is False
        assert state.state == "released"

    def test_inspect_missing_file(self, state_dir):
        state = inspect_lease(slot_path("scan", 3, state_dir))

        assert state.held is False
        assert state.pid is None

    def test_renew_updates_metadata(self, state_dir):
        path = slot_path("scan", 0, state_dir)
        with WorkerLease(path) as lease:
            lease.renew(job_id=7)
            state = inspect_lease(path)

        assert state.heartbeat_age is not None
        assert lease.held is False


class TestEnsureRunning:
    """Test supervisor decisions."""

    def test_spawn_then_already_running(self, supervisor, spawner):
        """Two calls in a row spawn exactly one worker."""
        first = supervisor.ensure_running("scan")
        second = supervisor.ensure_running("scan")

        assert first.status == SPAWNED
        assert first.pid == os.getpid()
        assert first.live_workers == 1
        assert second.status == ALREADY_RUNNING
        assert second.pid == os.getpid()
        assert len(spawner.calls) == 1

    def test_at_capacity(self, supervisor, spawner):
        supervisor.ensure_running("scan")

        result = supervisor.ensure_running("scan", desired_concurrency=2)

        assert result.status == AT_CAPACITY
        assert result.max_concurrency == 1
        assert len(spawner.calls) == 1

    def test_spawns_up_to_cap(self, supervisor, spawner):
        """analysis allows two workers by default."""
        result = supervisor.ensure_running("analysis", desired_concurrency=5)

        assert result.status == SPAWNED
        assert result.live_workers == 2
        assert spawner.calls == [("analysis", 0), ("analysis", 1)]

    def test_respawn_after_worker_exit(self, supervisor, spawner):
        supervisor.ensure_running("scan")
        spawner.stop_all()

        result = supervisor.ensure_running("scan")

        assert result.status == SPAWNED
        assert len(spawner.calls) == 2

    def test_start_failed_when_worker_exits(self, state_dir):
        supervisor = WorkerSupervisor(
            state_dir=state_dir, spawner=lambda *args, **kwargs: ExitingHandle(), verify_timeout=1, poll_interval=0.01
        )

        result = supervisor.ensure_running("scan")

        assert result.status == START_FAILED
        assert result.reason == "exited_1"
        assert supervisor.last_spawn("scan")["status"] == START_FAILED

    def test_start_failed_on_verify_timeout(self, state_dir):
        supervisor = WorkerSupervisor(
            state_dir=state_dir, spawner=lambda *args, **kwargs: HangingHandle(), verify_timeout=0.1, poll_interval=0.01
        )

        result = supervisor.ensure_running("scan")

        assert result.status == START_FAILED
        assert result.reason == "verify_timeout"

    def test_start_failed_on_spawn_error(self, state_dir):
        def spawner(*args, **kwargs):
            raise OSError("no such interpreter")

        supervisor = WorkerSupervisor(state_dir=state_dir, spawner=spawner, verify_timeout=0.1)

        result = supervisor.ensure_running("scan")

        assert result.status == START_FAILED
        assert result.reason.startswith("spawn_error")

    def test_launcher_lock_held(self, supervisor, spawner):
        """A concurrent run call reports already_running without spawning."""
        with WorkerLease(supervisor.launcher_path("scan")):
            result = supervisor.ensure_running("scan")

        assert result.status == ALREADY_RUNNING
        assert result.reason == "launcher_locked"
        assert spawner.calls == []

    def test_last_spawn_recorded(self, supervisor):
        supervisor.ensure_running("scan")

        record = supervisor.last_spawn("scan")

        assert record["status"] == SPAWNED
        assert record["pid"] == os.getpid()
        assert "ts" in record


class TestRealWorkerProcess:
    """Start a real ``cli worker`` process against a temporary store."""

    def test_spawned_worker_drains_scan(self, tmp_path, monkeypatch):
        media = tmp_path / "media"
        media.mkdir()
        (media / "a.jpg").write_bytes(b"x")
        (media / "b.mp4").write_bytes(b"x")
        state = tmp_path / "state"
        db_url = f"sqlite:///{tmp_path / 'jobs.db'}"
        # The worker inherits these and builds its own settings from them
        monkeypatch.setenv("DB_URL", db_url)
        monkeypatch.setenv("STATE_DIR", str(state))
        monkeypatch.setenv("DRY_RUN", "true")
        monkeypatch.delenv("LOG_FILE", raising=False)

        engine = create_db_engine(db_url, busy_timeout=5)
        Base.metadata.create_all(bind=engine)
        factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
        with session_scope(factory) as db:
            job_id = EnqueueService(db, default_registry()).enqueue(
                "scan.path", overrides={"path": str(media)}
            ).job_id

        result = WorkerSupervisor(state_dir=str(state), verify_timeout=20).ensure_running("scan", batch_size=5)

        assert result.status == SPAWNED, result.to_dict()
        job = None
        deadline = time.monotonic() + 30
        while time.monotonic() < deadline:
            with session_scope(factory) as db:
                job = JobRepository(db).get(job_id)
                if job.is_terminal:
                    break
            time.sleep(0.2)
        engine.dispose()

        assert job.status == "done"
        assert job.result["files"] == 2
        assert os.path.exists(os.path.join(str(state), "status", "scan.json"))
