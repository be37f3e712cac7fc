"""Pytest configuration and fixtures."""

import itertools
import os
import tempfile
import time

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from control import ControlAPI
from db import Base, JobRepository, create_db_engine
from errors import PermanentJobError, TransientJobError
from executors import default_registry
from models import Subject
from registry import AnalysisPayload, JobTypeSpec
from settings import Settings
from status_cache import StatusCache
from supervisor import WorkerLease, WorkerSupervisor, slot_path


def build_fake_analysis(subject, overrides, db):
    return {
        "mode": "caption",
        "path": subject.path,
        "model": "test-model",
        "options": dict(overrides),
    }


def run_fake_analysis(ctx):
    """Executor whose behavior is picked by ``payload.options``."""
    options = ctx.payload.options
    behavior = options.get("behavior", "ok")
    steps = int(options.get("steps", 3))

    ctx.progress(0, steps, stage="working")
    for step in range(1, steps + 1):
        if behavior == "slow":
            time.sleep(0.6)
        ctx.checkpoint()
        if behavior == "cancel_midway" and step == 1:
            JobRepository(ctx.db).request_cancel(ctx.job_id)
        ctx.progress(step, steps)

    if behavior == "transient":
        raise TransientJobError("upstream unavailable", code="upstream_down")
    if behavior == "permanent":
        raise PermanentJobError("input rejected", code="bad_input")
    if behavior == "crash":
        raise RuntimeError("boom")
    return {"text": f"caption for {ctx.subject_id}"}


@pytest.fixture(scope="function")
def test_db_url():
    """Create temporary database URL for testing."""
    temp_db = tempfile.NamedTemporaryFile(delete=False, suffix=".db")
    temp_db.close()

    yield f"sqlite:///{temp_db.name}"

    for suffix in ("", "-wal", "-shm"):
        try:
            os.unlink(temp_db.name + suffix)
        except OSError:
            pass


@pytest.fixture(scope="function")
def test_engine(test_db_url):
    """Create test database engine."""
    engine = create_db_engine(test_db_url, busy_timeout=5)
    Base.metadata.create_all(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture(scope="function")
def session_factory(test_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=test_engine)


@pytest.fixture(scope="function")
def test_db_session(session_factory):
    """Create test database session."""
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def state_dir(tmp_path):
    path = tmp_path / "state"
    path.mkdir()
    return str(path)


@pytest.fixture
def registry():
    """Built-in job types plus fake ones driven by payload options."""
    reg = default_registry()
    reg.register(
        JobTypeSpec(
            name="analyze",
            family="analysis",
            payload_model=AnalysisPayload,
            executor=run_fake_analysis,
            subject_kinds=("image",),
            skip_if_done=True,
            build_payload=build_fake_analysis,
        )
    )
    reg.register(
        JobTypeSpec(
            name="analysis.slow",
            payload_model=AnalysisPayload,
            executor=run_fake_analysis,
            build_payload=build_fake_analysis,
            timeout_sec=1,
        )
    )
    return reg


@pytest.fixture
def worker_settings():
    """Settings with the cancel poll rate limit disabled."""
    return Settings(
        cancel_poll_interval_sec=0,
        heartbeat_interval_sec=60,
        status_write_interval_sec=0,
        retry_max_attempts=3,
    )


@pytest.fixture
def make_subject(test_db_session):
    """Insert a subject row and return it."""
    counter = itertools.count(1)

    def _make(subject_id=None, path=None, kind="image", present=True):
        subject = Subject(
            id=subject_id,
            path=path or f"/media/library/item-{next(counter)}.jpg",
            kind=kind,
            present=present,
        )
        test_db_session.add(subject)
        test_db_session.commit()
        test_db_session.refresh(subject)
        return subject

    return _make


class FakeWorkerHandle:
    """Stands in for ``subprocess.Popen``."""

    def __init__(self, pid, exit_code=None):
        self.pid = pid
        self.exit_code = exit_code

    def poll(self):
        return self.exit_code


class InProcessSpawner:
    """Spawner that takes the slot lease in this process, like a worker would."""

    def __init__(self, state_dir):
        self.state_dir = state_dir
        self.leases = []
        self.calls = []

    def __call__(self, family, slot, batch_size=None, time_budget=None, log_path=None):
        self.calls.append((family, slot))
        lease = WorkerLease(slot_path(family, slot, self.state_dir), owner=f"test:{slot}")
        lease.acquire()
        self.leases.append(lease)
        return FakeWorkerHandle(os.getpid())

    def stop_all(self):
        for lease in self.leases:
            lease.release()
        self.leases = []


@pytest.fixture
def spawner(state_dir):
    spawner = InProcessSpawner(state_dir)
    yield spawner
    spawner.stop_all()


@pytest.fixture
def supervisor(state_dir, spawner):
    return WorkerSupervisor(state_dir=state_dir, spawner=spawner, verify_timeout=1, poll_interval=0.01)


@pytest.fixture
def status_cache(state_dir):
    return StatusCache(state_dir=state_dir, max_age_sec=10)


@pytest.fixture
def control(registry, session_factory, supervisor, status_cache):
    return ControlAPI(
        registry=registry,
        session_factory=session_factory,
        supervisor=supervisor,
        status_cache=status_cache,
    )


@pytest.fixture(scope="function")
def test_client(test_engine, control):
    """Create test client with database and control API overrides."""
    from fastapi import FastAPI

    import app as app_module
    import db

    original_engine = db.engine
    original_session_local = db.SessionLocal

    db.engine = test_engine
    db.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)

    # Copied routes resolve overrides through the original app
    app_module.app.dependency_overrides[app_module.get_control] = lambda: control

    # Create a test app without lifespan to avoid database initialization
    test_app = FastAPI(title="Media Jobs Test", version="1.0.0")
    for route in app_module.app.routes:
        test_app.routes.append(route)

    try:
        with TestClient(test_app) as client:
            yield client
    finally:
        app_module.app.dependency_overrides.clear()
        db.engine = original_engine
        db.SessionLocal = original_session_local
