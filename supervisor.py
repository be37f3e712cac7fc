"""Worker leases and the supervisor that spawns worker processes.

A family has ``max_concurrency`` lease slots. Each slot is a lock file held
with ``fcntl.flock`` for the lifetime of one worker process, next to a JSON
sidecar with the holder's metadata. The kernel drops the lock when the
holder dies, so a crashed worker never blocks a slot.
"""

import fcntl
import os
import socket
import subprocess
import sys
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from loguru import logger

from errors import LeaseHeldError
from settings import settings
from utils import (
    ensure_directory,
    get_current_timestamp,
    parse_timestamp,
    pid_alive,
    read_json_file,
    seconds_since,
    write_json_atomic,
)

SPAWNED = "spawned"
ALREADY_RUNNING = "already_running"
AT_CAPACITY = "at_capacity"
START_FAILED = "start_failed"


def lease_dir(state_dir: Optional[str] = None) -> str:
    return os.path.join(state_dir or settings.state_dir, "leases")


def slot_path(family: str, slot: int, state_dir: Optional[str] = None) -> str:
    return os.path.join(lease_dir(state_dir), f"{family}.{slot}.lock")


def _meta_path(lock_path: str) -> str:
    return lock_path[: -len(".lock")] + ".json" if lock_path.endswith(".lock") else lock_path + ".json"


class WorkerLease:
    """Exclusive, non-blocking lease over a lock file.

    Use as a context manager; the lock is released on every exit path.
    """

    def __init__(self, path: str, owner: Optional[str] = None):
        self.path = path
        self.meta_path = _meta_path(path)
        self.owner = owner or f"{socket.gethostname()}:{os.getpid()}"
        self._fd: Optional[int] = None
        self._meta: Dict[str, Any] = {}

    @property
    def held(self) -> bool:
        return self._fd is not None

    def acquire(self, retries: int = 0, retry_delay: float = 0.05) -> bool:
        """Try to take the lock; True on success, False if another holder has it."""
        if self.held:
            return True
        ensure_directory(os.path.dirname(self.path))
        for attempt in range(retries + 1):
            fd = os.open(self.path, os.O_RDWR | os.O_CREAT, 0o644)
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            except OSError:
                os.close(fd)
                if attempt < retries:
                    time.sleep(retry_delay)
                    continue
                return False
            self._fd = fd
            break

        now = get_current_timestamp()
        self._meta = {
            "pid": os.getpid(),
            "owner": self.owner,
            "host": socket.gethostname(),
            "started_at": now,
            "heartbeat_at": now,
            "state": "running",
        }
        write_json_atomic(self.meta_path, self._meta)
        logger.debug(f"Lease acquired: {self.path} by {self.owner}")
        return True

    def renew(self, **extra: Any) -> None:
        """Refresh the heartbeat in the metadata sidecar."""
        if not self.held:
            return
        self._meta.update(extra)
        self._meta["heartbeat_at"] = get_current_timestamp()
        write_json_atomic(self.meta_path, self._meta)

    def release(self) -> None:
        if not self.held:
            return
        try:
            self._meta.update(state="released", released_at=get_current_timestamp())
            write_json_atomic(self.meta_path, self._meta)
        except OSError as e:
            logger.warning(f"Could not update lease metadata {self.meta_path}: {e}")
        finally:
            fcntl.flock(self._fd, fcntl.LOCK_UN)
            os.close(self._fd)
            self._fd = None
            logger.debug(f"Lease released: {self.path}")

    def __enter__(self) -> "WorkerLease":
        if not self.acquire():
            raise LeaseHeldError(f"Lease {self.path} is held by another process")
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


@dataclass
class LeaseState:
    """What a probe of one lease slot observed."""

    path: str
    held: bool
    pid: Optional[int] = None
    alive: bool = False
    owner: Optional[str] = None
    state: Optional[str] = None
    started_at: Optional[str] = None
    heartbeat_age: Optional[float] = None
    slot: Optional[int] = None

    @property
    def stale(self) -> bool:
        """Held, but the holder stopped renewing its heartbeat."""
        return (
            self.held
            and self.heartbeat_age is not None
            and self.heartbeat_age > settings.stale_heartbeat_sec
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "slot": self.slot,
            "held": self.held,
            "pid": self.pid,
            "alive": self.alive,
            "owner": self.owner,
            "state": self.state,
            "started_at": self.started_at,
            "heartbeat_age": self.heartbeat_age,
            "stale": self.stale,
        }


def _lock_is_held(path: str) -> bool:
    try:
        probe_fd = os.open(path, os.O_RDONLY)
    except FileNotFoundError:
        return False
    try:
        fcntl.flock(probe_fd, fcntl.LOCK_SH | fcntl.LOCK_NB)
        fcntl.flock(probe_fd, fcntl.LOCK_UN)
        return False
    except OSError:
        return True
    finally:
        os.close(probe_fd)


def inspect_lease(path: str, slot: Optional[int] = None) -> LeaseState:
    """Probe the lock itself, not the mere presence of the file."""
    meta = read_json_file(_meta_path(path)) or {}
    held = _lock_is_held(path)
    pid = meta.get("pid")
    heartbeat_age = None
    if meta.get("heartbeat_at"):
        try:
            heartbeat_age = seconds_since(parse_timestamp(meta["heartbeat_at"]))
        except ValueError:
            heartbeat_age = None
    return LeaseState(
        path=path,
        held=held,
        pid=pid,
        alive=held and pid_alive(pid),
        owner=meta.get("owner"),
        state=meta.get("state"),
        started_at=meta.get("started_at"),
        heartbeat_age=heartbeat_age,
        slot=slot,
    )


def inspect_family(family: str, state_dir: Optional[str] = None, slots: Optional[int] = None) -> List[LeaseState]:
    slots = slots or settings.max_concurrency(family)
    return [inspect_lease(slot_path(family, slot, state_dir), slot=slot) for slot in range(slots)]


def _live(states: List[LeaseState]) -> List[LeaseState]:
    return [state for state in states if state.held]


def spawn_worker_process(
    family: str,
    slot: int,
    batch_size: Optional[int] = None,
    time_budget: Optional[int] = None,
    log_path: Optional[str] = None,
) -> subprocess.Popen:
    """Start a detached ``cli worker`` process for one lease slot."""
    cmd = [settings.worker_python or sys.executable, "-m", "cli", "worker", "--family", family, "--slot", str(slot)]
    if batch_size:
        cmd += ["--batch-size", str(batch_size)]
    if time_budget:
        cmd += ["--time-budget", str(time_budget)]

    log_path = log_path or os.path.join(settings.state_dir, "logs", f"worker-{family}.log")
    ensure_directory(os.path.dirname(log_path))
    with open(log_path, "ab") as log_file:
        return subprocess.Popen(
            cmd,
            stdin=subprocess.DEVNULL,
            stdout=log_file,
            stderr=subprocess.STDOUT,
            cwd=os.path.dirname(os.path.abspath(__file__)),
            start_new_session=True,
            close_fds=True,
        )


@dataclass
class SupervisorResult:
    status: str
    pid: Optional[int] = None
    reason: Optional[str] = None
    slot: Optional[int] = None
    pids: List[int] = field(default_factory=list)
    live_workers: int = 0
    max_concurrency: int = 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "pid": self.pid,
            "reason": self.reason,
            "slot": self.slot,
            "pids": self.pids,
            "live_workers": self.live_workers,
            "max_concurrency": self.max_concurrency,
        }


class WorkerSupervisor:
    """Decides whether a family needs another worker process and starts it."""

    def __init__(
        self,
        state_dir: Optional[str] = None,
        spawner: Optional[Callable[..., Any]] = None,
        verify_timeout: Optional[float] = None,
        poll_interval: float = 0.05,
    ):
        self.state_dir = state_dir or settings.state_dir
        self.spawner = spawner or spawn_worker_process
        self.verify_timeout = settings.spawn_verify_timeout_sec if verify_timeout is None else verify_timeout
        self.poll_interval = poll_interval

    def slot_path(self, family: str, slot: int) -> str:
        return slot_path(family, slot, self.state_dir)

    def launcher_path(self, family: str) -> str:
        return os.path.join(lease_dir(self.state_dir), f"{family}.launcher.lock")

    def spawn_record_path(self, family: str) -> str:
        return os.path.join(lease_dir(self.state_dir), f"{family}.spawn_last.json")

    def inspect(self, family: str) -> List[LeaseState]:
        return inspect_family(family, self.state_dir)

    def live_workers(self, family: str) -> List[LeaseState]:
        return _live(self.inspect(family))

    def last_spawn(self, family: str) -> Optional[Dict[str, Any]]:
        return read_json_file(self.spawn_record_path(family))

    def ensure_running(
        self,
        family: str,
        desired_concurrency: int = 1,
        batch_size: Optional[int] = None,
        time_budget: Optional[int] = None,
    ) -> SupervisorResult:
        """Make sure ``desired_concurrency`` workers run for ``family``.

        Never waits for a worker to finish; it only waits, bounded by
        ``verify_timeout``, for a spawned worker to take its lease.
        """
        cap = settings.max_concurrency(family)
        desired = max(1, desired_concurrency or 1)
        launcher = WorkerLease(self.launcher_path(family))
        if not launcher.acquire():
            live = self.live_workers(family)
            return SupervisorResult(
                ALREADY_RUNNING,
                pid=live[0].pid if live else None,
                reason="launcher_locked",
                live_workers=len(live),
                max_concurrency=cap,
            )
        try:
            states = self.inspect(family)
            live = _live(states)
            if len(live) >= desired:
                return SupervisorResult(
                    ALREADY_RUNNING,
                    pid=live[0].pid,
                    reason="lease_held",
                    slot=live[0].slot,
                    live_workers=len(live),
                    max_concurrency=cap,
                )
            if len(live) >= cap:
                return SupervisorResult(
                    AT_CAPACITY,
                    reason="max_concurrency",
                    live_workers=len(live),
                    max_concurrency=cap,
                )

            free_slots = [state.slot for state in states if not state.held]
            wanted = min(desired, cap) - len(live)
            started: List[SupervisorResult] = []
            failure: Optional[SupervisorResult] = None
            for slot in free_slots[:wanted]:
                outcome = self._spawn_and_verify(family, slot, batch_size, time_budget)
                if outcome.status == SPAWNED:
                    started.append(outcome)
                else:
                    failure = outcome
                    break

            live_count = len(live) + len(started)
            if started:
                result = SupervisorResult(
                    SPAWNED,
                    pid=started[0].pid,
                    slot=started[0].slot,
                    pids=[item.pid for item in started],
                    reason=failure.reason if failure else None,
                    live_workers=live_count,
                    max_concurrency=cap,
                )
            else:
                result = failure or SupervisorResult(START_FAILED, reason="no_free_slot")
                result.live_workers = live_count
                result.max_concurrency = cap
            self._record_spawn(family, result)
            return result
        finally:
            launcher.release()

    def _spawn_and_verify(
        self,
        family: str,
        slot: int,
        batch_size: Optional[int],
        time_budget: Optional[int],
    ) -> SupervisorResult:
        log_path = os.path.join(self.state_dir, "logs", f"worker-{family}-{slot}.log")
        try:
            handle = self.spawner(
                family, slot, batch_size=batch_size, time_budget=time_budget, log_path=log_path
            )
        except OSError as e:
            logger.error(f"Failed to spawn {family} worker for slot {slot}: {e}")
            return SupervisorResult(START_FAILED, reason=f"spawn_error: {e}", slot=slot)

        pid = handle.pid
        lock_path = self.slot_path(family, slot)
        deadline = time.monotonic() + self.verify_timeout
        while True:
            # A worker that found no work may already have released its lease
            meta = read_json_file(_meta_path(lock_path)) or {}
            if meta.get("pid") == pid:
                logger.info(f"Spawned {family} worker pid={pid} slot={slot}")
                return SupervisorResult(SPAWNED, pid=pid, slot=slot)

            exit_code = handle.poll()
            if exit_code is not None:
                logger.error(f"{family} worker pid={pid} exited with {exit_code} before taking its lease")
                return SupervisorResult(START_FAILED, pid=pid, reason=f"exited_{exit_code}", slot=slot)
            if time.monotonic() >= deadline:
                logger.error(f"{family} worker pid={pid} did not take its lease within {self.verify_timeout}s")
                return SupervisorResult(START_FAILED, pid=pid, reason="verify_timeout", slot=slot)
            time.sleep(self.poll_interval)

    def _record_spawn(self, family: str, result: SupervisorResult) -> None:
        record = result.to_dict()
        record["ts"] = get_current_timestamp()
        try:
            write_json_atomic(self.spawn_record_path(family), record)
        except OSError as e:
            logger.warning(f"Could not write spawn record for {family}: {e}")
