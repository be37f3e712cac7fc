"""Utility functions for the job orchestration layer."""

import hashlib
import json
import os
import socket
import sys
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from loguru import logger

LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
)


def utcnow() -> datetime:
    """Current UTC time as a naive datetime, the way rows store it."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def get_current_timestamp() -> str:
    """Get current UTC timestamp in ISO8601 format."""
    return datetime.now(timezone.utc).isoformat()


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO8601 timestamp into a naive UTC datetime."""
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    return naive_utc(parsed)


def naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Convert an aware datetime to naive UTC; naive values are taken as UTC already."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def seconds_since(moment: Optional[datetime], now: Optional[datetime] = None) -> Optional[float]:
    if moment is None:
        return None
    return max(0.0, ((now or utcnow()) - moment).total_seconds())


def configure_logging(level: str = "info", log_file: Optional[str] = None) -> None:
    """Route loguru to stderr and, optionally, to a rotating JSON lines file."""
    logger.remove()
    logger.add(sys.stderr, level=level.upper(), format=LOG_FORMAT)
    if log_file:
        ensure_directory(os.path.dirname(log_file) or ".")
        logger.add(
            log_file,
            level=level.upper(),
            serialize=True,
            rotation="10 MB",
            retention=5,
            enqueue=True,
        )


def ensure_directory(path: str) -> None:
    """Ensure directory exists, create if not."""
    Path(path).mkdir(parents=True, exist_ok=True)


def write_json_atomic(path: str, data: Dict[str, Any]) -> None:
    """Write JSON next to ``path`` and rename it into place."""
    directory = os.path.dirname(path) or "."
    ensure_directory(directory)
    fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".tmp-", suffix=".json")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, sort_keys=True)
        os.replace(tmp_path, path)
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def read_json_file(path: str) -> Optional[Dict[str, Any]]:
    """Read a JSON object from ``path``; missing or torn files read as None."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, ValueError):
        return None
    return data if isinstance(data, dict) else None


def pid_alive(pid: Optional[int]) -> bool:
    """Return True when a process with ``pid`` exists."""
    if not pid or pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def worker_identity(slot: Optional[int] = None) -> str:
    """Owner string written to claimed rows and lease files."""
    owner = f"{socket.gethostname()}:{os.getpid()}"
    return f"{owner}:{slot}" if slot is not None else owner


def content_hash(payload: Dict[str, Any]) -> str:
    return hashlib.sha256(json.dumps(payload, sort_keys=True, default=str).encode()).hexdigest()[:8]


def generate_deterministic_result(job_type: str, subject_id: Optional[int], payload: Dict[str, Any]) -> Dict[str, Any]:
    """Generate a deterministic result for DRY_RUN mode."""
    digest = content_hash({"type": job_type, "subject_id": subject_id, "payload": payload})
    seed = int(digest, 16)
    mode = job_type.split(".", 1)[-1]

    if mode == "caption":
        text = f"A synthetic caption for item {subject_id} ({digest})"
    elif mode == "title":
        text = f"Untitled {seed % 1000:03d}"
    elif mode == "tags":
        text = ", ".join(["portrait", "landscape", "night", "studio", "outdoor"][: seed % 4 + 1])
    elif mode == "quality":
        text = str(seed % 10 + 1)
    else:
        text = f"dry-run output {digest}"

    return {
        "text": text,
        "model": payload.get("model", "dry-run"),
        "content_hash": digest,
        "dry_run": True,
        # Fixed timestamp keeps dry-run results reproducible
        "generated_at": "2024-01-01T00:00:00Z",
    }


def owner_alive(owner: Optional[str]) -> bool:
    """Whether the process named by a ``host:pid[:slot]`` owner string still runs.

    Owners on other hosts cannot be probed and count as dead, leaving the
    heartbeat age as the only signal.
    """
    if not owner:
        return False
    parts = owner.split(":")
    if len(parts) < 2 or parts[0] != socket.gethostname():
        return False
    try:
        return pid_alive(int(parts[1]))
    except ValueError:
        return False
