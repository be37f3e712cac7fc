"""Application settings loaded from environment variables."""

from typing import Dict, Optional

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application configuration."""

    # Server settings
    port: int = Field(default=8080, description="Server port")
    host: str = Field(default="0.0.0.0", description="Server host")

    # Database settings
    db_url: str = Field(
        default="sqlite:////app/state/mediajobs.db", description="Database URL"
    )
    db_busy_timeout_sec: float = Field(
        default=5.0, description="How long SQLite waits on a locked database"
    )

    # Lease files, status snapshots and worker logs live here
    state_dir: str = Field(default="/app/state", description="Runtime state directory")

    # Worker settings
    family_max_concurrency: Dict[str, int] = Field(
        default_factory=lambda: {"scan": 1, "analysis": 2, "forge": 1},
        description="Maximum concurrent worker processes per job family",
    )
    worker_batch_size: int = Field(
        default=50, description="Jobs a worker processes before exiting"
    )
    worker_time_budget_sec: int = Field(
        default=900, description="Wall-clock budget of one worker invocation"
    )
    heartbeat_interval_sec: float = Field(
        default=15.0, description="Heartbeat cadence while a job runs"
    )
    stale_heartbeat_sec: int = Field(
        default=300, description="Heartbeat age after which a running job is stale"
    )
    cancel_poll_interval_sec: float = Field(
        default=1.0, description="Minimum interval between cancel flag reads"
    )
    spawn_verify_timeout_sec: float = Field(
        default=5.0, description="How long run waits for a spawned worker to start"
    )
    job_timeout_sec: int = Field(
        default=600, description="Default upper bound for one unit of work"
    )
    worker_python: Optional[str] = Field(
        default=None, description="Interpreter used for spawned workers"
    )

    # Retry policy, shared by every family
    retry_max_attempts: int = Field(default=3, description="Attempts before a job errors")
    retry_backoff_base_ms: int = Field(default=1000, description="First retry delay")
    retry_backoff_max_ms: int = Field(default=30000, description="Retry delay cap")

    # Queue limits over non-terminal jobs
    queue_max_total: int = Field(default=2000, description="Queue size limit")
    queue_max_per_type: int = Field(default=500, description="Queue limit per job type")
    queue_max_per_subject: int = Field(
        default=2, description="Queue limit per subject across job types"
    )

    # Status cache
    status_max_age_sec: float = Field(
        default=10.0, description="Snapshot age after which readers fall back to the store"
    )
    status_write_interval_sec: float = Field(
        default=2.0, description="Minimum interval between snapshot writes in a worker"
    )

    # Analysis endpoint (Ollama compatible)
    analysis_base_url: str = Field(
        default="http://127.0.0.1:11434", description="Analysis LLM base URL"
    )
    analysis_model: str = Field(default="llava:latest", description="Analysis model")
    upstream_check_timeout_sec: float = Field(
        default=5.0, description="Timeout of the upstream health check workers run before claiming"
    )

    # Image generation endpoint
    forge_base_url: Optional[str] = Field(
        default=None, description="Image regeneration API base URL"
    )

    # Logging
    log_level: str = Field(default="info", description="Log level")
    log_file: Optional[str] = Field(
        default=None, description="Optional JSON lines log file"
    )

    # Dry run mode
    dry_run: bool = Field(
        default=True, description="Use deterministic fake results instead of HTTP calls"
    )

    # Application version
    version: str = Field(default="1.0.0", description="Application version")

    model_config = {"env_file": ".env", "case_sensitive": False}

    def max_concurrency(self, family: str) -> int:
        """Concurrency cap of a family, never below one."""
        return max(1, int(self.family_max_concurrency.get(family, 1)))


# Global settings instance
settings = Settings()
