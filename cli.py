"""Command line interface: worker entry point and operator commands."""

import json
import os
from datetime import datetime, timedelta
from typing import List, Optional

import typer
from loguru import logger

from control import ControlAPI
from db import init_db
from executors import default_registry
from schemas import ControlResponse
from settings import settings
from status_cache import StatusCache
from supervisor import WorkerLease, slot_path
from utils import configure_logging, utcnow, worker_identity
from workers import JobProcessor

app = typer.Typer(add_completion=False, help="Media jobs orchestration CLI")

EXIT_LEASE_HELD = 3


def _emit(result: ControlResponse) -> None:
    typer.echo(json.dumps(result.model_dump(mode="json"), indent=2, sort_keys=True))
    if not result.ok:
        raise typer.Exit(1)


@app.callback()
def main(log_level: Optional[str] = typer.Option(None, help="Override LOG_LEVEL")) -> None:
    configure_logging(log_level or settings.log_level, settings.log_file)


@app.command()
def worker(
    family: str = typer.Option(..., help="Job family to process"),
    slot: int = typer.Option(0, help="Lease slot of this worker"),
    batch_size: Optional[int] = typer.Option(None, help="Jobs to process before exiting"),
    time_budget: Optional[int] = typer.Option(None, help="Seconds to run before exiting"),
) -> None:
    """
    Run one worker invocation for a family.

    Spawned by the supervisor; takes the family lease slot, drains eligible
    jobs and exits. Exits with code 3 when the slot is already held.
    """
    registry = default_registry()
    registry.types_for_family(family)
    configure_logging(
        settings.log_level,
        settings.log_file or os.path.join(settings.state_dir, "logs", f"worker-{family}.jsonl"),
    )
    init_db()

    lease = WorkerLease(slot_path(family, slot), owner=worker_identity(slot))
    if not lease.acquire(retries=5):
        logger.warning(f"Lease slot {slot} for {family} is held, exiting")
        raise typer.Exit(EXIT_LEASE_HELD)
    with lease:
        processor = JobProcessor(family, registry, lease=lease, status_cache=StatusCache())
        summary = processor.run(batch_size=batch_size, time_budget=time_budget)
    typer.echo(json.dumps(summary.to_dict(), sort_keys=True))


@app.command()
def run(
    family: str = typer.Argument(..., help="Job family"),
    concurrency: int = typer.Option(1, help="Workers wanted for the family"),
    batch_size: Optional[int] = typer.Option(None, help="Jobs per worker invocation"),
    time_budget: Optional[int] = typer.Option(None, help="Seconds per worker invocation"),
) -> None:
    """Make sure a worker is running for FAMILY."""
    init_db()
    control = ControlAPI(actor="cli")
    _emit(control.run(family, desired_concurrency=concurrency, batch_size=batch_size, time_budget=time_budget))


@app.command()
def enqueue(
    job_type: str = typer.Argument(..., help="Job type, e.g. analysis.caption"),
    subject: Optional[int] = typer.Option(None, "--subject", help="Single subject id"),
    subjects: Optional[List[int]] = typer.Option(None, "--subjects", help="Candidate subject ids"),
    since: Optional[datetime] = typer.Option(None, help="Only subjects imported since"),
    limit: int = typer.Option(50, help="Maximum candidates"),
    all_subjects: bool = typer.Option(False, "--all", help="Include subjects that already have a result"),
    force: bool = typer.Option(False, help="Enqueue even when a result exists"),
    path: Optional[str] = typer.Option(None, help="Directory for scan.path"),
    prompt: Optional[str] = typer.Option(None, help="Prompt override"),
    then_run: bool = typer.Option(False, "--run", help="Start a worker afterwards"),
) -> None:
    """Queue work for one subject or a filtered set of subjects."""
    init_db()
    control = ControlAPI(actor="cli")
    payload = {key: value for key, value in {"path": path, "prompt": prompt}.items() if value}
    result = control.enqueue(
        job_type,
        subject_id=subject,
        subject_ids=subjects or None,
        since=since,
        limit=limit,
        missing_only=not all_subjects,
        force=force,
        payload=payload,
    )
    if then_run and result.ok and result.job_ids:
        family = control.registry.family_of(job_type)
        typer.echo(json.dumps(control.run(family).model_dump(mode="json"), sort_keys=True), err=True)
    _emit(result)


@app.command()
def status(family: str = typer.Argument(..., help="Job family")) -> None:
    """Show counts, lease state and snapshot age of FAMILY."""
    _emit(ControlAPI(actor="cli").status(family))


@app.command()
def job(job_id: int = typer.Argument(..., help="Job id")) -> None:
    """Show one job."""
    _emit(ControlAPI(actor="cli").job_status(job_id))


@app.command()
def cancel(job_id: int = typer.Argument(..., help="Job id")) -> None:
    """Cancel a job."""
    _emit(ControlAPI(actor="cli").cancel(job_id))


@app.command()
def requeue(job_id: int = typer.Argument(..., help="Job id")) -> None:
    """Queue a fresh copy of a finished job."""
    _emit(ControlAPI(actor="cli").requeue(job_id))


@app.command()
def prune(
    type_prefix: Optional[str] = typer.Option(None, help="Match job types starting with this"),
    types: Optional[List[str]] = typer.Option(None, "--type", help="Match this job type"),
    statuses: Optional[List[str]] = typer.Option(None, "--status", help="Match this status"),
    subject: Optional[int] = typer.Option(None, "--subject", help="Match this subject"),
    older_than_days: Optional[int] = typer.Option(None, help="Only jobs created before N days ago"),
    force: bool = typer.Option(False, help="Cancel and delete live jobs too"),
    dry_run: bool = typer.Option(False, help="Report without deleting"),
) -> None:
    """Bulk delete jobs."""
    created_before = None
    if older_than_days is not None:
        created_before = utcnow() - timedelta(days=older_than_days)
    _emit(
        ControlAPI(actor="cli").prune(
            type_prefix=type_prefix,
            types=types or None,
            statuses=statuses or None,
            subject_id=subject,
            created_before=created_before,
            force=force,
            dry_run=dry_run,
        )
    )


@app.command()
def delete(
    subject: int = typer.Option(..., "--subject", help="Subject id"),
    job_type: str = typer.Option(..., "--type", help="Job type"),
    force: bool = typer.Option(False, help="Cancel and delete live jobs too"),
) -> None:
    """Delete the derived data of a subject for one job type."""
    _emit(ControlAPI(actor="cli").delete(subject, job_type, force=force))


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, help="Bind host"),
    port: Optional[int] = typer.Option(None, help="Bind port"),
    reload: bool = typer.Option(False, help="Auto-reload on changes (dev)"),
) -> None:
    """Start the HTTP control service."""
    import uvicorn

    uvicorn.run(
        "app:app",
        host=host or settings.host,
        port=port or settings.port,
        log_level=settings.log_level.lower(),
        reload=reload,
    )


if __name__ == "__main__":
    app()
