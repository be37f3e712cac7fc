"""Built-in job types: their payload builders and executors."""

import os
from typing import List, Optional

from sqlalchemy.orm import Session

from clients import AnalysisClient, ForgeClient
from db import ResultRepository
from errors import PayloadBuildError, PermanentJobError
from models import Subject
from registry import AnalysisPayload, ForgePayload, JobRegistry, JobTypeSpec, ScanPayload
from settings import settings

IMAGE_EXTENSIONS = {".jpg", ".jpeg", ".png", ".webp", ".gif", ".bmp", ".tif", ".tiff"}
VIDEO_EXTENSIONS = {".mp4", ".mkv", ".webm", ".mov", ".avi", ".m4v"}
ANALYSIS_MODES = ("caption", "title", "tags", "quality")
CHECKPOINT_EVERY = 25


def media_kind(path: str) -> str:
    ext = os.path.splitext(path)[1].lower()
    if ext in IMAGE_EXTENSIONS:
        return "image"
    if ext in VIDEO_EXTENSIONS:
        return "video"
    return "other"


def _collect_files(root: str, recursive: bool) -> List[str]:
    if not recursive:
        return sorted(
            os.path.join(root, name)
            for name in os.listdir(root)
            if os.path.isfile(os.path.join(root, name))
        )
    files = []
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames.sort()
        files.extend(os.path.join(dirpath, name) for name in sorted(filenames))
    return files


# Payload builders


def build_scan_path(subject: Optional[Subject], overrides: dict, db: Session) -> dict:
    path = overrides.get("path")
    if not path:
        raise PayloadBuildError("scan.path needs a path", code="missing_path")
    return {"path": os.path.abspath(path), "recursive": overrides.get("recursive", True)}


def build_scan_rescan(subject: Subject, overrides: dict, db: Session) -> dict:
    return {"path": subject.path, "recursive": False}


def build_analysis(subject: Subject, overrides: dict, db: Session, mode: str) -> dict:
    return {
        "mode": mode,
        "path": subject.path,
        "model": overrides.get("model") or settings.analysis_model,
        "prompt": overrides.get("prompt"),
        "options": overrides.get("options") or {},
    }


def build_forge_regen(subject: Subject, overrides: dict, db: Session) -> dict:
    prompt = overrides.get("prompt")
    if not prompt:
        caption = ResultRepository(db).get(subject.id, "analysis.caption")
        prompt = (caption.data or {}).get("text") if caption is not None else None
    if not prompt:
        raise PayloadBuildError(
            f"No prompt for subject {subject.id}: pass one or run analysis.caption first",
            code="missing_prompt",
        )
    payload = {"path": subject.path, "prompt": prompt}
    for key in ("negative_prompt", "steps", "seed", "denoising_strength", "model"):
        if overrides.get(key) is not None:
            payload[key] = overrides[key]
    return payload


# Dedup keys and upstream health checks


def scan_dedup_key(payload: ScanPayload) -> Optional[str]:
    """Scans are duplicates only when they walk the same root the same way."""
    if not payload.path:
        return None
    key = os.path.normcase(os.path.normpath(payload.path))
    return key if payload.recursive else f"{key}#flat"


def check_analysis_upstream() -> bool:
    with AnalysisClient() as client:
        return client.health_check()


def check_forge_upstream() -> bool:
    with ForgeClient() as client:
        return client.health_check()


# Executors


def run_scan_path(ctx) -> dict:
    """Walk a directory and register every file as a subject."""
    root = ctx.payload.path
    if not root or not os.path.isdir(root):
        raise PermanentJobError(f"Scan root is not a directory: {root}", code="path_missing")

    files = _collect_files(root, ctx.payload.recursive)
    ctx.progress(0, len(files), stage="scanning")
    subjects = ctx.subjects
    created = updated = 0
    for index, path in enumerate(files, start=1):
        if index % CHECKPOINT_EVERY == 1:
            ctx.checkpoint()
        _, is_new = subjects.upsert(path, media_kind(path))
        if is_new:
            created += 1
        else:
            updated += 1
        if index % CHECKPOINT_EVERY == 0 or index == len(files):
            ctx.progress(index, len(files))

    ctx.log.info(f"Scanned {root}: {len(files)} files, {created} new")
    return {"root": root, "files": len(files), "created": created, "updated": updated}


def run_scan_rescan(ctx) -> dict:
    """Refresh one subject from disk."""
    subject = ctx.subject
    if subject is None:
        raise PermanentJobError(f"Subject {ctx.subject_id} no longer exists", code="subject_missing")
    ctx.checkpoint()
    if not os.path.exists(subject.path):
        ctx.subjects.set_present(subject.id, False)
        return {"path": subject.path, "present": False}
    kind = media_kind(subject.path)
    ctx.subjects.upsert(subject.path, kind)
    return {"path": subject.path, "present": True, "kind": kind}


def run_analysis(ctx) -> dict:
    payload: AnalysisPayload = ctx.payload
    ctx.progress(0, 1, stage="analyzing")
    ctx.checkpoint()
    with AnalysisClient() as client:
        result = client.analyze(
            payload.mode,
            payload.path,
            model=payload.model,
            prompt=payload.prompt,
            options=payload.options,
            timeout=ctx.remaining() or None,
            subject_id=ctx.subject_id,
        )
    ctx.progress(1, 1, stage="analyzed")
    return result


def run_forge_regen(ctx) -> dict:
    payload: ForgePayload = ctx.payload
    stem, _ = os.path.splitext(payload.path)
    output_path = f"{stem}.regen-{ctx.job_id}.png"
    ctx.progress(0, 1, stage="regenerating")
    ctx.checkpoint()
    with ForgeClient() as client:
        result = client.regenerate(payload, output_path, timeout=ctx.remaining() or None)
    ctx.progress(1, 1, stage="regenerated")
    return result


def _analysis_builder(mode: str):
    def builder(subject: Subject, overrides: dict, db: Session) -> dict:
        return build_analysis(subject, overrides, db, mode)

    return builder


def default_registry() -> JobRegistry:
    """Registry with the built-in scan, analysis and forge job types."""
    registry = JobRegistry()
    registry.register(
        JobTypeSpec(
            name="scan.path",
            payload_model=ScanPayload,
            executor=run_scan_path,
            requires_subject=False,
            build_payload=build_scan_path,
            timeout_sec=3600,
            dedup_key=scan_dedup_key,
        )
    )
    registry.register(
        JobTypeSpec(
            name="scan.rescan",
            payload_model=ScanPayload,
            executor=run_scan_rescan,
            build_payload=build_scan_rescan,
        )
    )
    for mode in ANALYSIS_MODES:
        registry.register(
            JobTypeSpec(
                name=f"analysis.{mode}",
                payload_model=AnalysisPayload,
                executor=run_analysis,
                subject_kinds=("image",),
                skip_if_done=True,
                build_payload=_analysis_builder(mode),
                health_check=check_analysis_upstream,
            )
        )
    registry.register(
        JobTypeSpec(
            name="forge.regen",
            payload_model=ForgePayload,
            executor=run_forge_regen,
            subject_kinds=("image",),
            build_payload=build_forge_regen,
            timeout_sec=900,
            health_check=check_forge_upstream,
        )
    )
    return registry
