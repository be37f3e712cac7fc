"""HTTP clients for the analysis LLM and the image regeneration service.

Both clients have a DRY_RUN mode that returns deterministic results so
the queue can be exercised without the external services. Failures are
mapped onto the job error taxonomy: connection problems, 429 and 5xx are
transient, other 4xx answers are permanent and timeouts end the job.
"""

import base64
import os
import random
import time
from typing import Any, Dict, Optional

import httpx
from loguru import logger

from errors import PermanentJobError, TransientJobError, WorkTimeoutError
from settings import settings
from utils import generate_deterministic_result

MODE_PROMPTS = {
    "caption": "Describe this image in one or two factual sentences. Reply with the caption only.",
    "title": "Give this image a short title of at most six words. Reply with the title only.",
    "tags": (
        "List 5 to 15 lowercase tags describing subject, style and setting of this image. "
        "Reply with a comma separated list only."
    ),
    "quality": (
        "Rate the technical quality of this image from 1 (unusable) to 10 (excellent). "
        "Reply with the number only."
    ),
}


def _raise_for_response(response: httpx.Response, service: str) -> None:
    if response.status_code == 429 or response.status_code >= 500:
        raise TransientJobError(
            f"{service} returned {response.status_code}", code=f"{service}_unavailable"
        )
    if response.status_code >= 400:
        raise PermanentJobError(
            f"{service} error: {response.status_code} - {response.text[:200]}",
            code=f"{service}_rejected",
        )


def _ping(client: httpx.Client, url: str, service: str) -> bool:
    try:
        response = client.get(url, timeout=settings.upstream_check_timeout_sec)
    except httpx.HTTPError as e:
        logger.warning(f"{service} health check failed: {e}")
        return False
    if not response.is_success:
        logger.warning(f"{service} health check failed: HTTP {response.status_code}")
        return False
    return True


def _read_image_b64(path: str) -> str:
    try:
        with open(path, "rb") as f:
            return base64.b64encode(f.read()).decode("ascii")
    except FileNotFoundError as e:
        raise PermanentJobError(f"File not found: {path}", code="file_missing") from e


class AnalysisClient:
    """Client for an Ollama compatible /api/generate endpoint."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        model: Optional[str] = None,
        dry_run: Optional[bool] = None,
        transport: Optional[httpx.BaseTransport] = None,
        max_retries: int = 2,
    ):
        self.base_url = (base_url or settings.analysis_base_url).rstrip("/")
        self.model = model or settings.analysis_model
        self.dry_run = settings.dry_run if dry_run is None else dry_run
        self.max_retries = max_retries
        self.client = httpx.Client(
            timeout=httpx.Timeout(120.0),
            headers={"Content-Type": "application/json"},
            transport=transport,
        )

    def close(self) -> None:
        self.client.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def health_check(self) -> bool:
        """GET /api/version; a DRY_RUN client is always healthy."""
        if self.dry_run:
            return True
        return _ping(self.client, f"{self.base_url}/api/version", "analysis")

    def analyze(
        self,
        mode: str,
        path: str,
        model: Optional[str] = None,
        prompt: Optional[str] = None,
        options: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
        subject_id: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Run one analysis call and return the normalized result."""
        model = model or self.model
        if self.dry_run:
            logger.info(f"DRY_RUN analysis {mode} for {path}")
            return generate_deterministic_result(
                f"analysis.{mode}", subject_id, {"path": path, "model": model, "prompt": prompt}
            )

        request = {
            "model": model,
            "prompt": prompt or MODE_PROMPTS.get(mode, MODE_PROMPTS["caption"]),
            "images": [_read_image_b64(path)],
            "stream": False,
            "options": options or {},
        }
        data = self._post("/api/generate", request, timeout)
        text = (data.get("response") or "").strip()
        if not text:
            raise PermanentJobError("Empty response from analysis model", code="empty_response")
        return {
            "text": text,
            "model": data.get("model", model),
            "eval_count": data.get("eval_count"),
            "total_duration_ns": data.get("total_duration"),
            "dry_run": False,
        }

    def _post(self, endpoint: str, body: Dict[str, Any], timeout: Optional[float]) -> Dict[str, Any]:
        base_delay = 0.5
        for attempt in range(self.max_retries + 1):
            start_time = time.time()
            try:
                response = self.client.post(f"{self.base_url}{endpoint}", json=body, timeout=timeout)
            except httpx.TimeoutException as e:
                raise WorkTimeoutError(f"Analysis call timed out after {time.time() - start_time:.1f}s") from e
            except httpx.TransportError as e:
                if attempt == self.max_retries:
                    raise TransientJobError(f"Analysis endpoint unreachable: {e}", code="analysis_unreachable") from e
                delay = base_delay * (2**attempt) + random.uniform(0, 0.5)
                logger.warning(f"Analysis endpoint unreachable, retrying in {delay:.2f}s (attempt {attempt + 1})")
                time.sleep(delay)
                continue

            if response.status_code == 429 and attempt < self.max_retries:
                delay = base_delay * (2**attempt) + random.uniform(0, 0.5)
                logger.warning(f"Rate limited, retrying in {delay:.2f}s (attempt {attempt + 1})")
                time.sleep(delay)
                continue
            _raise_for_response(response, "analysis")
            try:
                return response.json()
            except ValueError as e:
                raise PermanentJobError("Analysis endpoint returned invalid JSON", code="bad_response") from e
        raise TransientJobError("Analysis call failed after all retries", code="analysis_unavailable")


class ForgeClient:
    """Client for a Stable Diffusion WebUI compatible img2img endpoint."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        dry_run: Optional[bool] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.base_url = (base_url or settings.forge_base_url or "").rstrip("/")
        self.dry_run = (settings.dry_run or not self.base_url) if dry_run is None else dry_run
        self.client = httpx.Client(timeout=httpx.Timeout(300.0), transport=transport)

    def close(self) -> None:
        self.client.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def health_check(self) -> bool:
        """GET the options endpoint; a DRY_RUN client is always healthy."""
        if self.dry_run:
            return True
        return _ping(self.client, f"{self.base_url}/sdapi/v1/options", "forge")

    def regenerate(self, payload, output_path: str, timeout: Optional[float] = None) -> Dict[str, Any]:
        """Regenerate ``payload.path`` and write the image to ``output_path``."""
        if self.dry_run:
            logger.info(f"DRY_RUN regeneration of {payload.path}")
            result = generate_deterministic_result("forge.regen", None, payload.model_dump())
            result["output_path"] = None
            return result

        body = {
            "init_images": [_read_image_b64(payload.path)],
            "prompt": payload.prompt,
            "negative_prompt": payload.negative_prompt,
            "steps": payload.steps,
            "seed": payload.seed,
            "denoising_strength": payload.denoising_strength,
        }
        if payload.model:
            body["override_settings"] = {"sd_model_checkpoint": payload.model}

        try:
            response = self.client.post(f"{self.base_url}/sdapi/v1/img2img", json=body, timeout=timeout)
        except httpx.TimeoutException as e:
            raise WorkTimeoutError("Regeneration call timed out") from e
        except httpx.TransportError as e:
            raise TransientJobError(f"Forge endpoint unreachable: {e}", code="forge_unreachable") from e
        _raise_for_response(response, "forge")

        images = response.json().get("images") or []
        if not images:
            raise PermanentJobError("Forge returned no image", code="empty_response")
        os.makedirs(os.path.dirname(os.path.abspath(output_path)), exist_ok=True)
        with open(output_path, "wb") as f:
            f.write(base64.b64decode(images[0]))
        return {"output_path": output_path, "seed": payload.seed, "dry_run": False}
