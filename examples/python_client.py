#!/usr/bin/env python3
"""
Python client example for the Media Jobs API.
This script demonstrates how to enqueue work, start workers and poll status.
"""

import time
from typing import Any, Dict, List, Optional

import requests

TERMINAL_STATUSES = ("done", "error", "cancelled")


class MediaJobsClient:
    """Simple client for the Media Jobs control API."""

    def __init__(self, base_url: str = "http://localhost:8081"):
        self.base_url = base_url
        self.session = requests.Session()
        self.session.headers.update({"Content-Type": "application/json"})

    def _call(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        # Control answers are structured even on failure, so only transport errors raise
        response = self.session.request(method, f"{self.base_url}{path}", **kwargs)
        if response.status_code >= 500 and "application/json" not in response.headers.get("content-type", ""):
            response.raise_for_status()
        return response.json()

    def health_check(self) -> Dict[str, Any]:
        """Check service health."""
        return self._call("GET", "/healthz")

    def enqueue(
        self,
        job_type: str,
        subject_id: Optional[int] = None,
        subject_ids: Optional[List[int]] = None,
        force: bool = False,
        **payload,
    ) -> Dict[str, Any]:
        """Enqueue one subject, or every eligible candidate when no subject is given."""
        body = {"type": job_type, "force": force, "payload": payload}
        if subject_id is not None:
            body["subject_id"] = subject_id
        if subject_ids:
            body["subject_ids"] = subject_ids
        return self._call("POST", "/jobs/enqueue", json=body)

    def run(self, family: str, desired_concurrency: int = 1) -> Dict[str, Any]:
        """Ask the supervisor for workers."""
        return self._call(
            "POST", f"/families/{family}/run", json={"desired_concurrency": desired_concurrency}
        )

    def family_status(self, family: str) -> Dict[str, Any]:
        return self._call("GET", f"/families/{family}/status")

    def get_job_status(self, job_id: int) -> Dict[str, Any]:
        """Get job status."""
        return self._call("GET", f"/jobs/{job_id}")

    def cancel_job(self, job_id: int) -> Dict[str, Any]:
        """Cancel a job."""
        return self._call("POST", f"/jobs/{job_id}/cancel")

    def wait_for_completion(
        self, job_id: int, timeout: int = 300, poll_interval: int = 2
    ) -> Dict[str, Any]:
        """Wait for job to reach a terminal status."""
        start_time = time.time()
        print(f"Waiting for job {job_id} to complete...")

        while time.time() - start_time < timeout:
            status = self.get_job_status(job_id)
            job_status = status["status"]
            progress = status.get("progress") or {}
            stage = progress.get("stage") or "-"
            percent = progress.get("percent") or 0

            print(
                f"\rStatus: {job_status:<10} | Stage: {stage:<12} | Progress: {percent:5.1f}%",
                end="",
                flush=True,
            )

            if job_status in TERMINAL_STATUSES:
                print()
                return status

            time.sleep(poll_interval)

        print()
        raise TimeoutError(f"Job {job_id} did not complete within {timeout} seconds")


def main():
    """Main function demonstrating the client usage."""
    print("Media Jobs Client Demo")
    print("=" * 40)

    client = MediaJobsClient()

    try:
        print("1. Checking service health...")
        health = client.health_check()
        if not health.get("ok"):
            print("Service is unhealthy")
            return
        print("Service is healthy")
        print()

        print("2. Scanning the library...")
        scan = client.enqueue("scan.path", path="/media/library")
        print(f"scan.path -> {scan['status']} (job {scan.get('job_id')})")
        print(f"run scan -> {client.run('scan')['status']}")
        if scan.get("job_id"):
            client.wait_for_completion(scan["job_id"])
        print()

        print("3. Captioning every image without a caption...")
        bulk = client.enqueue("analysis.caption")
        print(
            f"candidates={bulk['candidates']} enqueued={bulk['enqueued']} "
            f"deduped={bulk['deduped_count']} skipped={bulk['skipped']}"
        )
        print(f"run analysis -> {client.run('analysis', desired_concurrency=2)['status']}")
        print()

        print("4. Family status...")
        status = client.family_status("analysis")
        print(f"counts: {status['counts_by_status']}")
        print(f"snapshot age: {status['snapshot_age']} (source: {status['source']})")

    except requests.exceptions.RequestException as e:
        print(f"Request failed: {e}")
        if hasattr(e, "response") and e.response is not None:
            print(f"Response: {e.response.text}")


if __name__ == "__main__":
    main()
