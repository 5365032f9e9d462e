"""
Load test script for the APKGuard backend.

Simulates the mobile client:
  1. Health checks
  2. Upload an APK
  3. Poll the analysis until it is Analyzed or Failed
  4. List past analyses

Uploads are limited to 5 per 15 minutes per client address, so most upload
attempts from a single load generator will be answered with 429; those are
counted as expected responses, not failures.

Run:
    pip install -e ".[load]"
    LOAD_TEST_API_KEY=... LOAD_TEST_APK=./sample.apk \
        locust -f tests/load/locustfile.py --host http://localhost:3000

Then open http://localhost:8089 to configure users/spawn rate and start.
"""

import os
import time
from pathlib import Path

from locust import HttpUser, SequentialTaskSet, between, task

# ---------------------------------------------------------------------------
# Configuration: override with env vars for different environments
# ---------------------------------------------------------------------------
API_KEY = os.getenv("LOAD_TEST_API_KEY", "")
APK_PATH = Path(os.getenv("LOAD_TEST_APK", "sample.apk"))
APK_MIME = "application/vnd.android.package-archive"


def auth_headers():
    return {"X-API-Key": API_KEY, "X-Correlation-ID": f"load-test-{time.monotonic()}"}


class UploadFlow(SequentialTaskSet):
    """Upload an APK and poll for the analysis outcome."""

    analysis_id = None

    @task
    def upload(self):
        if not APK_PATH.is_file():
            self.interrupt()
            return
        with self.client.post(
            "/upload",
            files={"apkFile": (APK_PATH.name, APK_PATH.read_bytes(), APK_MIME)},
            headers=auth_headers(),
            name="/upload",
            catch_response=True,
        ) as resp:
            if resp.status_code == 200:
                self.analysis_id = resp.json()["data"]["analysisId"]
            elif resp.status_code == 429:
                resp.success()
                self.analysis_id = None
            else:
                resp.failure(f"Upload failed: {resp.status_code}")

    @task
    def poll_analysis(self):
        if not self.analysis_id:
            return

        max_polls = 60  # 2 minutes at 2s intervals
        for _ in range(max_polls):
            with self.client.get(
                f"/analyses/{self.analysis_id}",
                headers=auth_headers(),
                name="/analyses/[id]",
                catch_response=True,
            ) as resp:
                if resp.status_code != 200:
                    resp.failure(f"Poll error: {resp.status_code}")
                    return

                status = resp.json()["data"]["status"]
                if status == "Analyzed":
                    resp.success()
                    return
                if status == "Failed":
                    resp.failure(f"Analysis failed: {resp.json()['data'].get('errorDetails')}")
                    return

            time.sleep(2)

    @task
    def stop(self):
        self.interrupt()


class MobileClientUser(HttpUser):
    wait_time = between(1, 3)

    @task(3)
    def health_check(self):
        self.client.get("/health", name="/health")

    @task(2)
    def deep_health(self):
        """Database and queue reachability"""
        self.client.get("/health/ready", name="/health/ready")

    @task(1)
    def list_analyses(self):
        self.client.get("/analyses", headers=auth_headers(), name="/analyses")

    @task(1)
    def metrics(self):
        self.client.get("/metrics", name="/metrics")

    tasks = {UploadFlow: 1}
