"""
Analysis worker: claims decompile jobs from the Redis queue and turns
uploaded APKs into analysis payloads.

Can run as:
  1. In-process, via AnalysisWorker.process_next() (tests, one-off tooling)
  2. Standalone worker (separate service): python -m apkguard.worker

Per job: claimed -> extracting -> risk_scoring -> completed | failed.
"""
import asyncio
import shutil
import signal
from pathlib import Path
from typing import Optional

from apkguard.config import Settings, get_settings
from apkguard.errors import (
    InvalidTransitionError,
    LockLostError,
    RecordStoreError,
    StaleRecordError,
)
from apkguard.models.analysis import TERMINAL_STATUSES
from apkguard.schemas.analysis import AnalysisPayload
from apkguard.services.apk_analysis import ApkAnalysisService
from apkguard.services.decompiler import get_decompiler
from apkguard.services.job_queue import Job, JobQueue, attach_logging_listeners
from apkguard.services.record_store import AnalysisRecordStore
from apkguard.services.upload_orchestrator import DECOMPILE_JOB
from apkguard.utils import metrics
from apkguard.utils.file_handler import FileHandler, cleanup_old_entries
from apkguard.utils.logger import get_logger

logger = get_logger("worker")


class AnalysisWorker:
    def __init__(
        self,
        queue: JobQueue,
        store: AnalysisRecordStore,
        decompiler,
        file_handler: FileHandler,
        output_dir: str,
        analyzer: Optional[ApkAnalysisService] = None,
    ):
        self.queue = queue
        self.store = store
        self.decompiler = decompiler
        self.file_handler = file_handler
        self.output_dir = Path(output_dir)
        self.analyzer = analyzer or ApkAnalysisService()
        self.stopping = asyncio.Event()

    @classmethod
    def from_settings(cls, settings: Settings, queue: JobQueue, store: AnalysisRecordStore) -> "AnalysisWorker":
        return cls(
            queue=queue,
            store=store,
            decompiler=get_decompiler(settings),
            file_handler=FileHandler(settings.upload_dir, settings.max_upload_bytes),
            output_dir=settings.output_dir,
        )

    # ------------------------------------------------------------------
    # Single job
    # ------------------------------------------------------------------

    async def process_next(self) -> Optional[str]:
        """Claim and handle one job. Returns the job id, or None if the queue is empty."""
        job = await self.queue.claim()
        if job is None:
            return None
        await self.handle(job)
        return job.id

    async def handle(self, job: Job) -> None:
        analysis_id = job.data.get("analysisId")
        file_path = job.data.get("filePath")

        if job.name != DECOMPILE_JOB or not analysis_id or not file_path:
            logger.warning("worker.no_handler", extra={"job_id": job.id, "job_name": job.name})
            await self._fail_job(job, f"Unsupported or malformed job: {job.name}")
            return

        record = await self.store.get(analysis_id)
        if record is None:
            logger.warning("worker.record_missing", extra={"job_id": job.id, "analysis_id": analysis_id})
            await self._fail_job(job, f"Analysis record {analysis_id} not found")
            return
        if record.status in TERMINAL_STATUSES:
            await self._skip_terminal(job, analysis_id, record.status)
            return

        try:
            async with metrics.track_duration("worker", "job"):
                risk_score = await self._analyze(job, analysis_id, file_path)
        except InvalidTransitionError as exc:
            # Someone else finished the record between our read and the claim
            await self._skip_terminal(job, analysis_id, exc.current)
            return
        except (LockLostError, StaleRecordError) as exc:
            # A stalled-job sweep handed this job to another worker
            logger.warning("worker.superseded", extra={
                "job_id": job.id, "analysis_id": analysis_id, "error": str(exc),
            })
            metrics.inc("worker.superseded")
            return
        except Exception as exc:
            await self._handle_failure(job, analysis_id, file_path, exc)
            return

        try:
            await self.queue.complete(job, {"analysisId": analysis_id, "riskScore": risk_score})
        except LockLostError:
            logger.warning("worker.complete_lock_lost", extra={"job_id": job.id, "analysis_id": analysis_id})
        self.file_handler.delete_file(file_path)
        metrics.inc("worker.analyzed")
        logger.info("worker.analyzed", extra={
            "job_id": job.id, "analysis_id": analysis_id, "risk_score": risk_score,
        })

    async def _analyze(self, job: Job, analysis_id: str, file_path: str) -> int:
        record = await self.store.mark_processing(analysis_id)
        logger.info("worker.claimed", extra={
            "job_id": job.id, "analysis_id": analysis_id, "attempt": job.attempts_made, "stage": record.stage,
        })
        output_dir = self.output_dir / analysis_id

        record = await self.store.set_stage(analysis_id, "extracting", record.version)
        async with metrics.track_duration("worker", "decompile"):
            await self.decompiler.decompile(file_path, output_dir)
        await self._keep_lock(job)

        async with metrics.track_duration("worker", "extract"):
            manifest = self.analyzer.extract_manifest_data(output_dir)
            resources = self.analyzer.analyze_resources(output_dir)

        record = await self.store.set_stage(analysis_id, "risk_scoring", record.version)
        risk = self.analyzer.generate_risk_assessment(manifest, resources)
        await self._keep_lock(job)

        payload = AnalysisPayload(manifest_data=manifest, resource_data=resources, risk_assessment=risk)
        await self.store.mark_analyzed(analysis_id, payload, str(output_dir), record.version)
        return risk.risk_score

    async def _keep_lock(self, job: Job) -> None:
        if not await self.queue.extend_lock(job):
            raise LockLostError(job.id)

    async def _handle_failure(self, job: Job, analysis_id: str, file_path: str, exc: Exception) -> None:
        error = str(exc) or type(exc).__name__
        logger.error("worker.handler_error", extra={
            "job_id": job.id, "analysis_id": analysis_id, "attempt": job.attempts_made,
            "error": error[:500], "error_type": type(exc).__name__,
        })

        try:
            outcome = await self.queue.fail(job, error)
        except LockLostError:
            logger.warning("worker.fail_lock_lost", extra={"job_id": job.id, "analysis_id": analysis_id})
            return
        if outcome.will_retry:
            # Record stays Processing until the next attempt
            return
        await self._finalize_failure(analysis_id, file_path, outcome.attempts_made, error)

    async def _finalize_failure(self, analysis_id: str, file_path: Optional[str], attempts: int, error: str) -> None:
        try:
            await self.store.mark_failed(analysis_id, f"Analysis failed after {attempts} attempt(s): {error}")
        except RecordStoreError as store_exc:
            logger.error("worker.mark_failed_error", extra={"analysis_id": analysis_id, "error": str(store_exc)})
        if file_path:
            self.file_handler.delete_file(file_path)
        shutil.rmtree(self.output_dir / analysis_id, ignore_errors=True)
        metrics.inc("worker.failed")

    async def recover_stalled(self) -> int:
        """
        Requeue jobs whose worker died mid-analysis. A job that stalled on
        its last attempt is terminal, so its record is failed here.
        """
        recovered = await self.queue.recover_stalled()
        for job in recovered:
            analysis_id = job.data.get("analysisId")
            if job.state != "failed" or job.name != DECOMPILE_JOB or not analysis_id:
                continue
            record = await self.store.get(analysis_id)
            if record is None or record.status in TERMINAL_STATUSES:
                # Finished before the lock ran out; only the acknowledgement was lost
                continue
            logger.warning("worker.stalled_final_attempt", extra={"job_id": job.id, "analysis_id": analysis_id})
            await self._finalize_failure(analysis_id, job.data.get("filePath"), job.attempts_made, job.failed_reason)
        return len(recovered)

    async def _skip_terminal(self, job: Job, analysis_id: str, status: str) -> None:
        """Redelivered job for an already finished record: acknowledge and move on."""
        logger.info("worker.already_terminal", extra={
            "job_id": job.id, "analysis_id": analysis_id, "status": status,
        })
        try:
            await self.queue.complete(job, {"analysisId": analysis_id, "skipped": True})
        except LockLostError:
            logger.warning("worker.complete_lock_lost", extra={"job_id": job.id, "analysis_id": analysis_id})
        self.file_handler.delete_file(job.data["filePath"])

    async def _fail_job(self, job: Job, error: str) -> None:
        try:
            await self.queue.fail(job, error)
        except LockLostError:
            logger.warning("worker.fail_lock_lost", extra={"job_id": job.id})

    # ------------------------------------------------------------------
    # Loops
    # ------------------------------------------------------------------

    def stop(self) -> None:
        self.stopping.set()

    async def pause(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self.stopping.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def run(
        self,
        poll_interval: float = 2.0,
        max_idle_interval: float = 10.0,
        stalled_check_interval: float = 30.0,
    ) -> None:
        """
        Poll for jobs until stop() is called.

        Uses adaptive polling: drains the queue back to back while jobs are
        found, backs off towards max_idle_interval when it is empty.
        """
        current_interval = poll_interval
        loop = asyncio.get_running_loop()
        last_sweep = 0.0
        logger.info("worker.started", extra={"poll_interval": poll_interval, "queue": self.queue.name})

        while not self.stopping.is_set():
            try:
                if loop.time() - last_sweep >= stalled_check_interval:
                    await self.recover_stalled()
                    last_sweep = loop.time()

                if await self.process_next():
                    current_interval = poll_interval
                    continue
                current_interval = min(current_interval * 1.5, max_idle_interval)
            except Exception as exc:
                logger.error("worker.poll_error", extra={"error": str(exc)[:500]})
                current_interval = max_idle_interval

            await self.pause(current_interval)

        logger.info("worker.stopped", extra={"queue": self.queue.name})


def sweep_expired_files(settings: Settings) -> int:
    """Remove uploads and decompiled trees older than the retention horizon."""
    removed = cleanup_old_entries(settings.upload_dir, settings.retention_days)
    removed += cleanup_old_entries(settings.output_dir, settings.retention_days)
    return len(removed)


async def run_cleanup(settings: Settings, worker: AnalysisWorker, interval_hours: int = 6) -> None:
    """Periodically delete orphaned uploads and old analysis output."""
    while not worker.stopping.is_set():
        try:
            deleted = await asyncio.to_thread(sweep_expired_files, settings)
            if deleted:
                logger.info("worker.cleanup", extra={"deleted": deleted})
        except Exception as exc:
            logger.error("worker.cleanup_error", extra={"error": str(exc)[:200]})
        await worker.pause(interval_hours * 3600)


# ---------------------------------------------------------------------------
# Standalone entry point
# ---------------------------------------------------------------------------

async def main() -> None:
    """Run worker as standalone process."""
    from apkguard.database import AsyncSessionLocal, dispose_db, init_db

    settings = get_settings()
    await init_db()

    queue = JobQueue.from_settings(settings)
    attach_logging_listeners(queue)
    await queue.open()

    worker = AnalysisWorker.from_settings(settings, queue, AnalysisRecordStore(AsyncSessionLocal))
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, worker.stop)

    try:
        await asyncio.gather(
            worker.run(settings.worker_poll_interval, settings.worker_max_idle_interval),
            run_cleanup(settings, worker),
        )
    finally:
        await queue.close()
        await dispose_db()


if __name__ == "__main__":
    asyncio.run(main())
