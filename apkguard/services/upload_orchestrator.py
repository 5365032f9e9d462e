"""
Upload pipeline: validate → hash → record → enqueue.

Everything here runs on the request path and is bounded: one archive
directory scan, one streaming hash, one insert and one enqueue. The
analysis itself happens in the worker.
"""
import asyncio
import uuid
from dataclasses import dataclass
from typing import Optional

from apkguard.errors import (
    ApkValidationError,
    DuplicateAnalysisError,
    InternalError,
    NoFileUploadedError,
    PipelineError,
)
from apkguard.services.hashing import hash_file
from apkguard.services.job_queue import JobOptions, JobQueue
from apkguard.services.record_store import AnalysisRecordStore
from apkguard.services.validation import validate_apk_structure
from apkguard.utils import metrics
from apkguard.utils.file_handler import FileHandler, StoredUpload
from apkguard.utils.logger import get_logger

logger = get_logger("upload")

DECOMPILE_JOB = "decompile"


@dataclass(frozen=True)
class UploadResult:
    analysis_id: str
    file_id: str
    message: str
    duplicate: bool = False

    def to_dict(self) -> dict:
        return {
            "analysisId": self.analysis_id,
            "fileId": self.file_id,
            "message": self.message,
            "duplicate": self.duplicate,
        }


class UploadOrchestrator:
    def __init__(
        self,
        store: AnalysisRecordStore,
        queue: JobQueue,
        file_handler: FileHandler,
        job_options: Optional[JobOptions] = None,
        validator=validate_apk_structure,
    ):
        self.store = store
        self.queue = queue
        self.file_handler = file_handler
        self.job_options = job_options or queue.default_options
        self.validator = validator

    async def handle_upload(self, user_id: str, upload: Optional[StoredUpload]) -> UploadResult:
        if upload is None:
            raise NoFileUploadedError()
        if upload.size == 0:
            self.file_handler.delete_file(upload.file_path)
            raise NoFileUploadedError()

        file_id = str(uuid.uuid4())
        logger.info("upload.received", extra={"user_id": user_id, "file_path": upload.file_path})

        validation = await asyncio.to_thread(self.validator, upload.file_path)
        if not validation.is_valid:
            self.file_handler.delete_file(upload.file_path)
            metrics.inc("upload.rejected")
            logger.warning("upload.rejected", extra={"user_id": user_id, "reason": validation.reason})
            raise ApkValidationError(validation.reason)

        record_id = None
        try:
            content_hash = await asyncio.to_thread(hash_file, upload.file_path)

            existing = await self.store.find_active(user_id, content_hash)
            if existing is not None:
                return self._duplicate(user_id, upload, file_id, existing.id, content_hash)
            try:
                record = await self.store.create(user_id, upload.original_filename, content_hash)
            except DuplicateAnalysisError as dup:
                # Lost an insert race against an identical concurrent upload
                return self._duplicate(user_id, upload, file_id, dup.existing_id, content_hash)
            record_id = record.id

            await self.queue.enqueue(
                DECOMPILE_JOB,
                {"analysisId": record_id, "filePath": upload.file_path},
                self.job_options,
            )
        except PipelineError:
            raise
        except Exception as exc:
            logger.error("upload.failed", extra={
                "user_id": user_id, "error": str(exc), "error_type": type(exc).__name__,
            }, exc_info=True)
            self.file_handler.delete_file(upload.file_path)
            if record_id is not None:
                await self._abandon_record(record_id)
            raise InternalError() from exc

        metrics.inc("upload.accepted")
        logger.info("upload.queued", extra={"user_id": user_id, "analysis_id": record_id})
        return UploadResult(
            analysis_id=record_id,
            file_id=file_id,
            message="File uploaded and queued for analysis.",
        )

    def _duplicate(self, user_id, upload, file_id, existing_id, content_hash) -> UploadResult:
        self.file_handler.delete_file(upload.file_path)
        metrics.inc("upload.deduplicated")
        logger.info("upload.deduplicated", extra={
            "user_id": user_id, "analysis_id": existing_id, "content_hash": content_hash,
        })
        return UploadResult(
            analysis_id=existing_id,
            file_id=file_id,
            message="Identical APK already submitted; returning existing analysis.",
            duplicate=True,
        )

    async def _abandon_record(self, record_id: str) -> None:
        """The job never reached the queue; don't leave the record Queued forever."""
        try:
            await self.store.mark_failed(record_id, "Failed to enqueue analysis job")
        except Exception as exc:
            logger.error("upload.abandon_failed", extra={"analysis_id": record_id, "error": str(exc)})
