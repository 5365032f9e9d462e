"""Error taxonomy shared by the upload path, the record store, the queue and the worker."""

from typing import Any, Dict, Optional

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException


def build_error_payload(code: str, message: str, details: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    payload = {"success": False, "error": {"code": code, "message": message}}
    if details is not None:
        payload["error"]["details"] = details
    return payload


# ---------------------------------------------------------------------------
# Request-path errors (rendered as JSON envelopes)
# ---------------------------------------------------------------------------

class PipelineError(Exception):
    """Error surfaced to the HTTP caller with a stable code."""

    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.details = details
        if code:
            self.code = code

    @property
    def payload(self) -> Dict[str, Any]:
        return build_error_payload(self.code, self.message, self.details)


class ClientError(PipelineError):
    """Bad or missing input. Not retried."""

    status_code = 400
    code = "BAD_REQUEST"


class NoFileUploadedError(ClientError):
    code = "NO_FILE_UPLOADED"

    def __init__(self, message: str = "No file was uploaded."):
        super().__init__(message)


class InvalidFileTypeError(ClientError):
    code = "INVALID_FILE_TYPE"

    def __init__(self, message: str = "Only APK files are allowed"):
        super().__init__(message)


class FileTooLargeError(ClientError):
    status_code = 413
    code = "FILE_TOO_LARGE"


class ApkValidationError(ClientError):
    """Structurally invalid upload; the user must resubmit."""

    code = "VALIDATION_ERROR"

    def __init__(self, reason: str):
        super().__init__(reason, details={"reason": reason})
        self.reason = reason


class InternalError(PipelineError):
    def __init__(self, message: str = "An error occurred while processing the upload."):
        super().__init__(message)


async def pipeline_error_handler(_: Request, exc: PipelineError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.payload)


HTTP_ERROR_CODES = {
    400: "BAD_REQUEST",
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
}


async def http_error_handler(_: Request, exc: StarletteHTTPException) -> JSONResponse:
    code = HTTP_ERROR_CODES.get(exc.status_code, "HTTP_ERROR")
    return JSONResponse(
        status_code=exc.status_code,
        content=build_error_payload(code, str(exc.detail)),
        headers=getattr(exc, "headers", None),
    )


async def request_validation_error_handler(_: Request, exc: RequestValidationError) -> JSONResponse:
    errors = [
        {"field": ".".join(str(part) for part in err.get("loc", ())), "message": err.get("msg", "")}
        for err in exc.errors()
    ]
    return JSONResponse(
        status_code=400,
        content=build_error_payload("VALIDATION_ERROR", "Request validation failed", {"errors": errors}),
    )


async def unhandled_error_handler(_: Request, exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=500, content=InternalError("Internal server error").payload)


# ---------------------------------------------------------------------------
# Record store
# ---------------------------------------------------------------------------

class RecordStoreError(Exception):
    pass


class RecordNotFoundError(RecordStoreError):
    def __init__(self, analysis_id: str):
        super().__init__(f"Analysis record {analysis_id} not found")
        self.analysis_id = analysis_id


class InvalidTransitionError(RecordStoreError):
    def __init__(self, analysis_id: str, current: str, target: str):
        super().__init__(f"Analysis record {analysis_id} cannot move from {current} to {target}")
        self.analysis_id = analysis_id
        self.current = current
        self.target = target


class StaleRecordError(RecordStoreError):
    """The record changed since it was read (version mismatch)."""

    def __init__(self, analysis_id: str, expected_version: int):
        super().__init__(f"Analysis record {analysis_id} was modified concurrently (expected version {expected_version})")
        self.analysis_id = analysis_id
        self.expected_version = expected_version


class DuplicateAnalysisError(RecordStoreError):
    def __init__(self, existing_id: str):
        super().__init__(f"A pending or completed analysis already exists: {existing_id}")
        self.existing_id = existing_id


# ---------------------------------------------------------------------------
# Job queue
# ---------------------------------------------------------------------------

class QueueError(Exception):
    pass


class QueueUnavailableError(QueueError):
    pass


class LockLostError(QueueError):
    """The worker no longer owns the job it is trying to finish."""

    def __init__(self, job_id: str):
        super().__init__(f"Lock lost for job {job_id}")
        self.job_id = job_id


# ---------------------------------------------------------------------------
# Worker
# ---------------------------------------------------------------------------

class AnalysisError(Exception):
    pass


class DecompilationError(AnalysisError):
    pass
