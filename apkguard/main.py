from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from slowapi.errors import RateLimitExceeded
from starlette.exceptions import HTTPException as StarletteHTTPException

from apkguard.config import get_settings
from apkguard.database import AsyncSessionLocal, dispose_db, init_db
from apkguard.errors import (
    PipelineError,
    http_error_handler,
    pipeline_error_handler,
    request_validation_error_handler,
    unhandled_error_handler,
)
from apkguard.middleware.correlation import CorrelationMiddleware, install_log_filter
from apkguard.middleware.rate_limit import RedisRateLimitMiddleware, limiter, rate_limit_exceeded_handler
from apkguard.routes import analyses, auth, health, upload
from apkguard.services.job_queue import JobQueue, attach_logging_listeners
from apkguard.services.record_store import AnalysisRecordStore
from apkguard.services.redis_client import close_redis, create_redis
from apkguard.services.upload_orchestrator import UploadOrchestrator
from apkguard.utils.file_handler import FileHandler
from apkguard.utils.logger import logger

settings = get_settings()

app = FastAPI(title=settings.app_name, version=settings.app_version)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)
app.add_exception_handler(PipelineError, pipeline_error_handler)
app.add_exception_handler(StarletteHTTPException, http_error_handler)
app.add_exception_handler(RequestValidationError, request_validation_error_handler)
app.add_exception_handler(Exception, unhandled_error_handler)

install_log_filter(logger)

# General limit for every route; upload has its own tighter slowapi limit
app.add_middleware(RedisRateLimitMiddleware, rate_limit=settings.default_rate_limit)
app.add_middleware(CorrelationMiddleware)

allowed_origins = [origin.strip() for origin in settings.allowed_origins.split(",")]
app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials="*" not in allowed_origins,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "X-API-Key", "Authorization", "X-Correlation-ID"],
)


@app.on_event("startup")
async def startup_event():
    logger.info("Starting APKGuard backend...")
    await init_db()

    state = app.state
    # Tests inject their own Redis client before startup
    if getattr(state, "redis", None) is None:
        state.redis = create_redis(settings)
        state.owns_redis = True

    state.queue = JobQueue.from_settings(settings, redis=state.redis)
    attach_logging_listeners(state.queue)
    await state.queue.open()

    state.record_store = AnalysisRecordStore(AsyncSessionLocal)
    state.file_handler = FileHandler(settings.upload_dir, settings.max_upload_bytes)
    state.orchestrator = UploadOrchestrator(state.record_store, state.queue, state.file_handler)
    logger.info(f"Backend ready at http://{settings.backend_host}:{settings.backend_port}")


@app.on_event("shutdown")
async def shutdown_event():
    state = app.state
    if getattr(state, "queue", None) is not None:
        await state.queue.close()
    if getattr(state, "owns_redis", False):
        await close_redis(state.redis)
        state.redis = None
    await dispose_db()


@app.get("/")
async def root():
    return {"status": "ok"}


@app.middleware("http")
async def log_requests(request: Request, call_next):
    # Sanitize headers before logging (remove sensitive data)
    if logger.isEnabledFor(10):  # DEBUG level
        sanitized_headers = {
            k: v if k.lower() not in ["x-api-key", "authorization", "cookie"] else "***REDACTED***"
            for k, v in request.headers.items()
        }
        logger.debug(f"{request.method} {request.url.path} headers: {sanitized_headers}")
    return await call_next(request)


app.include_router(health.router, tags=["Health"])
app.include_router(auth.router, prefix="/auth", tags=["Authentication"])
app.include_router(upload.router, tags=["Upload"])
app.include_router(analyses.router, prefix="/analyses", tags=["Analyses"])


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "apkguard.main:app",
        host=settings.backend_host,
        port=settings.backend_port,
        reload=settings.debug,
    )
