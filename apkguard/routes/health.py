import time

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text

from apkguard.database import engine
from apkguard.errors import QueueError
from apkguard.services.redis_client import is_redis_healthy
from apkguard.utils import metrics
from apkguard.utils.logger import get_logger

router = APIRouter()
logger = get_logger("health")

_started_at = time.monotonic()


@router.get("/health")
async def health_check():
    return {"status": "OK", "uptime": round(time.monotonic() - _started_at, 3)}


@router.get("/health/ready")
async def readiness_check(request: Request):
    """Database and queue reachability; 503 if either is down"""
    checks = {"database": True, "queue": True}
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as exc:
        logger.error("health.database_unreachable", extra={"error": str(exc)})
        checks["database"] = False

    checks["queue"] = await is_redis_healthy(getattr(request.app.state, "redis", None))

    ready = all(checks.values())
    return JSONResponse(
        status_code=200 if ready else 503,
        content={"status": "OK" if ready else "UNAVAILABLE", "checks": checks},
    )


@router.get("/metrics")
async def metrics_snapshot(request: Request):
    snapshot = metrics.get_snapshot()
    queue = getattr(request.app.state, "queue", None)
    if queue is not None:
        try:
            snapshot["queue"] = await queue.counts()
        except QueueError as exc:
            snapshot["queue"] = {"error": str(exc)}
    return snapshot
