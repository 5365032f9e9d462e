"""
Rate limiting.

Two layers:
  - slowapi `limiter` for per-route limits (upload: 5 per 15 minutes)
  - RedisRateLimitMiddleware, a Redis fixed-window counter for the general
    limit (100 per 15 minutes per client). Falls back to no-op when Redis
    is unavailable.
"""
import time

from fastapi import Request
from limits import parse as parse_limit
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

from apkguard.errors import build_error_payload
from apkguard.utils.logger import get_logger

logger = get_logger("rate_limit")

limiter = Limiter(key_func=get_remote_address)

DEFAULT_RATE_LIMIT = "100 per 15 minutes"

# Paths that bypass rate limiting
EXEMPT_PATHS = frozenset({"/health", "/health/ready", "/metrics", "/"})

RATE_LIMIT_MESSAGE = "Too many requests, please try again later."


def rate_limit_response(message: str = RATE_LIMIT_MESSAGE, headers: dict = None) -> JSONResponse:
    return JSONResponse(
        status_code=429,
        content=build_error_payload("RATE_LIMIT_EXCEEDED", message),
        headers=headers,
    )


async def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    logger.warning("request.rate_limited", extra={
        "path": request.url.path,
        "client_ip": get_remote_address(request),
        "reason": str(exc.detail),
    })
    return rate_limit_response(f"Too many requests to {request.url.path}, please try again later.")


class RedisRateLimitMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, rate_limit: str = DEFAULT_RATE_LIMIT, prefix: str = "apkguard:rl"):
        super().__init__(app)
        # Same notation as the slowapi route limits, e.g. "100 per 15 minutes"
        item = parse_limit(rate_limit)
        self.limit = item.amount
        self.window_seconds = item.get_expiry()
        self.prefix = prefix

    async def dispatch(self, request: Request, call_next):
        if request.url.path in EXEMPT_PATHS or request.method == "OPTIONS":
            return await call_next(request)

        r = getattr(request.app.state, "redis", None)
        if r is None:
            return await call_next(request)

        now = int(time.time())
        window = now // self.window_seconds
        window_key = f"{self.prefix}:ip:{get_remote_address(request)}:{window}"

        try:
            async with r.pipeline(transaction=True) as pipe:
                pipe.incr(window_key)
                pipe.expire(window_key, self.window_seconds + 1)
                current_count, _ = await pipe.execute()
        except Exception as exc:
            logger.debug("rate_limit.skipped", extra={"error": str(exc)})
            return await call_next(request)

        reset_at = str((window + 1) * self.window_seconds)
        if current_count > self.limit:
            return rate_limit_response(headers={
                "X-RateLimit-Limit": str(self.limit),
                "X-RateLimit-Remaining": "0",
                "X-RateLimit-Reset": reset_at,
                "Retry-After": str((window + 1) * self.window_seconds - now),
            })

        response = await call_next(request)
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.limit - current_count))
        response.headers["X-RateLimit-Reset"] = reset_at
        return response
