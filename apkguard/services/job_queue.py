"""
Redis-backed durable job queue with at-least-once delivery.

Layout under the queue name (default "decompilation-queue"):

    <name>:id           INCR counter for job ids
    <name>:job:<id>     hash with the job fields
    <name>:wait         list of ready ids (LPUSH in, LMOVE out from the right)
    <name>:active       list of claimed ids
    <name>:locks        zset id -> lock deadline (ms); expired locks are stalled jobs
    <name>:delayed      zset id -> ready-at (ms) for jobs waiting out their backoff
    <name>:failed       zset id -> finished-at (ms), terminal failures
    <name>:completed    zset id -> finished-at (ms), unless removed on complete

Usage:
    queue = JobQueue.from_settings(settings)
    await queue.open()
    handle = await queue.enqueue("decompile", {"analysisId": ..., "filePath": ...})
    job = await queue.claim()
    await queue.complete(job)          # or: outcome = await queue.fail(job, "reason")
"""
import enum
import inspect
import json
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from redis.exceptions import RedisError, WatchError

from apkguard.config import Settings
from apkguard.errors import LockLostError, QueueUnavailableError
from apkguard.services.redis_client import close_redis, create_redis
from apkguard.utils.logger import get_logger

logger = get_logger("queue")


def backoff_delay(attempt: int, base_ms: int, cap_ms: Optional[int] = None) -> int:
    """Exponential backoff: base * 2^(attempt-1), optionally capped."""
    delay = base_ms * (2 ** max(attempt - 1, 0))
    if cap_ms is not None:
        delay = min(delay, cap_ms)
    return delay


class QueueEvent(str, enum.Enum):
    ERROR = "error"
    FAILED = "failed"
    COMPLETED = "completed"
    RETRYING = "retrying"
    STALLED = "stalled"


@dataclass(frozen=True)
class JobOptions:
    attempts: int = 3
    backoff_delay_ms: int = 5000
    remove_on_complete: bool = True

    def __post_init__(self):
        if self.attempts < 1:
            raise ValueError("attempts must be >= 1")
        if self.backoff_delay_ms < 0:
            raise ValueError("backoff_delay_ms must be >= 0")


@dataclass
class Job:
    id: str
    name: str
    data: Dict[str, Any]
    attempts_made: int = 0
    max_attempts: int = 3
    backoff_delay_ms: int = 5000
    remove_on_complete: bool = True
    state: str = "waiting"
    failed_reason: Optional[str] = None
    token: Optional[str] = None
    created_at: int = 0

    @property
    def is_final_attempt(self) -> bool:
        return self.attempts_made >= self.max_attempts

    @classmethod
    def from_hash(cls, raw: Dict[str, str]) -> "Job":
        return cls(
            id=raw["id"],
            name=raw.get("name", ""),
            data=json.loads(raw.get("data") or "{}"),
            attempts_made=int(raw.get("attempts_made", 0)),
            max_attempts=int(raw.get("max_attempts", 1)),
            backoff_delay_ms=int(raw.get("backoff_delay_ms", 0)),
            remove_on_complete=raw.get("remove_on_complete") == "1",
            state=raw.get("state", "waiting"),
            failed_reason=raw.get("failed_reason"),
            token=raw.get("token"),
            created_at=int(raw.get("created_at", 0)),
        )


@dataclass(frozen=True)
class JobHandle:
    id: str
    name: str
    queue: str


@dataclass(frozen=True)
class FailureOutcome:
    will_retry: bool
    attempts_made: int
    delay_ms: int = 0


@dataclass(frozen=True)
class JobEvent:
    event: QueueEvent
    job: Job
    error: Optional[str] = None
    delay_ms: Optional[int] = None


@dataclass(frozen=True)
class QueueErrorEvent:
    event: QueueEvent
    error: BaseException
    operation: str = ""


EventPayload = Union[JobEvent, QueueErrorEvent]
EventHandler = Callable[[EventPayload], Union[None, Awaitable[None]]]


class JobQueue:
    def __init__(
        self,
        redis,
        name: str = "decompilation-queue",
        default_options: Optional[JobOptions] = None,
        lock_ms: int = 10 * 60 * 1000,
        backoff_cap_ms: Optional[int] = None,
        clock: Callable[[], float] = time.time,
        owns_connection: bool = False,
    ):
        self.redis = redis
        self.name = name
        self.default_options = default_options or JobOptions()
        self.lock_ms = lock_ms
        self.backoff_cap_ms = backoff_cap_ms
        self._clock = clock
        self._owns_connection = owns_connection
        self._handlers: Dict[QueueEvent, List[EventHandler]] = {}

    @classmethod
    def from_settings(cls, settings: Settings, redis=None) -> "JobQueue":
        owns = redis is None
        return cls(
            redis if redis is not None else create_redis(settings),
            name=settings.queue_name,
            default_options=JobOptions(
                attempts=settings.job_attempts,
                backoff_delay_ms=settings.job_backoff_ms,
            ),
            lock_ms=settings.job_lock_ms,
            backoff_cap_ms=settings.job_backoff_cap_ms,
            owns_connection=owns,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def open(self) -> None:
        async with self._guard("open"):
            await self.redis.ping()
        logger.info("queue.opened", extra={"queue": self.name})

    async def close(self) -> None:
        if self._owns_connection:
            await close_redis(self.redis)
        logger.info("queue.closed", extra={"queue": self.name})

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def on(self, event: QueueEvent, handler: EventHandler) -> None:
        """Register a handler; sync and async callables are both accepted."""
        self._handlers.setdefault(QueueEvent(event), []).append(handler)

    async def _emit(self, event: QueueEvent, payload: EventPayload) -> None:
        for handler in list(self._handlers.get(event, ())):
            try:
                result = handler(payload)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                # A broken listener must not fail the job transition that fired it
                logger.exception("queue.handler_error", extra={"queue": self.name, "operation": event.value})

    @asynccontextmanager
    async def _guard(self, operation: str):
        try:
            yield
        except WatchError:
            raise
        except RedisError as exc:
            await self._emit(QueueEvent.ERROR, QueueErrorEvent(QueueEvent.ERROR, exc, operation))
            raise QueueUnavailableError(f"Queue {self.name} {operation} failed: {exc}") from exc

    # ------------------------------------------------------------------
    # Keys
    # ------------------------------------------------------------------

    def _key(self, suffix: str) -> str:
        return f"{self.name}:{suffix}"

    def _job_key(self, job_id: str) -> str:
        return f"{self.name}:job:{job_id}"

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------

    async def enqueue(self, name: str, data: Dict[str, Any], options: Optional[JobOptions] = None) -> JobHandle:
        options = options or self.default_options
        async with self._guard("enqueue"):
            job_id = str(await self.redis.incr(self._key("id")))
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.hset(self._job_key(job_id), mapping={
                    "id": job_id,
                    "name": name,
                    "data": json.dumps(data),
                    "attempts_made": 0,
                    "max_attempts": options.attempts,
                    "backoff_delay_ms": options.backoff_delay_ms,
                    "remove_on_complete": "1" if options.remove_on_complete else "0",
                    "state": "waiting",
                    "created_at": self._now_ms(),
                })
                pipe.lpush(self._key("wait"), job_id)
                await pipe.execute()

        logger.info("job.enqueued", extra={
            "queue": self.name, "job_id": job_id, "job_name": name, "max_attempts": options.attempts,
        })
        return JobHandle(id=job_id, name=name, queue=self.name)

    # ------------------------------------------------------------------
    # Consumer side
    # ------------------------------------------------------------------

    async def promote_delayed(self) -> int:
        """Move delayed jobs whose backoff has elapsed back to the wait list."""
        delayed_key = self._key("delayed")
        async with self._guard("promote"):
            async with self.redis.pipeline(transaction=True) as pipe:
                try:
                    await pipe.watch(delayed_key)
                    due = await pipe.zrangebyscore(delayed_key, "-inf", self._now_ms())
                    if not due:
                        return 0
                    pipe.multi()
                    pipe.zrem(delayed_key, *due)
                    for job_id in due:
                        pipe.hset(self._job_key(job_id), "state", "waiting")
                        pipe.lpush(self._key("wait"), job_id)
                    await pipe.execute()
                except WatchError:
                    # Another consumer promoted them first
                    return 0
        return len(due)

    async def claim(self, lock_ms: Optional[int] = None) -> Optional[Job]:
        """
        Take the oldest ready job. LMOVE is atomic, so a job id is handed
        to exactly one consumer; the lock deadline marks it as owned.
        """
        lock_ms = lock_ms or self.lock_ms
        await self.promote_delayed()

        async with self._guard("claim"):
            job_id = await self.redis.lmove(self._key("wait"), self._key("active"), "RIGHT", "LEFT")
            if job_id is None:
                return None

            job_key = self._job_key(job_id)
            now = self._now_ms()
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.zadd(self._key("locks"), {job_id: now + lock_ms})
                pipe.hincrby(job_key, "attempts_made", 1)
                pipe.hset(job_key, mapping={"state": "active", "token": uuid.uuid4().hex, "processed_at": now})
                pipe.hgetall(job_key)
                results = await pipe.execute()

            raw = results[-1]
            if not raw or "id" not in raw:
                # Hash expired or was removed out from under us
                await self.redis.lrem(self._key("active"), 0, job_id)
                await self.redis.zrem(self._key("locks"), job_id)
                await self.redis.delete(job_key)
                logger.warning("job.orphan_dropped", extra={"queue": self.name, "job_id": job_id})
                return None

        job = Job.from_hash(raw)
        logger.info("job.claimed", extra={
            "queue": self.name, "job_id": job.id, "attempt": job.attempts_made, "max_attempts": job.max_attempts,
        })
        return job

    async def extend_lock(self, job: Job, lock_ms: Optional[int] = None) -> bool:
        lock_ms = lock_ms or self.lock_ms
        async with self._guard("extend_lock"):
            if await self.redis.hget(self._job_key(job.id), "token") != job.token:
                return False
            await self.redis.zadd(self._key("locks"), {job.id: self._now_ms() + lock_ms}, xx=True)
        return True

    async def _finish(self, job: Job, build: Callable[[Any], None]) -> None:
        """Run `build` in MULTI only while `job.token` still owns the job."""
        job_key = self._job_key(job.id)
        async with self._guard("finish"):
            async with self.redis.pipeline(transaction=True) as pipe:
                try:
                    await pipe.watch(job_key)
                    if job.token is None or await pipe.hget(job_key, "token") != job.token:
                        raise LockLostError(job.id)
                    pipe.multi()
                    build(pipe)
                    await pipe.execute()
                except WatchError as exc:
                    raise LockLostError(job.id) from exc

    async def complete(self, job: Job, result: Optional[Dict[str, Any]] = None) -> None:
        now = self._now_ms()

        def build(pipe):
            pipe.lrem(self._key("active"), 1, job.id)
            pipe.zrem(self._key("locks"), job.id)
            if job.remove_on_complete:
                pipe.delete(self._job_key(job.id))
            else:
                pipe.hset(self._job_key(job.id), mapping={
                    "state": "completed",
                    "finished_at": now,
                    "returnvalue": json.dumps(result or {}),
                })
                pipe.hdel(self._job_key(job.id), "token")
                pipe.zadd(self._key("completed"), {job.id: now})

        await self._finish(job, build)
        job.state = "completed"
        job.token = None
        logger.info("job.completed", extra={"queue": self.name, "job_id": job.id})
        await self._emit(QueueEvent.COMPLETED, JobEvent(QueueEvent.COMPLETED, job))

    async def fail(self, job: Job, error: str) -> FailureOutcome:
        """
        Record a failed attempt. Inside the attempt budget the job is
        delayed by the exponential backoff and redelivered; otherwise it
        is terminally failed.
        """
        now = self._now_ms()
        will_retry = job.attempts_made < job.max_attempts
        delay = backoff_delay(job.attempts_made, job.backoff_delay_ms, self.backoff_cap_ms) if will_retry else 0
        error = (error or "unknown error")[:1000]

        def build(pipe):
            pipe.lrem(self._key("active"), 1, job.id)
            pipe.zrem(self._key("locks"), job.id)
            pipe.hdel(self._job_key(job.id), "token")
            if will_retry:
                pipe.hset(self._job_key(job.id), mapping={"state": "delayed", "failed_reason": error})
                pipe.zadd(self._key("delayed"), {job.id: now + delay})
            else:
                pipe.hset(self._job_key(job.id), mapping={
                    "state": "failed", "failed_reason": error, "finished_at": now,
                })
                pipe.zadd(self._key("failed"), {job.id: now})

        await self._finish(job, build)
        job.token = None
        job.failed_reason = error
        outcome = FailureOutcome(will_retry=will_retry, attempts_made=job.attempts_made, delay_ms=delay)

        if will_retry:
            job.state = "delayed"
            logger.warning("job.retrying", extra={
                "queue": self.name, "job_id": job.id, "attempt": job.attempts_made,
                "delay_ms": delay, "error": error,
            })
            await self._emit(QueueEvent.RETRYING, JobEvent(QueueEvent.RETRYING, job, error, delay))
        else:
            job.state = "failed"
            await self._emit(QueueEvent.FAILED, JobEvent(QueueEvent.FAILED, job, error))
        return outcome

    async def recover_stalled(self) -> List[Job]:
        """
        Fail jobs whose lock deadline passed (worker crashed or hung).
        They are redelivered if they still have attempts left; the returned
        jobs carry state "delayed" or "failed" accordingly.
        """
        recovered = []
        async with self._guard("recover_stalled"):
            expired = await self.redis.zrangebyscore(self._key("locks"), "-inf", self._now_ms())

        for job_id in expired:
            async with self._guard("recover_stalled"):
                if not await self.redis.zrem(self._key("locks"), job_id):
                    continue  # another sweeper got it
                raw = await self.redis.hgetall(self._job_key(job_id))
            if not raw:
                await self.redis.lrem(self._key("active"), 0, job_id)
                continue

            job = Job.from_hash(raw)
            await self._emit(QueueEvent.STALLED, JobEvent(QueueEvent.STALLED, job))
            try:
                await self.fail(job, "job stalled more than allowable limit")
            except LockLostError:
                # The owner finished it while we were looking
                continue
            recovered.append(job)

        if recovered:
            logger.warning("queue.stalled_recovered", extra={"queue": self.name, "deleted": len(recovered)})
        return recovered

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    async def get_job(self, job_id: str) -> Optional[Job]:
        async with self._guard("get_job"):
            raw = await self.redis.hgetall(self._job_key(job_id))
        return Job.from_hash(raw) if raw else None

    async def counts(self) -> Dict[str, int]:
        async with self._guard("counts"):
            async with self.redis.pipeline(transaction=False) as pipe:
                pipe.llen(self._key("wait"))
                pipe.llen(self._key("active"))
                pipe.zcard(self._key("delayed"))
                pipe.zcard(self._key("failed"))
                pipe.zcard(self._key("completed"))
                waiting, active, delayed, failed, completed = await pipe.execute()
        return {
            "waiting": waiting,
            "active": active,
            "delayed": delayed,
            "failed": failed,
            "completed": completed,
        }


def attach_logging_listeners(queue: JobQueue) -> None:
    """Queue-level error/failed notifications go to the log."""

    def on_error(event: QueueErrorEvent) -> None:
        logger.error("queue.error", extra={
            "queue": queue.name, "operation": event.operation, "error": str(event.error),
        })

    def on_failed(event: JobEvent) -> None:
        logger.error("job.failed", extra={
            "queue": queue.name, "job_id": event.job.id, "attempt": event.job.attempts_made, "error": event.error,
        })

    queue.on(QueueEvent.ERROR, on_error)
    queue.on(QueueEvent.FAILED, on_failed)
