"""Redis-backed job queue with retries, backoff and job introspection.

Each named queue keeps its jobs under ``queue:{name}:*``:

    queue:{name}:id          job id counter
    queue:{name}:job:{id}    job hash (data, options, attempts, timestamps)
    queue:{name}:lock:{id}   lock held by the worker running the job
    queue:{name}:wait        list, newest first, consumed from the right
    queue:{name}:active      list of jobs being processed
    queue:{name}:delayed     zset scored by the time the job becomes due
    queue:{name}:completed   list, newest first, trimmed per job options
    queue:{name}:failed      list, newest first, trimmed per job options
    queue:{name}:paused      present while intake is paused

Delivery is at-least-once: a worker that dies mid-job loses its lock and
the job is handed out again by :meth:`JobQueue.check_stalled`.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import time
import traceback
from dataclasses import asdict, dataclass, field, replace
from typing import Any, Awaitable, Callable

import redis.asyncio as aioredis
import structlog

logger = structlog.get_logger()

WAITING = "waiting"
ACTIVE = "active"
DELAYED = "delayed"
COMPLETED = "completed"
FAILED = "failed"

JOB_STATES = (WAITING, ACTIVE, DELAYED, COMPLETED, FAILED)
QUEUE_EVENTS = ("completed", "failed", "stalled", "error")

# Stack traces kept per job
_MAX_STACKTRACES = 10


class JobNotFound(LookupError):
    """Raised when a job id does not exist in the queue."""


class JobStateError(Exception):
    """Raised when an operation is not valid for the job's current state."""


# Moves the next waiting job to active, marks it and takes its lock in one step.
# KEYS: wait, active. ARGV: job key prefix, lock key prefix, now (ms), lock ms.
_FETCH_SCRIPT = """
local job_id = redis.call('LMOVE', KEYS[1], KEYS[2], 'RIGHT', 'LEFT')
if not job_id then
  return false
end
local job_key = ARGV[1] .. job_id
if redis.call('EXISTS', job_key) == 0 then
  redis.call('LREM', KEYS[2], 0, job_id)
  return false
end
redis.call('HSET', job_key, 'state', 'active', 'processed_on', ARGV[3])
redis.call('SET', ARGV[2] .. job_id, '1', 'PX', ARGV[4])
return job_id
"""


def _now_ms() -> int:
    return int(time.time() * 1000)


def _int_or_none(value: str | None) -> int | None:
    if value is None or value == "":
        return None
    return int(value)


@dataclass
class Backoff:
    """Retry delay policy. ``exponential`` doubles on every attempt."""

    type: str = "exponential"  # "exponential" | "fixed"
    delay_ms: int = 0

    def compute(self, attempts_made: int) -> int:
        """Delay before the next attempt, after ``attempts_made`` failures."""
        if self.delay_ms <= 0:
            return 0
        if self.type == "fixed":
            return self.delay_ms
        return round((2**attempts_made - 1) * self.delay_ms)


@dataclass
class JobOptions:
    attempts: int = 1
    backoff: Backoff | None = None
    delay_ms: int = 0
    priority: int = 0
    # Number of finished jobs to keep; None keeps all
    remove_on_complete: int | None = None
    remove_on_fail: int | None = None

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, raw: dict) -> JobOptions:
        raw = dict(raw)
        backoff = raw.pop("backoff", None)
        return cls(backoff=Backoff(**backoff) if backoff else None, **raw)


@dataclass
class Job:
    """A unit of queued work. Fields mirror the job hash in Redis."""

    id: str
    name: str
    data: dict
    opts: JobOptions
    state: str = WAITING
    attempts_made: int = 0
    stalled_count: int = 0
    progress: int = 0
    timestamp: int = 0
    processed_on: int | None = None
    finished_on: int | None = None
    failed_reason: str | None = None
    stacktrace: list[str] = field(default_factory=list)
    returnvalue: Any = None
    delay: int = 0
    queue: JobQueue | None = field(default=None, repr=False, compare=False)

    async def update_progress(self, value: int) -> None:
        if self.queue is None:
            raise JobStateError("Job is not bound to a queue")
        await self.queue.update_progress(self, value)

    def to_hash(self) -> dict[str, str]:
        return {
            "name": self.name,
            "data": json.dumps(self.data),
            "opts": json.dumps(self.opts.to_dict()),
            "state": self.state,
            "attempts_made": str(self.attempts_made),
            "stalled_count": str(self.stalled_count),
            "progress": str(self.progress),
            "timestamp": str(self.timestamp),
            "processed_on": "" if self.processed_on is None else str(self.processed_on),
            "finished_on": "" if self.finished_on is None else str(self.finished_on),
            "failed_reason": self.failed_reason or "",
            "stacktrace": json.dumps(self.stacktrace),
            "returnvalue": json.dumps(self.returnvalue, default=str),
            "delay": str(self.delay),
        }

    @classmethod
    def from_hash(cls, job_id: str, raw: dict[str, str], queue: JobQueue | None = None) -> Job:
        return cls(
            id=job_id,
            name=raw.get("name", ""),
            data=json.loads(raw.get("data") or "{}"),
            opts=JobOptions.from_dict(json.loads(raw.get("opts") or "{}")),
            state=raw.get("state", WAITING),
            attempts_made=int(raw.get("attempts_made") or 0),
            stalled_count=int(raw.get("stalled_count") or 0),
            progress=int(raw.get("progress") or 0),
            timestamp=int(raw.get("timestamp") or 0),
            processed_on=_int_or_none(raw.get("processed_on")),
            finished_on=_int_or_none(raw.get("finished_on")),
            failed_reason=raw.get("failed_reason") or None,
            stacktrace=json.loads(raw.get("stacktrace") or "[]"),
            returnvalue=json.loads(raw.get("returnvalue") or "null"),
            delay=int(raw.get("delay") or 0),
            queue=queue,
        )

    def to_dict(self) -> dict:
        """API representation of the job."""
        return {
            "id": self.id,
            "name": self.name,
            "data": self.data,
            "status": self.state,
            "progress": self.progress,
            "timestamp": self.timestamp,
            "processedOn": self.processed_on,
            "finishedOn": self.finished_on,
            "failedReason": self.failed_reason,
            "attemptsMade": self.attempts_made,
            "delay": self.delay,
            "priority": self.opts.priority,
            "opts": self.opts.to_dict(),
        }


JobHandler = Callable[[Job], Awaitable[Any]]
Listener = Callable[..., Any]


class JobQueue:
    """A named job queue stored in Redis.

    The Redis client must be created with ``decode_responses=True``.
    """

    def __init__(
        self,
        redis: aioredis.Redis,
        name: str,
        default_options: JobOptions | None = None,
        lock_duration_ms: int = 30_000,
        max_stalled_count: int = 1,
    ) -> None:
        self.redis = redis
        self.name = name
        self.default_options = default_options or JobOptions()
        self.lock_duration_ms = lock_duration_ms
        self.max_stalled_count = max_stalled_count
        self._handlers: dict[str, JobHandler] = {}
        self._listeners: dict[str, list[Listener]] = {}
        self._fetch_script = redis.register_script(_FETCH_SCRIPT)

    # ------------------------------------------------------------------
    # Keys
    # ------------------------------------------------------------------

    def _key(self, *parts: str) -> str:
        return ":".join(("queue", self.name, *parts))

    def _job_key(self, job_id: str) -> str:
        return self._key("job", job_id)

    def _lock_key(self, job_id: str) -> str:
        return self._key("lock", job_id)

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def on(self, event: str, listener: Listener) -> None:
        """Register a listener for ``completed``, ``failed``, ``stalled`` or ``error``."""
        if event not in QUEUE_EVENTS:
            raise ValueError(f"Unknown queue event: {event}")
        self._listeners.setdefault(event, []).append(listener)

    async def _emit(self, event: str, *args: Any) -> None:
        for listener in self._listeners.get(event, []):
            try:
                result = listener(*args)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.warning(
                    "queue_listener_error", queue=self.name, queue_event=event, error=str(e)
                )

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------

    async def add(self, job_name: str, data: dict, **options: Any) -> Job:
        """Enqueue a job. Keyword options override the queue defaults."""
        opts = replace(self.default_options, **options)
        job_id = str(await self.redis.incr(self._key("id")))
        now = _now_ms()
        job = Job(
            id=job_id,
            name=job_name,
            data=data,
            opts=opts,
            timestamp=now,
            delay=opts.delay_ms,
            queue=self,
        )

        async with self.redis.pipeline(transaction=True) as pipe:
            if opts.delay_ms > 0:
                job.state = DELAYED
                pipe.hset(self._job_key(job_id), mapping=job.to_hash())
                pipe.zadd(self._key("delayed"), {job_id: now + opts.delay_ms})
            else:
                job.state = WAITING
                pipe.hset(self._job_key(job_id), mapping=job.to_hash())
                pipe.lpush(self._key("wait"), job_id)
            await pipe.execute()

        logger.debug("job_added", queue=self.name, job_id=job_id, job_name=job_name)
        return job

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    async def get_job(self, job_id: str) -> Job | None:
        raw = await self.redis.hgetall(self._job_key(str(job_id)))
        if not raw:
            return None
        return Job.from_hash(str(job_id), raw, queue=self)

    async def get_jobs(self, states: list[str] | tuple[str, ...], start: int = 0, end: int = -1) -> list[Job]:
        """List jobs in the given states, state by state.

        List states come newest first; delayed jobs come soonest due first.

        ``start``/``end`` are inclusive indexes applied per state; ``end=-1``
        returns everything.
        """
        ids: list[str] = []
        for state in states:
            if state not in JOB_STATES:
                raise ValueError(f"Unknown job state: {state}")
            if state == DELAYED:
                ids.extend(await self.redis.zrange(self._key("delayed"), start, end))
            else:
                list_key = self._key("wait" if state == WAITING else state)
                ids.extend(await self.redis.lrange(list_key, start, end))

        if not ids:
            return []

        async with self.redis.pipeline(transaction=False) as pipe:
            for job_id in ids:
                pipe.hgetall(self._job_key(job_id))
            rows = await pipe.execute()

        return [
            Job.from_hash(job_id, raw, queue=self)
            for job_id, raw in zip(ids, rows)
            if raw
        ]

    async def get_job_counts(self) -> dict[str, int]:
        async with self.redis.pipeline(transaction=False) as pipe:
            pipe.llen(self._key("wait"))
            pipe.llen(self._key("active"))
            pipe.llen(self._key("completed"))
            pipe.llen(self._key("failed"))
            pipe.zcard(self._key("delayed"))
            waiting, active, completed, failed, delayed = await pipe.execute()
        return {
            WAITING: waiting,
            ACTIVE: active,
            COMPLETED: completed,
            FAILED: failed,
            DELAYED: delayed,
        }

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    async def retry(self, job_id: str) -> Job:
        """Re-queue a failed job with its attempt counter reset."""
        job = await self.get_job(job_id)
        if job is None:
            raise JobNotFound(job_id)
        if job.state != FAILED:
            raise JobStateError(f"Job {job_id} is not in failed state")

        job.state = WAITING
        job.attempts_made = 0
        job.stalled_count = 0
        job.failed_reason = None
        job.processed_on = None
        job.finished_on = None
        job.stacktrace = []
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.lrem(self._key("failed"), 0, job.id)
            pipe.hset(self._job_key(job.id), mapping=job.to_hash())
            pipe.lpush(self._key("wait"), job.id)
            await pipe.execute()

        logger.info("job_retried", queue=self.name, job_id=job.id)
        return job

    async def remove(self, job_id: str) -> Job:
        """Remove a job in any state. An in-flight handler is not interrupted."""
        job = await self.get_job(job_id)
        if job is None:
            raise JobNotFound(job_id)

        async with self.redis.pipeline(transaction=True) as pipe:
            for list_name in ("wait", ACTIVE, COMPLETED, FAILED):
                pipe.lrem(self._key(list_name), 0, job.id)
            pipe.zrem(self._key("delayed"), job.id)
            pipe.delete(self._job_key(job.id), self._lock_key(job.id))
            await pipe.execute()

        logger.info("job_removed", queue=self.name, job_id=job.id, state=job.state)
        return job

    async def clean(self, state: str) -> int:
        """Remove every job in a finished state. Returns the number removed."""
        if state not in (COMPLETED, FAILED):
            raise ValueError("Only completed or failed jobs can be cleaned")
        ids = await self.redis.lrange(self._key(state), 0, -1)
        if ids:
            async with self.redis.pipeline(transaction=True) as pipe:
                for job_id in ids:
                    pipe.lrem(self._key(state), 0, job_id)
                    pipe.delete(self._job_key(job_id))
                await pipe.execute()
        return len(ids)

    async def pause(self) -> None:
        await self.redis.set(self._key("paused"), "1")
        logger.info("queue_paused", queue=self.name)

    async def resume(self) -> None:
        await self.redis.delete(self._key("paused"))
        logger.info("queue_resumed", queue=self.name)

    async def is_paused(self) -> bool:
        return bool(await self.redis.exists(self._key("paused")))

    # ------------------------------------------------------------------
    # Worker side
    # ------------------------------------------------------------------

    async def promote_delayed(self) -> int:
        """Move delayed jobs whose time has come to the wait list."""
        due = await self.redis.zrangebyscore(self._key("delayed"), "-inf", _now_ms())
        promoted = 0
        for job_id in due:
            # Only the worker that wins the zrem pushes the job
            if not await self.redis.zrem(self._key("delayed"), job_id):
                continue
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.hset(self._job_key(job_id), "state", WAITING)
                pipe.lpush(self._key("wait"), job_id)
                await pipe.execute()
            promoted += 1
        return promoted

    async def fetch_next(self) -> Job | None:
        """Take the oldest waiting job and mark it active, or return None."""
        await self.promote_delayed()
        if await self.is_paused():
            return None

        job_id = await self._fetch_script(
            keys=[self._key("wait"), self._key("active")],
            args=[
                self._job_key(""),
                self._lock_key(""),
                _now_ms(),
                self.lock_duration_ms,
            ],
        )
        if job_id is None:
            return None
        # Loaded after the lock is held, so check_stalled never sees it unlocked
        return await self.get_job(job_id)

    async def update_progress(self, job: Job, value: int) -> None:
        job.progress = value
        await self.redis.hset(self._job_key(job.id), "progress", str(value))

    async def complete(self, job: Job, result: Any = None) -> None:
        if not await self.redis.exists(self._job_key(job.id)):
            logger.warning("job_removed_before_completion", queue=self.name, job_id=job.id)
            return

        job.state = COMPLETED
        job.finished_on = _now_ms()
        job.returnvalue = result
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.lrem(self._key("active"), 0, job.id)
            pipe.delete(self._lock_key(job.id))
            pipe.hset(self._job_key(job.id), mapping=job.to_hash())
            pipe.lpush(self._key("completed"), job.id)
            await pipe.execute()

        await self._trim(COMPLETED, job.opts.remove_on_complete)
        await self._emit("completed", job, result)

    async def fail(self, job: Job, error: BaseException) -> bool:
        """Record a failed attempt. Returns True if the job will be retried."""
        if not await self.redis.exists(self._job_key(job.id)):
            logger.warning("job_removed_before_failure", queue=self.name, job_id=job.id)
            return False

        job.attempts_made += 1
        job.failed_reason = str(error) or error.__class__.__name__
        job.stacktrace = (
            job.stacktrace + ["".join(traceback.format_exception(error))]
        )[-_MAX_STACKTRACES:]
        will_retry = job.attempts_made < job.opts.attempts

        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.lrem(self._key("active"), 0, job.id)
            pipe.delete(self._lock_key(job.id))
            if will_retry:
                delay = job.opts.backoff.compute(job.attempts_made) if job.opts.backoff else 0
                job.delay = delay
                if delay > 0:
                    job.state = DELAYED
                    pipe.zadd(self._key("delayed"), {job.id: _now_ms() + delay})
                else:
                    job.state = WAITING
                    pipe.lpush(self._key("wait"), job.id)
            else:
                job.state = FAILED
                job.finished_on = _now_ms()
                pipe.lpush(self._key("failed"), job.id)
            pipe.hset(self._job_key(job.id), mapping=job.to_hash())
            await pipe.execute()

        if not will_retry:
            await self._trim(FAILED, job.opts.remove_on_fail)
        await self._emit("failed", job, error)
        return will_retry

    async def check_stalled(self) -> list[str]:
        """Recover active jobs whose worker stopped renewing the lock."""
        stalled: list[str] = []
        for job_id in await self.redis.lrange(self._key("active"), 0, -1):
            if await self.redis.exists(self._lock_key(job_id)):
                continue
            job = await self.get_job(job_id)
            if job is None:
                await self.redis.lrem(self._key("active"), 0, job_id)
                continue

            job.stalled_count += 1
            stalled.append(job.id)
            if job.stalled_count > self.max_stalled_count:
                job.state = FAILED
                job.finished_on = _now_ms()
                job.failed_reason = "job stalled more than allowable limit"
                async with self.redis.pipeline(transaction=True) as pipe:
                    pipe.lrem(self._key("active"), 0, job.id)
                    pipe.hset(self._job_key(job.id), mapping=job.to_hash())
                    pipe.lpush(self._key("failed"), job.id)
                    await pipe.execute()
                await self._trim(FAILED, job.opts.remove_on_fail)
                await self._emit("failed", job, RuntimeError(job.failed_reason))
            else:
                job.state = WAITING
                async with self.redis.pipeline(transaction=True) as pipe:
                    pipe.lrem(self._key("active"), 0, job.id)
                    pipe.hset(self._job_key(job.id), mapping=job.to_hash())
                    pipe.lpush(self._key("wait"), job.id)
                    await pipe.execute()
                await self._emit("stalled", job)
        return stalled

    async def _trim(self, state: str, keep: int | None) -> None:
        if keep is None:
            return
        stale = await self.redis.lrange(self._key(state), max(keep, 0), -1)
        if not stale:
            return
        async with self.redis.pipeline(transaction=True) as pipe:
            for job_id in stale:
                pipe.lrem(self._key(state), 0, job_id)
                pipe.delete(self._job_key(job_id))
            await pipe.execute()

    async def _keep_lock(self, job: Job) -> None:
        interval = self.lock_duration_ms / 2000
        while True:
            await asyncio.sleep(interval)
            await self.redis.set(self._lock_key(job.id), "1", px=self.lock_duration_ms)

    # ------------------------------------------------------------------
    # Processing loop
    # ------------------------------------------------------------------

    def process(self, job_name: str, handler: JobHandler) -> None:
        """Register the handler for jobs added under ``job_name``."""
        self._handlers[job_name] = handler

    async def process_next(self) -> bool:
        """Run one job if one is available. Returns False when idle."""
        job = await self.fetch_next()
        if job is None:
            return False

        handler = self._handlers.get(job.name)
        if handler is None:
            await self.fail(job, RuntimeError(f"Missing process handler for job type {job.name}"))
            return True

        lock_task = asyncio.create_task(self._keep_lock(job))
        try:
            result = await handler(job)
        except Exception as e:
            await self.fail(job, e)
        else:
            await self.complete(job, result)
        finally:
            lock_task.cancel()
            try:
                await lock_task
            except asyncio.CancelledError:
                pass
        return True

    async def run(self, poll_interval: float = 1.0) -> None:
        """Process jobs until cancelled, sleeping while the queue is idle."""
        logger.info("queue_worker_started", queue=self.name, handlers=list(self._handlers))
        while True:
            try:
                processed = await self.process_next()
            except Exception as e:
                logger.error("queue_worker_error", queue=self.name, error=str(e))
                await self._emit("error", e)
                processed = False

            if not processed:
                await asyncio.sleep(poll_interval)
