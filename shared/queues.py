"""Named queues used by the upload pipeline and their default policies."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import redis.asyncio as aioredis
import structlog

from shared.config import Settings
from shared.job_queue import Backoff, Job, JobOptions, JobQueue

logger = structlog.get_logger()

FILE_PROCESSING = "file-processing"
NOTE_GENERATION = "note-generation"

# Job names within each queue
PROCESS_FILE = "process-file"
NOTIFY_ADMIN = "notify-admin"

FILE_PROCESSING_OPTIONS = JobOptions(
    attempts=3,
    backoff=Backoff(type="exponential", delay_ms=2000),
    remove_on_complete=100,
    remove_on_fail=50,
)

NOTE_GENERATION_OPTIONS = JobOptions(
    attempts=3,
    backoff=Backoff(type="exponential", delay_ms=5000),
    remove_on_complete=100,
    remove_on_fail=50,
)


class UnknownQueue(KeyError):
    """Raised for a queue name that is not one of the configured queues."""


@dataclass
class Queues:
    file_processing: JobQueue
    note_generation: JobQueue

    def get(self, name: str) -> JobQueue:
        if name == FILE_PROCESSING:
            return self.file_processing
        if name == NOTE_GENERATION:
            return self.note_generation
        raise UnknownQueue(name)

    def all(self) -> list[JobQueue]:
        return [self.file_processing, self.note_generation]


def _attach_logging(queue: JobQueue) -> None:
    """Log-only observers for job lifecycle transitions."""

    def on_completed(job: Job, result: Any) -> None:
        logger.info(
            "job_completed",
            queue=queue.name,
            job_id=job.id,
            filename=job.data.get("filename"),
        )

    def on_failed(job: Job, error: BaseException) -> None:
        logger.error(
            "job_failed",
            queue=queue.name,
            job_id=job.id,
            filename=job.data.get("filename"),
            attempts_made=job.attempts_made,
            will_retry=job.state != "failed",
            error=str(error),
        )

    def on_stalled(job: Job) -> None:
        logger.warning(
            "job_stalled",
            queue=queue.name,
            job_id=job.id,
            filename=job.data.get("filename"),
        )

    def on_error(error: BaseException) -> None:
        logger.error("queue_error", queue=queue.name, error=str(error))

    queue.on("completed", on_completed)
    queue.on("failed", on_failed)
    queue.on("stalled", on_stalled)
    queue.on("error", on_error)


def create_queues(redis: aioredis.Redis, settings: Settings | None = None) -> Queues:
    """Build both queues on a shared Redis client."""
    lock_ms = (settings.job_lock_seconds if settings else 30) * 1000
    max_stalled = settings.max_stalled_count if settings else 1

    queues = Queues(
        file_processing=JobQueue(
            redis,
            FILE_PROCESSING,
            FILE_PROCESSING_OPTIONS,
            lock_duration_ms=lock_ms,
            max_stalled_count=max_stalled,
        ),
        note_generation=JobQueue(
            redis,
            NOTE_GENERATION,
            NOTE_GENERATION_OPTIONS,
            lock_duration_ms=lock_ms,
            max_stalled_count=max_stalled,
        ),
    )
    for queue in queues.all():
        _attach_logging(queue)
    return queues
