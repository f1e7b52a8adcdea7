"""Queue administration endpoints. Admin role required."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

import structlog
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from api.auth import require_admin
from api.dependencies import get_queues, get_session_factory
from shared.job_queue import ACTIVE, COMPLETED, DELAYED, FAILED, WAITING, Job, JobQueue, JobStateError
from shared.lifecycle import InvalidTransition, transition
from shared.models.task import Task, TaskStatus
from shared.queues import FILE_PROCESSING, Queues, UnknownQueue

logger = structlog.get_logger()

router = APIRouter(
    prefix="/api/queue",
    tags=["queue"],
    dependencies=[Depends(require_admin)],
)

# Jobs listed per state group on the status page
RECENT_JOBS = 10


def _resolve(queues: Queues, queue_name: str) -> JobQueue:
    try:
        return queues.get(queue_name)
    except UnknownQueue:
        raise HTTPException(status_code=400, detail="Invalid queue name")


async def _load_job(queue: JobQueue, job_id: str) -> Job:
    job = await queue.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return job


def _file_id_of(job: Job) -> uuid.UUID | None:
    raw = job.data.get("fileId")
    if not raw:
        return None
    try:
        return uuid.UUID(str(raw))
    except ValueError:
        return None


async def _queue_summary(queue: JobQueue) -> dict:
    recent = await queue.get_jobs([ACTIVE, WAITING, DELAYED], 0, RECENT_JOBS - 1)
    failed = await queue.get_jobs([FAILED], 0, RECENT_JOBS - 1)
    return {
        "counts": await queue.get_job_counts(),
        "paused": await queue.is_paused(),
        "recentJobs": [
            {
                "id": job.id,
                "data": job.data,
                "status": job.state,
                "progress": job.progress,
                "timestamp": job.timestamp,
            }
            for job in recent
        ],
        "failedJobs": [
            {
                "id": job.id,
                "data": job.data,
                "status": job.state,
                "failedReason": job.failed_reason,
                "timestamp": job.timestamp,
            }
            for job in failed
        ],
    }


@router.get("/status")
async def queue_status(
    queues: Queues = Depends(get_queues),
    factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> dict:
    """Job counts and recent jobs per queue, with task counts from the database."""
    async with factory() as session:
        result = await session.execute(
            select(Task.task_type, Task.status, func.count()).group_by(Task.task_type, Task.status)
        )
        rows = result.all()

    database_tasks: dict[str, dict[str, int]] = {}
    for task_type, status, count in rows:
        task_key = getattr(task_type, "value", task_type)
        status_key = getattr(status, "value", status)
        database_tasks.setdefault(task_key, {})[status_key] = count

    return {
        "fileProcessingQueue": await _queue_summary(queues.file_processing),
        "noteGenerationQueue": await _queue_summary(queues.note_generation),
        "databaseTasks": database_tasks,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@router.get("/job/{queue_name}/{job_id}")
async def get_job(queue_name: str, job_id: str, queues: Queues = Depends(get_queues)) -> dict:
    queue = _resolve(queues, queue_name)
    job = await _load_job(queue, job_id)
    return {"job": job.to_dict()}


@router.post("/job/{queue_name}/{job_id}/retry")
async def retry_job(
    queue_name: str,
    job_id: str,
    queues: Queues = Depends(get_queues),
    factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> dict:
    """Re-queue a failed job and reset the task that mirrors it."""
    queue = _resolve(queues, queue_name)
    job = await _load_job(queue, job_id)
    if job.state != FAILED:
        raise HTTPException(status_code=400, detail="Job is not in failed state")

    try:
        await queue.retry(job.id)
    except JobStateError:
        raise HTTPException(status_code=400, detail="Job is not in failed state")

    file_id = _file_id_of(job)
    if file_id is not None:
        async with factory() as session:
            await transition(
                session,
                file_id,
                task_status=TaskStatus.PENDING,
                attempts=0,
                error_message=None,
                force=True,
            )

    logger.info("job_retry_requested", queue=queue.name, job_id=job.id)
    return {"message": "Job retry initiated successfully"}


@router.delete("/job/{queue_name}/{job_id}")
async def remove_job(
    queue_name: str,
    job_id: str,
    queues: Queues = Depends(get_queues),
    factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> dict:
    """Remove a job. The task of a file-processing job becomes cancelled."""
    queue = _resolve(queues, queue_name)
    job = await _load_job(queue, job_id)
    await queue.remove(job.id)

    file_id = _file_id_of(job)
    if file_id is not None and queue.name == FILE_PROCESSING:
        try:
            async with factory() as session:
                await transition(session, file_id, task_status=TaskStatus.CANCELLED)
        except InvalidTransition as e:
            logger.warning("remove_task_cancel_rejected", job_id=job.id, reason=str(e))

    return {"message": "Job removed successfully"}


@router.post("/{queue_name}/pause")
async def pause_queue(queue_name: str, queues: Queues = Depends(get_queues)) -> dict:
    queue = _resolve(queues, queue_name)
    await queue.pause()
    return {"message": f"{queue_name} queue paused successfully"}


@router.post("/{queue_name}/resume")
async def resume_queue(queue_name: str, queues: Queues = Depends(get_queues)) -> dict:
    queue = _resolve(queues, queue_name)
    await queue.resume()
    return {"message": f"{queue_name} queue resumed successfully"}


@router.delete("/{queue_name}/clear-completed")
async def clear_completed(queue_name: str, queues: Queues = Depends(get_queues)) -> dict:
    queue = _resolve(queues, queue_name)
    cleared = await queue.clean(COMPLETED)
    return {
        "message": f"Cleared {cleared} completed jobs from {queue_name} queue",
        "clearedCount": cleared,
    }


@router.delete("/{queue_name}/clear-failed")
async def clear_failed(queue_name: str, queues: Queues = Depends(get_queues)) -> dict:
    queue = _resolve(queues, queue_name)
    cleared = await queue.clean(FAILED)
    return {
        "message": f"Cleared {cleared} failed jobs from {queue_name} queue",
        "clearedCount": cleared,
    }
