"""Job handlers for the file-processing and note-generation queues."""

from __future__ import annotations

import asyncio
import functools
import uuid
from typing import Any, Awaitable, Callable

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from shared.config import Settings
from shared.job_queue import Job
from shared.lifecycle import InvalidTransition, RecordNotFound, transition
from shared.models.file import FileStatus
from shared.models.note import Note
from shared.models.task import TaskStatus
from shared.models.user import User
from shared.queues import NOTIFY_ADMIN, PROCESS_FILE, Queues
from shared.schemas.jobs import NotifyAdminPayload, ProcessFilePayload

logger = structlog.get_logger()

Sleep = Callable[[float], Awaitable[Any]]


class StaleJob(Exception):
    """The job's file or task no longer accepts this work (cancelled, deleted, finished)."""


async def _transition(
    session_factory: async_sessionmaker[AsyncSession],
    file_id: uuid.UUID,
    **changes: Any,
) -> None:
    try:
        async with session_factory() as session:
            await transition(session, file_id, **changes)
    except (InvalidTransition, RecordNotFound) as e:
        raise StaleJob(str(e)) from e


async def _mark_failed(
    session_factory: async_sessionmaker[AsyncSession],
    file_id: uuid.UUID,
    error: str,
) -> None:
    try:
        await _transition(
            session_factory,
            file_id,
            file_status=FileStatus.FAILED,
            task_status=TaskStatus.FAILED,
            error_message=error,
        )
    except StaleJob as e:
        logger.warning("file_failure_not_recorded", file_id=str(file_id), reason=str(e))
    except Exception as e:
        logger.error("file_failure_not_recorded", file_id=str(file_id), error=str(e))


async def process_file(
    job: Job,
    session_factory: async_sessionmaker[AsyncSession],
    settings: Settings,
    sleep: Sleep = asyncio.sleep,
) -> dict:
    """Move a file through processing to ``ready_for_notes``.

    Processing itself is simulated by two timed phases that report
    progress 50 and 100. Any error marks the file and task failed and is
    re-raised so the queue retries the job. A job whose task was
    cancelled, or whose file is gone, ends without a retry.
    """
    payload = ProcessFilePayload.model_validate(job.data)
    file_id = payload.file_id
    log = logger.bind(job_id=job.id, file_id=str(file_id), filename=payload.filename)
    attempt = job.attempts_made + 1

    try:
        log.info("file_processing_started", original_name=payload.original_name, attempt=attempt)
        await _transition(
            session_factory,
            file_id,
            file_status=FileStatus.PROCESSING,
            task_status=TaskStatus.PROCESSING,
            attempts=attempt,
        )

        await sleep(settings.processing_step_seconds)
        await job.update_progress(50)
        await sleep(settings.processing_step_seconds)
        await job.update_progress(100)

        await _transition(
            session_factory,
            file_id,
            file_status=FileStatus.READY_FOR_NOTES,
            task_status=TaskStatus.COMPLETED,
            processed=True,
        )
    except StaleJob as e:
        log.warning("file_processing_skipped", reason=str(e))
        return {
            "fileId": str(file_id),
            "filename": payload.filename,
            "originalName": payload.original_name,
            "status": "skipped",
            "reason": str(e),
        }
    except Exception as e:
        error = str(e) or e.__class__.__name__
        log.error("file_processing_failed", attempt=attempt, error=error)
        await _mark_failed(session_factory, file_id, error)
        raise

    log.info("file_processing_completed")
    return {
        "fileId": str(file_id),
        "filename": payload.filename,
        "originalName": payload.original_name,
        "status": FileStatus.READY_FOR_NOTES.value,
    }


async def notify_admin(
    job: Job,
    session_factory: async_sessionmaker[AsyncSession],
    settings: Settings,
    sleep: Sleep = asyncio.sleep,
) -> dict:
    """Log a new note for admins, with the owner's email and note size."""
    payload = NotifyAdminPayload.model_validate(job.data)

    async with session_factory() as session:
        user_email = None
        if payload.user_id is not None:
            result = await session.execute(select(User.email).where(User.id == payload.user_id))
            user_email = result.scalar_one_or_none()
        result = await session.execute(select(Note.content).where(Note.id == payload.note_id))
        content = result.scalar_one_or_none()

    user_email = user_email or "Unknown user"
    logger.info(
        "admin_notification",
        job_id=job.id,
        file_id=str(payload.file_id),
        original_name=payload.original_name,
        user_email=user_email,
        note_type=payload.note_type,
        note_id=str(payload.note_id),
        content_length=len(content) if content else 0,
    )

    await sleep(settings.notification_delay_seconds)

    return {
        "fileId": str(payload.file_id),
        "filename": payload.filename,
        "originalName": payload.original_name,
        "userEmail": user_email,
        "noteType": payload.note_type,
        "noteId": str(payload.note_id),
        "status": "notification_sent",
    }


def register_handlers(
    queues: Queues,
    session_factory: async_sessionmaker[AsyncSession],
    settings: Settings,
) -> None:
    queues.file_processing.process(
        PROCESS_FILE,
        functools.partial(process_file, session_factory=session_factory, settings=settings),
    )
    queues.note_generation.process(
        NOTIFY_ADMIN,
        functools.partial(notify_admin, session_factory=session_factory, settings=settings),
    )
