"""File/Task status transitions.

A file and its processing task move together. Every status change goes
through :func:`transition`, which locks both rows, checks each move
against the allowed transitions, applies them and commits once, so a
reader never sees one half of the pair updated without the other.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from shared.models.file import File, FileStatus
from shared.models.task import Task, TaskStatus, TaskType

logger = structlog.get_logger()

TASK_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({
        TaskStatus.SENT_TO_MAKE,
        TaskStatus.MAKE_ERROR,
        TaskStatus.PROCESSING,
        TaskStatus.COMPLETED,
        TaskStatus.FAILED,
        TaskStatus.CANCELLED,
    }),
    TaskStatus.SENT_TO_MAKE: frozenset({
        TaskStatus.PROCESSING,
        TaskStatus.COMPLETED,
        TaskStatus.FAILED,
        TaskStatus.CANCELLED,
        TaskStatus.MAKE_ERROR,
    }),
    TaskStatus.MAKE_ERROR: frozenset({
        TaskStatus.PROCESSING,
        TaskStatus.COMPLETED,
        TaskStatus.FAILED,
        TaskStatus.CANCELLED,
        TaskStatus.PENDING,
    }),
    TaskStatus.PROCESSING: frozenset({
        # Redelivery of a stalled job
        TaskStatus.PROCESSING,
        TaskStatus.COMPLETED,
        TaskStatus.FAILED,
        TaskStatus.CANCELLED,
    }),
    TaskStatus.COMPLETED: frozenset({
        # Processing completes first, the note webhook completes again
        TaskStatus.COMPLETED,
        TaskStatus.FAILED,
        TaskStatus.PENDING,
    }),
    TaskStatus.FAILED: frozenset({
        TaskStatus.FAILED,
        TaskStatus.PROCESSING,
        TaskStatus.COMPLETED,
        TaskStatus.PENDING,
        TaskStatus.CANCELLED,
    }),
    TaskStatus.CANCELLED: frozenset({TaskStatus.PENDING}),
}

FILE_TRANSITIONS: dict[FileStatus, frozenset[FileStatus]] = {
    FileStatus.UPLOADED: frozenset({
        FileStatus.PROCESSING,
        FileStatus.READY_FOR_NOTES,
        FileStatus.PROCESSED,
        FileStatus.FAILED,
    }),
    FileStatus.PROCESSING: frozenset({
        FileStatus.PROCESSING,
        FileStatus.READY_FOR_NOTES,
        FileStatus.PROCESSED,
        FileStatus.FAILED,
    }),
    FileStatus.READY_FOR_NOTES: frozenset({
        FileStatus.PROCESSING,
        FileStatus.PROCESSED,
        FileStatus.FAILED,
    }),
    FileStatus.FAILED: frozenset({
        FileStatus.PROCESSING,
        FileStatus.READY_FOR_NOTES,
        FileStatus.PROCESSED,
        FileStatus.FAILED,
    }),
    FileStatus.PROCESSED: frozenset({FileStatus.PROCESSED}),
}

# Marker for "leave the task's error message as it is"
KEEP = object()


class InvalidTransition(ValueError):
    """Raised when a status change is not allowed from the current status."""

    def __init__(self, entity: str, current: str, target: str) -> None:
        super().__init__(f"{entity} cannot move from {current} to {target}")
        self.entity = entity
        self.current = current
        self.target = target


class RecordNotFound(LookupError):
    """Raised when the file a transition refers to does not exist."""


def check_task_transition(current: TaskStatus, target: TaskStatus) -> None:
    if target not in TASK_TRANSITIONS[TaskStatus(current)]:
        raise InvalidTransition("task", TaskStatus(current).value, TaskStatus(target).value)


def check_file_transition(current: FileStatus, target: FileStatus) -> None:
    if target not in FILE_TRANSITIONS[FileStatus(current)]:
        raise InvalidTransition("file", FileStatus(current).value, FileStatus(target).value)


async def transition(
    session: AsyncSession,
    file_id: uuid.UUID,
    *,
    file_status: FileStatus | None = None,
    task_status: TaskStatus | None = None,
    error_message: str | None | object = KEEP,
    attempts: int | None = None,
    processed: bool = False,
    task_type: TaskType = TaskType.FILE_PROCESSING,
    commit: bool = True,
    force: bool = False,
) -> tuple[File | None, Task | None]:
    """Move a file and/or its task to new statuses in one unit of work.

    Raises :class:`InvalidTransition` (nothing written) if either move is
    not allowed, and :class:`RecordNotFound` if a file status is requested
    for a file that does not exist. A missing task row is skipped.

    With ``force`` the allowed-transition checks are skipped. Only admin
    resets use it, to put a task back to pending from any status.
    """
    file: File | None = None
    task: Task | None = None

    if file_status is not None:
        result = await session.execute(
            select(File).where(File.id == file_id).with_for_update()
        )
        file = result.scalar_one_or_none()
        if file is None:
            raise RecordNotFound(str(file_id))
        if not force:
            check_file_transition(file.status, file_status)

    if task_status is not None:
        result = await session.execute(
            select(Task)
            .where(Task.file_id == file_id, Task.task_type == task_type)
            .with_for_update()
        )
        task = result.scalar_one_or_none()
        if task is None:
            logger.warning("task_missing", file_id=str(file_id), task_type=task_type.value)
        elif not force:
            check_task_transition(task.status, task_status)

    now = datetime.now(timezone.utc)
    if file is not None:
        file.status = file_status
        file.updated_at = now
    if task is not None:
        task.status = task_status
        task.updated_at = now
        if error_message is not KEEP:
            task.error_message = error_message
        if attempts is not None:
            task.attempts = attempts
        if processed:
            task.processed_at = now

    if commit:
        await session.commit()

    logger.debug(
        "status_transition",
        file_id=str(file_id),
        file_status=file_status.value if file_status else None,
        task_status=task_status.value if task_status else None,
    )
    return file, task
