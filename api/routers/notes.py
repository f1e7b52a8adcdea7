"""Generated notes: the generator's callback and the owner's read endpoints."""

from __future__ import annotations

import json
import math
import uuid

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import PlainTextResponse
from sqlalchemy import and_, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from api.auth import AuthUser, require_auth
from api.dependencies import get_queues, get_session_factory
from api.serializers import attachment_header, file_summary, note_summary, task_status_value
from shared.config import get_settings
from shared.lifecycle import InvalidTransition, transition
from shared.models.file import File, FileStatus
from shared.models.note import Note, NoteStatus
from shared.models.task import Task, TaskStatus, TaskType
from shared.note_export import export_filename, render_note
from shared.queues import NOTIFY_ADMIN, Queues
from shared.retention import retention_date_for
from shared.schemas.jobs import NotifyAdminPayload
from shared.schemas.notes import WebhookPayload

logger = structlog.get_logger()

router = APIRouter(prefix="/api/notes", tags=["notes"])

DEFAULT_NOTE_TYPE = "general"
ACK = {"message": "Webhook processed successfully"}


def serialize_notes(notes) -> str:
    """Compact JSON, the same text the generator sent."""
    return json.dumps(notes, separators=(",", ":"), ensure_ascii=False)


@router.post("/webhook")
async def notes_webhook(
    payload: WebhookPayload,
    factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    queues: Queues = Depends(get_queues),
) -> dict:
    """Receive generated notes (or a generation error) for an uploaded file.

    Unauthenticated. Repeated callbacks are not deduplicated: each
    successful callback stores another note.
    """
    if payload.file_id is None:
        raise HTTPException(status_code=400, detail="File ID is required")

    async with factory() as session:
        result = await session.execute(select(File).where(File.id == payload.file_id))
        file = result.scalar_one_or_none()
        if file is None:
            raise HTTPException(status_code=404, detail="File not found")

        if payload.status == "success" and payload.notes is not None:
            note_type = payload.note_type or DEFAULT_NOTE_TYPE
            note = Note(
                id=uuid.uuid4(),
                file_id=file.id,
                user_id=file.user_id,
                note_type=note_type,
                content=serialize_notes(payload.notes),
                status=NoteStatus.GENERATED,
                retention_date=retention_date_for(get_settings().note_retention_days),
            )
            session.add(note)
            try:
                await transition(
                    session,
                    file.id,
                    file_status=FileStatus.PROCESSED,
                    task_status=TaskStatus.COMPLETED,
                    processed=True,
                    commit=False,
                )
            except InvalidTransition as e:
                # Statuses stay as they are, the note is still stored
                logger.warning("webhook_transition_rejected", file_id=str(file.id), reason=str(e))
            await session.commit()
            logger.info("notes_generated", file_id=str(file.id), note_id=str(note.id), note_type=note_type)

            notify = NotifyAdminPayload(
                file_id=file.id,
                filename=file.filename,
                original_name=file.original_name,
                user_id=file.user_id,
                note_type=note_type,
                note_id=note.id,
            )
            try:
                await queues.note_generation.add(NOTIFY_ADMIN, notify.to_job_data())
            except Exception as e:
                logger.error("notify_admin_enqueue_failed", file_id=str(file.id), error=str(e))

        elif payload.status == "error":
            error = payload.error or "Note generation failed"
            try:
                await transition(
                    session,
                    file.id,
                    file_status=FileStatus.FAILED,
                    task_status=TaskStatus.FAILED,
                    error_message=error,
                )
            except InvalidTransition as e:
                await session.rollback()
                logger.warning("webhook_transition_rejected", file_id=str(file.id), reason=str(e))
                return ACK
            logger.error("note_generation_failed", file_id=str(file.id), error=error)

        else:
            logger.info("webhook_ignored", file_id=str(file.id), status=payload.status)

    return ACK


@router.get("/file/{file_id}")
async def notes_for_file(
    file_id: uuid.UUID,
    user: AuthUser = Depends(require_auth),
    factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> dict:
    async with factory() as session:
        result = await session.execute(
            select(File).where(File.id == file_id, File.user_id == user.user_id)
        )
        file = result.scalar_one_or_none()
        if file is None:
            raise HTTPException(status_code=404, detail="File not found")

        result = await session.execute(
            select(Note).where(Note.file_id == file_id).order_by(Note.created_at)
        )
        notes = result.scalars().all()

    return {
        "file": file_summary(file),
        "notes": [note_summary(n) for n in notes],
    }


@router.get("/user")
async def notes_for_user(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    status: FileStatus | None = Query(None),
    user: AuthUser = Depends(require_auth),
    factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> dict:
    """The caller's files, newest first, each with its task status and notes."""
    conditions = [File.user_id == user.user_id]
    if status is not None:
        conditions.append(File.status == status)

    async with factory() as session:
        total = (
            await session.execute(select(func.count(File.id)).where(*conditions))
        ).scalar_one()

        result = await session.execute(
            select(File, Task.status, Task.error_message)
            .outerjoin(
                Task,
                and_(Task.file_id == File.id, Task.task_type == TaskType.FILE_PROCESSING),
            )
            .where(*conditions)
            .order_by(File.created_at.desc())
            .limit(limit)
            .offset((page - 1) * limit)
        )
        rows = result.all()

        notes_by_file: dict[uuid.UUID, list[Note]] = {}
        if rows:
            result = await session.execute(
                select(Note)
                .where(Note.file_id.in_([file.id for file, _, _ in rows]))
                .order_by(Note.created_at)
            )
            for note in result.scalars().all():
                notes_by_file.setdefault(note.file_id, []).append(note)

    files = [
        {
            **file_summary(file),
            "taskStatus": task_status_value(task_status),
            "errorMessage": error_message,
            "notes": [note_summary(n) for n in notes_by_file.get(file.id, [])],
        }
        for file, task_status, error_message in rows
    ]
    return {
        "files": files,
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": math.ceil(total / limit),
        },
    }


@router.get("/download/{note_id}")
async def download_note(
    note_id: uuid.UUID,
    user: AuthUser = Depends(require_auth),
    factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> PlainTextResponse:
    """Download one of the caller's notes as a text attachment."""
    async with factory() as session:
        result = await session.execute(
            select(Note, File.original_name)
            .join(File, Note.file_id == File.id)
            .where(Note.id == note_id, File.user_id == user.user_id)
        )
        row = result.one_or_none()

    if row is None:
        raise HTTPException(status_code=404, detail="Note not found")

    note, original_name = row
    body = render_note(
        note.content,
        original_name=original_name,
        note_type=note.note_type,
        created_at=note.created_at,
    )
    filename = export_filename(note.created_at, note.note_type, original_name)
    return PlainTextResponse(
        body,
        headers={"Content-Disposition": attachment_header(filename)},
    )
