"""Admin reporting, bulk export and note retention. Admin role required."""

from __future__ import annotations

import math
import uuid
from datetime import datetime, timezone

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import and_, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from api.auth import require_admin
from api.dependencies import get_session_factory
from api.serializers import attachment_header, file_summary, iso, note_summary, task_status_value
from shared.models.file import File, FileStatus
from shared.models.note import Note
from shared.models.task import Task, TaskType
from shared.models.user import User
from shared.note_export import bulk_export_filename, render_bulk
from shared.retention import delete_expired_notes, set_retention, today_utc

logger = structlog.get_logger()

router = APIRouter(
    prefix="/api/admin",
    tags=["admin"],
    dependencies=[Depends(require_admin)],
)


class RetentionUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    retention_days: int = Field(alias="retentionDays", ge=1)


def _pagination(page: int, limit: int, total: int) -> dict:
    return {"page": page, "limit": limit, "total": total, "pages": math.ceil(total / limit)}


def _note_filters(
    note_type: str | None,
    date_from: datetime | None,
    date_to: datetime | None,
) -> list:
    conditions = []
    if note_type:
        conditions.append(Note.note_type == note_type)
    if date_from:
        conditions.append(Note.created_at >= date_from)
    if date_to:
        conditions.append(Note.created_at <= date_to)
    return conditions


async def _file_stats(session: AsyncSession) -> dict:
    result = await session.execute(
        select(
            func.count(File.id).label("totalFiles"),
            func.count(File.id).filter(File.status == FileStatus.PROCESSED).label("processedFiles"),
            func.count(File.id).filter(File.status == FileStatus.FAILED).label("failedFiles"),
            func.count(File.id).filter(File.status == FileStatus.UPLOADED).label("pendingFiles"),
            func.coalesce(func.sum(File.file_size), 0).label("totalSizeBytes"),
        )
    )
    return dict(result.one()._mapping)


async def _grouped_counts(session: AsyncSession, column) -> dict[str, int]:
    result = await session.execute(select(column, func.count()).group_by(column))
    return {getattr(key, "value", key): count for key, count in result.all()}


@router.get("/dashboard")
async def dashboard(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    status: FileStatus | None = Query(None),
    note_type: str | None = Query(None, alias="noteType"),
    date_from: datetime | None = Query(None, alias="dateFrom"),
    date_to: datetime | None = Query(None, alias="dateTo"),
    factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> dict:
    """Every file with owner, task state and notes, plus summary counts."""
    conditions = []
    if status is not None:
        conditions.append(File.status == status)
    if note_type:
        conditions.append(File.id.in_(select(Note.file_id).where(Note.note_type == note_type)))
    if date_from:
        conditions.append(File.created_at >= date_from)
    if date_to:
        conditions.append(File.created_at <= date_to)

    async with factory() as session:
        total = (
            await session.execute(select(func.count(File.id)).where(*conditions))
        ).scalar_one()

        result = await session.execute(
            select(File, User.email, Task.status, Task.error_message)
            .outerjoin(User, File.user_id == User.id)
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
                .where(Note.file_id.in_([row[0].id for row in rows]))
                .order_by(Note.created_at)
            )
            for note in result.scalars().all():
                notes_by_file.setdefault(note.file_id, []).append(note)

        stats = await _file_stats(session)

    files = [
        {
            **file_summary(file),
            "userEmail": user_email,
            "taskStatus": task_status_value(task_status),
            "errorMessage": error_message,
            "notes": [note_summary(n) for n in notes_by_file.get(file.id, [])],
        }
        for file, user_email, task_status, error_message in rows
    ]
    return {"files": files, "stats": stats, "pagination": _pagination(page, limit, total)}


@router.get("/notes")
async def list_notes(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    note_type: str | None = Query(None, alias="noteType"),
    date_from: datetime | None = Query(None, alias="dateFrom"),
    date_to: datetime | None = Query(None, alias="dateTo"),
    factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> dict:
    conditions = _note_filters(note_type, date_from, date_to)

    async with factory() as session:
        total = (
            await session.execute(select(func.count(Note.id)).where(*conditions))
        ).scalar_one()

        result = await session.execute(
            select(Note, File, User.email)
            .join(File, Note.file_id == File.id)
            .outerjoin(User, Note.user_id == User.id)
            .where(*conditions)
            .order_by(Note.created_at.desc())
            .limit(limit)
            .offset((page - 1) * limit)
        )
        rows = result.all()

    notes = [
        {
            **note_summary(note),
            "status": getattr(note.status, "value", note.status),
            "retentionDate": iso(note.retention_date),
            "file": {
                "id": str(file.id),
                "originalName": file.original_name,
                "fileSize": file.file_size,
                "fileType": file.file_type,
            },
            "user": {
                "id": str(note.user_id) if note.user_id else None,
                "email": user_email,
            },
        }
        for note, file, user_email in rows
    ]
    return {"notes": notes, "pagination": _pagination(page, limit, total)}


@router.get("/download-all")
async def download_all(
    note_type: str | None = Query(None, alias="noteType"),
    date_from: datetime | None = Query(None, alias="dateFrom"),
    date_to: datetime | None = Query(None, alias="dateTo"),
    factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> PlainTextResponse:
    """Every matching note concatenated into one text document."""
    async with factory() as session:
        result = await session.execute(
            select(Note, File.original_name, User.email)
            .join(File, Note.file_id == File.id)
            .outerjoin(User, Note.user_id == User.id)
            .where(*_note_filters(note_type, date_from, date_to))
            .order_by(Note.created_at.desc())
        )
        rows = result.all()

    if not rows:
        raise HTTPException(status_code=404, detail="No notes found for the specified criteria")

    body = render_bulk(
        {
            "content": note.content,
            "note_type": note.note_type,
            "original_name": original_name,
            "created_at": note.created_at,
            "user_email": user_email,
        }
        for note, original_name, user_email in rows
    )
    filename = bulk_export_filename(today_utc())
    logger.info("notes_exported", count=len(rows))
    return PlainTextResponse(
        body,
        headers={"Content-Disposition": attachment_header(filename)},
    )


@router.put("/notes/{note_id}/retention")
async def update_retention(
    note_id: uuid.UUID,
    body: RetentionUpdate,
    factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> dict:
    async with factory() as session:
        updated = await set_retention(session, note_id, body.retention_days)
    if not updated:
        raise HTTPException(status_code=404, detail="Note not found")
    logger.info("note_retention_updated", note_id=str(note_id), days=body.retention_days)
    return {"message": "Retention period updated successfully"}


@router.delete("/notes/expired")
async def delete_expired(
    factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> dict:
    async with factory() as session:
        deleted = await delete_expired_notes(session)
    return {"message": f"Deleted {deleted} expired notes", "deletedCount": deleted}


@router.get("/stats")
async def stats(
    factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> dict:
    async with factory() as session:
        files = await _file_stats(session)
        notes_by_type = await _grouped_counts(session, Note.note_type)
        users_by_role = await _grouped_counts(session, User.role)
        tasks_by_status = await _grouped_counts(session, Task.status)

    return {
        "files": files,
        "notes": {"totalNotes": sum(notes_by_type.values()), "byType": notes_by_type},
        "users": {"totalUsers": sum(users_by_role.values()), "byRole": users_by_role},
        "tasks": {"totalTasks": sum(tasks_by_status.values()), "byStatus": tasks_by_status},
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
