"""File upload endpoints. Anonymous and authenticated uploads are both accepted."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from pathlib import Path

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy import and_, delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from starlette.datastructures import FormData, UploadFile

from api.auth import AuthUser, optional_auth
from api.dependencies import get_dispatcher, get_queues, get_session_factory
from api.services.dispatch import FileDispatcher
from shared.config import get_settings
from shared.job_queue import Backoff
from shared.lifecycle import transition
from shared.models.file import File, FileStatus
from shared.models.note import Note
from shared.models.task import Task, TaskStatus, TaskType
from shared.queues import PROCESS_FILE, Queues
from shared.schemas.jobs import ProcessFilePayload
from shared.storage import (
    FileTooLarge,
    UploadRejected,
    cleanup_file,
    generate_storage_name,
    move_to_uploads,
    stage_upload,
    validate_upload,
)

logger = structlog.get_logger()

router = APIRouter(prefix="/api/upload", tags=["upload"])

UPLOAD_FIELD = "file"


def _owner_clause(user: AuthUser | None):
    """Match files owned by the caller, or anonymous files for anonymous callers."""
    if user is None:
        return File.user_id.is_(None)
    return File.user_id == user.user_id


def _single_upload(form: FormData) -> UploadFile:
    files = [(key, value) for key, value in form.multi_items() if isinstance(value, UploadFile)]
    for key, _ in files:
        if key != UPLOAD_FIELD:
            raise HTTPException(status_code=400, detail="Unexpected file field")
    if len(files) > 1:
        raise HTTPException(status_code=400, detail="Too many files")
    if not files:
        raise HTTPException(status_code=400, detail="No file uploaded")
    return files[0][1]


def _public_file_url(request: Request, storage_name: str) -> str:
    base = get_settings().public_base_url or str(request.base_url)
    return f"{base.rstrip('/')}/uploads/{storage_name}"


async def _mark_enqueue_failed(
    factory: async_sessionmaker[AsyncSession], file_id: uuid.UUID, error: Exception
) -> None:
    try:
        async with factory() as session:
            await transition(
                session,
                file_id,
                file_status=FileStatus.FAILED,
                task_status=TaskStatus.FAILED,
                error_message=f"Failed to enqueue processing job: {error}",
            )
    except Exception as e:
        logger.error("enqueue_failure_not_recorded", file_id=str(file_id), error=str(e))


@router.post("")
async def upload_file(
    request: Request,
    user: AuthUser | None = Depends(optional_auth),
    factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    queues: Queues = Depends(get_queues),
    dispatcher: FileDispatcher = Depends(get_dispatcher),
) -> dict:
    """Store one uploaded file, record it and queue it for processing."""
    settings = get_settings()
    form = await request.form()
    try:
        upload = _single_upload(form)
        original_name = Path(upload.filename or "upload").name
        try:
            validate_upload(original_name, upload.content_type)
        except UploadRejected as e:
            raise HTTPException(status_code=400, detail=str(e))

        storage_name = generate_storage_name(original_name)
        try:
            temp_path, file_size = await stage_upload(
                upload, settings.temp_path, storage_name, settings.max_file_size_bytes
            )
        except FileTooLarge as e:
            raise HTTPException(status_code=413, detail=str(e))
    finally:
        await form.close()

    user_id = user.user_id if user else None
    file_type = (upload.content_type or "").split(";", 1)[0].strip() or None
    file_id = uuid.uuid4()
    stored_path: Path | None = None

    try:
        stored_path = await move_to_uploads(temp_path, settings.upload_path, storage_name)
        async with factory() as session:
            session.add(File(
                id=file_id,
                filename=storage_name,
                original_name=original_name,
                file_path=str(stored_path),
                file_size=file_size,
                file_type=file_type,
                user_id=user_id,
                status=FileStatus.UPLOADED,
            ))
            session.add(Task(
                id=uuid.uuid4(),
                file_id=file_id,
                user_id=user_id,
                task_type=TaskType.FILE_PROCESSING,
                status=TaskStatus.PENDING,
                priority=1,
                attempts=0,
                max_attempts=3,
            ))
            await session.commit()
    except Exception as e:
        logger.error("upload_persist_failed", filename=storage_name, error=str(e))
        await cleanup_file(temp_path)
        await cleanup_file(stored_path)
        raise HTTPException(status_code=500, detail="File upload failed")

    logger.info(
        "file_uploaded",
        file_id=str(file_id),
        filename=storage_name,
        original_name=original_name,
        user_id=str(user_id) if user_id else None,
    )

    payload = ProcessFilePayload(
        file_id=file_id,
        filename=storage_name,
        original_name=original_name,
        file_path=str(stored_path),
        file_size=file_size,
        file_type=file_type,
        user_id=user_id,
    )
    try:
        await queues.file_processing.add(
            PROCESS_FILE,
            payload.to_job_data(),
            priority=1,
            attempts=3,
            backoff=Backoff(type="exponential", delay_ms=2000),
        )
    except Exception as e:
        logger.error("upload_enqueue_failed", file_id=str(file_id), error=str(e))
        await _mark_enqueue_failed(factory, file_id, e)
        raise HTTPException(status_code=500, detail="File upload failed")

    dispatcher.dispatch(file_id, {
        "fileId": str(file_id),
        "fileUrl": _public_file_url(request, storage_name),
        "originalName": original_name,
        "fileSize": file_size,
        "fileType": file_type,
        "userId": str(user_id) if user_id else None,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    })

    return {
        "message": "File uploaded successfully",
        "file": {
            "id": str(file_id),
            "filename": storage_name,
            "originalName": original_name,
            "fileSize": file_size,
            "fileType": file_type,
            "status": FileStatus.UPLOADED.value,
        },
    }


@router.get("/status/{file_id}")
async def upload_status(
    file_id: uuid.UUID,
    user: AuthUser | None = Depends(optional_auth),
    factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> dict:
    async with factory() as session:
        result = await session.execute(
            select(File, Task.status, Task.error_message)
            .outerjoin(
                Task,
                and_(Task.file_id == File.id, Task.task_type == TaskType.FILE_PROCESSING),
            )
            .where(File.id == file_id, _owner_clause(user))
        )
        row = result.one_or_none()

    if row is None:
        raise HTTPException(status_code=404, detail="File not found")

    file, task_status, error_message = row
    return {
        "file": {
            "id": str(file.id),
            "filename": file.filename,
            "originalName": file.original_name,
            "fileSize": file.file_size,
            "fileType": file.file_type,
            "status": FileStatus(file.status).value,
            "taskStatus": TaskStatus(task_status).value if task_status else None,
            "errorMessage": error_message,
            "createdAt": file.created_at.isoformat() if file.created_at else None,
        }
    }


@router.delete("/{file_id}")
async def delete_upload(
    file_id: uuid.UUID,
    user: AuthUser | None = Depends(optional_auth),
    factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> dict:
    """Remove the stored file and every row that refers to it."""
    async with factory() as session:
        result = await session.execute(
            select(File).where(File.id == file_id, _owner_clause(user))
        )
        file = result.scalar_one_or_none()
        if file is None:
            raise HTTPException(status_code=404, detail="File not found")

        await cleanup_file(file.file_path)
        await session.execute(delete(Note).where(Note.file_id == file_id))
        await session.execute(delete(Task).where(Task.file_id == file_id))
        await session.execute(delete(File).where(File.id == file_id))
        await session.commit()

    logger.info("file_deleted", file_id=str(file_id))
    return {"message": "File deleted successfully"}
