"""JSON shapes shared by several routers. Keys are camelCase."""

from __future__ import annotations

from datetime import date, datetime
from urllib.parse import quote

from shared.models.file import File, FileStatus
from shared.models.note import Note
from shared.models.task import TaskStatus
from shared.note_export import parse_content


def iso(value: datetime | date | None) -> str | None:
    return value.isoformat() if value else None


def attachment_header(filename: str) -> str:
    """Content-Disposition value for a download, RFC 5987 encoded when needed."""
    quoted = quote(filename)
    if quoted != filename:
        return f"attachment; filename*=utf-8''{quoted}"
    return f'attachment; filename="{filename}"'


def file_summary(file: File) -> dict:
    return {
        "id": str(file.id),
        "filename": file.filename,
        "originalName": file.original_name,
        "fileSize": file.file_size,
        "fileType": file.file_type,
        "status": FileStatus(file.status).value,
        "createdAt": iso(file.created_at),
    }


def note_summary(note: Note) -> dict:
    return {
        "id": str(note.id),
        "type": note.note_type,
        "content": parse_content(note.content),
        "createdAt": iso(note.created_at),
    }


def task_status_value(status: TaskStatus | str | None) -> str | None:
    return TaskStatus(status).value if status else None
